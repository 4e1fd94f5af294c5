"""Fan-out of log lines and status events to connected observers.

A new observer receives every buffered line (global, per-instance and
terminal history) before any live event. Subscription, replay and fan-out
all run synchronously on the event loop, so no live event can be
interleaved into a replay and nothing published after the replay snapshot
is missed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .log_buffer import LogAggregator

logger = logging.getLogger("botlauncher.supervisor.broadcast")

EVENT_WELCOME = "WELCOME"
EVENT_LOG = "LOG"
EVENT_GLOBAL_LOG = "GLOBAL_LOG"
EVENT_STATUS = "STATUS"
EVENT_TERMINAL_OUTPUT = "TERMINAL_OUTPUT"
EVENT_TERMINAL_OPENED = "TERMINAL_OPENED"
EVENT_TERMINAL_CLOSED = "TERMINAL_CLOSED"

MAX_OBSERVER_BACKLOG = 10_000


class Observer:
    """One connected monitoring client; owns nothing but its outbound queue."""

    def __init__(self, max_backlog: int = MAX_OBSERVER_BACKLOG):
        self.max_backlog = max_backlog
        self.overflowed = False
        self.closed = False
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def _enqueue(self, event: dict[str, Any]) -> None:
        self._queue.put_nowait(event)

    def _deliver(self, event: dict[str, Any]) -> bool:
        """Queue a live event; return False when the observer fell too far behind."""
        if self.closed:
            return False
        if self._queue.qsize() >= self.max_backlog:
            self.overflowed = True
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self) -> list[dict[str, Any]]:
        """Return every queued event without waiting."""
        events: list[dict[str, Any]] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not None:
                events.append(event)
        return events

    async def next_event(self) -> dict[str, Any] | None:
        """Wait for the next event; None once the observer is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()


class BroadcastChannel:
    """Stores log text in the aggregator and pushes every event to all observers."""

    def __init__(self, aggregator: LogAggregator | None = None, *, max_backlog: int = MAX_OBSERVER_BACKLOG):
        self.aggregator = aggregator or LogAggregator()
        self.max_backlog = max_backlog
        self._observers: set[Observer] = set()
        self._open_terminals: set[str] = set()

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def subscribe(self) -> Observer:
        """Register an observer after queueing the full replay for it."""
        observer = Observer(self.max_backlog)
        observer._enqueue({"type": EVENT_WELCOME, "data": "Connected to launcher"})
        for line in self.aggregator.global_history():
            observer._enqueue({"type": EVENT_GLOBAL_LOG, "data": line})
        for instance_id in self.aggregator.instance_keys():
            for line in self.aggregator.history(instance_id):
                observer._enqueue({"type": EVENT_LOG, "instanceId": instance_id, "data": line})
        for instance_id in self.aggregator.terminal_keys():
            for line in self.aggregator.terminal_history(instance_id):
                observer._enqueue({"type": EVENT_TERMINAL_OUTPUT, "instanceId": instance_id, "data": line})
        for instance_id in sorted(self._open_terminals):
            observer._enqueue({"type": EVENT_TERMINAL_OPENED, "instanceId": instance_id})
        self._observers.add(observer)
        logger.info("Observer connected (%d total)", len(self._observers))
        return observer

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.discard(observer)
            logger.info("Observer disconnected (%d remaining)", len(self._observers))
        observer.close()

    def _fan_out(self, event: dict[str, Any]) -> None:
        for observer in list(self._observers):
            if not observer._deliver(event):
                logger.warning("Dropping observer with %d undelivered events", observer.pending())
                self._observers.discard(observer)
                observer.close()

    def publish_log(self, instance_id: str, line: str) -> None:
        self.aggregator.append(instance_id, line)
        self._fan_out({"type": EVENT_LOG, "instanceId": instance_id, "data": line})

    def publish_global(self, line: str) -> None:
        self.aggregator.append_global(line)
        self._fan_out({"type": EVENT_GLOBAL_LOG, "data": line})

    def publish_status(self, instance_id: str, status: str, *, exit_code: int | None = None) -> None:
        event: dict[str, Any] = {"type": EVENT_STATUS, "instanceId": instance_id, "data": status}
        if exit_code is not None:
            event["exitCode"] = exit_code
        self._fan_out(event)

    def publish_terminal(self, instance_id: str, line: str) -> None:
        self.aggregator.append_terminal(instance_id, line)
        self._fan_out({"type": EVENT_TERMINAL_OUTPUT, "instanceId": instance_id, "data": line})

    def publish_terminal_state(self, instance_id: str, opened: bool) -> None:
        if opened:
            self._open_terminals.add(instance_id)
            self._fan_out({"type": EVENT_TERMINAL_OPENED, "instanceId": instance_id})
        else:
            self._open_terminals.discard(instance_id)
            self._fan_out({"type": EVENT_TERMINAL_CLOSED, "instanceId": instance_id})

    def close_all(self) -> None:
        for observer in list(self._observers):
            observer.close()
        self._observers.clear()
