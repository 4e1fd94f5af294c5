"""Bounded in-memory log history for instances, terminals and the launcher itself."""

from __future__ import annotations

from collections import deque

INSTANCE_LOG_CAPACITY = 1000
GLOBAL_LOG_CAPACITY = 500
TERMINAL_LOG_CAPACITY = 500


class LogBuffer:
    """FIFO of text lines that evicts the oldest line once over capacity."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._lines: deque[str] = deque(maxlen=capacity)

    def append(self, line: str) -> None:
        self._lines.append(line)

    def lines(self) -> list[str]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


class LogAggregator:
    """Per-instance buffers, per-instance terminal buffers and one global buffer.

    Buffers live as long as the launcher process; instance restarts keep
    appending to the same buffer.
    """

    def __init__(
        self,
        *,
        instance_capacity: int = INSTANCE_LOG_CAPACITY,
        global_capacity: int = GLOBAL_LOG_CAPACITY,
        terminal_capacity: int = TERMINAL_LOG_CAPACITY,
    ) -> None:
        self.instance_capacity = instance_capacity
        self.terminal_capacity = terminal_capacity
        self._instances: dict[str, LogBuffer] = {}
        self._terminals: dict[str, LogBuffer] = {}
        self._global = LogBuffer(global_capacity)

    def append(self, instance_id: str, line: str) -> None:
        buffer = self._instances.get(instance_id)
        if buffer is None:
            buffer = self._instances[instance_id] = LogBuffer(self.instance_capacity)
        buffer.append(line)

    def append_global(self, line: str) -> None:
        self._global.append(line)

    def append_terminal(self, instance_id: str, line: str) -> None:
        buffer = self._terminals.get(instance_id)
        if buffer is None:
            buffer = self._terminals[instance_id] = LogBuffer(self.terminal_capacity)
        buffer.append(line)

    def history(self, instance_id: str) -> list[str]:
        buffer = self._instances.get(instance_id)
        return buffer.lines() if buffer else []

    def global_history(self) -> list[str]:
        return self._global.lines()

    def terminal_history(self, instance_id: str) -> list[str]:
        buffer = self._terminals.get(instance_id)
        return buffer.lines() if buffer else []

    def instance_keys(self) -> list[str]:
        return list(self._instances)

    def terminal_keys(self) -> list[str]:
        return list(self._terminals)
