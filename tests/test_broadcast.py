"""Tests for observer replay and live fan-out ordering."""

import unittest

from botlauncher.supervisor.broadcast import (
    EVENT_GLOBAL_LOG,
    EVENT_LOG,
    EVENT_STATUS,
    EVENT_TERMINAL_OPENED,
    EVENT_TERMINAL_OUTPUT,
    EVENT_WELCOME,
    BroadcastChannel,
)


class BroadcastChannelTests(unittest.IsolatedAsyncioTestCase):
    async def test_replay_precedes_live_events(self) -> None:
        channel = BroadcastChannel()
        for index in range(3):
            channel.publish_log("alpha", f"alpha {index}")
        channel.publish_global("boot")
        channel.publish_global("ready")

        observer = channel.subscribe()
        channel.publish_log("alpha", "live")

        events = observer.drain()
        self.assertEqual(events[0]["type"], EVENT_WELCOME)
        replayed = [(event["type"], event["data"]) for event in events[1:-1]]
        self.assertEqual(
            replayed,
            [
                (EVENT_GLOBAL_LOG, "boot"),
                (EVENT_GLOBAL_LOG, "ready"),
                (EVENT_LOG, "alpha 0"),
                (EVENT_LOG, "alpha 1"),
                (EVENT_LOG, "alpha 2"),
            ],
        )
        self.assertEqual(events[-1], {"type": EVENT_LOG, "instanceId": "alpha", "data": "live"})

    async def test_status_events_are_not_replayed(self) -> None:
        channel = BroadcastChannel()
        channel.publish_status("alpha", "running")
        observer = channel.subscribe()

        events = observer.drain()
        self.assertEqual([event["type"] for event in events], [EVENT_WELCOME])

        channel.publish_status("alpha", "stopped", exit_code=3)
        self.assertEqual(
            observer.drain(),
            [{"type": EVENT_STATUS, "instanceId": "alpha", "data": "stopped", "exitCode": 3}],
        )

    async def test_open_terminals_are_announced_on_subscribe(self) -> None:
        channel = BroadcastChannel()
        channel.publish_terminal("alpha", "$ ls")
        channel.publish_terminal_state("alpha", True)

        events = channel.subscribe().drain()
        self.assertIn({"type": EVENT_TERMINAL_OUTPUT, "instanceId": "alpha", "data": "$ ls"}, events)
        self.assertEqual(events[-1], {"type": EVENT_TERMINAL_OPENED, "instanceId": "alpha"})

    async def test_slow_observer_is_dropped_not_truncated(self) -> None:
        channel = BroadcastChannel(max_backlog=5)
        slow = channel.subscribe()
        for index in range(10):
            channel.publish_global(str(index))

        self.assertTrue(slow.overflowed)
        self.assertEqual(channel.observer_count, 0)
        self.assertIsNone(await _next_after_drain(slow))

    async def test_unsubscribe_closes_observer(self) -> None:
        channel = BroadcastChannel()
        observer = channel.subscribe()
        observer.drain()
        channel.unsubscribe(observer)
        channel.publish_global("after")

        self.assertEqual(channel.observer_count, 0)
        self.assertIsNone(await observer.next_event())


async def _next_after_drain(observer):
    observer.drain()
    return await observer.next_event()


if __name__ == "__main__":
    unittest.main()
