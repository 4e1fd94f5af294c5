"""Tests for bounded log history buffers."""

import unittest

from botlauncher.supervisor.log_buffer import (
    GLOBAL_LOG_CAPACITY,
    INSTANCE_LOG_CAPACITY,
    LogAggregator,
    LogBuffer,
)


class LogBufferTests(unittest.TestCase):
    def test_oldest_line_dropped_exactly_at_capacity_plus_one(self) -> None:
        buffer = LogBuffer(INSTANCE_LOG_CAPACITY)
        for index in range(INSTANCE_LOG_CAPACITY):
            buffer.append(f"line {index}")
        self.assertEqual(len(buffer), INSTANCE_LOG_CAPACITY)
        self.assertEqual(buffer.lines()[0], "line 0")

        buffer.append("line 1000")

        lines = buffer.lines()
        self.assertEqual(len(lines), INSTANCE_LOG_CAPACITY)
        self.assertEqual(lines[0], "line 1")
        self.assertEqual(lines[-1], "line 1000")

    def test_rejects_non_positive_capacity(self) -> None:
        with self.assertRaises(ValueError):
            LogBuffer(0)


class LogAggregatorTests(unittest.TestCase):
    def test_keys_are_independent_and_order_preserving(self) -> None:
        aggregator = LogAggregator()
        aggregator.append("a", "a1")
        aggregator.append("b", "b1")
        aggregator.append("a", "a2")

        self.assertEqual(aggregator.history("a"), ["a1", "a2"])
        self.assertEqual(aggregator.history("b"), ["b1"])
        self.assertEqual(aggregator.history("missing"), [])
        self.assertEqual(aggregator.instance_keys(), ["a", "b"])

    def test_global_and_terminal_buffers_use_smaller_capacity(self) -> None:
        aggregator = LogAggregator()
        for index in range(GLOBAL_LOG_CAPACITY + 25):
            aggregator.append_global(str(index))
            aggregator.append_terminal("a", str(index))

        self.assertEqual(len(aggregator.global_history()), GLOBAL_LOG_CAPACITY)
        self.assertEqual(aggregator.global_history()[0], "25")
        self.assertEqual(len(aggregator.terminal_history("a")), GLOBAL_LOG_CAPACITY)
        self.assertEqual(aggregator.history("a"), [])


if __name__ == "__main__":
    unittest.main()
