"""Tests for output line decoding and colour-code stripping."""

import asyncio
import unittest

from botlauncher.supervisor.streams import clean_line, iter_lines, pump_lines, strip_ansi


class StripAnsiTests(unittest.TestCase):
    def test_colour_sequences_removed(self) -> None:
        self.assertEqual(strip_ansi("\x1b[32mready\x1b[0m"), "ready")
        self.assertEqual(strip_ansi("\x1b[1;31mERR\x1b[39;49m done"), "ERR done")

    def test_cursor_sequences_removed(self) -> None:
        self.assertEqual(strip_ansi("\x1b[2K\x1b[1Gprogress 50%"), "progress 50%")
        self.assertEqual(strip_ansi("\x1b[?25lhidden\x1b[?25h"), "hidden")

    def test_plain_text_untouched(self) -> None:
        self.assertEqual(strip_ansi("[INFO] port: 2536"), "[INFO] port: 2536")


class CleanLineTests(unittest.TestCase):
    def test_strips_codes_and_line_endings(self) -> None:
        self.assertEqual(clean_line(b"\x1b[33mwarn\x1b[0m\r\n"), "warn")

    def test_invalid_utf8_is_replaced(self) -> None:
        self.assertEqual(clean_line(b"\xffok\n"), "�ok")
        self.assertEqual(clean_line("启动完成\n".encode("utf-8")), "启动完成")


class IterLinesTests(unittest.IsolatedAsyncioTestCase):
    async def test_skips_blank_lines_and_stops_at_eof(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b"\x1b[32mone\x1b[0m\n\n   \ntwo\n")
        reader.feed_eof()

        lines = [line async for line in iter_lines(reader)]

        self.assertEqual(lines, ["one", "two"])

    async def test_oversized_line_is_skipped(self) -> None:
        reader = asyncio.StreamReader(limit=16)
        reader.feed_data(b"x" * 64 + b"\nafter\n")
        reader.feed_eof()

        lines = [line async for line in iter_lines(reader)]

        self.assertEqual(lines, ["after"])

    async def test_pump_marks_eof_with_none(self) -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(b"a\nb\n")
        reader.feed_eof()
        queue: asyncio.Queue = asyncio.Queue()

        await pump_lines(reader, queue)

        self.assertEqual([queue.get_nowait() for _ in range(3)], ["a", "b", None])


if __name__ == "__main__":
    unittest.main()
