"""Line-oriented reading of child process output."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import AsyncIterator

logger = logging.getLogger("botlauncher.supervisor.streams")

_ANSI_RE = re.compile(r"[\u001b\u009b][\[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def clean_line(raw: bytes) -> str:
    """Decode one raw output line, drop colour codes and surrounding whitespace."""
    return strip_ansi(raw.decode("utf-8", errors="replace")).strip()


async def iter_lines(stream: asyncio.StreamReader | None) -> AsyncIterator[str]:
    """Yield non-empty cleaned lines until EOF."""
    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # readline already discarded the oversized line
            logger.warning("Skipped an output line longer than the stream buffer")
            continue
        if not raw:
            return
        text = clean_line(raw)
        if text:
            yield text


async def pump_lines(stream: asyncio.StreamReader | None, queue: asyncio.Queue) -> None:
    """Copy lines from stream into queue, then queue None to mark EOF."""
    try:
        async for line in iter_lines(stream):
            await queue.put(line)
    finally:
        await queue.put(None)
