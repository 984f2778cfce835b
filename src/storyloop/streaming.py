from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

MAX_LINE_BYTES = 1024 * 1024
VERBOSE_PREFIX_LENGTH = 4
VERBOSE_TIMESTAMP_MIN_LENGTH = 10
TIMESTAMP_CONTEXT_LENGTH = 30

VERBOSE_LEVEL_PREFIXES = ("INFO", "DEBU", "WARN", "ERRO")
VERBOSE_MARKERS = (
    "service=bus",
    "type=message.",
    "publishing",
    "subscribing",
    "service=provider",
    "service=session",
    "service=lsp",
    "service=file",
    "service=default",
    " tracking",
    "cwd=/",
    "git=/",
    "stderr=",
    "Checked ",
    "installed @",
    "[1.00ms]",
    "[2.00ms]",
    "ms] done",
    "Saved lockfile",
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class OutputLine:
    text: str
    is_error: bool = False
    verbose: bool = False
    at: datetime = field(default_factory=_utcnow)


LineSink = Callable[[OutputLine], Awaitable[None]]
LineTransform = Callable[[str, bool], list[OutputLine]]


def is_verbose_line(line: str) -> bool:
    """Classify framework chatter that presenters may hide."""
    prefix = line[:VERBOSE_PREFIX_LENGTH]
    if len(line) >= VERBOSE_PREFIX_LENGTH and prefix in VERBOSE_LEVEL_PREFIXES:
        head = line[:TIMESTAMP_CONTEXT_LENGTH]
        if len(line) > VERBOSE_TIMESTAMP_MIN_LENGTH and "T" in head and ":" in head:
            return True
    return any(marker in line for marker in VERBOSE_MARKERS)


def plain_lines(text: str, is_error: bool) -> list[OutputLine]:
    return [OutputLine(text=text, is_error=is_error, verbose=is_verbose_line(text))]


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


async def iter_lines(reader: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield newline-delimited lines, reassembling lines longer than the buffer."""
    pending = bytearray()
    while True:
        try:
            chunk = await reader.readuntil(b"\n")
        except asyncio.LimitOverrunError as exc:
            pending.extend(await reader.readexactly(exc.consumed))
            continue
        except asyncio.IncompleteReadError as exc:
            pending.extend(exc.partial)
            if pending:
                text = _decode(bytes(pending))
                if text.strip():
                    yield text
            return
        pending.extend(chunk)
        text = _decode(bytes(pending))
        pending.clear()
        if text.strip():
            yield text


async def _pump(
    reader: asyncio.StreamReader | None,
    sink: LineSink,
    transform: LineTransform,
    *,
    is_error: bool,
) -> None:
    if reader is None:
        return
    async for text in iter_lines(reader):
        for line in transform(text, is_error):
            await sink(line)


async def multiplex(
    stdout: asyncio.StreamReader | None,
    stderr: asyncio.StreamReader | None,
    sink: LineSink,
    *,
    stdout_transform: LineTransform = plain_lines,
    stderr_transform: LineTransform = plain_lines,
) -> None:
    """Drain both streams concurrently into ``sink``; return once both hit EOF.

    Order is preserved within a stream. Lines from different streams interleave
    in whatever order the readers observe them.
    """
    tasks = [
        asyncio.ensure_future(_pump(stdout, sink, stdout_transform, is_error=False)),
        asyncio.ensure_future(_pump(stderr, sink, stderr_transform, is_error=True)),
    ]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
