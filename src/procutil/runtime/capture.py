"""Output capture: per-run state, stream pumps and the merge sink.

One pump runs per redirected stream. Both pumps append to the same
CaptureState buffer (a deque, whose append is thread-safe) and, in streaming
mode, forward to a MergeSink that a single consumer drains in arrival order.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from itertools import islice
from typing import NamedTuple

__all__ = [
    "Stream",
    "OutputLine",
    "MergeSink",
    "CaptureState",
    "pump_stream",
]

logger = logging.getLogger(__name__)

# Read size per pump iteration
CHUNK_SIZE = 4096


class Stream(str, Enum):
    """Which pipe a line came from."""

    STDOUT = "stdout"
    STDERR = "stderr"


class OutputLine(NamedTuple):
    """A captured line and its source stream."""

    stream: Stream
    text: str

    def render(self, stderr_prefix: str) -> str:
        """Return stdout text unchanged and stderr text tagged with the prefix."""
        if self.stream is Stream.STDERR:
            return stderr_prefix + self.text
        return self.text


_CLOSED = object()


class MergeSink:
    """Single-consumer ordered queue fed by up to two pumps.

    Lines come out in the order they were put. close() is idempotent; once the
    consumer has seen the close marker, further iteration yields nothing.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._exhausted = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, line: str) -> None:
        if self._closed:
            raise RuntimeError("MergeSink is closed")
        self._queue.put_nowait(line)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


@dataclass
class CaptureState:
    """Capture state owned by exactly one running process.

    Attributes:
        logger: Destination for captured lines when log is on
        log: Log each captured line
        encoding: Encoding used to decode the pipes
        stderr_prefix: Tag for stderr lines in rendered output
        stderr_level: Log level for stderr lines
        sink: Merge sink for streaming consumers (None = buffer only)
        lines: Append-only buffer in arrival order
        stdout_done: Set once stdout reaches end-of-stream
        stderr_done: Set once stderr reaches end-of-stream
    """

    logger: logging.Logger
    log: bool = True
    encoding: str = "utf-8"
    stderr_prefix: str = "ERROR: "
    stderr_level: int = logging.ERROR
    sink: MergeSink | None = None
    lines: deque[OutputLine] = field(default_factory=deque)
    stdout_done: asyncio.Event = field(default_factory=asyncio.Event)
    stderr_done: asyncio.Event = field(default_factory=asyncio.Event)

    def done_event(self, stream: Stream) -> asyncio.Event:
        return self.stdout_done if stream is Stream.STDOUT else self.stderr_done

    def append(self, stream: Stream, text: str) -> None:
        """Record one line from a pump."""
        line = OutputLine(stream, text)
        self.lines.append(line)

        if self.sink is not None:
            self.sink.put(line.render(self.stderr_prefix))

        if self.log:
            level = logging.INFO if stream is Stream.STDOUT else self.stderr_level
            if self.logger.isEnabledFor(level):
                self.logger.log(level, text)

    def rendered(self) -> list[str]:
        """All captured lines in arrival order, stderr tagged."""
        return [line.render(self.stderr_prefix) for line in self.lines]

    def stream_text(self, stream: Stream) -> list[str]:
        """Lines of a single stream, untagged."""
        return [line.text for line in self.lines if line.stream is stream]

    def tail(self, limit: int) -> list[str]:
        """Last `limit` rendered lines, oldest first.

        Walks the deque from the right so the cost depends on `limit`,
        not on the buffer size.
        """
        if limit <= 0 or not self.lines:
            return []
        try:
            recent = list(islice(reversed(self.lines), limit))
        except RuntimeError:
            # deque mutated during iteration
            recent = list(islice(reversed(self.lines.copy()), limit))
        recent.reverse()
        return [line.render(self.stderr_prefix) for line in recent]


async def pump_stream(
    reader: asyncio.StreamReader,
    stream: Stream,
    state: CaptureState,
) -> None:
    """Drain one pipe line by line until end-of-stream.

    Lines split on "\\n" with a trailing "\\r" removed; a final unterminated
    line is flushed at EOF. Cancellation stops the pump quietly. The
    stream's completion event is set on every exit path.

    Args:
        reader: The process pipe
        stream: Which pipe this is
        state: Shared capture state
    """
    done = state.done_event(stream)
    decoder = codecs.getincrementaldecoder(state.encoding)(errors="replace")
    # Pieces of the current unterminated line, joined once it ends
    pending: list[str] = []

    try:
        while True:
            chunk = await reader.read(CHUNK_SIZE)
            if not chunk:
                pending.append(decoder.decode(b"", final=True))
                last = "".join(pending)
                if last:
                    state.append(stream, last.rstrip("\r"))
                break

            text = decoder.decode(chunk)
            if "\n" not in text:
                if text:
                    pending.append(text)
                continue

            first, *complete = text.split("\n")
            rest = complete.pop()
            pending.append(first)
            state.append(stream, "".join(pending).rstrip("\r"))
            for line in complete:
                state.append(stream, line.rstrip("\r"))
            pending = [rest] if rest else []
    except asyncio.CancelledError:
        logger.debug(f"{stream.value} pump cancelled")
    finally:
        done.set()
