"""Incremental capture of agent output streams.

Each captured stream feeds two consumers at once: a live sink meant for a
human watching the session, and an accumulator holding the raw text that is
later parsed for structured output.  In JSONL mode the live rendering goes
through a per-agent line formatter, the accumulator never does.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Any, Callable, Optional, Protocol

__all__ = [
    "LineFormatter",
    "READ_CHUNK_SIZE",
    "StreamCapture",
    "StreamCaptureError",
    "TextSink",
    "capture_stream",
]

LOGGER = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

# Returns a rendering, "" to suppress the line, or None to forward it verbatim.
LineFormatter = Callable[[str], Optional[str]]


class TextSink(Protocol):
    def write(self, text: str) -> Any: ...

    def flush(self) -> Any: ...


class StreamCaptureError(RuntimeError):
    """Raised when the underlying stream fails before reaching EOF."""

    def __init__(self, message: str, partial: str) -> None:
        super().__init__(message)
        self.partial = partial


class StreamCapture:
    """Forward a byte stream to a live sink while accumulating its raw text."""

    def __init__(self, sink: TextSink | None = None, formatter: LineFormatter | None = None) -> None:
        self._sink = sink
        self._formatter = formatter
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._chunks: list[str] = []
        self._line_buffer = ""
        self._finished = False
        self.error: BaseException | None = None

    @property
    def uses_jsonl(self) -> bool:
        return self._formatter is not None

    @property
    def text(self) -> str:
        """Raw text accumulated so far."""
        return "".join(self._chunks)

    def feed(self, data: bytes) -> None:
        """Decode ``data`` and route it to the sink and the accumulator."""
        self._accept(self._decoder.decode(data))

    def finish(self) -> str:
        """Flush decoder state and any trailing partial line."""
        if self._finished:
            return self.text
        self._finished = True
        self._accept(self._decoder.decode(b"", final=True))
        if self.uses_jsonl and self._line_buffer.strip():
            self._emit_line(self._line_buffer)
        self._line_buffer = ""
        return self.text

    async def consume(self, stream: asyncio.StreamReader | None) -> str:
        """Read ``stream`` to EOF and return the accumulated raw text."""
        if stream is None:
            return self.finish()
        try:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self.feed(chunk)
        except (OSError, ValueError) as error:
            self.error = error
            partial = self.finish()
            raise StreamCaptureError(f"Stream read failed: {error}", partial) from error
        return self.finish()

    def _accept(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text)
        if not self.uses_jsonl:
            self._write(text)
            return

        self._line_buffer += text
        *lines, self._line_buffer = self._line_buffer.split("\n")
        for line in lines:
            if line.strip():
                self._emit_line(line)

    def _emit_line(self, line: str) -> None:
        assert self._formatter is not None
        try:
            formatted = self._formatter(line)
        except (ValueError, TypeError, KeyError, AttributeError):
            LOGGER.debug("Line formatter rejected output line", exc_info=True)
            formatted = None

        if formatted is None:
            self._write(f"{line}\n")
        elif formatted:
            self._write(f"{formatted}\n\n")

    def _write(self, text: str) -> None:
        if self._sink is None:
            return
        self._sink.write(text)
        self._sink.flush()


async def capture_stream(
    stream: asyncio.StreamReader | None,
    sink: TextSink | None,
    formatter: LineFormatter | None = None,
) -> str:
    """Capture ``stream`` into a string while echoing it to ``sink``."""
    return await StreamCapture(sink, formatter).consume(stream)
