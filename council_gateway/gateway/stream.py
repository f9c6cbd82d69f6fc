"""Incremental decoders for vendor streaming formats.

Two wire formats are supported:

  - Simple event stream (OpenAI-compatible, Gemini ``alt=sse``): one
    ``data: {json}`` line per frame, terminated by ``data: [DONE]``.
    The delta text sits at a fixed JSON pointer inside each payload.
  - Named-event stream (Anthropic): blank-line separated blocks with an
    ``event:`` name and one or more ``data:`` lines. Only
    ``content_block_delta`` blocks produce output.

Decoders are fed raw byte chunks split at arbitrary boundaries. Only complete
lines/blocks are consumed; the unterminated tail stays buffered until the
next chunk (or ``finish()`` at end of stream). Invalid JSON raises
ProtocolError and ends the sequence.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any, Protocol

from council_gateway.gateway.errors import ProtocolError
from council_gateway.gateway.types import StreamEvent

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
OPENAI_DELTA_POINTER = "/choices/0/delta/content"
GEMINI_DELTA_POINTER = "/candidates/0/content/parts/0/text"
ANTHROPIC_DELTA_EVENT = "content_block_delta"


def json_pointer(value: Any, pointer: str) -> Any:
    """Resolve an RFC 6901 pointer; returns None when any step is missing."""
    if pointer == "":
        return value
    current = value
    for token in pointer.lstrip("/").split("/"):
        token = token.replace("~1", "/").replace("~0", "~")
        if isinstance(current, dict):
            if token not in current:
                return None
            current = current[token]
        elif isinstance(current, list):
            if not token.isdigit() or int(token) >= len(current):
                return None
            current = current[int(token)]
        else:
            return None
    return current


def _loads(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"malformed stream payload: {e.msg} in {payload[:200]!r}") from e


class StreamDecoder(Protocol):
    done: bool

    def feed(self, chunk: bytes) -> list[StreamEvent]: ...

    def finish(self) -> list[StreamEvent]: ...


class _BufferedDecoder:
    """UTF-8 aware text buffer shared by both decoders."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self.done = False

    def _append(self, chunk: bytes | str) -> None:
        if isinstance(chunk, bytes):
            try:
                chunk = self._utf8.decode(chunk)
            except UnicodeDecodeError as e:
                raise ProtocolError(f"stream is not valid UTF-8: {e}") from e
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")


class SSEDecoder(_BufferedDecoder):
    """Decoder for ``data:``-line streams."""

    def __init__(self, content_pointer: str = OPENAI_DELTA_POINTER) -> None:
        super().__init__()
        self.content_pointer = content_pointer

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if self.done:
            return []
        self._append(chunk)
        events: list[StreamEvent] = []
        while not self.done and "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            event = self._handle_line(line)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> list[StreamEvent]:
        """Flush a final line that arrived without a trailing newline."""
        if self.done or not self._buffer.strip():
            self._buffer = ""
            return []
        line, self._buffer = self._buffer, ""
        event = self._handle_line(line)
        return [event] if event is not None else []

    def _handle_line(self, line: str) -> StreamEvent | None:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        data = line[len("data:") :].strip()
        if not data:
            return None
        if data == DONE_SENTINEL:
            self.done = True
            return None
        value = _loads(data)
        content = json_pointer(value, self.content_pointer)
        return StreamEvent(delta=content if isinstance(content, str) else "", raw=value)


class NamedEventDecoder(_BufferedDecoder):
    """Decoder for ``event:``/``data:`` block streams."""

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if self.done:
            return []
        self._append(chunk)
        events: list[StreamEvent] = []
        while not self.done and "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            event = self._handle_block(block)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> list[StreamEvent]:
        if self.done or not self._buffer.strip():
            self._buffer = ""
            return []
        block, self._buffer = self._buffer, ""
        event = self._handle_block(block)
        return [event] if event is not None else []

    def _handle_block(self, block: str) -> StreamEvent | None:
        name: str | None = None
        data_lines: list[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            if line.startswith("event:"):
                name = line[len("event:") :].strip()
            elif line.startswith("data:"):
                data_lines.append(line[len("data:") :].lstrip(" "))

        if not data_lines:
            return None

        value = _loads("\n".join(data_lines))
        if name is None and isinstance(value, dict):
            name = value.get("type")

        if name == "error":
            error = value.get("error", {}) if isinstance(value, dict) else {}
            raise ProtocolError(f"stream error event: {error.get('type', 'error')}: {error.get('message', value)}")
        if name == "message_stop":
            self.done = True
            return None
        if name != ANTHROPIC_DELTA_EVENT:
            return None

        text = json_pointer(value, "/delta/text")
        return StreamEvent(delta=text if isinstance(text, str) else "", raw=value)


async def decode_stream(
    chunks: AsyncIterable[bytes],
    decoder: StreamDecoder,
) -> AsyncIterator[StreamEvent]:
    """Drive a decoder over an async byte source, yielding events lazily."""
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.done:
            return
    for event in decoder.finish():
        yield event
