"""Server-Sent Events codec.

Encoding is two lines per record (``event:`` then ``data:``) followed by a
blank line.  Decoding is incremental and agnostic to how the byte stream was
cut into network reads: bytes are fed in as they arrive, complete records are
split off at ``\\n\\n``, and whatever is left when the producer closes the
stream is flushed as one final record.

On top of the raw ``SseEvent`` sequence, ``interpret_event`` produces the
typed bridge events (``StreamMetadata | StreamChunk | StreamDone |
StreamFault | StreamOther``) that every protocol translator folds over.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any, Union

from lmbridge.errors import TranslationError

__all__ = [
    "SseEvent",
    "SseDecoder",
    "encode_event",
    "encode_data",
    "parse_record",
    "aiter_sse_events",
    "StreamMetadata",
    "StreamChunk",
    "StreamDone",
    "StreamFault",
    "StreamOther",
    "BridgeEvent",
    "interpret_event",
    "aiter_bridge_events",
]

SESSION_STATUSES = ("completed", "cancelled", "failed")


@dataclass(frozen=True)
class SseEvent:
    name: str
    data: Any = None


def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def encode_event(name: str, data: Any) -> str:
    """Serialize one named event; the trailing blank line terminates it."""
    return f"event: {name}\ndata: {_dumps(data)}\n\n"


def encode_data(data: Any) -> str:
    """Serialize an unnamed ``data:`` record (OpenAI style).

    Strings are written verbatim so the ``[DONE]`` sentinel stays bare.
    """
    payload = data if isinstance(data, str) else _dumps(data)
    return f"data: {payload}\n\n"


def parse_record(raw: str) -> SseEvent | None:
    """Parse one raw record (the text between two ``\\n\\n`` delimiters).

    Returns ``None`` for records made only of blanks and comments.
    Raises ``TranslationError`` when the joined data is not valid JSON.
    """
    if not raw.strip():
        return None

    name = "message"
    data_lines: list[str] = []
    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, sep, value = line.partition(":")
        if not sep:
            continue
        if value.startswith(" "):
            value = value[1:]
        field = field.strip()
        if field == "event":
            name = value
        elif field == "data":
            data_lines.append(value)

    if not data_lines and name == "message":
        return None

    data_str = "\n".join(data_lines)
    if not data_str:
        return SseEvent(name, None)
    try:
        return SseEvent(name, json.loads(data_str))
    except ValueError as exc:
        raise TranslationError(
            f"Invalid JSON payload for {name} event", body=data_str, details={"cause": str(exc)}
        ) from exc


class SseDecoder:
    """Incremental decoder: ``feed()`` bytes as they arrive, ``flush()`` at EOF."""

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")()

    def feed(self, chunk: bytes | str) -> list[SseEvent]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        # a lone '\r' may be the first half of '\r\n'; keep it until more arrives
        self._buffer = self._buffer.replace("\r\n", "\n")
        return self._drain()

    def flush(self) -> list[SseEvent]:
        self._buffer += self._utf8.decode(b"", final=True)
        self._buffer = self._buffer.replace("\r\n", "\n")
        events = self._drain()
        rest, self._buffer = self._buffer, ""
        if rest.strip():
            event = parse_record(rest)
            if event is not None:
                events.append(event)
        return events

    def _drain(self) -> list[SseEvent]:
        events: list[SseEvent] = []
        while True:
            idx = self._buffer.find("\n\n")
            if idx == -1:
                return events
            raw, self._buffer = self._buffer[:idx], self._buffer[idx + 2 :]
            event = parse_record(raw)
            if event is not None:
                events.append(event)


async def aiter_sse_events(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[SseEvent]:
    """Decode an async byte stream into SSE events, lazily."""
    decoder = SseDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
    for event in decoder.flush():
        yield event


# ---------------------------------------------------------------------------
# Typed bridge events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamMetadata:
    data: Any


@dataclass(frozen=True)
class StreamChunk:
    text: str


@dataclass(frozen=True)
class StreamDone:
    status: str = "completed"


@dataclass(frozen=True)
class StreamFault:
    status_code: int = 502
    message: str = "Streaming error"


@dataclass(frozen=True)
class StreamOther:
    """An event name this version does not know; forwarded untouched."""

    name: str
    data: Any


BridgeEvent = Union[StreamMetadata, StreamChunk, StreamDone, StreamFault, StreamOther]


def interpret_event(event: SseEvent) -> BridgeEvent:
    data = event.data if isinstance(event.data, dict) else {}

    if event.name == "metadata":
        return StreamMetadata(event.data)

    if event.name == "chunk":
        text = data.get("text")
        return StreamChunk(text if isinstance(text, str) else "")

    if event.name == "done":
        status = data.get("status")
        return StreamDone(status if status in SESSION_STATUSES else "completed")

    if event.name == "error":
        status_code = data.get("statusCode")
        message = data.get("message")
        return StreamFault(
            status_code if isinstance(status_code, int) and not isinstance(status_code, bool) else 502,
            message if isinstance(message, str) else "Streaming error",
        )

    return StreamOther(event.name, event.data)


async def aiter_bridge_events(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[BridgeEvent]:
    async for event in aiter_sse_events(chunks):
        yield interpret_event(event)
