# Bridge SSE -> Ollama NDJSON translation.
# Created: 2026-10-18
#
# One JSON object per line. NDJSON has no error frame, so every way out of
# the stream (done, error, bad frame, truncation) ends with a `done: true`
# line and the outcome tracker records what really happened.

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from datetime import UTC, datetime
from typing import Any, Literal

from lmbridge.errors import BridgeError, NormalizedError
from lmbridge.outcome import ChatOutcomeTracker
from lmbridge.sse import BridgeEvent, StreamChunk, StreamDone, StreamFault

logger = logging.getLogger(__name__)

StreamKind = Literal["generate", "chat"]

TRUNCATED = NormalizedError(502, "Bridge stream ended without a terminal event")


def created_at() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _line(obj: dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False) + "\n"


def chunk_line(kind: StreamKind, model: str, text: str) -> str:
    if kind == "generate":
        return _line({"model": model, "created_at": created_at(), "response": text, "done": False})
    return _line(
        {
            "model": model,
            "created_at": created_at(),
            "message": {"role": "assistant", "content": text, "images": None},
            "done": False,
        }
    )


def done_line(kind: StreamKind, model: str, *, failed: bool = False) -> str:
    obj: dict[str, Any] = {"model": model, "created_at": created_at()}
    if kind == "generate" and not failed:
        obj["response"] = ""
    obj["done"] = True
    return _line(obj)


async def translate_ndjson(
    events: AsyncIterable[BridgeEvent],
    kind: StreamKind,
    model: str,
    tracker: ChatOutcomeTracker,
) -> AsyncIterator[str]:
    """Fold bridge events into Ollama NDJSON lines."""
    terminal = False
    try:
        async for event in events:
            if isinstance(event, StreamChunk):
                if not event.text:
                    continue
                tracker.record_chunk(event.text)
                yield chunk_line(kind, model, event.text)
            elif isinstance(event, StreamDone):
                terminal = True
                if event.status == "cancelled":
                    tracker.cancel()
                elif event.status == "failed":
                    tracker.fail()
                else:
                    tracker.complete()
                yield done_line(kind, model)
                return
            elif isinstance(event, StreamFault):
                terminal = True
                tracker.fail(NormalizedError(event.status_code, event.message))
                logger.warning("Bridge stream error %s: %s", event.status_code, event.message)
                yield done_line(kind, model, failed=True)
                return
            # metadata and unknown events carry nothing for Ollama clients
    except (asyncio.CancelledError, GeneratorExit):
        if not terminal:
            tracker.cancel()
        raise
    except BridgeError as exc:
        tracker.fail(exc.normalized())
        logger.warning("Bridge stream broke: %s", exc.message)
        yield done_line(kind, model, failed=True)
        return

    tracker.fail(TRUNCATED)
    logger.warning(TRUNCATED.message)
    yield done_line(kind, model, failed=True)
