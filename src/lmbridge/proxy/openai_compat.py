# Bridge SSE -> OpenAI chat.completion.chunk translation.
# Created: 2026-10-18
#
# Every frame of one stream shares the completion id and `created` stamp.
# `data: [DONE]` is written exactly once, whichever way the stream ends.

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from lmbridge.errors import BridgeError, NormalizedError
from lmbridge.outcome import ChatOutcomeTracker
from lmbridge.proxy.mapping import completion_id as new_completion_id
from lmbridge.proxy.mapping import estimate_usage
from lmbridge.sse import BridgeEvent, StreamChunk, StreamDone, StreamFault, StreamMetadata, encode_data

logger = logging.getLogger(__name__)

SYSTEM_FINGERPRINT = "lmbridge"
DONE = "[DONE]"

FINISH_REASONS = {"completed": "stop", "cancelled": "cancelled"}

_ERROR_TYPES = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "invalid_request_error",
    413: "invalid_request_error",
    429: "rate_limit_error",
}


def openai_error(
    message: str,
    *,
    error_type: str = "invalid_request_error",
    param: str | None = None,
    code: str | None = None,
) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type, "param": param, "code": code}}


def error_type_for(status_code: int) -> str:
    return _ERROR_TYPES.get(status_code, "api_error")


def _model_from_metadata(data: Any) -> str | None:
    if isinstance(data, dict) and isinstance(data.get("model"), dict):
        model_id = data["model"].get("id")
        if isinstance(model_id, str):
            return model_id
    return None


def build_completion(
    model: str, output: str, *, completion_id: str | None = None, created: int | None = None
) -> dict[str, Any]:
    """Non-streaming ``chat.completion`` body with estimated usage."""
    return {
        "id": completion_id or new_completion_id(),
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "system_fingerprint": SYSTEM_FINGERPRINT,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": output},
                "logprobs": None,
                "finish_reason": "stop",
            }
        ],
        "usage": estimate_usage(output),
    }


class _ChunkWriter:
    def __init__(self, model: str, completion_id: str, created: int):
        self.model = model
        self.completion_id = completion_id
        self.created = created

    def frame(self, delta: dict[str, Any], finish_reason: str | None = None) -> str:
        return encode_data(
            {
                "id": self.completion_id,
                "object": "chat.completion.chunk",
                "created": self.created,
                "model": self.model,
                "system_fingerprint": SYSTEM_FINGERPRINT,
                "choices": [
                    {"index": 0, "delta": delta, "logprobs": None, "finish_reason": finish_reason}
                ],
            }
        )


async def translate_openai(
    events: AsyncIterable[BridgeEvent],
    model: str,
    tracker: ChatOutcomeTracker,
    *,
    completion_id: str | None = None,
    created: int | None = None,
) -> AsyncIterator[str]:
    """Fold bridge events into OpenAI streaming frames."""
    writer = _ChunkWriter(
        model,
        completion_id or new_completion_id(),
        created if created is not None else int(time.time()),
    )
    sent_role = False
    terminal = False
    fault: NormalizedError | None = None

    try:
        async for event in events:
            if isinstance(event, StreamMetadata):
                writer.model = _model_from_metadata(event.data) or writer.model
                if not sent_role:
                    sent_role = True
                    yield writer.frame({"role": "assistant", "content": ""})
            elif isinstance(event, StreamChunk):
                if not sent_role:
                    sent_role = True
                    yield writer.frame({"role": "assistant", "content": ""})
                if not event.text:
                    continue
                tracker.record_chunk(event.text)
                yield writer.frame({"content": event.text})
            elif isinstance(event, StreamDone):
                terminal = True
                if event.status == "cancelled":
                    tracker.cancel()
                elif event.status == "failed":
                    tracker.fail()
                else:
                    tracker.complete()
                yield writer.frame({}, FINISH_REASONS.get(event.status, "error"))
                yield encode_data(DONE)
                return
            elif isinstance(event, StreamFault):
                fault = NormalizedError(event.status_code, event.message)
                break
    except (asyncio.CancelledError, GeneratorExit):
        if not terminal:
            tracker.cancel()
        raise
    except BridgeError as exc:
        fault = exc.normalized()

    if fault is None:
        fault = NormalizedError(502, "Bridge stream ended without a terminal event")

    tracker.fail(fault)
    logger.warning("OpenAI stream failed (%s): %s", fault.status_code, fault.message)
    yield encode_data(
        openai_error(fault.message, error_type="proxy_error", code=f"bridge_{fault.status_code}")
    )
    yield encode_data(DONE)
