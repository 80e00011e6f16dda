# Proxy routes: Ollama (/api/*) and OpenAI (/v1/*) surfaces over the bridge.
# Created: 2026-10-18
#
# Streaming routes open the bridge stream before returning, so a bridge
# error is still answered with a proper status code. After that, the stream
# and its telemetry are owned by the response's close hook.

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AsyncExitStack
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse, Response

from lmbridge.errors import BridgeError
from lmbridge.logging_setup import log_event
from lmbridge.outcome import ChatOutcomeTracker, SessionStatus
from lmbridge.proxy.client import BridgeClient
from lmbridge.proxy.mapping import (
    OllamaChatRequest,
    OllamaGenerateRequest,
    OpenAIChatRequest,
    OpenAIRequestError,
    chat_payload,
    completion_id,
    generate_payload,
    openai_payload,
    validate_openai_request,
)
from lmbridge.proxy.model_select import ModelSelector
from lmbridge.proxy.ndjson import created_at, translate_ndjson
from lmbridge.proxy.openai_compat import (
    build_completion,
    error_type_for,
    openai_error,
    translate_openai,
)
from lmbridge.sse import BridgeEvent
from lmbridge.streaming import SSE_HEADERS, ClosingStreamingResponse

logger = logging.getLogger(__name__)

router = APIRouter()

Translate = Callable[[AsyncIterator[BridgeEvent], ChatOutcomeTracker], AsyncIterator[str]]

_FINISH_LEVELS = {
    SessionStatus.COMPLETED: logging.INFO,
    SessionStatus.CANCELLED: logging.WARNING,
    SessionStatus.FAILED: logging.ERROR,
}


def get_client(request: Request) -> BridgeClient:
    return request.app.state.client


def get_selector(request: Request) -> ModelSelector:
    return request.app.state.selector


async def stream_from_bridge(
    client: BridgeClient,
    payload: dict[str, Any],
    translate: Translate,
    *,
    route: str,
    model: str,
    media_type: str,
) -> Response:
    """Open the bridge stream and hand it to a translator-backed response."""
    stack = AsyncExitStack()
    try:
        response = await stack.enter_async_context(client.chat_stream(payload))
    except BaseException:
        await stack.aclose()
        raise

    tracker = ChatOutcomeTracker()
    # stays cancelled if the body never runs; every translator exit sets a status
    tracker.cancel()
    started = time.monotonic()
    body = translate(client.iter_events(response), tracker)

    async def close() -> None:
        try:
            await body.aclose()
        finally:
            await stack.aclose()
        if not tracker.finalize():
            return
        log_event(
            logger,
            _FINISH_LEVELS[tracker.status],
            "proxy.stream.finished",
            route=route,
            model=model,
            durationMs=round((time.monotonic() - started) * 1000),
            **tracker.to_fields(),
        )

    return ClosingStreamingResponse(body, media_type=media_type, headers=SSE_HEADERS, on_close=close)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get("/")
async def root(request: Request):
    return {"status": "ok", "service": "lmbridge-proxy", "upstream": request.app.state.client.base_url}


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


@router.get("/api/tags")
async def tags(client: BridgeClient = Depends(get_client)):
    models = await client.list_models()
    return {
        "models": [
            {
                "name": model.get("id"),
                "modified_at": None,
                "size": None,
                "digest": None,
                "details": {
                    "format": None,
                    "family": model.get("family"),
                    "families": None,
                    "parameter_size": None,
                    "quantization_level": None,
                },
            }
            for model in models
        ]
    }


@router.post("/api/generate")
async def generate(
    body: OllamaGenerateRequest,
    client: BridgeClient = Depends(get_client),
    selector: ModelSelector = Depends(get_selector),
):
    selection = await selector.select_model_id(body.model)
    payload = generate_payload(body, selection.resolved_id)
    model = selection.used_id or body.model

    if body.stream:
        return await stream_from_bridge(
            client,
            payload,
            lambda events, tracker: translate_ndjson(events, "generate", model, tracker),
            route="/api/generate",
            model=model,
            media_type="application/x-ndjson",
        )

    out = await client.chat_json(payload)
    return {
        "model": model,
        "created_at": created_at(),
        "response": out.get("output") or "",
        "done": True,
    }


@router.post("/api/chat")
async def chat(
    body: OllamaChatRequest,
    client: BridgeClient = Depends(get_client),
    selector: ModelSelector = Depends(get_selector),
):
    selection = await selector.select_model_id(body.model)
    payload = chat_payload(body, selection.resolved_id)
    model = selection.used_id or body.model

    if body.stream:
        return await stream_from_bridge(
            client,
            payload,
            lambda events, tracker: translate_ndjson(events, "chat", model, tracker),
            route="/api/chat",
            model=model,
            media_type="application/x-ndjson",
        )

    out = await client.chat_json(payload)
    return {
        "model": model,
        "created_at": created_at(),
        "message": {"role": "assistant", "content": out.get("output") or ""},
        "done": True,
    }


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


@router.get("/v1/models")
async def openai_models(client: BridgeClient = Depends(get_client)):
    models = await client.list_models()
    return {
        "object": "list",
        "data": [
            {
                "id": model.get("id"),
                "object": "model",
                "created": 0,
                "owned_by": model.get("vendor") or "lmbridge",
            }
            for model in models
        ],
    }


@router.post("/v1/chat/completions")
async def chat_completions(
    body: OpenAIChatRequest,
    client: BridgeClient = Depends(get_client),
    selector: ModelSelector = Depends(get_selector),
):
    validate_openai_request(body)
    selection = await selector.select_model_id(body.model)
    payload = openai_payload(body, selection.resolved_id)
    model = selection.used_id or body.model or ""

    if body.stream:
        cid = completion_id()
        created = int(time.time())
        return await stream_from_bridge(
            client,
            payload,
            lambda events, tracker: translate_openai(
                events, model, tracker, completion_id=cid, created=created
            ),
            route="/v1/chat/completions",
            model=model,
            media_type="text/event-stream",
        )

    out = await client.chat_json(payload)
    return build_completion(model, out.get("output") or "")


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


def _is_openai(request: Request) -> bool:
    return request.url.path.startswith("/v1/")


async def bridge_error_handler(request: Request, exc: BridgeError) -> Response:
    if exc.status_code >= 500:
        logger.error("Proxy request %s failed: %s", request.url.path, exc.message)
    else:
        logger.info("Proxy request %s rejected (%s): %s", request.url.path, exc.status_code, exc.message)

    if _is_openai(request):
        if isinstance(exc, OpenAIRequestError):
            content = openai_error(exc.message, code=exc.code)
        else:
            content = openai_error(
                exc.message,
                error_type=error_type_for(exc.status_code),
                code=f"bridge_{exc.status_code}",
            )
        return JSONResponse(content, status_code=exc.status_code)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    first = exc.errors()[0] if exc.errors() else {}
    loc = [str(part) for part in first.get("loc", ()) if part != "body"]
    message = first.get("msg", "Invalid request")
    if loc:
        message = f"{'.'.join(loc)}: {message}"

    if _is_openai(request):
        return JSONResponse(
            openai_error(message, param=loc[0] if loc else None, code="invalid_request"),
            status_code=400,
        )
    return JSONResponse({"error": message}, status_code=400)
