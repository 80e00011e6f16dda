"""HTTP-facing core of the bridge: authorize, read, admit, dispatch.

Validation and auth failures are answered before an admission slot is taken.
Once admitted, a ``ChatSession`` owns the slot and gives it back in
``finish()``; for streamed responses that happens when the response closes.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from functools import partial

from fastapi import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from lmbridge.bridge.admission import AdmissionGate
from lmbridge.bridge.cancellation import watch_disconnect
from lmbridge.bridge.chat import (
    build_chat_messages,
    build_request_options,
    parse_chat_request,
)
from lmbridge.bridge.provider import ModelFilter, ModelInfo, ModelProvider
from lmbridge.bridge.session import ChatSession, SessionState
from lmbridge.config import Settings
from lmbridge.errors import (
    AuthError,
    ClientClosedError,
    NormalizedError,
    PayloadTooLargeError,
    ValidationError,
)
from lmbridge.streaming import SSE_HEADERS, ClosingStreamingResponse

logger = logging.getLogger(__name__)

MODEL_NOT_AVAILABLE = NormalizedError(404, "Requested model not available")
EMPTY_MESSAGE_LIST = NormalizedError(400, "Prompt resulted in empty message list")
MODELS_UNAVAILABLE = "Language Model API unavailable"


def prefers_event_stream(accept: str | None) -> bool:
    if not accept:
        return False
    return any(
        part.strip().lower().startswith("text/event-stream") for part in accept.split(",")
    )


class BridgeGateway:
    """Owns the admission gate and provider for one server lifetime."""

    def __init__(self, settings: Settings, provider: ModelProvider):
        self.settings = settings
        self.provider = provider
        self.gate = AdmissionGate(settings.max_concurrent, settings.effective_max_queue)
        self._ids = itertools.count(1)

    # -- guards --------------------------------------------------------------

    def authorize(self, header: str | None) -> None:
        token = self.settings.auth_token
        if not token:
            return
        if not header:
            logger.warning("Missing authorization header")
            raise AuthError()
        if header != f"Bearer {token}":
            logger.warning("Rejected request with an invalid bearer token")
            raise AuthError()

    async def read_body(self, request: Request) -> bytes:
        limit = self.settings.max_request_body
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > limit:
            raise PayloadTooLargeError()

        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > limit:
                raise PayloadTooLargeError()
        if not body:
            raise ValidationError("Empty request")
        return bytes(body)

    def health(self, request: Request) -> dict:
        host, port = self.settings.host, self.settings.port
        server = request.scope.get("server")
        if port == 0 and server:
            # ephemeral port: report what the listener actually bound
            port = server[1]
        return {
            "status": "ok",
            "host": host,
            "port": port,
            "activeRequests": self.gate.active,
            "queuedRequests": self.gate.queued,
        }

    # -- routes --------------------------------------------------------------

    async def list_models(self) -> Response:
        async with self.gate.slot(self.settings.effective_queue_timeout):
            try:
                models = await self.provider.select_models()
            except Exception as exc:
                logger.error("Failed to enumerate models: %s", exc)
                return PlainTextResponse(MODELS_UNAVAILABLE, status_code=503)
        return JSONResponse([m.summary() for m in models])

    async def _select_model(self, selector: ModelFilter | None) -> ModelInfo | None:
        logger.debug("Selecting language model")
        models = await self.provider.select_models(selector)
        return models[0] if models else None

    async def handle_chat(self, request: Request) -> Response:
        delivery = "stream" if prefers_event_stream(request.headers.get("accept")) else "json"
        chat_request = parse_chat_request(await self.read_body(request))

        session = ChatSession(next(self._ids), delivery)
        session.advance(SessionState.AUTHORIZED)
        await self.gate.acquire(self.settings.effective_queue_timeout)
        session.admitted(self.gate.release)

        has_prompt = chat_request.prompt is not None
        message_count = len(chat_request.messages) if chat_request.messages else int(has_prompt)
        session.log_started(has_prompt, message_count)

        handed_off = False
        try:
            model = await self._select_model(chat_request.model_filter)
            if model is None:
                return session.fail(MODEL_NOT_AVAILABLE)
            session.model_selected(model)

            messages = build_chat_messages(chat_request)
            if not messages:
                return session.fail(EMPTY_MESSAGE_LIST)
            options = build_request_options(chat_request)

            if session.stream:
                events = session.stream_events(self.provider, messages, options, has_prompt)
                handed_off = True
                return ClosingStreamingResponse(
                    events,
                    media_type="text/event-stream",
                    headers=SSE_HEADERS,
                    on_close=partial(session.close_stream, events),
                )

            watcher = asyncio.create_task(watch_disconnect(request, session.token))
            try:
                return await session.deliver_json(self.provider, messages, options)
            finally:
                watcher.cancel()

        except asyncio.CancelledError:
            session.cancelled()
            raise
        except Exception as exc:
            normalized = session.fail_from(exc)
            if session.token.is_cancelled:
                return PlainTextResponse(ClientClosedError.default_message, status_code=499)
            logger.error("Chat request failed: %s", normalized.message)
            return PlainTextResponse(normalized.message, status_code=normalized.status_code)
        finally:
            if not handed_off:
                session.finish()
