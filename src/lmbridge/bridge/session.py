"""Chat session state machine.

One ``ChatSession`` follows a request from receipt to a terminal state::

    received -> authorized -> admitted -> model_selected -> delivering
             -> completed | cancelled | failed

Whatever the path, ``finish()`` runs exactly once: it releases the admission
slot and emits the ``chat.request.finished`` telemetry record.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from enum import Enum
from typing import Any, Literal

from starlette.responses import JSONResponse, PlainTextResponse, Response

from lmbridge.bridge.cancellation import CANCELLED, EXHAUSTED, CancellationToken, next_fragment
from lmbridge.bridge.provider import ChatMessage, ModelInfo, ModelProvider
from lmbridge.errors import ClientClosedError, NormalizedError, normalize_language_model_error
from lmbridge.logging_setup import log_event
from lmbridge.outcome import ChatOutcomeTracker, SessionStatus
from lmbridge.sse import encode_event

logger = logging.getLogger(__name__)

Delivery = Literal["json", "stream"]


class SessionState(str, Enum):
    RECEIVED = "received"
    AUTHORIZED = "authorized"
    ADMITTED = "admitted"
    MODEL_SELECTED = "model_selected"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL_STATES = {
    SessionStatus.COMPLETED: SessionState.COMPLETED,
    SessionStatus.CANCELLED: SessionState.CANCELLED,
    SessionStatus.FAILED: SessionState.FAILED,
}

_FINISH_LEVELS = {
    SessionStatus.COMPLETED: logging.INFO,
    SessionStatus.CANCELLED: logging.WARNING,
    SessionStatus.FAILED: logging.ERROR,
}


def _client_closed() -> Response:
    return PlainTextResponse(ClientClosedError.default_message, status_code=ClientClosedError.status_code)


class ChatSession:
    def __init__(self, session_id: int, delivery: Delivery):
        self.id = session_id
        self.delivery = delivery
        self.state = SessionState.RECEIVED
        self.token = CancellationToken()
        self.tracker = ChatOutcomeTracker()
        self.model: ModelInfo | None = None
        self._started_at = time.monotonic()
        self._release: Callable[[], None] | None = None
        self._finished = False

    @property
    def stream(self) -> bool:
        return self.delivery == "stream"

    @property
    def finished(self) -> bool:
        return self._finished

    def advance(self, state: SessionState) -> None:
        logger.debug("Session %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state

    def admitted(self, release: Callable[[], None]) -> None:
        self._release = release
        self.advance(SessionState.ADMITTED)

    def log_started(self, has_prompt: bool, message_count: int) -> None:
        log_event(
            logger,
            logging.INFO,
            "chat.request.started",
            id=self.id,
            delivery=self.delivery,
            stream=self.stream,
            hasPrompt=has_prompt,
            messageCount=message_count,
        )

    def model_selected(self, model: ModelInfo) -> None:
        self.model = model
        self.advance(SessionState.MODEL_SELECTED)
        log_event(
            logger,
            logging.DEBUG,
            "chat.request.modelSelected",
            id=self.id,
            modelId=model.id,
            vendor=model.vendor,
            family=model.family,
            version=model.version,
        )

    def _require_model(self) -> ModelInfo:
        if self.model is None:
            raise RuntimeError(f"Session {self.id} has no selected model")
        return self.model

    def fail(self, error: NormalizedError) -> Response:
        """Mark the session failed and build the plain-text error response."""
        self.tracker.fail(error)
        return PlainTextResponse(error.message, status_code=error.status_code)

    def cancelled(self) -> None:
        self.token.cancel()
        self.tracker.cancel()

    def fail_from(self, exc: BaseException) -> NormalizedError:
        """Classify *exc*: cancelled if the client already left, failed otherwise."""
        normalized = normalize_language_model_error(exc)
        if self.token.is_cancelled:
            self.tracker.cancel()
        else:
            self.tracker.fail(normalized)
        return normalized

    def finish(self) -> None:
        """Release the slot and log the outcome. Idempotent."""
        if self._finished:
            return
        self._finished = True
        self.tracker.finalize()

        release, self._release = self._release, None
        if release is not None:
            release()

        status = self.tracker.status
        self.advance(_TERMINAL_STATES[status])
        log_event(
            logger,
            _FINISH_LEVELS[status],
            "chat.request.finished",
            id=self.id,
            delivery=self.delivery,
            stream=self.stream,
            durationMs=round((time.monotonic() - self._started_at) * 1000),
            **self.tracker.to_fields(),
        )

    # -- buffered delivery ---------------------------------------------------

    async def deliver_json(
        self,
        provider: ModelProvider,
        messages: Sequence[ChatMessage],
        options: dict[str, Any] | None,
    ) -> Response:
        model = self._require_model()
        self.advance(SessionState.DELIVERING)

        try:
            response = await provider.send_request(model, messages, options, self.token)
            output = await self._drain(response.text)
        except Exception as exc:
            if self.token.is_cancelled:
                self.tracker.cancel()
                return _client_closed()
            normalized = self.fail_from(exc)
            logger.error("Chat request failed: %s", normalized.message)
            return PlainTextResponse(normalized.message, status_code=normalized.status_code)

        if output is None:
            logger.info("Chat request cancelled by client")
            self.tracker.cancel()
            return _client_closed()

        self.tracker.record_output(output)
        self.tracker.complete()
        return JSONResponse({"status": "ok", "output": output})

    async def _drain(self, text: AsyncIterator[str]) -> str | None:
        """Join every fragment; ``None`` when the token fired first."""
        parts: list[str] = []
        try:
            while True:
                fragment = await next_fragment(text, self.token)
                if fragment is CANCELLED:
                    return None
                if fragment is EXHAUSTED:
                    return "".join(parts)
                parts.append(fragment)
        finally:
            await _aclose(text)

    # -- streaming delivery --------------------------------------------------

    async def stream_events(
        self,
        provider: ModelProvider,
        messages: Sequence[ChatMessage],
        options: dict[str, Any] | None,
        has_prompt: bool,
    ) -> AsyncIterator[str]:
        """SSE body: ``metadata``, ``chunk``*, then ``done`` or ``error``."""
        model = self._require_model()
        self.advance(SessionState.DELIVERING)
        text: AsyncIterator[str] | None = None

        try:
            try:
                response = await provider.send_request(model, messages, options, self.token)
            except Exception as exc:
                normalized = self.fail_from(exc)
                if self.token.is_cancelled:
                    return
                logger.error("Streaming chat failed to start: %s", normalized.message)
                yield encode_event("error", normalized.to_dict())
                return

            text = response.text
            yield encode_event(
                "metadata",
                {
                    "model": model.identity(),
                    "request": {"hasPrompt": has_prompt, "messageCount": len(messages)},
                },
            )

            while True:
                fragment = await next_fragment(text, self.token)
                if fragment is CANCELLED or (fragment is EXHAUSTED and self.token.is_cancelled):
                    logger.info("Streaming chat cancelled by client")
                    self.tracker.cancel()
                    yield encode_event("done", {"status": "cancelled"})
                    return
                if fragment is EXHAUSTED:
                    break
                self.tracker.record_chunk(fragment)
                yield encode_event("chunk", {"text": fragment})

            self.tracker.complete()
            logger.debug("Completed streaming chat response")
            yield encode_event("done", {"status": "completed"})

        except (asyncio.CancelledError, GeneratorExit):
            self.cancelled()
            raise
        except Exception as exc:
            normalized = self.fail_from(exc)
            if self.token.is_cancelled:
                yield encode_event("done", {"status": "cancelled"})
            else:
                logger.error("Streaming chat failed: %s", normalized.message)
                yield encode_event("error", normalized.to_dict())
        finally:
            if text is not None:
                await _aclose(text)
            self.finish()

    async def close_stream(self, events: AsyncIterator[str]) -> None:
        """Response close hook: stop the body generator, then make sure we finished.

        The generator's own ``finally`` never runs when the response was torn
        down before the first body chunk, so the session is closed here.
        """
        await _aclose(events)
        if not self._finished:
            self.cancelled()
            self.finish()


async def _aclose(iterator: AsyncIterator[str]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("Error closing upstream iterator", exc_info=True)
