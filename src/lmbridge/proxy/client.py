"""HTTP client for the bridge, used by the compatibility proxy.

``chat()`` prefers the SSE delivery and folds the events into a
``ChatResult``; when the stream breaks with a server-side (>= 500) error it
retries once as a buffered JSON request.  Errors below 500 are the caller's
fault and propagate unchanged.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from lmbridge.errors import BridgeError, UpstreamError, normalize_bridge_error
from lmbridge.sse import (
    BridgeEvent,
    StreamChunk,
    StreamDone,
    StreamFault,
    StreamMetadata,
    StreamOther,
    aiter_bridge_events,
)

if TYPE_CHECKING:
    from lmbridge.config import Settings

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]


@dataclass
class ChatHandlers:
    """Optional callbacks fired while a streamed chat is folded."""

    on_metadata: Handler | None = None
    on_chunk: Handler | None = None
    on_done: Handler | None = None
    on_error: Handler | None = None


@dataclass
class ChatResult:
    status: str
    received: int
    output: str | None = None
    metadata: Any = None
    stats: dict[str, int] | None = None


@dataclass
class _StreamState:
    output: str = ""
    status: str = "completed"
    metadata: Any = None
    chunks: int = 0


async def _fire(handler: Handler | None, payload: Any) -> None:
    if handler is None:
        return
    result = handler(payload)
    if asyncio.iscoroutine(result):
        await result


def _now_ms() -> int:
    return int(time.time() * 1000)


def compact_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop ``None`` members so optional fields are absent, not null."""
    return {k: v for k, v in payload.items() if v is not None}


def is_event_stream(response: httpx.Response) -> bool:
    return "text/event-stream" in response.headers.get("content-type", "").lower()


class BridgeClient:
    """Async client for ``/models`` and ``/chat`` on the bridge."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> BridgeClient:
        return cls(settings.bridge_url, settings.bridge_token, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = dict(extra)
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            text = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            text = ""
        raise normalize_bridge_error(response.status_code, text)

    # -- simple requests -----------------------------------------------------

    async def list_models(self) -> list[dict[str, Any]]:
        try:
            response = await self._http.get("/models", headers=self._headers())
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Bridge unreachable: {exc}") from exc
        await self._raise_for_status(response)
        return response.json()

    async def chat_json(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http.post(
                "/chat", json=compact_payload(payload), headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Bridge unreachable: {exc}") from exc
        await self._raise_for_status(response)
        return response.json()

    # -- streaming -----------------------------------------------------------

    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        request = self._http.build_request(
            "POST",
            "/chat",
            json=compact_payload(payload),
            headers=self._headers(Accept="text/event-stream"),
        )
        try:
            return await self._http.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Bridge unreachable: {exc}") from exc

    @asynccontextmanager
    async def chat_stream(self, payload: dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """Open ``POST /chat`` as SSE; non-2xx raises before anything is yielded."""
        response = await self._open_stream(payload)
        try:
            await self._raise_for_status(response)
            yield response
        finally:
            await response.aclose()

    async def iter_events(self, response: httpx.Response) -> AsyncIterator[BridgeEvent]:
        """Typed events from an open stream; transport failures become ``UpstreamError``."""
        try:
            async for event in aiter_bridge_events(response.aiter_bytes()):
                yield event
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Failed to read streaming response: {exc}") from exc

    async def chat(self, payload: dict[str, Any], handlers: ChatHandlers | None = None) -> ChatResult:
        handlers = handlers or ChatHandlers()
        response = await self._open_stream(payload)
        try:
            await self._raise_for_status(response)
            if is_event_stream(response):
                try:
                    return await self._consume_event_stream(response, handlers)
                except BridgeError as exc:
                    if exc.status_code < 500:
                        raise
                    logger.warning("Streaming chat failed (%s); retrying as JSON", exc.message)
            else:
                return self._json_result(json.loads(await response.aread()))
        finally:
            await response.aclose()

        return self._json_result(await self.chat_json(payload))

    async def _consume_event_stream(
        self, response: httpx.Response, handlers: ChatHandlers
    ) -> ChatResult:
        state = _StreamState()
        async for event in self.iter_events(response):
            if isinstance(event, StreamMetadata):
                state.metadata = event.data
                await _fire(handlers.on_metadata, event.data)
            elif isinstance(event, StreamChunk):
                state.output += event.text
                state.chunks += 1
                if event.text:
                    await _fire(handlers.on_chunk, event.text)
            elif isinstance(event, StreamDone):
                state.status = event.status
                await _fire(handlers.on_done, {"status": event.status})
            elif isinstance(event, StreamFault):
                fault = {"statusCode": event.status_code, "message": event.message}
                await _fire(handlers.on_error, fault)
                raise BridgeError(event.message, status_code=event.status_code, body=json.dumps(fault))
            elif isinstance(event, StreamOther):
                await _fire(handlers.on_metadata, {"event": event.name, "data": event.data})

        stats = {}
        if state.chunks:
            stats["chunks"] = state.chunks
        if state.output:
            stats["outputChars"] = len(state.output)
        return ChatResult(
            status=state.status,
            received=_now_ms(),
            output=state.output,
            metadata=state.metadata,
            stats=stats,
        )

    @staticmethod
    def _json_result(body: Any) -> ChatResult:
        body = body if isinstance(body, dict) else {}
        output = body.get("output") if isinstance(body.get("output"), str) else None
        received = body.get("received")
        return ChatResult(
            status=body["status"] if isinstance(body.get("status"), str) else "ok",
            received=received if isinstance(received, int) else _now_ms(),
            output=output,
            metadata=body.get("metadata"),
            stats={"outputChars": len(output)} if output else None,
        )
