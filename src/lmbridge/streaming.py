# Streaming response with a guaranteed close hook.
# Created: 2026-10-18
#
# Starlette may cancel a streaming response before its body iterator ever
# starts (client gone between headers and body). A generator's own `finally`
# never runs in that case, so anything that must be released exactly once
# (admission slots, upstream HTTP streams) hangs off `on_close` instead.

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ClosingStreamingResponse(StreamingResponse):
    """``StreamingResponse`` that runs ``on_close`` once, whatever happens."""

    def __init__(
        self,
        content: Any,
        *,
        on_close: Callable[[], Awaitable[None] | None] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.close()

    async def close(self) -> None:
        callback, self._on_close = self._on_close, None
        if callback is None:
            return
        try:
            result = callback()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.warning("Error closing streaming response", exc_info=True)
