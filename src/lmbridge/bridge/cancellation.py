"""Cooperative cancellation for chat sessions.

The authoritative signal is the downstream client going away.  The token is
handed to the provider so it can abort its own work, and every streaming
iteration races "next fragment" against "token fired" instead of checking a
flag after an unconditional await.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Final

from starlette.requests import Request

logger = logging.getLogger(__name__)

__all__ = ["CancellationToken", "CANCELLED", "EXHAUSTED", "next_fragment", "watch_disconnect"]


class CancellationToken:
    """One-shot cancellation flag that can also be awaited."""

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class _Marker:
    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"<{self.name}>"


CANCELLED: Final = _Marker("CANCELLED")
EXHAUSTED: Final = _Marker("EXHAUSTED")


async def _pull(iterator: AsyncIterator[str]) -> str | _Marker:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return EXHAUSTED


async def next_fragment(
    iterator: AsyncIterator[str], token: CancellationToken
) -> str | _Marker:
    """Return the next fragment, ``EXHAUSTED`` at the end, or ``CANCELLED``.

    A fragment that arrives in the same tick as the cancellation is dropped.
    """
    if token.is_cancelled:
        return CANCELLED

    fragment_task = asyncio.ensure_future(_pull(iterator))
    cancel_task = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({fragment_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_task.cancel()
        if not fragment_task.done():
            fragment_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await fragment_task

    if token.is_cancelled:
        if fragment_task.done() and not fragment_task.cancelled():
            # retrieve so a failed pull does not warn as "never retrieved"
            fragment_task.exception()
        return CANCELLED

    return fragment_task.result()


async def watch_disconnect(
    request: Request, token: CancellationToken, interval: float = 0.25
) -> None:
    """Poll *request* and fire *token* once the client has disconnected."""
    while not token.is_cancelled:
        if await request.is_disconnected():
            logger.debug("Client disconnected; cancelling session")
            token.cancel("client disconnected")
            return
        await asyncio.sleep(interval)
