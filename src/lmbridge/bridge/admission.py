"""Bounded-concurrency admission gate with a FIFO waiting room.

Every inbound request acquires a slot before doing any model work and
releases it when done.  When all slots are taken, callers wait in arrival
order; ``release()`` hands the freed slot straight to the oldest waiter.

Waiting is bounded two ways, both optional: ``max_queue`` caps how many
callers may wait, and ``acquire(timeout=...)`` caps how long one caller
waits.  A caller that gives up removes its own ticket, so a slot is never
granted to nobody.

No external dependencies, pure asyncio.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator

from lmbridge.errors import OverloadError

logger = logging.getLogger(__name__)

__all__ = ["AdmissionGate"]


class AdmissionGate:
    """FIFO admission control.

    Parameters
    ----------
    max_concurrent : int
        Number of sessions allowed to run at once.
    max_queue : int | None
        Maximum number of waiting callers; ``None`` for no bound.
    """

    def __init__(self, max_concurrent: int, max_queue: int | None = None):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self.max_queue = max_queue
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self, timeout: float | None = None) -> None:
        """Take a slot, waiting in line if the gate is saturated.

        Raises ``OverloadError`` when the waiting room is full or *timeout*
        seconds pass without a slot.
        """
        if self._active < self.max_concurrent:
            self._active += 1
            return

        if self.max_queue is not None and self.queued >= self.max_queue:
            logger.warning("Admission queue full (%d waiting)", self.queued)
            raise OverloadError()

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout)
        except BaseException as exc:
            self._abandon(waiter)
            if isinstance(exc, TimeoutError):
                logger.warning("Gave up waiting for an admission slot after %.1fs", timeout)
                raise OverloadError() from exc
            raise

    def _abandon(self, waiter: asyncio.Future[None]) -> None:
        with contextlib.suppress(ValueError):
            self._waiters.remove(waiter)
        if waiter.done() and not waiter.cancelled():
            # The slot was granted in the same tick the caller gave up.
            self.release()
        else:
            waiter.cancel()

    def release(self) -> None:
        """Free a slot and pass it to the oldest live waiter, if any."""
        self._active = max(0, self._active - 1)
        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._active += 1
            waiter.set_result(None)
            return

    @contextlib.asynccontextmanager
    async def slot(self, timeout: float | None = None) -> AsyncIterator[None]:
        """``async with gate.slot():`` acquire/release pair."""
        await self.acquire(timeout)
        try:
            yield
        finally:
            self.release()
