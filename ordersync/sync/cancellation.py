"""
Cooperative cancellation for refresh cycles.

Every I/O call of a cycle is awaited through the cycle's token. Cancelling
the token cancels whatever is in flight and makes the awaiting site raise
OperationCancelled; a result that arrives after cancellation is discarded.

Usage:
    token = CancellationToken()
    payload = await token.run(api.fetch_latest(query))
    await token.sleep(0.25)

    token.cancel("superseded")  # from the next cycle

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from ordersync.sync.errors import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared by all operations of a cycle."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._inflight: set[asyncio.Future] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        for future in list(self._inflight):
            future.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self._reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` under this token.

        Raises:
            OperationCancelled: The token was cancelled before, during or
                right after the operation
        """
        if self._cancelled:
            # never started, so close it to avoid an un-awaited warning
            close = getattr(awaitable, "close", None)
            if callable(close):
                close()
            raise OperationCancelled(self._reason)

        future = asyncio.ensure_future(awaitable)
        self._inflight.add(future)
        try:
            result = await future
        except asyncio.CancelledError:
            if self._cancelled:
                raise OperationCancelled(self._reason) from None
            raise
        finally:
            self._inflight.discard(future)

        if self._cancelled:
            raise OperationCancelled(self._reason)
        return result

    async def sleep(self, seconds: float) -> None:
        await self.run(asyncio.sleep(seconds))


async def guarded(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """Await through ``token`` when one is given."""
    if token is None:
        return await awaitable
    return await token.run(awaitable)


__all__ = ["CancellationToken", "guarded"]
