"""
Cooperative cancellation for long-running generation work.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from ..errors import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """
    One-shot cancellation signal shared by every task in a batch.

    Must be created and used on the event loop that runs the batch.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early and raising if the token fires."""
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it if the token fires first."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise OperationCancelled(self.reason or "cancelled")
