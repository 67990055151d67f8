from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from runengine.core.errors import TurnAborted

T = TypeVar("T")


class CancelToken:
    """
    Cooperative cancellation handle, passed explicitly into every await that
    belongs to one turn. Cancelling never interrupts code between awaits.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnAborted(self.reason or "cancelled")

    async def guard(self, aw: Awaitable[T]) -> T:
        """
        Await `aw` unless the token fires first. On cancellation the pending
        operation is cancelled and TurnAborted is raised.
        """
        self.raise_if_cancelled()
        op = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({op, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            op.cancel()
            raise
        finally:
            stop.cancel()
        if op.done():
            return op.result()
        op.cancel()
        try:
            await op
        except asyncio.CancelledError:
            pass
        raise TurnAborted(self.reason or "cancelled")
