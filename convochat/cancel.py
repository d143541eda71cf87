import asyncio
from typing import List, Optional

from convochat.errors import CancelledError


class CancelToken:
    """Single-fire cancellation signal that propagates to child tokens.

    Firing a token is idempotent: the first reason wins.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._children: List["CancelToken"] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancelToken":
        token = CancelToken()
        if self.cancelled:
            token.cancel(self.reason or "cancelled")
        else:
            self._children.append(token)
        return token

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledError(f"Request cancelled ({self.reason})")


async def cancellable_sleep(delay: Optional[float], token: Optional[CancelToken] = None) -> None:
    """Sleep for ``delay`` seconds (forever if None) unless the token fires first."""
    if token is None:
        if delay is None:
            await asyncio.Event().wait()
        await asyncio.sleep(delay)
        return
    token.raise_if_cancelled()
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({waiter}, timeout=delay)
    finally:
        waiter.cancel()
    token.raise_if_cancelled()
