"""Cancellation signal shared by every worker of a transaction."""

from __future__ import annotations

import asyncio

from brewhouse.core.errors import TransactionCancelled


class CancelToken:
    """Set once; workers call :meth:`check` at each suspension point."""

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

    def check(self) -> None:
        if self._event.is_set():
            raise TransactionCancelled(
                "Transaction cancelled", context={"reason": self.reason or "cancelled"}
            )

    async def wait(self) -> None:
        await self._event.wait()
