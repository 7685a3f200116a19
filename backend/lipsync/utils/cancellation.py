"""Cooperative cancellation for long-running batch and export loops."""

import asyncio


class CancelToken:
    """Flag checked between units of work.

    Cancelling never interrupts a unit already running; loops check
    ``cancelled`` before starting the next one and call
    ``raise_if_cancelled`` at safe points.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError(self.reason or "Cancelled")

    async def wait(self) -> None:
        await self._event.wait()
