"""Job-level cancellation token shared by the orchestrator and its workers."""

import asyncio
from typing import Optional

from sitemirror.exceptions import JobCancelled


class CancellationToken:
    """Cooperative cancellation flag checked at every suspension point."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, url: Optional[str] = None) -> None:
        if self._event.is_set():
            raise JobCancelled(f"Job cancelled: {self.reason}", url=url)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes early and raises JobCancelled when the token fires."""
        if seconds <= 0:
            self.raise_if_cancelled()
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


async def cancellable_sleep(seconds: float, token: Optional[CancellationToken] = None) -> None:
    if token is None:
        await asyncio.sleep(max(seconds, 0))
    else:
        await token.sleep(seconds)
