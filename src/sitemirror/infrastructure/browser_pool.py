"""
Browser Session Pool.

Owns every browser session and leases each one to exactly one task at a
time. Sessions are bound to the proxy endpoint they were opened with,
reused while that proxy is requested again, and retired after a fixed
number of uses or a crash.
"""

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from sitemirror.constants import DEFAULT_SESSION_POOL_SIZE, MAX_USES_PER_SESSION
from sitemirror.infrastructure.browser_driver import BrowserLauncher, BrowserSessionHandle
from sitemirror.infrastructure.proxy_rotation import ProxyEndpoint

logger = logging.getLogger(__name__)


@dataclass
class PoolStatus:
    """Current status of the session pool."""
    total_size: int
    idle: int
    in_use: int
    sessions_created: int
    sessions_retired: int
    total_leases: int


@dataclass(eq=False)
class BrowserSession:
    """A pooled session and its lease bookkeeping."""
    id: int
    handle: BrowserSessionHandle
    bound_proxy: Optional[ProxyEndpoint] = None
    in_use: bool = False
    uses: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_used_at: Optional[datetime] = None

    @property
    def crashed(self) -> bool:
        return bool(getattr(self.handle, "crashed", False))


class BrowserSessionPool:
    """
    Manages a bounded pool of browser sessions.

    Features:
    - Async context lease with automatic release
    - Proxy-affine reuse of idle sessions
    - Retirement after max_uses or a crash
    - Graceful shutdown

    Usage:
        async with pool.lease(proxy) as session:
            await session.handle.navigate(url, timeout=30)
    """

    def __init__(
        self,
        launcher: BrowserLauncher,
        max_size: int = DEFAULT_SESSION_POOL_SIZE,
        max_uses: int = MAX_USES_PER_SESSION,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.launcher = launcher
        self.max_size = max_size
        self.max_uses = max_uses

        self._sessions: Dict[int, BrowserSession] = {}
        self._reserved = 0  # slots held while a session is being opened
        self._cond = asyncio.Condition()
        self._ids = itertools.count(1)
        self._closed = False
        self._sessions_created = 0
        self._sessions_retired = 0
        self._total_leases = 0

    def _idle(self) -> List[BrowserSession]:
        return [s for s in self._sessions.values() if not s.in_use]

    @asynccontextmanager
    async def lease(self, proxy: Optional[ProxyEndpoint] = None) -> AsyncIterator[BrowserSession]:
        """
        Lease a session bound to the given proxy.

        Yields:
            BrowserSession held exclusively by the caller until the block exits
        """
        session = await self._acquire(proxy)
        failed = False
        try:
            yield session
        except BaseException:
            failed = True
            raise
        finally:
            await self._release(session, failed)

    async def _acquire(self, proxy: Optional[ProxyEndpoint]) -> BrowserSession:
        evicted: Optional[BrowserSession] = None

        async with self._cond:
            while True:
                if self._closed:
                    raise RuntimeError("Browser session pool is closed")

                idle = self._idle()
                match = next((s for s in idle if s.bound_proxy is proxy), None)
                if match is not None:
                    match.in_use = True
                    match.last_used_at = datetime.now()
                    self._total_leases += 1
                    return match

                if len(self._sessions) + self._reserved < self.max_size:
                    self._reserved += 1
                    break

                if idle:
                    # Replace an idle session bound to another proxy
                    evicted = idle[0]
                    del self._sessions[evicted.id]
                    self._reserved += 1
                    break

                await self._cond.wait()

        if evicted is not None:
            await self._close(evicted, reason="proxy rebind")

        try:
            handle = await self.launcher.open_session(proxy)
        except BaseException:
            async with self._cond:
                self._reserved -= 1
                self._cond.notify()
            raise

        async with self._cond:
            self._reserved -= 1
            session = BrowserSession(
                id=next(self._ids),
                handle=handle,
                bound_proxy=proxy,
                in_use=True,
                last_used_at=datetime.now(),
            )
            self._sessions[session.id] = session
            self._sessions_created += 1
            self._total_leases += 1

        logger.debug(f"Created browser session {session.id} via {proxy!r}")
        return session

    async def _release(self, session: BrowserSession, failed: bool) -> None:
        session.uses += 1
        retire = failed or session.crashed or session.uses >= self.max_uses or self._closed

        async with self._cond:
            if retire:
                self._sessions.pop(session.id, None)
            else:
                session.in_use = False
            self._cond.notify()

        if retire:
            reason = "crash" if session.crashed else "failure" if failed else "max uses"
            await self._close(session, reason=reason)

    async def _close(self, session: BrowserSession, reason: str) -> None:
        self._sessions_retired += 1
        logger.debug(f"Retiring browser session {session.id} ({reason}, {session.uses} uses)")
        try:
            await session.handle.close()
        except Exception as e:
            logger.warning(f"Error closing browser session {session.id}: {e}")

    async def stop(self) -> None:
        """Close idle sessions and refuse new leases. Leased sessions close on release."""
        async with self._cond:
            self._closed = True
            idle = self._idle()
            for session in idle:
                del self._sessions[session.id]
            self._cond.notify_all()

        for session in idle:
            await self._close(session, reason="pool stopped")
        logger.info("Browser session pool stopped")

    def get_status(self) -> PoolStatus:
        """Get current pool status."""
        idle = len(self._idle())
        return PoolStatus(
            total_size=len(self._sessions),
            idle=idle,
            in_use=len(self._sessions) - idle,
            sessions_created=self._sessions_created,
            sessions_retired=self._sessions_retired,
            total_leases=self._total_leases,
        )
