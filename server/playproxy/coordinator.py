"""
Single-flight resolution on top of the shared cache and lock stores.

Only one resolver call per media id runs at a time across every worker
process: the winner of the redis ``SET NX EX`` race resolves and fills the
cache, everybody else is told ``resolving`` and decides for themselves
whether to wait (see ``wait_for_stream``) or move on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .store import LockManager, ResolutionCache, ResolvedStream


logger = logging.getLogger(__name__)

CACHED = "cached"
RESOLVED = "resolved"
RESOLVING = "resolving"


@dataclass(frozen=True)
class Resolution:
    status: str
    stream: Optional[ResolvedStream] = None

    @property
    def ready(self) -> bool:
        return self.stream is not None


class ResolutionCoordinator:
    def __init__(
        self,
        cache: ResolutionCache,
        locks: LockManager,
        resolver,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._locks = locks
        self._resolver = resolver
        self._sleep = sleep

    async def ensure_resolved(self, media_id: str) -> Resolution:
        """Cache hit, or a fresh resolution if this caller wins the lock.

        Raises ``ResolutionFailed`` from the resolver and ``StoreUnavailable``
        from the stores; the lock is released before either propagates.
        """
        cached = await self._cache.get_stream(media_id)
        if cached is not None:
            logger.info("Stream cache HIT: %s", media_id)
            return Resolution(CACHED, cached)
        logger.info("Stream cache MISS: %s", media_id)
        return await self._resolve_locked(media_id)

    async def refresh(self, media_id: str, stale_url: Optional[str] = None) -> Resolution:
        """Drop the cached URL and resolve again, skipping the cache-hit path.

        When ``stale_url`` is given and the cache already holds a different URL,
        somebody else refreshed first and that entry is returned as ``cached``.
        """
        if stale_url is not None:
            current = await self._cache.get_stream(media_id)
            if current is not None and current.url != stale_url:
                logger.info("Stream already refreshed for %s", media_id)
                return Resolution(CACHED, current)
        await self._cache.invalidate_stream(media_id)
        logger.info("Stream cache INVALIDATED: %s", media_id)
        return await self._resolve_locked(media_id)

    async def prefetch(self, media_id: str) -> Resolution:
        if await self._cache.has_stream(media_id):
            return Resolution(CACHED)
        return await self.ensure_resolved(media_id)

    async def wait_for_stream(
        self, media_id: str, *, attempts: int, interval_s: float
    ) -> Optional[ResolvedStream]:
        for attempt in range(attempts):
            await self._sleep(interval_s)
            cached = await self._cache.get_stream(media_id)
            if cached is not None:
                logger.info("Stream ready for %s after %s poll(s)", media_id, attempt + 1)
                return cached
        return None

    async def _resolve_locked(self, media_id: str) -> Resolution:
        if not await self._locks.try_acquire(media_id):
            logger.info("Stream lock busy: %s is being resolved elsewhere", media_id)
            return Resolution(RESOLVING)
        try:
            stream = await self._resolver.resolve(media_id)
            await self._cache.set_stream(media_id, stream)
        finally:
            await self._locks.release(media_id)
        return Resolution(RESOLVED, stream)
