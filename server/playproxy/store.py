from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"


class StoreUnavailable(RuntimeError):
    """Raised when the shared cache/lock store cannot be reached."""


@dataclass(frozen=True)
class ResolvedStream:
    url: str
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    title: Optional[str] = None
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    webpage_url: Optional[str] = None

    def dumps(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def loads(cls, raw: str) -> "ResolvedStream":
        payload = json.loads(raw)
        if not isinstance(payload, dict) or not payload.get("url"):
            raise ValueError("stream payload has no url")
        return cls(
            url=str(payload["url"]),
            content_type=payload.get("content_type"),
            content_length=payload.get("content_length"),
            title=payload.get("title"),
            duration=payload.get("duration"),
            thumbnail=payload.get("thumbnail"),
            webpage_url=payload.get("webpage_url"),
        )


class RedisStore:
    """Shared key-value store backed by redis; every call is one atomic command."""

    def __init__(self, url: str):
        self._url = url
        self._client = aioredis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as err:
            raise StoreUnavailable(f"redis GET failed: {err}") from err

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_s)
        except RedisError as err:
            raise StoreUnavailable(f"redis SET failed: {err}") from err

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        try:
            return bool(await self._client.set(key, value, nx=True, ex=ttl_s))
        except RedisError as err:
            raise StoreUnavailable(f"redis SET NX failed: {err}") from err

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except RedisError as err:
            raise StoreUnavailable(f"redis EXISTS failed: {err}") from err

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as err:
            raise StoreUnavailable(f"redis DEL failed: {err}") from err

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryStore:
    """Process-local stand-in for redis, used for tests and single-process runs."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        value = self._values.get(key)
        if value is None:
            return None
        if value[1] <= self._clock():
            self._values.pop(key, None)
            return None
        return value[0]

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + ttl_s)

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._values[key] = (value, self._clock() + ttl_s)
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()


def build_store(url: str):
    if url == MEMORY_URL:
        logger.warning("Using in-process store; locks are not shared across workers.")
        return InMemoryStore()
    return RedisStore(url)


def stream_key(media_id: str) -> str:
    return f"stream:{media_id}"


def lock_key(media_id: str) -> str:
    return f"lock:resolve:{media_id}"


def search_key(title: str, artist: str) -> str:
    return f"search:{title.strip().lower()}-{artist.strip().lower()}"


class ResolutionCache:
    def __init__(self, store, *, stream_ttl_s: int, search_ttl_s: int):
        self._store = store
        self._stream_ttl_s = stream_ttl_s
        self._search_ttl_s = search_ttl_s

    async def get(self, key: str) -> Optional[str]:
        return await self._store.get(key)

    async def set(self, key: str, value: str, ttl_s: int) -> None:
        await self._store.set(key, value, ttl_s)

    async def exists(self, key: str) -> bool:
        return await self._store.exists(key)

    async def delete(self, key: str) -> None:
        await self._store.delete(key)

    async def get_stream(self, media_id: str) -> Optional[ResolvedStream]:
        raw = await self.get(stream_key(media_id))
        if raw is None:
            return None
        try:
            return ResolvedStream.loads(raw)
        except ValueError as err:
            logger.warning("Ignoring unreadable cache entry for %s: %s", media_id, err)
            return None

    async def set_stream(self, media_id: str, stream: ResolvedStream) -> None:
        await self.set(stream_key(media_id), stream.dumps(), self._stream_ttl_s)

    async def has_stream(self, media_id: str) -> bool:
        return await self.exists(stream_key(media_id))

    async def invalidate_stream(self, media_id: str) -> None:
        await self.delete(stream_key(media_id))

    async def get_media_id(self, title: str, artist: str) -> Optional[str]:
        return await self.get(search_key(title, artist))

    async def set_media_id(self, title: str, artist: str, media_id: str) -> None:
        await self.set(search_key(title, artist), media_id, self._search_ttl_s)


class LockManager:
    def __init__(self, store, *, ttl_s: int):
        self._store = store
        self.ttl_s = ttl_s

    async def try_acquire(self, media_id: str, ttl_s: Optional[int] = None) -> bool:
        token = secrets.token_hex(8)
        return await self._store.set_if_absent(lock_key(media_id), token, ttl_s or self.ttl_s)

    async def release(self, media_id: str) -> None:
        await self._store.delete(lock_key(media_id))
