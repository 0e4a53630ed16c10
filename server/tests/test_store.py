import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from playproxy.store import (
    InMemoryStore,
    LockManager,
    RedisStore,
    ResolutionCache,
    ResolvedStream,
    StoreUnavailable,
    search_key,
    stream_key,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _cache(store: InMemoryStore) -> ResolutionCache:
    return ResolutionCache(store, stream_ttl_s=1800, search_ttl_s=604800)


def test_entries_disappear_after_ttl() -> None:
    clock = _Clock()
    store = InMemoryStore(clock=clock)
    asyncio.run(store.set("k", "v", 10))
    assert asyncio.run(store.get("k")) == "v"
    assert asyncio.run(store.exists("k")) is True
    clock.now += 10
    assert asyncio.run(store.get("k")) is None
    assert asyncio.run(store.exists("k")) is False


def test_delete_is_idempotent() -> None:
    store = InMemoryStore()
    asyncio.run(store.set("k", "v", 10))
    asyncio.run(store.delete("k"))
    asyncio.run(store.delete("k"))
    assert asyncio.run(store.get("k")) is None


def test_lock_is_exclusive_until_released() -> None:
    locks = LockManager(InMemoryStore(), ttl_s=30)
    assert asyncio.run(locks.try_acquire("vid")) is True
    assert asyncio.run(locks.try_acquire("vid")) is False
    assert asyncio.run(locks.try_acquire("other")) is True
    asyncio.run(locks.release("vid"))
    assert asyncio.run(locks.try_acquire("vid")) is True


def test_abandoned_lock_heals_after_ttl() -> None:
    clock = _Clock()
    locks = LockManager(InMemoryStore(clock=clock), ttl_s=30)
    assert asyncio.run(locks.try_acquire("vid")) is True
    clock.now += 29
    assert asyncio.run(locks.try_acquire("vid")) is False
    clock.now += 1
    assert asyncio.run(locks.try_acquire("vid")) is True


def test_stream_entries_round_trip_through_cache() -> None:
    cache = _cache(InMemoryStore())
    stream = ResolvedStream(url="https://cdn.test/a", content_type="audio/webm", title="Song")
    asyncio.run(cache.set_stream("vid", stream))
    assert asyncio.run(cache.has_stream("vid")) is True
    assert asyncio.run(cache.get_stream("vid")) == stream
    asyncio.run(cache.invalidate_stream("vid"))
    assert asyncio.run(cache.get_stream("vid")) is None


def test_unreadable_stream_entry_is_a_miss() -> None:
    store = InMemoryStore()
    cache = _cache(store)
    asyncio.run(store.set(stream_key("vid"), "not json", 60))
    assert asyncio.run(cache.get_stream("vid")) is None
    asyncio.run(store.set(stream_key("vid"), '{"title": "no url"}', 60))
    assert asyncio.run(cache.get_stream("vid")) is None


def test_search_key_ignores_case_and_padding() -> None:
    assert search_key("  Hey Jude", "The Beatles ") == search_key("hey jude", "the beatles")
    cache = _cache(InMemoryStore())
    asyncio.run(cache.set_media_id("Hey Jude", "The Beatles", "A_MjCqQoLLA"))
    assert asyncio.run(cache.get_media_id("hey jude", "the beatles")) == "A_MjCqQoLLA"


class _FakeRedis:
    def __init__(self, *, reply=True, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[tuple] = []

    async def _call(self, name, *args, **kwargs):  # noqa: ANN001, ANN002, ANN003
        self.calls.append((name, args, kwargs))
        if self.error is not None:
            raise self.error
        return self.reply

    async def get(self, key):  # noqa: ANN001
        return await self._call("get", key)

    async def set(self, key, value, **kwargs):  # noqa: ANN001, ANN003
        return await self._call("set", key, value, **kwargs)

    async def exists(self, key):  # noqa: ANN001
        return await self._call("exists", key)

    async def delete(self, key):  # noqa: ANN001
        return await self._call("delete", key)


def _redis_store(fake: _FakeRedis) -> RedisStore:
    store = RedisStore("redis://localhost:6379/0")
    store._client = fake
    return store


def test_redis_lock_is_a_single_set_nx_ex() -> None:
    fake = _FakeRedis(reply=True)
    store = _redis_store(fake)
    assert asyncio.run(store.set_if_absent("lock:resolve:vid", "tok", 30)) is True
    assert fake.calls == [("set", ("lock:resolve:vid", "tok"), {"nx": True, "ex": 30})]
    fake.reply = None
    assert asyncio.run(store.set_if_absent("lock:resolve:vid", "tok", 30)) is False


def test_redis_set_carries_ttl() -> None:
    fake = _FakeRedis()
    store = _redis_store(fake)
    asyncio.run(store.set("stream:vid", "{}", 1800))
    assert fake.calls == [("set", ("stream:vid", "{}"), {"ex": 1800})]


def test_redis_errors_become_store_unavailable() -> None:
    store = _redis_store(_FakeRedis(error=RedisConnectionError("Connection refused")))
    for call in (
        store.get("k"),
        store.set("k", "v", 10),
        store.set_if_absent("k", "v", 10),
        store.exists("k"),
        store.delete("k"),
    ):
        with pytest.raises(StoreUnavailable):
            asyncio.run(call)
