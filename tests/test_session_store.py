import asyncio

import pytest

from audiobook_upload.session_store import (
    KEY_MISSING,
    NO_EXPIRY,
    MemorySessionStore,
    RedisSessionStore,
    build_session_store,
    settings,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_memory_store_expires_keys_after_ttl() -> None:
    clock = _Clock()
    store = MemorySessionStore(clock=clock)

    async def scenario() -> None:
        await store.set("k", "value", ttl_seconds=10)
        assert await store.get("k") == b"value"
        assert await store.ttl("k") == 10

        clock.now += 10
        assert await store.get("k") is None
        assert await store.exists("k") is False
        assert await store.ttl("k") == KEY_MISSING

    asyncio.run(scenario())


def test_memory_store_ttl_reports_missing_expiry_and_expire_resets_it() -> None:
    clock = _Clock()
    store = MemorySessionStore(clock=clock)

    async def scenario() -> None:
        await store.set("k", b"\x00\x01")
        assert await store.ttl("k") == NO_EXPIRY
        assert await store.expire("k", 30) is True
        assert await store.ttl("k") == 30
        assert await store.expire("absent", 30) is False

    asyncio.run(scenario())


def test_memory_store_bulk_delete_counts_live_keys_only() -> None:
    store = MemorySessionStore()

    async def scenario() -> None:
        await store.set("a", "1", ttl_seconds=60)
        await store.set("b", "2", ttl_seconds=60)
        assert await store.delete("a", "b", "c") == 2
        assert await store.delete() == 0
        assert await store.get("a") is None

    asyncio.run(scenario())


def test_memory_store_scan_pages_survive_deletes_between_calls() -> None:
    store = MemorySessionStore()

    async def scenario() -> list[str]:
        for idx in range(5):
            await store.set(f"upload:session:s{idx}", "{}", ttl_seconds=60)
        await store.set("upload:chunk:s0:0", b"x", ttl_seconds=60)

        seen: list[str] = []
        cursor = 0
        while True:
            cursor, keys = await store.scan(cursor, "upload:session:*", 2)
            seen.extend(keys)
            await store.delete(*keys)
            if cursor == 0:
                break
        return seen

    seen = asyncio.run(scenario())
    assert sorted(seen) == [f"upload:session:s{idx}" for idx in range(5)]


def test_memory_store_update_is_noop_for_absent_key() -> None:
    store = MemorySessionStore()
    calls: list[bytes] = []

    def mutate(raw: bytes) -> bytes:
        calls.append(raw)
        return raw + b"!"

    async def scenario() -> None:
        assert await store.update("missing", mutate, ttl_seconds=5) is None
        await store.set("present", "v", ttl_seconds=1)
        assert await store.update("present", mutate, ttl_seconds=5) == b"v!"
        assert await store.ttl("present") == 5

    asyncio.run(scenario())
    assert calls == [b"v"]


def test_build_session_store_rejects_unknown_backend(monkeypatch) -> None:
    monkeypatch.setattr(settings, "session_store_backend", "memcached")
    with pytest.raises(ValueError):
        build_session_store()


def test_build_session_store_redis_uses_configured_url(monkeypatch) -> None:
    monkeypatch.setattr(settings, "session_store_backend", "redis")
    monkeypatch.setattr(settings, "redis_url", "redis://cache.internal:6380/2")

    store = build_session_store()

    assert isinstance(store, RedisSessionStore)
    kwargs = store._client.connection_pool.connection_kwargs
    assert kwargs["host"] == "cache.internal"
    assert kwargs["port"] == 6380
    assert kwargs["db"] == 2
