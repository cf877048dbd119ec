import fnmatch
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from audiobook_upload.config import settings

KEY_MISSING = -2
NO_EXPIRY = -1


class SessionStore:
    """Key/value store with per-key expiry holding upload sessions and chunk bytes.

    Values are always returned as ``bytes``; text values are stored UTF-8 encoded.
    ``ttl`` follows the Redis convention: ``-2`` for a missing key, ``-1`` for a
    key without expiry, otherwise the remaining seconds.
    """

    async def get(self, key: str) -> bytes | None:
        raise NotImplementedError

    async def set(self, key: str, value: bytes | str, ttl_seconds: int | None = None) -> None:
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    async def ttl(self, key: str) -> int:
        raise NotImplementedError

    async def scan(self, cursor: int, match: str, count: int) -> tuple[int, list[str]]:
        raise NotImplementedError

    async def update(self, key: str, mutate: Callable[[bytes], bytes], ttl_seconds: int) -> bytes | None:
        """Atomically replace the value of ``key`` with ``mutate(current)``.

        Returns the new value, or ``None`` without calling ``mutate`` when the key
        is absent. The write resets the key's expiry to ``ttl_seconds``.
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _to_bytes(value: bytes | str) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


@dataclass
class _Entry:
    value: bytes
    expires_at: float | None
    seq: int


class MemorySessionStore(SessionStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._next_seq = 1

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: int | None) -> float | None:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds

    def _write(self, key: str, value: bytes, ttl_seconds: int | None) -> None:
        existing = self._live(key)
        if existing is not None:
            existing.value = value
            existing.expires_at = self._expiry(ttl_seconds)
            return
        self._entries[key] = _Entry(value=value, expires_at=self._expiry(ttl_seconds), seq=self._next_seq)
        self._next_seq += 1

    async def get(self, key: str) -> bytes | None:
        with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def set(self, key: str, value: bytes | str, ttl_seconds: int | None = None) -> None:
        with self._lock:
            self._write(key, _to_bytes(value), ttl_seconds)

    async def delete(self, *keys: str) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._entries[key]
                    deleted += 1
        return deleted

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._expiry(ttl_seconds)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return KEY_MISSING
            if entry.expires_at is None:
                return NO_EXPIRY
            return max(0, round(entry.expires_at - self._clock()))

    async def scan(self, cursor: int, match: str, count: int) -> tuple[int, list[str]]:
        # Cursor is the insertion sequence of the last key returned, so deleting
        # keys mid-scan never makes later keys skip a page.
        with self._lock:
            candidates = sorted(
                (entry.seq, key)
                for key, entry in list(self._entries.items())
                if entry.seq > cursor and self._live(key) is not None
            )
        page = candidates[: max(1, count)]
        keys = [key for _, key in page if fnmatch.fnmatchcase(key, match)]
        if len(candidates) <= len(page):
            return 0, keys
        return page[-1][0], keys

    async def update(self, key: str, mutate: Callable[[bytes], bytes], ttl_seconds: int) -> bytes | None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            updated = _to_bytes(mutate(entry.value))
            self._write(key, updated, ttl_seconds)
            return updated


class RedisSessionStore(SessionStore):
    def __init__(self, redis_url: str) -> None:
        import redis.asyncio as redis

        self._client = redis.Redis.from_url(redis_url)

    async def get(self, key: str) -> bytes | None:
        return await self._client.get(key)

    async def set(self, key: str, value: bytes | str, ttl_seconds: int | None = None) -> None:
        await self._client.set(key, _to_bytes(value), ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._client.expire(key, ttl_seconds))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(key))

    async def scan(self, cursor: int, match: str, count: int) -> tuple[int, list[str]]:
        next_cursor, keys = await self._client.scan(cursor=cursor, match=match, count=count)
        return int(next_cursor), [key.decode("utf-8") if isinstance(key, bytes) else key for key in keys]

    async def update(self, key: str, mutate: Callable[[bytes], bytes], ttl_seconds: int) -> bytes | None:
        from redis.exceptions import WatchError

        async with self._client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current is None:
                        return None
                    updated = _to_bytes(mutate(current))
                    pipe.multi()
                    pipe.set(key, updated, ex=ttl_seconds)
                    await pipe.execute()
                    return updated
                except WatchError:
                    # Another writer touched the key between WATCH and EXEC.
                    continue

    async def close(self) -> None:
        await self._client.aclose()


def build_session_store() -> SessionStore:
    backend = settings.session_store_backend.lower()
    if backend == "memory":
        return MemorySessionStore()
    if backend == "redis":
        return RedisSessionStore(settings.redis_url)
    raise ValueError(f"unsupported session store backend: {settings.session_store_backend}")
