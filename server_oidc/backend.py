"""
Key/value backend capability used by the stores, with a Redis adapter and an in-memory one.

The stores only need six operations: set-with-ttl, get, delete, list-keys-by-pattern,
set-ttl and check-exists. Any client library is wrapped in an adapter exposing them.
Adapters raise BackendError for every backend-side failure.
"""
import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

from redis import exceptions as redis_exceptions

from server_oidc.errors import BackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class KeyValueBackend(Protocol):
    """Minimal operation set the stores require of a shared key/value cache."""

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        """Overwrite key and reset its TTL."""
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def delete(self, *keys: str) -> int:
        """Delete keys; returns how many existed. Idempotent."""
        ...

    async def keys(self, pattern: str) -> list[str]:
        """Keys matching a glob pattern such as ``"prefix:*"``."""
        ...

    async def expire(self, key: str, seconds: int) -> bool:
        """Reset TTL; returns False (no-op) when the key does not exist."""
        ...

    async def exists(self, key: str) -> bool:
        ...


@runtime_checkable
class AtomicTakeBackend(Protocol):
    """Optional capability: read and delete one key in a single backend operation."""

    async def get_and_delete(self, key: str) -> str | None:
        ...


def _glob_to_regex(pattern: str) -> re.Pattern:
    """Compile a Redis-style glob (``*``, ``?``, ``[...]``, backslash escapes) to a regex."""
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1 : end]
                negate = body.startswith("^")
                if negate:
                    body = body[1:]
                out.append("[" + ("^" if negate else "") + body.replace("\\", "\\\\") + "]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisBackend:
    """
    Adapter over a redis-py asyncio client (redis.asyncio.Redis, or fakeredis in tests).
    The client is owned by the caller; this adapter never closes it.
    """

    def __init__(self, client, timeout: float | None = None, scan_count: int = 500) -> None:
        self._client = client
        self._timeout = timeout
        self._scan_count = scan_count

    @classmethod
    def from_url(cls, url: str, timeout: float | None = None, **kwargs: Any) -> "RedisBackend":
        """Build a client from a redis:// URL. The caller still owns (and closes) ``backend.client``."""
        from redis.asyncio import Redis

        client = Redis.from_url(url, decode_responses=True, **kwargs)
        return cls(client, timeout=timeout)

    @property
    def client(self):
        return self._client

    async def _call(self, op: str, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            if self._timeout is None:
                return await fn()
            return await asyncio.wait_for(fn(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise BackendError(f"Redis {op} timed out for {key!r}") from e
        except redis_exceptions.RedisError as e:
            raise BackendError(f"Redis {op} failed for {key!r}: {e}") from e

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("SET", key, lambda: self._client.set(key, value, ex=ttl_seconds))

    async def get(self, key: str) -> str | None:
        return _decode(await self._call("GET", key, lambda: self._client.get(key)))

    async def get_and_delete(self, key: str) -> str | None:
        # GETDEL needs Redis >= 6.2
        return _decode(await self._call("GETDEL", key, lambda: self._client.getdel(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("DEL", keys[0], lambda: self._client.delete(*keys)))

    async def keys(self, pattern: str) -> list[str]:
        async def _scan() -> list[str]:
            return [_decode(k) async for k in self._client.scan_iter(match=pattern, count=self._scan_count)]

        return await self._call("SCAN", pattern, _scan)

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._call("EXPIRE", key, lambda: self._client.expire(key, seconds)))

    async def exists(self, key: str) -> bool:
        return int(await self._call("EXISTS", key, lambda: self._client.exists(key))) > 0


class MemoryBackend:
    """
    In-process backend with TTL expiry, for development, single-process deployments and tests.
    Entries are dropped lazily on access once their deadline passes. ``clock`` is injectable
    so tests can advance time without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if self._clock() >= deadline:
            del self._data[key]
            return None
        return value

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._live(key)

    async def get_and_delete(self, key: str) -> str | None:
        async with self._lock:
            value = self._live(key)
            self._data.pop(key, None)
            return value

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            deleted = 0
            for key in keys:
                if self._live(key) is not None:
                    deleted += 1
                self._data.pop(key, None)
            return deleted

    async def keys(self, pattern: str) -> list[str]:
        matcher = _glob_to_regex(pattern)
        async with self._lock:
            return [k for k in list(self._data) if matcher.match(k) and self._live(k) is not None]

    async def expire(self, key: str, seconds: int) -> bool:
        async with self._lock:
            value = self._live(key)
            if value is None:
                return False
            self._data[key] = (value, self._clock() + seconds)
            return True

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None
