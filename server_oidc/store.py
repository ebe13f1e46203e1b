"""
Namespaced, TTL-bound key/value store over a shared backend.
Every logical key is prefixed before it reaches the backend, so one physical Redis can hold
flow state, sessions and other namespaces without collisions or cross-namespace flushes.
"""
import logging

from server_oidc.backend import AtomicTakeBackend, KeyValueBackend

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "oidc:"
DEFAULT_TTL_SECONDS = 3600

_GLOB_SPECIAL = "\\*?[]^"


def escape_glob(text: str) -> str:
    """Escape Redis glob metacharacters so ``text`` matches only itself."""
    return "".join("\\" + ch if ch in _GLOB_SPECIAL else ch for ch in text)


class KeyedExpiringStore:
    """
    String values under ``key_prefix + key`` with ``default_ttl_seconds`` expiry.
    Missing and expired keys both read as None. Backend failures raise BackendError.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        key_prefix: str = DEFAULT_PREFIX,
        default_ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self._backend = backend
        self._prefix = key_prefix
        self._ttl = default_ttl_seconds

    @property
    def key_prefix(self) -> str:
        return self._prefix

    @property
    def default_ttl_seconds(self) -> int:
        return self._ttl

    def _key(self, key: str) -> str:
        return self._prefix + key

    async def set(self, key: str, value: str) -> None:
        """Write value, replacing any existing entry and its TTL."""
        logger.debug("set(%r) prefix=%r ttl=%d", key, self._prefix, self._ttl)
        await self._backend.set_with_ttl(self._key(key), value, self._ttl)

    async def get(self, key: str) -> str | None:
        logger.debug("get(%r) prefix=%r", key, self._prefix)
        return await self._backend.get(self._key(key))

    async def remove(self, key: str) -> str | None:
        """
        Return the stored value (or None) and delete the key.
        Read and delete are two backend calls: concurrent callers may both read the value.
        Use take() where single-use matters.
        """
        logger.debug("remove(%r) prefix=%r", key, self._prefix)
        full_key = self._key(key)
        value = await self._backend.get(full_key)
        await self._backend.delete(full_key)
        return value

    async def take(self, key: str) -> str | None:
        """Read and delete in one backend operation when supported; otherwise same as remove()."""
        if isinstance(self._backend, AtomicTakeBackend):
            logger.debug("take(%r) prefix=%r", key, self._prefix)
            return await self._backend.get_and_delete(self._key(key))
        return await self.remove(key)

    async def exists(self, key: str) -> bool:
        logger.debug("exists(%r) prefix=%r", key, self._prefix)
        return await self._backend.exists(self._key(key))

    async def list_keys(self) -> "set[str]":
        """Logical keys currently in this namespace (prefix stripped). Order not meaningful."""
        logger.debug("list_keys() prefix=%r", self._prefix)
        keys = await self._backend.keys(escape_glob(self._prefix) + "*")
        return {k[len(self._prefix):] for k in keys if k.startswith(self._prefix)}

    async def set_ttl(self, key: str, seconds: int) -> None:
        """Reset remaining TTL. A missing key is logged, not raised."""
        logger.debug("set_ttl(%r, %d) prefix=%r", key, seconds, self._prefix)
        if not await self._backend.expire(self._key(key), seconds):
            logger.warning("set_ttl: key %r not found in namespace %r", key, self._prefix)

    async def clear_namespace(self) -> None:
        """Delete every key under this prefix; other namespaces are untouched."""
        keys = await self._backend.keys(escape_glob(self._prefix) + "*")
        keys = [k for k in keys if k.startswith(self._prefix)]
        if not keys:
            logger.debug("clear_namespace() prefix=%r: nothing to delete", self._prefix)
            return
        deleted = await self._backend.delete(*keys)
        logger.info("clear_namespace() prefix=%r: deleted %d keys", self._prefix, deleted)
