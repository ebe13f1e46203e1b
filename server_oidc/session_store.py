"""
Sessions for authenticated users, keyed by a caller-chosen session id.
Stores access_token, token_type, id_token, refresh_token, scope, profile, expires_at and the
round-tripped caller state. Corrupt session data reads as "no session", never as an error.
"""
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from server_oidc.errors import DeserializationError
from server_oidc.store import KeyedExpiringStore

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    access_token: str
    token_type: str = "Bearer"
    id_token: str | None = None
    refresh_token: str | None = None
    scope: str = ""
    profile: dict[str, Any] = field(default_factory=dict)
    expires_at: int | None = None
    state: Any = None

    @property
    def scopes(self) -> set[str]:
        return set(self.scope.split())

    @property
    def expires_in(self) -> int | None:
        """Seconds until the access token expires (negative once expired), or None if unknown."""
        if self.expires_at is None:
            return None
        return self.expires_at - int(time.time())

    @property
    def expired(self) -> bool:
        remaining = self.expires_in
        return remaining is not None and remaining <= 0

    def expired_or_soon(self, buffer_seconds: int = 60) -> bool:
        """
        True if the access token is expired or within buffer_seconds of expiry (for proactive refresh).
        Unknown expiry never triggers a refresh.
        """
        remaining = self.expires_in
        if remaining is None:
            return False
        return remaining <= buffer_seconds

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        try:
            data = json.loads(raw)
            expires_at = data.get("expires_at")
            return cls(
                access_token=data["access_token"],
                token_type=data.get("token_type") or "Bearer",
                id_token=data.get("id_token"),
                refresh_token=data.get("refresh_token"),
                scope=data.get("scope") or "",
                profile=dict(data.get("profile") or {}),
                expires_at=int(expires_at) if expires_at is not None else None,
                state=data.get("state"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise DeserializationError(f"Invalid session record: {e}") from e


# The identity produced by a completed login is stored as-is
AuthenticatedIdentity = SessionRecord


@dataclass(frozen=True)
class Found:
    record: SessionRecord


@dataclass(frozen=True)
class Absent:
    pass


ABSENT = Absent()
SessionLookup = Found | Absent


class SessionManager:
    """
    Session records in their own namespace (default ``session:``).
    Backend failures propagate; undecodable data is treated as absent.
    """

    def __init__(self, store: KeyedExpiringStore) -> None:
        self._store = store

    @property
    def store(self) -> KeyedExpiringStore:
        return self._store

    async def store_session(self, session_id: str, record: SessionRecord, ttl_override: int | None = None) -> None:
        """Replace the session in one write; with ttl_override, a second write sets its TTL."""
        if ttl_override is not None and ttl_override <= 0:
            raise ValueError("ttl_override must be positive")
        await self._store.set(session_id, record.to_json())
        if ttl_override is not None:
            await self._store.set_ttl(session_id, ttl_override)

    async def lookup_session(self, session_id: str) -> SessionLookup:
        raw = await self._store.get(session_id)
        if raw is None:
            return ABSENT
        try:
            return Found(SessionRecord.from_json(raw))
        except DeserializationError as e:
            logger.warning("Ignoring unreadable session %r: %s", session_id, e)
            return ABSENT

    async def get_session(self, session_id: str) -> SessionRecord | None:
        result = await self.lookup_session(session_id)
        if isinstance(result, Found):
            return result.record
        return None

    async def remove_session(self, session_id: str) -> None:
        await self._store.remove(session_id)

    async def has_session(self, session_id: str) -> bool:
        return await self._store.exists(session_id)

    async def list_sessions(self) -> set[str]:
        return await self._store.list_keys()

    async def clear_sessions(self) -> None:
        await self._store.clear_namespace()
