"""
Pending authorization flows (correlation id -> nonce, code_verifier, scope, caller payload).
Written when login starts, consumed once on callback. Backed by a shared KeyedExpiringStore
so any server instance can complete a flow another instance started.
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
class FlowState:
    correlation_id: str
    code_verifier: str
    requested_scope: str
    nonce: str | None = None
    redirect_uri: str | None = None
    state_payload: Any = None
    created_at: float = field(default_factory=time.time)

    def expired(self, ttl_seconds: int, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return (now - self.created_at) > ttl_seconds

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "FlowState":
        try:
            data = json.loads(raw)
            return cls(
                correlation_id=data["correlation_id"],
                code_verifier=data["code_verifier"],
                requested_scope=data["requested_scope"],
                nonce=data.get("nonce"),
                redirect_uri=data.get("redirect_uri"),
                state_payload=data.get("state_payload"),
                created_at=float(data["created_at"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise DeserializationError(f"Invalid flow state: {e}") from e


class AuthFlowStateManager:
    """Stores FlowState records keyed by correlation id. Backend and decode errors propagate."""

    def __init__(self, store: KeyedExpiringStore) -> None:
        self._store = store

    @property
    def store(self) -> KeyedExpiringStore:
        return self._store

    @property
    def ttl_seconds(self) -> int:
        return self._store.default_ttl_seconds

    async def store_flow(self, flow: FlowState, ttl_override: int | None = None) -> None:
        if ttl_override is not None and ttl_override <= 0:
            raise ValueError("ttl_override must be positive")
        await self._store.set(flow.correlation_id, flow.to_json())
        if ttl_override is not None:
            await self._store.set_ttl(flow.correlation_id, ttl_override)

    async def get_flow(self, correlation_id: str) -> FlowState | None:
        raw = await self._store.get(correlation_id)
        if raw is None:
            return None
        return FlowState.from_json(raw)

    async def consume_flow(self, correlation_id: str) -> FlowState | None:
        """
        Single-use read: the record is deleted whether or not it is still valid.
        Records older than the namespace TTL read as None even if the backend still holds them.
        """
        raw = await self._store.take(correlation_id)
        if raw is None:
            return None
        flow = FlowState.from_json(raw)
        if flow.expired(self.ttl_seconds):
            logger.info("Flow state %r consumed after expiry; ignoring", correlation_id)
            return None
        return flow

    async def remove_flow(self, correlation_id: str) -> None:
        await self._store.remove(correlation_id)

    async def has_flow(self, correlation_id: str) -> bool:
        return await self._store.exists(correlation_id)

    async def clear_stale(self, max_age_seconds: int) -> int:
        """Remove flows older than max_age_seconds or that cannot be decoded. Returns count removed."""
        now = time.time()
        removed = 0
        for correlation_id in await self._store.list_keys():
            raw = await self._store.get(correlation_id)
            if raw is None:
                continue
            try:
                stale = FlowState.from_json(raw).expired(max_age_seconds, now=now)
            except DeserializationError:
                stale = True
            if stale:
                await self._store.remove(correlation_id)
                removed += 1
        if removed:
            logger.info("Removed %d stale flow state entries", removed)
        return removed
