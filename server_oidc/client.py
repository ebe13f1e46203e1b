"""
Server-side OIDC client over a shared key/value backend.

ServerSideProtocolClient runs the authorization code flow with flow state in the backend, so the
instance that handles the callback need not be the one that started the login.
ServerSideUserManager adds session storage for the resulting identity under its own namespace.
"""
import logging
from typing import Any

import httpx

from server_oidc.backend import KeyValueBackend
from server_oidc.config import OidcSettings
from server_oidc.engine import AuthorizationRequest, OidcEngine, ProtocolEngine
from server_oidc.flow_store import AuthFlowStateManager
from server_oidc.session_store import SessionManager, SessionRecord
from server_oidc.store import KeyedExpiringStore

logger = logging.getLogger(__name__)


class ServerSideProtocolClient:
    def __init__(
        self,
        backend: KeyValueBackend,
        settings: OidcSettings | None = None,
        *,
        engine: ProtocolEngine | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or OidcSettings.from_env()
        self._state_store = KeyedExpiringStore(
            backend,
            key_prefix=self.settings.key_prefix,
            default_ttl_seconds=self.settings.state_ttl,
        )
        self._flows = AuthFlowStateManager(self._state_store)
        self._engine = engine or OidcEngine(self.settings, self._flows, http_client=http_client)

    @property
    def state_store(self) -> KeyedExpiringStore:
        """The flow-state namespace, for maintenance (list/flush) operations."""
        return self._state_store

    @property
    def flows(self) -> AuthFlowStateManager:
        return self._flows

    @property
    def engine(self) -> ProtocolEngine:
        return self._engine

    async def begin_authentication(self, state: Any = None, **options: Any) -> AuthorizationRequest:
        """
        Build the authorization URL and persist flow state. ``state`` is the caller's opaque
        payload (e.g. a return path); ``options`` go to the engine (scope, prompt, login_hint, extra_params).
        """
        return await self._engine.create_authorization_request(state=state, **options)

    async def complete_authentication(self, callback_url: str) -> SessionRecord:
        """Process the provider redirect. Single use: a repeated callback raises StateNotFoundError."""
        return await self._engine.process_authorization_response(callback_url)

    async def cleanup_expired_state(self) -> None:
        """Best-effort sweep of stale flow state; the backend TTL already expires it."""
        await self._engine.clear_stale_state()

    async def aclose(self) -> None:
        close = getattr(self._engine, "aclose", None)
        if close is not None:
            await close()


class ServerSideUserManager:
    """Login flow plus session storage. Sessions live in ``settings.session_prefix``, apart from flow state."""

    def __init__(
        self,
        backend: KeyValueBackend,
        settings: OidcSettings | None = None,
        *,
        engine: ProtocolEngine | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = ServerSideProtocolClient(backend, settings, engine=engine, http_client=http_client)
        self.settings = self._client.settings
        self._sessions = SessionManager(
            KeyedExpiringStore(
                backend,
                key_prefix=self.settings.session_prefix,
                default_ttl_seconds=self.settings.session_ttl,
            )
        )

    @property
    def client(self) -> ServerSideProtocolClient:
        return self._client

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    async def create_signin_request(self, state: Any = None, **options: Any) -> AuthorizationRequest:
        return await self._client.begin_authentication(state=state, **options)

    async def signin_callback(
        self,
        callback_url: str,
        session_id: str | None = None,
        ttl: int | None = None,
    ) -> SessionRecord:
        """Complete the login; with a session_id, store the identity. A failed callback stores nothing."""
        record = await self._client.complete_authentication(callback_url)
        if session_id is not None:
            await self._sessions.store_session(session_id, record, ttl)
        return record

    async def store_user_session(self, session_id: str, record: SessionRecord, ttl: int | None = None) -> None:
        await self._sessions.store_session(session_id, record, ttl)

    async def get_user_session(self, session_id: str) -> SessionRecord | None:
        return await self._sessions.get_session(session_id)

    async def remove_user_session(self, session_id: str) -> None:
        await self._sessions.remove_session(session_id)

    async def has_user_session(self, session_id: str) -> bool:
        return await self._sessions.has_session(session_id)

    async def refresh_user_session(self, session_id: str, ttl: int | None = None) -> SessionRecord | None:
        """Refresh tokens for a stored session and store the result. None if there is no session."""
        record = await self._sessions.get_session(session_id)
        if record is None:
            return None
        engine = self._client.engine
        if not isinstance(engine, OidcEngine):
            raise TypeError("Token refresh requires an OidcEngine")
        refreshed = await engine.refresh(record)
        await self._sessions.store_session(session_id, refreshed, ttl)
        return refreshed

    async def create_signout_url(self, session_id: str | None = None, state: str | None = None) -> str:
        """Logout URL at the provider, using the session's id_token as hint when available."""
        engine = self._client.engine
        if not isinstance(engine, OidcEngine):
            raise TypeError("Sign-out URL requires an OidcEngine")
        record = await self._sessions.get_session(session_id) if session_id else None
        return await engine.create_signout_url(id_token_hint=record.id_token if record else None, state=state)
