"""
OIDC authorization code flow engine (RP side).
Discovery, authorization URL, callback processing, code exchange, ID token validation via JWKS,
refresh_token grant and RP-initiated logout URL. Flow state lives in an AuthFlowStateManager.
"""
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode

import httpx
import jwt

from server_oidc.config import OidcSettings
from server_oidc.errors import (
    DeserializationError,
    DiscoveryError,
    StateMismatchError,
    StateNotFoundError,
    TokenExchangeError,
)
from server_oidc.flow_store import AuthFlowStateManager, FlowState
from server_oidc.pkce import build_authorize_url, generate_nonce, generate_pkce, generate_state, parse_callback_url
from server_oidc.session_store import SessionRecord

logger = logging.getLogger(__name__)

# Claims that describe the token rather than the user; dropped from the stored profile
PROTOCOL_CLAIMS = frozenset({"nonce", "at_hash", "c_hash", "iat", "nbf", "exp", "aud", "iss", "azp", "auth_time"})

# Same message for expired, consumed and forged state
STATE_NOT_FOUND_MESSAGE = "No matching authorization state found"


@dataclass
class AuthorizationRequest:
    url: str
    correlation_id: str


@runtime_checkable
class ProtocolEngine(Protocol):
    """What ServerSideProtocolClient needs from an OIDC protocol implementation."""

    async def create_authorization_request(
        self,
        *,
        state: Any = None,
        scope: str | None = None,
        prompt: str | None = None,
        login_hint: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> AuthorizationRequest:
        ...

    async def process_authorization_response(self, callback_url: str) -> SessionRecord:
        ...

    async def clear_stale_state(self) -> int:
        ...


def _error_body(r: httpx.Response) -> dict:
    """Error dict from a JSON error response ({"error": ...} or FastAPI's {"detail": {...}})."""
    if not r.headers.get("content-type", "").startswith("application/json"):
        return {}
    try:
        body = r.json()
    except ValueError:
        return {}
    if isinstance(body, dict) and isinstance(body.get("detail"), dict):
        body = body["detail"]
    return body if isinstance(body, dict) else {}


class OidcEngine:
    """
    Authorization code + PKCE flow against one provider.
    The httpx client may be injected (and is then never closed here); otherwise one is created
    and released by aclose().
    """

    def __init__(
        self,
        settings: OidcSettings,
        flows: AuthFlowStateManager,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._flows = flows
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=settings.http_timeout)
        self._metadata: dict[str, Any] | None = dict(settings.metadata) if settings.metadata else None
        self._jwks: jwt.PyJWKSet | None = None

    @property
    def flows(self) -> AuthFlowStateManager:
        return self._flows

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # --- discovery ---

    async def _get_json(self, url: str, what: str) -> dict:
        try:
            r = await self._http.get(url, headers={"Accept": "application/json"}, timeout=self.settings.http_timeout)
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Failed to fetch {what} from {url}: {e}") from e
        if r.status_code != 200:
            raise DiscoveryError(f"{what} request to {url} returned {r.status_code}", status_code=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise DiscoveryError(f"{what} at {url} is not JSON") from e
        if not isinstance(data, dict):
            raise DiscoveryError(f"{what} at {url} is not a JSON object")
        return data

    async def metadata(self) -> dict[str, Any]:
        """Provider metadata from settings or discovery (fetched once, then cached)."""
        if self._metadata is None:
            self._metadata = await self._get_json(self.settings.discovery_url, "provider metadata")
            logger.info("Loaded provider metadata for %s", self.settings.authority)
        return self._metadata

    async def _endpoint(self, name: str) -> str:
        value = (await self.metadata()).get(name)
        if not value:
            raise DiscoveryError(f"Provider metadata has no {name}")
        return value

    async def _load_jwks(self, refresh: bool = False) -> jwt.PyJWKSet:
        if self._jwks is None or refresh:
            jwks_uri = await self._endpoint("jwks_uri")
            data = await self._get_json(jwks_uri, "JWKS")
            try:
                self._jwks = jwt.PyJWKSet.from_dict(data)
            except jwt.PyJWTError as e:
                raise DiscoveryError(f"JWKS at {jwks_uri} has no usable keys: {e}") from e
        return self._jwks

    async def _signing_key(self, kid: str | None) -> jwt.PyJWK:
        def find(jwks: jwt.PyJWKSet) -> jwt.PyJWK | None:
            for key in jwks.keys:
                if kid is None or key.key_id == kid:
                    return key
            return None

        key = find(await self._load_jwks())
        if key is None:
            # Unknown kid: provider may have rotated keys since we cached the set
            key = find(await self._load_jwks(refresh=True))
        if key is None:
            raise TokenExchangeError("invalid_id_token", f"No signing key matches kid={kid!r}")
        return key

    # --- authorization request ---

    async def create_authorization_request(
        self,
        *,
        state: Any = None,
        scope: str | None = None,
        prompt: str | None = None,
        login_hint: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> AuthorizationRequest:
        """
        Generate correlation id (protocol state), nonce and PKCE pair; persist FlowState; build the URL.
        ``state`` is the caller's opaque payload, returned on the identity after the callback.
        """
        authorization_endpoint = await self._endpoint("authorization_endpoint")
        scope = scope or self.settings.scope
        correlation_id = generate_state()
        nonce = generate_nonce() if "openid" in scope.split() else None
        code_verifier, code_challenge = generate_pkce()

        params = dict(extra_params or {})
        if prompt:
            params["prompt"] = prompt
        if login_hint:
            params["login_hint"] = login_hint

        await self._flows.store_flow(
            FlowState(
                correlation_id=correlation_id,
                code_verifier=code_verifier,
                requested_scope=scope,
                nonce=nonce,
                redirect_uri=self.settings.redirect_uri,
                state_payload=state,
            )
        )
        url = build_authorize_url(
            authorization_endpoint=authorization_endpoint,
            client_id=self.settings.client_id,
            redirect_uri=self.settings.redirect_uri,
            scope=scope,
            state=correlation_id,
            code_challenge=code_challenge,
            nonce=nonce,
            extra_params=params,
        )
        return AuthorizationRequest(url=url, correlation_id=correlation_id)

    # --- callback ---

    async def process_authorization_response(self, callback_url: str) -> SessionRecord:
        """
        Consume the flow state named by the callback, validate it, exchange the code.
        Raises StateNotFoundError, StateMismatchError or TokenExchangeError. The flow state is
        gone after this call whatever the outcome.
        """
        params = parse_callback_url(callback_url)
        if not params.state:
            raise StateNotFoundError(STATE_NOT_FOUND_MESSAGE)

        try:
            flow = await self._flows.consume_flow(params.state)
        except DeserializationError as e:
            logger.warning("Unreadable flow state for callback: %s", e)
            raise StateMismatchError("Authorization state could not be validated") from e
        if flow is None:
            raise StateNotFoundError(STATE_NOT_FOUND_MESSAGE)

        if not hmac.compare_digest(flow.correlation_id, params.state):
            logger.warning("Callback state does not match stored flow state")
            raise StateMismatchError("Authorization state mismatch")

        if params.error:
            raise TokenExchangeError(params.error, params.error_description)
        if not params.code:
            raise TokenExchangeError("invalid_request", "Missing code parameter")

        body = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": params.code,
                "redirect_uri": flow.redirect_uri or self.settings.redirect_uri,
                "code_verifier": flow.code_verifier,
            }
        )

        claims: dict[str, Any] = {}
        id_token = body.get("id_token")
        if id_token:
            claims = await self._validate_id_token(id_token, nonce=flow.nonce)
        elif "openid" in flow.requested_scope.split():
            raise TokenExchangeError("invalid_response", "No id_token in token response for openid scope")

        profile = self._profile(claims)
        if self.settings.load_user_info:
            profile.update(await self._userinfo(body["access_token"], expected_sub=claims.get("sub")))

        logger.info("Authorization code exchanged (sub=%s)", profile.get("sub"))
        return SessionRecord(
            access_token=body["access_token"],
            token_type=body.get("token_type") or "Bearer",
            id_token=id_token,
            refresh_token=body.get("refresh_token"),
            scope=body.get("scope") or flow.requested_scope,
            profile=profile,
            expires_at=self._expires_at(body),
            state=flow.state_payload,
        )

    async def _token_request(self, data: dict[str, str]) -> dict[str, Any]:
        token_endpoint = await self._endpoint("token_endpoint")
        form = {**self.settings.extra_token_params, **data, "client_id": self.settings.client_id}
        auth = None
        if self.settings.client_secret:
            if self.settings.token_endpoint_auth_method == "client_secret_basic":
                auth = httpx.BasicAuth(self.settings.client_id, self.settings.client_secret)
            else:
                form["client_secret"] = self.settings.client_secret
        try:
            r = await self._http.post(
                token_endpoint,
                data=form,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.settings.http_timeout,
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError("request_failed", f"Token request failed: {e}") from e

        if r.status_code != 200:
            err = _error_body(r)
            raise TokenExchangeError(
                str(err.get("error") or "invalid_response"),
                err.get("error_description") or f"Token endpoint returned {r.status_code}",
                status_code=r.status_code,
            )
        try:
            body = r.json()
        except ValueError as e:
            raise TokenExchangeError("invalid_response", "Token endpoint returned a non-JSON body") from e
        if not isinstance(body, dict) or not body.get("access_token"):
            raise TokenExchangeError("invalid_response", "No access_token in token response")
        return body

    async def _validate_id_token(self, id_token: str, *, nonce: str | None) -> dict[str, Any]:
        """Verify signature via JWKS and iss, aud, exp; then bind to the flow's nonce."""
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise TokenExchangeError("invalid_id_token", f"Malformed id_token: {e}") from e

        key = await self._signing_key(header.get("kid"))
        metadata = await self.metadata()
        # Only the signing key's own algorithm, and only if the provider advertises it
        algorithms = [
            alg
            for alg in metadata.get("id_token_signing_alg_values_supported") or ["RS256"]
            if alg != "none" and not alg.startswith("HS") and alg == key.algorithm_name
        ]
        if not algorithms:
            raise TokenExchangeError("invalid_id_token", f"Signing key algorithm {key.algorithm_name} is not accepted")
        try:
            claims = jwt.decode(
                id_token,
                key.key,
                algorithms=algorithms,
                audience=self.settings.client_id,
                issuer=metadata.get("issuer") or self.settings.authority,
                leeway=self.settings.clock_skew,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExchangeError("invalid_id_token", "id_token expired") from e
        except (jwt.PyJWTError, TypeError, ValueError) as e:
            raise TokenExchangeError("invalid_id_token", f"id_token validation failed: {e}") from e

        if nonce is not None and not hmac.compare_digest(str(claims.get("nonce", "")), nonce):
            logger.warning("id_token nonce does not match stored flow state (sub=%s)", claims.get("sub"))
            raise StateMismatchError("id_token nonce mismatch")
        return claims

    async def _userinfo(self, access_token: str, expected_sub: str | None) -> dict[str, Any]:
        endpoint = await self._endpoint("userinfo_endpoint")
        try:
            r = await self._http.get(
                endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self.settings.http_timeout,
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError("request_failed", f"Userinfo request failed: {e}") from e
        if r.status_code != 200:
            raise TokenExchangeError("invalid_userinfo", f"Userinfo endpoint returned {r.status_code}", r.status_code)
        try:
            info = r.json()
        except ValueError as e:
            raise TokenExchangeError("invalid_userinfo", "Userinfo response is not JSON") from e
        if not isinstance(info, dict):
            raise TokenExchangeError("invalid_userinfo", "Userinfo response is not a JSON object")
        if expected_sub is not None and info.get("sub") != expected_sub:
            raise TokenExchangeError("invalid_userinfo", "Userinfo sub does not match id_token sub")
        return info

    def _profile(self, claims: dict[str, Any]) -> dict[str, Any]:
        if not self.settings.filter_protocol_claims:
            return dict(claims)
        return {k: v for k, v in claims.items() if k not in PROTOCOL_CLAIMS}

    @staticmethod
    def _expires_at(body: dict[str, Any]) -> int | None:
        expires_in = body.get("expires_in")
        if expires_in is None:
            return None
        try:
            return int(time.time()) + int(expires_in)
        except (TypeError, ValueError):
            return None

    # --- refresh, logout, maintenance ---

    async def refresh(self, record: SessionRecord) -> SessionRecord:
        """Exchange the record's refresh_token for new tokens; profile and caller state carry over."""
        if not record.refresh_token:
            raise TokenExchangeError("invalid_request", "Session has no refresh_token")
        body = await self._token_request({"grant_type": "refresh_token", "refresh_token": record.refresh_token})

        profile = dict(record.profile)
        id_token = body.get("id_token")
        if id_token:
            claims = await self._validate_id_token(id_token, nonce=None)
            if profile.get("sub") is not None and claims.get("sub") != profile.get("sub"):
                raise TokenExchangeError("invalid_id_token", "Refreshed id_token sub does not match session")
            profile.update(self._profile(claims))

        logger.info("refresh_token grant: new tokens issued (sub=%s)", profile.get("sub"))
        return SessionRecord(
            access_token=body["access_token"],
            token_type=body.get("token_type") or record.token_type,
            id_token=id_token or record.id_token,
            refresh_token=body.get("refresh_token") or record.refresh_token,
            scope=body.get("scope") or record.scope,
            profile=profile,
            expires_at=self._expires_at(body),
            state=record.state,
        )

    async def create_signout_url(self, id_token_hint: str | None = None, state: str | None = None) -> str:
        """RP-initiated logout URL (end_session_endpoint) returning to post_logout_redirect_uri."""
        endpoint = await self._endpoint("end_session_endpoint")
        params = {"client_id": self.settings.client_id}
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        if self.settings.post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = self.settings.post_logout_redirect_uri
        if state:
            params["state"] = state
        sep = "&" if "?" in endpoint else "?"
        return f"{endpoint}{sep}{urlencode(params)}"

    async def clear_stale_state(self) -> int:
        """Sweep flow state older than the flow TTL. The backend also expires it on its own."""
        return await self._flows.clear_stale(self._flows.ttl_seconds)
