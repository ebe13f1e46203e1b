"""
Pytest fixtures: in-memory and fakeredis backends, a fake clock, and a fake OpenID Provider
served through httpx.MockTransport (discovery, JWKS, /authorize, /token, /userinfo).
"""
import base64
import hashlib
import secrets
import time
from base64 import urlsafe_b64encode
from urllib.parse import parse_qs, urlencode, urlsplit

import fakeredis
import fakeredis.aioredis
import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key

from server_oidc.backend import MemoryBackend, RedisBackend
from server_oidc.client import ServerSideProtocolClient, ServerSideUserManager
from server_oidc.config import OidcSettings

ISSUER = "https://op.example"
CLIENT_ID = "test-client"
CLIENT_SECRET = "test-secret"
REDIRECT_URI = "https://app.example/callback"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def public_key_to_jwk(public_key, kid: str) -> dict:
    """Export cryptography RSA public key to JWK with given kid."""
    numbers = public_key.public_numbers()
    n_b64 = base64.urlsafe_b64encode(numbers.n.to_bytes((numbers.n.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")
    e_b64 = base64.urlsafe_b64encode(numbers.e.to_bytes((numbers.e.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")
    return {"kty": "RSA", "kid": kid, "alg": "RS256", "use": "sig", "n": n_b64, "e": e_b64}


def _pkce_verify(code_verifier: str, code_challenge: str) -> bool:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii") == code_challenge


def _oauth_error(error: str, description: str, status_code: int = 400) -> httpx.Response:
    # Same shape the lab auth server returns (FastAPI HTTPException detail)
    return httpx.Response(status_code, json={"detail": {"error": error, "error_description": description}})


class FakeProvider:
    """Minimal OpenID Provider. Codes and refresh tokens are single use."""

    def __init__(self, private_key, kid: str = "op-key-1") -> None:
        self.private_key = private_key
        self.kid = kid
        self.jwks_keys = [public_key_to_jwk(private_key.public_key(), kid)]
        self.codes: dict[str, dict] = {}
        self.refresh_tokens: dict[str, dict] = {}
        self.token_requests: list[dict] = []
        self.request_log: list[str] = []
        self.id_token_overrides: dict = {}
        self.sub = "user-42"
        self.token_status: int | None = None
        self.signing_alg = "RS256"
        self.metadata_overrides: dict = {}
        self.userinfo_body: object = None

    def metadata(self) -> dict:
        return {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/authorize",
            "token_endpoint": f"{ISSUER}/token",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "end_session_endpoint": f"{ISSUER}/logout",
            "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
            "response_types_supported": ["code"],
            "id_token_signing_alg_values_supported": ["RS256"],
            "code_challenge_methods_supported": ["S256"],
        } | self.metadata_overrides

    def authorize(self, authorization_url: str) -> str:
        """Play the user's consent: record a code and return the redirect back to the client."""
        q = {k: v[0] for k, v in parse_qs(urlsplit(authorization_url).query).items()}
        assert q["response_type"] == "code"
        assert q["code_challenge_method"] == "S256"
        code = secrets.token_urlsafe(16)
        self.codes[code] = q
        return f"{q['redirect_uri']}?{urlencode({'code': code, 'state': q['state']})}"

    def id_token(self, client_id: str, nonce: str | None, **overrides) -> str:
        now = int(time.time())
        payload = {
            "iss": ISSUER,
            "sub": self.sub,
            "aud": client_id,
            "exp": now + 600,
            "iat": now,
            "name": "Test User",
            "email": "user@example.com",
        }
        if nonce:
            payload["nonce"] = nonce
        payload.update(self.id_token_overrides)
        payload.update(overrides)
        return jwt.encode(payload, self.private_key, algorithm=self.signing_alg, headers={"kid": self.kid})

    def _issue(self, client_id: str, scope: str, nonce: str | None) -> httpx.Response:
        refresh_token = secrets.token_urlsafe(24)
        self.refresh_tokens[refresh_token] = {"client_id": client_id, "scope": scope}
        body = {
            "access_token": secrets.token_urlsafe(24),
            "token_type": "Bearer",
            "expires_in": 600,
            "scope": scope,
            "refresh_token": refresh_token,
        }
        if "openid" in scope.split():
            body["id_token"] = self.id_token(client_id, nonce)
        return httpx.Response(200, json=body)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_requests.append(form)
        if self.token_status is not None:
            return _oauth_error("server_error", "Provider unavailable", self.token_status)
        if form.get("client_secret") != CLIENT_SECRET and "authorization" not in request.headers:
            return _oauth_error("invalid_client", "Client authentication failed", 401)

        if form["grant_type"] == "authorization_code":
            auth = self.codes.pop(form.get("code", ""), None)
            if auth is None:
                return _oauth_error("invalid_grant", "Invalid or expired authorization code")
            if auth["client_id"] != form.get("client_id") or auth["redirect_uri"] != form.get("redirect_uri"):
                return _oauth_error("invalid_grant", "Client or redirect_uri mismatch")
            if not _pkce_verify(form.get("code_verifier", ""), auth["code_challenge"]):
                return _oauth_error("invalid_grant", "PKCE verification failed")
            return self._issue(form["client_id"], auth["scope"], auth.get("nonce"))

        if form["grant_type"] == "refresh_token":
            rt = self.refresh_tokens.pop(form.get("refresh_token", ""), None)
            if rt is None:
                return _oauth_error("invalid_grant", "Invalid or revoked refresh token")
            return self._issue(rt["client_id"], rt["scope"], None)

        return _oauth_error("unsupported_grant_type", "Only authorization_code and refresh_token are supported")

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.request_log.append(f"{request.method} {path}")
        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.metadata())
        if path == "/.well-known/jwks.json":
            return httpx.Response(200, json={"keys": self.jwks_keys})
        if path == "/token" and request.method == "POST":
            return self._token(request)
        if path == "/userinfo":
            if not request.headers.get("authorization", "").startswith("Bearer "):
                return httpx.Response(401)
            if self.userinfo_body is not None:
                return httpx.Response(200, json=self.userinfo_body)
            return httpx.Response(200, json={"sub": self.sub, "locale": "en"})
        return httpx.Response(404)


@pytest.fixture(scope="session")
def rsa_key():
    return generate_private_key(65537, 2048, default_backend())


@pytest.fixture
def provider(rsa_key) -> FakeProvider:
    return FakeProvider(rsa_key)


@pytest.fixture
def http_client(provider) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handle))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_backend(clock) -> MemoryBackend:
    return MemoryBackend(clock=clock)


@pytest.fixture
def redis_client():
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_backend(redis_client) -> RedisBackend:
    return RedisBackend(redis_client, timeout=2)


@pytest.fixture
def settings() -> OidcSettings:
    return OidcSettings(
        authority=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uri=REDIRECT_URI,
        post_logout_redirect_uri="https://app.example/",
        scope="openid profile email",
        key_prefix="oidc:",
        state_ttl=3600,
        session_prefix="session:",
        session_ttl=3600,
    )


@pytest.fixture
def protocol_client(memory_backend, settings, http_client) -> ServerSideProtocolClient:
    return ServerSideProtocolClient(memory_backend, settings, http_client=http_client)


@pytest.fixture
def user_manager(memory_backend, settings, http_client) -> ServerSideUserManager:
    return ServerSideUserManager(memory_backend, settings, http_client=http_client)
