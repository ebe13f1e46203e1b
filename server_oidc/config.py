"""
Server-side OIDC configuration. Values from env; no secrets in this file.
Protocol options (authority, client, redirect URIs, scope) are passed through to the engine.
"""
import os
from dataclasses import dataclass, field
from typing import Any

# Shared key/value backend (Redis) for flow state and sessions
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379/0")

# Flow state namespace and lifetime (seconds). Callback after expiry must fail.
KEY_PREFIX = os.environ.get("OIDC_KEY_PREFIX", "oidc:")
STATE_TTL = int(os.environ.get("OIDC_STATE_TTL", "3600"))

# Session namespace and lifetime (seconds); distinct from flow state
SESSION_PREFIX = os.environ.get("OIDC_SESSION_PREFIX", "session:")
SESSION_TTL = int(os.environ.get("OIDC_SESSION_TTL", "3600"))

# OpenID Provider and our client registration
AUTHORITY = os.environ.get("OIDC_AUTHORITY", "http://127.0.0.1:9000").rstrip("/")
CLIENT_ID = os.environ.get("OIDC_CLIENT_ID", "test-client")
CLIENT_SECRET = os.environ.get("OIDC_CLIENT_SECRET", "")
REDIRECT_URI = os.environ.get("OIDC_REDIRECT_URI", "http://127.0.0.1:8000/callback")
POST_LOGOUT_REDIRECT_URI = os.environ.get("OIDC_POST_LOGOUT_REDIRECT_URI", "http://127.0.0.1:8000/")
SCOPE = os.environ.get("OIDC_SCOPE", "openid profile email")

# Timeouts (seconds) for provider HTTP calls and for each backend call
HTTP_TIMEOUT = float(os.environ.get("OIDC_HTTP_TIMEOUT", "10"))
BACKEND_TIMEOUT = float(os.environ.get("OIDC_BACKEND_TIMEOUT", "5"))

# Allowed clock skew when validating ID token exp/iat
CLOCK_SKEW = int(os.environ.get("OIDC_CLOCK_SKEW", "300"))


@dataclass
class OidcSettings:
    authority: str = AUTHORITY
    client_id: str = CLIENT_ID
    client_secret: str = CLIENT_SECRET
    redirect_uri: str = REDIRECT_URI
    post_logout_redirect_uri: str = POST_LOGOUT_REDIRECT_URI
    scope: str = SCOPE
    key_prefix: str = KEY_PREFIX
    state_ttl: int = STATE_TTL
    session_prefix: str = SESSION_PREFIX
    session_ttl: int = SESSION_TTL
    http_timeout: float = HTTP_TIMEOUT
    clock_skew: int = CLOCK_SKEW
    # "client_secret_post" or "client_secret_basic"; ignored without a secret
    token_endpoint_auth_method: str = "client_secret_post"
    load_user_info: bool = False
    filter_protocol_claims: bool = True
    # Static provider metadata; skips discovery when set
    metadata: dict[str, Any] | None = None
    extra_token_params: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.authority = self.authority.rstrip("/")
        if self.state_ttl <= 0 or self.session_ttl <= 0:
            raise ValueError("state_ttl and session_ttl must be positive")
        if self.token_endpoint_auth_method not in ("client_secret_post", "client_secret_basic"):
            raise ValueError(f"Unsupported token_endpoint_auth_method: {self.token_endpoint_auth_method}")

    @classmethod
    def from_env(cls, **overrides: Any) -> "OidcSettings":
        """Settings from the module-level env values, with keyword overrides."""
        return cls(**overrides)

    @property
    def discovery_url(self) -> str:
        return f"{self.authority}/.well-known/openid-configuration"
