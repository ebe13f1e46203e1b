"""
PKCE (RFC 7636) and authorization request helpers.
S256 only; state (correlation id) and nonce generation; callback URL parsing.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit


def generate_state() -> str:
    """Opaque value for CSRF protection; doubles as the flow correlation id."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Random value for ID token binding; required when openid scope is requested."""
    return secrets.token_urlsafe(32)


def code_challenge_for(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, code_challenge_for(code_verifier)


def build_authorize_url(
    *,
    authorization_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
    nonce: str | None = None,
    extra_params: dict[str, str] | None = None,
) -> str:
    """Build the provider authorization URL with required and optional params."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if nonce:
        params["nonce"] = nonce
    for name, value in (extra_params or {}).items():
        if name not in params and value is not None:
            params[name] = value
    sep = "&" if "?" in authorization_endpoint else "?"
    return f"{authorization_endpoint}{sep}{urlencode(params)}"


@dataclass
class CallbackParams:
    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None


def parse_callback_url(callback_url: str) -> CallbackParams:
    """Read state/code/error from the callback query string (fragment ignored)."""
    query = urlsplit(callback_url).query
    params = parse_qs(query, keep_blank_values=False) if query else {}

    def first(name: str) -> str | None:
        values = params.get(name)
        return values[0] if values else None

    return CallbackParams(
        state=first("state"),
        code=first("code"),
        error=first("error"),
        error_description=first("error_description"),
    )
