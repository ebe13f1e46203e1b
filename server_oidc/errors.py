"""
Error types raised by the OIDC core.
Backend failures propagate; only session reads downgrade bad data to absence.
"""


class OidcError(Exception):
    """Base class for all errors raised by server_oidc."""


class BackendError(OidcError):
    """Key/value backend failed (connection loss, timeout, server-side error)."""


class StateNotFoundError(OidcError):
    """
    No flow state matches the callback.
    Expired, already consumed and forged state all raise this with the same message.
    """


class StateMismatchError(OidcError):
    """Flow state was found but the callback's state or nonce does not match it."""


class TokenExchangeError(OidcError):
    """Authorization server returned an error or the code exchange failed."""

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        super().__init__(error_description or error)


class DiscoveryError(TokenExchangeError):
    """Provider metadata or JWKS could not be fetched."""

    def __init__(self, error_description: str, status_code: int | None = None) -> None:
        super().__init__("discovery_failed", error_description, status_code)


class DeserializationError(OidcError):
    """Stored value could not be decoded into a record."""
