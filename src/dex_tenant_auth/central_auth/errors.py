"""Exception types raised by the tenant auth core.

Only lightweight, **data-carrying** exceptions live here so that the HTTP layer
can turn them into responses without knowing how they were produced.

Each error carries:

``code``
    Stable machine-readable identifier, used in logs.
``http_status``
    Status the HTTP adapter should answer with.
``security_event``
    Whether the failure must be logged as security-relevant.
``stage``
    Callback stage at which the error surfaced (set by the orchestrator).

Security-relevant failures share a single user-facing message so that clients
cannot tell a forged state from an expired one or a nonce mismatch.
"""

from __future__ import annotations

from typing import ClassVar

GENERIC_LOGIN_MESSAGE = "Login could not be completed. Please sign in again."


class AuthError(Exception):
    """Base class of every typed failure in the auth core."""

    code: ClassVar[str] = "auth_error"
    http_status: ClassVar[int] = 400
    security_event: ClassVar[bool] = False
    # errors in this family are answered with a redirect to a fresh login
    restart_login: ClassVar[bool] = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.replace("_", " "))
        self.stage: str | None = None

    @property
    def public_message(self) -> str:
        """Message safe to show to the end user."""
        if self.restart_login:
            return GENERIC_LOGIN_MESSAGE
        return str(self)

    def to_payload(self) -> dict[str, str]:
        """Return a JSON-serialisable payload **without secrets**."""
        return {"error": self.code, "message": self.public_message}


class ConfigNotFound(AuthError):
    """No organization is configured for the requested subdomain."""

    code = "config_not_found"
    http_status = 404

    @property
    def public_message(self) -> str:
        # never echo the subdomain back
        return "Not found."


class InvalidState(AuthError):
    """Signed state is malformed, forged, stale or belongs to another org."""

    code = "invalid_state"
    security_event = True
    restart_login = True

    def __init__(self, message: str | None = None, *, reason: str = "malformed") -> None:
        super().__init__(message or f"invalid state ({reason})")
        self.reason = reason


class StateExpiredOrReplayed(AuthError):
    """State signature was fine but the cached auth context is gone."""

    code = "state_expired_or_replayed"
    security_event = True
    restart_login = True


class ContextMismatch(AuthError):
    """Callback arrived from a different client than the one that logged in."""

    code = "context_mismatch"
    security_event = True
    restart_login = True


class NonceMismatch(AuthError):
    """ID token nonce differs from the nonce stored with the auth state."""

    code = "nonce_mismatch"
    security_event = True
    restart_login = True


class IdTokenInvalid(AuthError):
    """ID token could not be parsed or failed signature / claim validation."""

    code = "id_token_invalid"
    security_event = True
    restart_login = True


class TokenExchangeFailed(AuthError):
    """The provider token endpoint rejected the code or was unreachable."""

    code = "token_exchange_failed"
    http_status = 502

    def __init__(
        self,
        message: str | None = None,
        *,
        status: int | None = None,
        body: str = "",
    ) -> None:
        super().__init__(message or "token exchange failed")
        self.status = status
        # already truncated and redacted by the caller
        self.body = body

    @property
    def public_message(self) -> str:
        return "The identity provider could not complete the login. Please sign in again."


class PersistenceError(AuthError):
    """User or session storage failed; the caller must restart the login."""

    code = "persistence_error"
    http_status = 500

    @property
    def public_message(self) -> str:
        return "Internal error. Please sign in again."


class StateCacheFull(AuthError):
    """No room to store another pending login without dropping a live one."""

    code = "state_cache_full"
    http_status = 503

    @property
    def public_message(self) -> str:
        return "Too many sign-ins in progress. Please try again shortly."


class SessionExpired(AuthError):
    """Session is unknown, inactive or past its expiry."""

    code = "session_expired"
    http_status = 401

    @property
    def public_message(self) -> str:
        return "Authentication required."


class InvalidCookie(AuthError):
    """Session cookie failed signature verification."""

    code = "invalid_cookie"
    http_status = 401
    security_event = True

    @property
    def public_message(self) -> str:
        # identical to SessionExpired
        return "Authentication required."
