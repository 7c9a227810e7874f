"""Typed, immutable records used by the tenant auth core.

Secrets (client secret, org session secret, cookie signing secret, tokens) are
declared with ``repr=False`` so that an accidental ``%r`` in a log line does
not leak them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Final, Literal, Mapping

from dex_tenant_auth.central_auth.clock import Clock, default_clock

SameSite = Literal["strict", "lax", "none"]

_SAME_SITE_VALUES: Final[tuple[str, ...]] = ("strict", "lax", "none")


def _known_fields(cls: type, data: Mapping[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# --------------------------------------------------------------------------- #
# configuration                                                               #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True, slots=True)
class DexAppConfig:
    """Process-wide identity-provider client settings, loaded once at startup."""

    client_id: str
    client_secret: str = field(repr=False)
    issuer_url: str
    authorize_url: str
    token_url: str
    redirect_url: str
    scopes: tuple[str, ...] = ("openid", "profile", "email")
    jwks_url: str = ""

    def __post_init__(self) -> None:
        if not self.jwks_url:
            object.__setattr__(self, "jwks_url", f"{self.issuer_url.rstrip('/')}/keys")
        object.__setattr__(self, "scopes", tuple(self.scopes))


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Per-organization cookie and session lifetime policy."""

    cookie_signing_secret: str = field(repr=False)
    cookie_name: str = "session_id"
    cookie_domain: str | None = None
    secure: bool = True
    http_only: bool = True
    same_site: SameSite = "lax"
    max_age_seconds: int = 86_400
    extension_enabled: bool = True
    # fraction of the lifetime that must elapse before a sliding renewal
    extension_threshold: float = 0.5

    def __post_init__(self) -> None:
        same_site = str(self.same_site).lower()
        if same_site not in _SAME_SITE_VALUES:
            raise ValueError(f"same_site must be one of {_SAME_SITE_VALUES}")
        object.__setattr__(self, "same_site", same_site)
        if self.max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        if not 0 < self.extension_threshold <= 1:
            raise ValueError("extension_threshold must be in (0, 1]")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SessionConfig":
        values = dict(data)
        # accept the column names used by the organizations table
        if "session_extension_enabled" in values:
            values.setdefault("extension_enabled", values.pop("session_extension_enabled"))
        if "session_extension_threshold" in values:
            values.setdefault("extension_threshold", values.pop("session_extension_threshold"))
        return cls(**_known_fields(cls, values))


@dataclass(frozen=True, slots=True)
class OrgAuthConfig:
    """Authentication settings of one tenant, resolved per request by subdomain."""

    org_id: str
    subdomain: str
    connector_id: str
    session_secret: str = field(repr=False)
    session_config: SessionConfig = field(repr=False)
    provider_org_id: str | None = None
    pkce_required: bool = True
    max_age_seconds: int = 300
    prompt: str | None = None
    additional_params: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OrgAuthConfig":
        """Build from a JSON document or database row.

        ``dex_connector_id`` and ``auth0_organization_id`` are accepted as
        aliases of ``connector_id`` and ``provider_org_id``.
        """
        values = dict(data)
        if "dex_connector_id" in values:
            values.setdefault("connector_id", values.pop("dex_connector_id"))
        if "auth0_organization_id" in values:
            values.setdefault("provider_org_id", values.pop("auth0_organization_id"))
        session_cfg = values.get("session_config")
        if not isinstance(session_cfg, SessionConfig):
            values["session_config"] = SessionConfig.from_mapping(session_cfg or {})
        values["additional_params"] = {
            str(k): str(v) for k, v in (values.get("additional_params") or {}).items()
        }
        return cls(**_known_fields(cls, values))


# --------------------------------------------------------------------------- #
# ephemeral flow state                                                        #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True, slots=True)
class AuthState:
    """Server-side context of one login attempt, consumed exactly once."""

    state_id: str
    org_id: str
    nonce: str = field(repr=False)
    pkce_verifier: str = field(repr=False)
    csrf_token: str = field(repr=False)
    return_url: str
    client_ip: str
    user_agent_hash: str
    created_at: int = field(default_factory=lambda: int(default_clock()))
    ttl_seconds: int = 600

    @property
    def expires_at(self) -> int:
        return self.created_at + self.ttl_seconds

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        """Return *True* if the state exceeded its TTL."""
        return (clock() - self.created_at) > self.ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthState":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True, slots=True)
class AuthorizationRedirect:
    """Result of building an authorization request; no cookie is involved."""

    url: str
    state_id: str
    expires_at: int


# --------------------------------------------------------------------------- #
# provider responses                                                          #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True, slots=True)
class TokenResponse:
    """Token endpoint response."""

    access_token: str = field(repr=False)
    id_token: str = field(repr=False)
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = field(default=None, repr=False)
    scope: str | None = None


@dataclass(frozen=True, slots=True)
class IdTokenClaims:
    """Standard OIDC claims extracted from an ID token payload."""

    sub: str
    iss: str
    aud: tuple[str, ...]
    exp: int
    iat: int
    nonce: str = field(repr=False)
    email: str | None = None
    email_verified: bool | None = None
    name: str | None = None
    picture: str | None = None
    preferred_username: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "IdTokenClaims":
        aud = payload.get("aud") or ()
        if isinstance(aud, str):
            aud = (aud,)
        return cls(
            sub=str(payload["sub"]),
            iss=str(payload.get("iss", "")),
            aud=tuple(str(a) for a in aud),
            exp=int(payload.get("exp", 0)),
            iat=int(payload.get("iat", 0)),
            nonce=str(payload["nonce"]),
            email=payload.get("email"),
            email_verified=payload.get("email_verified"),
            name=payload.get("name"),
            picture=payload.get("picture"),
            preferred_username=payload.get("preferred_username"),
            raw=dict(payload),
        )


# --------------------------------------------------------------------------- #
# persistent records                                                          #
# --------------------------------------------------------------------------- #


@dataclass(frozen=True, slots=True)
class User:
    """Identity of a person inside one organization."""

    user_id: str
    org_id: str
    auth_provider: str
    provider_user_id: str
    email: str
    name: str | None = None
    display_name: str | None = None
    picture: str | None = None
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    id_token: str | None = field(default=None, repr=False)
    token_expires_at: int | None = None
    is_active: bool = True
    created_at: int = 0
    last_login_at: int = 0
    updated_at: int = 0

    @property
    def identity(self) -> tuple[str, str, str]:
        """The unique ``(org_id, provider_user_id, auth_provider)`` key."""
        return (self.org_id, self.provider_user_id, self.auth_provider)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "User":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True, slots=True)
class UserSession:
    """Browser session owned by a user."""

    session_id: str
    user_id: str
    org_id: str
    ip_address: str
    user_agent: str
    created_at: int
    expires_at: int
    last_activity_at: int
    is_active: bool = True

    def is_valid(self, now: int) -> bool:
        return self.is_active and self.expires_at > now

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserSession":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True, slots=True)
class SessionCookie:
    """Everything the HTTP layer needs to emit ``Set-Cookie``."""

    name: str
    value: str = field(repr=False)
    max_age: int
    domain: str | None = None
    path: str = "/"
    secure: bool = True
    http_only: bool = True
    same_site: SameSite = "lax"


@dataclass(frozen=True, slots=True)
class CallbackResult:
    """Outcome of a successful callback."""

    user: User
    session: UserSession
    cookie: SessionCookie
    return_url: str
