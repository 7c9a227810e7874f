"""Utility functions related to environment configuration."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Literal, Tuple

from dex_tenant_auth.central_auth.models import DexAppConfig
from dex_tenant_auth.central_auth.state_cache import DEFAULT_TTL_SECONDS, clamp_ttl

logger = logging.getLogger("dex-tenant-auth.utils.environment")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")
_DEFAULT_SCOPES: Final[Tuple[str, ...]] = ("openid", "profile", "email")
_REQUIRED_DEX_VARS: Final[Tuple[str, ...]] = (
    "DEX_CLIENT_ID",
    "DEX_CLIENT_SECRET",
    "DEX_ISSUER_URL",
    "DEX_REDIRECT_URL",
)


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _scopes(raw: str | None) -> Tuple[str, ...]:
    if not raw:
        return _DEFAULT_SCOPES
    scopes = tuple(s for s in (p.strip() for p in raw.replace(" ", ",").split(",")) if s)
    return scopes or _DEFAULT_SCOPES


def load_dex_config() -> DexAppConfig:
    """
    Build the process-wide :class:`DexAppConfig` from ``DEX_*`` variables.

    ``DEX_AUTH_URL``, ``DEX_TOKEN_URL`` and ``DEX_JWKS_URL`` default to the
    standard Dex paths below ``DEX_ISSUER_URL``.

    Raises
    ------
    ValueError
        If any required variable is missing; the message names all of them.
    """
    missing = [name for name in _REQUIRED_DEX_VARS if not os.getenv(name)]
    if missing:
        raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

    issuer = os.environ["DEX_ISSUER_URL"].rstrip("/")
    return DexAppConfig(
        client_id=os.environ["DEX_CLIENT_ID"],
        client_secret=os.environ["DEX_CLIENT_SECRET"],
        issuer_url=issuer,
        authorize_url=os.getenv("DEX_AUTH_URL") or f"{issuer}/auth",
        token_url=os.getenv("DEX_TOKEN_URL") or f"{issuer}/token",
        redirect_url=os.environ["DEX_REDIRECT_URL"],
        scopes=_scopes(os.getenv("DEX_SCOPES")),
        jwks_url=os.getenv("DEX_JWKS_URL") or f"{issuer}/keys",
    )


@dataclass(frozen=True, slots=True)
class AuthSettings:
    """Operator knobs of the auth core that are not per-tenant."""

    state_ttl_seconds: int = DEFAULT_TTL_SECONDS
    state_max_age_seconds: int = DEFAULT_TTL_SECONDS
    context_mismatch_policy: Literal["reject", "warn"] = "reject"
    verify_id_token_signature: bool = True
    storage_dir: Path = Path("~/.dex-tenant-auth").expanduser()
    orgs_file: Path | None = None
    # redis:// or rediss:// URL; unset keeps auth state on disk
    state_cache_url: str | None = None
    # seconds between background sweeps of expired states and sessions; 0 disables
    sweep_interval_seconds: int = 300


def load_auth_settings() -> AuthSettings:
    """Read :class:`AuthSettings` from the environment."""
    ttl = clamp_ttl(_int_env("AUTH_STATE_TTL_SECONDS", DEFAULT_TTL_SECONDS))
    max_age = _int_env("AUTH_STATE_MAX_AGE_SECONDS", ttl)
    if max_age <= 0:
        raise ValueError("AUTH_STATE_MAX_AGE_SECONDS must be positive")

    policy = (os.getenv("AUTH_CONTEXT_MISMATCH_POLICY") or "reject").strip().lower()
    if policy not in ("reject", "warn"):
        raise ValueError("AUTH_CONTEXT_MISMATCH_POLICY must be 'reject' or 'warn'")

    skip_verification = _truthy(os.getenv("OIDC_SKIP_ID_TOKEN_SIGNATURE_VERIFICATION"))
    if skip_verification:
        logger.warning(
            "OIDC_SKIP_ID_TOKEN_SIGNATURE_VERIFICATION is set; ID token signatures will NOT be checked"
        )

    sweep_interval = _int_env("AUTH_SWEEP_INTERVAL_SECONDS", 300)
    if sweep_interval < 0:
        raise ValueError("AUTH_SWEEP_INTERVAL_SECONDS must not be negative")

    orgs_file = os.getenv("AUTH_ORGS_FILE")
    return AuthSettings(
        state_ttl_seconds=ttl,
        state_max_age_seconds=max_age,
        context_mismatch_policy=policy,  # type: ignore[arg-type]
        verify_id_token_signature=not skip_verification,
        storage_dir=Path(os.getenv("AUTH_STORAGE_DIR") or "~/.dex-tenant-auth").expanduser(),
        orgs_file=Path(orgs_file).expanduser() if orgs_file else None,
        state_cache_url=(os.getenv("AUTH_STATE_CACHE_URL") or "").strip() or None,
        sweep_interval_seconds=sweep_interval,
    )
