"""Tenant authentication core package.

This namespace hosts reusable, **HTTP-agnostic** building blocks for the
multi-tenant OIDC login flow brokered by Dex.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
pkce
    Proof-Key for Code Exchange and random token helpers.
state
    HMAC-signed, time-bounded ``state`` parameter encoding / validation.
state_cache
    Single-use, short-lived storage of per-attempt auth context.
authorize
    Authorization URL construction.
tokens
    Code exchange and ID-token verification.
callback
    The callback state machine.
session
    Signed cookies and sliding session expiration.
org_store / user_store
    Tenant configuration lookup and user/session persistence.
models
    Immutable dataclasses shared by all of the above.
errors
    Exception types used by the auth core.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

The façade :class:`~dex_tenant_auth.central_auth.service.TenantAuthService`
depends on environment helpers and is imported from its own module.
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .pkce import generate_code_verifier, code_challenge_s256  # noqa: F401
from .state import sign_state, verify_state, InvalidStateError  # noqa: F401
from .state_cache import DiskStateCache, MemoryStateCache, StateCache  # noqa: F401
from .models import (  # noqa: F401
    AuthState,
    CallbackResult,
    DexAppConfig,
    OrgAuthConfig,
    SessionConfig,
    User,
    UserSession,
)
from .errors import AuthError  # noqa: F401
from .callback import CallbackOrchestrator, CallbackStage  # noqa: F401
from .session import SessionManager, sign_cookie, verify_cookie  # noqa: F401
from .log_utils import get_auth_logger  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # pkce
    "generate_code_verifier",
    "code_challenge_s256",
    # state
    "sign_state",
    "verify_state",
    "InvalidStateError",
    # state cache
    "StateCache",
    "MemoryStateCache",
    "DiskStateCache",
    # models
    "AuthState",
    "CallbackResult",
    "DexAppConfig",
    "OrgAuthConfig",
    "SessionConfig",
    "User",
    "UserSession",
    # errors
    "AuthError",
    # flow
    "CallbackOrchestrator",
    "CallbackStage",
    "SessionManager",
    "sign_cookie",
    "verify_cookie",
    # logging helpers
    "get_auth_logger",
]
