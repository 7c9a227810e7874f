"""OAuth callback state machine.

The callback is processed as an explicit sequence of stages::

    START -> STATE_VERIFIED -> CONSUMED -> CONTEXT_CHECKED -> TOKENS_EXCHANGED
          -> CLAIMS_VERIFIED -> USER_RESOLVED -> SESSION_CREATED -> DONE

Each transition is one method that reads and enriches a :class:`CallbackFlow`
record.  :meth:`CallbackOrchestrator.run` walks :data:`_TRANSITIONS`; any
:class:`AuthError` escaping a transition is stamped with the stage it was
raised from (``error.stage``) and re-raised, so every exit point of the flow is
enumerable.
"""

from __future__ import annotations

import enum
import hmac
import logging
from dataclasses import dataclass
from typing import Callable, Final, Literal

from dex_tenant_auth.central_auth.authorize import sanitize_return_url
from dex_tenant_auth.central_auth.clock import Clock, default_clock, now_seconds
from dex_tenant_auth.central_auth.errors import (
    AuthError,
    ContextMismatch,
    InvalidState,
    StateExpiredOrReplayed,
)
from dex_tenant_auth.central_auth.log_utils import get_auth_logger, log_security_event
from dex_tenant_auth.central_auth.models import (
    AuthState,
    CallbackResult,
    DexAppConfig,
    IdTokenClaims,
    OrgAuthConfig,
    SessionCookie,
    TokenResponse,
    User,
    UserSession,
)
from dex_tenant_auth.central_auth.pkce import hash_user_agent
from dex_tenant_auth.central_auth.session import SessionManager
from dex_tenant_auth.central_auth.state import verify_state
from dex_tenant_auth.central_auth.state_cache import DEFAULT_TTL_SECONDS, StateCache
from dex_tenant_auth.central_auth.tokens import (
    IdTokenVerifier,
    TokenExchangeClient,
    verify_nonce,
)
from dex_tenant_auth.central_auth.user_store import UserStore, generate_user_id

_LOGGER_NAME: Final[str] = "dex-tenant-auth.central_auth.callback"

ContextPolicy = Literal["reject", "warn"]


class CallbackStage(str, enum.Enum):
    START = "start"
    STATE_VERIFIED = "state_verified"
    CONSUMED = "consumed"
    CONTEXT_CHECKED = "context_checked"
    TOKENS_EXCHANGED = "tokens_exchanged"
    CLAIMS_VERIFIED = "claims_verified"
    USER_RESOLVED = "user_resolved"
    SESSION_CREATED = "session_created"
    DONE = "done"


@dataclass(slots=True)
class CallbackFlow:
    """Mutable record threaded through the transitions of one callback."""

    org_config: OrgAuthConfig
    dex_config: DexAppConfig
    code: str
    signed_state: str
    client_ip: str
    user_agent: str
    correlation_id: str | None = None
    stage: CallbackStage = CallbackStage.START
    state_id: str | None = None
    auth_state: AuthState | None = None
    tokens: TokenResponse | None = None
    claims: IdTokenClaims | None = None
    user: User | None = None
    session: UserSession | None = None
    cookie: SessionCookie | None = None
    return_url: str | None = None

    def result(self) -> CallbackResult:
        assert self.user and self.session and self.cookie and self.return_url
        return CallbackResult(
            user=self.user,
            session=self.session,
            cookie=self.cookie,
            return_url=self.return_url,
        )


class CallbackOrchestrator:
    """Turn ``code`` + signed ``state`` into a user session."""

    def __init__(
        self,
        *,
        state_cache: StateCache,
        token_client: TokenExchangeClient,
        id_token_verifier: IdTokenVerifier,
        user_store: UserStore,
        session_manager: SessionManager,
        context_policy: ContextPolicy = "reject",
        state_max_age_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Clock = default_clock,
    ) -> None:
        if context_policy not in ("reject", "warn"):
            raise ValueError("context_policy must be 'reject' or 'warn'")
        self.state_cache = state_cache
        self.token_client = token_client
        self.id_token_verifier = id_token_verifier
        self.user_store = user_store
        self.session_manager = session_manager
        self.context_policy = context_policy
        self.state_max_age_seconds = state_max_age_seconds
        self._clock = clock

    # ------------------------------------------------------------------ #
    # driver                                                             #
    # ------------------------------------------------------------------ #
    def run(self, flow: CallbackFlow) -> CallbackResult:
        while flow.stage is not CallbackStage.DONE:
            step, next_stage = _TRANSITIONS[flow.stage]
            try:
                step(self, flow)
            except AuthError as exc:
                exc.stage = flow.stage.value
                self._log(flow).warning(
                    "Callback failed at stage=%s code=%s: %s", flow.stage.value, exc.code, exc
                )
                if exc.security_event:
                    log_security_event(
                        exc.code,
                        str(exc),
                        org_id=flow.org_config.org_id,
                        stage=flow.stage.value,
                    )
                raise
            flow.stage = next_stage
        self._log(flow).info("Callback completed for user_id=%s", flow.user and flow.user.user_id)
        return flow.result()

    def _log(self, flow: CallbackFlow) -> logging.LoggerAdapter:
        return get_auth_logger(
            base_logger_name=_LOGGER_NAME,
            org_id=flow.org_config.org_id,
            subdomain=flow.org_config.subdomain,
            state_id=flow.state_id,
            correlation_id=flow.correlation_id,
        )

    # ------------------------------------------------------------------ #
    # transitions                                                        #
    # ------------------------------------------------------------------ #
    def _verify_state(self, flow: CallbackFlow) -> None:
        if not flow.code:
            raise InvalidState("callback is missing the authorization code", reason="malformed")
        flow.state_id = verify_state(
            flow.signed_state,
            flow.org_config.session_secret,
            max_age=self.state_max_age_seconds,
            clock=self._clock,
        )

    def _consume(self, flow: CallbackFlow) -> None:
        assert flow.state_id is not None
        auth_state = self.state_cache.take(flow.state_id)
        if auth_state is None:
            raise StateExpiredOrReplayed("auth state not found (expired or already used)")
        if auth_state.org_id != flow.org_config.org_id:
            raise InvalidState("auth state belongs to another organization", reason="org_mismatch")
        flow.auth_state = auth_state

    def _check_context(self, flow: CallbackFlow) -> None:
        assert flow.auth_state is not None
        ip_ok = flow.auth_state.client_ip == flow.client_ip
        ua_ok = hmac.compare_digest(
            flow.auth_state.user_agent_hash, hash_user_agent(flow.user_agent)
        )
        if ip_ok and ua_ok:
            return
        mismatched = ",".join(n for n, ok in (("client_ip", ip_ok), ("user_agent", ua_ok)) if not ok)
        if self.context_policy == "reject":
            raise ContextMismatch(f"callback context differs from login ({mismatched})")
        log_security_event(
            ContextMismatch.code,
            f"callback context differs from login ({mismatched}); continuing per policy",
            org_id=flow.org_config.org_id,
        )

    def _exchange(self, flow: CallbackFlow) -> None:
        assert flow.auth_state is not None
        flow.tokens = self.token_client.exchange(
            flow.dex_config, flow.code, flow.auth_state.pkce_verifier
        )

    def _verify_claims(self, flow: CallbackFlow) -> None:
        assert flow.tokens is not None and flow.auth_state is not None
        claims = self.id_token_verifier.verify(flow.tokens.id_token)
        verify_nonce(claims, flow.auth_state.nonce)
        flow.claims = claims

    def _resolve_user(self, flow: CallbackFlow) -> None:
        assert flow.claims is not None and flow.tokens is not None
        now = now_seconds(self._clock)
        claims, tokens = flow.claims, flow.tokens
        candidate = User(
            user_id=generate_user_id(),
            org_id=flow.org_config.org_id,
            auth_provider=flow.org_config.connector_id,
            provider_user_id=claims.sub,
            email=claims.email or f"{claims.sub}@unknown",
            name=claims.name,
            display_name=claims.name or claims.preferred_username,
            picture=claims.picture,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            id_token=tokens.id_token,
            token_expires_at=now + tokens.expires_in if tokens.expires_in else None,
            created_at=now,
            last_login_at=now,
            updated_at=now,
        )
        flow.user, created = self.user_store.upsert_user(candidate)
        self._log(flow).info(
            "%s user_id=%s", "Created" if created else "Updated", flow.user.user_id
        )

    def _create_session(self, flow: CallbackFlow) -> None:
        assert flow.user is not None
        flow.session = self.session_manager.create_session(
            flow.user, flow.org_config, flow.client_ip, flow.user_agent
        )
        flow.cookie = self.session_manager.build_cookie(
            flow.session.session_id, flow.org_config.session_config
        )

    def _finish(self, flow: CallbackFlow) -> None:
        assert flow.auth_state is not None
        # the cache entry may come from shared storage
        flow.return_url = sanitize_return_url(flow.auth_state.return_url)


_Transition = Callable[[CallbackOrchestrator, CallbackFlow], None]

_TRANSITIONS: Final[dict[CallbackStage, tuple[_Transition, CallbackStage]]] = {
    CallbackStage.START: (CallbackOrchestrator._verify_state, CallbackStage.STATE_VERIFIED),
    CallbackStage.STATE_VERIFIED: (CallbackOrchestrator._consume, CallbackStage.CONSUMED),
    CallbackStage.CONSUMED: (CallbackOrchestrator._check_context, CallbackStage.CONTEXT_CHECKED),
    CallbackStage.CONTEXT_CHECKED: (CallbackOrchestrator._exchange, CallbackStage.TOKENS_EXCHANGED),
    CallbackStage.TOKENS_EXCHANGED: (CallbackOrchestrator._verify_claims, CallbackStage.CLAIMS_VERIFIED),
    CallbackStage.CLAIMS_VERIFIED: (CallbackOrchestrator._resolve_user, CallbackStage.USER_RESOLVED),
    CallbackStage.USER_RESOLVED: (CallbackOrchestrator._create_session, CallbackStage.SESSION_CREATED),
    CallbackStage.SESSION_CREATED: (CallbackOrchestrator._finish, CallbackStage.DONE),
}
