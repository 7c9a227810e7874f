"""TenantAuthService – façade over the tenant auth core.

Handlers in ``dex_tenant_auth.servers.auth`` call the methods below; they never
touch the individual components.  The service resolves the tenant from the
request ``Host`` and then delegates:

* :meth:`start_login`       → :class:`AuthorizationUrlBuilder`
* :meth:`complete_callback` → :class:`CallbackOrchestrator`
* :meth:`authenticate`      → :class:`SessionManager`
* :meth:`logout`            → :class:`SessionManager`

All collaborators are injectable; :meth:`TenantAuthService.from_env` wires the
defaults from environment variables (see ``dex_tenant_auth.utils.environment``).
**Secrets are never logged.**
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from dex_tenant_auth.central_auth.authorize import AuthorizationUrlBuilder
from dex_tenant_auth.central_auth.callback import CallbackFlow, CallbackOrchestrator
from dex_tenant_auth.central_auth.clock import Clock, default_clock, now_seconds
from dex_tenant_auth.central_auth.errors import ConfigNotFound, InvalidCookie
from dex_tenant_auth.central_auth.models import (
    AuthorizationRedirect,
    CallbackResult,
    DexAppConfig,
    OrgAuthConfig,
    SessionCookie,
    UserSession,
)
from dex_tenant_auth.central_auth.org_store import (
    JsonOrgConfigStore,
    OrgConfigStore,
    StaticOrgConfigStore,
    subdomain_from_host,
)
from dex_tenant_auth.central_auth.session import SessionManager, verify_cookie
from dex_tenant_auth.central_auth.state_cache import DiskStateCache, StateCache
from dex_tenant_auth.central_auth.tokens import IdTokenVerifier, TokenExchangeClient
from dex_tenant_auth.central_auth.user_store import DiskUserStore, UserStore
from dex_tenant_auth.utils.environment import (
    AuthSettings,
    load_auth_settings,
    load_dex_config,
)

_LOG = logging.getLogger("dex-tenant-auth.central_auth.service")


@dataclass(frozen=True, slots=True)
class SessionStatus:
    """Result of :meth:`TenantAuthService.authenticate`.

    ``cookie`` is set only when the session was extended and the browser
    needs a fresh ``Max-Age``.
    """

    org_config: OrgAuthConfig
    session: UserSession
    cookie: SessionCookie | None = None


class TenantAuthService:
    """High-level façade used by the HTTP layer."""

    def __init__(
        self,
        *,
        dex_config: DexAppConfig,
        org_store: OrgConfigStore,
        state_cache: StateCache,
        user_store: UserStore,
        settings: AuthSettings | None = None,
        token_client: TokenExchangeClient | None = None,
        id_token_verifier: IdTokenVerifier | None = None,
        clock: Clock = default_clock,
    ) -> None:
        self.dex_config = dex_config
        self.org_store = org_store
        self.state_cache = state_cache
        self.user_store = user_store
        self.settings = settings or AuthSettings()
        self._clock = clock

        self.sessions = SessionManager(user_store, clock=clock)
        self.url_builder = AuthorizationUrlBuilder(
            state_cache, state_ttl_seconds=self.settings.state_ttl_seconds, clock=clock
        )
        self.orchestrator = CallbackOrchestrator(
            state_cache=state_cache,
            token_client=token_client or TokenExchangeClient(),
            id_token_verifier=id_token_verifier
            or IdTokenVerifier(
                dex_config,
                verify_signature=self.settings.verify_id_token_signature,
                clock=clock,
            ),
            user_store=user_store,
            session_manager=self.sessions,
            context_policy=self.settings.context_mismatch_policy,
            state_max_age_seconds=self.settings.state_max_age_seconds,
            clock=clock,
        )

    @classmethod
    def from_env(cls) -> "TenantAuthService":
        """Wire the service from environment variables (disk storage, optional Redis state)."""
        settings = load_auth_settings()
        dex_config = load_dex_config()
        org_store: OrgConfigStore
        if settings.orgs_file is not None:
            org_store = JsonOrgConfigStore(settings.orgs_file)
        else:
            _LOG.warning("AUTH_ORGS_FILE not set; no organizations are configured")
            org_store = StaticOrgConfigStore()
        state_cache: StateCache
        if settings.state_cache_url:
            # local import: redis is an optional extra
            from dex_tenant_auth.central_auth.redis_state_cache import RedisStateCache

            state_cache = RedisStateCache.from_url(settings.state_cache_url)
            _LOG.info("Auth state cache: redis")
        else:
            state_cache = DiskStateCache(settings.storage_dir)
            _LOG.info("Auth state cache: disk (%s)", settings.storage_dir)
        return cls(
            dex_config=dex_config,
            org_store=org_store,
            state_cache=state_cache,
            user_store=DiskUserStore(settings.storage_dir),
            settings=settings,
        )

    # ------------------------------------------------------------------ #
    # tenant resolution                                                  #
    # ------------------------------------------------------------------ #
    def resolve_org(self, host: str | None) -> OrgAuthConfig:
        """Return the :class:`OrgAuthConfig` for *host* or raise ``ConfigNotFound``."""
        subdomain = subdomain_from_host(host)
        config = self.org_store.get_by_subdomain(subdomain) if subdomain else None
        if config is None:
            _LOG.info("No organization configured for host")
            raise ConfigNotFound("organization not found")
        return config

    # ------------------------------------------------------------------ #
    # login                                                              #
    # ------------------------------------------------------------------ #
    def start_login(
        self,
        *,
        host: str | None,
        return_url: str | None,
        client_ip: str,
        user_agent: str,
    ) -> AuthorizationRedirect:
        org_config = self.resolve_org(host)
        redirect = self.url_builder.build(
            org_config, self.dex_config, return_url, client_ip, user_agent
        )
        _LOG.info("Started login for org_id=%s", org_config.org_id)
        return redirect

    def complete_callback(
        self,
        *,
        host: str | None,
        code: str,
        state: str,
        client_ip: str,
        user_agent: str,
        correlation_id: str | None = None,
    ) -> CallbackResult:
        org_config = self.resolve_org(host)
        flow = CallbackFlow(
            org_config=org_config,
            dex_config=self.dex_config,
            code=code,
            signed_state=state,
            client_ip=client_ip,
            user_agent=user_agent,
            correlation_id=correlation_id,
        )
        return self.orchestrator.run(flow)

    # ------------------------------------------------------------------ #
    # sessions                                                           #
    # ------------------------------------------------------------------ #
    def authenticate(self, *, host: str | None, cookie_value: str | None) -> SessionStatus:
        org_config = self.resolve_org(host)
        session, extended = self.sessions.authenticate(cookie_value, org_config)
        cookie = None
        if extended:
            cookie = self.sessions.build_cookie(session.session_id, org_config.session_config)
        return SessionStatus(org_config=org_config, session=session, cookie=cookie)

    def logout(self, *, host: str | None, cookie_value: str | None) -> SessionCookie:
        """Invalidate the session behind *cookie_value* and return a clearing cookie.

        Logging out is idempotent: an unknown or tampered cookie still yields
        the clearing cookie.
        """
        org_config = self.resolve_org(host)
        cfg = org_config.session_config
        try:
            session_id = verify_cookie(cookie_value, cfg.cookie_signing_secret)
        except InvalidCookie:
            session_id = None
        if session_id and self.sessions.logout(session_id, org_config.org_id):
            _LOG.info("Logged out session for org_id=%s", org_config.org_id)
        return self.sessions.expired_cookie(cfg)

    # ------------------------------------------------------------------ #
    # housekeeping                                                       #
    # ------------------------------------------------------------------ #
    def sweep_expired(self) -> tuple[int, int]:
        """Delete expired auth states and long-expired sessions.

        Returns ``(states_removed, sessions_removed)``.  Backends that expire
        entries on their own (memory, Redis) report ``0`` states.
        """
        states = 0
        cleanup = getattr(self.state_cache, "cleanup_expired", None)
        if callable(cleanup):
            states = cleanup()
        sessions = self.user_store.cleanup_expired_sessions(now_seconds(self._clock))
        if states or sessions:
            _LOG.info("Swept %d expired auth states and %d sessions", states, sessions)
        return states, sessions
