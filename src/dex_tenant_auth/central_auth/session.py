"""Signed session cookies and sliding session expiration.

Cookie wire format::

    <session_id>.<hex HMAC-SHA256(session_id, cookie_signing_secret)>

Session ids never contain ``.`` but the value is still split on the *last*
separator.  Every verification failure is reported as :class:`InvalidCookie`;
unknown, inactive and expired sessions all become :class:`SessionExpired`, so
the client never learns which of the two checks failed first.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import replace

from dex_tenant_auth.central_auth.clock import Clock, default_clock, now_seconds
from dex_tenant_auth.central_auth.errors import InvalidCookie, SessionExpired
from dex_tenant_auth.central_auth.log_utils import log_security_event, mask_sensitive
from dex_tenant_auth.central_auth.models import (
    OrgAuthConfig,
    SessionConfig,
    SessionCookie,
    User,
    UserSession,
)
from dex_tenant_auth.central_auth.user_store import UserStore, generate_session_id

_LOG = logging.getLogger("dex-tenant-auth.central_auth.session")


def _cookie_mac(session_id: str, secret: str) -> str:
    return hmac.new(secret.encode(), session_id.encode(), hashlib.sha256).hexdigest()


def sign_cookie(session_id: str, secret: str) -> str:
    if not session_id or not secret:
        raise ValueError("session_id and secret are required")
    return f"{session_id}.{_cookie_mac(session_id, secret)}"


def verify_cookie(value: str | None, secret: str) -> str:
    """Return the session id carried by *value* or raise :class:`InvalidCookie`."""
    if not value or "." not in value:
        raise InvalidCookie("cookie is not signed")
    session_id, _, signature = value.rpartition(".")
    if not session_id or not signature:
        raise InvalidCookie("cookie is not signed")
    expected = _cookie_mac(session_id, secret)
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        raise InvalidCookie("cookie signature mismatch")
    return session_id


class SessionManager:
    """Create, validate, extend and end :class:`UserSession` records."""

    def __init__(self, user_store: UserStore, *, clock: Clock = default_clock) -> None:
        self.user_store = user_store
        self._clock = clock

    def _now(self) -> int:
        return now_seconds(self._clock)

    # ------------------------------------------------------------------ #
    # creation                                                           #
    # ------------------------------------------------------------------ #
    def create_session(
        self,
        user: User,
        org_config: OrgAuthConfig,
        client_ip: str,
        user_agent: str,
    ) -> UserSession:
        now = self._now()
        session = UserSession(
            session_id=generate_session_id(),
            user_id=user.user_id,
            org_id=org_config.org_id,
            ip_address=client_ip,
            user_agent=user_agent,
            created_at=now,
            expires_at=now + org_config.session_config.max_age_seconds,
            last_activity_at=now,
        )
        self.user_store.create_session(session)
        _LOG.info(
            "Created session for user_id=%s org_id=%s (expires_at=%s)",
            user.user_id,
            org_config.org_id,
            session.expires_at,
        )
        return session

    # ------------------------------------------------------------------ #
    # validation                                                         #
    # ------------------------------------------------------------------ #
    def load_active(self, session_id: str, org_id: str) -> UserSession:
        session = self.user_store.get_session(session_id)
        if session is None or session.org_id != org_id:
            raise SessionExpired("session not found")
        if not session.is_valid(self._now()):
            raise SessionExpired("session inactive or expired")
        return session

    def should_extend(
        self, session: UserSession, session_config: SessionConfig, now: int
    ) -> bool:
        if not session_config.extension_enabled:
            return False
        lifetime = session.expires_at - session.created_at
        if lifetime <= 0:
            return False
        return (now - session.created_at) / lifetime >= session_config.extension_threshold

    def maybe_extend(
        self, session: UserSession, session_config: SessionConfig
    ) -> UserSession:
        """Slide ``expires_at`` forward once enough of the lifetime has passed.

        Below the threshold this is a no-op and nothing is written, which keeps
        the number of session writes proportional to logins rather than to
        requests.
        """
        now = self._now()
        if not self.should_extend(session, session_config, now):
            return session
        extended = replace(
            session,
            expires_at=now + session_config.max_age_seconds,
            last_activity_at=now,
        )
        self.user_store.save_session(extended)
        _LOG.debug("Extended session user_id=%s until %s", session.user_id, extended.expires_at)
        return extended

    def session_id_from_cookie(
        self, cookie_value: str | None, org_config: OrgAuthConfig
    ) -> str:
        try:
            return verify_cookie(cookie_value, org_config.session_config.cookie_signing_secret)
        except InvalidCookie as exc:
            if cookie_value:
                log_security_event(exc.code, str(exc), logger=_LOG, org_id=org_config.org_id)
            raise

    def authenticate(
        self, cookie_value: str | None, org_config: OrgAuthConfig
    ) -> tuple[UserSession, bool]:
        """Verify the cookie, load the session and apply sliding expiration.

        Returns the current session and whether it was extended, in which
        case the caller must re-issue the cookie.
        """
        session_id = self.session_id_from_cookie(cookie_value, org_config)
        session = self.load_active(session_id, org_config.org_id)
        current = self.maybe_extend(session, org_config.session_config)
        return current, current is not session

    def logout(self, session_id: str, org_id: str) -> bool:
        session = self.user_store.get_session(session_id)
        if session is None or session.org_id != org_id:
            _LOG.debug("Logout ignored for unknown session %s", mask_sensitive(session_id, keep=8))
            return False
        return self.user_store.invalidate_session(session_id)

    # ------------------------------------------------------------------ #
    # cookies                                                            #
    # ------------------------------------------------------------------ #
    @staticmethod
    def build_cookie(session_id: str, session_config: SessionConfig) -> SessionCookie:
        return SessionCookie(
            name=session_config.cookie_name,
            value=sign_cookie(session_id, session_config.cookie_signing_secret),
            max_age=session_config.max_age_seconds,
            domain=session_config.cookie_domain,
            path="/",
            secure=session_config.secure,
            http_only=session_config.http_only,
            same_site=session_config.same_site,
        )

    @staticmethod
    def expired_cookie(session_config: SessionConfig) -> SessionCookie:
        return SessionCookie(
            name=session_config.cookie_name,
            value="",
            max_age=0,
            domain=session_config.cookie_domain,
            path="/",
            secure=session_config.secure,
            http_only=session_config.http_only,
            same_site=session_config.same_site,
        )
