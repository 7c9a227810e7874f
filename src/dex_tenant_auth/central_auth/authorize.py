"""Construction of the provider authorization request.

:class:`AuthorizationUrlBuilder` generates the per-attempt secrets (state id,
PKCE verifier, nonce, CSRF token), parks them in the :class:`StateCache` and
returns the URL the browser must be redirected to.  Apart from that single
cache write the builder has no side effects.
"""

from __future__ import annotations

import logging
from typing import Final
from urllib.parse import urlencode, urlsplit

from dex_tenant_auth.central_auth.clock import Clock, default_clock, now_seconds
from dex_tenant_auth.central_auth.models import (
    AuthorizationRedirect,
    AuthState,
    DexAppConfig,
    OrgAuthConfig,
)
from dex_tenant_auth.central_auth.pkce import (
    code_challenge_s256,
    generate_code_verifier,
    generate_token,
    hash_user_agent,
)
from dex_tenant_auth.central_auth.state import sign_state
from dex_tenant_auth.central_auth.state_cache import DEFAULT_TTL_SECONDS, StateCache

_LOG = logging.getLogger("dex-tenant-auth.central_auth.authorize")

DEFAULT_RETURN_URL: Final[str] = "/dashboard"

# keys that additional_params may never override
_PROTECTED_PARAMS: Final[frozenset[str]] = frozenset(
    {
        "client_id",
        "redirect_uri",
        "response_type",
        "state",
        "nonce",
        "code_challenge",
        "code_challenge_method",
    }
)


def sanitize_return_url(return_url: str | None, default: str = DEFAULT_RETURN_URL) -> str:
    """Return *return_url* if it is a same-origin relative path, else *default*.

    Absolute URLs, scheme-relative ``//host`` paths and backslash variants are
    rejected to avoid turning the callback into an open redirect.
    """
    if not return_url:
        return default
    candidate = return_url.strip()
    if not candidate.startswith("/") or candidate.startswith("//"):
        return default
    if "\\" in candidate or any(ord(c) < 0x20 for c in candidate):
        return default
    parts = urlsplit(candidate)
    if parts.scheme or parts.netloc:
        return default
    return candidate


class AuthorizationUrlBuilder:
    """Build signed, PKCE-protected authorization URLs for a tenant."""

    def __init__(
        self,
        state_cache: StateCache,
        *,
        state_ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Clock = default_clock,
    ) -> None:
        self.state_cache = state_cache
        self.state_ttl_seconds = state_ttl_seconds
        self._clock = clock

    def build(
        self,
        org_config: OrgAuthConfig,
        dex_config: DexAppConfig,
        return_url: str | None,
        client_ip: str,
        user_agent: str,
    ) -> AuthorizationRedirect:
        """Return the provider authorize URL for a new login attempt."""
        # 1-2. per-attempt secrets
        state_id = generate_token()
        verifier = generate_code_verifier()
        challenge = code_challenge_s256(verifier)
        nonce = generate_token()
        csrf_token = generate_token()

        # 3. park the context server-side
        auth_state = AuthState(
            state_id=state_id,
            org_id=org_config.org_id,
            nonce=nonce,
            # an empty verifier tells the token exchange not to send code_verifier
            pkce_verifier=verifier if org_config.pkce_required else "",
            csrf_token=csrf_token,
            return_url=sanitize_return_url(return_url),
            client_ip=client_ip,
            user_agent_hash=hash_user_agent(user_agent),
            created_at=now_seconds(self._clock),
            ttl_seconds=self.state_ttl_seconds,
        )
        self.state_cache.put(state_id, auth_state, self.state_ttl_seconds)

        # 4. signed reference to it
        signed = sign_state(state_id, org_config.session_secret, clock=self._clock)

        # 5. assemble the query
        params: dict[str, str] = {
            "client_id": dex_config.client_id,
            "redirect_uri": dex_config.redirect_url,
            "response_type": "code",
            "scope": " ".join(dex_config.scopes),
            "state": signed,
            "nonce": nonce,
        }
        if org_config.pkce_required:
            params["code_challenge"] = challenge
            params["code_challenge_method"] = "S256"
        params["connector_id"] = org_config.connector_id
        if org_config.provider_org_id:
            params["organization"] = org_config.provider_org_id
        if org_config.prompt:
            params["prompt"] = org_config.prompt
        if org_config.max_age_seconds > 0:
            params["max_age"] = str(org_config.max_age_seconds)

        for key, value in org_config.additional_params.items():
            if key in _PROTECTED_PARAMS or key in params:
                _LOG.warning(
                    "Ignoring additional_params key %r for org_id=%s (would override an explicit parameter)",
                    key,
                    org_config.org_id,
                )
                continue
            params[key] = value

        separator = "&" if "?" in dex_config.authorize_url else "?"
        url = f"{dex_config.authorize_url}{separator}{urlencode(params)}"

        _LOG.debug(
            "Built authorize URL for org_id=%s state_id=%s**** pkce=%s",
            org_config.org_id,
            state_id[:6],
            org_config.pkce_required,
        )
        return AuthorizationRedirect(
            url=url, state_id=state_id, expires_at=auth_state.expires_at
        )
