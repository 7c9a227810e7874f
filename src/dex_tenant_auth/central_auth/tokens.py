"""Authorization-code exchange and ID-token validation.

:class:`TokenExchangeClient`
    Form-encoded ``authorization_code`` grant against the Dex token endpoint.
    Never retried: an authorization code is single-use and replaying it is
    itself an attack signature.
:func:`parse_id_token`
    Decodes the JWT payload *without* verifying anything.
:class:`IdTokenVerifier`
    JWKS-based signature and claim verification.  Mandatory unless explicitly
    disabled through configuration, in which case every use is logged.
:func:`verify_nonce`
    Constant-time comparison of the echoed nonce.

Provider response bodies are truncated and scrubbed of token-looking values
before they are attached to :class:`TokenExchangeFailed`.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import re
from typing import Any, Final, Sequence

import jwt
import requests
from cachetools import TTLCache
from jwt import PyJWKClient

from dex_tenant_auth.central_auth.clock import Clock, default_clock, now_seconds
from dex_tenant_auth.central_auth.errors import (
    IdTokenInvalid,
    NonceMismatch,
    TokenExchangeFailed,
)
from dex_tenant_auth.central_auth.models import DexAppConfig, IdTokenClaims, TokenResponse

_LOG = logging.getLogger("dex-tenant-auth.central_auth.tokens")

_BODY_LIMIT: Final[int] = 200
_SECRET_FIELDS_RE: Final[re.Pattern[str]] = re.compile(
    r'("?(?:access_token|refresh_token|id_token|client_secret|code|code_verifier)"?\s*[:=]\s*"?)'
    r'([^"&,\s}]+)',
    re.IGNORECASE,
)
DEFAULT_ALGORITHMS: Final[tuple[str, ...]] = ("RS256", "ES256")


def redact_body(text: str | None, limit: int = _BODY_LIMIT) -> str:
    """Return *text* truncated to *limit* chars with token values masked."""
    if not text:
        return ""
    return _SECRET_FIELDS_RE.sub(r"\1[redacted]", text)[:limit]


# --------------------------------------------------------------------------- #
# Code exchange                                                               #
# --------------------------------------------------------------------------- #


class TokenExchangeClient:
    """Exchange an authorization code (+ PKCE verifier) for tokens."""

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout: tuple[float, float] = (5, 20),
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def exchange(
        self,
        dex_config: DexAppConfig,
        code: str,
        pkce_verifier: str,
    ) -> TokenResponse:
        """POST the ``authorization_code`` grant and return the parsed tokens.

        Raises
        ------
        TokenExchangeFailed
            On transport errors, non-2xx statuses or incomplete responses.
        """
        payload: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": dex_config.redirect_url,
            "client_id": dex_config.client_id,
            "client_secret": dex_config.client_secret,  # noqa: S105
        }
        if pkce_verifier:
            payload["code_verifier"] = pkce_verifier

        try:
            resp = self.session.post(
                dex_config.token_url,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TokenExchangeFailed(
                f"token request failed: {type(exc).__name__}"
            ) from exc

        if not resp.ok:
            raise TokenExchangeFailed(
                f"token endpoint returned {resp.status_code}",
                status=resp.status_code,
                body=redact_body(resp.text),
            )

        try:
            data = resp.json()
        except ValueError:
            raise TokenExchangeFailed(
                "token endpoint returned invalid JSON",
                status=resp.status_code,
                body=redact_body(resp.text),
            ) from None
        if not isinstance(data, dict):
            raise TokenExchangeFailed("token endpoint returned a non-object", status=resp.status_code)

        access_token = data.get("access_token")
        id_token = data.get("id_token")
        if not access_token:
            raise TokenExchangeFailed("token response missing access_token", status=resp.status_code)
        if not id_token:
            raise TokenExchangeFailed("token response missing id_token", status=resp.status_code)

        expires_in = data.get("expires_in")
        if expires_in is not None:
            try:
                # some providers send "3600" or 3600.0
                expires_in = int(float(expires_in))
            except (TypeError, ValueError, OverflowError):
                raise TokenExchangeFailed(
                    "token response has invalid expires_in", status=resp.status_code
                ) from None
        tokens = TokenResponse(
            access_token=access_token,
            id_token=id_token,
            token_type=data.get("token_type", "Bearer"),
            expires_in=expires_in,
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
        )
        _LOG.info("Exchanged authorization code (expires in %ss)", tokens.expires_in)
        return tokens


# --------------------------------------------------------------------------- #
# ID token                                                                    #
# --------------------------------------------------------------------------- #


def _b64url_json(segment: str) -> dict[str, Any]:
    pad_len = (-len(segment)) % 4
    raw = base64.urlsafe_b64decode(segment + "=" * pad_len)
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("segment is not a JSON object")
    return value


def parse_id_token(id_token: str) -> IdTokenClaims:
    """Decode the claims of a compact JWT **without verifying it**.

    Raises
    ------
    IdTokenInvalid
        If the token is not a three-segment JWT with a JSON payload carrying
        ``sub`` and ``nonce``.
    """
    parts = (id_token or "").split(".")
    if len(parts) != 3 or not all(parts[:2]):
        raise IdTokenInvalid("id token is not a compact JWT")
    try:
        _b64url_json(parts[0])
        payload = _b64url_json(parts[1])
    except (ValueError, binascii.Error):
        raise IdTokenInvalid("id token segments cannot be decoded") from None
    return _claims_from_payload(payload)


def _claims_from_payload(payload: dict[str, Any]) -> IdTokenClaims:
    if not payload.get("sub"):
        raise IdTokenInvalid("id token missing sub claim")
    if not payload.get("nonce"):
        raise IdTokenInvalid("id token missing nonce claim")
    try:
        return IdTokenClaims.from_payload(payload)
    except (TypeError, ValueError):
        raise IdTokenInvalid("id token claims have unexpected types") from None


def verify_nonce(claims: IdTokenClaims, expected_nonce: str) -> None:
    """Raise :class:`NonceMismatch` unless the token echoes *expected_nonce*."""
    if not expected_nonce or not hmac.compare_digest(
        claims.nonce.encode("utf-8"), expected_nonce.encode("utf-8")
    ):
        raise NonceMismatch("id token nonce does not match the auth state")


class IdTokenVerifier:
    """Validate ID tokens issued by the configured Dex instance.

    With ``verify_signature=True`` (the default) the token signature is checked
    against the provider JWKS and ``iss``/``aud`` are enforced by PyJWT;
    ``exp``/``iat`` are checked against the injected clock.  Disabling
    signature checks must be an explicit operator choice; the claim checks
    still run on the unverified payload.
    """

    def __init__(
        self,
        dex_config: DexAppConfig,
        *,
        verify_signature: bool = True,
        algorithms: Sequence[str] = DEFAULT_ALGORITHMS,
        leeway: int = 60,
        jwks_cache_ttl: int = 3600,
        jwk_client: Any | None = None,
        clock: Clock = default_clock,
    ) -> None:
        self.dex_config = dex_config
        self.verify_signature = verify_signature
        self.algorithms = list(algorithms)
        self.leeway = leeway
        self._clock = clock
        self._static_client = jwk_client
        # TTL cache so rotated provider keys are picked up
        self._jwks_cache: TTLCache = TTLCache(maxsize=1, ttl=jwks_cache_ttl)
        if not verify_signature:
            _LOG.warning(
                "ID token signature verification is DISABLED by configuration; "
                "claims will be trusted without cryptographic proof."
            )

    def _jwk_client(self) -> Any:
        if self._static_client is not None:
            return self._static_client
        url = self.dex_config.jwks_url
        client = self._jwks_cache.get(url)
        if client is None:
            client = PyJWKClient(url, cache_keys=True)
            self._jwks_cache[url] = client
        return client

    def verify(self, id_token: str) -> IdTokenClaims:
        """Return validated claims or raise :class:`IdTokenInvalid`."""
        if not self.verify_signature:
            _LOG.warning("Accepting ID token without signature verification")
            claims = parse_id_token(id_token)
            self._check_claims(claims)
            return claims

        try:
            signing_key = self._jwk_client().get_signing_key_from_jwt(id_token)
            payload = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=self.algorithms,
                audience=self.dex_config.client_id,
                issuer=self.dex_config.issuer_url,
                options={
                    "require": ["exp", "iat", "iss", "aud", "sub"],
                    # time claims are checked against the injected clock below
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.PyJWTError as exc:
            raise IdTokenInvalid(f"id token rejected: {type(exc).__name__}") from exc
        claims = _claims_from_payload(payload)
        self._check_times(claims)
        return claims

    def _check_claims(self, claims: IdTokenClaims) -> None:
        if claims.iss.rstrip("/") != self.dex_config.issuer_url.rstrip("/"):
            raise IdTokenInvalid("id token issuer mismatch")
        if self.dex_config.client_id not in claims.aud:
            raise IdTokenInvalid("id token audience mismatch")
        self._check_times(claims)

    def _check_times(self, claims: IdTokenClaims) -> None:
        now = now_seconds(self._clock)
        if not claims.exp or claims.exp + self.leeway < now:
            raise IdTokenInvalid("id token expired")
        if claims.iat and claims.iat - self.leeway > now:
            raise IdTokenInvalid("id token issued in the future")
