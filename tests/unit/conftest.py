"""Shared fixtures for the tenant auth unit tests.

Everything here is CI-safe: time is frozen through an injected clock, storage
lives in ``tmp_path`` and the identity provider is stubbed.
"""

from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any, Callable

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from dex_tenant_auth.central_auth.models import (
    DexAppConfig,
    OrgAuthConfig,
    SessionConfig,
)

T0 = 1_700_000_000  # 2023-11-14T22:13:20Z
KID = "dex-test-key"


class FakeClock:
    """Mutable clock: ``clock()`` returns the current fake time."""

    def __init__(self, now: float = T0) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubJwkClient:
    """Stands in for :class:`jwt.PyJWKClient` without fetching a JWKS."""

    def __init__(self, public_key: Any, kid: str = KID) -> None:
        self.public_key = public_key
        self.kid = kid
        self.calls = 0

    def get_signing_key_from_jwt(self, token: str) -> SimpleNamespace:
        self.calls += 1
        if jwt.get_unverified_header(token).get("kid") != self.kid:
            raise jwt.PyJWKClientError("Unable to find a signing key that matches")
        return SimpleNamespace(key=self.public_key)


class FakeRedis:
    """In-process stand-in for the few ``redis.Redis`` commands the state cache uses.

    Expiry follows the injected clock so TTL behaviour is deterministic.
    """

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None) -> bool | None:
        with self._lock:
            if nx and self._live(key) is not None:
                return None
            self._data[key] = (value, self._clock() + ex if ex else None)
            return True

    def getdel(self, key: str) -> str | None:
        with self._lock:
            value = self._live(key)
            self._data.pop(key, None)
            return value

    def ttl(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return -2
            expires_at = self._data[key][1]
            return -1 if expires_at is None else int(expires_at - self._clock())

    def keys(self) -> list[str]:
        with self._lock:
            return [k for k in list(self._data) if self._live(k) is not None]


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture()
def dex_config() -> DexAppConfig:
    return DexAppConfig(
        client_id="tenant-portal",
        client_secret="dex-client-secret",
        issuer_url="https://dex.example.com",
        authorize_url="https://dex.example.com/auth",
        token_url="https://dex.example.com/token",
        redirect_url="https://auth.example.com/auth/callback",
    )


@pytest.fixture()
def session_config() -> SessionConfig:
    return SessionConfig(
        cookie_signing_secret="acme-cookie-secret",
        cookie_domain=".example.com",
        max_age_seconds=3600,
    )


@pytest.fixture()
def org_config(session_config: SessionConfig) -> OrgAuthConfig:
    return OrgAuthConfig(
        org_id="org_acme",
        subdomain="acme",
        connector_id="auth0",
        session_secret="acme-state-secret",
        session_config=session_config,
        provider_org_id="org_abc123",
    )


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def jwk_client(rsa_key: rsa.RSAPrivateKey) -> StubJwkClient:
    return StubJwkClient(rsa_key.public_key())


@pytest.fixture()
def make_id_token(rsa_key: rsa.RSAPrivateKey, dex_config: DexAppConfig) -> Callable[..., str]:
    """Factory for RS256-signed ID tokens issued 'now' (T0)."""

    def _make(*, nonce: str, key: Any = None, kid: str = KID, **overrides: Any) -> str:
        payload: dict[str, Any] = {
            "iss": dex_config.issuer_url,
            "aud": dex_config.client_id,
            "sub": "auth0|alice",
            "nonce": nonce,
            "iat": T0,
            "exp": T0 + 3600,
            "email": "alice@acme.test",
            "email_verified": True,
            "name": "Alice Example",
        }
        payload.update(overrides)
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, key or rsa_key, algorithm="RS256", headers={"kid": kid})

    return _make
