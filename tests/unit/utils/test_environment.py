"""Tests for environment-driven configuration loading."""

from pathlib import Path

import pytest
import redis

from dex_tenant_auth.central_auth.redis_state_cache import RedisStateCache
from dex_tenant_auth.central_auth.service import TenantAuthService
from dex_tenant_auth.central_auth.state_cache import DiskStateCache
from dex_tenant_auth.utils.environment import (
    AuthSettings,
    load_auth_settings,
    load_dex_config,
)

_DEX_ENV = {
    "DEX_CLIENT_ID": "tenant-portal",
    "DEX_CLIENT_SECRET": "dex-client-secret",
    "DEX_ISSUER_URL": "https://dex.example.com/",
    "DEX_REDIRECT_URL": "https://auth.example.com/auth/callback",
}

_OPTIONAL_ENV = (
    "DEX_AUTH_URL",
    "DEX_TOKEN_URL",
    "DEX_JWKS_URL",
    "DEX_SCOPES",
    "AUTH_STATE_TTL_SECONDS",
    "AUTH_STATE_MAX_AGE_SECONDS",
    "AUTH_CONTEXT_MISMATCH_POLICY",
    "OIDC_SKIP_ID_TOKEN_SIGNATURE_VERIFICATION",
    "AUTH_STORAGE_DIR",
    "AUTH_ORGS_FILE",
    "AUTH_STATE_CACHE_URL",
    "AUTH_SWEEP_INTERVAL_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (*_DEX_ENV, *_OPTIONAL_ENV):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def dex_env(monkeypatch):
    for name, value in _DEX_ENV.items():
        monkeypatch.setenv(name, value)


def test_dex_config_defaults_endpoints_from_issuer(dex_env) -> None:
    cfg = load_dex_config()
    assert cfg.issuer_url == "https://dex.example.com"
    assert cfg.authorize_url == "https://dex.example.com/auth"
    assert cfg.token_url == "https://dex.example.com/token"
    assert cfg.jwks_url == "https://dex.example.com/keys"
    assert cfg.scopes == ("openid", "profile", "email")
    assert "dex-client-secret" not in repr(cfg)


def test_dex_config_explicit_endpoints_and_scopes(dex_env, monkeypatch) -> None:
    monkeypatch.setenv("DEX_TOKEN_URL", "https://dex.internal:5556/token")
    monkeypatch.setenv("DEX_SCOPES", "openid, email offline_access")
    cfg = load_dex_config()
    assert cfg.token_url == "https://dex.internal:5556/token"
    assert cfg.scopes == ("openid", "email", "offline_access")


def test_dex_config_lists_every_missing_variable(monkeypatch) -> None:
    monkeypatch.setenv("DEX_CLIENT_ID", "tenant-portal")
    with pytest.raises(ValueError) as exc_info:
        load_dex_config()
    message = str(exc_info.value)
    for name in ("DEX_CLIENT_SECRET", "DEX_ISSUER_URL", "DEX_REDIRECT_URL"):
        assert name in message
    assert "DEX_CLIENT_ID" not in message


def test_auth_settings_defaults() -> None:
    settings = load_auth_settings()
    assert settings.state_ttl_seconds == 600
    assert settings.state_max_age_seconds == 600
    assert settings.context_mismatch_policy == "reject"
    assert settings.verify_id_token_signature is True
    assert settings.orgs_file is None
    assert settings.state_cache_url is None
    assert settings.sweep_interval_seconds == 300


@pytest.mark.parametrize(("raw", "expected"), [("60", 300), ("450", 450), ("3600", 600)])
def test_state_ttl_is_clamped(monkeypatch, raw, expected) -> None:
    monkeypatch.setenv("AUTH_STATE_TTL_SECONDS", raw)
    settings = load_auth_settings()
    assert settings.state_ttl_seconds == expected
    assert settings.state_max_age_seconds == expected


def test_non_integer_ttl_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_STATE_TTL_SECONDS", "ten minutes")
    with pytest.raises(ValueError, match="AUTH_STATE_TTL_SECONDS"):
        load_auth_settings()


def test_unknown_context_policy_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_CONTEXT_MISMATCH_POLICY", "ignore")
    with pytest.raises(ValueError):
        load_auth_settings()


def test_skipping_signature_verification_warns(monkeypatch, caplog) -> None:
    monkeypatch.setenv("OIDC_SKIP_ID_TOKEN_SIGNATURE_VERIFICATION", "true")
    with caplog.at_level("WARNING"):
        settings = load_auth_settings()
    assert settings.verify_id_token_signature is False
    assert "will NOT be checked" in caplog.text


def test_storage_paths(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AUTH_STORAGE_DIR", str(tmp_path))
    monkeypatch.setenv("AUTH_ORGS_FILE", str(tmp_path / "orgs.json"))
    settings = load_auth_settings()
    assert settings == AuthSettings(storage_dir=tmp_path, orgs_file=tmp_path / "orgs.json")


def test_state_cache_url_and_sweep_interval(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_STATE_CACHE_URL", "  rediss://cache.internal:6380/0 ")
    monkeypatch.setenv("AUTH_SWEEP_INTERVAL_SECONDS", "0")
    settings = load_auth_settings()
    assert settings.state_cache_url == "rediss://cache.internal:6380/0"
    assert settings.sweep_interval_seconds == 0


def test_blank_state_cache_url_means_disk(monkeypatch) -> None:
    monkeypatch.setenv("AUTH_STATE_CACHE_URL", "   ")
    assert load_auth_settings().state_cache_url is None


@pytest.mark.parametrize("raw", ["-5", "often"])
def test_invalid_sweep_interval_is_rejected(monkeypatch, raw) -> None:
    monkeypatch.setenv("AUTH_SWEEP_INTERVAL_SECONDS", raw)
    with pytest.raises(ValueError, match="AUTH_SWEEP_INTERVAL_SECONDS"):
        load_auth_settings()


def test_service_from_env_selects_state_cache_backend(dex_env, monkeypatch, tmp_path: Path, fake_redis) -> None:
    monkeypatch.setenv("AUTH_STORAGE_DIR", str(tmp_path))
    assert isinstance(TenantAuthService.from_env().state_cache, DiskStateCache)

    urls: list[str] = []
    monkeypatch.setattr(redis.Redis, "from_url", lambda url, **kw: urls.append(url) or fake_redis)
    monkeypatch.setenv("AUTH_STATE_CACHE_URL", "redis://cache:6379/0")
    svc = TenantAuthService.from_env()
    assert isinstance(svc.state_cache, RedisStateCache)
    assert svc.url_builder.state_cache is svc.state_cache
    assert urls == ["redis://cache:6379/0"]
