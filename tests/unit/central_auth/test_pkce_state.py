"""
Unit tests for PKCE helpers and the signed ``state`` parameter.


These tests are CI-safe (no network), cover:
* Code-verifier / S256 challenge generation
* State sign / verify happy-path and freshness window
* Tamper detection on every position of the token
"""

from __future__ import annotations

import base64
import re
from hashlib import sha256

import pytest

from dex_tenant_auth.central_auth.errors import InvalidState
from dex_tenant_auth.central_auth.pkce import (
    code_challenge_s256,
    generate_code_verifier,
    generate_token,
    hash_user_agent,
)
from dex_tenant_auth.central_auth.state import (
    REASON_EXPIRED,
    REASON_MALFORMED,
    REASON_SIGNATURE,
    InvalidStateError,
    sign_state,
    verify_state,
)

ALLOWED_CHARS_RE = re.compile(r"^[A-Za-z0-9\-._~]+$")  # RFC-7636
SECRET = "acme-state-secret"
T0 = 1_672_531_200  # 2023-01-01T00:00:00Z


def clock_at(now: float):
    return lambda: now


# --------------------------------------------------------------------------- #
# PKCE                                                                        #
# --------------------------------------------------------------------------- #
def test_generate_code_verifier_is_rfc_compliant() -> None:
    verifier = generate_code_verifier()
    assert 43 <= len(verifier) <= 128
    assert ALLOWED_CHARS_RE.match(verifier), "Verifier contains non-RFC chars"


def test_generate_code_verifier_rejects_short_output() -> None:
    with pytest.raises(ValueError):
        generate_code_verifier(16)  # 22 characters


def test_code_challenge_s256_matches_reference() -> None:
    for _ in range(5):
        verifier = generate_code_verifier()
        digest = sha256(verifier.encode("ascii")).digest()
        expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        assert code_challenge_s256(verifier) == expected


def test_code_challenge_known_vector() -> None:
    # RFC 7636 appendix B
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert code_challenge_s256(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_generate_token_is_unique_and_urlsafe() -> None:
    tokens = {generate_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(re.match(r"^[A-Za-z0-9_-]{43}$", t) for t in tokens)


def test_hash_user_agent_is_stable_hex() -> None:
    assert hash_user_agent("Mozilla/5.0") == hash_user_agent("Mozilla/5.0")
    assert hash_user_agent("Mozilla/5.0") != hash_user_agent("curl/8.0")
    assert len(hash_user_agent("")) == 64


# --------------------------------------------------------------------------- #
# STATE SIGN / VERIFY                                                         #
# --------------------------------------------------------------------------- #
def test_state_round_trip_within_max_age() -> None:
    state_id = generate_token()
    token = sign_state(state_id, SECRET, clock=clock_at(T0))
    assert verify_state(token, SECRET, max_age=600, clock=clock_at(T0 + 600)) == state_id


def test_state_is_opaque_urlsafe() -> None:
    token = sign_state("abcdefghijklmnopqrst", SECRET, clock=clock_at(T0))
    assert re.match(r"^[A-Za-z0-9_-]+$", token)
    assert "abcdefghijklmnopqrst" not in token


def test_state_older_than_max_age_is_rejected() -> None:
    token = sign_state(generate_token(), SECRET, clock=clock_at(T0))
    with pytest.raises(InvalidStateError) as exc_info:
        verify_state(token, SECRET, max_age=600, clock=clock_at(T0 + 601))
    assert exc_info.value.reason == REASON_EXPIRED


def test_state_from_the_future_is_rejected_beyond_leeway() -> None:
    token = sign_state(generate_token(), SECRET, clock=clock_at(T0 + 120))
    assert verify_state(token, SECRET, max_age=600, clock=clock_at(T0 + 100))
    with pytest.raises(InvalidStateError) as exc_info:
        verify_state(token, SECRET, max_age=600, clock=clock_at(T0))
    assert exc_info.value.reason == REASON_EXPIRED


def test_state_wrong_secret_is_signature_mismatch() -> None:
    token = sign_state(generate_token(), SECRET, clock=clock_at(T0))
    with pytest.raises(InvalidStateError) as exc_info:
        verify_state(token, "other-org-secret", max_age=600, clock=clock_at(T0))
    assert exc_info.value.reason == REASON_SIGNATURE


def test_state_tamper_any_position_fails() -> None:
    token = sign_state(generate_token(), SECRET, clock=clock_at(T0))
    for i, ch in enumerate(token):
        replacement = "A" if ch != "A" else "B"
        tampered = token[:i] + replacement + token[i + 1 :]
        with pytest.raises(InvalidStateError):
            verify_state(tampered, SECRET, max_age=600, clock=clock_at(T0))


@pytest.mark.parametrize(
    "token",
    ["", "not-base64!", base64.urlsafe_b64encode(b"only:two").decode().rstrip("=")],
)
def test_state_malformed_tokens(token: str) -> None:
    with pytest.raises(InvalidStateError) as exc_info:
        verify_state(token, SECRET, max_age=600, clock=clock_at(T0))
    assert exc_info.value.reason == REASON_MALFORMED


def test_invalid_state_error_is_auth_error_with_generic_message() -> None:
    err = InvalidStateError(reason=REASON_SIGNATURE)
    assert isinstance(err, InvalidState)
    assert err.restart_login is True
    assert "signature" not in err.public_message


def test_sign_state_rejects_bad_input() -> None:
    with pytest.raises(ValueError):
        sign_state("has:colon", SECRET, clock=clock_at(T0))
    with pytest.raises(ValueError):
        sign_state(generate_token(), "", clock=clock_at(T0))
