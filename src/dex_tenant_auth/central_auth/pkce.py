"""Random material for one login attempt.

* PKCE verifier / S256 challenge pair (RFC 7636).  Dex only accepts ``S256``
  from confidential clients configured for PKCE, so ``plain`` is not offered.
* URL-safe tokens used as state ids, nonces and CSRF tokens.
* A one-way digest of the ``User-Agent`` header, stored with the auth state
  instead of the raw header value.

Nothing in here logs; every return value is a secret or derived from one.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Final

VERIFIER_MIN_LEN: Final[int] = 43
VERIFIER_MAX_LEN: Final[int] = 128
# 48 random bytes -> 64 base64url characters, all RFC 7636 "unreserved"
_VERIFIER_BYTES: Final[int] = 48
_TOKEN_BYTES: Final[int] = 32


def generate_code_verifier(nbytes: int = _VERIFIER_BYTES) -> str:
    """Return a fresh PKCE code verifier (43-128 unreserved characters)."""
    verifier = secrets.token_urlsafe(nbytes)
    if not VERIFIER_MIN_LEN <= len(verifier) <= VERIFIER_MAX_LEN:
        raise ValueError(
            f"code verifier must be {VERIFIER_MIN_LEN}-{VERIFIER_MAX_LEN} characters"
        )
    return verifier


def code_challenge_s256(verifier: str) -> str:
    """``BASE64URL(SHA256(ascii(verifier)))`` without ``=`` padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_token(nbytes: int = _TOKEN_BYTES) -> str:
    return secrets.token_urlsafe(nbytes)


def hash_user_agent(user_agent: str) -> str:
    return hashlib.sha256(user_agent.encode("utf-8")).hexdigest()
