"""Signed ``state`` parameter for the OIDC authorization request.

The *state* value handed to the identity provider is an opaque reference to the
server-side :class:`~dex_tenant_auth.central_auth.models.AuthState`.  It is
tamper-evident and carries its own issue time so that an old token can be
rejected even while the cache entry it points to is still alive.

Format (plain text before base64-url encoding)::

    <state_id>:<ts>:<sig>

``sig`` is the hex HMAC-SHA256 of ``<state_id>:<ts>`` keyed with the
organization's ``session_secret``.  State ids come from
:func:`~dex_tenant_auth.central_auth.pkce.generate_token` and never contain
``:``.

Failure reasons (``malformed``, ``signature_mismatch``, ``expired``) are kept
on the raised :class:`InvalidStateError` for logging only; callers must answer
all of them the same way.

Logging
-------
Only the (truncated) ``state_id`` is ever logged; the full state string as
well as the HMAC secret are *never* written to logs.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
from hashlib import sha256
from typing import Final

from dex_tenant_auth.central_auth.clock import Clock, default_clock
from dex_tenant_auth.central_auth.errors import InvalidState

_LOG = logging.getLogger("dex-tenant-auth.central_auth.state")

# tolerated clock skew between the signing and the verifying node
DEFAULT_LEEWAY_SECONDS: Final[int] = 30

REASON_MALFORMED: Final[str] = "malformed"
REASON_SIGNATURE: Final[str] = "signature_mismatch"
REASON_EXPIRED: Final[str] = "expired"


class InvalidStateError(InvalidState):
    """Raised when an incoming state is malformed, forged or too old."""


def _b64e(data: str) -> str:
    """Base64-URL encode *without* padding."""
    return base64.urlsafe_b64encode(data.encode("utf-8")).rstrip(b"=").decode("ascii")


def _b64d(data: str) -> str:
    """Decode base64-URL data that may lack padding."""
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len).decode("utf-8")


def _sign(message: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), msg=message.encode("utf-8"), digestmod=sha256).hexdigest()


def sign_state(state_id: str, secret: str, *, clock: Clock = default_clock) -> str:
    """Return the URL-safe signed state for *state_id*.

    Parameters
    ----------
    state_id:
        Key of the cached auth state.
    secret:
        Organization ``session_secret``.
    clock:
        Time source; defaults to :func:`~dex_tenant_auth.central_auth.clock.default_clock`.
    """
    if not state_id or ":" in state_id:
        raise ValueError("state_id must be non-empty and must not contain ':'")
    if not secret:
        raise ValueError("signing secret must not be empty")
    ts = int(clock())
    payload = f"{state_id}:{ts}"
    encoded = _b64e(f"{payload}:{_sign(payload, secret)}")
    _LOG.debug("Signed state for state_id=%s****", state_id[:6])
    return encoded


def verify_state(
    token: str,
    secret: str,
    *,
    max_age: int,
    clock: Clock = default_clock,
    leeway: int = DEFAULT_LEEWAY_SECONDS,
) -> str:
    """Validate a state received in the callback and return its ``state_id``.

    Parameters
    ----------
    token:
        The base64-url encoded state string from the callback request.
    secret:
        Organization ``session_secret`` (same value used in :func:`sign_state`).
    max_age:
        Freshness window in seconds, independent of the cache TTL.
    clock:
        Time source.
    leeway:
        Accepted skew for timestamps slightly in the future.

    Raises
    ------
    InvalidStateError
        If the state is malformed, the signature does not validate or the
        state is older than *max_age*.
    """
    if not token or not secret:
        raise InvalidStateError(reason=REASON_MALFORMED)
    try:
        decoded = _b64d(token)
    except (ValueError, binascii.Error):
        raise InvalidStateError(reason=REASON_MALFORMED) from None
    # reject non-canonical encodings (e.g. flipped padding bits in the last char)
    if _b64e(decoded) != token:
        raise InvalidStateError(reason=REASON_MALFORMED)

    parts = decoded.split(":")
    if len(parts) != 3:
        raise InvalidStateError(reason=REASON_MALFORMED)
    state_id, ts_str, sig = parts
    if not state_id or not (ts_str.isascii() and ts_str.isdigit()) or not sig:
        raise InvalidStateError(reason=REASON_MALFORMED)

    expected_sig = _sign(f"{state_id}:{ts_str}", secret)
    if not hmac.compare_digest(sig.encode("ascii", "replace"), expected_sig.encode("ascii")):
        raise InvalidStateError(reason=REASON_SIGNATURE)

    age = int(clock()) - int(ts_str)
    if age > max_age or age < -leeway:
        raise InvalidStateError(reason=REASON_EXPIRED)

    _LOG.debug("Verified state for state_id=%s**** age=%ss", state_id[:6], age)
    return state_id
