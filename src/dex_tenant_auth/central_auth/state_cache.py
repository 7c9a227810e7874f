"""Short-lived, single-use storage for :class:`AuthState` records.

The cache is strictly *write-once, read-once, or time-expire*: there is no
``peek`` and no ``update``.  ``take`` is the replay-prevention boundary of the
whole flow and MUST be a single atomic get-and-delete in every implementation,
never a read followed by a separate delete.

Implementations
---------------
:class:`MemoryStateCache`
    ``cachetools.TTLCache`` guarded by a lock; one process only.
:class:`DiskStateCache`
    JSON files on a shared filesystem.  ``take`` claims the entry with an
    atomic ``os.replace`` so exactly one concurrent caller wins.  Expired
    files are swept on write at most once per ``sweep_interval_seconds``.
:class:`~dex_tenant_auth.central_auth.redis_state_cache.RedisStateCache`
    Redis ``SET NX EX`` / ``GETDEL``; shared by every worker and host.
"""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import threading
from dataclasses import replace
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from cachetools import TTLCache

from dex_tenant_auth.central_auth.clock import Clock, default_clock
from dex_tenant_auth.central_auth.errors import StateCacheFull
from dex_tenant_auth.central_auth.models import AuthState

_LOG = logging.getLogger("dex-tenant-auth.central_auth.state_cache")

MIN_TTL_SECONDS: Final[int] = 300
MAX_TTL_SECONDS: Final[int] = 600
DEFAULT_TTL_SECONDS: Final[int] = MAX_TTL_SECONDS

_STATE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_-]{16,128}$")
DEFAULT_SWEEP_INTERVAL_SECONDS: Final[int] = 60


def clamp_ttl(ttl_seconds: int) -> int:
    """Return *ttl_seconds* forced into the supported 5-10 minute window."""
    clamped = max(MIN_TTL_SECONDS, min(MAX_TTL_SECONDS, int(ttl_seconds)))
    if clamped != ttl_seconds:
        _LOG.warning(
            "Auth state TTL %ss outside [%s, %s]; using %ss",
            ttl_seconds,
            MIN_TTL_SECONDS,
            MAX_TTL_SECONDS,
            clamped,
        )
    return clamped


@runtime_checkable
class StateCache(Protocol):
    """Minimal contract for auth-state storage."""

    def put(self, state_id: str, state: AuthState, ttl_seconds: int) -> None: ...

    def take(self, state_id: str) -> AuthState | None: ...


# --------------------------------------------------------------------------- #
# In-memory implementation                                                    #
# --------------------------------------------------------------------------- #


class MemoryStateCache(StateCache):
    """Process-local cache backed by :class:`cachetools.TTLCache`.

    ``TTLCache`` applies a single TTL to the whole cache, so the entry's own
    ``expires_at`` is re-checked on ``take`` to honour per-entry TTLs.

    At most *maxsize* logins can be pending at once.  ``TTLCache`` would make
    room by evicting the least recently used entry, i.e. a live login of some
    other user, so a full cache refuses new entries with
    :class:`StateCacheFull` instead.
    """

    def __init__(
        self,
        *,
        maxsize: int = 10_000,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Clock = default_clock,
    ) -> None:
        self._clock = clock
        self._cache: TTLCache[str, AuthState] = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds, timer=clock
        )
        self._lock = threading.Lock()

    def put(self, state_id: str, state: AuthState, ttl_seconds: int) -> None:
        if state.state_id != state_id:
            raise ValueError("state_id does not match the record")
        with self._lock:
            if state_id in self._cache:
                raise ValueError("state_id already present")
            self._cache.expire()
            if len(self._cache) >= self._cache.maxsize:
                _LOG.warning("Auth state cache full (%d pending logins)", len(self._cache))
                raise StateCacheFull("auth state cache is full")
            self._cache[state_id] = replace(state, ttl_seconds=int(ttl_seconds))

    def take(self, state_id: str) -> AuthState | None:
        with self._lock:
            state = self._cache.pop(state_id, None)
        if state is None or state.is_expired(clock=self._clock):
            return None
        return state

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


def _atomic_write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    os.replace(tmp, path)  # atomic on POSIX


class DiskStateCache(StateCache):
    """JSON-file implementation of :class:`StateCache`.

    Layout::

        <base_dir>/states/<state_id>.json      live entries
        <base_dir>/states/claimed/<random>     entries being consumed
    """

    def __init__(
        self,
        base_dir: str | os.PathLike,
        *,
        sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Clock = default_clock,
    ) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._last_sweep = clock()
        self._sweep_lock = threading.Lock()
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._claim_dir.mkdir(parents=True, exist_ok=True)

    @property
    def _state_dir(self) -> Path:
        return self.base_dir / "states"

    @property
    def _claim_dir(self) -> Path:
        return self._state_dir / "claimed"

    def _path(self, state_id: str) -> Path:
        if not _STATE_ID_RE.match(state_id or ""):
            raise ValueError("invalid state_id")
        return self._state_dir / f"{state_id}.json"

    def put(self, state_id: str, state: AuthState, ttl_seconds: int) -> None:
        if state.state_id != state_id:
            raise ValueError("state_id does not match the record")
        record = state.to_dict()
        record["ttl_seconds"] = int(ttl_seconds)
        _atomic_write(self._path(state_id), record)
        self._maybe_sweep()

    def _maybe_sweep(self) -> None:
        # abandoned logins are never taken; without this they pile up on disk
        now = self._clock()
        with self._sweep_lock:
            if now - self._last_sweep < self.sweep_interval_seconds:
                return
            self._last_sweep = now
        removed = self.cleanup_expired()
        if removed:
            _LOG.debug("Swept %d expired auth states", removed)

    def take(self, state_id: str) -> AuthState | None:
        """Return and atomically remove the entry (single-use)."""
        try:
            src = self._path(state_id)
        except ValueError:
            return None
        claimed = self._claim_dir / f"{state_id}.{secrets.token_hex(8)}"
        try:
            os.replace(src, claimed)  # fails for every caller but the winner
        except FileNotFoundError:
            return None
        try:
            with claimed.open(encoding="utf-8") as fh:
                state = AuthState.from_dict(json.load(fh))
        except (ValueError, TypeError, AttributeError):
            _LOG.warning("Discarded unreadable auth state state_id=%s****", state_id[:6])
            return None
        finally:
            claimed.unlink(missing_ok=True)
        if state.is_expired(clock=self._clock):
            _LOG.debug("Discarded expired state_id=%s****", state_id[:6])
            return None
        return state

    def cleanup_expired(self) -> int:
        """Delete expired (or unreadable) entries and return how many were removed."""
        removed = 0
        now = self._clock()
        for p in self._state_dir.glob("*.json"):
            try:
                with p.open(encoding="utf-8") as fh:
                    data = json.load(fh)
                created = int(data.get("created_at", 0))
                ttl = int(data.get("ttl_seconds", DEFAULT_TTL_SECONDS))
            except FileNotFoundError:
                continue  # taken concurrently
            except (ValueError, TypeError, AttributeError):
                created, ttl = 0, 0
            if (now - created) > ttl:
                p.unlink(missing_ok=True)
                removed += 1
        return removed
