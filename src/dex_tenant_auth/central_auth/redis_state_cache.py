"""Redis-backed :class:`~dex_tenant_auth.central_auth.state_cache.StateCache`.

Every worker and host shares one Redis, so a state minted by one process can
be consumed by any other, and still only once:

* ``put``  – ``SET <key> <json> NX EX <ttl>``; Redis owns the expiry, so
  abandoned logins need no sweeping.
* ``take`` – ``GETDEL <key>``, a single server-side get-and-delete.  Of two
  concurrent callers exactly one receives the value.

Keys are ``<namespace><org_id>:<state_id>``.  Callers only know the state id
when consuming, so an ``<namespace>idx:<state_id>`` pointer maps it to the
org-scoped key.  The pointer is set with ``NX`` first and both keys carry
the same TTL.

Requires Redis >= 6.2 (``GETDEL``).  Install with the ``redis`` extra.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Final

import redis

from dex_tenant_auth.central_auth.clock import Clock, default_clock
from dex_tenant_auth.central_auth.models import AuthState
from dex_tenant_auth.central_auth.state_cache import StateCache

_LOG = logging.getLogger("dex-tenant-auth.central_auth.redis_state_cache")

DEFAULT_NAMESPACE: Final[str] = "dex-tenant-auth:state:"
_STATE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


class RedisStateCache(StateCache):
    """Auth-state storage shared across processes through Redis."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Clock = default_clock,
    ) -> None:
        self._r = client
        self.namespace = namespace
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisStateCache":
        """Connect with ``redis.Redis.from_url`` (``redis://`` / ``rediss://``)."""
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=5)
        return cls(client, **kwargs)

    def _index_key(self, state_id: str) -> str:
        return f"{self.namespace}idx:{state_id}"

    def _state_key(self, org_id: str, state_id: str) -> str:
        return f"{self.namespace}{org_id}:{state_id}"

    def put(self, state_id: str, state: AuthState, ttl_seconds: int) -> None:
        if state.state_id != state_id:
            raise ValueError("state_id does not match the record")
        if not _STATE_ID_RE.match(state_id):
            raise ValueError("invalid state_id")
        ttl = int(ttl_seconds)
        record = state.to_dict()
        record["ttl_seconds"] = ttl
        state_key = self._state_key(state.org_id, state_id)

        # the index is claimed first, so a duplicate id never overwrites a live entry
        if not self._r.set(self._index_key(state_id), state_key, nx=True, ex=ttl):
            raise ValueError("state_id already present")
        self._r.set(
            state_key, json.dumps(record, separators=(",", ":"), sort_keys=True), ex=ttl
        )

    def take(self, state_id: str) -> AuthState | None:
        """Return and atomically remove the entry (single-use)."""
        if not _STATE_ID_RE.match(state_id or ""):
            return None
        state_key = self._r.getdel(self._index_key(state_id))
        if not state_key:
            return None
        # only the caller that won the index can reach this line
        raw = self._r.getdel(state_key)
        if raw is None:
            return None
        try:
            state = AuthState.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError):
            _LOG.warning("Discarded unreadable auth state state_id=%s****", state_id[:6])
            return None
        if state.is_expired(clock=self._clock):
            _LOG.debug("Discarded expired state_id=%s****", state_id[:6])
            return None
        return state
