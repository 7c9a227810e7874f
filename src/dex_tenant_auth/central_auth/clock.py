"""Clock abstraction for testable time handling in the tenant auth core.

Every time-based decision in :mod:`dex_tenant_auth.central_auth` (state
freshness, cache TTL, session expiry, sliding extension) MUST go through an
injected ``Clock`` instead of calling ``time.time()`` directly, so tests can
freeze or advance time deterministically.

Example
-------
>>> from dex_tenant_auth.central_auth.clock import default_clock, now_seconds
>>> isinstance(default_clock(), float)
True
>>> isinstance(now_seconds(), int)
True
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable protocol returning *seconds* since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Default implementation that delegates to ``time.time()``."""
    return time.time()


def now_seconds(clock: Clock = default_clock) -> int:
    """Return the current time from *clock* truncated to whole seconds."""
    return int(clock())
