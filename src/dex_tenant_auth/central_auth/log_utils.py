"""Structured logging helpers for tenant auth components.

This module purposefully restricts **which** contextual attributes are attached
to log records in order to avoid accidentally leaking secrets.  All helpers
ONLY inject the following *non-sensitive* fields:

- ``org_id``         – Tenant the request was resolved to
- ``subdomain``      – Host label the tenant was resolved from
- ``state_id``       – Auth state identifier (first 6 chars kept)
- ``correlation_id`` – Request correlation ID set by the HTTP middleware

Usage
-----
>>> from dex_tenant_auth.central_auth.log_utils import get_auth_logger
>>> log = get_auth_logger(
...     base_logger_name="dex-tenant-auth.central_auth.callback",
...     org_id="org-acme",
...     state_id="Zk1cR0z9yq0b7o3vVQfW",
... )
>>> log.info("Starting callback")
INFO dex-tenant-auth.central_auth.callback org_id=org-acme state_id=Zk1cR0 ...

The adapter is a thin wrapper around :class:`logging.LoggerAdapter`.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping

_SECURITY_LOG = logging.getLogger("dex-tenant-auth.security")


def mask_sensitive(value: str | None, keep: int = 4) -> str:
    """Return *value* with everything but the first *keep* characters masked."""
    if not value:
        return "<empty>"
    if len(value) <= keep:
        return "*" * len(value)
    return f"{value[:keep]}{'*' * min(len(value) - keep, 8)}"


class _AuthLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted auth context into log records."""

    extra_keys = ("org_id", "subdomain", "state_id", "correlation_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if k == "state_id" and extra and extra.get("state_id"):
                # the full state id is a cache key; keep only a prefix
                extra_clean[k] = str(extra["state_id"])[:6]
            elif extra and k in extra and extra[k] is not None:
                extra_clean[k] = extra[k]
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        # merge but do not overwrite call-site provided extras
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        return msg, kwargs


def get_auth_logger(
    *,
    base_logger_name: str = "dex-tenant-auth.central_auth",
    org_id: str | None = None,
    subdomain: str | None = None,
    state_id: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with auth context."""
    logger = logging.getLogger(base_logger_name)
    return _AuthLoggerAdapter(
        logger,
        {
            "org_id": org_id,
            "subdomain": subdomain,
            "state_id": state_id,
            "correlation_id": correlation_id,
        },
    )


def log_security_event(
    code: str,
    message: str,
    *,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    **fields: Any,
) -> None:
    """Log a security-relevant failure at WARNING level.

    The record carries ``security_event=<code>`` so that alerting can match on
    it regardless of which component raised the failure.  *fields* must only
    contain non-sensitive values.
    """
    target = logger or _SECURITY_LOG
    details = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
    target.warning(
        "SECURITY %s: %s%s",
        code,
        message,
        f" ({details})" if details else "",
        extra={"security_event": code},
    )
