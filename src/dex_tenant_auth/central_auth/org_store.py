"""Lookup of per-tenant :class:`OrgAuthConfig` records.

The core only needs ``get_by_subdomain``; where the records live is up to the
deployment.  Two implementations ship with the package:

:class:`StaticOrgConfigStore`
    In-memory mapping, handy for tests and single-tenant setups.
:class:`JsonOrgConfigStore`
    A JSON file holding a list of organization documents (the shape of the
    ``organizations`` table rows, see :meth:`OrgAuthConfig.from_mapping`).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Protocol, runtime_checkable

from dex_tenant_auth.central_auth.models import OrgAuthConfig

_LOG = logging.getLogger("dex-tenant-auth.central_auth.org_store")


def subdomain_from_host(host: str | None) -> str | None:
    """Return the tenant label of a ``Host`` header value.

    ``acme.example.com`` -> ``acme``; ``acme.localhost:5001`` -> ``acme``;
    a bare ``localhost`` has no tenant and yields ``None``.
    """
    if not host:
        return None
    hostname = host.strip().lower()
    if hostname.startswith("["):  # IPv6 literal, never a tenant
        return None
    hostname = hostname.rsplit(":", 1)[0] if ":" in hostname else hostname
    labels = [p for p in hostname.split(".") if p]
    if len(labels) < 2:
        return None
    return labels[0]


@runtime_checkable
class OrgConfigStore(Protocol):
    """Read-only lookup of tenant configuration."""

    def get_by_subdomain(self, subdomain: str) -> OrgAuthConfig | None: ...


class StaticOrgConfigStore(OrgConfigStore):
    """Tenant configurations held in memory."""

    def __init__(self, configs: Iterable[OrgAuthConfig] = ()) -> None:
        self._by_subdomain: dict[str, OrgAuthConfig] = {}
        for cfg in configs:
            self.add(cfg)

    def add(self, config: OrgAuthConfig) -> None:
        key = config.subdomain.lower()
        if key in self._by_subdomain:
            raise ValueError(f"duplicate subdomain {config.subdomain!r}")
        self._by_subdomain[key] = config

    def get_by_subdomain(self, subdomain: str) -> OrgAuthConfig | None:
        return self._by_subdomain.get((subdomain or "").lower())


class JsonOrgConfigStore(StaticOrgConfigStore):
    """Tenant configurations loaded from a JSON file at construction time.

    Documents with ``"active": false`` are skipped, matching the
    ``WHERE active = true`` filter of the organizations table.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path).expanduser()
        with self.path.open(encoding="utf-8") as fh:
            documents: list[dict[str, Any]] = json.load(fh)
        if not isinstance(documents, list):
            raise ValueError(f"{self.path} must contain a JSON list of organizations")
        configs = [
            OrgAuthConfig.from_mapping(doc)
            for doc in documents
            if doc.get("active", True)
        ]
        super().__init__(configs)
        _LOG.info("Loaded %d organization auth configs from %s", len(configs), self.path)
