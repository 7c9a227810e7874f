from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dex_tenant_auth.central_auth.service import TenantAuthService


@dataclass(frozen=True)
class MainAppContext:
    """
    Context holding the fully wired auth service, created once at startup and
    exposed to downstream handlers through ``app.state.context``.
    """

    auth_service: TenantAuthService
