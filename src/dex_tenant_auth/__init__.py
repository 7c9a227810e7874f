"""Multi-tenant OIDC login core brokered by Dex."""

__version__ = "0.1.0"
