"""Starlette wiring for the tenant auth core."""
