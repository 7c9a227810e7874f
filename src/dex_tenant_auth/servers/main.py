"""Starlette application setup for the tenant login service."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import anyio
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from dex_tenant_auth.central_auth.service import TenantAuthService

from .auth import register_auth_routes
from .context import MainAppContext
from .correlation import CorrelationIdMiddleware

logger = logging.getLogger("dex-tenant-auth.server.main")


async def health_check(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def sweep_periodically(svc: TenantAuthService, interval_seconds: float) -> None:
    """Run ``svc.sweep_expired`` every *interval_seconds* until cancelled."""
    while True:
        await anyio.sleep(interval_seconds)
        try:
            await run_in_threadpool(svc.sweep_expired)
        except Exception as e:
            # one failed sweep must not stop the next ones
            logger.error(f"Expired-state sweep failed: {e}", exc_info=True)


def _sweep_lifespan(svc: TenantAuthService):
    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        interval = svc.settings.sweep_interval_seconds
        if interval <= 0:
            logger.info("Periodic expired-state sweep disabled")
            yield
            return
        logger.info("Sweeping expired auth states and sessions every %ss", interval)
        async with anyio.create_task_group() as tg:
            tg.start_soon(sweep_periodically, svc, interval)
            try:
                yield
            finally:
                tg.cancel_scope.cancel()
        logger.info("Expired-state sweep stopped")

    return lifespan


def create_app(
    auth_service: TenantAuthService | None = None,
    *,
    base_path: str = "/auth",
    debug: bool = False,
) -> Starlette:
    """
    Build the ASGI application.

    Without an explicit *auth_service* the service is wired from environment
    variables, which makes this function usable as an ASGI factory
    (``uvicorn --factory dex_tenant_auth.servers.main:create_app``).

    While the app is running, expired auth states and sessions are swept
    every ``AUTH_SWEEP_INTERVAL_SECONDS``.
    """
    svc = auth_service or TenantAuthService.from_env()
    app = Starlette(
        debug=debug,
        routes=[Route("/healthz", health_check, methods=["GET"], include_in_schema=False)],
        middleware=[Middleware(CorrelationIdMiddleware)],
        lifespan=_sweep_lifespan(svc),
    )
    app.state.context = MainAppContext(auth_service=svc)
    register_auth_routes(app, svc, base_path=base_path)
    logger.info("Tenant auth routes mounted under %s", base_path)
    return app
