"""Browser-facing login endpoints.

Handlers are intentionally thin:

1. Parse HTTP-layer parameters (Host, client IP, User-Agent, cookie).
2. Delegate business logic to ``TenantAuthService`` (in a worker thread; the
   service performs blocking I/O).
3. Map typed :class:`AuthError` results onto Starlette ``Response`` objects.

Error mapping
-------------
• Login-restart family (invalid / replayed state, nonce or context mismatch,
  invalid ID token) → ``302`` to ``<login>?error=login_failed``.  The response
  is identical for every member; only the logs tell them apart.
• ``ConfigNotFound`` → ``404`` without echoing the subdomain.
• ``TokenExchangeFailed`` → ``502``; ``PersistenceError`` and anything
  unexpected → ``500``.
• ``SessionExpired`` / ``InvalidCookie`` → ``401``.

SECURITY NOTE
-------------
No raw secrets (state, codes, tokens, cookies) are ever logged.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from dex_tenant_auth.central_auth.errors import AuthError, InvalidState, PersistenceError
from dex_tenant_auth.central_auth.models import SessionCookie
from dex_tenant_auth.central_auth.service import TenantAuthService

_LOG = logging.getLogger("dex-tenant-auth.auth.routes")

LOGIN_FAILED = "login_failed"


def _html_page(title: str, body: str, status: int = 200) -> HTMLResponse:
    """Return a tiny success / error HTML page."""
    content = (
        "<!doctype html><html lang='en'>"
        "<head><meta charset='utf-8'><title>"
        f"{title}</title></head><body><h1>{title}</h1><p>{body}</p></body></html>"
    )
    return HTMLResponse(content, status_code=status)


def client_ip(request: Request) -> str:
    """First ``X-Forwarded-For`` hop, then ``X-Real-IP``, then the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "-")


def apply_cookie(response: Response, cookie: SessionCookie) -> None:
    response.set_cookie(
        key=cookie.name,
        value=cookie.value,
        max_age=cookie.max_age,
        path=cookie.path,
        domain=cookie.domain,
        secure=cookie.secure,
        httponly=cookie.http_only,
        samesite=cookie.same_site,
    )


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def register_auth_routes(
    app: Starlette,
    svc: TenantAuthService,
    *,
    base_path: str = "/auth",
    api_path: str = "/api/v2",
) -> None:
    """Attach the login endpoints to *app*."""
    login_path = f"{base_path}/login"

    def _restart_login() -> RedirectResponse:
        return RedirectResponse(
            f"{login_path}?{urlencode({'error': LOGIN_FAILED})}", status_code=302
        )

    def _error_response(exc: AuthError, request: Request) -> Response:
        _LOG.info(
            "Auth request failed code=%s stage=%s correlation_id=%s",
            exc.code,
            exc.stage or "-",
            _correlation_id(request),
        )
        if exc.restart_login:
            return _restart_login()
        return _html_page("Sign-in failed", exc.public_message, exc.http_status)

    def _unexpected(exc: Exception, request: Request) -> Response:
        _LOG.error(
            "Unexpected auth failure correlation_id=%s: %s",
            _correlation_id(request),
            type(exc).__name__,
            exc_info=True,
        )
        return _html_page("Sign-in failed", PersistenceError().public_message, 500)

    # ----- GET /auth/login ------------------------------------------------ #
    async def _login(request: Request) -> Response:  # noqa: D401
        if request.query_params.get("error"):
            return _html_page(
                "Sign-in failed",
                f"{InvalidState().public_message} <a href='{login_path}'>Sign in</a>",
                400,
            )
        try:
            redirect = await run_in_threadpool(
                svc.start_login,
                host=request.headers.get("host"),
                return_url=request.query_params.get("return_url"),
                client_ip=client_ip(request),
                user_agent=user_agent(request),
            )
        except AuthError as exc:
            return _error_response(exc, request)
        except Exception as exc:  # broad: mapped to 500
            return _unexpected(exc, request)
        _LOG.info("Login started correlation_id=%s", _correlation_id(request))
        return RedirectResponse(redirect.url, status_code=302)

    # ----- POST /api/v2/login-with ---------------------------------------- #
    async def _login_with(request: Request) -> Response:  # noqa: D401
        try:
            payload: Any = await request.json()
        except ValueError:
            payload = {}
        return_url = payload.get("return_url") if isinstance(payload, dict) else None
        try:
            redirect = await run_in_threadpool(
                svc.start_login,
                host=request.headers.get("host"),
                return_url=return_url if isinstance(return_url, str) else None,
                client_ip=client_ip(request),
                user_agent=user_agent(request),
            )
        except AuthError as exc:
            return JSONResponse(exc.to_payload(), status_code=exc.http_status)
        except Exception as exc:  # broad: mapped to 500
            _unexpected(exc, request)
            return JSONResponse(PersistenceError().to_payload(), status_code=500)
        return JSONResponse(
            {"authorize_url": redirect.url, "expires_at": redirect.expires_at}
        )

    # ----- GET /auth/callback --------------------------------------------- #
    async def _callback(request: Request) -> Response:  # noqa: D401
        # provider-side errors first (e.g. access_denied)
        provider_error = request.query_params.get("error")
        if provider_error:
            _LOG.warning(
                "Provider returned error=%s correlation_id=%s",
                provider_error[:64],
                _correlation_id(request),
            )
            return _restart_login()

        code = request.query_params.get("code")
        state = request.query_params.get("state")
        if not code or not state:
            return _error_response(InvalidState(reason="malformed"), request)

        try:
            result = await run_in_threadpool(
                svc.complete_callback,
                host=request.headers.get("host"),
                code=code,
                state=state,
                client_ip=client_ip(request),
                user_agent=user_agent(request),
                correlation_id=getattr(request.state, "correlation_id", None),
            )
        except AuthError as exc:
            return _error_response(exc, request)
        except Exception as exc:  # broad: mapped to 500
            return _unexpected(exc, request)

        response = RedirectResponse(result.return_url, status_code=302)
        apply_cookie(response, result.cookie)
        _LOG.info(
            "Login completed user_id=%s correlation_id=%s",
            result.user.user_id,
            _correlation_id(request),
        )
        return response

    # ----- GET /auth/session ---------------------------------------------- #
    async def _session(request: Request) -> Response:  # noqa: D401
        host = request.headers.get("host")
        try:
            org_config = svc.resolve_org(host)
            status = await run_in_threadpool(
                svc.authenticate,
                host=host,
                cookie_value=request.cookies.get(org_config.session_config.cookie_name),
            )
        except AuthError as exc:
            return JSONResponse(exc.to_payload(), status_code=exc.http_status)
        except Exception as exc:  # broad: mapped to 500
            _unexpected(exc, request)
            return JSONResponse(PersistenceError().to_payload(), status_code=500)

        session = status.session
        response = JSONResponse(
            {
                "user_id": session.user_id,
                "org_id": session.org_id,
                "expires_at": session.expires_at,
                "last_activity_at": session.last_activity_at,
            }
        )
        if status.cookie is not None:
            apply_cookie(response, status.cookie)
        return response

    # ----- POST /auth/logout ---------------------------------------------- #
    async def _logout(request: Request) -> Response:  # noqa: D401
        host = request.headers.get("host")
        try:
            org_config = svc.resolve_org(host)
            cookie = await run_in_threadpool(
                svc.logout,
                host=host,
                cookie_value=request.cookies.get(org_config.session_config.cookie_name),
            )
        except AuthError as exc:
            return JSONResponse(exc.to_payload(), status_code=exc.http_status)
        except Exception as exc:  # broad: mapped to 500
            _unexpected(exc, request)
            return JSONResponse(PersistenceError().to_payload(), status_code=500)
        response = Response(status_code=204)
        apply_cookie(response, cookie)
        return response

    app.add_route(login_path, _login, methods=["GET"])
    app.add_route(f"{api_path}/login-with", _login_with, methods=["POST"])
    app.add_route(f"{base_path}/callback", _callback, methods=["GET"])
    app.add_route(f"{base_path}/session", _session, methods=["GET"])
    app.add_route(f"{base_path}/logout", _logout, methods=["POST"])
