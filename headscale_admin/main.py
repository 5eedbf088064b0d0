from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import urlencode
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from headscale_admin.config import DEFAULT_AUTH_SECRET_KEY, Settings, get_settings
from headscale_admin.dependencies import ConsoleServices, build_services
from headscale_admin.logger import configure_logging, get_logger
from headscale_admin.metrics import observe_http_request
from headscale_admin.routes import api, auth, events, nodes, system, ui, users
from headscale_admin.security import SESSION_COOKIE_NAME, decode_session_token
from headscale_admin.services.upstream import UpstreamError, UpstreamErrorKind

logger = get_logger("api")

PUBLIC_PATHS = {"/health", "/version", "/metrics", "/auth/login", "/auth/logout", "/favicon.ico"}

_UPSTREAM_STATUS = {
    UpstreamErrorKind.NOT_FOUND: 404,
    UpstreamErrorKind.UNAUTHORIZED: 502,
    UpstreamErrorKind.UNREACHABLE: 503,
    UpstreamErrorKind.UPSTREAM_FAULT: 502,
}

_ERROR_PAGE = """<!doctype html>
<html><head><title>{title}</title></head>
<body><h1>{title}</h1><p>{message}</p><a href="/">Go back to dashboard</a></body></html>
"""


def _is_api_path(path: str) -> bool:
    return path == "/api" or path.startswith("/api/")


def _warn_on_defaults(settings: Settings) -> None:
    if settings.is_production:
        return
    if settings.auth_secret_key == DEFAULT_AUTH_SECRET_KEY:
        logger.warning(
            "security.defaults",
            "AUTH_SECRET_KEY is using a default placeholder; set a unique secret before production",
        )
    if not settings.auth_cookie_secure:
        logger.warning(
            "security.cookies",
            "AUTH_COOKIE_SECURE is disabled; enable it when serving over HTTPS",
        )


def create_app(
    settings: Optional[Settings] = None,
    *,
    services: Optional[ConsoleServices] = None,
    configure_logs: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(settings.log_level, settings.log_file or None)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app.startup",
            "Starting app",
            env=settings.app_env,
            version=settings.app_version,
            control_api=settings.control_api_url,
            metrics_api=settings.metrics_api_url or "-",
        )
        _warn_on_defaults(settings)
        await services.relay.start()
        try:
            yield
        finally:
            await services.relay.stop()
            await services.close()
            logger.info("app.shutdown", "Shutting down app")

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def auth_guard(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        path = request.url.path
        token = request.cookies.get(SESSION_COOKIE_NAME)
        username = decode_session_token(token, settings.auth_secret_key) if token else None
        principal = services.identity.resolve(username) if username else None
        request.state.principal = principal

        if path in PUBLIC_PATHS or principal is not None:
            return await call_next(request)

        if _is_api_path(path):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})

        next_path = f"{path}?{request.url.query}" if request.url.query else path
        query = urlencode({"next": next_path})
        return RedirectResponse(url=f"/auth/login?{query}", status_code=303)

    @app.middleware("http")
    async def request_logging(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid4())
        client = request.client.host if request.client else None
        route_path = request.url.path
        start = perf_counter()
        with logger.context(request_id=request_id):
            logger.debug(
                "request.start",
                "Started",
                method=request.method,
                path=route_path,
                client=client,
            )
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.exception(
                    "request.error",
                    "Failed",
                    method=request.method,
                    path=route_path,
                    duration_ms=round((perf_counter() - start) * 1000, 1),
                    error_type=type(exc).__name__,
                )
                raise

            duration = perf_counter() - start
            route = request.scope.get("route")
            observe_http_request(
                method=request.method,
                path=getattr(route, "path", "unmatched"),
                status=response.status_code,
                duration_seconds=duration,
            )
            logger.info(
                "request.complete",
                "Completed",
                method=request.method,
                path=route_path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 1),
            )

        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError) -> Response:
        logger.warning(
            "upstream.error",
            "Upstream call failed",
            path=request.url.path,
            resource=exc.resource,
            kind=exc.kind.value,
            upstream_status=exc.status_code,
        )
        return JSONResponse(
            status_code=_UPSTREAM_STATUS.get(exc.kind, 502),
            content={"error": exc.detail, "kind": exc.kind.value},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
        if _is_api_path(request.url.path) or exc.status_code != 404:
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": exc.detail},
                headers=getattr(exc, "headers", None),
            )
        return HTMLResponse(
            _ERROR_PAGE.format(
                title="Page Not Found",
                message="The page you are looking for does not exist.",
            ),
            status_code=404,
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> Response:
        logger.error(
            "request.unhandled",
            "Unhandled error while serving request",
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        if _is_api_path(request.url.path):
            return JSONResponse(status_code=500, content={"error": "Internal server error"})
        return HTMLResponse(
            _ERROR_PAGE.format(title="Something went wrong!", message="Internal server error"),
            status_code=500,
        )

    app.include_router(system.router)
    app.include_router(auth.router)
    app.include_router(api.router)
    app.include_router(events.router)
    app.include_router(ui.router)
    app.include_router(nodes.router)
    app.include_router(users.router)
    return app
