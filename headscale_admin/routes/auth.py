from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import RedirectResponse

from headscale_admin.dependencies import ConsoleServices, get_services, require_principal
from headscale_admin.identity import Principal
from headscale_admin.logger import get_logger
from headscale_admin.security import (
    SESSION_COOKIE_NAME,
    create_session_token,
    sanitize_next_path,
    validate_new_password,
)
from headscale_admin.templating import base_context, redirect, render

router = APIRouter(prefix="/auth", include_in_schema=False)
_logger = get_logger("auth.login")


def _login_page(
    request: Request,
    *,
    error: Optional[str] = None,
    next_path: str = "/",
    status_code: int = status.HTTP_200_OK,
) -> Any:
    context: Dict[str, Any] = base_context(request, title="Sign In")
    context.update({"error": error, "next_path": next_path})
    return render(request, "auth/login.html", context, status_code=status_code)


def _change_password_page(
    request: Request,
    *,
    error: Optional[str] = None,
    status_code: int = status.HTTP_200_OK,
) -> Any:
    context = base_context(request, title="Change Password")
    context["form_error"] = error
    return render(request, "auth/change_password.html", context, status_code=status_code)


def _client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@router.get("/login")
async def login_page(request: Request, next: str = "/") -> Any:
    next_path = sanitize_next_path(next)
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        _logger.info(
            "login.page.redirect",
            "Redirected authenticated user away from login page",
            username=principal.name,
            next_path=next_path,
        )
        return RedirectResponse(url=next_path, status_code=status.HTTP_303_SEE_OTHER)
    _logger.debug("login.page.render", "Rendered login page", next_path=next_path)
    return _login_page(request, next_path=next_path)


@router.post("/login")
async def login_submit(
    request: Request,
    services: ConsoleServices = Depends(get_services),
    username: str = Form(default=""),
    password: str = Form(default=""),
    next: str = Form(default="/"),
) -> Any:
    settings = services.settings
    limiter = services.login_limiter
    next_path = sanitize_next_path(next)
    client_ip = _client_ip(request)
    normalized_username = username.strip().casefold()
    ip_key = f"ip:{client_ip}"

    async with _logger.operation(
        "login.submit",
        "Handled login form submit",
        username=normalized_username,
        client_ip=client_ip,
    ) as op:
        allowed, retry_after = limiter.check(ip_key)
        op.step_debug(
            "rate_limit.check",
            "Checked login rate limit",
            allowed=allowed,
            retry_after=retry_after,
        )
        if not allowed:
            _logger.warning(
                "login.blocked",
                "Blocked login due to rate limit",
                username=normalized_username,
                client_ip=client_ip,
                retry_after=retry_after,
            )
            return _login_page(
                request,
                error=f"Too many login attempts. Try again in {retry_after}s.",
                next_path=next_path,
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            )

        if not username.strip() or not password:
            return _login_page(
                request,
                error="Username and password are required",
                next_path=next_path,
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        op.step("credentials.verify", "Verifying submitted credentials")
        principal = services.identity.authenticate(username, password)
        if principal is None:
            limiter.record_failure(ip_key)
            _logger.warning(
                "login.failed",
                "Rejected invalid login credentials",
                username=normalized_username,
                client_ip=client_ip,
            )
            return _login_page(
                request,
                error="Invalid username or password",
                next_path=next_path,
                status_code=status.HTTP_401_UNAUTHORIZED,
            )

        limiter.record_success(ip_key)
        token = create_session_token(
            principal.name,
            settings.auth_secret_key,
            ttl_seconds=settings.auth_session_ttl_seconds,
        )
        response = redirect(next_path, notice="welcome" if next_path == "/" else "")
        response.set_cookie(
            key=SESSION_COOKIE_NAME,
            value=token,
            max_age=settings.auth_session_ttl_seconds,
            httponly=True,
            secure=settings.auth_cookie_secure,
            samesite="lax",
            path="/",
        )
        _logger.info(
            "login.success",
            "Issued authenticated session cookie",
            username=principal.name,
            client_ip=client_ip,
            session_ttl_seconds=settings.auth_session_ttl_seconds,
            next_path=next_path,
        )
        return response


@router.get("/logout")
async def logout(request: Request) -> Any:
    principal = getattr(request.state, "principal", None)
    _logger.info(
        "logout.submit",
        "Processed logout request",
        username=principal.name if principal else "",
    )
    response = RedirectResponse(url="/auth/login", status_code=status.HTTP_303_SEE_OTHER)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


@router.get("/change-password")
async def change_password_page(
    request: Request,
    principal: Principal = Depends(require_principal),
) -> Any:
    return _change_password_page(request)


@router.post("/change-password")
async def change_password_submit(
    request: Request,
    principal: Principal = Depends(require_principal),
    services: ConsoleServices = Depends(get_services),
    current_password: str = Form(default=""),
    new_password: str = Form(default=""),
    confirm_password: str = Form(default=""),
) -> Any:
    problem = validate_new_password(current_password, new_password, confirm_password)
    if problem:
        return _change_password_page(
            request, error=problem, status_code=status.HTTP_400_BAD_REQUEST
        )

    updated, message = services.identity.change_password(
        principal,
        current_password=current_password,
        new_password=new_password,
    )
    if not updated:
        _logger.warning(
            "password.change.rejected",
            "Rejected password change",
            username=principal.name,
            reason=message,
        )
        return _change_password_page(
            request, error=message, status_code=status.HTTP_400_BAD_REQUEST
        )
    return redirect("/", notice="password_changed")
