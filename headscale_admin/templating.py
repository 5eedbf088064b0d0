from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import Request, status
from fastapi.responses import RedirectResponse
from fastapi.templating import Jinja2Templates

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))

NOTICES: Dict[str, str] = {
    "welcome": "Welcome back!",
    "password_changed": "Password changed successfully",
    "node_updated": "Node updated successfully",
    "node_renamed": "Node renamed successfully",
    "node_expired": "Node expired successfully",
    "node_deleted": "Node deleted successfully",
    "user_created": "User created successfully",
    "user_updated": "User updated successfully",
    "user_deleted": "User deleted successfully",
    "preauthkey_created": "Preauth key created successfully",
}

ERRORS: Dict[str, str] = {
    "status_load": "Failed to load system status",
    "node_load": "Failed to load node details",
    "node_edit_load": "Failed to load node for editing",
    "node_update": "Failed to update node",
    "node_rename": "Failed to rename node",
    "node_name_required": "Node name is required",
    "node_expire": "Failed to expire node",
    "node_delete": "Failed to delete node",
    "user_not_found": "User not found",
    "user_edit_load": "Failed to load user for editing",
    "user_name_required": "User name is required",
    "user_create": "Failed to create user",
    "user_update": "Failed to update user",
    "user_delete": "Failed to delete user",
    "preauthkey_create": "Failed to create preauth key",
}

_TAB_PREFIXES = (
    ("/nodes", "nodes"),
    ("/users", "users"),
    ("/status", "status"),
    ("/monitoring", "monitoring"),
    ("/auth/change-password", "account"),
)


def redirect(url: str, *, notice: str = "", error: str = "") -> RedirectResponse:
    params = {key: value for key, value in (("notice", notice), ("error", error)) if value}
    target = f"{url}?{urlencode(params)}" if params else url
    return RedirectResponse(url=target, status_code=status.HTTP_303_SEE_OTHER)


def _current_tab(path: str) -> str:
    for prefix, tab in _TAB_PREFIXES:
        if path == prefix or path.startswith(f"{prefix}/"):
            return tab
    return "dashboard"


def base_context(request: Request, *, title: str, error: Optional[str] = None) -> Dict[str, Any]:
    services = request.app.state.services
    principal = getattr(request.state, "principal", None)
    notice = NOTICES.get(request.query_params.get("notice", ""), "")
    flash_error = error or ERRORS.get(request.query_params.get("error", ""), "")
    return {
        "title": title,
        "app_name": services.settings.app_name,
        "app_version": services.settings.app_version,
        "control_api_url": services.settings.control_api_url,
        "demo_activity": services.relay.demo_activity_enabled,
        "auth_user": principal.name if principal else "",
        "current_tab": _current_tab(request.url.path),
        "success_msg": notice,
        "error_msg": flash_error,
    }


def render(
    request: Request,
    name: str,
    context: Dict[str, Any],
    *,
    status_code: int = status.HTTP_200_OK,
) -> Any:
    return templates.TemplateResponse(request, name, context, status_code=status_code)
