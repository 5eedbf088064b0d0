from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Form, Request

from headscale_admin.dependencies import get_aggregator
from headscale_admin.logger import get_logger
from headscale_admin.services.aggregator import Aggregator
from headscale_admin.services.formatting import node_to_view, preauth_key_to_view, user_to_view
from headscale_admin.services.upstream import UpstreamError
from headscale_admin.templating import base_context, redirect, render
from headscale_admin.utils import as_bool

router = APIRouter(prefix="/users", include_in_schema=False)
_logger = get_logger("ui.users")


def _log_failure(event: str, message: str, user_id: str, exc: UpstreamError) -> None:
    _logger.warning(event, message, user_id=user_id, kind=exc.kind.value, detail=exc.detail)


@router.get("")
async def list_users(request: Request, aggregator: Aggregator = Depends(get_aggregator)) -> Any:
    error = None
    try:
        users = [user_to_view(user) for user in await aggregator.fetch_user_list()]
    except UpstreamError as exc:
        _logger.warning("users.list.failed", "Failed to load users", kind=exc.kind.value)
        users, error = [], "Failed to load users"
    context = base_context(request, title="Manage Users", error=error)
    context["users"] = users
    return render(request, "users/index.html", context)


# Registered ahead of /{user_id} so "create" is never read as an id.
@router.get("/create")
async def create_user_form(request: Request) -> Any:
    return render(request, "users/create.html", base_context(request, title="Create New User"))


@router.post("")
async def create_user(
    aggregator: Aggregator = Depends(get_aggregator),
    name: str = Form(default=""),
) -> Any:
    try:
        await aggregator.create_user(name)
    except ValueError:
        return redirect("/users/create", error="user_name_required")
    except UpstreamError as exc:
        _log_failure("users.create.failed", "Failed to create user", "-", exc)
        return redirect("/users/create", error="user_create")
    return redirect("/users", notice="user_created")


@router.get("/{user_id}")
async def show_user(
    user_id: str,
    request: Request,
    aggregator: Aggregator = Depends(get_aggregator),
) -> Any:
    detail = await aggregator.fetch_user_detail(user_id)
    if detail is None:
        return redirect("/users", error="user_not_found")
    user = user_to_view(detail.user)
    context = base_context(request, title=f"User: {user['name']}")
    context.update(
        {
            "user_data": user,
            "nodes": [node_to_view(node) for node in detail.nodes],
            "preauth_keys": [preauth_key_to_view(key) for key in detail.preauth_keys],
        }
    )
    return render(request, "users/show.html", context)


@router.get("/{user_id}/edit")
async def edit_user(
    user_id: str,
    request: Request,
    aggregator: Aggregator = Depends(get_aggregator),
) -> Any:
    try:
        user = user_to_view(await aggregator.fetch_user(user_id))
    except UpstreamError as exc:
        _log_failure("users.edit.failed", "Failed to load user for editing", user_id, exc)
        return redirect("/users", error="user_edit_load")
    context = base_context(request, title=f"Edit User: {user['name']}")
    context["user_data"] = user
    return render(request, "users/edit.html", context)


@router.post("/{user_id}")
async def update_user(
    user_id: str,
    aggregator: Aggregator = Depends(get_aggregator),
    name: str = Form(default=""),
) -> Any:
    try:
        await aggregator.update_user(user_id, name)
    except ValueError:
        return redirect(f"/users/{user_id}/edit", error="user_name_required")
    except UpstreamError as exc:
        _log_failure("users.update.failed", "Failed to update user", user_id, exc)
        return redirect(f"/users/{user_id}/edit", error="user_update")
    return redirect(f"/users/{user_id}", notice="user_updated")


@router.post("/{user_id}/delete")
async def delete_user(user_id: str, aggregator: Aggregator = Depends(get_aggregator)) -> Any:
    try:
        await aggregator.delete_user(user_id)
    except UpstreamError as exc:
        _log_failure("users.delete.failed", "Failed to delete user", user_id, exc)
        return redirect(f"/users/{user_id}", error="user_delete")
    return redirect("/users", notice="user_deleted")


@router.post("/{user_id}/preauthkey")
async def create_preauth_key(
    user_id: str,
    aggregator: Aggregator = Depends(get_aggregator),
    expiration: str = Form(default=""),
    reusable: str = Form(default=""),
    tags: str = Form(default=""),
) -> Any:
    try:
        await aggregator.create_preauth_key(
            user_id,
            expiration=expiration,
            reusable=bool(as_bool(reusable)),
            tags=tags,
        )
    except UpstreamError as exc:
        _log_failure("users.preauthkey.failed", "Failed to create preauth key", user_id, exc)
        return redirect(f"/users/{user_id}", error="preauthkey_create")
    return redirect(f"/users/{user_id}", notice="preauthkey_created")
