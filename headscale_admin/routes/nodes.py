from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Form, Request

from headscale_admin.dependencies import get_aggregator
from headscale_admin.logger import get_logger
from headscale_admin.services.aggregator import Aggregator
from headscale_admin.services.formatting import node_to_view
from headscale_admin.services.upstream import UpstreamError
from headscale_admin.templating import base_context, redirect, render

router = APIRouter(prefix="/nodes", include_in_schema=False)
_logger = get_logger("ui.nodes")


def _log_failure(event: str, message: str, node_id: str, exc: UpstreamError) -> None:
    _logger.warning(event, message, node_id=node_id, kind=exc.kind.value, detail=exc.detail)


@router.get("")
async def list_nodes(request: Request, aggregator: Aggregator = Depends(get_aggregator)) -> Any:
    error = None
    try:
        nodes = [node_to_view(node) for node in await aggregator.fetch_node_list()]
    except UpstreamError as exc:
        _logger.warning("nodes.list.failed", "Failed to load nodes", kind=exc.kind.value)
        nodes, error = [], "Failed to load nodes"
    context = base_context(request, title="Manage Nodes", error=error)
    context["nodes"] = nodes
    return render(request, "nodes/index.html", context)


@router.get("/{node_id}")
async def show_node(
    node_id: str,
    request: Request,
    aggregator: Aggregator = Depends(get_aggregator),
) -> Any:
    try:
        node = await aggregator.fetch_node(node_id)
    except UpstreamError as exc:
        _log_failure("nodes.show.failed", "Failed to load node details", node_id, exc)
        return redirect("/nodes", error="node_load")
    view = node_to_view(node)
    context = base_context(request, title=f"Node: {view['name']}")
    context["node"] = view
    return render(request, "nodes/show.html", context)


@router.get("/{node_id}/edit")
async def edit_node(
    node_id: str,
    request: Request,
    aggregator: Aggregator = Depends(get_aggregator),
) -> Any:
    try:
        node = await aggregator.fetch_node(node_id)
    except UpstreamError as exc:
        _log_failure("nodes.edit.failed", "Failed to load node for editing", node_id, exc)
        return redirect("/nodes", error="node_edit_load")
    view = node_to_view(node)
    context = base_context(request, title=f"Edit Node: {view['name']}")
    context["node"] = view
    return render(request, "nodes/edit.html", context)


@router.post("/{node_id}")
async def update_node_tags(
    node_id: str,
    aggregator: Aggregator = Depends(get_aggregator),
    tags: str = Form(default=""),
) -> Any:
    try:
        await aggregator.retag_node(node_id, tags)
    except UpstreamError as exc:
        _log_failure("nodes.update.failed", "Failed to update node", node_id, exc)
        return redirect(f"/nodes/{node_id}/edit", error="node_update")
    return redirect(f"/nodes/{node_id}", notice="node_updated")


@router.post("/{node_id}/rename")
async def rename_node(
    node_id: str,
    aggregator: Aggregator = Depends(get_aggregator),
    name: str = Form(default=""),
) -> Any:
    try:
        await aggregator.rename_node(node_id, name)
    except ValueError:
        return redirect(f"/nodes/{node_id}", error="node_name_required")
    except UpstreamError as exc:
        _log_failure("nodes.rename.failed", "Failed to rename node", node_id, exc)
        return redirect(f"/nodes/{node_id}", error="node_rename")
    return redirect(f"/nodes/{node_id}", notice="node_renamed")


@router.post("/{node_id}/expire")
async def expire_node(node_id: str, aggregator: Aggregator = Depends(get_aggregator)) -> Any:
    try:
        await aggregator.expire_node(node_id)
    except UpstreamError as exc:
        _log_failure("nodes.expire.failed", "Failed to expire node", node_id, exc)
        return redirect(f"/nodes/{node_id}", error="node_expire")
    return redirect(f"/nodes/{node_id}", notice="node_expired")


@router.post("/{node_id}/delete")
async def delete_node(node_id: str, aggregator: Aggregator = Depends(get_aggregator)) -> Any:
    try:
        await aggregator.delete_node(node_id)
    except UpstreamError as exc:
        _log_failure("nodes.delete.failed", "Failed to delete node", node_id, exc)
        return redirect(f"/nodes/{node_id}", error="node_delete")
    return redirect("/nodes", notice="node_deleted")
