from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from headscale_admin.dependencies import get_aggregator, get_metrics_api, require_principal
from headscale_admin.logger import get_logger
from headscale_admin.services.aggregator import Aggregator
from headscale_admin.services.formatting import (
    node_to_json,
    preauth_key_to_json,
    user_to_json,
)
from headscale_admin.services.upstream import MetricsApiClient

router = APIRouter(prefix="/api", tags=["api"], dependencies=[Depends(require_principal)])
_logger = get_logger("api.json")


@router.get("/stats")
async def stats(
    health: bool = False,
    aggregator: Aggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    snapshot = await aggregator.current_snapshot()
    return snapshot.to_payload(include_health=health)


@router.get("/nodes")
async def list_nodes(aggregator: Aggregator = Depends(get_aggregator)) -> List[Dict[str, Any]]:
    return [node_to_json(node) for node in await aggregator.fetch_node_list()]


@router.get("/nodes/{node_id}")
async def get_node(
    node_id: str,
    aggregator: Aggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    return node_to_json(await aggregator.fetch_node(node_id))


@router.get("/users")
async def list_users(aggregator: Aggregator = Depends(get_aggregator)) -> List[Dict[str, Any]]:
    return [user_to_json(user) for user in await aggregator.fetch_user_list()]


@router.get("/users/{user_id}")
async def get_user(
    user_id: str,
    aggregator: Aggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    detail = await aggregator.fetch_user_detail(user_id)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {
        "user": user_to_json(detail.user),
        "nodes": [node_to_json(node) for node in detail.nodes],
        "preauthKeys": [preauth_key_to_json(key) for key in detail.preauth_keys],
    }


@router.get("/status")
async def control_status(aggregator: Aggregator = Depends(get_aggregator)) -> Any:
    return await aggregator.fetch_status()


@router.get("/metrics")
async def metrics_query(
    query: Optional[str] = None,
    metrics_api: MetricsApiClient = Depends(get_metrics_api),
) -> Any:
    if not query or not query.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Query parameter is required"
        )
    if not metrics_api.configured:
        _logger.info("metrics.query.skipped", "Metrics service is not configured", query=query)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Metrics service is not configured",
        )
    return await metrics_api.query(query.strip())
