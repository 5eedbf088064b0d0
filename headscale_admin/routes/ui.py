from __future__ import annotations

import json
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Request

from headscale_admin.dependencies import ConsoleServices, get_services
from headscale_admin.logger import get_logger
from headscale_admin.services.upstream import UpstreamError
from headscale_admin.templating import base_context, redirect, render

router = APIRouter(include_in_schema=False)
_logger = get_logger("ui")


def _up_targets(metrics: Any) -> List[Dict[str, str]]:
    """Flatten a Prometheus ``up`` vector into rows for the monitoring table."""
    if not isinstance(metrics, dict):
        return []
    data = metrics.get("data")
    results = data.get("result") if isinstance(data, dict) else None
    if not isinstance(results, list):
        return []
    rows: List[Dict[str, str]] = []
    for item in results:
        if not isinstance(item, dict):
            continue
        labels = item.get("metric") if isinstance(item.get("metric"), dict) else {}
        value = item.get("value")
        sample = str(value[1]) if isinstance(value, list) and len(value) > 1 else ""
        rows.append(
            {
                "job": str(labels.get("job", "-")),
                "instance": str(labels.get("instance", "-")),
                "up": "up" if sample == "1" else "down",
            }
        )
    return rows


@router.get("/")
async def dashboard(request: Request, services: ConsoleServices = Depends(get_services)) -> Any:
    snapshot = await services.aggregator.current_snapshot()
    context = base_context(request, title="Dashboard")
    context.update(
        {
            "stats": snapshot.to_payload(),
            "health": snapshot.health,
        }
    )
    return render(request, "dashboard.html", context)


@router.get("/status")
async def system_status(
    request: Request,
    services: ConsoleServices = Depends(get_services),
) -> Any:
    try:
        status_payload = await services.aggregator.fetch_status()
    except UpstreamError as exc:
        _logger.warning(
            "status.load.failed",
            "Failed to load system status",
            kind=exc.kind.value,
            detail=exc.detail,
        )
        return redirect("/", error="status_load")
    context = base_context(request, title="System Status")
    context["status"] = status_payload
    context["status_json"] = json.dumps(status_payload, indent=2, sort_keys=True, default=str)
    return render(request, "status.html", context)


@router.get("/monitoring")
async def monitoring(
    request: Request,
    services: ConsoleServices = Depends(get_services),
) -> Any:
    metrics = await services.metrics_api.query_or_none("up")
    context = base_context(request, title="Monitoring")
    context.update(
        {
            "metrics": metrics,
            "metrics_configured": services.metrics_api.configured,
            "targets": _up_targets(metrics),
        }
    )
    return render(request, "monitoring.html", context)
