from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import httpx
from fastapi import HTTPException, Request, status

from headscale_admin.config import Settings
from headscale_admin.identity import ConfiguredIdentityProvider, IdentityProvider, Principal
from headscale_admin.logger import get_logger
from headscale_admin.security import LoginRateLimiter
from headscale_admin.services.aggregator import Aggregator
from headscale_admin.services.push import PushRelay
from headscale_admin.services.snapshot_cache import SnapshotCache
from headscale_admin.services.upstream import ControlApiClient, MetricsApiClient

_logger = get_logger("dependencies")


@dataclass
class ConsoleServices:
    settings: Settings
    identity: IdentityProvider
    control: ControlApiClient
    metrics_api: MetricsApiClient
    aggregator: Aggregator
    relay: PushRelay
    login_limiter: LoginRateLimiter = field(default_factory=LoginRateLimiter)

    async def close(self) -> None:
        await self.control.close()
        await self.metrics_api.close()
        _logger.info("services.close", "Closed upstream clients")


def build_services(
    settings: Settings,
    *,
    identity: Optional[IdentityProvider] = None,
    control_transport: Optional[httpx.AsyncBaseTransport] = None,
    metrics_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ConsoleServices:
    control = ControlApiClient(
        settings.control_api_url,
        settings.control_api_key,
        timeout_seconds=settings.control_api_timeout_seconds,
        retries=settings.control_api_retries,
        transport=control_transport,
    )
    metrics_api = MetricsApiClient(
        settings.metrics_api_url,
        timeout_seconds=settings.metrics_api_timeout_seconds,
        transport=metrics_transport,
    )
    aggregator = Aggregator(control, SnapshotCache())
    relay = PushRelay(
        aggregator,
        stats_interval_seconds=settings.stats_refresh_interval_seconds,
        queue_size=settings.push_queue_size,
        demo_activity_enabled=settings.demo_activity_enabled,
        demo_activity_interval_seconds=settings.demo_activity_interval_seconds,
    )
    return ConsoleServices(
        settings=settings,
        identity=identity or ConfiguredIdentityProvider.from_settings(settings),
        control=control,
        metrics_api=metrics_api,
        aggregator=aggregator,
        relay=relay,
    )


def get_services(request: Request) -> ConsoleServices:
    return request.app.state.services


def get_aggregator(request: Request) -> Aggregator:
    return get_services(request).aggregator


def get_metrics_api(request: Request) -> MetricsApiClient:
    return get_services(request).metrics_api


def current_principal(request: Request) -> Optional[Principal]:
    return getattr(request.state, "principal", None)


def require_principal(request: Request) -> Principal:
    principal = current_principal(request)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return principal
