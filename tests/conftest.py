from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

from headscale_admin.config import Settings
from headscale_admin.dependencies import ConsoleServices, build_services
from headscale_admin.identity import ConfiguredIdentityProvider
from headscale_admin.security import SESSION_COOKIE_NAME, create_session_token, hash_password

CONTROL_URL = "http://headscale.test"
METRICS_URL = "http://prometheus.test"
ADMIN_PASSWORD = "correct-horse"

Route = Union[Tuple[int, Any], Callable[[httpx.Request], httpx.Response]]


class FakeControlApi:
    """In-memory stand-in for the control API, keyed by ``(method, path)``."""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Route]] = None) -> None:
        self.routes: Dict[Tuple[str, str], Route] = dict(routes or {})
        self.calls: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        if callable(route):
            return route(request)
        status, payload = route
        if isinstance(payload, Exception):
            raise payload
        return httpx.Response(status, json=payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [
            request.url.path
            for request in self.calls
            if method is None or request.method == method
        ]


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "control_api_url": CONTROL_URL,
        "control_api_key": "test-api-key",
        "metrics_api_url": "",
        "auth_secret_key": "test-secret-key-that-is-long-enough-0123",
        "stats_refresh_interval_seconds": 3600,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture(scope="session")
def admin_password_hash() -> str:
    return hash_password(ADMIN_PASSWORD)


@pytest.fixture
def control_api() -> FakeControlApi:
    return FakeControlApi()


@pytest.fixture
def make_services(admin_password_hash: str, control_api: FakeControlApi):
    def factory(
        metrics_handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        **overrides: Any,
    ) -> ConsoleServices:
        settings = make_settings(**overrides)
        return build_services(
            settings,
            identity=ConfiguredIdentityProvider("admin", admin_password_hash),
            control_transport=control_api.transport,
            metrics_transport=httpx.MockTransport(metrics_handler) if metrics_handler else None,
        )

    return factory


def session_cookie(services: ConsoleServices, username: str = "admin") -> Dict[str, str]:
    token = create_session_token(
        username,
        services.settings.auth_secret_key,
        ttl_seconds=services.settings.auth_session_ttl_seconds,
    )
    return {SESSION_COOKIE_NAME: token}
