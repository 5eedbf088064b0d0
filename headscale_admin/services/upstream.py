from __future__ import annotations

import asyncio
from enum import Enum
from time import perf_counter
from typing import Any, Mapping, Optional

import httpx

from headscale_admin.logger import get_logger
from headscale_admin.metrics import record_upstream_call

_logger = get_logger("services.upstream")
_RETRY_BACKOFF_SECONDS = 0.25


class UpstreamErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    UPSTREAM_FAULT = "upstream_fault"


class UpstreamError(RuntimeError):
    def __init__(
        self,
        kind: UpstreamErrorKind,
        resource: str,
        detail: str,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(f"{resource}: {kind.value}: {detail}")
        self.kind = kind
        self.resource = resource
        self.detail = detail
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.kind is UpstreamErrorKind.UNREACHABLE:
            return True
        return self.kind is UpstreamErrorKind.UPSTREAM_FAULT and (self.status_code or 0) >= 500


def _resource_kind(resource: str) -> str:
    """Collapse ids out of a resource path so metric labels stay bounded."""
    parts = [part for part in resource.strip("/").split("/") if part]
    return "/".join("{id}" if index % 2 == 1 else part for index, part in enumerate(parts))


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase


def classify_status(resource: str, response: httpx.Response) -> UpstreamError:
    status = response.status_code
    detail = _error_detail(response)
    if status in (401, 403):
        kind = UpstreamErrorKind.UNAUTHORIZED
    elif status == 404:
        kind = UpstreamErrorKind.NOT_FOUND
    else:
        kind = UpstreamErrorKind.UPSTREAM_FAULT
    return UpstreamError(kind, resource, detail, status_code=status)


class _JsonHttpClient:
    service = "upstream"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float,
        headers: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json", **dict(headers or {})},
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        resource: str,
        *,
        body: Any = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Any:
        started = perf_counter()
        result = "ok"
        try:
            try:
                response = await self._client.request(
                    method,
                    url,
                    json=body,
                    params=params,
                )
            except httpx.HTTPError as exc:
                result = UpstreamErrorKind.UNREACHABLE.value
                raise UpstreamError(
                    UpstreamErrorKind.UNREACHABLE,
                    resource,
                    f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                ) from exc

            if response.status_code >= 400:
                error = classify_status(resource, response)
                result = error.kind.value
                raise error

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                result = UpstreamErrorKind.UPSTREAM_FAULT.value
                raise UpstreamError(
                    UpstreamErrorKind.UPSTREAM_FAULT,
                    resource,
                    "Response body is not valid JSON",
                    status_code=response.status_code,
                ) from exc
        finally:
            duration = perf_counter() - started
            record_upstream_call(
                service=self.service,
                method=method,
                resource=_resource_kind(resource),
                result=result,
                duration_seconds=duration,
            )
            _logger.debug(
                "upstream.call",
                "Called upstream",
                service=self.service,
                method=method,
                resource=resource,
                result=result,
                duration_ms=round(duration * 1000, 1),
            )


class ControlApiClient(_JsonHttpClient):
    """Stateless request executor for the Headscale REST API.

    Every call carries the bearer credential. Retries are off unless
    ``retries`` is set, and then apply only to idempotent reads that failed
    with a transport error or a 5xx status.
    """

    service = "control"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        retries: int = 0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url,
            timeout_seconds=timeout_seconds,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )
        self._retries = max(0, retries)

    async def request(self, method: str, resource: str, body: Any = None) -> Any:
        method = method.upper()
        path = f"/api/v1/{resource.strip('/')}"
        attempts = 1 + (self._retries if method == "GET" else 0)
        attempt = 1
        while True:
            try:
                return await self._send(method, path, resource, body=body)
            except UpstreamError as exc:
                if attempt >= attempts or not exc.retryable:
                    raise
                _logger.warning(
                    "upstream.retry",
                    "Retrying failed control API read",
                    resource=resource,
                    attempt=attempt,
                    kind=exc.kind.value,
                )
                await asyncio.sleep(_RETRY_BACKOFF_SECONDS * attempt)
                attempt += 1

    async def get(self, resource: str) -> Any:
        return await self.request("GET", resource)


class MetricsApiClient(_JsonHttpClient):
    """Prometheus-compatible query client; an empty base URL means no metrics."""

    service = "metrics"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._configured = bool(base_url.strip())
        super().__init__(
            base_url or "http://metrics.invalid",
            timeout_seconds=timeout_seconds,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return self._configured

    async def query(self, expr: str) -> Optional[Any]:
        if not self._configured:
            return None
        return await self._send("GET", "/api/v1/query", "query", params={"query": expr})

    async def query_or_none(self, expr: str) -> Optional[Any]:
        try:
            return await self.query(expr)
        except UpstreamError as exc:
            _logger.info(
                "metrics.unavailable",
                "Metrics service not available",
                query=expr,
                kind=exc.kind.value,
                detail=exc.detail,
            )
            return None
