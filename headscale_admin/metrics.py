from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_REQ_COUNT = Counter(
    "headscale_admin_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
_REQ_LATENCY = Histogram(
    "headscale_admin_http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_UPSTREAM_CALLS = Counter(
    "headscale_admin_upstream_calls_total",
    "Calls issued to the control and metrics APIs",
    labelnames=("service", "method", "resource", "result"),
)
_UPSTREAM_LATENCY = Histogram(
    "headscale_admin_upstream_call_duration_seconds",
    "Upstream call latency seconds",
    labelnames=("service", "resource"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_SNAPSHOT_REFRESHES = Counter(
    "headscale_admin_snapshot_refreshes_total",
    "Snapshot refreshes by outcome",
    labelnames=("result",),
)
_PUSH_MESSAGES = Counter(
    "headscale_admin_push_messages_total",
    "Push messages delivered or dropped per subscriber",
    labelnames=("event", "result"),
)
_RUNTIME_LOOPS = Counter(
    "headscale_admin_runtime_loops_total",
    "Background loop ticks",
    labelnames=("loop", "result"),
)


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    _REQ_COUNT.labels(method=method, path=path, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, path=path).observe(duration_seconds)


def record_upstream_call(
    *, service: str, method: str, resource: str, result: str, duration_seconds: float
) -> None:
    _UPSTREAM_CALLS.labels(service=service, method=method, resource=resource, result=result).inc()
    _UPSTREAM_LATENCY.labels(service=service, resource=resource).observe(duration_seconds)


def record_snapshot_refresh(*, result: str) -> None:
    _SNAPSHOT_REFRESHES.labels(result=result).inc()


def record_push_message(*, event: str, delivered: int, dropped: int) -> None:
    if delivered:
        _PUSH_MESSAGES.labels(event=event, result="delivered").inc(delivered)
    if dropped:
        _PUSH_MESSAGES.labels(event=event, result="dropped").inc(dropped)


def record_runtime_loop(*, loop: str, ok: bool) -> None:
    _RUNTIME_LOOPS.labels(loop=loop, result="ok" if ok else "error").inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
