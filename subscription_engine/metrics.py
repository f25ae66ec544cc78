from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

subscription_operations_total = Counter(
    "subscription_operations_total",
    "Lifecycle operations by operation and outcome",
    ["operation", "outcome"],
)

gateway_calls_total = Counter(
    "gateway_calls_total",
    "Payment gateway calls by operation and outcome",
    ["operation", "outcome"],
)

gateway_call_duration_seconds = Histogram(
    "gateway_call_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
)

gateway_fail_open_total = Counter(
    "gateway_fail_open_total",
    "Gateway failures tolerated because the local transition is authoritative",
    ["operation", "reason"],
)

payment_verification_duplicates_total = Counter(
    "payment_verification_duplicates_total",
    "Payment verifications answered from an already captured transaction",
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Gateway webhook events by type and result",
    ["event_type", "result"],
)

maintenance_rows_total = Counter(
    "maintenance_rows_total",
    "Rows touched by maintenance jobs",
    ["job"],
)

rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Subscription mutations rejected by the per-subject limiter",
    ["operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_subscription_operation(operation: str, outcome: str) -> None:
    subscription_operations_total.labels(operation=operation, outcome=outcome).inc()


def observe_gateway_call(operation: str, outcome: str, duration: float) -> None:
    gateway_calls_total.labels(operation=operation, outcome=outcome).inc()
    gateway_call_duration_seconds.labels(operation=operation).observe(duration)


def observe_gateway_fail_open(operation: str, reason: str) -> None:
    gateway_fail_open_total.labels(operation=operation, reason=reason).inc()


def observe_duplicate_verification() -> None:
    payment_verification_duplicates_total.inc()


def observe_webhook_event(event_type: str, result: str) -> None:
    webhook_events_total.labels(event_type=event_type, result=result).inc()


def observe_maintenance_rows(job: str, count: int) -> None:
    if count > 0:
        maintenance_rows_total.labels(job=job).inc(count)


def observe_rate_limited(operation: str) -> None:
    rate_limited_requests_total.labels(operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
