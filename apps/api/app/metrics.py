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

crm_custom_fields_registered_total = Counter(
    "crm_custom_fields_registered_total",
    "Total custom fields registered (columns added to customers)",
)

crm_custom_field_registration_failures_total = Counter(
    "crm_custom_field_registration_failures_total",
    "Total failed custom field registration batches by reason",
    ["reason"],
)

crm_custom_field_values_written_total = Counter(
    "crm_custom_field_values_written_total",
    "Total custom field value writes by policy and outcome",
    ["policy", "outcome"],
)

crm_transactions_total = Counter(
    "crm_transactions_total",
    "Total CRM transactions by outcome",
    ["outcome"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_custom_fields_registered(count: int = 1) -> None:
    if count > 0:
        crm_custom_fields_registered_total.inc(count)


def observe_custom_field_registration_failure(reason: str) -> None:
    crm_custom_field_registration_failures_total.labels(reason=reason).inc()


def observe_custom_field_value_write(policy: str, outcome: str) -> None:
    crm_custom_field_values_written_total.labels(policy=policy, outcome=outcome).inc()


def observe_transaction(outcome: str) -> None:
    crm_transactions_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
