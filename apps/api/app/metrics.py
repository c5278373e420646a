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

crm_field_mutations_total = Counter(
    "crm_field_mutations_total",
    "Total custom field registry mutations",
    ["entity_type", "operation"],
)

crm_csv_rows_total = Counter(
    "crm_csv_rows_total",
    "Total CSV rows processed by outcome",
    ["entity_type", "direction", "outcome"],
)

crm_csv_duration_seconds = Histogram(
    "crm_csv_duration_seconds",
    "CSV import/export duration in seconds",
    ["entity_type", "direction"],
)


_INT_RE = re.compile(r"/\d+\b")
# record ids collapse to {id}; {entity_type} stays, it has two values
_PATH_PARAM_RE = re.compile(r"\{(?!entity_type\})[^{}]+\}")


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


def observe_field_mutation(entity_type: str, operation: str) -> None:
    crm_field_mutations_total.labels(entity_type=entity_type, operation=operation).inc()


def observe_csv_rows(entity_type: str, direction: str, outcome: str, count: int = 1) -> None:
    if count > 0:
        crm_csv_rows_total.labels(entity_type=entity_type, direction=direction, outcome=outcome).inc(count)


def observe_csv_duration(entity_type: str, direction: str, duration: float) -> None:
    crm_csv_duration_seconds.labels(entity_type=entity_type, direction=direction).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
