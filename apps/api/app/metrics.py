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

crm_opportunity_mutations_total = Counter(
    "crm_opportunity_mutations_total",
    "Total committed opportunity mutations by audit action",
    ["action"],
)

crm_stage_transitions_total = Counter(
    "crm_stage_transitions_total",
    "Total opportunity stage transitions by destination outcome",
    ["outcome"],
)

crm_pipeline_failures_total = Counter(
    "crm_pipeline_failures_total",
    "Total rolled back opportunity mutations by error code",
    ["code"],
)

crm_rate_limited_total = Counter(
    "crm_rate_limited_total",
    "Total CRM mutations rejected by the rate limiter by route group",
    ["route_group"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_opportunity_mutation(action: str) -> None:
    crm_opportunity_mutations_total.labels(action=action).inc()


def observe_stage_transition(outcome: str) -> None:
    crm_stage_transitions_total.labels(outcome=outcome).inc()


def observe_pipeline_failure(code: str) -> None:
    crm_pipeline_failures_total.labels(code=code).inc()


def observe_rate_limited(route_group: str) -> None:
    crm_rate_limited_total.labels(route_group=route_group).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
