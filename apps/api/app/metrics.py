from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
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

principal_activity_refresh_runs_total = Counter(
    "principal_activity_refresh_runs_total",
    "Total principal activity refresh runs by trigger and status",
    ["trigger", "status"],
)

principal_activity_refresh_duration_seconds = Histogram(
    "principal_activity_refresh_duration_seconds",
    "Principal activity refresh run duration in seconds",
    ["trigger"],
)

principal_activity_principal_outcomes_total = Counter(
    "principal_activity_principal_outcomes_total",
    "Per-principal refresh outcomes",
    ["outcome"],
)

principal_activity_notifications_total = Counter(
    "principal_activity_notifications_total",
    "Upstream mutation notifications received",
    ["source_entity", "operation"],
)

principal_activity_query_duration_seconds = Histogram(
    "principal_activity_query_duration_seconds",
    "Principal activity summary query duration in seconds",
)

principal_activity_pending_refresh = Gauge(
    "principal_activity_pending_refresh",
    "Whether refresh work is waiting to be drained",
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
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_refresh_run(trigger: str, status: str, duration: float) -> None:
    principal_activity_refresh_runs_total.labels(trigger=trigger, status=status).inc()
    principal_activity_refresh_duration_seconds.labels(trigger=trigger).observe(duration)


def observe_principal_outcome(outcome: str, count: int = 1) -> None:
    if count > 0:
        principal_activity_principal_outcomes_total.labels(outcome=outcome).inc(count)


def observe_notification(source_entity: str, operation: str) -> None:
    principal_activity_notifications_total.labels(source_entity=source_entity, operation=operation).inc()


def observe_query(duration: float) -> None:
    principal_activity_query_duration_seconds.observe(duration)


def set_pending_refresh(pending: bool) -> None:
    principal_activity_pending_refresh.set(1 if pending else 0)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
