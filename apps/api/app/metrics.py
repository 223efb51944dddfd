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

activity_transitions_total = Counter(
    "activity_transitions_total",
    "Activity lifecycle transitions by source type and outcome",
    ["source_type", "transition", "outcome"],
)

activity_timeline_source_failures_total = Counter(
    "activity_timeline_source_failures_total",
    "Timeline source reads that failed and were skipped",
    ["source_type"],
)

activity_mapping_anomalies_total = Counter(
    "activity_mapping_anomalies_total",
    "Raw records mapped with fallback values",
    ["source_type", "anomaly"],
)


_INT_RE = re.compile(r"/\d+\b")
_ACTIVITY_ID_RE = re.compile(r"/(log|reminder|meeting|demo)-\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_activity_ids = _ACTIVITY_ID_RE.sub("/{id}", path)
    return _INT_RE.sub("/{id}", without_activity_ids)


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


def observe_activity_transition(source_type: str, transition: str, outcome: str) -> None:
    activity_transitions_total.labels(source_type=source_type, transition=transition, outcome=outcome).inc()


def observe_timeline_source_failure(source_type: str) -> None:
    activity_timeline_source_failures_total.labels(source_type=source_type).inc()


def observe_mapping_anomalies(source_type: str, anomalies: list[str]) -> None:
    for anomaly in anomalies:
        activity_mapping_anomalies_total.labels(source_type=source_type, anomaly=anomaly).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
