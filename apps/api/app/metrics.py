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

automation_enrollments_total = Counter(
    "automation_enrollments_total",
    "Total workflow enrollment decisions by result",
    ["result"],
)

automation_steps_total = Counter(
    "automation_steps_total",
    "Total executed workflow steps by step type and outcome",
    ["step_type", "outcome"],
)

automation_step_duration_seconds = Histogram(
    "automation_step_duration_seconds",
    "Workflow step execution duration in seconds",
    ["step_type"],
)

automation_enrollment_transitions_total = Counter(
    "automation_enrollment_transitions_total",
    "Total enrollment status transitions by target status",
    ["status"],
)

automation_runner_batches_total = Counter(
    "automation_runner_batches_total",
    "Total runner batches by trigger source",
    ["source"],
)

automation_runner_enrollments_total = Counter(
    "automation_runner_enrollments_total",
    "Total enrollments handled by the runner by result",
    ["result"],
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
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_enrollments(result: str, count: int = 1) -> None:
    if count > 0:
        automation_enrollments_total.labels(result=result).inc(count)


def observe_step(step_type: str, outcome: str, duration: float) -> None:
    automation_steps_total.labels(step_type=step_type, outcome=outcome).inc()
    automation_step_duration_seconds.labels(step_type=step_type).observe(duration)


def observe_enrollment_transition(status: str) -> None:
    automation_enrollment_transitions_total.labels(status=status).inc()


def observe_runner_batch(source: str, succeeded: int, failed: int, skipped: int) -> None:
    automation_runner_batches_total.labels(source=source).inc()
    for result, count in (("succeeded", succeeded), ("failed", failed), ("skipped", skipped)):
        if count > 0:
            automation_runner_enrollments_total.labels(result=result).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
