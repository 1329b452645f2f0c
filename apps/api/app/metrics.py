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
    "Enrollment decisions by outcome",
    ["outcome"],
)

automation_steps_total = Counter(
    "automation_steps_total",
    "Executed automation steps by type and status",
    ["step_type", "status"],
)

automation_step_duration_seconds = Histogram(
    "automation_step_duration_seconds",
    "Automation step duration in seconds",
    ["step_type"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Automation actions by type and status",
    ["action_type", "status"],
)

automation_exits_total = Counter(
    "automation_exits_total",
    "Enrollments terminated by exit criteria",
    ["exit_kind"],
)

automation_scheduler_ticks_total = Counter(
    "automation_scheduler_ticks_total",
    "Scheduler ticks by outcome",
    ["outcome"],
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
        for attr in ("path_format", "path"):
            value = getattr(route, attr, None)
            if isinstance(value, str) and value:
                return _PATH_PARAM_RE.sub("{id}", value)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_enrollment(outcome: str) -> None:
    automation_enrollments_total.labels(outcome=outcome).inc()


def observe_step(step_type: str, status: str, duration: float) -> None:
    automation_steps_total.labels(step_type=step_type, status=status).inc()
    automation_step_duration_seconds.labels(step_type=step_type).observe(duration)


def observe_action(action_type: str, status: str) -> None:
    automation_actions_total.labels(action_type=action_type, status=status).inc()


def observe_exit(exit_kind: str) -> None:
    automation_exits_total.labels(exit_kind=exit_kind).inc()


def observe_scheduler_tick(outcome: str) -> None:
    automation_scheduler_ticks_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
