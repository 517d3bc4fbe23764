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

automation_events_total = Counter(
    "automation_events_total",
    "Domain events received by the automation engine",
    ["event_type"],
)

automation_workflow_executions_total = Counter(
    "automation_workflow_executions_total",
    "Workflow executions by outcome",
    ["trigger_type", "outcome"],
)

automation_workflow_skipped_total = Counter(
    "automation_workflow_skipped_total",
    "Candidate workflows skipped at the condition gate",
    ["trigger_type"],
)

automation_action_results_total = Counter(
    "automation_action_results_total",
    "Action results by type and outcome",
    ["action_type", "outcome"],
)

automation_action_duration_seconds = Histogram(
    "automation_action_duration_seconds",
    "Action execution duration in seconds",
    ["action_type"],
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
        for attribute in ("path_format", "path"):
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _PATH_PARAM_RE.sub("{id}", template)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_event_received(event_type: str) -> None:
    automation_events_total.labels(event_type=event_type).inc()


def observe_workflow_execution(trigger_type: str, outcome: str) -> None:
    automation_workflow_executions_total.labels(trigger_type=trigger_type, outcome=outcome).inc()


def observe_workflow_skipped(trigger_type: str) -> None:
    automation_workflow_skipped_total.labels(trigger_type=trigger_type).inc()


def observe_action_result(action_type: str, ok: bool, duration: float) -> None:
    outcome = "success" if ok else "failure"
    automation_action_results_total.labels(action_type=action_type, outcome=outcome).inc()
    automation_action_duration_seconds.labels(action_type=action_type).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
