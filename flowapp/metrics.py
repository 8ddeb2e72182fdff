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

flow_executions_total = Counter(
    "flow_executions_total",
    "Flow execution transitions into a status",
    ["status"],
)

flow_steps_total = Counter(
    "flow_steps_total",
    "Flow node steps by node type and outcome",
    ["node_type", "outcome"],
)

flow_step_loop_duration_seconds = Histogram(
    "flow_step_loop_duration_seconds",
    "Duration of one step-loop invocation (start or resume)",
    ["entrypoint"],
)

flow_trigger_matches_total = Counter(
    "flow_trigger_matches_total",
    "Trigger events by trigger type and matching outcome",
    ["trigger_type", "outcome"],
)

flow_resume_claims_total = Counter(
    "flow_resume_claims_total",
    "Resume scheduler claim attempts by outcome",
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
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_execution_status(status: str) -> None:
    flow_executions_total.labels(status=status).inc()


def observe_step(node_type: str, outcome: str) -> None:
    flow_steps_total.labels(node_type=node_type, outcome=outcome).inc()


def observe_step_loop(entrypoint: str, duration: float) -> None:
    flow_step_loop_duration_seconds.labels(entrypoint=entrypoint).observe(duration)


def observe_trigger_match(trigger_type: str, outcome: str) -> None:
    flow_trigger_matches_total.labels(trigger_type=trigger_type, outcome=outcome).inc()


def observe_resume_claim(outcome: str, count: int = 1) -> None:
    if count > 0:
        flow_resume_claims_total.labels(outcome=outcome).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
