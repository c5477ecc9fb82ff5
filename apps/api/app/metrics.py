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

quotation_status_transitions_total = Counter(
    "quotation_status_transitions_total",
    "Committed quotation status transitions",
    ["from_status", "to_status"],
)

quotation_transaction_duration_seconds = Histogram(
    "quotation_transaction_duration_seconds",
    "Duration of quotation status update transactions in seconds",
    ["outcome"],
)

client_provisioning_outcomes_total = Counter(
    "client_provisioning_outcomes_total",
    "Client account provisioning outcomes on quotation acceptance",
    ["outcome"],
)

notification_failures_total = Counter(
    "notification_failures_total",
    "Quotation notification emails that could not be delivered",
    ["kind"],
)

event_handler_failures_total = Counter(
    "event_handler_failures_total",
    "In-process event subscribers that raised",
    ["event_type"],
)

post_commit_failures_total = Counter(
    "quotation_post_commit_failures_total",
    "Errors absorbed after a quotation change had already committed",
    ["step"],
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


def observe_quotation_transition(from_status: str, to_status: str) -> None:
    quotation_status_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def observe_quotation_transaction(outcome: str, duration: float) -> None:
    quotation_transaction_duration_seconds.labels(outcome=outcome).observe(duration)


def observe_client_provisioning(outcome: str) -> None:
    client_provisioning_outcomes_total.labels(outcome=outcome).inc()


def observe_notification_failure(kind: str) -> None:
    notification_failures_total.labels(kind=kind).inc()


def observe_event_handler_failure(event_type: str) -> None:
    event_handler_failures_total.labels(event_type=event_type).inc()


def observe_post_commit_failure(step: str) -> None:
    post_commit_failures_total.labels(step=step).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
