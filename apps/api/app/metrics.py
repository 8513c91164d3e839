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

outreach_generation_attempts_total = Counter(
    "outreach_generation_attempts_total",
    "Outreach generation attempts by channel and outcome",
    ["channel", "outcome"],
)

outreach_generation_duration_seconds = Histogram(
    "outreach_generation_duration_seconds",
    "Outreach generation duration per channel in seconds",
    ["channel"],
)

invites_total = Counter(
    "invites_total",
    "Workspace invite transitions by action",
    ["action"],
)

leads_promoted_total = Counter(
    "leads_promoted_total",
    "Total leads promoted out of the base stage",
)

mail_delivery_failures_total = Counter(
    "mail_delivery_failures_total",
    "Total transactional mail delivery failures by reason",
    ["reason"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_TOKEN_RE = re.compile(r"/[0-9a-f]{64}\b")
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    without_tokens = _TOKEN_RE.sub("/{id}", without_uuids)
    return _INT_RE.sub("/{id}", without_tokens)


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


def observe_generation_attempt(channel: str, outcome: str) -> None:
    outreach_generation_attempts_total.labels(channel=channel, outcome=outcome).inc()


def observe_generation_duration(channel: str, duration: float) -> None:
    outreach_generation_duration_seconds.labels(channel=channel).observe(duration)


def observe_invite(action: str) -> None:
    invites_total.labels(action=action).inc()


def observe_leads_promoted(count: int) -> None:
    if count > 0:
        leads_promoted_total.inc(count)


def observe_mail_failure(reason: str) -> None:
    mail_delivery_failures_total.labels(reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
