from __future__ import annotations

import re
from collections.abc import Mapping

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

autopilot_jobs_total = Counter(
    "autopilot_jobs_total",
    "Total automation job attempts by status",
    ["job_name", "status"],
)

autopilot_job_duration_seconds = Histogram(
    "autopilot_job_duration_seconds",
    "Automation job attempt duration in seconds",
    ["job_name"],
)

autopilot_jobs_enqueued_total = Counter(
    "autopilot_jobs_enqueued_total",
    "Total automation jobs enqueued",
    ["job_name"],
)

autopilot_webhook_events_total = Counter(
    "autopilot_webhook_events_total",
    "Inbound webhook events by outcome",
    ["outcome"],
)

autopilot_enforcement_total = Counter(
    "autopilot_enforcement_total",
    "Enforcement job outcomes",
    ["job_name", "outcome"],
)

autopilot_sweep_entities_total = Counter(
    "autopilot_sweep_entities_total",
    "Entities handled by sweeps by counter",
    ["job_name", "counter"],
)

autopilot_sweeps_total = Counter(
    "autopilot_sweeps_total",
    "Sweep runs by status",
    ["job_name", "status"],
)

autopilot_merge_outcomes_total = Counter(
    "autopilot_merge_outcomes_total",
    "Merge state machine transitions by outcome",
    ["stage", "outcome"],
)

crm_requests_total = Counter(
    "crm_requests_total",
    "Outbound CRM requests by method and status",
    ["method", "status"],
)

crm_retries_total = Counter(
    "crm_retries_total",
    "Outbound CRM retries by status",
    ["status"],
)

crm_mutation_budget_blocks_total = Counter(
    "crm_mutation_budget_blocks_total",
    "CRM mutations refused by the daily budget",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    if path == "/admin/jobs/run/{name}":
        return path
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


def observe_job(job_name: str, status: str, duration: float) -> None:
    autopilot_jobs_total.labels(job_name=job_name, status=status).inc()
    autopilot_job_duration_seconds.labels(job_name=job_name).observe(duration)


def observe_job_enqueued(job_name: str) -> None:
    autopilot_jobs_enqueued_total.labels(job_name=job_name).inc()


def observe_webhook_outcome(outcome: str) -> None:
    autopilot_webhook_events_total.labels(outcome=outcome).inc()


def observe_enforcement(job_name: str, outcome: str) -> None:
    autopilot_enforcement_total.labels(job_name=job_name, outcome=outcome).inc()


def observe_sweep(job_name: str, status: str, stats: Mapping[str, int]) -> None:
    autopilot_sweeps_total.labels(job_name=job_name, status=status).inc()
    for counter, value in stats.items():
        if value > 0:
            autopilot_sweep_entities_total.labels(job_name=job_name, counter=counter).inc(value)


def observe_merge_outcome(stage: str, outcome: str) -> None:
    autopilot_merge_outcomes_total.labels(stage=stage, outcome=outcome).inc()


def observe_crm_request(method: str, status: int) -> None:
    crm_requests_total.labels(method=method, status=str(status)).inc()


def observe_crm_retry(status: int) -> None:
    crm_retries_total.labels(status=str(status)).inc()


def observe_mutation_budget_block() -> None:
    crm_mutation_budget_blocks_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
