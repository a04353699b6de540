from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass

MAX_CORRELATION_ID_LENGTH = 128


@dataclass(frozen=True)
class JobContext:
    job_id: str
    job_name: str


correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
job_context_var: ContextVar[JobContext | None] = ContextVar("job_context", default=None)


def normalize_correlation_id(raw: str | bytes | None) -> str | None:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    value = (raw or "").strip()[:MAX_CORRELATION_ID_LENGTH]
    return value or None


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def bind_job(job_id: str, job_name: str) -> Token[JobContext | None]:
    """Tag every log record emitted while one automation job runs."""
    return job_context_var.set(JobContext(job_id=job_id, job_name=job_name))


def reset_job(token: Token[JobContext | None]) -> None:
    job_context_var.reset(token)


def get_log_context() -> dict[str, str | None]:
    context: dict[str, str | None] = {"correlation_id": get_correlation_id()}
    job = job_context_var.get()
    if job is not None:
        context["job_id"] = job.job_id
        context["job_name"] = job.job_name
    return context
