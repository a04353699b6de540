from __future__ import annotations

from typing import Any


class TerminalJobError(Exception):
    """Failure that a redelivery cannot fix; the queue must not retry it."""


class UnsupportedJobError(TerminalJobError):
    def __init__(self, job_name: str) -> None:
        super().__init__(f"Unsupported job {job_name}")
        self.job_name = job_name


class MergeGuardError(TerminalJobError):
    def __init__(self, code: str, status_code: int, details: dict[str, Any] | None = None) -> None:
        super().__init__(code)
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class InvalidJobParamsError(TerminalJobError):
    def __init__(self, job_name: str, field: str) -> None:
        super().__init__(f"Job {job_name} is missing or has an invalid {field}")
        self.job_name = job_name
        self.field = field


class JobNotFoundError(TerminalJobError):
    pass
