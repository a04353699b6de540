from __future__ import annotations

from autopilot.errors import TerminalJobError

RETRYABLE_STATUS = frozenset({429, 502, 503, 504})


class CrmGatewayError(Exception):
    def __init__(
        self,
        method: str,
        path: str,
        status_code: int | None = None,
        body: str = "",
        message: str | None = None,
    ) -> None:
        super().__init__(message or f"CRM request failed {method} {path} status={status_code} body={body[:1000]}")
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body


class CrmRequestError(CrmGatewayError, TerminalJobError):
    pass


class CrmNotFoundError(CrmRequestError):
    pass


class CrmRetryExhaustedError(CrmGatewayError):
    pass


class NoSupportedEndpointError(CrmRequestError):
    def __init__(self, method: str, paths: list[str]) -> None:
        super().__init__(
            method,
            paths[-1] if paths else "",
            404,
            message=f"No supported endpoint for {method} among {', '.join(paths)}",
        )
        self.paths = paths


class MutationBudgetExceededError(CrmGatewayError, TerminalJobError):
    def __init__(self, method: str, path: str, limit: int) -> None:
        super().__init__(method, path, message=f"Daily mutation limit reached ({limit}). Blocking {method} {path}")
        self.limit = limit


def error_for_status(method: str, path: str, status_code: int, body: str) -> CrmGatewayError:
    if status_code == 404:
        return CrmNotFoundError(method, path, status_code, body)
    if status_code in RETRYABLE_STATUS:
        return CrmRetryExhaustedError(method, path, status_code, body)
    return CrmRequestError(method, path, status_code, body)
