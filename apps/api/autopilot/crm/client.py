from __future__ import annotations

import logging
import time
from collections.abc import Callable
from functools import lru_cache
from typing import Any

import httpx

from autopilot.core.config import get_settings
from autopilot.crm.errors import (
    RETRYABLE_STATUS,
    CrmNotFoundError,
    MutationBudgetExceededError,
    NoSupportedEndpointError,
    error_for_status,
)
from autopilot.crm.limiter import DispatchLimiter, MutationBudget
from autopilot.metrics import observe_crm_request, observe_crm_retry, observe_mutation_budget_block
from autopilot.otel import crm_span

logger = logging.getLogger("autopilot.crm.gateway")

MAX_ATTEMPTS = 5
BASE_BACKOFF_SECONDS = 0.25
DEFAULT_PAGE_SIZE = 100

Query = dict[str, Any]
Record = dict[str, Any]


class CrmGateway:
    """Single choke point for every call to the external CRM.

    All calls pass through one :class:`DispatchLimiter` and one
    :class:`MutationBudget`; retry and backoff are local to each call.
    """

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.pipedrive.com",
        *,
        max_concurrent: int = 5,
        min_time_ms: int = 200,
        daily_mutation_limit: int = 2500,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        limiter: DispatchLimiter | None = None,
        budget: MutationBudget | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
        self.limiter = limiter or DispatchLimiter(max_concurrent, min_time_ms, sleep=sleep)
        self.budget = budget or MutationBudget(daily_mutation_limit)
        self._sleep = sleep

        self.deals = DealsApi(self)
        self.leads = LeadsApi(self)
        self.activities = ActivitiesApi(self)
        self.notes = NotesApi(self)
        self.persons = PartyApi(self, "/v1/persons")
        self.orgs = PartyApi(self, "/v1/organizations")
        self.fields = FieldsApi(self)

    def close(self) -> None:
        self._http.close()

    def request(self, method: str, path: str, *, query: Query | None = None, body: Any = None) -> Any:
        envelope = self.raw_envelope(method, path, query=query, body=body)
        if isinstance(envelope, dict) and "data" in envelope:
            return envelope["data"]
        return envelope

    def raw_envelope(self, method: str, path: str, *, query: Query | None = None, body: Any = None) -> Any:
        with self.limiter.slot():
            return self._send_with_retry(method.upper(), path, query or {}, body)

    def _send_with_retry(self, method: str, path: str, query: Query, body: Any) -> Any:
        params = {key: _query_value(value) for key, value in query.items() if value not in (None, "")}
        attempt = 1
        with crm_span(method, path) as span:
            while True:
                try:
                    self.budget.consume(method, path)
                except MutationBudgetExceededError:
                    observe_mutation_budget_block()
                    raise

                response = self._http.request(method, path, params=params, json=body)
                observe_crm_request(method=method, status=response.status_code)
                if response.is_success:
                    span.set_attribute("http.status_code", response.status_code)
                    span.set_attribute("crm.attempts", attempt)
                    return response.json()

                if response.status_code in RETRYABLE_STATUS and attempt < MAX_ATTEMPTS:
                    wait_seconds = BASE_BACKOFF_SECONDS * (2 ** (attempt - 1))
                    observe_crm_retry(status=response.status_code)
                    logger.warning(
                        "crm.retry",
                        extra={
                            "method": method,
                            "path": path,
                            "status_code": response.status_code,
                            "attempt": attempt,
                        },
                    )
                    self._sleep(wait_seconds)
                    attempt += 1
                    continue

                span.set_attribute("http.status_code", response.status_code)
                raise error_for_status(method, path, response.status_code, response.text)

    def paginate_cursor(self, path: str, query: Query | None = None) -> list[Record]:
        items: list[Record] = []
        cursor: str | None = None
        while True:
            envelope = self.raw_envelope("GET", path, query={**(query or {}), "cursor": cursor})
            items.extend(_envelope_items(envelope))
            additional = envelope.get("additional_data") if isinstance(envelope, dict) else None
            cursor = additional.get("next_cursor") if isinstance(additional, dict) else None
            if not cursor:
                return items

    def paginate_offset(
        self,
        path: str,
        query: Query | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[Record]:
        items: list[Record] = []
        start = 0
        while True:
            envelope = self.raw_envelope("GET", path, query={**(query or {}), "start": start, "limit": page_size})
            page = _envelope_items(envelope)
            items.extend(page)
            additional = envelope.get("additional_data") if isinstance(envelope, dict) else None
            pagination = additional.get("pagination") if isinstance(additional, dict) else None
            if not isinstance(pagination, dict) or not pagination.get("more_items_in_collection"):
                return items
            next_start = pagination.get("next_start")
            if not isinstance(next_start, int) or next_start <= start:
                next_start = start + len(page)
            if next_start <= start:
                return items
            start = next_start

    def request_first_supported(
        self,
        method: str,
        paths: list[str],
        *,
        query: Query | None = None,
        body: Any = None,
    ) -> Any:
        for path in paths:
            try:
                return self.request(method, path, query=query, body=body)
            except CrmNotFoundError:
                logger.info("crm.endpoint_fallback", extra={"method": method, "path": path})
                continue
        raise NoSupportedEndpointError(method, paths)


class DealsApi:
    def __init__(self, gateway: CrmGateway) -> None:
        self._gateway = gateway

    def list(self, query: Query | None = None) -> list[Record]:
        return self._gateway.paginate_cursor("/api/v2/deals", query)

    def get(self, deal_id: int) -> Record:
        return self._gateway.request("GET", f"/api/v2/deals/{deal_id}")

    def update(self, deal_id: int, body: Record) -> Record:
        return self._gateway.request("PATCH", f"/api/v2/deals/{deal_id}", body=body)


class LeadsApi:
    def __init__(self, gateway: CrmGateway) -> None:
        self._gateway = gateway

    def list(self, query: Query | None = None) -> list[Record]:
        return self._gateway.paginate_cursor("/api/v2/leads", query)

    def get(self, lead_id: str) -> Record:
        return self._gateway.request("GET", f"/api/v2/leads/{lead_id}")

    def update(self, lead_id: str, body: Record) -> Record:
        return self._gateway.request("PATCH", f"/api/v2/leads/{lead_id}", body=body)


class ActivitiesApi:
    def __init__(self, gateway: CrmGateway) -> None:
        self._gateway = gateway

    def list(self, query: Query | None = None) -> list[Record]:
        return self._gateway.paginate_offset("/v1/activities", query)

    def create(self, body: Record) -> Record:
        return self._gateway.request("POST", "/v1/activities", body=body)


class NotesApi:
    def __init__(self, gateway: CrmGateway) -> None:
        self._gateway = gateway

    def list(self, query: Query | None = None) -> list[Record]:
        return self._gateway.paginate_offset("/v1/notes", query)

    def recent(self, query: Query | None = None, limit: int = 20) -> list[Record]:
        """Newest notes first, a single page of at most ``limit`` rows."""
        rows = self._gateway.request(
            "GET",
            "/v1/notes",
            query={**(query or {}), "limit": limit, "sort": "add_time DESC"},
        )
        return list(rows or [])[:limit]

    def create(self, body: Record) -> Record:
        return self._gateway.request("POST", "/v1/notes", body=body)


class PartyApi:
    """Persons and organizations share the same legacy endpoint shape."""

    def __init__(self, gateway: CrmGateway, base_path: str) -> None:
        self._gateway = gateway
        self._base_path = base_path

    def get(self, entity_id: int) -> Record:
        return self._gateway.request("GET", f"{self._base_path}/{entity_id}")

    def update(self, entity_id: int, body: Record) -> Record:
        return self._gateway.request("PUT", f"{self._base_path}/{entity_id}", body=body)

    def search(self, term: str, fields: str = "name") -> list[Record]:
        rows = self._gateway.request("GET", f"{self._base_path}/search", query={"term": term, "fields": fields})
        return list(rows or [])

    def merge(self, source_id: int, target_id: int) -> Record:
        return self._gateway.request_first_supported(
            "POST",
            [f"{self._base_path}/{source_id}/merge", f"{self._base_path}/{source_id}/merge/{target_id}"],
            body={"merge_with_id": target_id},
        )


class FieldsApi:
    def __init__(self, gateway: CrmGateway) -> None:
        self._gateway = gateway

    def list(self, entity_type: str) -> list[Record]:
        try:
            return self._gateway.paginate_cursor(f"/api/v2/{entity_type}Fields")
        except CrmNotFoundError:
            logger.warning("crm.fields_legacy_fallback", extra={"entity_type": entity_type})
        legacy_path = "/v1/organizationFields" if entity_type == "org" else f"/v1/{entity_type}Fields"
        return self._gateway.paginate_offset(legacy_path)


def _envelope_items(envelope: Any) -> list[Record]:
    if not isinstance(envelope, dict):
        return []
    data = envelope.get("data")
    if isinstance(data, list):
        return data
    return []


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


@lru_cache
def get_crm_gateway() -> CrmGateway:
    settings = get_settings()
    return CrmGateway(
        token=settings.crm_api_token,
        base_url=settings.crm_base_url,
        max_concurrent=settings.crm_max_concurrent,
        min_time_ms=settings.crm_min_time_ms,
        daily_mutation_limit=settings.crm_daily_mutation_limit,
        timeout=settings.crm_timeout_seconds,
    )
