from __future__ import annotations

from typing import Any

from autopilot.crm.errors import CrmNotFoundError

PARTY_KEYS = ("deal_id", "lead_id", "person_id", "org_id")


def _matches(row: dict[str, Any], query: dict[str, Any] | None) -> bool:
    for key in PARTY_KEYS:
        value = (query or {}).get(key)
        if value is not None and row.get(key) != value:
            return False
    if (query or {}).get("done") == 0 and row.get("done"):
        return False
    return True


class _Deals:
    def __init__(self, crm: FakeCrm) -> None:
        self.crm = crm

    def list(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self.crm.calls.append(("deals.list", query))
        if self.crm.list_error is not None:
            raise self.crm.list_error
        rows = list(self.crm.deal_rows.values())
        status = (query or {}).get("status")
        if status:
            rows = [row for row in rows if row.get("status") == status]
        for key in ("person_id", "org_id"):
            value = (query or {}).get(key)
            if value is not None:
                rows = [row for row in rows if row.get(key) == value]
        return rows

    def get(self, deal_id: int) -> dict[str, Any]:
        self.crm.calls.append(("deals.get", deal_id))
        if deal_id in self.crm.deal_errors:
            raise self.crm.deal_errors[deal_id]
        if deal_id not in self.crm.deal_rows:
            raise CrmNotFoundError("GET", f"/api/v2/deals/{deal_id}", 404, "")
        return self.crm.deal_rows[deal_id]


class _Leads:
    def __init__(self, crm: FakeCrm) -> None:
        self.crm = crm

    def list(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self.crm.calls.append(("leads.list", query))
        return list(self.crm.lead_rows.values())

    def get(self, lead_id: str) -> dict[str, Any]:
        self.crm.calls.append(("leads.get", lead_id))
        if lead_id in self.crm.lead_errors:
            raise self.crm.lead_errors[lead_id]
        return self.crm.lead_rows[lead_id]


class _Activities:
    def __init__(self, crm: FakeCrm) -> None:
        self.crm = crm

    def list(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self.crm.calls.append(("activities.list", query))
        return [row for row in self.crm.activity_rows if _matches(row, query)]

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        self.crm.calls.append(("activities.create", body))
        created = {"id": 1000 + len(self.crm.created_activities), "done": False, **body}
        self.crm.created_activities.append(created)
        return created


class _Notes:
    def __init__(self, crm: FakeCrm) -> None:
        self.crm = crm

    def list(self, query: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self.crm.calls.append(("notes.list", query))
        return [row for row in self.crm.note_rows if _matches(row, query)]

    def recent(self, query: dict[str, Any] | None = None, limit: int = 20) -> list[dict[str, Any]]:
        self.crm.calls.append(("notes.recent", query))
        rows = [row for row in self.crm.note_rows if _matches(row, query)]
        rows.sort(key=lambda row: row.get("add_time") or "", reverse=True)
        return rows[:limit]

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        self.crm.calls.append(("notes.create", body))
        created = {"id": 5000 + len(self.crm.created_notes), **body}
        self.crm.created_notes.append(created)
        return created


class _Parties:
    def __init__(self, crm: FakeCrm, key: str, rows: dict[int, dict[str, Any]]) -> None:
        self.crm = crm
        self.key = key
        self.rows = rows

    def get(self, entity_id: int) -> dict[str, Any]:
        self.crm.calls.append((f"{self.key}.get", entity_id))
        return self.rows.get(entity_id, {"id": entity_id})

    def merge(self, source_id: int, target_id: int) -> dict[str, Any]:
        self.crm.calls.append((f"{self.key}.merge", (source_id, target_id)))
        self.crm.merges.append((self.key, source_id, target_id))
        if not self.crm.lose_touches_on_merge:
            for row in [*self.crm.activity_rows, *self.crm.note_rows]:
                if row.get(self.key) == source_id:
                    row[self.key] = target_id
        else:
            self.crm.activity_rows = [row for row in self.crm.activity_rows if row.get(self.key) != source_id]
            self.crm.note_rows = [row for row in self.crm.note_rows if row.get(self.key) != source_id]
        return {"id": target_id}


class _Fields:
    def __init__(self, crm: FakeCrm) -> None:
        self.crm = crm

    def list(self, entity_type: str) -> list[dict[str, Any]]:
        self.crm.calls.append(("fields.list", entity_type))
        return list(self.crm.field_rows.get(entity_type, []))


class FakeCrm:
    """In-memory stand-in exposing the same namespaces as ``CrmGateway``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.deal_rows: dict[int, dict[str, Any]] = {}
        self.lead_rows: dict[str, dict[str, Any]] = {}
        self.person_rows: dict[int, dict[str, Any]] = {}
        self.org_rows: dict[int, dict[str, Any]] = {}
        self.activity_rows: list[dict[str, Any]] = []
        self.note_rows: list[dict[str, Any]] = []
        self.field_rows: dict[str, list[dict[str, Any]]] = {}
        self.created_activities: list[dict[str, Any]] = []
        self.created_notes: list[dict[str, Any]] = []
        self.merges: list[tuple[str, int, int]] = []
        self.deal_errors: dict[int, Exception] = {}
        self.lead_errors: dict[str, Exception] = {}
        self.list_error: Exception | None = None
        self.lose_touches_on_merge = False

        self.deals = _Deals(self)
        self.leads = _Leads(self)
        self.activities = _Activities(self)
        self.notes = _Notes(self)
        self.persons = _Parties(self, "person_id", self.person_rows)
        self.orgs = _Parties(self, "org_id", self.org_rows)
        self.fields = _Fields(self)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]
