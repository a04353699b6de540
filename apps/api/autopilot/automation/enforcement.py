from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from autopilot.automation.audit import AuditAction, AuditSource, write_audit
from autopilot.automation.idempotency import IdempotencyLedger
from autopilot.automation.payloads import (
    AUTOPILOT_PREFIX,
    as_person_or_org_id,
    has_autopilot_prefix,
    is_open_deal,
)
from autopilot.core.config import Settings, get_settings
from autopilot.metrics import observe_enforcement
from autopilot.timeutils import (
    add_business_days,
    date_to_yyyy_mm_dd,
    day_key,
    has_activity_within_days,
    has_future_activity,
    parse_timestamp,
    to_utc,
    utcnow,
)

if TYPE_CHECKING:
    from autopilot.crm.client import CrmGateway

logger = logging.getLogger("autopilot.jobs")

SLA_DEAL_ENFORCE = "sla_deal_enforce"
LEAD_TRIAGE_ENFORCE = "lead_triage_enforce"
STALE_DEAL_NUDGE = "stale_deal_nudge"

STALE_NOTE_WINDOW = timedelta(days=7)
STALE_NOTES_LIMIT = 25
STALE_NOTE_MARKER = "Stale deal"
STALE_NOTE_TEXT = "Stale deal - consider advancing or closing"

FOLLOW_UP_SUBJECT = "Follow-up"
QUALIFICATION_SUBJECT = "Lead qualification"
SLA_NOTE_TEXT = "No future activity found for open deal. Added follow-up task."
LEAD_MISSING_SIGNALS_NOTE_TEXT = "Missing key lead info (email/person/org domain). Added qualification activity."
LEAD_SLA_BREACH_NOTE_TEXT = "No qualification activity in SLA window. Added qualification activity."

ORG_DOMAIN_KEYS = ("website", "domain", "web")


@dataclass(frozen=True)
class EnforcementResult:
    created: bool
    skipped: bool
    reason: str | None = None


def _skip(reason: str) -> EnforcementResult:
    return EnforcementResult(created=False, skipped=True, reason=reason)


def idempotency_scope(job_name: str) -> str:
    return f"job:{job_name}"


def extract_person_email(person: Mapping[str, Any] | None) -> str | None:
    if not person:
        return None
    for field in ("email", "emails"):
        rows = person.get(field)
        if not isinstance(rows, list):
            continue
        for row in rows:
            value = row.get("value") if isinstance(row, Mapping) else row
            if isinstance(value, str) and "@" in value:
                return value
    return None


def extract_org_domain(org: Mapping[str, Any] | None) -> str | None:
    if not org:
        return None
    for key in ORG_DOMAIN_KEYS:
        value = org.get(key)
        if isinstance(value, str) and "." in value:
            return value
    return None


def latest_deal_touch(deal: Mapping[str, Any]) -> datetime | None:
    stamps = [
        parse_timestamp(deal.get(field))
        for field in ("stage_change_time", "update_time", "add_time")
    ]
    present = [stamp for stamp in stamps if stamp is not None]
    return max(present) if present else None


class EnforcementService:
    """Per-entity policy jobs, each guarded by one ledger key per entity and UTC day."""

    def __init__(
        self,
        session: Session,
        gateway: CrmGateway,
        settings: Settings | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.ledger = IdempotencyLedger(session)
        self._now = now

    def sla_deal_enforce(self, deal_id: int, source: AuditSource | str, attempt: int = 1) -> EnforcementResult:
        return self._guarded(SLA_DEAL_ENFORCE, deal_id, source, attempt, self._enforce_sla)

    def lead_triage_enforce(self, lead_id: str, source: AuditSource | str, attempt: int = 1) -> EnforcementResult:
        return self._guarded(LEAD_TRIAGE_ENFORCE, lead_id, source, attempt, self._enforce_lead)

    def stale_deal_nudge(self, deal_id: int, source: AuditSource | str, attempt: int = 1) -> EnforcementResult:
        return self._guarded(STALE_DEAL_NUDGE, deal_id, source, attempt, self._enforce_stale)

    def _guarded(
        self,
        job_name: str,
        entity_id: int | str,
        source: AuditSource | str,
        attempt: int,
        handler: Callable[[Any, AuditSource, datetime], EnforcementResult],
    ) -> EnforcementResult:
        now = to_utc(self._now())
        source = AuditSource(source)
        scope = idempotency_scope(job_name)
        key = f"{entity_id}:{day_key(now)}"
        request_payload = {"entity_id": str(entity_id), "source": source.value, "attempt": attempt}

        with self.ledger.hold(scope, key, request_payload) as lease:
            if not lease.acquired:
                logger.info(
                    "enforcement_not_acquired",
                    extra={"job_name": job_name, "entity_id": str(entity_id), "reason": lease.reason},
                )
                observe_enforcement(job_name, "not_acquired")
                return _skip(lease.reason or "not_acquired")

            result = handler(entity_id, source, now)

        outcome = "created" if result.created else "skipped"
        observe_enforcement(job_name, outcome)
        logger.info(
            "enforcement_finished",
            extra={
                "job_name": job_name,
                "entity_id": str(entity_id),
                "source": source.value,
                "status": outcome,
                "reason": result.reason,
            },
        )
        return result

    def _enforce_sla(self, deal_id: int, source: AuditSource, now: datetime) -> EnforcementResult:
        deal = self.gateway.deals.get(deal_id)
        if not is_open_deal(deal, self.settings.active_stage_id_list):
            return _skip("deal_not_open")

        activities = self.gateway.activities.list({"deal_id": deal_id, "done": 0})
        if has_future_activity(activities, now):
            write_audit(
                self.session,
                entity_type="deal",
                entity_id=deal_id,
                action=AuditAction.SLA_ENFORCE,
                source=source,
                before={"future_activity_exists": True},
                after={"skipped": True},
            )
            return _skip("future_activity_exists")

        due_date = date_to_yyyy_mm_dd(add_business_days(now, self.settings.sla_followup_business_days))
        return self._create_activity_and_note(
            source=source,
            entity_type="deal",
            entity_id=str(deal_id),
            subject=FOLLOW_UP_SUBJECT,
            due_date=due_date,
            note_text=SLA_NOTE_TEXT,
            action=AuditAction.SLA_ENFORCE,
            before={"deal": deal, "activities_checked": len(activities)},
            deal_id=deal_id,
        )

    def _enforce_lead(self, lead_id: str, source: AuditSource, now: datetime) -> EnforcementResult:
        lead = self.gateway.leads.get(lead_id)
        person_id = as_person_or_org_id(lead.get("person_id"))
        org_id = as_person_or_org_id(lead.get("organization_id"))

        person = self.gateway.persons.get(person_id) if person_id else None
        org = self.gateway.orgs.get(org_id) if org_id else None

        email = extract_person_email(person)
        org_domain = extract_org_domain(org)
        missing_signals = not email and not org_domain and not person_id

        activities = self.gateway.activities.list({"lead_id": lead_id, "done": 0})
        has_qualification_soon = has_activity_within_days(
            activities,
            self.settings.sla_future_activity_days,
            now,
        )

        if not missing_signals and has_qualification_soon:
            write_audit(
                self.session,
                entity_type="lead",
                entity_id=lead_id,
                action=AuditAction.LEAD_TRIAGE,
                source=source,
                before={"missing_signals": missing_signals, "has_qualification_soon": has_qualification_soon},
                after={"skipped": True},
            )
            return _skip("lead_compliant")

        note_text = LEAD_MISSING_SIGNALS_NOTE_TEXT if missing_signals else LEAD_SLA_BREACH_NOTE_TEXT
        due_date = date_to_yyyy_mm_dd(add_business_days(now, self.settings.sla_followup_business_days))
        return self._create_activity_and_note(
            source=source,
            entity_type="lead",
            entity_id=lead_id,
            subject=QUALIFICATION_SUBJECT,
            due_date=due_date,
            note_text=note_text,
            action=AuditAction.LEAD_TRIAGE,
            before={
                "lead": lead,
                "missing_signals": missing_signals,
                "has_qualification_soon": has_qualification_soon,
                "person_id": person_id,
                "org_id": org_id,
                "email": email,
                "org_domain": org_domain,
            },
            lead_id=lead_id,
        )

    def _enforce_stale(self, deal_id: int, source: AuditSource, now: datetime) -> EnforcementResult:
        deal = self.gateway.deals.get(deal_id)
        if not is_open_deal(deal, self.settings.active_stage_id_list):
            return _skip("deal_not_open")

        touched_at = latest_deal_touch(deal)
        if touched_at is None:
            return _skip("no_touch_timestamp")

        age_days = (now - touched_at).total_seconds() / 86400
        if age_days <= self.settings.stale_days:
            return _skip("not_stale")

        window_start = now - STALE_NOTE_WINDOW
        notes = self.gateway.notes.recent({"deal_id": deal_id}, limit=STALE_NOTES_LIMIT)
        for note in notes:
            content = note.get("content") or ""
            if STALE_NOTE_MARKER not in content or not has_autopilot_prefix(content):
                continue
            added_at = parse_timestamp(note.get("add_time"))
            if added_at is not None and added_at >= window_start:
                write_audit(
                    self.session,
                    entity_type="deal",
                    entity_id=deal_id,
                    action=AuditAction.STALE_DEAL_NUDGE,
                    source=source,
                    before={"deal_id": deal_id, "age_days": age_days},
                    after={"skipped": True, "reason": "recent_nudge_exists"},
                )
                return _skip("recent_nudge_exists")

        content = f"{AUTOPILOT_PREFIX} {STALE_NOTE_TEXT}"
        if self.settings.dry_run:
            write_audit(
                self.session,
                entity_type="deal",
                entity_id=deal_id,
                action=AuditAction.STALE_DEAL_NUDGE,
                source=source,
                before={"deal_id": deal_id, "age_days": age_days},
                after={"dry_run": True, "content": content},
            )
            return EnforcementResult(created=True, skipped=False, reason="dry_run")

        self.gateway.notes.create({"deal_id": deal_id, "content": content})
        write_audit(
            self.session,
            entity_type="deal",
            entity_id=deal_id,
            action=AuditAction.STALE_DEAL_NUDGE,
            source=source,
            before={"deal_id": deal_id, "age_days": age_days},
            after={"dry_run": False, "created": True},
        )
        return EnforcementResult(created=True, skipped=False)

    def _create_activity_and_note(
        self,
        *,
        source: AuditSource,
        entity_type: str,
        entity_id: str,
        subject: str,
        due_date: str,
        note_text: str,
        action: AuditAction,
        before: dict[str, Any],
        deal_id: int | None = None,
        lead_id: str | None = None,
    ) -> EnforcementResult:
        link = {key: value for key, value in {"deal_id": deal_id, "lead_id": lead_id}.items() if value is not None}

        if self.settings.dry_run:
            write_audit(
                self.session,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                source=source,
                before=before,
                after={
                    "dry_run": True,
                    "would_create": {"subject": subject, "due_date": due_date, "note_text": note_text, **link},
                },
            )
            return EnforcementResult(created=True, skipped=False, reason="dry_run")

        activity = self.gateway.activities.create(
            {"subject": f"{AUTOPILOT_PREFIX} {subject}", "due_date": due_date, "type": "task", **link}
        )
        self.gateway.notes.create({"content": f"{AUTOPILOT_PREFIX} {note_text}", **link})

        activity_id = activity.get("id") if isinstance(activity, Mapping) else None
        write_audit(
            self.session,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            source=source,
            before=before,
            after={"dry_run": False, "created_activity_id": activity_id, "due_date": due_date},
        )
        return EnforcementResult(created=activity_id is not None, skipped=False)
