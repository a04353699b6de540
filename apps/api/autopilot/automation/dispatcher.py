from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from autopilot.automation.audit import AuditAction, AuditSource, write_audit
from autopilot.automation.echo_guard import is_recent_autopilot_touch, loop_protection_action
from autopilot.automation.enforcement import (
    LEAD_TRIAGE_ENFORCE,
    SLA_DEAL_ENFORCE,
    STALE_DEAL_NUDGE,
    EnforcementService,
)
from autopilot.automation.merge import MergeSafetyService
from autopilot.automation.models import WebhookEvent
from autopilot.automation.payloads import DealTrigger, LeadTrigger, parse_webhook_meta, parse_webhook_payload, to_int_id
from autopilot.automation.sweeps import LEAD_SWEEP, SLA_SWEEP, SweepScheduler
from autopilot.core.config import Settings, get_settings
from autopilot.errors import InvalidJobParamsError, UnsupportedJobError
from autopilot.metrics import observe_webhook_outcome
from autopilot.timeutils import utcnow

if TYPE_CHECKING:
    from autopilot.crm.client import CrmGateway

logger = logging.getLogger("autopilot.jobs")

PROCESS_WEBHOOK_EVENT = "process_webhook_event"
MERGE_REVIEW = "merge_review"

JOB_NAMES = frozenset(
    {
        PROCESS_WEBHOOK_EVENT,
        SLA_DEAL_ENFORCE,
        LEAD_TRIAGE_ENFORCE,
        STALE_DEAL_NUDGE,
        SLA_SWEEP,
        LEAD_SWEEP,
        MERGE_REVIEW,
    }
)
SCHEDULED_JOB_NAMES = frozenset({SLA_SWEEP, LEAD_SWEEP})


def _source(params: Mapping[str, Any], default: AuditSource) -> AuditSource:
    raw = params.get("source")
    try:
        return AuditSource(raw) if raw else default
    except ValueError:
        return default


def _require_int(job_name: str, params: Mapping[str, Any], *fields: str) -> int:
    for field in fields:
        value = to_int_id(params.get(field))
        if value is not None:
            return value
    raise InvalidJobParamsError(job_name, fields[0])


def _require_str(job_name: str, params: Mapping[str, Any], *fields: str) -> str:
    for field in fields:
        value = params.get(field)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value)
    raise InvalidJobParamsError(job_name, fields[0])


class WebhookEventProcessor:
    """Runs enforcement for one stored inbound event and finalizes its status."""

    def __init__(
        self,
        session: Session,
        gateway: CrmGateway,
        settings: Settings | None = None,
        enforcement: EnforcementService | None = None,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.enforcement = enforcement or EnforcementService(session, gateway, self.settings)

    def process(self, event_hash: str, attempt: int = 1) -> str:
        event = self._load(event_hash)
        if event is None:
            logger.warning("webhook_event_not_found", extra={"event_hash": event_hash})
            return "missing"
        if event.status == "processed":
            return "already_processed"

        event.status = "processing"
        self.session.add(event)
        self.session.commit()

        try:
            outcome = self._process_payload(json.loads(event.payload_json), event_hash, attempt)
        except Exception as exc:
            self.session.rollback()
            self._finalize(event_hash, "failed")
            observe_webhook_outcome("failed")
            logger.error("webhook_event_failed", extra={"event_hash": event_hash, "error": str(exc)})
            raise

        self._finalize(event_hash, "processed")
        observe_webhook_outcome(outcome)
        return outcome

    def _process_payload(self, payload: Any, event_hash: str, attempt: int) -> str:
        trigger = parse_webhook_payload(payload)
        meta = parse_webhook_meta(payload)

        skip_action = loop_protection_action(meta, self.settings.bot_user_id)
        if skip_action is not None:
            if skip_action is AuditAction.LOOP_PROTECTION_BOT_USER:
                before = {"user_id": meta.user_id, "bot_user_id": self.settings.bot_user_id}
            else:
                before = {"is_bulk_update": True}
            write_audit(
                self.session,
                entity_type=trigger.type,
                entity_id=trigger.id,
                action=skip_action,
                source=AuditSource.WEBHOOK,
                before=before,
                after={"skipped": True},
            )
            logger.info(
                "webhook_loop_protection_skip",
                extra={"event_hash": event_hash, "reason": skip_action.value, "entity_type": trigger.type},
            )
            return skip_action.value

        if isinstance(trigger, DealTrigger):
            if is_recent_autopilot_touch(self.gateway, deal_id=trigger.id):
                logger.info(
                    "webhook_echo_skip",
                    extra={"event_hash": event_hash, "entity_type": "deal", "entity_id": str(trigger.id)},
                )
                return "echo_skipped"
            self.enforcement.sla_deal_enforce(trigger.id, AuditSource.WEBHOOK, attempt)
            return "enforced"

        if isinstance(trigger, LeadTrigger):
            if is_recent_autopilot_touch(self.gateway, lead_id=trigger.id):
                logger.info(
                    "webhook_echo_skip",
                    extra={"event_hash": event_hash, "entity_type": "lead", "entity_id": trigger.id},
                )
                return "echo_skipped"
            self.enforcement.lead_triage_enforce(trigger.id, AuditSource.WEBHOOK, attempt)
            return "enforced"

        logger.info("webhook_unknown_object", extra={"event_hash": event_hash})
        return "ignored"

    def _load(self, event_hash: str) -> WebhookEvent | None:
        return self.session.scalar(select(WebhookEvent).where(WebhookEvent.event_hash == event_hash))

    def _finalize(self, event_hash: str, status: str) -> None:
        event = self._load(event_hash)
        if event is None:
            return
        event.status = status
        event.processed_at = utcnow()
        self.session.add(event)
        self.session.commit()


def dispatch_job(
    session: Session,
    gateway: CrmGateway,
    job_name: str,
    params: Mapping[str, Any],
    *,
    attempt: int = 1,
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()

    if job_name == PROCESS_WEBHOOK_EVENT:
        event_hash = _require_str(job_name, params, "event_hash")
        outcome = WebhookEventProcessor(session, gateway, settings).process(event_hash, attempt)
        return {"event_hash": event_hash, "outcome": outcome}

    if job_name in {SLA_DEAL_ENFORCE, STALE_DEAL_NUDGE}:
        deal_id = _require_int(job_name, params, "deal_id", "entity_id")
        enforcement = EnforcementService(session, gateway, settings)
        handler = enforcement.sla_deal_enforce if job_name == SLA_DEAL_ENFORCE else enforcement.stale_deal_nudge
        result = handler(deal_id, _source(params, AuditSource.MANUAL), attempt)
        return {"deal_id": deal_id, "created": result.created, "skipped": result.skipped, "reason": result.reason}

    if job_name == LEAD_TRIAGE_ENFORCE:
        lead_id = _require_str(job_name, params, "lead_id", "entity_id")
        result = EnforcementService(session, gateway, settings).lead_triage_enforce(
            lead_id,
            _source(params, AuditSource.MANUAL),
            attempt,
        )
        return {"lead_id": lead_id, "created": result.created, "skipped": result.skipped, "reason": result.reason}

    if job_name in SCHEDULED_JOB_NAMES:
        scheduler = SweepScheduler(session, gateway, settings)
        source = _source(params, AuditSource.NIGHTLY)
        stats = scheduler.sla_sweep(source, attempt) if job_name == SLA_SWEEP else scheduler.lead_sweep(source, attempt)
        return stats.as_dict()

    if job_name == MERGE_REVIEW:
        review_item_id = _require_int(job_name, params, "review_item_id")
        candidate = MergeSafetyService(session, gateway, settings).propose_from_review(review_item_id)
        if candidate is None:
            return {"review_item_id": review_item_id, "merge_candidate_id": None}
        return {
            "review_item_id": review_item_id,
            "merge_candidate_id": candidate.id,
            "status": candidate.status,
            "reason": candidate.status_reason,
        }

    raise UnsupportedJobError(job_name)
