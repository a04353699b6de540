from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from autopilot.automation.audit import AuditAction, AuditSource, write_audit
from autopilot.automation.models import MergeCandidate, ReviewQueueItem
from autopilot.automation.payloads import MergeEntityType, MergeReviewInput, parse_merge_review_payload
from autopilot.core.config import Settings, get_settings
from autopilot.errors import MergeGuardError
from autopilot.metrics import observe_merge_outcome
from autopilot.timeutils import parse_timestamp, to_utc, utcnow

if TYPE_CHECKING:
    from autopilot.crm.client import CrmGateway

logger = logging.getLogger("autopilot.merge")

MERGE_COOLDOWN = timedelta(hours=24)

CONFIDENCE_THRESHOLD_NOT_MET = "confidence_threshold_not_met"
SOURCE_HAS_OPEN_DEALS = "source_has_open_deals"
COOLDOWN_WINDOW_ACTIVE = "cooldown_window_active"
ACTIVITY_PRESERVATION_FAILED = "activity_preservation_failed"
SOURCE_EQUALS_TARGET = "source_equals_target"
NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TouchCounts:
    activities: int
    notes: int

    @property
    def total(self) -> int:
        return self.activities + self.notes

    def as_dict(self) -> dict[str, int]:
        return {"activities": self.activities, "notes": self.notes}


@dataclass(frozen=True)
class MergeExecution:
    candidate: MergeCandidate
    outcome: str

    @property
    def no_op(self) -> bool:
        return self.outcome == "already_executed"


class MergeSafetyService:
    """Gated duplicate merge: propose records a candidate, execute re-checks and commits.

    ``MergeCandidate.status`` is the authoritative progress marker. A CRM merge
    cannot be undone, so a failed post-merge verification only rejects the
    candidate and alerts.
    """

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
        self._now = now

    def propose(
        self,
        merge_input: MergeReviewInput,
        *,
        review_item_id: int | None = None,
        source: AuditSource = AuditSource.MANUAL,
    ) -> MergeCandidate:
        now = to_utc(self._now())
        before = {"review_item_id": review_item_id, "merge_input": merge_input.as_dict()}
        threshold = self.settings.merge_confidence_threshold

        if merge_input.source_id == merge_input.target_id:
            candidate = self._create_candidate(
                merge_input,
                status="rejected",
                reason=SOURCE_EQUALS_TARGET,
                review_item_id=review_item_id,
                now=now,
            )
            self._audit(
                merge_input,
                AuditAction.MERGE_REVIEW_REJECTED_SAME_ENTITY,
                source,
                before,
                {"skipped": True, "merge_candidate_id": candidate.id},
            )
            observe_merge_outcome("propose", SOURCE_EQUALS_TARGET)
            return candidate

        if merge_input.confidence_score < threshold:
            candidate = self._create_candidate(
                merge_input,
                status="rejected",
                reason=CONFIDENCE_THRESHOLD_NOT_MET,
                review_item_id=review_item_id,
                now=now,
            )
            self._audit(
                merge_input,
                AuditAction.MERGE_REVIEW_REJECTED_CONFIDENCE,
                source,
                before,
                {"skipped": True, "threshold": threshold, "merge_candidate_id": candidate.id},
            )
            observe_merge_outcome("propose", CONFIDENCE_THRESHOLD_NOT_MET)
            return candidate

        open_deals = self._open_deals(merge_input.entity_type, merge_input.source_id)
        if open_deals:
            candidate = self._create_candidate(
                merge_input,
                status="pending",
                reason=SOURCE_HAS_OPEN_DEALS,
                review_item_id=review_item_id,
                now=now,
            )
            self._audit(
                merge_input,
                AuditAction.MERGE_REVIEW_REQUIRES_HUMAN_OPEN_DEALS,
                source,
                before,
                {"skipped": True, "open_deal_count": len(open_deals), "merge_candidate_id": candidate.id},
            )
            observe_merge_outcome("propose", SOURCE_HAS_OPEN_DEALS)
            return candidate

        if self._cooldown_active(merge_input, now):
            candidate = self._create_candidate(
                merge_input,
                status="pending",
                reason=COOLDOWN_WINDOW_ACTIVE,
                review_item_id=review_item_id,
                now=now,
            )
            self._audit(
                merge_input,
                AuditAction.MERGE_REVIEW_REQUIRES_HUMAN_COOLDOWN,
                source,
                before,
                {
                    "skipped": True,
                    "cooldown_hours": MERGE_COOLDOWN.total_seconds() / 3600,
                    "merge_candidate_id": candidate.id,
                },
            )
            observe_merge_outcome("propose", COOLDOWN_WINDOW_ACTIVE)
            return candidate

        source_touches = self.count_touches(merge_input.entity_type, merge_input.source_id)
        target_touches = self.count_touches(merge_input.entity_type, merge_input.target_id)
        plan = {"source_touches": source_touches.as_dict(), "target_touches": target_touches.as_dict()}
        candidate = self._create_candidate(
            merge_input,
            status="pending",
            reason="planned",
            review_item_id=review_item_id,
            now=now,
            approved_for_execution=True,
            plan=plan,
        )
        self._audit(
            merge_input,
            AuditAction.MERGE_REVIEW_PLANNED,
            source,
            before,
            {"merge_candidate_id": candidate.id, "dry_run": True, **plan},
        )
        observe_merge_outcome("propose", "planned")
        return candidate

    def propose_from_review(self, review_item_id: int) -> MergeCandidate | None:
        item = self.session.get(ReviewQueueItem, review_item_id)
        if item is None:
            logger.warning("review_item_not_found", extra={"entity_id": str(review_item_id)})
            return None

        payload = json.loads(item.payload_json or "{}")
        merge_input = parse_merge_review_payload(payload)
        if merge_input is None:
            write_audit(
                self.session,
                entity_type="review_queue",
                entity_id=review_item_id,
                action=AuditAction.MERGE_REVIEW_INVALID_PAYLOAD,
                source=AuditSource.MANUAL,
                before=payload if isinstance(payload, dict) else {"payload": payload},
                after={"skipped": True},
                commit=False,
            )
            item.status = "open"
            self.session.add(item)
            self.session.commit()
            observe_merge_outcome("propose", "invalid_payload")
            return None

        candidate = self.propose(merge_input, review_item_id=review_item_id)
        if candidate.status == "rejected":
            item.status = "rejected"
        elif candidate.approved_for_execution:
            item.status = "approved"
        else:
            item.status = "open"
        self.session.add(item)
        self.session.commit()
        return candidate

    def execute(self, candidate_id: int) -> MergeExecution:
        candidate = self.session.get(MergeCandidate, candidate_id)
        if candidate is None:
            raise MergeGuardError(NOT_FOUND, 404, {"merge_candidate_id": candidate_id})

        if candidate.status == "executed":
            observe_merge_outcome("execute", "already_executed")
            return MergeExecution(candidate=candidate, outcome="already_executed")

        if candidate.status == "rejected":
            reason = candidate.status_reason or "rejected"
            observe_merge_outcome("execute", f"rejected_{reason}")
            if reason == ACTIVITY_PRESERVATION_FAILED:
                raise MergeGuardError(reason, 409, candidate.plan())
            status_code = 400 if reason in {CONFIDENCE_THRESHOLD_NOT_MET, SOURCE_EQUALS_TARGET} else 409
            raise MergeGuardError(reason, status_code, {"merge_candidate_id": candidate.id})

        now = to_utc(self._now())
        merge_input = MergeReviewInput(
            entity_type=_entity_type(candidate.entity_type),
            source_id=candidate.source_id,
            target_id=candidate.target_id,
            confidence_score=candidate.confidence_score,
        )

        if merge_input.source_id == merge_input.target_id:
            self._block(candidate, merge_input, SOURCE_EQUALS_TARGET, 400, {})
        threshold = self.settings.merge_confidence_threshold
        if merge_input.confidence_score < threshold:
            self._block(candidate, merge_input, CONFIDENCE_THRESHOLD_NOT_MET, 400, {"threshold": threshold})
        open_deals = self._open_deals(merge_input.entity_type, merge_input.source_id)
        if open_deals:
            self._block(candidate, merge_input, SOURCE_HAS_OPEN_DEALS, 409, {"open_deal_count": len(open_deals)})
        if self._cooldown_active(merge_input, now):
            self._block(
                candidate,
                merge_input,
                COOLDOWN_WINDOW_ACTIVE,
                409,
                {"cooldown_hours": MERGE_COOLDOWN.total_seconds() / 3600},
            )

        source_touches = self.count_touches(merge_input.entity_type, merge_input.source_id)
        target_touches = self.count_touches(merge_input.entity_type, merge_input.target_id)
        expected_minimum = source_touches.total + target_touches.total
        plan: dict[str, Any] = {
            "source_touches": source_touches.as_dict(),
            "target_touches": target_touches.as_dict(),
            "expected_minimum": expected_minimum,
        }

        if self.settings.dry_run:
            candidate.status = "approved"
            candidate.status_reason = "dry_run"
            candidate.reviewed_at = now
            candidate.plan_json = json.dumps(plan)
            self.session.add(candidate)
            self._audit(
                merge_input,
                AuditAction.MERGE_EXECUTE_PLANNED,
                AuditSource.MANUAL,
                {"merge_candidate_id": candidate.id},
                {"dry_run": True, **plan},
            )
            observe_merge_outcome("execute", "planned")
            return MergeExecution(candidate=candidate, outcome="planned")

        parties = self.gateway.persons if merge_input.entity_type == "person" else self.gateway.orgs
        merge_result = parties.merge(merge_input.source_id, merge_input.target_id)
        post_target_touches = self.count_touches(merge_input.entity_type, merge_input.target_id)
        plan["post_target_touches"] = post_target_touches.as_dict()
        plan["merge_result_id"] = merge_result.get("id") if isinstance(merge_result, Mapping) else None
        candidate.plan_json = json.dumps(plan)

        if post_target_touches.total < expected_minimum:
            candidate.status = "rejected"
            candidate.status_reason = ACTIVITY_PRESERVATION_FAILED
            candidate.reviewed_at = now
            self.session.add(candidate)
            self._audit(
                merge_input,
                AuditAction.MERGE_VERIFICATION_FAILED,
                AuditSource.MANUAL,
                {"merge_candidate_id": candidate.id},
                plan,
            )
            observe_merge_outcome("execute", ACTIVITY_PRESERVATION_FAILED)
            logger.error(
                "merge_verification_failed",
                extra={
                    "entity_type": merge_input.entity_type,
                    "entity_id": str(merge_input.target_id),
                    "reason": ACTIVITY_PRESERVATION_FAILED,
                    "stats": plan,
                },
            )
            raise MergeGuardError(ACTIVITY_PRESERVATION_FAILED, 409, plan)

        candidate.status = "executed"
        candidate.status_reason = None
        candidate.executed_at = now
        candidate.reviewed_at = candidate.reviewed_at or now
        self.session.add(candidate)
        self._audit(
            merge_input,
            AuditAction.MERGE_EXECUTED,
            AuditSource.MANUAL,
            {"merge_candidate_id": candidate.id},
            plan,
        )
        observe_merge_outcome("execute", "executed")
        logger.info(
            "merge_executed",
            extra={"entity_type": merge_input.entity_type, "entity_id": str(merge_input.source_id), "stats": plan},
        )
        return MergeExecution(candidate=candidate, outcome="executed")

    def list_candidates(self, status: str | None = None, limit: int = 100) -> list[MergeCandidate]:
        stmt = select(MergeCandidate)
        if status:
            stmt = stmt.where(MergeCandidate.status == status)
        stmt = stmt.order_by(MergeCandidate.id.desc()).limit(limit)
        return list(self.session.scalars(stmt))

    def count_touches(self, entity_type: MergeEntityType, entity_id: int) -> TouchCounts:
        query = _party_query(entity_type, entity_id)
        activities = self.gateway.activities.list(query)
        notes = self.gateway.notes.list(query)
        return TouchCounts(activities=len(activities), notes=len(notes))

    def _open_deals(self, entity_type: MergeEntityType, entity_id: int) -> list[dict[str, Any]]:
        return self.gateway.deals.list({"status": "open", **_party_query(entity_type, entity_id)})

    def _cooldown_active(self, merge_input: MergeReviewInput, now: datetime) -> bool:
        parties = self.gateway.persons if merge_input.entity_type == "person" else self.gateway.orgs
        for entity_id in (merge_input.source_id, merge_input.target_id):
            if _within_cooldown(parties.get(entity_id), now):
                return True
        return False

    def _block(
        self,
        candidate: MergeCandidate,
        merge_input: MergeReviewInput,
        code: str,
        status_code: int,
        details: dict[str, Any],
    ) -> None:
        self._audit(
            merge_input,
            AuditAction.MERGE_EXECUTE_BLOCKED,
            AuditSource.MANUAL,
            {"merge_candidate_id": candidate.id},
            {"reason": code, **details},
        )
        observe_merge_outcome("execute", code)
        logger.warning(
            "merge_execute_blocked",
            extra={"entity_type": merge_input.entity_type, "entity_id": str(merge_input.source_id), "reason": code},
        )
        raise MergeGuardError(code, status_code, {"merge_candidate_id": candidate.id, **details})

    def _create_candidate(
        self,
        merge_input: MergeReviewInput,
        *,
        status: str,
        reason: str,
        review_item_id: int | None,
        now: datetime,
        approved_for_execution: bool = False,
        plan: dict[str, Any] | None = None,
    ) -> MergeCandidate:
        candidate = MergeCandidate(
            entity_type=merge_input.entity_type,
            source_id=merge_input.source_id,
            target_id=merge_input.target_id,
            confidence_score=merge_input.confidence_score,
            status=status,
            status_reason=reason,
            approved_for_execution=approved_for_execution,
            plan_json=json.dumps(plan) if plan is not None else None,
            review_item_id=review_item_id,
            reviewed_at=now,
        )
        self.session.add(candidate)
        self.session.commit()
        return candidate

    def _audit(
        self,
        merge_input: MergeReviewInput,
        action: AuditAction,
        source: AuditSource,
        before: dict[str, Any],
        after: dict[str, Any],
    ) -> None:
        write_audit(
            self.session,
            entity_type=merge_input.entity_type,
            entity_id=merge_input.source_id,
            action=action,
            source=source,
            before=before,
            after=after,
        )


def _party_query(entity_type: MergeEntityType, entity_id: int) -> dict[str, int]:
    return {"person_id": entity_id} if entity_type == "person" else {"org_id": entity_id}


def _entity_type(value: str) -> MergeEntityType:
    return "person" if value == "person" else "org"


def _within_cooldown(record: Mapping[str, Any] | None, now: datetime) -> bool:
    if not record:
        return False
    updated_at = parse_timestamp(record.get("update_time")) or parse_timestamp(record.get("add_time"))
    if updated_at is None:
        return False
    return now - updated_at < MERGE_COOLDOWN
