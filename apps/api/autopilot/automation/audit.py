from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from autopilot.automation.models import AuditLog
from autopilot.context import get_correlation_id


class AuditAction(StrEnum):
    SLA_ENFORCE = "sla_enforce"
    LEAD_TRIAGE = "lead_triage"
    STALE_DEAL_NUDGE = "stale_deal_nudge"
    LOOP_PROTECTION_BOT_USER = "loop_protection_bot_user"
    SKIP_BULK_UPDATE = "skip_bulk_update"
    MERGE_REVIEW_INVALID_PAYLOAD = "merge_review_invalid_payload"
    MERGE_REVIEW_REJECTED_CONFIDENCE = "merge_review_rejected_confidence"
    MERGE_REVIEW_REJECTED_SAME_ENTITY = "merge_review_rejected_same_entity"
    MERGE_REVIEW_REQUIRES_HUMAN_OPEN_DEALS = "merge_review_requires_human_open_deals"
    MERGE_REVIEW_REQUIRES_HUMAN_COOLDOWN = "merge_review_requires_human_cooldown"
    MERGE_REVIEW_PLANNED = "merge_review_planned"
    MERGE_EXECUTE_PLANNED = "merge_execute_planned"
    MERGE_EXECUTED = "merge_executed"
    MERGE_VERIFICATION_FAILED = "merge_verification_failed"
    MERGE_EXECUTE_BLOCKED = "merge_execute_blocked"


class AuditSource(StrEnum):
    WEBHOOK = "webhook"
    NIGHTLY = "nightly"
    MANUAL = "manual"


def write_audit(
    session: Session,
    *,
    entity_type: str,
    entity_id: str | int,
    action: AuditAction,
    source: AuditSource | str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    commit: bool = True,
) -> AuditLog:
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=AuditAction(action).value,
        source=AuditSource(source).value,
        before_json=json.dumps(before, default=str) if before is not None else None,
        after_json=json.dumps(after, default=str) if after is not None else None,
        correlation_id=get_correlation_id(),
    )
    session.add(entry)
    if commit:
        session.commit()
    return entry


def list_audit(
    session: Session,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    conditions = []
    if entity_type:
        conditions.append(AuditLog.entity_type == entity_type)
    if entity_id:
        conditions.append(AuditLog.entity_id == entity_id)
    if action:
        conditions.append(AuditLog.action == action)

    stmt = select(AuditLog)
    if conditions:
        stmt = stmt.where(and_(*conditions))
    stmt = stmt.order_by(AuditLog.id.desc()).limit(limit)
    return list(session.scalars(stmt))


def audit_to_dict(entry: AuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "action": entry.action,
        "source": entry.source,
        "before": json.loads(entry.before_json) if entry.before_json else None,
        "after": json.loads(entry.after_json) if entry.after_json else None,
        "correlation_id": entry.correlation_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
