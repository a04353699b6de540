from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from autopilot.automation.audit import AuditAction
from autopilot.automation.payloads import WebhookMeta, has_autopilot_prefix
from autopilot.timeutils import parse_timestamp, to_utc, utcnow

if TYPE_CHECKING:
    from autopilot.crm.client import CrmGateway

ECHO_WINDOW = timedelta(minutes=10)
ECHO_NOTES_LIMIT = 20


def loop_protection_action(meta: WebhookMeta, bot_user_id: int | None) -> AuditAction | None:
    """Unconditional skip reasons, checked before any CRM read."""
    if bot_user_id is not None and meta.user_id == bot_user_id:
        return AuditAction.LOOP_PROTECTION_BOT_USER
    if meta.is_bulk_update:
        return AuditAction.SKIP_BULK_UPDATE
    return None


def is_recent_autopilot_touch(
    gateway: CrmGateway,
    *,
    deal_id: int | None = None,
    lead_id: str | None = None,
    now: datetime | None = None,
) -> bool:
    since = to_utc(now or utcnow()) - ECHO_WINDOW
    notes = gateway.notes.recent({"deal_id": deal_id, "lead_id": lead_id}, limit=ECHO_NOTES_LIMIT)
    for note in notes:
        if not has_autopilot_prefix(note.get("content")):
            continue
        added_at = parse_timestamp(note.get("add_time"))
        if added_at is not None and added_at >= since:
            return True
    return False
