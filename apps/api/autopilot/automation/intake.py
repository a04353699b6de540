from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autopilot.automation.dispatcher import PROCESS_WEBHOOK_EVENT
from autopilot.automation.models import WebhookEvent
from autopilot.automation.queue import JobQueue
from autopilot.hashing import stable_hash
from autopilot.metrics import observe_webhook_outcome

logger = logging.getLogger("autopilot.intake")


@dataclass(frozen=True)
class IntakeResult:
    event_hash: str
    deduped: bool
    job_id: uuid.UUID | None = None


class EventIntake:
    """Stores each distinct inbound payload once and enqueues it once."""

    def __init__(self, session: Session, queue: JobQueue | None = None) -> None:
        self.session = session
        self.queue = queue or JobQueue(session)

    def accept(self, payload: Any) -> IntakeResult:
        event_hash = stable_hash(payload)
        try:
            self.session.add(
                WebhookEvent(
                    event_hash=event_hash,
                    payload_json=json.dumps(payload, default=str),
                    status="queued",
                )
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            observe_webhook_outcome("deduped")
            logger.info("webhook_deduped", extra={"event_hash": event_hash})
            return IntakeResult(event_hash=event_hash, deduped=True)

        enqueued = self.queue.enqueue(PROCESS_WEBHOOK_EVENT, {"event_hash": event_hash}, dedup_key=event_hash)
        observe_webhook_outcome("accepted")
        logger.info("webhook_accepted", extra={"event_hash": event_hash, "job_id": str(enqueued.job.id)})
        return IntakeResult(event_hash=event_hash, deduped=False, job_id=enqueued.job.id)
