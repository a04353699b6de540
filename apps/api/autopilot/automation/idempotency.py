from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autopilot.automation.models import IdempotencyKey
from autopilot.hashing import stable_hash
from autopilot.timeutils import utcnow

logger = logging.getLogger("autopilot.jobs")

ALREADY_DONE = "already_done"
IN_PROGRESS = "in_progress"
FINAL_STATUSES = {"done", "failed"}


@dataclass(frozen=True)
class AcquireResult:
    acquired: bool
    reason: str | None = None


class IdempotencyLedger:
    """Compare-and-insert guard keyed by ``(scope, key)``.

    Every transition commits immediately so a concurrent worker racing on
    the same key observes it through the unique constraint.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def acquire(self, scope: str, key: str, request_payload: Any) -> AcquireResult:
        request_hash = stable_hash(request_payload)
        try:
            self.session.add(IdempotencyKey(scope=scope, key=key, request_hash=request_hash, status="started"))
            self.session.commit()
            return AcquireResult(acquired=True)
        except IntegrityError:
            self.session.rollback()

        existing = self._load(scope, key)
        if existing is None:
            return AcquireResult(acquired=False, reason=IN_PROGRESS)
        if existing.status == "done":
            return AcquireResult(acquired=False, reason=ALREADY_DONE)
        if existing.request_hash == request_hash:
            return AcquireResult(acquired=False, reason=IN_PROGRESS)

        # Supersede only the exact row state we observed; a racing superseder loses here.
        result = self.session.execute(
            update(IdempotencyKey)
            .where(
                and_(
                    IdempotencyKey.id == existing.id,
                    IdempotencyKey.request_hash == existing.request_hash,
                    IdempotencyKey.status != "done",
                )
            )
            .values(request_hash=request_hash, status="started", updated_at=utcnow())
        )
        self.session.commit()
        if result.rowcount != 1:
            return AcquireResult(acquired=False, reason=IN_PROGRESS)
        return AcquireResult(acquired=True)

    def mark_status(self, scope: str, key: str, status: str) -> None:
        if status not in FINAL_STATUSES:
            raise ValueError(f"Unsupported idempotency status {status}")
        self.session.execute(
            update(IdempotencyKey)
            .where(and_(IdempotencyKey.scope == scope, IdempotencyKey.key == key))
            .values(status=status, updated_at=utcnow())
        )
        self.session.commit()

    def get(self, scope: str, key: str) -> IdempotencyKey | None:
        return self._load(scope, key)

    @contextmanager
    def hold(self, scope: str, key: str, request_payload: Any) -> Iterator[AcquireResult]:
        """Acquire, yield, then finalize ``done`` or ``failed`` when acquired."""
        result = self.acquire(scope, key, request_payload)
        if not result.acquired:
            yield result
            return

        try:
            yield result
        except BaseException:
            self.session.rollback()
            try:
                self.mark_status(scope, key, "failed")
            except Exception:
                logger.exception("idempotency_mark_failed_error", extra={"reason": f"{scope}:{key}"})
            raise
        self.mark_status(scope, key, "done")

    def _load(self, scope: str, key: str) -> IdempotencyKey | None:
        self.session.expire_all()
        return self.session.scalar(
            select(IdempotencyKey).where(and_(IdempotencyKey.scope == scope, IdempotencyKey.key == key))
        )
