from __future__ import annotations

import json
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autopilot.automation.merge import MergeSafetyService
from autopilot.automation.models import AuditLog, MergeCandidate, ReviewQueueItem
from autopilot.automation.payloads import MergeReviewInput
from autopilot.core.config import Settings
from autopilot.core.database import Base
from autopilot.errors import MergeGuardError
from fake_crm import FakeCrm

NOW = datetime(2026, 2, 18, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _stamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _service(db_session: Session, crm: FakeCrm, *, dry_run: bool = False) -> MergeSafetyService:
    return MergeSafetyService(db_session, crm, Settings(dry_run=dry_run), now=lambda: NOW)


def _seed_people(crm: FakeCrm) -> None:
    crm.person_rows[11] = {"id": 11, "update_time": _stamp(NOW - timedelta(days=3))}
    crm.person_rows[12] = {"id": 12, "update_time": _stamp(NOW - timedelta(days=5))}
    crm.activity_rows.extend(
        [
            {"id": 1, "person_id": 11, "due_date": "2026-01-10", "done": True},
            {"id": 2, "person_id": 12, "due_date": "2026-01-11", "done": True},
            {"id": 3, "person_id": 12, "due_date": "2026-01-12", "done": False},
        ]
    )
    crm.note_rows.append({"id": 1, "person_id": 11, "content": "called", "add_time": _stamp(NOW - timedelta(days=9))})


def _input(confidence: float = 0.95) -> MergeReviewInput:
    return MergeReviewInput(entity_type="person", source_id=11, target_id=12, confidence_score=confidence)


def _actions(db_session: Session) -> list[str]:
    return list(db_session.scalars(select(AuditLog.action).order_by(AuditLog.id)))


def test_propose_rejects_low_confidence(db_session: Session, crm: FakeCrm) -> None:
    candidate = _service(db_session, crm).propose(_input(0.5))

    assert candidate.status == "rejected"
    assert candidate.status_reason == "confidence_threshold_not_met"
    assert candidate.approved_for_execution is False
    assert _actions(db_session) == ["merge_review_rejected_confidence"]
    assert crm.calls == []


def test_propose_requires_human_when_source_has_open_deals(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    crm.deal_rows[7] = {"id": 7, "status": "open", "person_id": 11}

    candidate = _service(db_session, crm).propose(_input())

    assert candidate.status == "pending"
    assert candidate.status_reason == "source_has_open_deals"
    assert candidate.approved_for_execution is False
    assert _actions(db_session) == ["merge_review_requires_human_open_deals"]


def test_propose_requires_human_inside_cooldown(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    crm.person_rows[12]["update_time"] = _stamp(NOW - timedelta(hours=2))

    candidate = _service(db_session, crm).propose(_input())

    assert candidate.status_reason == "cooldown_window_active"
    assert _actions(db_session) == ["merge_review_requires_human_cooldown"]


def test_propose_plans_merge_with_touch_counts(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)

    candidate = _service(db_session, crm).propose(_input(), review_item_id=3)

    assert candidate.status == "pending"
    assert candidate.approved_for_execution is True
    assert candidate.review_item_id == 3
    assert candidate.plan() == {
        "source_touches": {"activities": 1, "notes": 1},
        "target_touches": {"activities": 2, "notes": 0},
    }
    assert _actions(db_session) == ["merge_review_planned"]
    assert crm.merges == []


def test_execute_dry_run_records_plan_without_merging(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    candidate = _service(db_session, crm).propose(_input())

    execution = _service(db_session, crm, dry_run=True).execute(candidate.id)

    assert execution.outcome == "planned"
    assert execution.candidate.status == "approved"
    assert execution.candidate.status_reason == "dry_run"
    assert execution.candidate.plan()["expected_minimum"] == 4
    assert crm.merges == []
    assert _actions(db_session)[-1] == "merge_execute_planned"


def test_execute_merges_once_and_is_idempotent(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    service = _service(db_session, crm)
    candidate = service.propose(_input())

    first = service.execute(candidate.id)
    second = service.execute(candidate.id)

    assert first.outcome == "executed"
    assert first.candidate.status == "executed"
    assert first.candidate.executed_at is not None
    assert first.candidate.plan()["post_target_touches"] == {"activities": 3, "notes": 1}
    assert second.no_op is True
    assert crm.merges == [("person_id", 11, 12)]
    assert _actions(db_session).count("merge_executed") == 1


def test_execute_rejects_when_touches_are_lost(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    crm.lose_touches_on_merge = True
    service = _service(db_session, crm)
    candidate = service.propose(_input())

    with pytest.raises(MergeGuardError) as exc_info:
        service.execute(candidate.id)

    assert exc_info.value.code == "activity_preservation_failed"
    assert exc_info.value.status_code == 409
    stored = db_session.get(MergeCandidate, candidate.id)
    assert stored is not None
    assert stored.status == "rejected"
    assert stored.status_reason == "activity_preservation_failed"
    assert "merge_verification_failed" in _actions(db_session)

    with pytest.raises(MergeGuardError):
        service.execute(candidate.id)
    assert len(crm.merges) == 1


def test_execute_rechecks_cooldown(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    service = _service(db_session, crm)
    candidate = service.propose(_input())
    crm.person_rows[11]["update_time"] = _stamp(NOW - timedelta(minutes=30))

    with pytest.raises(MergeGuardError) as exc_info:
        service.execute(candidate.id)

    assert exc_info.value.code == "cooldown_window_active"
    assert exc_info.value.status_code == 409
    assert crm.merges == []
    stored = db_session.get(MergeCandidate, candidate.id)
    assert stored is not None
    assert stored.status == "pending"
    blocked = db_session.scalar(select(AuditLog).where(AuditLog.action == "merge_execute_blocked"))
    assert blocked is not None
    assert json.loads(blocked.after_json or "{}")["reason"] == "cooldown_window_active"


def test_execute_rechecks_open_deals(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    service = _service(db_session, crm)
    candidate = service.propose(_input())
    crm.deal_rows[8] = {"id": 8, "status": "open", "person_id": 11}

    with pytest.raises(MergeGuardError) as exc_info:
        service.execute(candidate.id)

    assert exc_info.value.code == "source_has_open_deals"
    assert crm.merges == []


def test_execute_unknown_candidate_is_not_found(db_session: Session, crm: FakeCrm) -> None:
    with pytest.raises(MergeGuardError) as exc_info:
        _service(db_session, crm).execute(999)

    assert exc_info.value.code == "not_found"
    assert exc_info.value.status_code == 404


def test_propose_from_review_invalid_payload_keeps_item_open(db_session: Session, crm: FakeCrm) -> None:
    item = ReviewQueueItem(kind="merge", payload_json=json.dumps({"entityType": "deal"}), status="approved")
    db_session.add(item)
    db_session.commit()

    candidate = _service(db_session, crm).propose_from_review(item.id)

    assert candidate is None
    db_session.refresh(item)
    assert item.status == "open"
    assert _actions(db_session) == ["merge_review_invalid_payload"]


def test_propose_from_review_updates_item_status(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    approved = ReviewQueueItem(
        kind="merge",
        payload_json=json.dumps({"type": "person", "sourceId": 11, "targetId": 12, "confidence": 0.99}),
        status="approved",
    )
    rejected = ReviewQueueItem(
        kind="merge",
        payload_json=json.dumps({"type": "person", "sourceId": 11, "targetId": 12, "confidence": 0.2}),
        status="approved",
    )
    db_session.add_all([approved, rejected])
    db_session.commit()
    service = _service(db_session, crm)

    planned = service.propose_from_review(approved.id)
    low = service.propose_from_review(rejected.id)

    assert planned is not None and planned.approved_for_execution is True
    assert low is not None and low.status == "rejected"
    db_session.refresh(approved)
    db_session.refresh(rejected)
    assert approved.status == "approved"
    assert rejected.status == "rejected"


def test_execute_keeps_low_confidence_rejection_after_threshold_drops(db_session: Session, crm: FakeCrm) -> None:
    _seed_people(crm)
    candidate = _service(db_session, crm).propose(_input(0.5))
    relaxed = MergeSafetyService(
        db_session,
        crm,
        Settings(dry_run=False, merge_confidence_threshold=0.4),
        now=lambda: NOW,
    )

    with pytest.raises(MergeGuardError) as exc_info:
        relaxed.execute(candidate.id)

    assert exc_info.value.code == "confidence_threshold_not_met"
    assert exc_info.value.status_code == 400
    assert crm.merges == []
    db_session.refresh(candidate)
    assert candidate.status == "rejected"


def test_propose_rejects_merging_entity_into_itself(db_session: Session, crm: FakeCrm) -> None:
    service = _service(db_session, crm)
    same = MergeReviewInput(entity_type="person", source_id=11, target_id=11, confidence_score=0.99)

    candidate = service.propose(same)

    assert candidate.status == "rejected"
    assert candidate.status_reason == "source_equals_target"
    assert candidate.approved_for_execution is False
    assert _actions(db_session) == ["merge_review_rejected_same_entity"]
    assert crm.calls == []

    with pytest.raises(MergeGuardError) as exc_info:
        service.execute(candidate.id)

    assert exc_info.value.code == "source_equals_target"
    assert exc_info.value.status_code == 400
    assert crm.merges == []
