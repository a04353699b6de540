from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autopilot.automation.idempotency import ALREADY_DONE, IN_PROGRESS, IdempotencyLedger
from autopilot.core.database import Base


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


def test_first_acquire_wins(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)

    result = ledger.acquire("job:sla_deal_enforce", "42:2026-02-18", {"attempt": 1})

    assert result.acquired is True
    row = ledger.get("job:sla_deal_enforce", "42:2026-02-18")
    assert row is not None
    assert row.status == "started"


def test_same_payload_reports_in_progress(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)
    ledger.acquire("scope", "key", {"attempt": 1})

    result = ledger.acquire("scope", "key", {"attempt": 1})

    assert result.acquired is False
    assert result.reason == IN_PROGRESS


def test_done_key_is_never_reacquired(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)
    ledger.acquire("scope", "key", {"attempt": 1})
    ledger.mark_status("scope", "key", "done")

    result = ledger.acquire("scope", "key", {"attempt": 2})

    assert result.acquired is False
    assert result.reason == ALREADY_DONE


def test_different_payload_supersedes_failed_key(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)
    ledger.acquire("scope", "key", {"attempt": 1})
    ledger.mark_status("scope", "key", "failed")

    result = ledger.acquire("scope", "key", {"attempt": 2})

    assert result.acquired is True
    row = ledger.get("scope", "key")
    assert row is not None
    assert row.status == "started"


def test_scopes_are_independent(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)

    assert ledger.acquire("job:sla_deal_enforce", "42:2026-02-18", {}).acquired is True
    assert ledger.acquire("job:stale_deal_nudge", "42:2026-02-18", {}).acquired is True


def test_hold_marks_done_on_success(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)

    with ledger.hold("scope", "key", {"attempt": 1}) as lease:
        assert lease.acquired is True

    row = ledger.get("scope", "key")
    assert row is not None
    assert row.status == "done"


def test_hold_marks_failed_and_reraises(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)

    with pytest.raises(RuntimeError, match="crm down"):
        with ledger.hold("scope", "key", {"attempt": 1}):
            raise RuntimeError("crm down")

    row = ledger.get("scope", "key")
    assert row is not None
    assert row.status == "failed"


def test_hold_leaves_foreign_lease_untouched(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)
    ledger.acquire("scope", "key", {"attempt": 1})

    with ledger.hold("scope", "key", {"attempt": 1}) as lease:
        assert lease.acquired is False

    row = ledger.get("scope", "key")
    assert row is not None
    assert row.status == "started"


def test_mark_status_rejects_unknown_status(db_session: Session) -> None:
    ledger = IdempotencyLedger(db_session)

    with pytest.raises(ValueError):
        ledger.mark_status("scope", "key", "started")
