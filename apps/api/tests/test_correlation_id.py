from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autopilot.automation.models import AuditLog, AutomationJob
from autopilot.automation.queue import AutomationJobRunner
from autopilot.core.auth import AuthUser, get_current_user
from autopilot.core.celery_app import celery_app
from autopilot.core.config import Settings, get_settings
from autopilot.core.database import Base, get_db
from autopilot.main import app
from fake_crm import FakeCrm


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTO_RUN_JOBS", "false")
    monkeypatch.setattr(celery_app, "send_task", lambda *args, **kwargs: None)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_user() -> AuthUser:
        return AuthUser(sub="ops-1", roles=["guest"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/admin/jobs/00000000-0000-4000-8000-000000000000")

    assert response.status_code == 403
    correlation_id = response.headers["x-correlation-id"]
    assert uuid.UUID(correlation_id)
    assert response.json()["correlation_id"] == correlation_id


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "corr-123"})

    assert response.status_code == 200
    assert response.headers["x-correlation-id"] == "corr-123"


def test_overlong_correlation_id_is_truncated(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "c" * 300})

    assert response.headers["x-correlation-id"] == "c" * 128


def test_job_runner_uses_job_correlation_id(client: TestClient, db_session: Session, crm: FakeCrm) -> None:
    response = client.post(
        "/webhooks/crm",
        json={"meta": {"object": "lead", "user_id": 900}, "current": {"id": "lead-1"}},
        headers={"x-autopilot-token": get_settings().webhook_secret, "X-Correlation-Id": "corr-job-1"},
    )
    assert response.status_code == 202
    job = db_session.scalar(select(AutomationJob))
    assert job is not None
    assert job.correlation_id == "corr-job-1"

    settings = Settings(bot_user_id=900)
    runner = AutomationJobRunner(gateway=crm, settings=settings)
    runner.run_job(db_session, job.id)

    audit = db_session.scalar(select(AuditLog))
    assert audit is not None
    assert audit.action == "loop_protection_bot_user"
    assert audit.correlation_id == "corr-job-1"
