from __future__ import annotations

import json
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autopilot.automation.audit import AuditAction, write_audit
from autopilot.automation.models import AutomationJob, FieldMap, MergeCandidate, ReviewQueueItem
from autopilot.automation.sweeps import SweepScheduler
from autopilot.core.auth import ADMIN_ROLE, AuthUser, get_current_user
from autopilot.core.celery_app import celery_app
from autopilot.core.config import get_settings
from autopilot.core.database import Base, get_db
from autopilot.crm.client import get_crm_gateway
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
    monkeypatch.setenv("DRY_RUN", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def sent_tasks(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    sent: list[dict[str, Any]] = []

    def fake_send_task(name: str, args: list[Any] | None = None, **kwargs: Any) -> None:
        sent.append({"name": name, "args": args, **kwargs})

    monkeypatch.setattr(celery_app, "send_task", fake_send_task)
    return sent


@pytest.fixture()
def roles() -> list[str]:
    return [ADMIN_ROLE]


@pytest.fixture()
def client(db_session: Session, crm: FakeCrm, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_user() -> AuthUser:
        return AuthUser(sub="ops-1", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_user
    app.dependency_overrides[get_crm_gateway] = lambda: crm
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _candidate(db_session: Session, **overrides: Any) -> MergeCandidate:
    values: dict[str, Any] = {
        "entity_type": "person",
        "source_id": 11,
        "target_id": 12,
        "confidence_score": 0.97,
        "status": "pending",
        "status_reason": "planned",
        "approved_for_execution": True,
        **overrides,
    }
    candidate = MergeCandidate(**values)
    db_session.add(candidate)
    db_session.commit()
    return candidate


@pytest.mark.parametrize("roles", [["guest"]])
def test_admin_routes_require_admin_role(client: TestClient) -> None:
    response = client.post("/admin/jobs/run/sla_sweep")

    assert response.status_code == 403
    assert response.json()["code"] == "run_job_failed"
    assert client.get("/admin/review-queue").status_code == 403
    assert client.post("/admin/fieldmap/refresh").status_code == 403


def test_run_unsupported_job(client: TestClient, sent_tasks: list[dict[str, Any]]) -> None:
    response = client.post("/admin/jobs/run/process_webhook_event")

    assert response.status_code == 400
    assert response.json()["code"] == "unsupported_job"
    assert sent_tasks == []


@pytest.mark.parametrize("name", ["sla_sweep", "lead_sweep"])
def test_run_sweep_enqueues_named_job(
    client: TestClient,
    db_session: Session,
    sent_tasks: list[dict[str, Any]],
    name: str,
) -> None:
    response = client.post(f"/admin/jobs/run/{name}")

    assert response.status_code == 202
    body = response.json()
    assert body["enqueued"] == name
    job = db_session.scalar(select(AutomationJob))
    assert job is not None
    assert job.job_name == name
    assert json.loads(job.params_json) == {"source": "manual"}
    assert str(job.id) == body["job_id"]
    assert len(sent_tasks) == 1


def test_run_entity_job_requires_entity_id(client: TestClient, sent_tasks: list[dict[str, Any]]) -> None:
    missing = client.post("/admin/jobs/run/sla_deal_enforce", json={})
    bad = client.post("/admin/jobs/run/stale_deal_nudge", json={"entity_id": "abc"})
    ok = client.post("/admin/jobs/run/lead_triage_enforce", json={"entity_id": "lead-9"})

    assert missing.status_code == 422
    assert bad.status_code == 422
    assert ok.status_code == 202
    assert len(sent_tasks) == 1


def test_get_job_reports_status(client: TestClient, sent_tasks: list[dict[str, Any]]) -> None:
    enqueued = client.post("/admin/jobs/run/sla_deal_enforce", json={"entity_id": 42}).json()

    response = client.get(f"/admin/jobs/{enqueued['job_id']}")

    assert response.status_code == 200
    assert response.json()["status"] == "queued"
    assert response.json()["params"] == {"deal_id": 42, "source": "manual"}
    assert client.get("/admin/jobs/00000000-0000-4000-8000-000000000000").status_code == 404


def test_review_queue_lists_open_items_oldest_first(client: TestClient) -> None:
    first = client.post("/admin/review-queue", json={"payload": {"type": "person", "sourceId": 1, "targetId": 2}})
    second = client.post("/admin/review-queue", json={"kind": "merge", "payload": {"type": "org"}})

    assert first.status_code == 201
    assert second.status_code == 201
    response = client.get("/admin/review-queue")

    assert response.status_code == 200
    items = response.json()["items"]
    assert [item["id"] for item in items] == [first.json()["id"], second.json()["id"]]
    assert items[0]["payload"] == {"type": "person", "sourceId": 1, "targetId": 2}


def test_approve_review_item_enqueues_merge_review_once(
    client: TestClient,
    db_session: Session,
    sent_tasks: list[dict[str, Any]],
) -> None:
    created = client.post("/admin/review-queue", json={"payload": {"type": "person", "sourceId": 1, "targetId": 2}})
    item_id = created.json()["id"]

    first = client.post(f"/admin/review-queue/{item_id}/approve")
    second = client.post(f"/admin/review-queue/{item_id}/approve")

    assert first.status_code == 200
    assert first.json()["item"]["status"] == "approved"
    assert first.json()["deduped"] is False
    assert second.json()["deduped"] is True
    job = db_session.scalar(select(AutomationJob))
    assert job is not None
    assert job.job_name == "merge_review"
    assert job.dedup_key == f"merge_review:{item_id}"
    assert len(sent_tasks) == 1
    assert client.get("/admin/review-queue").json()["items"] == []


def test_approve_missing_review_item(client: TestClient, db_session: Session) -> None:
    response = client.post("/admin/review-queue/404/approve")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
    assert db_session.scalar(select(ReviewQueueItem)) is None


def test_list_merge_candidates_filters_by_status(client: TestClient, db_session: Session) -> None:
    _candidate(db_session)
    _candidate(db_session, status="rejected", status_reason="confidence_threshold_not_met", confidence_score=0.2)

    response = client.get("/admin/merge-candidates", params={"status": "rejected"})

    assert response.status_code == 200
    items = response.json()["items"]
    assert len(items) == 1
    assert items[0]["status_reason"] == "confidence_threshold_not_met"


def test_execute_merge_candidate_dry_run(client: TestClient, db_session: Session, crm: FakeCrm) -> None:
    candidate = _candidate(db_session)

    response = client.post(f"/admin/merge-candidates/{candidate.id}/execute")

    assert response.status_code == 200
    body = response.json()
    assert body["outcome"] == "planned"
    assert body["no_op"] is False
    assert body["candidate"]["status"] == "approved"
    assert body["candidate"]["plan"]["expected_minimum"] == 0
    assert crm.merges == []


def test_execute_already_executed_candidate_is_no_op(client: TestClient, db_session: Session, crm: FakeCrm) -> None:
    candidate = _candidate(db_session, status="executed", status_reason=None)

    response = client.post(f"/admin/merge-candidates/{candidate.id}/execute")

    assert response.status_code == 200
    assert response.json()["no_op"] is True
    assert crm.calls == []


def test_execute_merge_candidate_errors(client: TestClient, db_session: Session, crm: FakeCrm) -> None:
    missing = client.post("/admin/merge-candidates/999/execute")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    candidate = _candidate(db_session)
    crm.deal_rows[5] = {"id": 5, "status": "open", "person_id": 11}
    blocked = client.post(f"/admin/merge-candidates/{candidate.id}/execute")

    assert blocked.status_code == 409
    assert blocked.json()["code"] == "source_has_open_deals"
    assert blocked.json()["details"]["merge_candidate_id"] == candidate.id


def test_fieldmap_refresh_upserts_fields(client: TestClient, db_session: Session, crm: FakeCrm) -> None:
    crm.field_rows["deal"] = [
        {"key": "title", "name": "Title", "field_type": "varchar"},
        {"key": "stage_id", "name": "Stage", "field_type": "stage", "options": [{"id": 1, "label": "New"}]},
        {"name": "no key"},
    ]
    crm.field_rows["org"] = [{"key": "industry", "name": "Industry"}]

    first = client.post("/admin/fieldmap/refresh")
    crm.field_rows["deal"][0]["name"] = "Deal title"
    second = client.post("/admin/fieldmap/refresh")

    assert first.json() == {"ok": True, "upserted": 3}
    assert second.json()["upserted"] == 3
    rows = list(db_session.scalars(select(FieldMap).order_by(FieldMap.entity_type, FieldMap.field_key)))
    assert [(row.entity_type, row.field_key) for row in rows] == [
        ("deal", "stage_id"),
        ("deal", "title"),
        ("org", "industry"),
    ]
    assert rows[1].name == "Deal title"
    assert json.loads(rows[0].options_json or "null") == [{"id": 1, "label": "New"}]
    assert rows[2].field_type == "unknown"


def test_audit_endpoint_filters(client: TestClient, db_session: Session) -> None:
    write_audit(
        db_session,
        entity_type="deal",
        entity_id=42,
        action=AuditAction.SLA_ENFORCE,
        source="nightly",
        after={"skipped": True},
    )
    write_audit(db_session, entity_type="lead", entity_id="l-1", action=AuditAction.LEAD_TRIAGE, source="webhook")

    response = client.get("/admin/audit", params={"entity_type": "deal", "entity_id": "42"})

    assert response.status_code == 200
    items = response.json()["items"]
    assert len(items) == 1
    assert items[0]["action"] == "sla_enforce"
    assert items[0]["after"] == {"skipped": True}


def test_job_runs_endpoint(client: TestClient, db_session: Session, crm: FakeCrm) -> None:
    assert client.get("/admin/job-runs").json()["items"] == []
    crm.lead_rows["lead-1"] = {"id": "lead-1"}
    SweepScheduler(db_session, crm).lead_sweep("manual")

    response = client.get("/admin/job-runs")

    runs = response.json()["items"]
    assert len(runs) == 1
    assert runs[0]["job_name"] == "lead_sweep"
    assert runs[0]["source"] == "manual"
    assert runs[0]["status"] == "success"
    assert runs[0]["stats"]["processed"] == 1


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["dry_run"] is True
