from __future__ import annotations

import hmac
import json
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from autopilot.automation.audit import audit_to_dict, list_audit
from autopilot.automation.dispatcher import MERGE_REVIEW
from autopilot.automation.enforcement import LEAD_TRIAGE_ENFORCE, SLA_DEAL_ENFORCE, STALE_DEAL_NUDGE
from autopilot.automation.fieldmap import FieldMapService
from autopilot.automation.intake import EventIntake
from autopilot.automation.merge import MergeSafetyService
from autopilot.automation.models import ReviewQueueItem
from autopilot.automation.queue import JobQueue
from autopilot.automation.schemas import (
    FieldMapRefreshResponse,
    JobRunRead,
    MergeCandidateRead,
    MergeExecuteResponse,
    ReviewQueueApproveResponse,
    ReviewQueueItemCreate,
    ReviewQueueItemRead,
    RunJobRequest,
    RunJobResponse,
    WebhookAccepted,
)
from autopilot.automation.sweeps import LEAD_SWEEP, SLA_SWEEP, SweepScheduler
from autopilot.context import get_correlation_id
from autopilot.core.auth import ADMIN_ROLE, AuthUser, get_current_user, require_role
from autopilot.core.config import get_settings
from autopilot.core.database import get_db
from autopilot.crm.client import CrmGateway, get_crm_gateway
from autopilot.crm.errors import CrmGatewayError
from autopilot.errors import MergeGuardError

webhook_router = APIRouter(tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])

MANUAL_SWEEPS = {SLA_SWEEP, LEAD_SWEEP}
MANUAL_DEAL_JOBS = {SLA_DEAL_ENFORCE, STALE_DEAL_NUDGE}
MANUAL_LEAD_JOBS = {LEAD_TRIAGE_ENFORCE}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _secret_matches(supplied: str | None, expected: str) -> bool:
    if not supplied or not expected:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


@webhook_router.post(
    "/webhooks/crm",
    response_model=WebhookAccepted,
    response_model_exclude_none=True,
    status_code=status.HTTP_202_ACCEPTED,
)
def receive_webhook(
    request: Request,
    payload: Any = Body(default=None),
    x_autopilot_token: str | None = Header(default=None, alias="x-autopilot-token"),
    db: Session = Depends(get_db),
) -> WebhookAccepted | JSONResponse:
    settings = get_settings()
    if not _secret_matches(x_autopilot_token, settings.webhook_secret):
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="unauthorized",
            message="Invalid webhook token",
        )

    result = EventIntake(db).accept(payload)
    if result.deduped:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"ok": True, "deduped": True, "event_hash": result.event_hash},
        )
    return WebhookAccepted(event_hash=result.event_hash)


def _manual_job_params(name: str, body: RunJobRequest | None) -> dict[str, Any]:
    if name in MANUAL_SWEEPS:
        return {"source": "manual"}

    entity_id = body.entity_id if body is not None else None
    if entity_id is None or str(entity_id).strip() == "":
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="entity_id is required")
    if name in MANUAL_DEAL_JOBS:
        if not str(entity_id).isdigit():
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="deal id must be numeric")
        return {"deal_id": int(entity_id), "source": "manual"}
    return {"lead_id": str(entity_id), "source": "manual"}


@admin_router.post("/jobs/run/{name}", response_model=RunJobResponse, status_code=status.HTTP_202_ACCEPTED)
def run_job(
    request: Request,
    name: str,
    body: RunJobRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> RunJobResponse | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        if name not in MANUAL_SWEEPS | MANUAL_DEAL_JOBS | MANUAL_LEAD_JOBS:
            return error_response(
                request,
                status_code=status.HTTP_400_BAD_REQUEST,
                code="unsupported_job",
                message=f"Unsupported job {name}",
                details={"name": name},
            )
        params = _manual_job_params(name, body)
        result = JobQueue(db).enqueue(name, params)
        return RunJobResponse(enqueued=name, job_id=result.job.id, deduped=result.deduped)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="run_job_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/jobs/{job_id}", response_model=dict[str, Any])
def get_job(
    request: Request,
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        job = JobQueue(db).get(job_id)
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")
        return {
            "id": str(job.id),
            "job_name": job.job_name,
            "status": job.status,
            "attempts": job.attempts,
            "params": json.loads(job.params_json or "{}"),
            "result": json.loads(job.result_json) if job.result_json else None,
            "last_error": job.last_error,
            "correlation_id": job.correlation_id,
        }
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="not_found" if exc.status_code == status.HTTP_404_NOT_FOUND else "job_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/review-queue", response_model=dict[str, Any])
def list_review_queue(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        rows = db.scalars(
            select(ReviewQueueItem)
            .where(ReviewQueueItem.status == "open")
            .order_by(ReviewQueueItem.created_at.asc(), ReviewQueueItem.id.asc())
        )
        items = [ReviewQueueItemRead.model_validate(row).model_dump(mode="json") for row in rows]
        return {"ok": True, "items": items}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="review_queue_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.post("/review-queue", response_model=ReviewQueueItemRead, status_code=status.HTTP_201_CREATED)
def create_review_item(
    request: Request,
    body: ReviewQueueItemCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ReviewQueueItemRead | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        item = ReviewQueueItem(kind=body.kind, payload_json=json.dumps(body.payload), status="open")
        db.add(item)
        db.commit()
        db.refresh(item)
        return ReviewQueueItemRead.model_validate(item)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="review_queue_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.post("/review-queue/{item_id}/approve", response_model=ReviewQueueApproveResponse)
def approve_review_item(
    request: Request,
    item_id: int,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ReviewQueueApproveResponse | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        item = db.get(ReviewQueueItem, item_id)
        if item is None:
            return error_response(
                request,
                status_code=status.HTTP_404_NOT_FOUND,
                code="not_found",
                message="Review queue item not found",
                details={"id": item_id},
            )
        item.status = "approved"
        db.add(item)
        db.commit()

        result = JobQueue(db).enqueue(
            MERGE_REVIEW,
            {"review_item_id": item_id},
            dedup_key=f"{MERGE_REVIEW}:{item_id}",
        )
        db.refresh(item)
        return ReviewQueueApproveResponse(
            item=ReviewQueueItemRead.model_validate(item),
            job_id=result.job.id,
            deduped=result.deduped,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="review_queue_approve_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/merge-candidates", response_model=dict[str, Any])
def list_merge_candidates(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    gateway: CrmGateway = Depends(get_crm_gateway),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        rows = MergeSafetyService(db, gateway).list_candidates(status_filter, limit)
        items = [MergeCandidateRead.model_validate(row).model_dump(mode="json") for row in rows]
        return {"ok": True, "items": items}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="merge_candidates_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.post("/merge-candidates/{candidate_id}/execute", response_model=MergeExecuteResponse)
def execute_merge_candidate(
    request: Request,
    candidate_id: int,
    db: Session = Depends(get_db),
    gateway: CrmGateway = Depends(get_crm_gateway),
    user: AuthUser = Depends(get_current_user),
) -> MergeExecuteResponse | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        execution = MergeSafetyService(db, gateway).execute(candidate_id)
        return MergeExecuteResponse(
            outcome=execution.outcome,
            no_op=execution.no_op,
            candidate=MergeCandidateRead.model_validate(execution.candidate),
        )
    except MergeGuardError as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=f"Merge blocked: {exc.code}",
            details=exc.details,
        )
    except CrmGatewayError as exc:
        db.rollback()
        return error_response(
            request,
            status_code=status.HTTP_502_BAD_GATEWAY,
            code="crm_request_failed",
            message=str(exc),
            details={"method": exc.method, "path": exc.path, "status_code": exc.status_code},
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="merge_execute_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.post("/fieldmap/refresh", response_model=FieldMapRefreshResponse)
def refresh_field_map(
    request: Request,
    db: Session = Depends(get_db),
    gateway: CrmGateway = Depends(get_crm_gateway),
    user: AuthUser = Depends(get_current_user),
) -> FieldMapRefreshResponse | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        upserted = FieldMapService(db, gateway).refresh()
        return FieldMapRefreshResponse(upserted=upserted)
    except CrmGatewayError as exc:
        db.rollback()
        return error_response(
            request,
            status_code=status.HTTP_502_BAD_GATEWAY,
            code="crm_request_failed",
            message=str(exc),
            details={"method": exc.method, "path": exc.path, "status_code": exc.status_code},
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="fieldmap_refresh_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/audit", response_model=dict[str, Any])
def read_audit(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        entries = list_audit(db, entity_type=entity_type, entity_id=entity_id, action=action, limit=limit)
        return {"ok": True, "items": [audit_to_dict(entry) for entry in entries]}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="audit_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@admin_router.get("/job-runs", response_model=dict[str, Any])
def read_job_runs(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
    gateway: CrmGateway = Depends(get_crm_gateway),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_role(user, ADMIN_ROLE)
        runs = SweepScheduler(db, gateway).recent_runs(limit)
        return {"ok": True, "items": [JobRunRead.model_validate(run).model_dump(mode="json") for run in runs]}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="job_runs_read_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
