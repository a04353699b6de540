from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from autopilot.automation.dispatcher import JOB_NAMES, dispatch_job
from autopilot.automation.models import AutomationJob
from autopilot.context import bind_job, get_correlation_id, reset_correlation_id, reset_job, set_correlation_id
from autopilot.core.celery_app import celery_app
from autopilot.core.config import Settings, get_settings
from autopilot.crm.client import CrmGateway, get_crm_gateway
from autopilot.errors import JobNotFoundError, TerminalJobError, UnsupportedJobError
from autopilot.metrics import observe_job, observe_job_enqueued
from autopilot.otel import job_span
from autopilot.timeutils import to_utc, utcnow

logger = logging.getLogger("autopilot.jobs")

RUN_JOB_TASK = "autopilot.automation.run_job"
REDISPATCH_AFTER = timedelta(minutes=5)
RUNNING_LEASE = timedelta(hours=1)


@dataclass(frozen=True)
class EnqueueResult:
    job: AutomationJob
    deduped: bool


class AutomationJobRunner:
    """Executes one queued job row and records attempts and the final outcome.

    Transient failures leave the row ``queued`` and re-raise so the broker can
    redeliver; terminal failures and exhausted attempts mark it ``failed``.
    """

    def __init__(self, gateway: CrmGateway | None = None, settings: Settings | None = None) -> None:
        self._gateway = gateway
        self.settings = settings or get_settings()

    @property
    def gateway(self) -> CrmGateway:
        if self._gateway is None:
            self._gateway = get_crm_gateway()
        return self._gateway

    def run_job(self, session: Session, job_id: uuid.UUID) -> AutomationJob:
        job = session.get(AutomationJob, job_id)
        if job is None:
            raise JobNotFoundError(f"automation job {job_id} not found")
        if job.status in {"succeeded", "failed"}:
            return job

        if not self._claim(session, job_id):
            session.refresh(job)
            logger.info(
                "automation_job_already_claimed",
                extra={"job_id": str(job_id), "job_name": job.job_name, "status": job.status},
            )
            observe_job(job.job_name, "already_claimed", 0.0)
            return job
        session.refresh(job)

        job_name = job.job_name
        attempt = job.attempts
        params: dict[str, Any] = json.loads(job.params_json or "{}")
        correlation_id = job.correlation_id or str(job.id)
        token = set_correlation_id(correlation_id)
        job_token = bind_job(str(job_id), job_name)
        started = time.perf_counter()
        try:
            with job_span(job_name, job_id=str(job_id), attempt=attempt, correlation_id=correlation_id):
                result = dispatch_job(session, self.gateway, job_name, params, attempt=attempt, settings=self.settings)
        except TerminalJobError as exc:
            session.rollback()
            self._finish(session, job_id, "failed", error=str(exc))
            observe_job(job_name, "failed", time.perf_counter() - started)
            logger.error(
                "automation_job_failed",
                extra={"job_id": str(job_id), "job_name": job_name, "attempt": attempt, "error": str(exc)},
            )
            raise
        except Exception as exc:
            session.rollback()
            exhausted = attempt >= self.settings.queue_max_attempts
            self._finish(session, job_id, "failed" if exhausted else "queued", error=str(exc))
            observe_job(job_name, "failed" if exhausted else "retry", time.perf_counter() - started)
            logger.warning(
                "automation_job_attempt_failed",
                extra={
                    "job_id": str(job_id),
                    "job_name": job_name,
                    "attempt": attempt,
                    "status": "failed" if exhausted else "queued",
                    "error": str(exc),
                },
            )
            raise
        finally:
            reset_job(job_token)
            reset_correlation_id(token)

        self._finish(session, job_id, "succeeded", result=result)
        observe_job(job_name, "succeeded", time.perf_counter() - started)
        logger.info("automation_job_succeeded", extra={"job_id": str(job_id), "job_name": job_name, "attempt": attempt})
        return job

    def _claim(self, session: Session, job_id: uuid.UUID) -> bool:
        """Move the row to ``running`` unless another worker holds a live claim on it."""
        now = utcnow()
        claimable = or_(
            AutomationJob.status == "queued",
            and_(AutomationJob.status == "running", AutomationJob.started_at < now - RUNNING_LEASE),
        )
        result = session.execute(
            update(AutomationJob)
            .where(and_(AutomationJob.id == job_id, claimable))
            .values(status="running", attempts=AutomationJob.attempts + 1, started_at=now, finished_at=None)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def _finish(
        self,
        session: Session,
        job_id: uuid.UUID,
        status: str,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        job = session.get(AutomationJob, job_id)
        if job is None:
            return
        job.status = status
        if status != "queued":
            job.finished_at = utcnow()
        if result is not None:
            job.result_json = json.dumps(result, default=str)
        job.last_error = error[:2000] if error else None
        session.add(job)
        session.commit()


class JobQueue:
    """Durable job rows in the database; Celery (or an inline runner) is the transport."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        runner: AutomationJobRunner | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.runner = runner or AutomationJobRunner(settings=self.settings)

    def enqueue(
        self,
        job_name: str,
        params: dict[str, Any] | None = None,
        *,
        dedup_key: str | None = None,
    ) -> EnqueueResult:
        if job_name not in JOB_NAMES:
            raise UnsupportedJobError(job_name)

        job = AutomationJob(
            job_name=job_name,
            dedup_key=dedup_key,
            params_json=json.dumps(params or {}, default=str),
            correlation_id=get_correlation_id(),
        )
        try:
            self.session.add(job)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.session.scalar(select(AutomationJob).where(AutomationJob.dedup_key == dedup_key))
            if existing is None:
                raise
            logger.info(
                "automation_job_deduped",
                extra={"job_name": job_name, "job_id": str(existing.id), "reason": dedup_key},
            )
            return EnqueueResult(job=existing, deduped=True)

        observe_job_enqueued(job_name)
        logger.info("automation_job_enqueued", extra={"job_name": job_name, "job_id": str(job.id)})
        self._dispatch(job)
        return EnqueueResult(job=job, deduped=False)

    def get(self, job_id: uuid.UUID) -> AutomationJob | None:
        return self.session.get(AutomationJob, job_id)

    def redispatch_stalled(self, now: datetime | None = None) -> int:
        """Re-send never-started jobs whose first delivery was lost."""
        cutoff = to_utc(now or utcnow()) - REDISPATCH_AFTER
        stalled = list(
            self.session.scalars(
                select(AutomationJob).where(
                    and_(
                        AutomationJob.status == "queued",
                        AutomationJob.attempts == 0,
                        AutomationJob.created_at < cutoff,
                    )
                )
            )
        )
        for job in stalled:
            self._dispatch(job)
        return len(stalled)

    def _dispatch(self, job: AutomationJob) -> None:
        job_id = job.id
        if self.settings.auto_run_jobs:
            try:
                self.runner.run_job(self.session, job_id)
            except Exception as exc:
                logger.exception(
                    "automation_job_inline_failed",
                    extra={"job_id": str(job_id), "job_name": job.job_name, "error": str(exc)},
                )
            return

        try:
            celery_app.send_task(RUN_JOB_TASK, args=[str(job_id)], task_id=str(job_id))
        except Exception as exc:
            logger.exception(
                "automation_job_dispatch_failed",
                extra={"job_id": str(job_id), "job_name": job.job_name, "error": str(exc)},
            )
