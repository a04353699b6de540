from __future__ import annotations

import logging
import uuid
from typing import Any

from autopilot.automation.dispatcher import SCHEDULED_JOB_NAMES
from autopilot.automation.queue import RUN_JOB_TASK, AutomationJobRunner, JobQueue
from autopilot.core.celery_app import celery_app, settings
from autopilot.core.database import session_scope
from autopilot.errors import TerminalJobError, UnsupportedJobError
from autopilot.logging import configure_logging
from autopilot.otel import setup_otel
from autopilot.timeutils import day_key

configure_logging("autopilot-worker", settings)
setup_otel("autopilot-worker", settings)

logger = logging.getLogger("autopilot.jobs")


@celery_app.task(
    name=RUN_JOB_TASK,
    autoretry_for=(Exception,),
    dont_autoretry_for=(TerminalJobError,),
    retry_backoff=True,
    retry_backoff_max=settings.queue_backoff_max_seconds,
    retry_jitter=False,
    max_retries=max(0, settings.queue_max_attempts - 1),
)
def run_automation_job(job_id: str) -> dict[str, Any]:
    with session_scope() as session:
        job = AutomationJobRunner().run_job(session, uuid.UUID(job_id))
        return {"job_id": job_id, "job_name": job.job_name, "status": job.status, "attempts": job.attempts}


@celery_app.task(name="autopilot.automation.enqueue_scheduled_job")
def enqueue_scheduled_job(job_name: str) -> dict[str, Any]:
    if job_name not in SCHEDULED_JOB_NAMES:
        raise UnsupportedJobError(job_name)
    with session_scope() as session:
        result = JobQueue(session).enqueue(
            job_name,
            {"source": "nightly"},
            dedup_key=f"{job_name}:nightly:{day_key()}",
        )
        logger.info(
            "scheduled_job_enqueued",
            extra={"job_name": job_name, "job_id": str(result.job.id), "reason": "deduped" if result.deduped else None},
        )
        return {"job_id": str(result.job.id), "deduped": result.deduped}


@celery_app.task(name="autopilot.automation.redispatch_stalled_jobs")
def redispatch_stalled_jobs() -> int:
    with session_scope() as session:
        return JobQueue(session).redispatch_stalled()
