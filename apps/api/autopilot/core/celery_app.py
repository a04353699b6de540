from celery import Celery
from celery.schedules import crontab

from autopilot.core.config import get_settings

settings = get_settings()


def crontab_from_expression(expression: str) -> crontab:
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Expected a 5-field cron expression, got {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = parts
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


celery_app = Celery(
    "crm_autopilot",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["autopilot.automation.tasks"],
)
celery_app.conf.update(
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_pool="threads",
    worker_concurrency=settings.worker_concurrency,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "sla-sweep-nightly": {
            "task": "autopilot.automation.enqueue_scheduled_job",
            "schedule": crontab_from_expression(settings.sla_sweep_cron),
            "args": ["sla_sweep"],
        },
        "lead-sweep-nightly": {
            "task": "autopilot.automation.enqueue_scheduled_job",
            "schedule": crontab_from_expression(settings.lead_sweep_cron),
            "args": ["lead_sweep"],
        },
        "redispatch-stalled-jobs": {
            "task": "autopilot.automation.redispatch_stalled_jobs",
            "schedule": crontab(minute="*/5"),
        },
    },
)
