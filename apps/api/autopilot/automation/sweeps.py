from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from autopilot.automation.audit import AuditSource
from autopilot.automation.enforcement import EnforcementResult, EnforcementService
from autopilot.automation.models import DealSnapshot, JobRun
from autopilot.automation.payloads import is_open_deal
from autopilot.core.config import Settings, get_settings
from autopilot.metrics import observe_sweep
from autopilot.otel import sweep_span
from autopilot.timeutils import utcnow

if TYPE_CHECKING:
    from autopilot.crm.client import CrmGateway

logger = logging.getLogger("autopilot.jobs")

SLA_SWEEP = "sla_sweep"
LEAD_SWEEP = "lead_sweep"


@dataclass
class SweepStats:
    processed: int = 0
    created: int = 0
    stale_nudges: int = 0
    skipped: int = 0
    errors: int = 0

    def count(self, result: EnforcementResult) -> None:
        if result.created:
            self.created += 1
        if result.skipped:
            self.skipped += 1

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class SweepScheduler:
    def __init__(
        self,
        session: Session,
        gateway: CrmGateway,
        settings: Settings | None = None,
        enforcement: EnforcementService | None = None,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.enforcement = enforcement or EnforcementService(session, gateway, self.settings)

    def sla_sweep(self, source: AuditSource | str = AuditSource.NIGHTLY, attempt: int = 1) -> SweepStats:
        stats = SweepStats()
        with self._job_run(SLA_SWEEP, source, stats):
            active_stage_ids = self.settings.active_stage_id_list
            deals = self.gateway.deals.list({"status": "open", "pipeline_id": self.settings.pipeline_id})
            for deal in deals:
                if not is_open_deal(deal, active_stage_ids):
                    continue
                stats.processed += 1
                deal_id = deal.get("id")
                try:
                    if self.settings.snapshot_deals:
                        self.snapshot_deal(deal)
                    stats.count(self.enforcement.sla_deal_enforce(int(deal_id), source, attempt))
                    stale = self.enforcement.stale_deal_nudge(int(deal_id), source, attempt)
                    if stale.created:
                        stats.stale_nudges += 1
                except Exception as exc:
                    self._record_entity_error(stats, SLA_SWEEP, "deal", deal_id, exc)
        return stats

    def lead_sweep(self, source: AuditSource | str = AuditSource.NIGHTLY, attempt: int = 1) -> SweepStats:
        stats = SweepStats()
        with self._job_run(LEAD_SWEEP, source, stats):
            for lead in self.gateway.leads.list():
                stats.processed += 1
                lead_id = lead.get("id")
                try:
                    stats.count(self.enforcement.lead_triage_enforce(str(lead_id), source, attempt))
                except Exception as exc:
                    self._record_entity_error(stats, LEAD_SWEEP, "lead", lead_id, exc)
        return stats

    def snapshot_deal(self, deal: Mapping[str, Any]) -> DealSnapshot | None:
        stage_id = deal.get("stage_id")
        if isinstance(stage_id, bool) or not isinstance(stage_id, int):
            return None

        pipeline_id = deal.get("pipeline_id")
        snapshot = DealSnapshot(
            deal_id=int(deal["id"]),
            stage_id=stage_id,
            pipeline_id=pipeline_id if isinstance(pipeline_id, int) else None,
            status=deal.get("status") if isinstance(deal.get("status"), str) else None,
            value=_decimal_or_none(deal.get("value")),
            currency=deal.get("currency") if isinstance(deal.get("currency"), str) else None,
        )
        self.session.add(snapshot)
        self.session.commit()
        return snapshot

    def recent_runs(self, limit: int = 20) -> list[JobRun]:
        stmt = select(JobRun).order_by(JobRun.started_at.desc(), JobRun.id.desc()).limit(limit)
        return list(self.session.scalars(stmt))

    @contextmanager
    def _job_run(self, job_name: str, source: AuditSource | str, stats: SweepStats) -> Iterator[JobRun]:
        run = JobRun(job_name=job_name, source=AuditSource(source).value, status="running")
        self.session.add(run)
        self.session.commit()
        run_id = run.id
        logger.info("sweep_started", extra={"job_name": job_name, "source": run.source, "job_id": str(run_id)})

        with sweep_span(job_name, run_id=run_id, source=run.source) as span:
            try:
                yield run
            except Exception as exc:
                self.session.rollback()
                self._finish_run(run_id, "failed", stats, error=str(exc)[:500])
                observe_sweep(job_name, "failed", stats.as_dict())
                logger.exception(
                    "sweep_failed",
                    extra={"job_name": job_name, "job_id": str(run_id), "stats": stats.as_dict(), "error": str(exc)},
                )
                raise
            span.set_attribute("autopilot.sweep.processed", stats.processed)
            span.set_attribute("autopilot.sweep.errors", stats.errors)

        self._finish_run(run_id, "success", stats)
        observe_sweep(job_name, "success", stats.as_dict())
        logger.info("sweep_finished", extra={"job_name": job_name, "job_id": str(run_id), "stats": stats.as_dict()})

    def _finish_run(self, run_id: int, status: str, stats: SweepStats, error: str | None = None) -> None:
        run = self.session.get(JobRun, run_id)
        if run is None:
            return
        run.status = status
        run.finished_at = utcnow()
        run.stats_json = json.dumps(stats.as_dict())
        run.error = error
        self.session.add(run)
        self.session.commit()

    def _record_entity_error(
        self,
        stats: SweepStats,
        job_name: str,
        entity_type: str,
        entity_id: Any,
        exc: Exception,
    ) -> None:
        self.session.rollback()
        stats.errors += 1
        logger.error(
            "sweep_entity_failed",
            exc_info=exc,
            extra={
                "job_name": job_name,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "error": str(exc),
            },
        )


def _decimal_or_none(value: Any) -> Decimal | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
