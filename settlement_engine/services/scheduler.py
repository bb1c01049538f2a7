"""Nightly settlement jobs on APScheduler.

  daily_settlement_generation   generate today's settlement (23:55), then
                                optionally process it
  daily_report_generation       report hook for yesterday (00:30)
  weekly_report_cleanup         cleanup hook (Sunday 02:00)

Cron expressions and the timezone come from settings.  Every job body runs
through the retry orchestrator, and a failing job is logged, never raised
into the scheduler.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from settlement_engine.core.config import Settings
from settlement_engine.core.exceptions import ConflictError
from settlement_engine.core.logging import get_logger
from settlement_engine.services.container import ServiceContainer
from settlement_engine.services.recovery.defaults import (
    REPORT_CLEANUP,
    REPORT_GENERATION,
    SETTLEMENT_GENERATION,
    SETTLEMENT_PROCESSING,
)
from settlement_engine.services.settlement.service import local_today

logger = get_logger(__name__)

ReportHook = Callable[[date], Awaitable[Any]]
CleanupHook = Callable[[int], Awaitable[Any]]

SCHEDULER_OPERATOR = "scheduler"


class SettlementScheduler:
    def __init__(
        self,
        container: ServiceContainer,
        config: Settings,
        report_hook: Optional[ReportHook] = None,
        cleanup_hook: Optional[CleanupHook] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.container = container
        self.config = config
        self.report_hook = report_hook
        self.cleanup_hook = cleanup_hook
        self.scheduler = scheduler or AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
            timezone=config.timezone,
        )

    @property
    def orchestrator(self):
        return self.container.orchestrator

    # ── Lifecycle ────────────────────────────────────────────────────

    def register_jobs(self) -> None:
        tz = self.config.timezone
        jobs = (
            (
                self.run_daily_generation,
                self.config.settlement_generation_cron,
                "daily_settlement_generation",
                "Daily Settlement Generation",
            ),
            (
                self.run_daily_report,
                self.config.report_generation_cron,
                "daily_report_generation",
                "Daily Report Generation",
            ),
            (
                self.run_report_cleanup,
                self.config.report_cleanup_cron,
                "weekly_report_cleanup",
                "Weekly Report Cleanup",
            ),
        )
        for func, cron, job_id, name in jobs:
            self.scheduler.add_job(
                func,
                CronTrigger.from_crontab(cron, timezone=tz),
                id=job_id,
                name=name,
                replace_existing=True,
            )

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.register_jobs()
        self.scheduler.start()
        logger.info("Settlement scheduler started (timezone=%s)", self.config.timezone)
        for job in self.scheduler.get_jobs():
            logger.info("Scheduled job: %s - next run: %s", job.name, job.next_run_time)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Settlement scheduler stopped")

    def get_job_status(self) -> list[dict[str, Optional[str]]]:
        status = []
        for job in self.scheduler.get_jobs():
            # Jobs added before start() have no next_run_time yet.
            next_run = getattr(job, "next_run_time", None)
            status.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": str(next_run) if next_run else None,
                    "trigger": str(job.trigger),
                }
            )
        return status

    # ── Jobs ─────────────────────────────────────────────────────────

    async def run_daily_generation(self, today: Optional[date] = None) -> Optional[uuid.UUID]:
        """Generate today's settlement and, if enabled, process it."""
        day = today or local_today(self.config.timezone)
        logger.info("Starting daily settlement generation for %s", day)

        async def generate() -> uuid.UUID:
            with self.container.session_scope() as db:
                settlement = self.container.settlement_service(db).generate(
                    day, operator=SCHEDULER_OPERATOR
                )
                return settlement.id

        try:
            settlement_id = await self.orchestrator.execute_with_recovery(
                SETTLEMENT_GENERATION, generate, {"settlement_date": str(day)}
            )
        except ConflictError:
            logger.info("Settlement for %s already exists, nothing to generate", day)
            return None
        except Exception:
            logger.exception("Daily settlement generation failed for %s", day)
            return None

        logger.info("Daily settlement generated for %s: %s", day, settlement_id)
        if self.config.auto_process_settlements:
            await self.run_processing(settlement_id)
        return settlement_id

    async def run_processing(self, settlement_id: uuid.UUID) -> Optional[str]:
        """Submit the settlement's payouts.  Bank transfers need an operator."""

        async def process() -> str:
            with self.container.session_scope() as db:
                result = await self.container.settlement_service(db).process(
                    settlement_id,
                    operator=SCHEDULER_OPERATOR,
                    initiate_payouts=True,
                    initiate_bank_transfers=False,
                )
                return result.status

        try:
            status = await self.orchestrator.execute_with_recovery(
                SETTLEMENT_PROCESSING, process, {"settlement_id": str(settlement_id)}
            )
        except Exception:
            logger.exception("Automatic processing failed for settlement %s", settlement_id)
            return None

        logger.info("Settlement %s auto-processed, status=%s", settlement_id, status)
        return status

    async def run_daily_report(self, today: Optional[date] = None) -> bool:
        """Run the report hook for the previous day."""
        report_date = (today or local_today(self.config.timezone)) - timedelta(days=1)
        if self.report_hook is None:
            logger.info("No report hook configured, skipping report for %s", report_date)
            return False

        hook = self.report_hook

        async def generate_report() -> Any:
            return await hook(report_date)

        try:
            await self.orchestrator.execute_with_recovery(
                REPORT_GENERATION, generate_report, {"report_date": str(report_date)}
            )
        except Exception:
            logger.exception("Daily report generation failed for %s", report_date)
            return False
        logger.info("Daily report generated for %s", report_date)
        return True

    async def run_report_cleanup(self) -> bool:
        retention_days = self.config.report_retention_days
        if self.cleanup_hook is None:
            logger.info("No cleanup hook configured, skipping report cleanup")
            return False

        hook = self.cleanup_hook

        async def cleanup() -> Any:
            return await hook(retention_days)

        try:
            await self.orchestrator.execute_with_recovery(
                REPORT_CLEANUP, cleanup, {"retention_days": retention_days}
            )
        except Exception:
            logger.exception("Report cleanup failed")
            return False
        logger.info("Reports older than %d days cleaned up", retention_days)
        return True
