"""Tick sources that drive the scheduled wakeup pass."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from keepalive.models import TaskReport
from keepalive.runner import TaskRunner


logger = structlog.get_logger(__name__)

TICK_JOB_ID = "keepalive_tick"


def parse_cron_expression(cron_expression: str) -> CronTrigger:
    """Build a trigger from a 5-field crontab expression (minute hour day month day_of_week)."""
    cron_parts = str(cron_expression or "").split()
    if len(cron_parts) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expression}")

    return CronTrigger(
        minute=cron_parts[0],
        hour=cron_parts[1],
        day=cron_parts[2],
        month=cron_parts[3],
        day_of_week=cron_parts[4],
    )


class Ticker:
    """Single entry point shared by every tick source."""

    def __init__(self, runner: TaskRunner):
        self.runner = runner

    async def on_tick(self) -> TaskReport:
        logger.info("Scheduled tick started")
        try:
            report = await self.runner.run_scheduled()
        except Exception as e:
            logger.exception("Scheduled tick failed", error=str(e))
            return TaskReport(summary=f"Scheduled tick failed: {e}", outcomes=[])
        logger.info("Scheduled tick finished", summary=report.summary)
        return report


class CronTicker(Ticker):
    """Runs on_tick from an in-process APScheduler cron job."""

    def __init__(self, runner: TaskRunner, cron_expression: str):
        super().__init__(runner)
        self.cron_expression = cron_expression
        self.trigger = parse_cron_expression(cron_expression)
        self.scheduler = AsyncIOScheduler()
        self.running = False

    async def start(self):
        """Start the cron scheduler."""
        if self.running:
            logger.warning("Ticker already running")
            return

        self.scheduler.add_job(
            func=self.on_tick,
            trigger=self.trigger,
            id=TICK_JOB_ID,
            name="Keep-alive scheduled wakeups",
            replace_existing=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info("Cron ticker started", cron=self.cron_expression)

    async def stop(self):
        """Stop the cron scheduler."""
        if not self.running:
            return

        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Cron ticker stopped")

    def next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(TICK_JOB_ID)
        if job is None:
            return None
        # Pending jobs (scheduler not started yet) have no run time computed.
        return getattr(job, "next_run_time", None)


class ScheduledEventTicker(Ticker):
    """Runs exactly one tick per externally delivered scheduled event."""

    async def handle_event(self, event: Any = None) -> TaskReport:
        if event is not None:
            logger.info("Scheduled event received", scheduled_event=str(event)[:200])
        return await self.on_tick()
