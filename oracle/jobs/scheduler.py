"""Job scheduler using APScheduler with async support."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from oracle.core.config import Settings, settings as default_settings
from oracle.core.logging import get_logger

from .registry import get_job


logger = get_logger("jobs.scheduler")

_scheduler: JobScheduler | None = None


def default_schedules(settings: Settings) -> dict[str, tuple[str, str]]:
    return {
        "resolve_expired": (settings.resolve_expired_cron, "Settle due picks"),
        "calibration_trigger": (
            settings.calibration_trigger_cron,
            "Calibrate backends with fresh settlements",
        ),
        "calibration_weekly": (settings.calibration_weekly_cron, "Weekly calibration of all backends"),
    }


class JobScheduler:
    """Runs registered jobs on cron triggers taken from settings."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self._scheduler = AsyncIOScheduler(
            timezone=self.settings.scheduler_timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60 * 5,
            },
        )
        self._running = False
        self.last_results: dict[str, str] = {}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Scheduler already running")
            return

        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled via SCHEDULER_ENABLED=false")
            return

        self.load_jobs()
        self._scheduler.start()
        self._running = True
        logger.info("Job scheduler started")

    async def stop(self) -> None:
        if not self._running:
            return

        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Job scheduler stopped")

    def load_jobs(self) -> None:
        """Add every registered job that has a schedule."""
        for name, (cron_expr, description) in default_schedules(self.settings).items():
            func = get_job(name)
            if func is None:
                logger.warning(f"Unknown job: {name}")
                continue
            self._scheduler.add_job(
                self._wrap_job(name, func),
                trigger=CronTrigger.from_crontab(cron_expr, timezone=self.settings.scheduler_timezone),
                id=name,
                name=description,
                replace_existing=True,
            )
            logger.info(f"Scheduled job: {name} ({cron_expr})")

    def _wrap_job(self, name: str, func: Callable) -> Callable:
        async def wrapper():
            await self._execute_job(name, func)

        return wrapper

    async def _execute_job(self, name: str, func: Callable) -> str | None:
        logger.info(f"Job {name} started")
        start_time = datetime.now(UTC)
        try:
            if asyncio.iscoroutinefunction(func):
                result = await func()
            else:
                result = func()
        except Exception:
            duration_ms = int((datetime.now(UTC) - start_time).total_seconds() * 1000)
            logger.exception(f"Job {name} failed after {duration_ms}ms")
            self.last_results[name] = "error"
            return None

        duration_ms = int((datetime.now(UTC) - start_time).total_seconds() * 1000)
        result_msg = str(result) if result else "Completed successfully"
        self.last_results[name] = result_msg
        logger.info(f"Job {name} completed in {duration_ms}ms: {result_msg}")
        return result_msg

    async def run_job_now(self, name: str) -> str:
        """Manually trigger a job execution."""
        func = get_job(name)
        if func is None:
            raise ValueError(f"Unknown job: {name}")
        result = await self._execute_job(name, func)
        return result or f"Job {name} failed"

    def get_next_run_time(self, name: str) -> datetime | None:
        job = self._scheduler.get_job(name)
        # pending jobs have no next_run_time until the scheduler starts
        return getattr(job, "next_run_time", None)

    def get_jobs_status(self) -> list[dict]:
        jobs = []
        for job in self._scheduler.get_jobs():
            next_run = self.get_next_run_time(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": next_run.isoformat() if next_run else None,
                    "last_result": self.last_results.get(job.id),
                }
            )
        return jobs


def get_scheduler() -> JobScheduler | None:
    """Get the global scheduler instance."""
    return _scheduler


async def start_scheduler() -> JobScheduler:
    """Start the global scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = JobScheduler()
    await _scheduler.start()
    return _scheduler


async def stop_scheduler() -> None:
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None
