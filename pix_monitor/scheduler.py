"""Job scheduling for the recurring monitor tasks."""

from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Any, Callable, Dict, List, Optional

import structlog
from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = structlog.get_logger(__name__)


class JobScheduler:
    """Manages scheduled monitor jobs using APScheduler."""

    def __init__(self, timezone: tzinfo | None = None):
        self.timezone = timezone
        self.scheduler = AsyncIOScheduler(timezone=timezone) if timezone else AsyncIOScheduler()
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.running = False

    def start(self) -> None:
        """Start the job scheduler. Must be called from a running event loop."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started")

    def stop(self, wait: bool = True) -> None:
        if not self.running:
            return

        self.scheduler.shutdown(wait=wait)
        self.running = False
        logger.info("Job scheduler stopped")

    def on_job_error(self, callback: Callable[[str, BaseException], None]) -> None:
        """Invoke `callback(job_id, exception)` when a job raises."""

        def _listener(event: JobExecutionEvent) -> None:
            logger.error("Scheduled job raised", job_id=event.job_id, error=repr(event.exception))
            callback(event.job_id, event.exception)

        self.scheduler.add_listener(_listener, EVENT_JOB_ERROR)

    def add_cron_job(
        self,
        job_id: str,
        func: Callable,
        cron_expression: str,
        description: Optional[str] = None,
    ) -> None:
        """Add a cron-scheduled job ("minute hour day month day_of_week")."""
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        cron_parts = cron_expression.split()
        if len(cron_parts) != 5:
            raise ValueError(f"Invalid cron expression: {cron_expression}")

        trigger = CronTrigger(
            minute=cron_parts[0],
            hour=cron_parts[1],
            day=cron_parts[2],
            month=cron_parts[3],
            day_of_week=cron_parts[4],
            timezone=self.timezone,
        )
        job = self.scheduler.add_job(
            func=func,
            trigger=trigger,
            id=job_id,
            name=description or job_id,
            max_instances=1,
            coalesce=True,
        )
        self.jobs[job_id] = {
            "job": job,
            "type": "cron",
            "expression": cron_expression,
            "description": description,
            "added_at": datetime.now(self.timezone),
        }
        logger.info("Added cron job", job_id=job_id, cron=cron_expression, description=description)

    def add_interval_job(
        self,
        job_id: str,
        func: Callable,
        seconds: int,
        description: Optional[str] = None,
    ) -> None:
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        job = self.scheduler.add_job(
            func=func,
            trigger=IntervalTrigger(seconds=seconds, timezone=self.timezone),
            id=job_id,
            name=description or job_id,
            max_instances=1,
            coalesce=True,
        )
        self.jobs[job_id] = {
            "job": job,
            "type": "interval",
            "seconds": seconds,
            "description": description,
            "added_at": datetime.now(self.timezone),
        }
        logger.info("Added interval job", job_id=job_id, interval_seconds=seconds, description=description)

    def remove_job(self, job_id: str) -> bool:
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False

        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        logger.info("Removed job", job_id=job_id)
        return True

    def list_jobs(self) -> List[Dict[str, Any]]:
        statuses = []
        for job_id, info in self.jobs.items():
            job = self.scheduler.get_job(job_id)
            if job is None:
                continue
            next_run = getattr(job, "next_run_time", None)
            statuses.append(
                {
                    "job_id": job_id,
                    "name": job.name,
                    "type": info["type"],
                    "next_run": next_run.isoformat() if next_run else None,
                    "description": info.get("description"),
                }
            )
        return statuses
