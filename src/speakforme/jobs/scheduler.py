"""Storage hygiene jobs via APScheduler.

Nothing here is needed for correctness: every time window is evaluated
at read time. The jobs only keep old rows from piling up.
"""

from __future__ import annotations

from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from speakforme.triggers.participation import ParticipationTracker

logger = structlog.get_logger()

_MISFIRE_GRACE_TIME_S = 3600


class HygieneScheduler:
    def __init__(self, tracker: ParticipationTracker | None = None) -> None:
        from apscheduler.events import EVENT_JOB_MISSED

        self.tracker = tracker or ParticipationTracker()
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": _MISFIRE_GRACE_TIME_S,
            }
        )
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

    @staticmethod
    def _on_job_missed(event: Any) -> None:
        logger.warning(
            "hygiene_job_missed",
            job_id=event.job_id,
            scheduled_run_time=str(event.scheduled_run_time),
        )

    def start(self) -> None:
        self.scheduler.add_job(
            self.prune_participation,
            trigger=CronTrigger.from_crontab("30 3 * * *"),
            id="_global:prune_participation",
            name="Prune stale thread participation",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("hygiene_scheduler_started", jobs=len(self.scheduler.get_jobs()))

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("hygiene_scheduler_stopped")

    async def prune_participation(self) -> int:
        try:
            removed = await self.tracker.prune_stale_participation()
        except Exception as e:
            logger.error("participation_prune_failed", error=str(e))
            return 0
        return removed
