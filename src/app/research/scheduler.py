"""Periodic research sync.

Wraps an APScheduler AsyncIOScheduler with one interval job that runs
sync_all for every user owning a syncable source. Users whose run is
already in progress (e.g. started by hand) are skipped for that tick.

Exports:
    ResearchSyncScheduler: Interval scheduler for research auto-sync.
"""

from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.app.research.repository import ResearchRepository
from src.app.research.sync import ResearchSyncService, SyncInProgressError

logger = structlog.get_logger(__name__)


class ResearchSyncScheduler:
    """Runs research auto-sync every ``interval_minutes``.

    Args:
        sync_service: Service that performs the sync runs.
        repository: Used to list users with syncable sources.
        interval_minutes: Minutes between runs. Zero or less disables the job.
    """

    JOB_ID = "research_auto_sync"

    def __init__(
        self,
        sync_service: ResearchSyncService,
        repository: ResearchRepository,
        interval_minutes: int,
    ) -> None:
        self._sync_service = sync_service
        self._repository = repository
        self._interval_minutes = interval_minutes
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> bool:
        """Start the interval job. Returns False when auto-sync is disabled."""
        if self._interval_minutes <= 0:
            logger.info("research.auto_sync_disabled")
            return False

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id=self.JOB_ID,
            name="Sync research sources for all users",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        self._scheduler.start()
        logger.info("research.auto_sync_started", interval_minutes=self._interval_minutes)
        return True

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("research.auto_sync_stopped")

    async def run_once(self) -> int:
        """Sync every user once. Returns the total number of new items."""
        try:
            user_ids = await self._repository.list_sync_user_ids()
        except Exception as exc:
            logger.error("research.auto_sync_query_failed", error=str(exc))
            return 0

        total = 0
        for user_id in user_ids:
            try:
                result = await self._sync_service.sync_all(user_id)
            except SyncInProgressError:
                logger.info("research.auto_sync_user_busy", user_id=user_id)
                continue
            except Exception as exc:
                logger.error("research.auto_sync_user_failed", user_id=user_id, error=str(exc))
                continue
            total += result.new_items

        logger.info("research.auto_sync_completed", users=len(user_ids), new_items=total)
        return total
