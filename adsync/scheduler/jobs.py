"""adsync — Scheduler Jobs.

APScheduler interval job that finds stale sync-enabled accounts with no run
already pending or in progress, and triggers a SCHEDULED sync over a short
trailing window for each of them.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from adsync.config import settings
from adsync.core.logging import get_logger
from adsync.models.meta_models import SyncMode
from adsync.sync import store
from adsync.sync.service import SyncService, trailing_window

logger = get_logger("scheduler")

JOB_ID = "meta_sync_check"


class SyncScheduler:
    """Periodic staleness check over all sync-enabled accounts."""

    def __init__(
        self,
        service: SyncService,
        engine: Engine,
        interval_minutes: Optional[int] = None,
        staleness_hours: Optional[int] = None,
        window_days: Optional[int] = None,
        enabled: Optional[bool] = None,
    ):
        self.service = service
        self.engine = engine
        self.interval_minutes = interval_minutes or settings.scheduler_interval_minutes
        self.staleness = timedelta(hours=staleness_hours or settings.sync_staleness_hours)
        self.window_days = window_days or settings.scheduled_window_days
        self.enabled = settings.scheduler_enabled if enabled is None else enabled
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)

    async def check_and_run(self, now: Optional[datetime] = None) -> List[str]:
        """Trigger a SCHEDULED sync for every due account. Returns the run ids."""
        now = now or datetime.now(timezone.utc)
        try:
            with Session(self.engine) as session:
                candidates = store.due_accounts(session, now, self.staleness)
                busy = store.accounts_with_open_runs(session)
        except SQLAlchemyError as e:
            logger.error(f"Error during check loop: {e}", exc_info=True)
            return []

        logger.info(f"Found {len(candidates)} accounts due for sync.")
        date_start, date_stop = trailing_window(self.window_days, now)

        run_ids: List[str] = []
        for account in candidates:
            if not account.linked_by_user_id:
                logger.warning(
                    f"Skipping {account.id}: no linked user",
                    extra={"account_id": account.id},
                )
                continue
            if account.id in busy:
                logger.info(
                    f"Skipping {account.id}: a sync is already pending or running",
                    extra={"account_id": account.id},
                )
                continue
            logger.info(
                f"Triggering sync for {account.name} ({account.id})",
                extra={"account_id": account.id},
            )
            try:
                run_ids.append(
                    await self.service.run_sync(
                        account.linked_by_user_id,
                        account.id,
                        SyncMode.SCHEDULED,
                        date_start,
                        date_stop,
                    )
                )
            except Exception as e:
                logger.error(
                    f"Failed sync trigger for {account.id}: {e}",
                    extra={"account_id": account.id},
                )
        return run_ids

    def start(self) -> None:
        """Configure and start the scheduler."""
        if not self.enabled:
            logger.info("Scheduler disabled via config")
            return
        if self.scheduler.running:
            return

        self.scheduler.add_job(
            self.check_and_run,
            "interval",
            minutes=self.interval_minutes,
            id=JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started. Checking for due syncs every {self.interval_minutes} min"
        )

    def stop(self) -> None:
        """Shutdown the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
