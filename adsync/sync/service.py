"""adsync — Sync Service.

The single process-wide entry point for triggering syncs. A trigger records
a PENDING run, hands it to an asyncio queue and returns the run id; a small
pool of workers drains the queue. Runs for the same account never overlap:
a run for a busy account is parked until that account's current run ends,
so it never holds a worker slot while it waits.
"""

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, Iterator, List, Optional, Set

from sqlmodel import Session

from adsync.config import settings
from adsync.connectors.meta.transformer import normalize_account_id
from adsync.core.logging import get_logger
from adsync.models.meta_models import AdAccount, SyncMode, SyncRun
from adsync.sync import store
from adsync.sync.engine import SyncEngine

logger = get_logger("sync.service")

DATE_FORMAT = "%Y-%m-%d"


def _validate_window(date_start: str, date_stop: str) -> None:
    try:
        start = datetime.strptime(date_start, DATE_FORMAT).date()
        stop = datetime.strptime(date_stop, DATE_FORMAT).date()
    except (TypeError, ValueError):
        raise ValueError("Dates must be YYYY-MM-DD") from None
    if start > stop:
        raise ValueError(f"date_start {date_start} is after date_stop {date_stop}")


def trailing_window(days: int, today: Optional[datetime] = None) -> tuple[str, str]:
    """(today - days, today) as YYYY-MM-DD strings, UTC."""
    today_date = (today or datetime.now(timezone.utc)).date()
    return (
        (today_date - timedelta(days=days)).strftime(DATE_FORMAT),
        today_date.strftime(DATE_FORMAT),
    )


@dataclass(frozen=True)
class SyncJob:
    run_id: str
    user_id: str
    account_id: str
    date_start: str
    date_stop: str


class SyncService:
    """Queue-backed sync trigger with a bounded worker pool."""

    def __init__(self, sync_engine: SyncEngine, workers: Optional[int] = None):
        self.engine = sync_engine
        self.worker_count = max(1, workers or settings.sync_workers)
        self._queue: "asyncio.Queue[SyncJob]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        # Accounts with a run executing, and runs waiting for those accounts
        self._active: Set[str] = set()
        self._deferred: Dict[str, Deque[SyncJob]] = defaultdict(deque)

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ── Lifecycle ──

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"sync-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(f"Sync service started with {self.worker_count} workers")

    async def stop(self) -> None:
        """Cancel workers. Queued runs that never started are marked FAILED."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        abandoned = 0
        for job in self._drain():
            self.engine.fail_run(job.run_id, "Sync service stopped before the run started")
            self._queue.task_done()
            abandoned += 1
        self._active.clear()
        logger.info(f"Sync service stopped ({abandoned} queued runs abandoned)")

    def _drain(self) -> Iterator[SyncJob]:
        """Runs taken off the queue but parked, then runs still queued."""
        for pending in self._deferred.values():
            yield from pending
        self._deferred.clear()
        while not self._queue.empty():
            yield self._queue.get_nowait()

    async def join(self) -> None:
        """Wait until every queued run has finished."""
        await self._queue.join()

    # ── Triggers ──

    async def run_sync(
        self,
        user_id: str,
        account_id: str,
        mode: SyncMode,
        date_start: str,
        date_stop: str,
    ) -> str:
        """Record and enqueue a sync; returns the run id without waiting for it.

        Raises only if the arguments are invalid or the run cannot be recorded.
        """
        _validate_window(date_start, date_stop)
        account_id = normalize_account_id(account_id)
        run_id = self.engine.record_run(user_id, account_id, mode, date_start, date_stop)
        self._queue.put_nowait(
            SyncJob(run_id, user_id, account_id, date_start, date_stop)
        )
        return run_id

    async def backfill(
        self, user_id: str, account_id: str, days: Optional[int] = None
    ) -> str:
        date_start, date_stop = trailing_window(days or settings.backfill_days)
        return await self.run_sync(
            user_id, account_id, SyncMode.BACKFILL, date_start, date_stop
        )

    async def discover_accounts(self, user_id: str) -> List[AdAccount]:
        return await self.engine.discover_accounts(user_id)

    def get_run(self, run_id: str) -> Optional[SyncRun]:
        with Session(self.engine.engine) as session:
            return store.get_run(session, run_id)

    # ── Workers ──

    def _next_for(self, account_id: str) -> Optional[SyncJob]:
        """Pop the account's next deferred run, or release the account."""
        pending = self._deferred.get(account_id)
        if pending:
            job = pending.popleft()
            if not pending:
                del self._deferred[account_id]
            return job
        self._active.discard(account_id)
        return None

    async def _execute(self, n: int, job: SyncJob) -> None:
        try:
            await self.engine.execute_sync(
                job.run_id,
                job.user_id,
                job.account_id,
                job.date_start,
                job.date_stop,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # execute_sync records its own failures; this guards the worker loop
            logger.error(
                f"Worker {n} crashed on run: {e}",
                extra={"run_id": job.run_id, "account_id": job.account_id},
                exc_info=True,
            )
        finally:
            self._queue.task_done()

    async def _worker(self, n: int) -> None:
        while True:
            job = await self._queue.get()
            account_id = job.account_id
            if account_id in self._active:
                # Run later by the worker that holds the account; this one stays free
                self._deferred[account_id].append(job)
                continue

            self._active.add(account_id)
            try:
                while job is not None:
                    await self._execute(n, job)
                    job = self._next_for(account_id)
            except asyncio.CancelledError:
                self._active.discard(account_id)
                raise
