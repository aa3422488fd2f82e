"""Tests for the scheduled staleness check."""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlmodel import Session

from adsync.models.meta_models import SyncMode, SyncRun, SyncStatus
from adsync.scheduler.jobs import JOB_ID, SyncScheduler
from adsync.sync import store
from adsync.sync.service import SyncService

from conftest import TEST_USER

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class RecordingService:
    """Collects triggers; raises for accounts listed in `failing`."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.triggers = []

    async def run_sync(self, user_id, account_id, mode, date_start, date_stop):
        if account_id in self.failing:
            raise RuntimeError(f"cannot record run for {account_id}")
        self.triggers.append((user_id, account_id, mode, date_start, date_stop))
        return f"run_{account_id}"


def _naive(dt):
    return dt.replace(tzinfo=None)


class TestCheckAndRun:
    def test_triggers_due_accounts_with_trailing_window(self, db_engine, seed_account):
        seed_account("act_never", sync_enabled=True)
        seed_account("act_stale", sync_enabled=True, last_synced_at=_naive(NOW - timedelta(days=2)))
        seed_account("act_fresh", sync_enabled=True, last_synced_at=_naive(NOW - timedelta(hours=1)))
        seed_account("act_off", sync_enabled=False)
        service = RecordingService()
        scheduler = SyncScheduler(service, db_engine, staleness_hours=24, window_days=3, enabled=True)

        run_ids = asyncio.run(scheduler.check_and_run(now=NOW))

        assert sorted(run_ids) == ["run_act_never", "run_act_stale"]
        assert sorted(t[1] for t in service.triggers) == ["act_never", "act_stale"]
        for user_id, _, mode, date_start, date_stop in service.triggers:
            assert user_id == TEST_USER
            assert mode == SyncMode.SCHEDULED
            assert (date_start, date_stop) == ("2024-03-07", "2024-03-10")

    def test_accounts_without_user_are_skipped(self, db_engine, seed_account):
        seed_account("act_orphan", user_id=None, sync_enabled=True)
        service = RecordingService()
        scheduler = SyncScheduler(service, db_engine, enabled=True)

        assert asyncio.run(scheduler.check_and_run(now=NOW)) == []
        assert service.triggers == []

    def test_accounts_with_unfinished_runs_are_skipped(self, db_engine, session, seed_account):
        for account_id in ("act_pending", "act_running", "act_done"):
            seed_account(account_id, sync_enabled=True)
        params = {"date_start": "2024-03-01", "date_stop": "2024-03-01"}
        store.create_run(session, "act_pending", SyncMode.BACKFILL, params)
        running = store.create_run(session, "act_running", SyncMode.SCHEDULED, params)
        store.transition_run(session, running.id, SyncStatus.IN_PROGRESS)
        done = store.create_run(session, "act_done", SyncMode.SCHEDULED, params)
        store.transition_run(session, done.id, SyncStatus.IN_PROGRESS)
        store.transition_run(session, done.id, SyncStatus.FAILED, error_message="Rate limited")
        service = RecordingService()
        scheduler = SyncScheduler(service, db_engine, enabled=True)

        run_ids = asyncio.run(scheduler.check_and_run(now=NOW))

        assert run_ids == ["run_act_done"]

    def test_one_failing_trigger_does_not_block_others(self, db_engine, seed_account):
        seed_account("act_1", sync_enabled=True)
        seed_account("act_2", sync_enabled=True)
        seed_account("act_3", sync_enabled=True)
        service = RecordingService(failing={"act_2"})
        scheduler = SyncScheduler(service, db_engine, enabled=True)

        run_ids = asyncio.run(scheduler.check_and_run(now=NOW))

        assert sorted(run_ids) == ["run_act_1", "run_act_3"]

    def test_scheduled_run_end_to_end(self, db_engine, sync_engine, token_manager, seed_account):
        token_manager.store(TEST_USER, "tok")
        seed_account(sync_enabled=True)

        async def scenario():
            service = SyncService(sync_engine, workers=1)
            scheduler = SyncScheduler(service, db_engine, enabled=True)
            await service.start()
            run_ids = await scheduler.check_and_run()
            await service.join()
            await service.stop()
            # Just synced, so nothing is due any more
            again = await scheduler.check_and_run()
            return run_ids, again

        run_ids, again = asyncio.run(scenario())

        assert len(run_ids) == 1
        assert again == []
        with Session(db_engine) as s:
            run = s.get(SyncRun, run_ids[0])
            assert run.mode == SyncMode.SCHEDULED
            assert run.status == SyncStatus.COMPLETED


class TestLifecycle:
    def test_start_registers_interval_job(self, db_engine):
        async def scenario():
            scheduler = SyncScheduler(RecordingService(), db_engine, interval_minutes=15, enabled=True)
            scheduler.start()
            # Let the immediate first check run before shutting down
            await asyncio.sleep(0.05)
            job = scheduler.scheduler.get_job(JOB_ID)
            running = scheduler.scheduler.running
            scheduler.stop()
            return job, running, scheduler.scheduler.running

        job, running, running_after = asyncio.run(scenario())

        assert job is not None
        assert job.trigger.interval == timedelta(minutes=15)
        assert running is True
        assert running_after is False

    def test_disabled_scheduler_does_not_start(self, db_engine):
        async def scenario():
            scheduler = SyncScheduler(RecordingService(), db_engine, enabled=False)
            scheduler.start()
            return scheduler.scheduler.running, scheduler.scheduler.get_jobs()

        running, jobs = asyncio.run(scenario())

        assert running is False
        assert jobs == []
