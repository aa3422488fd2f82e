"""Tests for the sync store: run state machine, account flags and scheduling queries."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from adsync.core.errors import SyncStateError
from adsync.models.meta_models import AdAccount, Campaign, SyncMode, SyncStatus
from adsync.models.meta_schemas import MetaAdAccount
from adsync.sync import store

from conftest import TEST_ACCOUNT, TEST_USER

NOW = datetime(2024, 3, 10, 12, 0)


class TestRunStateMachine:
    def _run(self, session):
        return store.create_run(
            session, TEST_ACCOUNT, SyncMode.ON_DEMAND,
            {"date_start": "2024-03-01", "date_stop": "2024-03-02"},
        )

    def test_new_run_is_pending(self, session):
        run = self._run(session)

        assert run.status == SyncStatus.PENDING
        assert run.finished_at is None
        assert json.loads(run.params_json)["date_start"] == "2024-03-01"

    def test_happy_path(self, session):
        run = self._run(session)

        store.transition_run(session, run.id, SyncStatus.IN_PROGRESS)
        done = store.transition_run(
            session, run.id, SyncStatus.COMPLETED, records_processed=42
        )

        assert done.status == SyncStatus.COMPLETED
        assert done.records_processed == 42
        assert done.finished_at is not None

    def test_failure_records_message(self, session):
        run = self._run(session)
        store.transition_run(session, run.id, SyncStatus.IN_PROGRESS)

        failed = store.transition_run(
            session, run.id, SyncStatus.FAILED, error_message="Rate limited"
        )

        assert failed.error_message == "Rate limited"
        assert failed.finished_at is not None

    def test_pending_can_fail_directly(self, session):
        run = self._run(session)

        assert store.transition_run(session, run.id, SyncStatus.FAILED).status == SyncStatus.FAILED

    def test_pending_cannot_complete(self, session):
        run = self._run(session)

        with pytest.raises(SyncStateError):
            store.transition_run(session, run.id, SyncStatus.COMPLETED)

    @pytest.mark.parametrize("terminal", [SyncStatus.COMPLETED, SyncStatus.FAILED])
    @pytest.mark.parametrize(
        "target",
        [SyncStatus.PENDING, SyncStatus.IN_PROGRESS, SyncStatus.COMPLETED, SyncStatus.FAILED],
    )
    def test_terminal_states_are_final(self, session, terminal, target):
        run = self._run(session)
        store.transition_run(session, run.id, SyncStatus.IN_PROGRESS)
        store.transition_run(session, run.id, terminal)

        with pytest.raises(SyncStateError):
            store.transition_run(session, run.id, target)

        assert store.get_run(session, run.id).status == terminal

    def test_unknown_run(self, session):
        with pytest.raises(SyncStateError, match="not found"):
            store.transition_run(session, "missing", SyncStatus.IN_PROGRESS)

    def test_get_missing_run(self, session):
        assert store.get_run(session, "missing") is None

    def test_accounts_with_open_runs(self, session):
        pending = self._run(session)
        other = store.create_run(session, "act_other", SyncMode.SCHEDULED, {})
        store.transition_run(session, other.id, SyncStatus.IN_PROGRESS)
        store.transition_run(session, other.id, SyncStatus.COMPLETED)

        assert store.accounts_with_open_runs(session) == {TEST_ACCOUNT}

        store.transition_run(session, pending.id, SyncStatus.IN_PROGRESS)
        assert store.accounts_with_open_runs(session) == {TEST_ACCOUNT}

        store.transition_run(session, pending.id, SyncStatus.COMPLETED)
        assert store.accounts_with_open_runs(session) == set()


class TestAccounts:
    def test_upsert_accounts_keeps_local_flags(self, session, seed_account):
        synced = datetime(2024, 3, 1, 8, 0)
        seed_account(sync_enabled=True, last_synced_at=synced)

        [row] = store.upsert_accounts(
            session,
            [MetaAdAccount(id="act_123", account_id="123", name="Renamed", currency="EUR")],
            "another_user",
        )

        assert row.name == "Renamed"
        assert row.currency == "EUR"
        assert row.sync_enabled is True
        assert row.last_synced_at == synced
        assert row.linked_by_user_id == "another_user"

    def test_account_ids_are_normalized(self, session, seed_account):
        seed_account()

        assert store.get_account(session, "123").id == TEST_ACCOUNT
        assert store.get_account(session, "act_123").id == TEST_ACCOUNT

    def test_set_sync_enabled(self, session, seed_account):
        seed_account()

        assert store.set_sync_enabled(session, "123", True) is True
        assert session.get(AdAccount, TEST_ACCOUNT).sync_enabled is True
        assert store.set_sync_enabled(session, "act_999", True) is False

    def test_list_accounts_filters_by_user(self, session, seed_account):
        seed_account("act_2", user_id=TEST_USER)
        seed_account("act_1", user_id=TEST_USER)
        seed_account("act_3", user_id="someone_else")

        ids = [a.id for a in store.list_accounts(session, TEST_USER)]

        assert ids == ["act_1", "act_2"]

    def test_consent_upsert(self, session, seed_account):
        seed_account()
        assert store.get_consent(session, TEST_ACCOUNT) is None

        store.set_consent(session, "123", allow_spend=True, allow_conversions=False)
        consent = store.set_consent(session, TEST_ACCOUNT, allow_spend=True, allow_conversions=True)

        assert consent.account_id == TEST_ACCOUNT
        assert consent.allow_spend is True
        assert consent.allow_conversions is True


class TestDueAccounts:
    def test_selects_enabled_and_stale(self, session, seed_account):
        seed_account("act_never", sync_enabled=True)
        seed_account("act_stale", sync_enabled=True, last_synced_at=NOW - timedelta(hours=25))
        seed_account("act_fresh", sync_enabled=True, last_synced_at=NOW - timedelta(hours=2))
        seed_account("act_disabled", sync_enabled=False)

        due = store.due_accounts(session, NOW, timedelta(hours=24))

        assert sorted(a.id for a in due) == ["act_never", "act_stale"]


class TestUpsertBatch:
    def test_merge_replaces_by_primary_key(self, session):
        store.upsert_batch(
            session, [Campaign(id="c1", account_id=TEST_ACCOUNT, name="Old")], "campaigns"
        )
        count = store.upsert_batch(
            session,
            [
                Campaign(id="c1", account_id=TEST_ACCOUNT, name="New"),
                Campaign(id="c2", account_id=TEST_ACCOUNT, name="Other"),
            ],
            "campaigns",
        )

        assert count == 2
        session.expire_all()
        assert session.get(Campaign, "c1").name == "New"
        assert session.get(Campaign, "c2").name == "Other"

    def test_empty_batch(self, session):
        assert store.upsert_batch(session, [], "ads") == 0


def test_now_is_timezone_aware():
    from adsync.models.meta_models import utcnow

    assert utcnow().tzinfo is timezone.utc
