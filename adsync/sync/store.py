"""adsync — Sync Store.

Reads and writes used by the sync pipeline. Every batch write commits as one
transaction and upserts by primary key (replace on conflict), so re-running
a sync over the same data overwrites rows instead of duplicating them.
"""

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, col, select

from adsync.connectors.meta.transformer import account_to_row, normalize_account_id
from adsync.core.errors import PersistenceError, SyncStateError
from adsync.core.logging import get_logger
from adsync.models.meta_models import (
    AdAccount,
    AdCreative,
    Consent,
    SyncMode,
    SyncRun,
    SyncStatus,
    utcnow,
)
from adsync.models.meta_schemas import MetaAdAccount

logger = get_logger("sync.store")

ALLOWED_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.IN_PROGRESS, SyncStatus.FAILED},
    SyncStatus.IN_PROGRESS: {SyncStatus.COMPLETED, SyncStatus.FAILED},
    SyncStatus.COMPLETED: set(),
    SyncStatus.FAILED: set(),
}


# ── Batch Upserts ──


def upsert_batch(session: Session, rows: Sequence[SQLModel], label: str) -> int:
    """Merge rows by primary key and commit them as one transaction."""
    try:
        now = utcnow()
        for row in rows:
            if hasattr(row, "updated_at"):
                row.updated_at = now
            session.merge(row)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Failed to store {label}: {e}") from e
    logger.info(f"Upserted {len(rows)} {label}")
    return len(rows)


def upsert_accounts(
    session: Session, accounts: Iterable[MetaAdAccount], user_id: Optional[str]
) -> List[AdAccount]:
    """Insert or refresh discovered accounts, keeping sync flags of known ones."""
    rows: List[AdAccount] = []
    try:
        now = utcnow()
        for account in accounts:
            existing = session.get(AdAccount, normalize_account_id(account.id))
            row = account_to_row(account, user_id, existing)
            row.updated_at = now
            session.add(row)
            rows.append(row)
        session.commit()
        for row in rows:
            session.refresh(row)
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Failed to store ad accounts: {e}") from e
    logger.info(f"Upserted {len(rows)} ad accounts for user {user_id}")
    return rows


def existing_creative_ids(session: Session, creative_ids: Iterable[str]) -> set[str]:
    ids = list(creative_ids)
    if not ids:
        return set()
    found = session.exec(select(AdCreative.id).where(col(AdCreative.id).in_(ids))).all()
    return set(found)


# ── Accounts & Consent ──


def get_account(session: Session, account_id: str) -> Optional[AdAccount]:
    return session.get(AdAccount, normalize_account_id(account_id))


def list_accounts(session: Session, user_id: str) -> List[AdAccount]:
    return list(
        session.exec(
            select(AdAccount)
            .where(AdAccount.linked_by_user_id == user_id)
            .order_by(AdAccount.id)
        ).all()
    )


def mark_account_synced(session: Session, account_id: str, when: datetime) -> None:
    account = session.get(AdAccount, account_id)
    if account is None:
        logger.warning(
            f"Account {account_id} not in store; last_synced_at not recorded",
            extra={"account_id": account_id},
        )
        return
    account.last_synced_at = when
    account.updated_at = when
    session.add(account)
    try:
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Failed to update {account_id}: {e}") from e


def set_sync_enabled(session: Session, account_id: str, enabled: bool) -> bool:
    """Toggle scheduled sync. Returns False if the account is unknown."""
    account = get_account(session, account_id)
    if account is None:
        return False
    account.sync_enabled = enabled
    account.updated_at = utcnow()
    session.add(account)
    session.commit()
    return True


def due_accounts(
    session: Session, now: datetime, staleness: timedelta
) -> List[AdAccount]:
    """Sync-enabled accounts never synced or last synced before now - staleness."""
    cutoff = now - staleness
    return list(
        session.exec(
            select(AdAccount).where(
                AdAccount.sync_enabled == True,  # noqa: E712
                or_(
                    AdAccount.last_synced_at == None,  # noqa: E711
                    AdAccount.last_synced_at < cutoff,
                ),
            )
        ).all()
    )


def get_consent(session: Session, account_id: str) -> Optional[Consent]:
    return session.get(Consent, normalize_account_id(account_id))


def set_consent(
    session: Session, account_id: str, allow_spend: bool, allow_conversions: bool
) -> Consent:
    account_id = normalize_account_id(account_id)
    consent = session.get(Consent, account_id) or Consent(account_id=account_id)
    consent.allow_spend = allow_spend
    consent.allow_conversions = allow_conversions
    consent.updated_at = utcnow()
    session.add(consent)
    session.commit()
    session.refresh(consent)
    logger.info(
        f"Consent for {account_id}: spend={allow_spend} conversions={allow_conversions}",
        extra={"account_id": account_id},
    )
    return consent


# ── Sync Runs ──


def create_run(
    session: Session, account_id: str, mode: SyncMode, params: Dict[str, Any]
) -> SyncRun:
    run = SyncRun(
        id=str(uuid.uuid4()),
        account_id=account_id,
        mode=mode,
        status=SyncStatus.PENDING,
        params_json=json.dumps(params),
    )
    try:
        session.add(run)
        session.commit()
        session.refresh(run)
    except SQLAlchemyError as e:
        session.rollback()
        raise PersistenceError(f"Could not record sync run: {e}") from e
    return run


def get_run(session: Session, run_id: str) -> Optional[SyncRun]:
    return session.get(SyncRun, run_id)


def accounts_with_open_runs(session: Session) -> set[str]:
    """Accounts that have a PENDING or IN_PROGRESS run."""
    open_statuses = [SyncStatus.PENDING, SyncStatus.IN_PROGRESS]
    found = session.exec(
        select(SyncRun.account_id)
        .where(col(SyncRun.status).in_(open_statuses))
        .distinct()
    ).all()
    return set(found)


def transition_run(
    session: Session,
    run_id: str,
    status: SyncStatus,
    error_message: Optional[str] = None,
    records_processed: Optional[int] = None,
) -> SyncRun:
    """Move a run to `status`. Terminal runs never change again."""
    run = session.get(SyncRun, run_id)
    if run is None:
        raise SyncStateError(f"Sync run {run_id} not found")
    current = SyncStatus(run.status)
    if status not in ALLOWED_TRANSITIONS[current]:
        raise SyncStateError(
            f"Sync run {run_id} cannot move from {current.value} to {status.value}"
        )

    run.status = status
    if status.is_terminal:
        run.finished_at = utcnow()
    if error_message is not None:
        run.error_message = error_message
    if records_processed is not None:
        run.records_processed = records_processed
    session.add(run)
    session.commit()
    session.refresh(run)
    return run
