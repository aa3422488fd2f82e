"""adsync — Meta Sync Engine.

Runs one sync of an ad account:
  token → campaigns → ad sets → ads → new creatives → consent-gated daily
  insights → last_synced_at → run status

Each entity batch commits on its own. A failure late in the run leaves the
earlier batches in place (at-least-partial, not all-or-nothing).
"""

import asyncio
import time
from typing import Callable, List, Optional, Sequence, Union

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from adsync.config import settings
from adsync.connectors.meta.auth import TokenManager
from adsync.connectors.meta.client import MetaClient
from adsync.connectors.meta.endpoints import insight_fields
from adsync.connectors.meta.transformer import (
    ad_to_row,
    adset_to_row,
    campaign_to_row,
    creative_to_row,
    insight_to_row,
    normalize_account_id,
)
from adsync.core.errors import (
    AuthError,
    PartialFetchFailure,
    ProviderError,
    SyncStateError,
)
from adsync.core.logging import get_logger
from adsync.models.meta_models import (
    AdAccount,
    Consent,
    SyncMode,
    SyncStatus,
    utcnow,
)
from adsync.models.meta_schemas import MetaAd, MetaCreative
from adsync.sync import store

logger = get_logger("sync.engine")

ClientFactory = Callable[[str], MetaClient]


class SyncEngine:
    """Fetches an account's hierarchy and metrics and writes them to the store."""

    def __init__(
        self,
        engine: Engine,
        token_manager: TokenManager,
        client_factory: Optional[ClientFactory] = None,
        creative_chunk_size: Optional[int] = None,
        max_pages: Optional[int] = None,
    ):
        self.engine = engine
        self.token_manager = token_manager
        self.creative_chunk_size = max(
            1, creative_chunk_size or settings.creative_fetch_concurrency
        )
        self.max_pages = max_pages or settings.sync_max_pages
        self.client_factory = client_factory or self._default_client

    def _default_client(self, access_token: str) -> MetaClient:
        return MetaClient(access_token, max_pages=self.max_pages)

    def _client_for(self, user_id: str) -> MetaClient:
        token = self.token_manager.get_access_token(user_id)
        if not token:
            raise AuthError(f"No access token found for user {user_id}")
        return self.client_factory(token)

    # ── Run Records ──

    def record_run(
        self,
        user_id: str,
        account_id: str,
        mode: SyncMode,
        date_start: str,
        date_stop: str,
    ) -> str:
        """Insert a PENDING run and return its id."""
        account_id = normalize_account_id(account_id)
        with Session(self.engine) as session:
            run = store.create_run(
                session,
                account_id,
                SyncMode(mode),
                {"date_start": date_start, "date_stop": date_stop, "user_id": user_id},
            )
        logger.info(
            f"Recorded {SyncMode(mode).value} sync {date_start} → {date_stop}",
            extra={"run_id": run.id, "account_id": account_id},
        )
        return run.id

    def _set_status(
        self,
        run_id: str,
        status: SyncStatus,
        error_message: Optional[str] = None,
        records_processed: Optional[int] = None,
    ) -> None:
        with Session(self.engine) as session:
            store.transition_run(
                session, run_id, status, error_message, records_processed
            )

    def fail_run(self, run_id: str, message: str) -> None:
        """Mark a run FAILED. Logs instead of raising if that is impossible."""
        try:
            self._set_status(run_id, SyncStatus.FAILED, error_message=message)
        except (SyncStateError, SQLAlchemyError) as e:
            logger.error(f"Could not mark run FAILED: {e}", extra={"run_id": run_id})

    # ── Execution ──

    async def execute_sync(
        self,
        run_id: str,
        user_id: str,
        account_id: str,
        date_start: str,
        date_stop: str,
    ) -> None:
        """Run a recorded sync to a terminal state. Never raises on sync failure."""
        account_id = normalize_account_id(account_id)
        log_extra = {"run_id": run_id, "account_id": account_id}
        started = time.monotonic()

        try:
            self._set_status(run_id, SyncStatus.IN_PROGRESS)
            records = await self._sync(user_id, account_id, date_start, date_stop, log_extra)
            self._set_status(run_id, SyncStatus.COMPLETED, records_processed=records)
        except asyncio.CancelledError:
            self.fail_run(run_id, "Sync cancelled")
            raise
        except Exception as e:
            logger.error(f"Sync execution failed: {e}", extra=log_extra, exc_info=True)
            self.fail_run(run_id, str(e) or type(e).__name__)
            return

        logger.info(
            f"Sync completed: {records} insight rows",
            extra={**log_extra, "duration_ms": round((time.monotonic() - started) * 1000)},
        )

    async def _sync(
        self,
        user_id: str,
        account_id: str,
        date_start: str,
        date_stop: str,
        log_extra: dict,
    ) -> int:
        client = self._client_for(user_id)
        try:
            # Hierarchy: later steps reference ids from earlier ones
            campaigns = await client.get_campaigns(account_id)
            with Session(self.engine) as session:
                store.upsert_batch(
                    session, [campaign_to_row(c, account_id) for c in campaigns], "campaigns"
                )

            adsets = await client.get_adsets(account_id)
            with Session(self.engine) as session:
                store.upsert_batch(
                    session, [adset_to_row(s, account_id) for s in adsets], "ad sets"
                )

            ads = await client.get_ads(account_id)
            with Session(self.engine) as session:
                store.upsert_batch(session, [ad_to_row(a, account_id) for a in ads], "ads")

            await self._sync_creatives(client, account_id, ads, log_extra)

            consent = self._consent(account_id)
            fields = self._fields_for(consent)
            insights = await client.get_insights(
                account_id, "ad", date_start, date_stop, fields
            )
            rows = [insight_to_row(r, account_id, consent) for r in insights]
            with Session(self.engine) as session:
                store.upsert_batch(session, rows, "daily insights")
                store.mark_account_synced(session, account_id, utcnow())
        finally:
            await client.close()

        return len(rows)

    # ── Creatives ──

    @staticmethod
    async def _fetch_creative(
        client: MetaClient, creative_id: str
    ) -> Union[MetaCreative, PartialFetchFailure]:
        try:
            return await client.get_creative_details(creative_id)
        except ProviderError as e:
            return PartialFetchFailure(creative_id, e)

    async def _sync_creatives(
        self,
        client: MetaClient,
        account_id: str,
        ads: Sequence[MetaAd],
        log_extra: dict,
    ) -> int:
        """Fetch creatives referenced by `ads` that are not stored yet.

        Stored creatives are never re-fetched, so edits made on the platform
        after the first sync are not picked up.
        """
        referenced = list(dict.fromkeys(a.creative_id for a in ads if a.creative_id))
        with Session(self.engine) as session:
            known = store.existing_creative_ids(session, referenced)
        missing = [cid for cid in referenced if cid not in known]
        logger.info(
            f"Found {len(referenced)} creatives. Fetching {len(missing)} new.",
            extra=log_extra,
        )

        stored = 0
        skipped = 0
        for i in range(0, len(missing), self.creative_chunk_size):
            chunk = missing[i : i + self.creative_chunk_size]
            results = await asyncio.gather(
                *(self._fetch_creative(client, cid) for cid in chunk)
            )
            rows = []
            for result in results:
                if isinstance(result, PartialFetchFailure):
                    skipped += 1
                    logger.warning(
                        str(result), extra={**log_extra, "entity_id": result.entity_id}
                    )
                else:
                    rows.append(creative_to_row(result, account_id))
            if rows:
                with Session(self.engine) as session:
                    stored += store.upsert_batch(session, rows, "creatives")

        if skipped:
            logger.warning(f"Skipped {skipped} creatives", extra=log_extra)
        return stored

    # ── Consent ──

    def _consent(self, account_id: str) -> Optional[Consent]:
        with Session(self.engine) as session:
            return store.get_consent(session, account_id)

    @staticmethod
    def _fields_for(consent: Optional[Consent]) -> List[str]:
        return insight_fields(
            bool(consent and consent.allow_spend),
            bool(consent and consent.allow_conversions),
        )

    def allowed_insight_fields(self, account_id: str) -> List[str]:
        """Insight fields the account's consent permits requesting."""
        return self._fields_for(self._consent(account_id))

    # ── Account Discovery ──

    async def discover_accounts(self, user_id: str) -> List[AdAccount]:
        """List the user's ad accounts on Meta and upsert them."""
        client = self._client_for(user_id)
        try:
            accounts = await client.get_accounts()
        finally:
            await client.close()
        with Session(self.engine) as session:
            rows = store.upsert_accounts(session, accounts, user_id)
        logger.info(f"Discovered {len(rows)} ad accounts for user {user_id}")
        return rows

    async def verify_account(self, user_id: str, account_id: str) -> AdAccount:
        """Fetch one account from Meta and create or refresh its row."""
        account_id = normalize_account_id(account_id)
        client = self._client_for(user_id)
        try:
            account = await client.get_account(account_id)
        finally:
            await client.close()
        with Session(self.engine) as session:
            return store.upsert_accounts(session, [account], user_id)[0]
