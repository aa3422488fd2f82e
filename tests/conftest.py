"""Shared fixtures for adsync tests.

Every test gets its own in-memory SQLite database (StaticPool, so all
sessions see the same connection) and a fake Meta client whose responses
and failures are set per test.
"""

import asyncio
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

# Must be set before adsync.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from adsync.connectors.meta.auth import TokenManager
from adsync.core.errors import ProviderError
from adsync.database import init_db
from adsync.models.meta_models import AdAccount, Consent
from adsync.models.meta_schemas import (
    MetaAd,
    MetaAdAccount,
    MetaAdSet,
    MetaCampaign,
    MetaCreative,
    MetaInsight,
)
from adsync.sync.engine import SyncEngine

TEST_USER = "test_user"
TEST_ACCOUNT = "act_123"


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as s:
        yield s


@pytest.fixture
def seed_account(db_engine):
    def _seed(
        account_id: str = TEST_ACCOUNT,
        user_id: Optional[str] = TEST_USER,
        sync_enabled: bool = False,
        last_synced_at: Optional[datetime] = None,
        name: str = "Test Account",
    ) -> None:
        with Session(db_engine) as s:
            s.add(
                AdAccount(
                    id=account_id,
                    account_id=account_id.removeprefix("act_"),
                    name=name,
                    linked_by_user_id=user_id,
                    sync_enabled=sync_enabled,
                    last_synced_at=last_synced_at,
                )
            )
            s.commit()

    return _seed


@pytest.fixture
def seed_consent(db_engine):
    def _seed(
        account_id: str = TEST_ACCOUNT,
        allow_spend: bool = False,
        allow_conversions: bool = False,
    ) -> None:
        with Session(db_engine) as s:
            consent = s.get(Consent, account_id) or Consent(account_id=account_id)
            consent.allow_spend = allow_spend
            consent.allow_conversions = allow_conversions
            s.add(consent)
            s.commit()

    return _seed


# ============================================================================
# Meta
# ============================================================================


class FakeMetaClient:
    """Stands in for MetaClient; records every call the engine makes."""

    def __init__(self):
        self.accounts: List[Dict[str, Any]] = []
        self.campaigns: List[Dict[str, Any]] = [
            {"id": "camp_1", "name": "Test Campaign", "status": "ACTIVE",
             "objective": "CONVERSIONS", "updated_time": "2023-01-01T00:00:00+0000"}
        ]
        self.adsets: List[Dict[str, Any]] = [
            {"id": "adset_1", "campaign_id": "camp_1", "name": "Test AdSet",
             "status": "ACTIVE", "optimization_goal": "OFFSITE_CONVERSIONS"}
        ]
        self.ads: List[Dict[str, Any]] = [
            {"id": "ad_1", "adset_id": "adset_1", "campaign_id": "camp_1",
             "name": "Test Ad", "status": "ACTIVE", "creative": {"id": "creative_1"}}
        ]
        self.insights: List[Dict[str, Any]] = [
            {"date_start": "2023-01-01", "date_stop": "2023-01-01",
             "account_id": "123", "campaign_id": "camp_1", "adset_id": "adset_1",
             "ad_id": "ad_1", "impressions": "1000", "clicks": "50",
             "spend": "10.50", "cpc": "0.21", "cpm": "10.5",
             "actions": [{"action_type": "purchase", "value": "3"},
                         {"action_type": "link_click", "value": "40"}]}
        ]
        self.failing_creatives: Set[str] = set()
        self.errors: Dict[str, Exception] = {}
        self.tokens: List[str] = []
        self.calls: List[str] = []
        self.creative_calls: List[str] = []
        self.insight_fields: List[List[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = 0
        # When set, get_campaigns waits on it; lets a test hold a run mid-sync
        self.gate: Optional[asyncio.Event] = None

    def bind(self, token: str) -> "FakeMetaClient":
        self.tokens.append(token)
        return self

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if name in self.errors:
            raise self.errors[name]

    async def get_accounts(self):
        self._check("accounts")
        return [MetaAdAccount.model_validate(a) for a in self.accounts]

    async def get_account(self, account_id: str):
        self._check("account")
        match = next(a for a in self.accounts if a["id"] == account_id)
        return MetaAdAccount.model_validate(match)

    async def get_campaigns(self, account_id: str):
        self._check("campaigns")
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        return [MetaCampaign.model_validate(c) for c in self.campaigns]

    async def get_adsets(self, account_id: str):
        self._check("adsets")
        return [MetaAdSet.model_validate(s) for s in self.adsets]

    async def get_ads(self, account_id: str):
        self._check("ads")
        return [MetaAd.model_validate(a) for a in self.ads]

    async def get_creative_details(self, creative_id: str):
        self.creative_calls.append(creative_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if creative_id in self.failing_creatives:
                raise ProviderError(f"Unsupported get request for {creative_id}", 400, 100)
            return MetaCreative.model_validate(
                {"id": creative_id, "name": f"Creative {creative_id}",
                 "object_type": "SHARE", "title": "Great Ad", "body": "Buy now"}
            )
        finally:
            self.in_flight -= 1

    async def get_insights(self, object_id, level, date_start, date_stop, fields):
        self._check("insights")
        self.insight_fields.append(list(fields))
        return [MetaInsight.model_validate(r) for r in self.insights]

    async def close(self) -> None:
        self.closed += 1


@pytest.fixture
def fake_client():
    return FakeMetaClient()


@pytest.fixture
def token_manager(db_engine):
    return TokenManager(db_engine)


@pytest.fixture
def sync_engine(db_engine, token_manager, fake_client):
    return SyncEngine(
        db_engine,
        token_manager,
        client_factory=fake_client.bind,
        creative_chunk_size=5,
    )
