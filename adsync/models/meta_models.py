"""adsync — Meta Ads Store Models.

One table per entity class of the account hierarchy plus the credential,
consent and sync-run records. Entity rows are keyed by the platform id and
hold the latest known state (full replace on every sync).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field, UniqueConstraint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncMode(str, Enum):
    """What triggered a sync run."""

    ON_DEMAND = "ON_DEMAND"
    SCHEDULED = "SCHEDULED"
    BACKFILL = "BACKFILL"


class SyncStatus(str, Enum):
    """SyncRun lifecycle. COMPLETED and FAILED are terminal."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.FAILED)


# ─────────────────────────────────────────────
# AUTH & CONFIG
# ─────────────────────────────────────────────


class AuthorizedUser(SQLModel, table=True):
    """The one live Meta credential of an app user."""

    __tablename__ = "authorized_users"

    user_id: str = Field(primary_key=True)
    meta_user_id: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AdAccount(SQLModel, table=True):
    """An ad account discovered for (or verified by) a user."""

    __tablename__ = "ad_accounts"

    id: str = Field(primary_key=True, description="act_{account_id}")
    account_id: str = Field(description="Numeric account id")
    name: Optional[str] = None
    currency: Optional[str] = None
    timezone_name: Optional[str] = None
    timezone_id: Optional[int] = None
    account_status: Optional[int] = None
    disable_reason: Optional[int] = None
    linked_by_user_id: Optional[str] = Field(default=None, index=True)
    sync_enabled: bool = Field(default=False)
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Consent(SQLModel, table=True):
    """Per-account permission to fetch and store monetary / conversion data."""

    __tablename__ = "consents"

    account_id: str = Field(primary_key=True, foreign_key="ad_accounts.id")
    allow_spend: bool = Field(default=False)
    allow_conversions: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow)


# ─────────────────────────────────────────────
# ENTITIES
# ─────────────────────────────────────────────


class Campaign(SQLModel, table=True):
    __tablename__ = "campaigns"

    id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    name: Optional[str] = None
    status: Optional[str] = None
    objective: Optional[str] = None
    start_time: Optional[str] = None
    stop_time: Optional[str] = None
    effective_status: Optional[str] = None
    updated_time: Optional[str] = Field(default=None, description="Source timestamp")
    updated_at: datetime = Field(default_factory=utcnow)


class AdSet(SQLModel, table=True):
    __tablename__ = "ad_sets"

    id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    campaign_id: Optional[str] = Field(default=None, index=True)
    name: Optional[str] = None
    status: Optional[str] = None
    optimization_goal: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    updated_time: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class Ad(SQLModel, table=True):
    __tablename__ = "ads"

    id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = Field(default=None, index=True)
    name: Optional[str] = None
    status: Optional[str] = None
    creative_id: Optional[str] = None
    updated_time: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class AdCreative(SQLModel, table=True):
    """Creative metadata. Fetched once per id; never refreshed by a sync."""

    __tablename__ = "ad_creatives"

    id: str = Field(primary_key=True)
    account_id: Optional[str] = Field(default=None, index=True)
    name: Optional[str] = None
    object_type: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_url: Optional[str] = None
    video_id: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    call_to_action_type: Optional[str] = None
    link_url: Optional[str] = None
    instagram_actor_id: Optional[str] = None
    page_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


# ─────────────────────────────────────────────
# METRICS
# ─────────────────────────────────────────────


class InsightDaily(SQLModel, table=True):
    """One day of delivery metrics for one entity.

    Unique on (scope_id, date_start) so re-syncing an overlapping window
    overwrites the day instead of duplicating it. spend/cpc/cpm and the
    action columns stay NULL unless the account granted the matching consent.
    """

    __tablename__ = "insights_daily"
    __table_args__ = (
        UniqueConstraint("scope_id", "date_start", name="uq_insight_scope_date"),
    )

    id: str = Field(primary_key=True, description="{scope_level}_{scope_id}_{date}")
    scope_level: str = Field(default="ad", description="ad | adset | campaign | account")
    scope_id: str = Field(index=True)
    account_id: str = Field(index=True)
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    date_start: str = Field(index=True, description="YYYY-MM-DD")
    date_stop: str = Field(description="YYYY-MM-DD")

    impressions: int = 0
    reach: int = 0
    frequency: float = 0.0
    clicks: int = 0
    unique_clicks: int = 0
    ctr: float = 0.0
    inline_link_clicks: int = 0
    landing_page_views: int = 0

    video_p25_watched: int = 0
    video_p50_watched: int = 0
    video_p75_watched: int = 0
    video_p100_watched: int = 0
    video_3_sec_watched: int = 0
    video_avg_time_watched: float = 0.0

    # Consent-gated
    spend: Optional[float] = None
    cpc: Optional[float] = None
    cpm: Optional[float] = None
    actions_json: Optional[str] = None
    conversions_json: Optional[str] = None

    updated_at: datetime = Field(default_factory=utcnow)


# ─────────────────────────────────────────────
# SYSTEM
# ─────────────────────────────────────────────


class SyncRun(SQLModel, table=True):
    """Audit and state record of one pipeline execution."""

    __tablename__ = "sync_runs"

    id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    mode: SyncMode
    status: SyncStatus = Field(default=SyncStatus.PENDING, index=True)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    records_processed: int = 0
    error_message: Optional[str] = None
    params_json: Optional[str] = None
