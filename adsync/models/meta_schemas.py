"""adsync — Typed Meta API response structs.

Each Graph API endpoint decodes into one of these models. Unknown keys are
ignored; a missing id or a non-numeric metric fails validation, which the
client turns into ProviderResponseError.
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class MetaModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TokenResponse(MetaModel):
    """Response of /oauth/access_token."""

    access_token: str
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


class MetaAdAccount(MetaModel):
    id: str
    account_id: str
    name: Optional[str] = None
    currency: Optional[str] = None
    timezone_name: Optional[str] = None
    timezone_id: Optional[int] = None
    account_status: Optional[int] = None
    disable_reason: Optional[int] = None


class MetaCampaign(MetaModel):
    id: str
    name: Optional[str] = None
    status: Optional[str] = None
    objective: Optional[str] = None
    start_time: Optional[str] = None
    stop_time: Optional[str] = None
    effective_status: Optional[str] = None
    updated_time: Optional[str] = None


class MetaAdSet(MetaModel):
    id: str
    campaign_id: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None
    optimization_goal: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    updated_time: Optional[str] = None


class CreativeRef(MetaModel):
    id: str


class MetaAd(MetaModel):
    id: str
    adset_id: Optional[str] = None
    campaign_id: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None
    creative: Optional[CreativeRef] = None
    updated_time: Optional[str] = None

    @property
    def creative_id(self) -> Optional[str]:
        return self.creative.id if self.creative else None


class MetaCreative(MetaModel):
    id: str
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


class MetaActionValue(MetaModel):
    """An {action_type, value} pair. Meta sends the value as a string."""

    action_type: str
    value: float = 0.0


class MetaInsight(MetaModel):
    """One row of /insights with time_increment=1.

    Meta returns every metric as a numeric string; pydantic parses them.
    """

    date_start: str
    date_stop: str
    account_id: Optional[str] = None
    campaign_id: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None

    impressions: Optional[float] = None
    reach: Optional[float] = None
    frequency: Optional[float] = None
    clicks: Optional[float] = None
    unique_clicks: Optional[float] = None
    ctr: Optional[float] = None
    inline_link_clicks: Optional[float] = None
    landing_page_views: Optional[float] = None

    spend: Optional[float] = None
    cpc: Optional[float] = None
    cpm: Optional[float] = None

    actions: Optional[List[MetaActionValue]] = None
    action_values: Optional[List[MetaActionValue]] = None

    video_p25_watched_actions: Optional[List[MetaActionValue]] = None
    video_p50_watched_actions: Optional[List[MetaActionValue]] = None
    video_p75_watched_actions: Optional[List[MetaActionValue]] = None
    video_p100_watched_actions: Optional[List[MetaActionValue]] = None
    video_3_sec_watched_actions: Optional[List[MetaActionValue]] = None
    video_avg_time_watched_actions: Optional[List[MetaActionValue]] = None
