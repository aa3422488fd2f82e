"""adsync — Meta API field projections.

Fields requested from each Graph API edge. Insight fields are split into a
base set and two consent-gated sets so that spend and conversion figures are
never even requested for an account that has not allowed them.
"""

from typing import List

ACCOUNT_FIELDS = (
    "id,account_id,name,currency,timezone_name,timezone_id,"
    "account_status,disable_reason"
)
CAMPAIGN_FIELDS = (
    "id,name,status,objective,start_time,stop_time,effective_status,updated_time"
)
ADSET_FIELDS = (
    "id,name,status,campaign_id,optimization_goal,start_time,end_time,updated_time"
)
AD_FIELDS = "id,name,status,adset_id,campaign_id,creative,updated_time"
CREATIVE_FIELDS = (
    "id,name,object_type,thumbnail_url,image_url,video_id,title,body,"
    "call_to_action_type,link_url,instagram_actor_id,page_id"
)

CAMPAIGN_EFFECTIVE_STATUSES = '["ACTIVE","PAUSED","ARCHIVED"]'
ENTITY_PAGE_LIMIT = 200
INSIGHT_PAGE_LIMIT = 500

BASE_INSIGHT_FIELDS: List[str] = [
    "account_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "impressions",
    "reach",
    "frequency",
    "clicks",
    "unique_clicks",
    "ctr",
    "inline_link_clicks",
    "landing_page_views",
    "video_p25_watched_actions",
    "video_p50_watched_actions",
    "video_p75_watched_actions",
    "video_p100_watched_actions",
    "video_3_sec_watched_actions",
    "video_avg_time_watched_actions",
]

# Requires Consent.allow_spend
SPEND_INSIGHT_FIELDS: List[str] = ["spend", "cpc", "cpm"]

# Requires Consent.allow_conversions
CONVERSION_INSIGHT_FIELDS: List[str] = ["actions", "action_values"]


def insight_fields(allow_spend: bool, allow_conversions: bool) -> List[str]:
    """Build the insight field list permitted by an account's consent."""
    fields = list(BASE_INSIGHT_FIELDS)
    if allow_spend:
        fields.extend(SPEND_INSIGHT_FIELDS)
    if allow_conversions:
        fields.extend(CONVERSION_INSIGHT_FIELDS)
    return fields
