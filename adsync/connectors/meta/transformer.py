"""adsync — Meta Response → Store Row Transformer.

Maps decoded Graph API structs onto table rows. Insight rows are redacted
a second time here: gated columns are written NULL unless the account's
consent allows them, whatever the provider returned.
"""

import json
from typing import Any, Dict, List, Optional

from adsync.models.meta_models import (
    Ad,
    AdAccount,
    AdCreative,
    AdSet,
    Campaign,
    Consent,
    InsightDaily,
)
from adsync.models.meta_schemas import (
    MetaActionValue,
    MetaAd,
    MetaAdAccount,
    MetaAdSet,
    MetaCampaign,
    MetaCreative,
    MetaInsight,
)

# Action types counted as conversions
CONVERSION_ACTION_TYPES = {
    "purchase",
    "lead",
    "complete_registration",
    "add_to_cart",
    "initiate_checkout",
    "subscribe",
    "onsite_conversion.lead_grouped",
}
CONVERSION_ACTION_PREFIXES = ("offsite_conversion.",)

VIDEO_ACTION_COLUMNS = {
    "video_p25_watched_actions": "video_p25_watched",
    "video_p50_watched_actions": "video_p50_watched",
    "video_p75_watched_actions": "video_p75_watched",
    "video_p100_watched_actions": "video_p100_watched",
    "video_3_sec_watched_actions": "video_3_sec_watched",
}


def normalize_account_id(account_id: str) -> str:
    """`123` and `act_123` both refer to the ad account `act_123`."""
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def _int(value: Optional[float]) -> int:
    return int(value) if value is not None else 0


def _float(value: Optional[float]) -> float:
    return float(value) if value is not None else 0.0


def _action_total(actions: Optional[List[MetaActionValue]]) -> float:
    """Sum of an action list; video metrics come back as [{video_view: n}]."""
    return sum(a.value for a in actions or [])


def _is_conversion(action_type: str) -> bool:
    return action_type in CONVERSION_ACTION_TYPES or action_type.startswith(
        CONVERSION_ACTION_PREFIXES
    )


def _conversions(row: MetaInsight) -> Dict[str, Any]:
    """Conversion counts and values keyed by action type."""
    counts = {
        a.action_type: a.value for a in row.actions or [] if _is_conversion(a.action_type)
    }
    values = {
        a.action_type: a.value
        for a in row.action_values or []
        if _is_conversion(a.action_type)
    }
    return {"counts": counts, "values": values}


# ── Accounts ──


def account_to_row(
    account: MetaAdAccount, user_id: Optional[str], existing: Optional[AdAccount] = None
) -> AdAccount:
    """Refresh provider fields; keep local sync flags of an existing row."""
    row = existing or AdAccount(id=normalize_account_id(account.id), account_id=account.account_id)
    row.account_id = account.account_id
    row.name = account.name
    row.currency = account.currency
    row.timezone_name = account.timezone_name
    row.timezone_id = account.timezone_id
    row.account_status = account.account_status
    row.disable_reason = account.disable_reason
    if user_id:
        row.linked_by_user_id = user_id
    return row


# ── Hierarchy ──


def campaign_to_row(c: MetaCampaign, account_id: str) -> Campaign:
    return Campaign(
        id=c.id,
        account_id=account_id,
        name=c.name,
        status=c.status,
        objective=c.objective,
        start_time=c.start_time,
        stop_time=c.stop_time,
        effective_status=c.effective_status,
        updated_time=c.updated_time,
    )


def adset_to_row(s: MetaAdSet, account_id: str) -> AdSet:
    return AdSet(
        id=s.id,
        account_id=account_id,
        campaign_id=s.campaign_id,
        name=s.name,
        status=s.status,
        optimization_goal=s.optimization_goal,
        start_time=s.start_time,
        end_time=s.end_time,
        updated_time=s.updated_time,
    )


def ad_to_row(a: MetaAd, account_id: str) -> Ad:
    return Ad(
        id=a.id,
        account_id=account_id,
        campaign_id=a.campaign_id,
        adset_id=a.adset_id,
        name=a.name,
        status=a.status,
        creative_id=a.creative_id,
        updated_time=a.updated_time,
    )


def creative_to_row(c: MetaCreative, account_id: str) -> AdCreative:
    return AdCreative(account_id=account_id, **c.model_dump())


# ── Insights ──


def insight_id(scope_level: str, scope_id: str, date_start: str) -> str:
    return f"{scope_level}_{scope_id}_{date_start}"


def insight_to_row(
    row: MetaInsight,
    account_id: str,
    consent: Optional[Consent],
    scope_level: str = "ad",
) -> InsightDaily:
    """Build an InsightDaily row, dropping anything the consent does not allow."""
    allow_spend = bool(consent and consent.allow_spend)
    allow_conversions = bool(consent and consent.allow_conversions)

    scope_id = {
        "ad": row.ad_id,
        "adset": row.adset_id,
        "campaign": row.campaign_id,
    }.get(scope_level) or row.account_id or account_id
    row_account = normalize_account_id(row.account_id) if row.account_id else account_id

    insight = InsightDaily(
        id=insight_id(scope_level, scope_id, row.date_start),
        scope_level=scope_level,
        scope_id=scope_id,
        account_id=row_account,
        campaign_id=row.campaign_id,
        adset_id=row.adset_id,
        date_start=row.date_start,
        date_stop=row.date_stop,
        impressions=_int(row.impressions),
        reach=_int(row.reach),
        frequency=_float(row.frequency),
        clicks=_int(row.clicks),
        unique_clicks=_int(row.unique_clicks),
        ctr=_float(row.ctr),
        inline_link_clicks=_int(row.inline_link_clicks),
        landing_page_views=_int(row.landing_page_views),
        video_avg_time_watched=_action_total(row.video_avg_time_watched_actions),
    )
    for source, column in VIDEO_ACTION_COLUMNS.items():
        setattr(insight, column, int(_action_total(getattr(row, source))))

    if allow_spend:
        insight.spend = _float(row.spend)
        insight.cpc = _float(row.cpc)
        insight.cpm = _float(row.cpm)

    if allow_conversions:
        insight.actions_json = json.dumps(
            [a.model_dump() for a in row.actions or []]
        )
        insight.conversions_json = json.dumps(_conversions(row))

    return insight
