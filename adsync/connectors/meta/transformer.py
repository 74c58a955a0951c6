"""AdSync — Meta Raw → Store Record Transformer.

Upstream numbers arrive as strings; parsing happens here, never in the client.
"""

import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from adsync.connectors.meta.fields import InsightLevel, account_path

# Dimensions that may appear on a row when breakdowns are requested
BREAKDOWN_DIMENSIONS = (
    "age",
    "gender",
    "country",
    "region",
    "dma",
    "impression_device",
    "device_platform",
    "platform_position",
    "publisher_platform",
    "placement",
)

VIDEO_KEYS = {
    "video_play_actions": "play",
    "video_p25_watched_actions": "p25",
    "video_p50_watched_actions": "p50",
    "video_p75_watched_actions": "p75",
    "video_p100_watched_actions": "p100",
    "video_avg_time_watched_actions": "avg_time_watched",
    "video_complete_watched_actions": "complete_watched",
}


def safe_float(value: Any, default: float = 0.0) -> float:
    """Parse an upstream numeric string; missing, empty or NaN become `default`."""
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return default if math.isnan(result) or math.isinf(result) else result


def safe_int(value: Any, default: int = 0) -> int:
    return int(safe_float(value, float(default)))


def optional_float(value: Any) -> Optional[float]:
    """Like safe_float but keeps "not set" as None (budgets, spend caps)."""
    if value is None or value == "":
        return None
    return safe_float(value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse Graph API timestamps such as 2024-01-31T10:00:00+0000."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def action_map(items: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, float]:
    """Collapse an upstream `[{action_type, value}]` list into a mapping.

    Repeated action types (action breakdowns) are summed.
    """
    result: Dict[str, float] = {}
    for item in items or []:
        action_type = item.get("action_type")
        if not action_type:
            continue
        result[action_type] = result.get(action_type, 0.0) + safe_float(item.get("value"))
    return result


def video_metrics(row: Dict[str, Any]) -> Dict[str, Dict[str, float]]:
    return {short: action_map(row.get(key)) for key, short in VIDEO_KEYS.items()}


def breakdown_key(row: Dict[str, Any]) -> str:
    """Stable identity of the breakdown slice a row belongs to ("" for none)."""
    parts = [f"{dim}={row[dim]}" for dim in BREAKDOWN_DIMENSIONS if row.get(dim)]
    return "|".join(parts)


# ── Record builders ──


def normalize_account(raw: Dict[str, Any]) -> Dict[str, Any]:
    business = raw.get("business") or {}
    capabilities = raw.get("capabilities")
    return {
        "id": account_path(str(raw.get("id") or raw.get("account_id"))),
        "name": raw.get("name") or "",
        "account_status": safe_int(raw.get("account_status"), 1),
        "currency": raw.get("currency") or "",
        "timezone_name": raw.get("timezone_name"),
        "business_id": business.get("id"),
        "business_name": business.get("name"),
        "amount_spent": safe_float(raw.get("amount_spent")),
        "balance": safe_float(raw.get("balance")),
        "spend_cap": optional_float(raw.get("spend_cap")),
        "created_time": parse_timestamp(raw.get("created_time")),
        "capabilities_json": capabilities if isinstance(capabilities, list) else [],
    }


def normalize_campaign(raw: Dict[str, Any], account_id: str) -> Dict[str, Any]:
    return {
        "id": str(raw["id"]),
        "account_id": account_path(str(raw.get("account_id") or account_id)),
        "name": raw.get("name") or "",
        "objective": raw.get("objective"),
        "status": raw.get("status"),
        "configured_status": raw.get("configured_status"),
        "effective_status": raw.get("effective_status"),
        "daily_budget": optional_float(raw.get("daily_budget")),
        "lifetime_budget": optional_float(raw.get("lifetime_budget")),
        "budget_remaining": optional_float(raw.get("budget_remaining")),
        "bid_strategy": raw.get("bid_strategy"),
        "optimization_goal": raw.get("optimization_goal"),
        "spend_cap": optional_float(raw.get("spend_cap")),
        "start_time": parse_timestamp(raw.get("start_time")),
        "stop_time": parse_timestamp(raw.get("stop_time")),
        "created_time": parse_timestamp(raw.get("created_time")),
        "updated_time": parse_timestamp(raw.get("updated_time")),
        "issues_info_json": raw.get("issues_info") or [],
    }


def _entity_info(
    row: Dict[str, Any], level: InsightLevel, account_id: str
) -> tuple[str, str]:
    """Return (entity_id, entity_name) for an insight row at `level`."""
    if level == InsightLevel.AD:
        return row.get("ad_id", ""), row.get("ad_name", "")
    if level == InsightLevel.ADSET:
        return row.get("adset_id", ""), row.get("adset_name", "")
    if level == InsightLevel.CAMPAIGN:
        return row.get("campaign_id", ""), row.get("campaign_name", "")
    return account_id, "Account"


def normalize_insight(
    row: Dict[str, Any],
    level: InsightLevel,
    account_id: str,
    entity_id: Optional[str] = None,
) -> Dict[str, Any]:
    level = InsightLevel(level)
    row_entity_id, entity_name = _entity_info(row, level, account_id)
    return {
        "entity_type": level.value,
        "entity_id": row_entity_id or entity_id or account_id,
        "entity_name": entity_name,
        "account_id": account_path(account_id),
        "date_start": row.get("date_start", ""),
        "date_stop": row.get("date_stop", ""),
        "breakdown_key": breakdown_key(row),
        "spend": safe_float(row.get("spend")),
        "impressions": safe_int(row.get("impressions")),
        "clicks": safe_int(row.get("clicks")),
        "reach": safe_int(row.get("reach")),
        "frequency": safe_float(row.get("frequency")),
        "ctr": safe_float(row.get("ctr")),
        "cpc": safe_float(row.get("cpc")),
        "cpm": safe_float(row.get("cpm")),
        "cpp": safe_float(row.get("cpp")),
        "actions_json": action_map(row.get("actions")),
        "action_values_json": action_map(row.get("action_values")),
        "conversions_json": action_map(row.get("conversions")),
        "conversion_values_json": action_map(row.get("conversion_values")),
        "cost_per_action_type_json": action_map(row.get("cost_per_action_type")),
        "video_metrics_json": video_metrics(row),
    }


def insight_view(record: Dict[str, Any], row: Dict[str, Any]) -> Dict[str, Any]:
    """Response shape of one insight: the stored record plus breakdown values."""
    view = {
        "entity_id": record["entity_id"],
        "entity_type": record["entity_type"],
        "entity_name": record["entity_name"],
        "date_start": record["date_start"],
        "date_stop": record["date_stop"],
        "spend": record["spend"],
        "impressions": record["impressions"],
        "clicks": record["clicks"],
        "reach": record["reach"],
        "frequency": record["frequency"],
        "ctr": record["ctr"],
        "cpc": record["cpc"],
        "cpm": record["cpm"],
        "cpp": record["cpp"],
        "unique_clicks": safe_int(row.get("unique_clicks")),
        "actions": record["actions_json"],
        "action_values": record["action_values_json"],
        "conversions": record["conversions_json"],
        "cost_per_action_type": record["cost_per_action_type_json"],
        "video_metrics": record["video_metrics_json"],
    }
    for dim in BREAKDOWN_DIMENSIONS:
        if row.get(dim):
            view[dim] = row[dim]
    return view


def summarize_insights(rows: List[Dict[str, Any]]) -> Dict[str, float]:
    """Roll up insight rows.

    Spend, impressions and clicks are additive. Reach is the maximum across
    rows because audiences overlap between entities and days.
    """
    total_spend = sum(r.get("spend", 0.0) for r in rows)
    total_impressions = sum(r.get("impressions", 0) for r in rows)
    total_clicks = sum(r.get("clicks", 0) for r in rows)
    total_reach = max((r.get("reach", 0) for r in rows), default=0)
    return {
        "total_spend": round(total_spend, 2),
        "total_impressions": total_impressions,
        "total_clicks": total_clicks,
        "total_reach": total_reach,
        "avg_ctr": (total_clicks / total_impressions * 100) if total_impressions else 0.0,
        "avg_cpc": (total_spend / total_clicks) if total_clicks else 0.0,
        "avg_cpm": (total_spend / total_impressions * 1000) if total_impressions else 0.0,
    }
