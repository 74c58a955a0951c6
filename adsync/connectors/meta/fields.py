"""AdSync — Meta Graph API field projections and insights request options."""

import json
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

ACCOUNT_FIELDS = [
    "id",
    "name",
    "account_id",
    "account_status",
    "currency",
    "timezone_name",
    "business",
    "amount_spent",
    "balance",
    "spend_cap",
    "created_time",
    "capabilities",
]

CAMPAIGN_FIELDS = [
    "id",
    "name",
    "account_id",
    "objective",
    "status",
    "configured_status",
    "effective_status",
    "daily_budget",
    "lifetime_budget",
    "budget_remaining",
    "bid_strategy",
    "optimization_goal",
    "spend_cap",
    "start_time",
    "stop_time",
    "created_time",
    "updated_time",
    "issues_info",
]

VIDEO_FIELDS = [
    "video_play_actions",
    "video_p25_watched_actions",
    "video_p50_watched_actions",
    "video_p75_watched_actions",
    "video_p100_watched_actions",
    "video_avg_time_watched_actions",
    "video_complete_watched_actions",
]

INSIGHT_FIELDS = [
    "account_id",
    "campaign_id",
    "campaign_name",
    "adset_id",
    "adset_name",
    "ad_id",
    "ad_name",
    "spend",
    "impressions",
    "clicks",
    "reach",
    "frequency",
    "ctr",
    "cpc",
    "cpm",
    "cpp",
    "unique_clicks",
    "actions",
    "action_values",
    "conversions",
    "conversion_values",
    "cost_per_action_type",
    *VIDEO_FIELDS,
]

DEFAULT_CAMPAIGNS_LIMIT = 100
DEFAULT_INSIGHTS_LIMIT = 1000


class InsightLevel(str, Enum):
    """Aggregation level of an insights request."""

    ACCOUNT = "account"
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"


@dataclass
class TimeRange:
    since: str
    until: str

    def __post_init__(self) -> None:
        start = date.fromisoformat(self.since)
        end = date.fromisoformat(self.until)
        if start > end:
            raise ValueError(f"time range start {self.since} is after end {self.until}")

    def as_dict(self) -> Dict[str, str]:
        return {"since": self.since, "until": self.until}


@dataclass
class InsightsOptions:
    """Options recognised by the insights endpoints.

    `time_increment="1"` asks for one row per entity per day; pass None to get
    a single row spanning the whole range.
    """

    fields: List[str] = field(default_factory=lambda: list(INSIGHT_FIELDS))
    time_range: Optional[TimeRange] = None
    breakdowns: List[str] = field(default_factory=list)
    action_breakdowns: List[str] = field(default_factory=list)
    level: InsightLevel = InsightLevel.CAMPAIGN
    limit: int = DEFAULT_INSIGHTS_LIMIT
    time_increment: Optional[str] = "1"

    def __post_init__(self) -> None:
        self.level = InsightLevel(self.level)
        if self.limit <= 0:
            raise ValueError("limit must be positive")

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "fields": ",".join(self.fields),
            "limit": self.limit,
            "level": self.level.value,
        }
        if self.time_range:
            params["time_range"] = json.dumps(self.time_range.as_dict())
        if self.time_increment:
            params["time_increment"] = self.time_increment
        if self.breakdowns:
            params["breakdowns"] = ",".join(self.breakdowns)
        if self.action_breakdowns:
            params["action_breakdowns"] = ",".join(self.action_breakdowns)
        return params


def account_path(account_id: str) -> str:
    """Return the `act_<id>` node id the Graph API expects for ad accounts."""
    return account_id if account_id.startswith("act_") else f"act_{account_id}"
