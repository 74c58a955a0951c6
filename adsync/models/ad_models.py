"""AdSync — Stored Ad Models.

Upstream-authoritative copies of accounts, campaigns and daily insights.
Every table is written through idempotent upserts keyed by upstream identity.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel, UniqueConstraint


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdAccount(SQLModel, table=True):
    """Ad account, keyed by the upstream `act_<id>` identifier."""

    __tablename__ = "ad_accounts"

    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(default="", max_length=500)
    account_status: int = Field(default=1, index=True)
    currency: str = Field(default="", max_length=10)
    timezone_name: Optional[str] = Field(default=None, max_length=100)
    business_id: Optional[str] = Field(default=None, index=True)
    business_name: Optional[str] = None
    amount_spent: float = 0.0
    balance: float = 0.0
    spend_cap: Optional[float] = None
    created_time: Optional[datetime] = None
    capabilities_json: List[Any] = Field(default_factory=list, sa_column=Column(JSON))
    last_sync_at: Optional[datetime] = Field(default=None, index=True)
    updated_at: datetime = Field(default_factory=_utcnow)


class Campaign(SQLModel, table=True):
    """Campaign. The three status fields are kept as upstream reports them."""

    __tablename__ = "campaigns"

    id: str = Field(primary_key=True, max_length=255)
    account_id: str = Field(foreign_key="ad_accounts.id", index=True)
    name: str = Field(default="", max_length=500)
    objective: Optional[str] = Field(default=None, index=True)
    status: Optional[str] = Field(default=None, index=True)
    configured_status: Optional[str] = None
    effective_status: Optional[str] = None
    daily_budget: Optional[float] = None
    lifetime_budget: Optional[float] = None
    budget_remaining: Optional[float] = None
    bid_strategy: Optional[str] = None
    optimization_goal: Optional[str] = None
    spend_cap: Optional[float] = None
    start_time: Optional[datetime] = None
    stop_time: Optional[datetime] = None
    created_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None
    issues_info_json: List[Any] = Field(default_factory=list, sa_column=Column(JSON))
    last_sync_at: Optional[datetime] = Field(default=None, index=True)
    updated_at: datetime = Field(default_factory=_utcnow)


class DailyInsight(SQLModel, table=True):
    """Performance row for one entity over one reporting window.

    Unique on (entity_type, entity_id, date_start, date_stop, breakdown_key)
    so overlapping sync windows rewrite rows instead of duplicating them.
    """

    __tablename__ = "daily_insights"
    __table_args__ = (
        UniqueConstraint(
            "entity_type",
            "entity_id",
            "date_start",
            "date_stop",
            "breakdown_key",
            name="uq_daily_insight",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(index=True, description="account | campaign | adset | ad")
    entity_id: str = Field(index=True)
    entity_name: str = Field(default="")
    account_id: str = Field(index=True)
    date_start: str = Field(index=True, description="YYYY-MM-DD")
    date_stop: str = Field(description="YYYY-MM-DD")
    breakdown_key: str = Field(default="", description="'' when no breakdowns")
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    reach: int = 0
    frequency: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    cpp: float = 0.0
    actions_json: Dict[str, float] = Field(default_factory=dict, sa_column=Column(JSON))
    action_values_json: Dict[str, float] = Field(default_factory=dict, sa_column=Column(JSON))
    conversions_json: Dict[str, float] = Field(default_factory=dict, sa_column=Column(JSON))
    conversion_values_json: Dict[str, float] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )
    cost_per_action_type_json: Dict[str, float] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )
    video_metrics_json: Dict[str, Dict[str, float]] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )
    updated_at: datetime = Field(default_factory=_utcnow)
