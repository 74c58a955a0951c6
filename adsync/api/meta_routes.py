"""AdSync — Read Routes for Accounts, Campaigns and Insights.

Each read checks the cache first and falls through to the sync engine's
fetch-store-cache path on a miss. Filters are applied to the result set, never
sent upstream.
"""

from datetime import date, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from adsync.api.deps import Services, get_services
from adsync.cache.cache_manager import insights_key
from adsync.connectors.meta.fields import (
    DEFAULT_CAMPAIGNS_LIMIT,
    DEFAULT_INSIGHTS_LIMIT,
    InsightLevel,
    account_path,
)
from adsync.core.errors import ValidationError
from adsync.core.logging import get_logger
from adsync.models.sync_models import InsightsQuery

logger = get_logger("api.meta")

router = APIRouter(tags=["Meta"])


def _split(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _parse_date(field: str, value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(field, "expected YYYY-MM-DD")


@router.get("/accounts")
async def list_accounts(services: Services = Depends(get_services)):
    """All ad accounts visible to the configured credential."""
    accounts = await services.cache.get_accounts()
    cached = accounts is not None
    if not cached:
        accounts = await services.sync_engine.fetch_accounts()
    return {"data": accounts, "total": len(accounts), "cached": cached}


@router.get("/campaigns")
async def list_campaigns(
    account_id: str = Query(..., min_length=1),
    limit: int = Query(DEFAULT_CAMPAIGNS_LIMIT, gt=0),
    status: Optional[str] = None,
    objective: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """Campaigns of one account, optionally filtered by status and objective."""
    account_id = account_path(account_id)
    campaigns = await services.cache.get_campaigns(account_id)
    # a full cached page may hide campaigns beyond it
    cached = campaigns is not None and not (
        limit > len(campaigns) >= DEFAULT_CAMPAIGNS_LIMIT
    )
    if not cached:
        campaigns = await services.sync_engine.fetch_campaigns(
            account_id, limit=max(limit, DEFAULT_CAMPAIGNS_LIMIT)
        )

    if status:
        campaigns = [c for c in campaigns if c.get("status") == status]
    if objective:
        campaigns = [c for c in campaigns if c.get("objective") == objective]
    return {"data": campaigns[:limit], "total": len(campaigns), "cached": cached}


@router.get("/insights")
async def list_insights(
    account_id: str = Query(..., min_length=1),
    level: InsightLevel = InsightLevel.CAMPAIGN,
    entity_id: Optional[str] = None,
    date_start: Optional[str] = None,
    date_end: Optional[str] = None,
    breakdowns: Optional[str] = None,
    action_breakdowns: Optional[str] = None,
    limit: int = Query(DEFAULT_INSIGHTS_LIMIT, gt=0),
    services: Services = Depends(get_services),
):
    """Insights for an account (or one entity under it) over a date window."""
    today = date.today()
    start = _parse_date("date_start", date_start) if date_start else today - timedelta(days=7)
    end = _parse_date("date_end", date_end) if date_end else today
    if start > end:
        raise ValidationError("date_start", "must not be after date_end")

    query = InsightsQuery(
        account_id=account_path(account_id),
        level=level.value,
        entity_id=entity_id or None,
        date_start=start.isoformat(),
        date_end=end.isoformat(),
        breakdowns=_split(breakdowns),
        action_breakdowns=_split(action_breakdowns),
        # small reads share the default page; `limit` only trims the response
        limit=max(limit, DEFAULT_INSIGHTS_LIMIT),
    )
    key = insights_key(
        query.account_id,
        query.level,
        query.entity_id,
        query.date_start,
        query.date_end,
        query.breakdowns,
        query.action_breakdowns,
        query.limit,
    )
    payload = await services.cache.get_insights(key)
    cached = payload is not None
    if not cached:
        payload = await services.sync_engine.fetch_insights(query)

    rows = payload["data"]
    return {
        "data": rows[:limit],
        "summary": payload["summary"],
        "total": len(rows),
        "cached": cached,
    }
