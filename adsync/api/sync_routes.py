"""AdSync — Manual Sync Routes."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from adsync.api.deps import Services, get_services
from adsync.config import settings
from adsync.core.errors import ValidationError
from adsync.core.logging import get_logger
from adsync.models.sync_models import RunStatus, SyncType

logger = get_logger("api.sync")

router = APIRouter(tags=["Sync"])

SYNC_TYPES = [t.value for t in SyncType]

STATUS_CODES = {RunStatus.ALREADY_RUNNING: 409, RunStatus.FAILED: 502}


@router.get("/sync")
async def sync_status(services: Services = Depends(get_services)):
    """Is a sync running, what is scheduled, and how did the last run go."""
    status = services.sync_engine.get_status()
    return {
        "status": "running" if status.is_running else "idle",
        "is_running": status.is_running,
        "running_scopes": status.running_scopes,
        "scheduled_jobs": status.scheduled_jobs,
        "last_run": status.last_run.model_dump(mode="json") if status.last_run else None,
        "recent_runs": [run.model_dump(mode="json") for run in status.recent_runs],
        "available_sync_types": SYNC_TYPES,
    }


async def _sync_params(request: Request) -> Dict[str, Any]:
    """Merge query-string parameters with an optional JSON body (body wins)."""
    params: Dict[str, Any] = dict(request.query_params)
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("body", "invalid JSON")
        if body is not None and not isinstance(body, dict):
            raise ValidationError("body", "expected a JSON object")
        params.update({k: v for k, v in (body or {}).items() if v is not None})
    return params


def _parse_days(raw: Any) -> int:
    if raw is None or raw == "":
        return settings.sync_default_days
    try:
        days = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("days", "must be a positive integer")
    if isinstance(raw, float) or days <= 0:
        raise ValidationError("days", "must be a positive integer")
    return days


@router.post("/sync")
async def trigger_sync(request: Request, services: Services = Depends(get_services)):
    """Run a sync synchronously and return its result."""
    params = await _sync_params(request)
    sync_type = params.get("type")
    if sync_type not in SYNC_TYPES:
        raise ValidationError("type", f"must be one of: {', '.join(SYNC_TYPES)}")
    days = _parse_days(params.get("days"))
    account_id = params.get("account_id") or None
    if sync_type == SyncType.ACCOUNT.value and not account_id:
        raise ValidationError("account_id", "required when type=account")

    engine = services.sync_engine
    logger.info(f"Manual {sync_type} sync requested", extra={"sync_type": sync_type})
    if sync_type == SyncType.ACCOUNTS.value:
        result = await engine.sync_all_accounts()
    elif sync_type == SyncType.CAMPAIGNS.value:
        result = await engine.sync_all_campaigns()
    elif sync_type == SyncType.INSIGHTS.value:
        result = await engine.sync_all_accounts_insights(days)
    else:
        result = await engine.sync_specific_account(str(account_id), days)

    body = {
        **result.model_dump(mode="json"),
        "sync_type": sync_type,
        "account_id": account_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(body, status_code=STATUS_CODES.get(result.status, 200))
