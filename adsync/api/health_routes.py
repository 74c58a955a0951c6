"""AdSync — Health Check Route."""

import asyncio
import platform
import resource
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from adsync.api.deps import Services, get_services
from adsync.config import settings
from adsync.core.errors import CacheError, StorageError
from adsync.core.logging import get_logger
from adsync.storage.ad_store import AdStore

logger = get_logger("api.health")

router = APIRouter(tags=["System"])

MEMORY_DEGRADED_BYTES = 1024 ** 3


def _check(service: str, status: str, started: float, **details: Any) -> Dict[str, Any]:
    return {
        "service": service,
        "status": status,
        "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
        "details": details,
    }


def _probe_database(store: AdStore) -> Dict[str, int]:
    with store.connection() as conn:
        conn.execute(text("SELECT 1"))
    return store.counts()


async def check_database(services: Services) -> Dict[str, Any]:
    started = time.perf_counter()
    try:
        counts = await asyncio.to_thread(_probe_database, services.store)
    except StorageError as e:
        logger.error(f"Database health check failed: {e}")
        return _check("database", "unhealthy", started, error="database unreachable")
    return _check("database", "healthy", started, tables=counts)


async def check_cache(services: Services) -> Dict[str, Any]:
    started = time.perf_counter()
    try:
        probe = await services.cache.check()
    except CacheError as e:
        logger.error(f"Cache health check failed: {e}")
        return _check("cache", "unhealthy", started, error="cache round-trip failed")
    stats = await services.cache.stats()
    return _check("cache", "healthy", started, **probe, stats=stats)


async def check_upstream(services: Services) -> Dict[str, Any]:
    started = time.perf_counter()
    rate = await services.client.check_rate_limit()
    status = {"healthy": "healthy", "rate_limited": "degraded"}.get(rate["status"], "unhealthy")
    details = {k: v for k, v in rate.items() if k not in ("status", "error")}
    details["rate_status"] = rate["status"]
    return _check("meta_api", status, started, **details)


def check_sync_engine(services: Services) -> Dict[str, Any]:
    started = time.perf_counter()
    status = services.sync_engine.get_status()
    return _check(
        "sync_engine",
        "healthy",
        started,
        is_running=status.is_running,
        running_scopes=status.running_scopes,
        scheduled_jobs=len(status.scheduled_jobs),
        last_run=status.last_run.model_dump(mode="json") if status.last_run else None,
    )


def check_system() -> Dict[str, Any]:
    started = time.perf_counter()
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is kilobytes on Linux, bytes on macOS
    max_rss = usage.ru_maxrss if sys.platform == "darwin" else usage.ru_maxrss * 1024
    status = "degraded" if max_rss > MEMORY_DEGRADED_BYTES else "healthy"
    return _check(
        "system",
        status,
        started,
        max_rss_bytes=max_rss,
        user_cpu_seconds=round(usage.ru_utime, 2),
        system_cpu_seconds=round(usage.ru_stime, 2),
    )


def overall_status(checks: List[Dict[str, Any]]) -> str:
    statuses = {c["status"] for c in checks}
    if "unhealthy" in statuses:
        return "unhealthy"
    if "degraded" in statuses:
        return "degraded"
    return "healthy"


@router.get("/health")
async def health_check(detailed: bool = False, services: Services = Depends(get_services)):
    """Aggregate health. 503 when any sub-check is unhealthy; degraded is still 200."""
    checks = [
        await check_database(services),
        await check_cache(services),
        await check_upstream(services),
    ]
    if detailed:
        checks += [check_sync_engine(services), check_system()]

    status = overall_status(checks)
    body = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": checks,
        "overall": {
            "uptime": round(time.time() - services.started_at, 2),
            "version": settings.app_version,
            "environment": settings.environment,
            "python_version": platform.python_version(),
        },
    }
    return JSONResponse(body, status_code=503 if status == "unhealthy" else 200)
