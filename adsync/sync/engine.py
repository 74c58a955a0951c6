"""AdSync — Synchronization Engine.

Pulls accounts, campaigns and insights from the Graph API, upserts them into
the store and writes the cacheable shapes through to the cache.

Fleet syncs (every account) are single-flight per scope: a second request for
a scope that is already running returns `already_running` instead of queueing.
Per-account syncs take no fleet lock. A webhook point refresh can race with a
fleet sync touching the same entity; the last upsert wins.
"""

import asyncio
import time
from collections import deque
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

from adsync.cache.cache_manager import (
    ACCOUNTS_ALL_KEY,
    CacheManager,
    insights_key,
    insights_prefix,
)
from adsync.config import settings
from adsync.connectors.meta.client import MetaClient
from adsync.connectors.meta.fields import (
    ACCOUNT_FIELDS,
    CAMPAIGN_FIELDS,
    DEFAULT_CAMPAIGNS_LIMIT,
    InsightLevel,
    InsightsOptions,
    TimeRange,
    account_path,
)
from adsync.connectors.meta.transformer import (
    insight_view,
    normalize_account,
    normalize_campaign,
    normalize_insight,
    summarize_insights,
)
from adsync.core.errors import StorageError, UpstreamError
from adsync.core.logging import get_logger
from adsync.models.ad_models import AdAccount, Campaign
from adsync.models.sync_models import (
    InsightsQuery,
    RunStatus,
    SyncResult,
    SyncRun,
    SyncStatus,
    SyncType,
)
from adsync.realtime.broadcaster import Broadcaster, LoggingBroadcaster
from adsync.storage.ad_store import AdStore

logger = get_logger("sync")

FLEET_SCOPES = (SyncType.ACCOUNTS, SyncType.CAMPAIGNS, SyncType.INSIGHTS)


def account_view(record: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe account shape served by the read paths and cached."""
    return AdAccount(**record).model_dump(mode="json", exclude={"updated_at", "last_sync_at"})


def campaign_view(record: Dict[str, Any]) -> Dict[str, Any]:
    return Campaign(**record).model_dump(mode="json", exclude={"updated_at", "last_sync_at"})


class SyncEngine:
    """Orchestrates upstream pulls, store writes and cache population."""

    def __init__(
        self,
        client: MetaClient,
        store: AdStore,
        cache: CacheManager,
        broadcaster: Broadcaster | None = None,
        batch_size: int | None = None,
        delay_between_batches: float | None = None,
        concurrency: int | None = None,
        fleet_timeout: float | None = None,
        rate_limit_max_wait: float | None = None,
        history_size: int | None = None,
        today: Callable[[], date] = date.today,
    ):
        self.client = client
        self.store = store
        self.cache = cache
        self.broadcaster = broadcaster or LoggingBroadcaster()
        self.batch_size = batch_size or settings.sync_batch_size
        self.delay_between_batches = (
            settings.sync_delay_between_batches
            if delay_between_batches is None
            else delay_between_batches
        )
        self.concurrency = concurrency or settings.sync_account_concurrency
        self.fleet_timeout = fleet_timeout or settings.sync_fleet_timeout
        self.rate_limit_max_wait = (
            settings.meta_rate_limit_max_wait
            if rate_limit_max_wait is None
            else rate_limit_max_wait
        )
        self._today = today
        self._locks: Dict[SyncType, asyncio.Lock] = {
            scope: asyncio.Lock() for scope in FLEET_SCOPES
        }
        self._active_accounts: Set[str] = set()
        self._history: Deque[SyncRun] = deque(maxlen=history_size or settings.sync_history_size)
        self._job_source: Callable[[], List[Dict[str, Any]]] = list

    # ── Status ──

    def is_running(self, scope: SyncType) -> bool:
        return self._locks[scope].locked()

    def get_status(self) -> SyncStatus:
        running = [scope.value for scope in FLEET_SCOPES if self.is_running(scope)]
        running += [f"account:{a}" for a in sorted(self._active_accounts)]
        return SyncStatus(
            is_running=bool(running),
            running_scopes=running,
            scheduled_jobs=list(self._job_source()),
            last_run=self._history[-1] if self._history else None,
            recent_runs=list(self._history),
        )

    def set_scheduled_jobs(
        self, jobs: List[Dict[str, Any]] | Callable[[], List[Dict[str, Any]]]
    ) -> None:
        """Publish scheduled jobs. A callable is read on every status call."""
        if callable(jobs):
            self._job_source = jobs
        else:
            snapshot = list(jobs)
            self._job_source = lambda: snapshot

    def date_range(self, days: int) -> TimeRange:
        """Trailing window [today - days, today]."""
        if days <= 0:
            raise ValueError("days must be a positive integer")
        today = self._today()
        return TimeRange((today - timedelta(days=days)).isoformat(), today.isoformat())

    # ── Run bookkeeping ──

    def _finish_run(self, run: SyncRun, result: SyncResult, started: float) -> None:
        result.finish(started, time.perf_counter())
        run.finished_at = run.started_at + timedelta(milliseconds=result.duration_ms)
        run.status = result.status
        run.processed = result.processed
        run.errors = result.errors
        run.records = result.records
        self._history.append(run)
        logger.info(
            f"{run.sync_type.value} sync {result.status.value}",
            extra={
                "sync_type": run.sync_type.value,
                "account_id": run.account_id,
                "processed": result.processed,
                "errors": result.errors,
                "duration_ms": result.duration_ms,
            },
        )

    async def _announce(self, run: SyncRun, result: SyncResult) -> None:
        try:
            await self.broadcaster.broadcast(
                "sync_completed",
                {
                    "sync_type": run.sync_type.value,
                    "account_id": run.account_id,
                    "status": result.status.value,
                    "processed": result.processed,
                    "errors": result.errors,
                },
            )
        except Exception as e:
            logger.warning(f"Broadcast of sync_completed failed: {e}")

    async def _run_fleet(
        self,
        scope: SyncType,
        body: Callable[[SyncResult], Awaitable[None]],
        days: Optional[int] = None,
    ) -> SyncResult:
        lock = self._locks[scope]
        if lock.locked():
            logger.warning(
                f"{scope.value} sync already running, request rejected",
                extra={"sync_type": scope.value},
            )
            return SyncResult.already_running()

        async with lock:
            run = SyncRun(sync_type=scope, days=days)
            result = SyncResult()
            started = time.perf_counter()
            logger.info(f"🔄 Starting {scope.value} sync", extra={"sync_type": scope.value})
            try:
                await asyncio.wait_for(body(result), timeout=self.fleet_timeout)
            except asyncio.TimeoutError:
                result.status = RunStatus.FAILED
                result.add_error(f"{scope.value} sync timed out after {self.fleet_timeout}s")
            except (UpstreamError, StorageError) as e:
                result.status = RunStatus.FAILED
                result.add_error(f"{scope.value} sync could not start: {e}")
                logger.error(
                    f"{scope.value} sync failed: {e}", extra={"sync_type": scope.value}
                )
            self._finish_run(run, result, started)

        await self._announce(run, result)
        return result

    async def _for_each_account(
        self,
        account_ids: List[str],
        worker: Callable[[str], Awaitable[None]],
        result: SyncResult,
    ) -> None:
        """Run `worker` per account in delayed batches under the concurrency cap."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(account_id: str) -> None:
            async with semaphore:
                await self._respect_rate_limit()
                try:
                    await worker(account_id)
                except Exception as e:
                    logger.exception(
                        f"Unexpected error syncing {account_id}: {e}",
                        extra={"account_id": account_id},
                    )
                    result.add_error(f"{account_id}: {e}")

        for start in range(0, len(account_ids), self.batch_size):
            if start and self.delay_between_batches:
                await asyncio.sleep(self.delay_between_batches)
            batch = account_ids[start : start + self.batch_size]
            await asyncio.gather(*(guarded(account_id) for account_id in batch))

    async def _respect_rate_limit(self) -> None:
        status = await self.client.check_rate_limit(probe=False)
        if status.get("status") != "rate_limited":
            return
        wait = min(max(float(status.get("regain_seconds") or 0), 1.0), self.rate_limit_max_wait)
        logger.warning(f"⏳ Upstream rate limited, pausing {wait:.0f}s before next account")
        await asyncio.sleep(wait)

    # ── Store + cache writes ──

    async def _store_account(self, record: Dict[str, Any], result: SyncResult) -> bool:
        try:
            await asyncio.to_thread(self.store.upsert_ad_account, record)
        except StorageError as e:
            logger.error(str(e), extra={"account_id": record["id"], "entity_type": "account"})
            result.add_error(f"{record['id']}: {e}")
            return False
        result.records += 1
        return True

    async def _store_campaigns(
        self, account_id: str, raw_campaigns: List[Dict[str, Any]], result: SyncResult
    ) -> List[Dict[str, Any]]:
        """Upsert campaigns; cache the list only when every row was written."""
        views = []
        failed = 0
        for raw in raw_campaigns:
            record = normalize_campaign(raw, account_id)
            try:
                await asyncio.to_thread(self.store.upsert_campaign, record)
            except StorageError as e:
                failed += 1
                logger.error(
                    str(e),
                    extra={"account_id": account_id, "entity_id": record["id"], "entity_type": "campaign"},
                )
                result.add_error(f"{record['id']}: {e}")
                continue
            result.records += 1
            views.append(campaign_view(record))
        if not failed:
            await self.cache.cache_campaigns(account_id, views)
        return views

    async def _store_insights(
        self,
        query: InsightsQuery,
        rows: List[Dict[str, Any]],
        result: SyncResult,
    ) -> Dict[str, Any]:
        level = InsightLevel(query.level)
        views = []
        failed = 0
        for row in rows:
            record = normalize_insight(row, level, query.account_id, query.entity_id)
            try:
                await asyncio.to_thread(self.store.upsert_daily_insight, record)
            except StorageError as e:
                failed += 1
                logger.error(
                    str(e),
                    extra={"account_id": query.account_id, "entity_id": record["entity_id"]},
                )
                result.add_error(f"{record['entity_id']}@{record['date_start']}: {e}")
                continue
            result.records += 1
            views.append(insight_view(record, row))

        payload = {"data": views, "summary": summarize_insights(views)}
        if not failed:
            key = insights_key(
                query.account_id,
                level.value,
                query.entity_id,
                query.date_start,
                query.date_end,
                query.breakdowns,
                query.action_breakdowns,
                query.limit,
            )
            await self.cache.cache_insights(key, payload)
        return payload

    async def _pull_insights(self, query: InsightsQuery, result: SyncResult) -> Dict[str, Any]:
        options = InsightsOptions(
            time_range=TimeRange(query.date_start, query.date_end),
            breakdowns=query.breakdowns,
            action_breakdowns=query.action_breakdowns,
            level=InsightLevel(query.level),
            limit=query.limit,
        )
        if query.entity_id:
            raw = await self.client.get_campaign_insights(query.entity_id, options)
        else:
            raw = await self.client.get_account_insights(query.account_id, options)
        return await self._store_insights(query, raw.get("data", []), result)

    def _default_insights_query(self, account_id: str, days: int) -> InsightsQuery:
        window = self.date_range(days)
        return InsightsQuery(
            account_id=account_id,
            level=InsightLevel.CAMPAIGN.value,
            date_start=window.since,
            date_end=window.until,
        )

    # ── Fleet syncs ──

    async def sync_all_accounts(self) -> SyncResult:
        """List every visible account and upsert each one."""

        async def body(result: SyncResult) -> None:
            listing = await self.client.get_ad_accounts()
            views = []
            for raw in listing.get("data", []):
                record = normalize_account(raw)
                if await self._store_account(record, result):
                    view = account_view(record)
                    views.append(view)
                    await self.cache.cache_account(view)
                result.processed += 1
            await self.cache.cache_accounts(views)

        return await self._run_fleet(SyncType.ACCOUNTS, body)

    async def sync_all_campaigns(self) -> SyncResult:
        """Fetch and upsert campaigns for every active stored account."""

        async def body(result: SyncResult) -> None:
            account_ids = await asyncio.to_thread(self.store.list_account_ids)

            async def one(account_id: str) -> None:
                try:
                    raw = await self.client.get_campaigns(account_id)
                except UpstreamError as e:
                    logger.error(
                        f"Campaign fetch failed for {account_id}: {e}",
                        extra={"account_id": account_id, "sync_type": "campaigns"},
                    )
                    result.add_error(f"{account_id}: {e}")
                    return
                await self._store_campaigns(account_id, raw.get("data", []), result)
                result.processed += 1

            await self._for_each_account(account_ids, one, result)

        return await self._run_fleet(SyncType.CAMPAIGNS, body)

    async def sync_all_accounts_insights(self, days: int = 7) -> SyncResult:
        """Campaign-level insights for the trailing `days` window of every active account."""
        self.date_range(days)

        async def body(result: SyncResult) -> None:
            account_ids = await asyncio.to_thread(self.store.list_account_ids)

            async def one(account_id: str) -> None:
                query = self._default_insights_query(account_id, days)
                await self.cache.delete_pattern(insights_prefix(account_id) + "*")
                try:
                    await self._pull_insights(query, result)
                except UpstreamError as e:
                    logger.error(
                        f"Insights fetch failed for {account_id}: {e}",
                        extra={"account_id": account_id, "sync_type": "insights"},
                    )
                    result.add_error(f"{account_id}: {e}")
                    return
                result.processed += 1

            await self._for_each_account(account_ids, one, result)

        return await self._run_fleet(SyncType.INSIGHTS, body, days=days)

    # ── Single account ──

    async def sync_specific_account(self, account_id: str, days: int = 7) -> SyncResult:
        """Profile, then campaigns, then insights for one account.

        The first upstream failure stops the remaining steps. No fleet lock is
        taken.
        """
        self.date_range(days)
        account_id = account_path(account_id)
        run = SyncRun(sync_type=SyncType.ACCOUNT, account_id=account_id, days=days)
        result = SyncResult()
        started = time.perf_counter()
        self._active_accounts.add(account_id)
        logger.info(f"🔄 Syncing account {account_id}", extra={"account_id": account_id})
        try:
            try:
                raw = await self.client.get_ad_account(account_id)
            except UpstreamError as e:
                result.status = RunStatus.FAILED
                result.add_error(f"{account_id}: {e}")
                return result

            record = normalize_account(raw)
            if not await self._store_account(record, result):
                result.status = RunStatus.FAILED
                return result
            await self.cache.cache_account(account_view(record))
            await self.cache.delete(ACCOUNTS_ALL_KEY)

            try:
                campaigns = await self.client.get_campaigns(account_id)
                await self._store_campaigns(account_id, campaigns.get("data", []), result)

                await self.cache.delete_pattern(insights_prefix(account_id) + "*")
                await self._pull_insights(self._default_insights_query(account_id, days), result)
            except UpstreamError as e:
                logger.error(
                    f"Account sync stopped for {account_id}: {e}",
                    extra={"account_id": account_id, "sync_type": "account"},
                )
                result.add_error(f"{account_id}: {e}")
            result.processed = 1
            return result
        finally:
            self._active_accounts.discard(account_id)
            self._finish_run(run, result, started)
            await self._announce(run, result)

    # ── Read-through helpers (cache miss path) ──

    async def fetch_accounts(self) -> List[Dict[str, Any]]:
        listing = await self.client.get_ad_accounts()
        result = SyncResult()
        views = []
        for raw in listing.get("data", []):
            record = normalize_account(raw)
            await self._store_account(record, result)
            views.append(account_view(record))
        if not result.errors:
            await self.cache.cache_accounts(views)
        return views

    async def ensure_account(self, account_id: str) -> None:
        """Make sure the account row exists before campaigns reference it."""
        account_id = account_path(account_id)
        if await asyncio.to_thread(self.store.get_account, account_id) is not None:
            return
        raw = await self.client.get_ad_account(account_id)
        record = normalize_account(raw)
        if await self._store_account(record, SyncResult()):
            await self.cache.cache_account(account_view(record))

    async def fetch_campaigns(
        self, account_id: str, limit: int = DEFAULT_CAMPAIGNS_LIMIT
    ) -> List[Dict[str, Any]]:
        account_id = account_path(account_id)
        await self.ensure_account(account_id)
        raw = await self.client.get_campaigns(account_id, limit=limit)
        return await self._store_campaigns(account_id, raw.get("data", []), SyncResult())

    async def fetch_insights(self, query: InsightsQuery) -> Dict[str, Any]:
        query = query.model_copy(update={"account_id": account_path(query.account_id)})
        return await self._pull_insights(query, SyncResult())

    # ── Point refresh (webhook path) ──

    async def refresh_account(self, account_id: str) -> Dict[str, Any]:
        """Re-fetch one account and upsert it. Errors propagate to the caller."""
        raw = await self.client.get_object(account_path(account_id), ACCOUNT_FIELDS)
        record = normalize_account(raw)
        await asyncio.to_thread(self.store.upsert_ad_account, record)
        view = account_view(record)
        await self.cache.cache_account(view)
        return view

    async def refresh_campaign(self, campaign_id: str, account_id: str) -> Dict[str, Any]:
        """Re-fetch one campaign and upsert it. The campaign list cache is left cold."""
        await self.ensure_account(account_id)
        raw = await self.client.get_object(campaign_id, CAMPAIGN_FIELDS)
        record = normalize_campaign(raw, account_id)
        await asyncio.to_thread(self.store.upsert_campaign, record)
        return campaign_view(record)
