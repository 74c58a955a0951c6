"""AdSync — Meta Graph API Client.

Handles authentication, retry with exponential backoff, rate-limit inspection,
pagination, and batch requests.
"""

import asyncio
import json
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from adsync.config import settings
from adsync.connectors.meta.fields import (
    ACCOUNT_FIELDS,
    CAMPAIGN_FIELDS,
    DEFAULT_CAMPAIGNS_LIMIT,
    InsightsOptions,
    account_path,
)
from adsync.core.errors import UpstreamError
from adsync.core.logging import get_logger

logger = get_logger("meta.client")

MAX_PAGES = 50
USAGE_HEADERS = ("x-app-usage", "x-ad-account-usage", "x-business-use-case-usage")


@dataclass
class RetryPolicy:
    """Exponential backoff applied to retryable upstream failures."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.1

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.meta_max_retries,
            base_delay=settings.meta_retry_base_delay,
            max_delay=settings.meta_retry_max_delay,
            jitter=settings.meta_retry_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, self.jitter) if self.jitter else delay


@dataclass
class RateLimitSnapshot:
    """Latest usage reported by the upstream through response headers."""

    usage_pct: float = 0.0
    regain_seconds: int = 0
    observed_at: Optional[datetime] = None
    throttled: bool = False

    @property
    def status(self) -> str:
        if self.throttled or self.usage_pct >= 100 or self.regain_seconds > 0:
            return "rate_limited"
        return "healthy"


@dataclass
class BatchItemResult:
    """Outcome of one element of a batch request."""

    index: int
    success: bool
    status_code: int = 0
    data: Any = None
    error: Optional[str] = None


def _parse_usage_headers(headers: httpx.Headers) -> Optional[tuple[float, int]]:
    """Return (max usage percent, seconds to regain access) or None if absent."""
    seen = False
    usage = 0.0
    regain = 0
    for name in USAGE_HEADERS:
        raw = headers.get(name)
        if not raw:
            continue
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning(f"Unparseable {name} header: {raw[:100]}")
            continue
        seen = True
        if name == "x-business-use-case-usage":
            blocks = [b for items in payload.values() for b in items]
        else:
            blocks = [payload]
        for block in blocks:
            for key in ("call_count", "total_cputime", "total_time", "acc_id_util_pct"):
                usage = max(usage, float(block.get(key) or 0))
            regain = max(regain, int(block.get("estimated_time_to_regain_access") or 0))
    return (usage, regain) if seen else None


class MetaClient:
    """Async HTTP client for the Meta Graph API."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token or settings.meta_access_token
        self.base_url = (base_url or settings.meta_graph_url).rstrip("/")
        self.timeout = timeout or settings.meta_request_timeout
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.rate_limit = RateLimitSnapshot()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _record_usage(self, headers: httpx.Headers) -> None:
        parsed = _parse_usage_headers(headers)
        if parsed is None:
            return
        self.rate_limit.usage_pct, self.rate_limit.regain_seconds = parsed
        self.rate_limit.observed_at = datetime.now(timezone.utc)

    @staticmethod
    def _error_from_response(resp: httpx.Response) -> UpstreamError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        error = body.get("error", {}) if isinstance(body, dict) else {}
        message = error.get("message") or f"HTTP {resp.status_code}"
        return UpstreamError(message, resp.status_code, error.get("code", 0), body)

    # ── Core Request Method ──

    async def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
    ) -> Any:
        """Make a request with retry + rate-limit handling."""
        client = await self._get_client()
        url = self._url(path)
        headers = {"Authorization": f"Bearer {self.access_token}"}
        policy = self.retry_policy

        for attempt in range(1, policy.max_attempts + 1):
            try:
                resp = await client.request(
                    method, url, params=params, data=data, headers=headers
                )
            except httpx.RequestError as e:
                error = UpstreamError(f"Connection failed: {e}")
            else:
                self._record_usage(resp.headers)
                if resp.is_success:
                    self.rate_limit.throttled = False
                    try:
                        return resp.json()
                    except ValueError:
                        return {}
                error = self._error_from_response(resp)
                if error.is_rate_limit:
                    self.rate_limit.throttled = True

            if not error.retryable or attempt == policy.max_attempts:
                logger.error(
                    f"{method} {path} failed: {error}",
                    extra={"endpoint": path, "status_code": error.status_code},
                )
                raise error

            wait = policy.delay_for(attempt)
            logger.warning(
                f"{method} {path} returned {error.status_code or 'no response'}. "
                f"Retrying in {wait:.1f}s (attempt {attempt}/{policy.max_attempts})",
                extra={"endpoint": path, "status_code": error.status_code},
            )
            await asyncio.sleep(wait)

        raise UpstreamError("Max retries exhausted")

    # ── Generic Passthrough ──

    async def get(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, body: Dict[str, Any] | None = None) -> Any:
        # Graph API takes form-encoded parameters; nested values travel as JSON
        data = {
            k: json.dumps(v) if isinstance(v, (dict, list)) else v
            for k, v in (body or {}).items()
        }
        return await self._request("POST", path, data=data)

    async def delete(self, path: str) -> Any:
        return await self._request("DELETE", path)

    async def get_object(self, object_id: str, fields: List[str]) -> Dict[str, Any]:
        """Point fetch of a single node."""
        return await self.get(object_id, {"fields": ",".join(fields)})

    # ── Pagination ──

    async def _paginated_get(
        self,
        path: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = MAX_PAGES,
        max_items: int | None = None,
    ) -> List[Dict[str, Any]]:
        """Fetch all pages of a paginated endpoint."""
        all_data: List[Dict[str, Any]] = []
        current = path

        for page in range(max_pages):
            # The `next` URL already carries the query string
            result = await self.get(current, params if page == 0 else None)
            all_data.extend(result.get("data", []))
            if max_items is not None and len(all_data) >= max_items:
                all_data = all_data[:max_items]
                break

            next_url = result.get("paging", {}).get("next")
            if not next_url:
                break
            current = next_url

        logger.info(f"Fetched {len(all_data)} records from {path}", extra={"endpoint": path})
        return all_data

    # ── Typed Accessors ──

    async def get_ad_accounts(self) -> Dict[str, Any]:
        """All ad accounts visible to the current credential."""
        data = await self._paginated_get(
            "me/adaccounts", {"fields": ",".join(ACCOUNT_FIELDS), "limit": 100}
        )
        return {"data": data}

    async def get_ad_account(self, account_id: str) -> Dict[str, Any]:
        return await self.get_object(account_path(account_id), ACCOUNT_FIELDS)

    async def get_campaigns(
        self, account_id: str, fields: List[str] | None = None, limit: int = DEFAULT_CAMPAIGNS_LIMIT
    ) -> Dict[str, Any]:
        """Up to `limit` campaigns of an account."""
        if limit <= 0:
            raise ValueError("limit must be positive")
        params = {"fields": ",".join(fields or CAMPAIGN_FIELDS), "limit": limit}
        result = await self.get(f"{account_path(account_id)}/campaigns", params)
        return {"data": result.get("data", [])}

    async def get_campaign_insights(
        self, entity_id: str, options: InsightsOptions | None = None
    ) -> Dict[str, Any]:
        """Insights rooted at a campaign, ad set or ad node. Rows are returned raw."""
        options = options or InsightsOptions()
        data = await self._paginated_get(
            f"{entity_id}/insights", options.to_params(), max_items=options.limit
        )
        return {"data": data}

    async def get_account_insights(
        self, account_id: str, options: InsightsOptions | None = None
    ) -> Dict[str, Any]:
        """Insights rooted at an ad account. Rows are returned raw."""
        options = options or InsightsOptions()
        data = await self._paginated_get(
            f"{account_path(account_id)}/insights",
            options.to_params(),
            max_items=options.limit,
        )
        return {"data": data}

    # ── Batch ──

    async def batch_request(self, requests: List[Dict[str, Any]]) -> List[BatchItemResult]:
        """Run several calls in one round trip.

        Each request is `{"method", "relative_url", "body"?}`. Results keep the
        input order; a failed item does not affect its siblings.
        """
        batch = []
        for req in requests:
            item = {"method": req["method"].upper(), "relative_url": req["relative_url"]}
            body = req.get("body")
            if body:
                item["body"] = body if isinstance(body, str) else str(httpx.QueryParams(body))
            batch.append(item)

        raw = await self._request(
            "POST", "", data={"batch": json.dumps(batch), "include_headers": "false"}
        )

        results: List[BatchItemResult] = []
        for index, item in enumerate(raw if isinstance(raw, list) else []):
            if item is None:
                results.append(
                    BatchItemResult(index, False, error="No response for batch item")
                )
                continue
            code = int(item.get("code", 0))
            try:
                body = json.loads(item.get("body") or "null")
            except ValueError:
                body = item.get("body")
            if 200 <= code < 300:
                results.append(BatchItemResult(index, True, code, data=body))
            else:
                message = (
                    body.get("error", {}).get("message")
                    if isinstance(body, dict)
                    else None
                )
                results.append(
                    BatchItemResult(index, False, code, error=message or f"HTTP {code}")
                )

        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning(f"Batch request: {failed}/{len(results)} items failed")
        return results

    # ── Rate Limit / Health ──

    async def check_rate_limit(self, probe: bool = True) -> Dict[str, Any]:
        """Report upstream rate-limit status.

        Uses the usage headers of the most recent response when any were seen;
        otherwise (and only if `probe`) makes a cheap `/me` call.
        """
        snapshot = self.rate_limit
        if snapshot.observed_at is None and not snapshot.throttled and probe:
            try:
                await self.get("me", {"fields": "id"})
            except UpstreamError as e:
                if e.is_rate_limit:
                    return {"status": "rate_limited", "error": str(e)}
                return {"status": "unhealthy", "error": str(e)}

        return {
            "status": snapshot.status,
            "usage_pct": snapshot.usage_pct,
            "regain_seconds": snapshot.regain_seconds,
            "observed_at": snapshot.observed_at.isoformat() if snapshot.observed_at else None,
        }
