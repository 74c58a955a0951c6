"""AdSync — Read-Through Cache.

JSON values with per-key TTL in Redis. When Redis is not configured or cannot
be reached the manager falls back to an in-process TTL dictionary, so the
service keeps working (single-process only) without it.

Reads and writes never raise: a backend failure is logged and behaves like a
miss, which makes callers fetch fresh data.
"""

import fnmatch
import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from adsync.config import settings
from adsync.connectors.meta.fields import DEFAULT_INSIGHTS_LIMIT
from adsync.core.errors import CacheError
from adsync.core.logging import get_logger

logger = get_logger("cache")

ACCOUNTS_ALL_KEY = "accounts:all"
HEALTH_KEY = "health:check"


# ── Key helpers ──


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def campaigns_key(account_id: str) -> str:
    return f"campaigns:{account_id}"


def insights_prefix(account_id: str) -> str:
    return f"insights:{account_id}:"


def insights_key(
    account_id: str,
    level: str,
    entity_id: Optional[str],
    since: str,
    until: str,
    breakdowns: Optional[List[str]] = None,
    action_breakdowns: Optional[List[str]] = None,
    limit: int = DEFAULT_INSIGHTS_LIMIT,
) -> str:
    # the fetch limit caps the stored rows, so it is part of the identity
    return insights_prefix(account_id) + ":".join(
        [
            level,
            entity_id or "all",
            since,
            until,
            ",".join(breakdowns or []),
            ",".join(action_breakdowns or []),
            str(limit),
        ]
    )


class CacheManager:
    """Key-value cache with TTL, Redis-backed with an in-memory fallback."""

    def __init__(
        self,
        redis_url: str | None = None,
        key_prefix: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.redis_url = settings.redis_url if redis_url is None else redis_url
        self.key_prefix = settings.cache_key_prefix if key_prefix is None else key_prefix
        self._clock = clock
        self._redis: Optional[aioredis.Redis] = None
        self._memory: Dict[str, Tuple[str, float]] = {}
        self.hits = 0
        self.misses = 0

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    async def connect(self) -> None:
        """Connect to Redis; stay on the in-memory store if that fails."""
        if not self.redis_url:
            logger.info("No REDIS_URL configured, using in-memory cache")
            return
        client = aioredis.from_url(self.redis_url, decode_responses=True)
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"⚠️ Redis unavailable, falling back to in-memory cache: {e}")
            await client.aclose()
            return
        self._redis = client
        logger.info("✅ Connected to Redis cache")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        self._memory.clear()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    # ── Memory backend ──

    def _memory_get(self, full_key: str) -> Optional[str]:
        entry = self._memory.get(full_key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at <= self._clock():
            del self._memory[full_key]
            return None
        return raw

    # ── Primitive operations ──

    async def get(self, key: str) -> Optional[Any]:
        full_key = self._key(key)
        try:
            if self._redis is not None:
                raw = await self._redis.get(full_key)
            else:
                raw = self._memory_get(full_key)
            value = json.loads(raw) if raw is not None else None
        except (RedisError, OSError, ValueError) as e:
            logger.warning(f"Cache get failed: {e}", extra={"cache_key": key})
            value = None

        if value is None:
            self.misses += 1
            logger.debug("Cache miss", extra={"cache_key": key})
        else:
            self.hits += 1
            logger.debug("Cache hit", extra={"cache_key": key})
        return value

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        full_key = self._key(key)
        try:
            raw = json.dumps(value, default=str)
            if self._redis is not None:
                await self._redis.set(full_key, raw, ex=ttl)
            else:
                self._memory[full_key] = (raw, self._clock() + ttl)
        except (RedisError, OSError, TypeError, ValueError) as e:
            logger.warning(f"Cache set failed: {e}", extra={"cache_key": key})
            return False
        return True

    async def delete(self, key: str) -> bool:
        full_key = self._key(key)
        try:
            if self._redis is not None:
                return bool(await self._redis.delete(full_key))
            return self._memory.pop(full_key, None) is not None
        except (RedisError, OSError) as e:
            logger.warning(f"Cache delete failed: {e}", extra={"cache_key": key})
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern such as `insights:act_1:*`."""
        full_pattern = self._key(pattern)
        try:
            if self._redis is not None:
                keys = [k async for k in self._redis.scan_iter(match=full_pattern)]
                return await self._redis.delete(*keys) if keys else 0
            keys = [k for k in self._memory if fnmatch.fnmatchcase(k, full_pattern)]
            for k in keys:
                del self._memory[k]
            return len(keys)
        except (RedisError, OSError) as e:
            logger.warning(f"Cache pattern delete failed: {e}", extra={"cache_key": pattern})
            return 0

    async def exists(self, key: str) -> bool:
        full_key = self._key(key)
        try:
            if self._redis is not None:
                return bool(await self._redis.exists(full_key))
            return self._memory_get(full_key) is not None
        except (RedisError, OSError) as e:
            logger.warning(f"Cache exists failed: {e}", extra={"cache_key": key})
            return False

    async def cleanup_expired(self) -> int:
        """Drop expired in-memory entries. Redis expires keys on its own."""
        if self._redis is not None:
            return 0
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._memory.items() if expires_at <= now]
        for k in expired:
            del self._memory[k]
        if expired:
            logger.info(f"🧹 Removed {len(expired)} expired cache entries")
        return len(expired)

    async def stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        result: Dict[str, Any] = {
            "backend": self.backend,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
        }
        try:
            if self._redis is not None:
                result["keys"] = await self._redis.dbsize()
            else:
                result["keys"] = len(self._memory)
        except (RedisError, OSError) as e:
            logger.warning(f"Cache stats failed: {e}")
            result["keys"] = None
        return result

    async def check(self) -> Dict[str, Any]:
        """Write, read back and delete a probe key. Raises CacheError on failure."""
        started = time.perf_counter()
        full_key = self._key(HEALTH_KEY)
        probe = str(time.time())
        try:
            if self._redis is not None:
                await self._redis.set(full_key, probe, ex=10)
                echoed = await self._redis.get(full_key)
                await self._redis.delete(full_key)
            else:
                self._memory[full_key] = (probe, self._clock() + 10)
                echoed = self._memory_get(full_key)
                self._memory.pop(full_key, None)
        except (RedisError, OSError) as e:
            raise CacheError(f"Cache round-trip failed: {e}") from e
        if echoed != probe:
            raise CacheError("Cache round-trip returned a different value")
        return {
            "backend": self.backend,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    # ── Domain helpers ──

    async def cache_account(self, account: Dict[str, Any]) -> bool:
        return await self.set(account_key(account["id"]), account, settings.cache_ttl_accounts)

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        return await self.get(account_key(account_id))

    async def cache_accounts(self, accounts: List[Dict[str, Any]]) -> bool:
        return await self.set(ACCOUNTS_ALL_KEY, accounts, settings.cache_ttl_accounts)

    async def get_accounts(self) -> Optional[List[Dict[str, Any]]]:
        return await self.get(ACCOUNTS_ALL_KEY)

    async def cache_campaigns(self, account_id: str, campaigns: List[Dict[str, Any]]) -> bool:
        return await self.set(
            campaigns_key(account_id), campaigns, settings.cache_ttl_campaigns
        )

    async def get_campaigns(self, account_id: str) -> Optional[List[Dict[str, Any]]]:
        return await self.get(campaigns_key(account_id))

    async def cache_insights(self, key: str, payload: Dict[str, Any]) -> bool:
        """Store an insights result under a key built with `insights_key`."""
        return await self.set(key, payload, settings.cache_ttl_insights)

    async def get_insights(self, key: str) -> Optional[Dict[str, Any]]:
        return await self.get(key)

    async def invalidate_account(self, account_id: str, include_profile: bool = True) -> int:
        """Drop the campaign and insights keys of an account.

        With `include_profile` the account entry and the account list go too.
        """
        keys = [campaigns_key(account_id)]
        if include_profile:
            keys += [account_key(account_id), ACCOUNTS_ALL_KEY]
        removed = 0
        for key in keys:
            removed += int(await self.delete(key))
        removed += await self.delete_pattern(insights_prefix(account_id) + "*")
        logger.info(
            f"Invalidated {removed} cache keys for {account_id}",
            extra={"account_id": account_id},
        )
        return removed
