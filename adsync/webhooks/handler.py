"""AdSync — Webhook Ingestion Handler.

Verifies signed change notifications from the Graph API, invalidates the
affected cache keys and point-refreshes entities whose significant fields
changed. Each object type has its own `ChangeHandler`.

A point refresh may race with a fleet sync writing the same row; whichever
upsert lands last wins.
"""

import asyncio
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Dict, FrozenSet, Optional

from pydantic import ValidationError as PayloadError

from adsync.cache.cache_manager import CacheManager
from adsync.config import settings
from adsync.connectors.meta.fields import account_path
from adsync.core.errors import AuthError, ValidationError
from adsync.core.logging import get_logger
from adsync.realtime.broadcaster import Broadcaster, LoggingBroadcaster
from adsync.sync.engine import SyncEngine
from adsync.webhooks.payloads import ObjectType, WebhookChange, WebhookPayload

logger = get_logger("webhooks")

SIGNATURE_PREFIX = "sha256="


@dataclass
class WebhookReport:
    entries: int = 0
    changes: int = 0
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


# ── Per-object handlers ──


class ChangeHandler(ABC):
    """Reacts to one change of one object type. Returns True if it refreshed."""

    object_type: ObjectType
    significant_fields: FrozenSet[str] = frozenset()

    def __init__(self, engine: SyncEngine, cache: CacheManager):
        self.engine = engine
        self.cache = cache

    @abstractmethod
    async def handle(self, object_id: str, change: WebhookChange) -> bool:
        ...

    def is_significant(self, change: WebhookChange) -> bool:
        return change.field in self.significant_fields


class AdAccountChangeHandler(ChangeHandler):
    object_type = ObjectType.AD_ACCOUNT
    significant_fields = frozenset(
        {"account_status", "amount_spent", "balance", "spend_cap", "name", "currency"}
    )

    async def handle(self, object_id: str, change: WebhookChange) -> bool:
        account_id = account_path(object_id)
        await self.cache.invalidate_account(account_id)
        if not self.is_significant(change):
            logger.debug(f"Ignoring ad account field {change.field}", extra={"account_id": account_id})
            return False
        await self.engine.refresh_account(account_id)
        return True


class CampaignChangeHandler(ChangeHandler):
    object_type = ObjectType.CAMPAIGN
    significant_fields = frozenset(
        {
            "status",
            "configured_status",
            "effective_status",
            "daily_budget",
            "lifetime_budget",
            "budget_remaining",
            "bid_strategy",
            "optimization_goal",
            "spend_cap",
        }
    )

    async def _account_for(self, campaign_id: str) -> str:
        account_id = await asyncio.to_thread(
            self.engine.store.find_campaign_account_id, campaign_id
        )
        if account_id:
            return account_id
        raw = await self.engine.client.get_object(campaign_id, ["account_id"])
        return account_path(str(raw["account_id"]))

    async def handle(self, object_id: str, change: WebhookChange) -> bool:
        account_id = await self._account_for(object_id)
        await self.cache.invalidate_account(account_id, include_profile=False)
        if not self.is_significant(change):
            logger.debug(f"Ignoring campaign field {change.field}", extra={"entity_id": object_id})
            return False
        await self.engine.refresh_campaign(object_id, account_id)
        return True


class ChildObjectChangeHandler(ChangeHandler):
    """Ad sets and ads are not stored; only their account's cached data is dropped."""

    async def handle(self, object_id: str, change: WebhookChange) -> bool:
        raw = await self.engine.client.get_object(object_id, ["account_id"])
        account_id = account_path(str(raw["account_id"]))
        await self.cache.invalidate_account(account_id, include_profile=False)
        return False


class AdSetChangeHandler(ChildObjectChangeHandler):
    object_type = ObjectType.ADSET


class AdChangeHandler(ChildObjectChangeHandler):
    object_type = ObjectType.AD


class PageChangeHandler(ChangeHandler):
    object_type = ObjectType.PAGE

    async def handle(self, object_id: str, change: WebhookChange) -> bool:
        logger.info(f"Page change: {change.field}", extra={"entity_id": object_id, "entity_type": "page"})
        return False


HANDLER_CLASSES = (
    AdAccountChangeHandler,
    CampaignChangeHandler,
    AdSetChangeHandler,
    AdChangeHandler,
    PageChangeHandler,
)


class WebhookHandler:
    """Verification, signature checks and change dispatch."""

    def __init__(
        self,
        engine: SyncEngine,
        cache: CacheManager,
        broadcaster: Broadcaster | None = None,
        app_secret: str | None = None,
        verify_token: str | None = None,
    ):
        self.broadcaster = broadcaster or LoggingBroadcaster()
        self.app_secret = settings.meta_app_secret if app_secret is None else app_secret
        self.verify_token = (
            settings.meta_webhook_verify_token if verify_token is None else verify_token
        )
        self.handlers: Dict[ObjectType, ChangeHandler] = {
            cls.object_type: cls(engine, cache) for cls in HANDLER_CLASSES
        }

    # ── Verification ──

    def verify_challenge(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
        """Echo the subscription challenge when mode and token match."""
        token_ok = bool(self.verify_token) and hmac.compare_digest(
            (token or "").encode(), self.verify_token.encode()
        )
        if mode != "subscribe" or not token_ok or challenge is None:
            logger.warning(
                f"Webhook verification failed (mode={mode}, token={'present' if token else 'missing'})"
            )
            raise AuthError("Verification failed", status_code=403)
        logger.info("Webhook verification successful")
        return challenge

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """Check `x-hub-signature-256` (HMAC-SHA256 of the raw body)."""
        if not signature:
            logger.warning(f"Webhook missing signature ({len(body)} bytes)")
            raise ValidationError("x-hub-signature-256", "missing signature header")
        if not self.app_secret:
            logger.error("Webhook received but no app secret is configured")
            raise AuthError("Invalid signature", status_code=403)

        expected = SIGNATURE_PREFIX + hmac.new(
            self.app_secret.encode(), body, hashlib.sha256
        ).hexdigest()
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            logger.warning(f"Webhook signature validation failed ({len(body)} bytes)")
            raise AuthError("Invalid signature", status_code=403)

    @staticmethod
    def parse(body: bytes) -> WebhookPayload:
        try:
            data = json.loads(body)
        except ValueError as e:
            raise ValidationError("body", "invalid JSON payload") from e
        try:
            return WebhookPayload.model_validate(data)
        except PayloadError as e:
            raise ValidationError("body", f"unexpected payload shape: {e.error_count()} errors") from e

    # ── Processing ──

    async def process(self, payload: WebhookPayload) -> WebhookReport:
        """Apply every change; one failing change never stops the rest."""
        report = WebhookReport(entries=len(payload.entry))
        handler = self.handlers.get(payload.object_type) if payload.object_type else None

        for entry in payload.entry:
            if handler is None:
                logger.warning(
                    f"Unhandled webhook object type: {payload.object}",
                    extra={"entity_id": entry.id},
                )
                report.skipped += len(entry.changes)
                continue

            for change in entry.changes:
                report.changes += 1
                context = {"entity_id": entry.id, "entity_type": payload.object}
                try:
                    refreshed = await handler.handle(entry.id, change)
                except Exception as e:
                    report.failed += 1
                    logger.exception(
                        f"Failed to process webhook change {change.field}: {e}", extra=context
                    )
                    continue
                if refreshed:
                    report.refreshed += 1
                await self._announce(payload.object, entry.id, change, refreshed)

        logger.info(
            f"Webhook processed: {report.changes} changes, {report.refreshed} refreshed, "
            f"{report.failed} failed",
            extra={"entity_type": payload.object},
        )
        return report

    async def _announce(
        self, object_type: str, object_id: str, change: WebhookChange, refreshed: bool
    ) -> None:
        try:
            await self.broadcaster.broadcast(
                "meta_update",
                {
                    "object": object_type,
                    "id": object_id,
                    "field": change.field,
                    "refreshed": refreshed,
                },
            )
        except Exception as e:
            logger.warning(f"Broadcast of meta_update failed: {e}")
