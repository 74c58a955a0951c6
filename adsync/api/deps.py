"""AdSync — Service Container and Request Dependencies."""

import time
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request

from adsync.cache.cache_manager import CacheManager
from adsync.connectors.meta.client import MetaClient
from adsync.database import build_engine
from adsync.realtime.broadcaster import Broadcaster, LoggingBroadcaster
from adsync.scheduler.jobs import SyncScheduler
from adsync.storage.ad_store import AdStore
from adsync.sync.engine import SyncEngine
from adsync.webhooks.handler import WebhookHandler


@dataclass
class Services:
    """Everything the HTTP layer talks to, constructed once per app."""

    client: MetaClient
    store: AdStore
    cache: CacheManager
    sync_engine: SyncEngine
    webhook_handler: WebhookHandler
    broadcaster: Broadcaster
    scheduler: Optional[SyncScheduler] = None
    started_at: float = field(default_factory=time.time)


def build_services(broadcaster: Broadcaster | None = None) -> Services:
    """Wire the default collaborators from settings."""
    broadcaster = broadcaster or LoggingBroadcaster()
    client = MetaClient()
    store = AdStore(build_engine())
    cache = CacheManager()
    engine = SyncEngine(client, store, cache, broadcaster)
    return Services(
        client=client,
        store=store,
        cache=cache,
        sync_engine=engine,
        webhook_handler=WebhookHandler(engine, cache, broadcaster),
        broadcaster=broadcaster,
        scheduler=SyncScheduler(engine, cache),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
