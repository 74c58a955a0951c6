"""Shared fixtures: a fake Graph API, a temp SQLite store and the memory cache."""

import hashlib
import hmac
import json
from datetime import date
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest

from adsync.api.deps import Services
from adsync.cache.cache_manager import CacheManager
from adsync.connectors.meta.client import MetaClient, RetryPolicy
from adsync.connectors.meta.transformer import normalize_account
from adsync.database import build_engine
from adsync.realtime.broadcaster import Broadcaster
from adsync.storage.ad_store import AdStore
from adsync.sync.engine import SyncEngine
from adsync.webhooks.handler import WebhookHandler

BASE_URL = "https://graph.test/v23.0"
APP_SECRET = "test-app-secret"
VERIFY_TOKEN = "test-verify-token"
TODAY = date(2024, 6, 15)

Canned = Union[Dict[str, Any], tuple, Callable[[httpx.Request], httpx.Response]]


class RecordingBroadcaster(Broadcaster):
    """Keeps every broadcast event in order."""

    def __init__(self):
        self.history: List[Tuple[str, Dict[str, Any]]] = []

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        self.history.append((event, payload))


class FakeGraph:
    """Answers Graph API paths with canned responses and records every request.

    A route holds a sequence of responses; the last one repeats. A response is
    a JSON dict (200), a `(status, body)` / `(status, body, headers)` tuple, or
    a callable taking the request.
    """

    def __init__(self):
        self.routes: Dict[str, List[Canned]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, path: str, *responses: Canned) -> None:
        self.routes[path] = list(responses)

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if self.path_of(r) == path]

    @staticmethod
    def path_of(request: httpx.Request) -> str:
        return request.url.path.removeprefix("/v23.0").strip("/")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = self.path_of(request)
        responses = self.routes.get(path)
        if not responses:
            return httpx.Response(
                404, json={"error": {"message": f"Unknown path {path}", "code": 803}}
            )
        canned = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(canned):
            return canned(request)
        if isinstance(canned, tuple):
            status, body, *rest = canned
            return httpx.Response(status, json=body, headers=rest[0] if rest else None)
        return httpx.Response(200, json=canned)


def graph_error(status: int, message: str = "boom", code: int = 100) -> tuple:
    return (status, {"error": {"message": message, "code": code}})


def sign(body: bytes, secret: str = APP_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def raw_account(n: int, **overrides) -> Dict[str, Any]:
    account = {
        "id": f"act_{n}",
        "account_id": str(n),
        "name": f"Account {n}",
        "account_status": 1,
        "currency": "USD",
        "timezone_name": "America/New_York",
        "amount_spent": "1234.50",
        "balance": "10",
        "business": {"id": f"biz_{n}", "name": f"Business {n}"},
        "capabilities": ["CAN_USE_REACH_AND_FREQUENCY"],
    }
    account.update(overrides)
    return account


def raw_campaign(campaign_id: str, account_n: int, **overrides) -> Dict[str, Any]:
    campaign = {
        "id": campaign_id,
        "name": f"Campaign {campaign_id}",
        "account_id": str(account_n),
        "objective": "OUTCOME_SALES",
        "status": "ACTIVE",
        "configured_status": "ACTIVE",
        "effective_status": "ACTIVE",
        "daily_budget": "5000",
        "created_time": "2024-01-31T10:00:00+0000",
        "issues_info": [],
    }
    campaign.update(overrides)
    return campaign


def raw_insight(campaign_id: str, day: str, **overrides) -> Dict[str, Any]:
    row = {
        "campaign_id": campaign_id,
        "campaign_name": f"Campaign {campaign_id}",
        "date_start": day,
        "date_stop": day,
        "spend": "10.50",
        "impressions": "1000",
        "clicks": "25",
        "reach": "800",
        "ctr": "2.5",
        "cpc": "0.42",
        "cpm": "10.5",
        "actions": [{"action_type": "purchase", "value": "2"}],
    }
    row.update(overrides)
    return row


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def meta_client(graph):
    return MetaClient(
        access_token="test-token",
        base_url=BASE_URL,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, jitter=0),
        transport=httpx.MockTransport(graph.handler),
    )


@pytest.fixture
def store(tmp_path):
    ad_store = AdStore(build_engine(f"sqlite:///{tmp_path / 'adsync-test.db'}"))
    ad_store.init_schema()
    return ad_store


@pytest.fixture
def cache():
    return CacheManager(redis_url="", key_prefix="test:")


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def engine(meta_client, store, cache, broadcaster):
    return SyncEngine(
        meta_client,
        store,
        cache,
        broadcaster,
        batch_size=50,
        delay_between_batches=0,
        concurrency=1,
        rate_limit_max_wait=0,
        today=lambda: TODAY,
    )


@pytest.fixture
def webhook_handler(engine, cache, broadcaster):
    return WebhookHandler(
        engine, cache, broadcaster, app_secret=APP_SECRET, verify_token=VERIFY_TOKEN
    )


@pytest.fixture
def services(meta_client, store, cache, engine, webhook_handler, broadcaster):
    return Services(
        client=meta_client,
        store=store,
        cache=cache,
        sync_engine=engine,
        webhook_handler=webhook_handler,
        broadcaster=broadcaster,
    )


@pytest.fixture
def seeded_accounts(store):
    """Three active accounts already in the store."""
    for n in (1, 2, 3):
        store.upsert_ad_account(normalize_account(raw_account(n)))
    return ["act_1", "act_2", "act_3"]


def json_body(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()
