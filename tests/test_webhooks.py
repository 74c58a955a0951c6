"""Tests for webhook verification, signatures and per-object change handling."""

import asyncio

import httpx
import pytest

from adsync.cache.cache_manager import campaigns_key
from adsync.connectors.meta.transformer import normalize_account, normalize_campaign
from adsync.core.errors import AuthError, ValidationError
from adsync.webhooks.handler import WebhookHandler
from adsync.webhooks.payloads import WebhookPayload

from conftest import VERIFY_TOKEN, graph_error, json_body, raw_account, raw_campaign, sign


def payload(object_type, object_id, *changes):
    return WebhookPayload.model_validate(
        {
            "object": object_type,
            "entry": [
                {
                    "id": object_id,
                    "time": 1718400000,
                    "changes": [{"field": f, "value": v} for f, v in changes],
                }
            ],
        }
    )


@pytest.fixture
def stored_campaign(store):
    store.upsert_ad_account(normalize_account(raw_account(1)))
    store.upsert_campaign(normalize_campaign(raw_campaign("c1", 1), "act_1"))


def test_verify_challenge_echoes(webhook_handler):
    assert webhook_handler.verify_challenge("subscribe", VERIFY_TOKEN, "12345") == "12345"


@pytest.mark.parametrize(
    "mode,token",
    [("subscribe", "wrong-token"), ("unsubscribe", VERIFY_TOKEN), (None, None)],
)
def test_verify_challenge_rejects(webhook_handler, mode, token):
    with pytest.raises(AuthError) as excinfo:
        webhook_handler.verify_challenge(mode, token, "12345")
    assert excinfo.value.status_code == 403


def test_signature_checks(webhook_handler):
    body = json_body({"object": "page", "entry": []})

    webhook_handler.verify_signature(body, sign(body))
    with pytest.raises(ValidationError):
        webhook_handler.verify_signature(body, None)
    with pytest.raises(AuthError):
        webhook_handler.verify_signature(body, sign(body, "other-secret"))
    with pytest.raises(AuthError):
        webhook_handler.verify_signature(body + b" ", sign(body))


def test_unconfigured_secret_rejects_everything(engine, cache):
    handler = WebhookHandler(engine, cache, app_secret="", verify_token=VERIFY_TOKEN)
    body = b"{}"
    with pytest.raises(AuthError):
        handler.verify_signature(body, sign(body, ""))


def test_parse_rejects_bad_bodies(webhook_handler):
    with pytest.raises(ValidationError):
        webhook_handler.parse(b"not json")
    with pytest.raises(ValidationError):
        webhook_handler.parse(b'{"entry": []}')


def test_parse_accepts_numeric_ids(webhook_handler):
    parsed = webhook_handler.parse(json_body({"object": "campaign", "entry": [{"id": 123, "changes": []}]}))
    assert parsed.entry[0].id == "123"


def test_account_significant_change_refreshes(graph, webhook_handler, store, cache, broadcaster):
    store.upsert_ad_account(normalize_account(raw_account(1)))
    graph.add("act_1", raw_account(1, account_status=2, name="Closed account"))

    async def scenario():
        await cache.cache_campaigns("act_1", [{"id": "c1"}])
        report = await webhook_handler.process(payload("ad_account", "act_1", ("account_status", 2)))
        return report, await cache.get_campaigns("act_1"), await cache.get_account("act_1")

    report, cached_campaigns, cached_account = asyncio.run(scenario())

    assert (report.changes, report.refreshed, report.failed) == (1, 1, 0)
    assert store.get_account("act_1").account_status == 2
    assert cached_campaigns is None
    assert cached_account["name"] == "Closed account"
    assert broadcaster.history[-1] == (
        "meta_update",
        {"object": "ad_account", "id": "act_1", "field": "account_status", "refreshed": True},
    )


def test_account_insignificant_change_only_invalidates(graph, webhook_handler, cache):
    async def scenario():
        await cache.cache_campaigns("act_1", [])
        report = await webhook_handler.process(payload("ad_account", "1", ("timezone_name", "UTC")))
        return report, await cache.exists(campaigns_key("act_1"))

    report, still_cached = asyncio.run(scenario())

    assert report.refreshed == 0
    assert still_cached is False
    assert graph.requests == []


def test_campaign_change_uses_stored_account(graph, webhook_handler, store, cache, stored_campaign):
    graph.add("c1", raw_campaign("c1", 1, status="PAUSED", effective_status="PAUSED"))

    async def scenario():
        await cache.cache_campaigns("act_1", [{"id": "c1", "status": "ACTIVE"}])
        report = await webhook_handler.process(payload("campaign", "c1", ("status", "PAUSED")))
        return report, await cache.get_campaigns("act_1")

    report, cached = asyncio.run(scenario())

    assert report.refreshed == 1
    assert cached is None
    assert store.get_campaign("c1").status == "PAUSED"
    # account resolved from the store, so only the refresh hit the network
    assert [graph.path_of(r) for r in graph.requests] == ["c1"]


def test_unknown_campaign_resolves_account_upstream(graph, webhook_handler, store):
    store.upsert_ad_account(normalize_account(raw_account(5)))

    def campaign(request):
        if request.url.params["fields"] == "account_id":
            return httpx.Response(200, json={"id": "c5", "account_id": "5"})
        return httpx.Response(200, json=raw_campaign("c5", 5))

    graph.add("c5", campaign)

    report = asyncio.run(webhook_handler.process(payload("campaign", "c5", ("daily_budget", "9000"))))

    assert report.refreshed == 1
    assert store.get_campaign("c5").account_id == "act_5"


def test_adset_change_invalidates_parent_account_data(graph, webhook_handler, cache):
    graph.add("as1", {"id": "as1", "account_id": "1"})

    async def scenario():
        await cache.cache_account({"id": "act_1"})
        await cache.cache_campaigns("act_1", [])
        report = await webhook_handler.process(payload("adset", "as1", ("status", "PAUSED")))
        return report, await cache.get_account("act_1"), await cache.get_campaigns("act_1")

    report, account, campaigns = asyncio.run(scenario())

    assert (report.changes, report.refreshed) == (1, 0)
    assert account == {"id": "act_1"}
    assert campaigns is None


def test_page_changes_are_log_only(graph, webhook_handler):
    report = asyncio.run(webhook_handler.process(payload("page", "p1", ("feed", {}))))
    assert (report.changes, report.refreshed, report.failed) == (1, 0, 0)
    assert graph.requests == []


def test_unknown_object_type_is_skipped(graph, webhook_handler):
    report = asyncio.run(webhook_handler.process(payload("instagram", "ig1", ("comments", {}))))
    assert (report.changes, report.skipped, report.failed) == (0, 1, 0)


def test_failed_change_does_not_stop_the_rest(graph, webhook_handler, store, stored_campaign):
    graph.add("c404", graph_error(400, "Unsupported get request"))
    graph.add("c1", raw_campaign("c1", 1, name="Renamed", status="PAUSED"))
    notification = WebhookPayload.model_validate(
        {
            "object": "campaign",
            "entry": [
                {"id": "c404", "changes": [{"field": "status", "value": "PAUSED"}]},
                {"id": "c1", "changes": [{"field": "status", "value": "PAUSED"}]},
            ],
        }
    )

    report = asyncio.run(webhook_handler.process(notification))

    assert (report.entries, report.changes, report.failed, report.refreshed) == (2, 2, 1, 1)
    assert store.get_campaign("c1").name == "Renamed"
