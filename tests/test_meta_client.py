"""Tests for the Graph API client: retries, pagination, batch and rate limits."""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from adsync.connectors.meta.client import RetryPolicy
from adsync.connectors.meta.fields import InsightLevel, InsightsOptions, TimeRange
from adsync.core.errors import UpstreamError

from conftest import graph_error, raw_account


def test_retries_server_errors_then_succeeds(graph, meta_client):
    graph.add("act_1", graph_error(500), graph_error(503), raw_account(1))

    result = asyncio.run(meta_client.get_ad_account("1"))

    assert result["id"] == "act_1"
    assert len(graph.calls("act_1")) == 3


def test_client_error_is_not_retried(graph, meta_client):
    graph.add("act_1", graph_error(400, "Invalid parameter"), raw_account(1))

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(meta_client.get_ad_account("act_1"))

    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == "Invalid parameter"
    assert excinfo.value.body["error"]["code"] == 100
    assert len(graph.calls("act_1")) == 1


def test_gives_up_after_max_attempts(graph, meta_client):
    graph.add("act_1", graph_error(500))

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(meta_client.get_ad_account("act_1"))

    assert excinfo.value.retryable
    assert len(graph.calls("act_1")) == 3


def test_transport_failure_is_retried(graph, meta_client):
    attempts = []

    def flaky(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, json=raw_account(1))

    graph.add("act_1", flaky)

    assert asyncio.run(meta_client.get_ad_account("act_1"))["name"] == "Account 1"
    assert len(attempts) == 2


def test_bearer_token_header(graph, meta_client):
    graph.add("act_1", raw_account(1))
    asyncio.run(meta_client.get_ad_account("act_1"))
    assert graph.requests[0].headers["Authorization"] == "Bearer test-token"


def test_ad_accounts_follow_pagination(graph, meta_client):
    def pages(request):
        if request.url.params.get("after") == "cursor-2":
            return httpx.Response(200, json={"data": [raw_account(3)]})
        return httpx.Response(
            200,
            json={
                "data": [raw_account(1), raw_account(2)],
                "paging": {"next": "https://graph.test/v23.0/me/adaccounts?after=cursor-2"},
            },
        )

    graph.add("me/adaccounts", pages)

    result = asyncio.run(meta_client.get_ad_accounts())

    assert [a["id"] for a in result["data"]] == ["act_1", "act_2", "act_3"]
    assert len(graph.calls("me/adaccounts")) == 2


def test_get_campaigns_rejects_non_positive_limit(meta_client):
    with pytest.raises(ValueError):
        asyncio.run(meta_client.get_campaigns("act_1", limit=0))


def test_get_campaigns_sends_projection_and_limit(graph, meta_client):
    graph.add("act_1/campaigns", {"data": [{"id": "c1"}]})

    result = asyncio.run(meta_client.get_campaigns("1", fields=["id", "name"], limit=5))

    params = graph.requests[0].url.params
    assert result == {"data": [{"id": "c1"}]}
    assert params["fields"] == "id,name"
    assert params["limit"] == "5"


def test_insights_options_are_sent_as_graph_params(graph, meta_client):
    graph.add("act_1/insights", {"data": [{"spend": "1.00"}]})
    options = InsightsOptions(
        fields=["spend"],
        time_range=TimeRange("2024-06-01", "2024-06-07"),
        breakdowns=["age", "gender"],
        level=InsightLevel.AD,
        limit=50,
    )

    result = asyncio.run(meta_client.get_account_insights("act_1", options))

    params = graph.requests[0].url.params
    assert result["data"] == [{"spend": "1.00"}]
    assert json.loads(params["time_range"]) == {"since": "2024-06-01", "until": "2024-06-07"}
    assert params["breakdowns"] == "age,gender"
    assert params["level"] == "ad"
    assert params["time_increment"] == "1"


def test_time_range_must_be_ordered():
    with pytest.raises(ValueError):
        TimeRange("2024-06-07", "2024-06-01")


def test_batch_request_isolates_item_failures(graph, meta_client):
    graph.add(
        "",
        [
            {"code": 200, "body": json.dumps({"id": "c1", "name": "One"})},
            {"code": 400, "body": json.dumps({"error": {"message": "Bad campaign"}})},
            None,
        ],
    )

    results = asyncio.run(
        meta_client.batch_request(
            [
                {"method": "get", "relative_url": "c1?fields=id,name"},
                {"method": "GET", "relative_url": "bad"},
                {"method": "POST", "relative_url": "c3", "body": {"status": "PAUSED"}},
            ]
        )
    )

    assert [r.success for r in results] == [True, False, False]
    assert results[0].data == {"id": "c1", "name": "One"}
    assert results[1].error == "Bad campaign"
    assert results[2].error == "No response for batch item"

    form = parse_qs(graph.requests[0].content.decode())
    batch = json.loads(form["batch"][0])
    assert batch[0]["method"] == "GET"
    assert batch[2]["body"] == "status=PAUSED"


def test_generic_passthrough_post_and_delete(graph, meta_client):
    graph.add("c1", {"success": True})

    async def scenario():
        posted = await meta_client.post("c1", {"status": "PAUSED", "targeting": {"geo": ["US"]}})
        deleted = await meta_client.delete("c1")
        return posted, deleted

    posted, deleted = asyncio.run(scenario())

    assert posted == deleted == {"success": True}
    assert [r.method for r in graph.requests] == ["POST", "DELETE"]
    form = parse_qs(graph.requests[0].content.decode())
    assert form["status"] == ["PAUSED"]
    assert json.loads(form["targeting"][0]) == {"geo": ["US"]}


def test_rate_limit_read_from_usage_headers_without_probe(graph, meta_client):
    usage = json.dumps({"call_count": 100, "total_cputime": 20, "total_time": 30})
    graph.add("act_1", (200, raw_account(1), {"x-app-usage": usage}))

    async def scenario():
        await meta_client.get_ad_account("act_1")
        return await meta_client.check_rate_limit()

    status = asyncio.run(scenario())

    assert status["status"] == "rate_limited"
    assert status["usage_pct"] == 100
    assert len(graph.requests) == 1


def test_rate_limit_probes_when_nothing_observed(graph, meta_client):
    graph.add("me", {"id": "42"})
    status = asyncio.run(meta_client.check_rate_limit())
    assert status["status"] == "healthy"
    assert len(graph.calls("me")) == 1


def test_rate_limit_probe_failure_is_unhealthy(graph, meta_client):
    graph.add("me", graph_error(401, "Invalid OAuth access token", code=190))
    assert asyncio.run(meta_client.check_rate_limit())["status"] == "unhealthy"


def test_throttling_error_marks_client_rate_limited(graph, meta_client):
    graph.add("act_1", graph_error(400, "User request limit reached", code=17))

    async def scenario():
        with pytest.raises(UpstreamError):
            await meta_client.get_ad_account("act_1")
        return await meta_client.check_rate_limit(probe=False)

    assert asyncio.run(scenario())["status"] == "rate_limited"


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, base_delay=1, max_delay=4, jitter=0)
    assert [policy.delay_for(n) for n in range(1, 5)] == [1, 2, 4, 4]
