"""Tests for the store adapter's idempotent upserts and reads."""

import pytest

from adsync.connectors.meta.fields import InsightLevel
from adsync.connectors.meta.transformer import (
    normalize_account,
    normalize_campaign,
    normalize_insight,
)
from adsync.core.errors import StorageError
from adsync.database import build_engine
from adsync.storage.ad_store import AdStore

from conftest import raw_account, raw_campaign, raw_insight


def test_account_upsert_is_idempotent(store):
    record = normalize_account(raw_account(1))

    store.upsert_ad_account(record)
    first = store.get_account("act_1")
    store.upsert_ad_account(record)
    second = store.get_account("act_1")

    assert store.counts()["ad_accounts"] == 1
    for field in ("name", "account_status", "currency", "amount_spent", "business_name"):
        assert getattr(first, field) == getattr(second, field)


def test_account_upsert_overwrites_mutable_fields(store):
    store.upsert_ad_account(normalize_account(raw_account(1, spend_cap="500")))
    store.upsert_ad_account(normalize_account(raw_account(1, name="Renamed")))

    account = store.get_account("act_1")
    assert account.name == "Renamed"
    assert account.spend_cap is None


def test_partial_account_upsert_keeps_omitted_fields(store):
    store.upsert_ad_account(normalize_account(raw_account(1)))

    store.upsert_ad_account({"id": "act_1", "balance": 99.0}, partial=True)

    account = store.get_account("act_1")
    assert account.balance == 99.0
    assert account.name == "Account 1"
    assert account.currency == "USD"


def test_campaign_upsert_sets_local_sync_time(store):
    store.upsert_ad_account(normalize_account(raw_account(1)))
    record = normalize_campaign(raw_campaign("c1", 1), "act_1")

    store.upsert_campaign(record)
    store.upsert_campaign({**record, "status": "PAUSED"})

    campaign = store.get_campaign("c1")
    assert store.counts()["campaigns"] == 1
    assert campaign.status == "PAUSED"
    assert campaign.last_sync_at is not None
    assert store.find_campaign_account_id("c1") == "act_1"
    assert [c.id for c in store.list_campaigns("act_1")] == ["c1"]


def test_insight_upsert_is_idempotent_per_window(store):
    record = normalize_insight(raw_insight("c1", "2024-06-10"), InsightLevel.CAMPAIGN, "act_1")

    store.upsert_daily_insight(record)
    store.upsert_daily_insight({**record, "spend": 99.0})

    rows = store.list_daily_insights(account_id="act_1")
    assert len(rows) == 1
    assert rows[0].spend == 99.0
    assert rows[0].actions_json == {"purchase": 2.0}


def test_breakdown_rows_are_distinct(store):
    base = raw_insight("c1", "2024-06-10")
    for age in ("18-24", "25-34"):
        store.upsert_daily_insight(
            normalize_insight({**base, "age": age}, InsightLevel.CAMPAIGN, "act_1")
        )
    store.upsert_daily_insight(normalize_insight(base, InsightLevel.CAMPAIGN, "act_1"))

    assert store.counts()["daily_insights"] == 3


def test_list_account_ids_filters_inactive(store):
    store.upsert_ad_account(normalize_account(raw_account(1)))
    store.upsert_ad_account(normalize_account(raw_account(2, account_status=2)))

    assert store.list_account_ids() == ["act_1"]
    assert store.list_account_ids(active_only=False) == ["act_1", "act_2"]


def test_list_daily_insights_date_filter(store):
    for day in ("2024-06-08", "2024-06-09", "2024-06-10"):
        store.upsert_daily_insight(
            normalize_insight(raw_insight("c1", day), InsightLevel.CAMPAIGN, "act_1")
        )

    rows = store.list_daily_insights(account_id="act_1", date_start="2024-06-09", date_end="2024-06-10")

    assert [r.date_start for r in rows] == ["2024-06-10", "2024-06-09"]


def test_store_errors_are_wrapped():
    broken = AdStore(build_engine("sqlite:////nonexistent/dir/adsync.db"))
    with pytest.raises(StorageError):
        broken.counts()
