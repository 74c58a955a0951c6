"""Tests for the interval job wiring."""

import asyncio

from adsync.models.sync_models import RunStatus, SyncResult
from adsync.scheduler.jobs import SyncScheduler

from conftest import graph_error


def test_configure_publishes_jobs_to_engine(engine, cache):
    scheduler = SyncScheduler(engine, cache, enabled=True)

    scheduler.configure()

    jobs = engine.get_status().scheduled_jobs
    assert sorted(job["id"] for job in jobs) == ["accounts", "cache-cleanup", "campaigns", "insights"]
    assert not scheduler.scheduler.running


def test_disabled_scheduler_does_not_start(engine, cache):
    scheduler = SyncScheduler(engine, cache, enabled=False)

    scheduler.start()

    assert not scheduler.scheduler.running
    assert engine.get_status().scheduled_jobs == []


def test_job_failures_do_not_escape(graph, engine, cache):
    graph.add("me/adaccounts", graph_error(500))

    asyncio.run(SyncScheduler(engine, cache).accounts_job())

    assert engine.get_status().last_run.status == RunStatus.FAILED


def test_job_is_noop_when_scope_already_running(engine, cache, monkeypatch):
    calls = []

    async def busy():
        calls.append(True)
        return SyncResult.already_running()

    monkeypatch.setattr(engine, "sync_all_campaigns", busy)

    asyncio.run(SyncScheduler(engine, cache).campaigns_job())

    assert calls == [True]
    assert engine.get_status().last_run is None


def test_cache_cleanup_job(cache):
    async def scenario():
        await cache.set("gone", 1, ttl=-1)
        await SyncScheduler(engine=None, cache=cache).cache_cleanup_job()
        return await cache.stats()

    assert asyncio.run(scenario())["keys"] == 0


def test_published_jobs_follow_the_scheduler(engine, cache):
    scheduler = SyncScheduler(engine, cache, enabled=True)
    scheduler.configure()

    scheduler.scheduler.remove_job("cache-cleanup")

    jobs = engine.get_status().scheduled_jobs
    assert sorted(job["id"] for job in jobs) == ["accounts", "campaigns", "insights"]
