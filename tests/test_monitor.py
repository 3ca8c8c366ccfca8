import asyncio
from datetime import date

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from conftest import RecordingChannel, StubChecker, add_site, mock_http
from sitewatch.exceptions import RegistryError
from sitewatch.models import CheckAudit, KeywordRankingHistory, Site, TrackedKeyword
from sitewatch.repositories.cache_records import CacheRepository
from sitewatch.repositories.sites import SiteRepository
from sitewatch.schemas import CheckResult, TaskOutcome, TaskPayload
from sitewatch.services.checkers import PageSpeedChecker, ReachabilityChecker
from sitewatch.services.monitor import MonitorRuntime, TaskProcessor, cache_patch
from sitewatch.services.notifier import Notifier
from sitewatch.services.providers import PageSpeedClient
from sitewatch.taskqueue import TaskQueue


def uptime(site_id, status, code=200, **kw):
    return CheckResult(site_id=site_id, kind="uptime", status=status, status_code=code, **kw)


async def statuses(session_factory):
    async with session_factory() as db:
        rows = (await db.execute(select(Site).order_by(Site.id))).scalars().all()
        return {s.id: s.status for s in rows}


@pytest.mark.asyncio
async def test_status_transitions_end_to_end(session_factory, fake_redis):
    await add_site(session_factory, "a", "https://a.example", status="online")
    await add_site(session_factory, "b", "https://b.example", status="unknown")

    async def handler(request):
        if request.url.host == "a.example":
            raise httpx.ReadTimeout("timed out", request=request)
        await asyncio.sleep(0.12)
        return httpx.Response(200)

    channel = RecordingChannel()
    async with mock_http(handler) as http:
        runtime = MonitorRuntime(
            http, session_factory, TaskQueue(fake_redis),
            checkers={"uptime": ReachabilityChecker(http, timeout=10)},
            notifier=Notifier([channel]),
        )
        summary = await runtime.run("uptime", mode="batch", batch_size=1)

        assert summary.mode == "batch"
        assert summary.sites_total == 2
        assert summary.tasks_failed == 0
        assert summary.notifications_sent == 1
        assert channel.sent == [("a", "offline")]
        assert await statuses(session_factory) == {"a": "offline", "b": "online"}

        async with session_factory() as db:
            b = await SiteRepository(db).get("b")
            a_cache = await CacheRepository(db).get("a", "uptime")
        assert 100 <= b.latency_ms < 2000
        assert b.status_code == 200
        assert a_cache.payloads["uptime_data"]["status"] == "offline"
        assert "timeout" in a_cache.payloads["uptime_data"]["error"]

        # Still offline on the next cycle: no second alert.
        again = await runtime.run("uptime", mode="batch", batch_size=1)

    assert again.notifications_sent == 0
    assert channel.sent == [("a", "offline")]


@pytest.mark.asyncio
async def test_repeating_a_run_is_idempotent(runtime, session_factory):
    await add_site(session_factory, "a", "https://a.example")
    await add_site(session_factory, "b", "https://b.example")
    runtime.checkers["uptime"] = StubChecker("uptime", {
        "a": uptime("a", "online"),
        "b": uptime("b", "offline", code=503, error="HTTP 503"),
    })

    await runtime.run("uptime", mode="batch", batch_size=1)
    first = await statuses(session_factory)
    await runtime.run("uptime", mode="batch", batch_size=1)

    assert await statuses(session_factory) == first == {"a": "online", "b": "offline"}
    async with session_factory() as db:
        for site_id in ("a", "b"):
            assert len(await CacheRepository(db).for_site(site_id)) == 1


@pytest.mark.asyncio
async def test_pagespeed_strategies_merge_and_failures_keep_last_report(runtime, session_factory):
    await add_site(session_factory, "a", "https://a.example")
    results = {
        "mobile": CheckResult(site_id="a", kind="pagespeed", status="online", metrics={"scores": {"performance": 70}}),
        "desktop": CheckResult(site_id="a", kind="pagespeed", status="online", metrics={"scores": {"performance": 95}}),
    }
    runtime.checkers["pagespeed"] = StubChecker("pagespeed", {"a": lambda strategy: results[strategy]})

    summary = await runtime.run("pagespeed", mode="batch")
    assert summary.tasks_dispatched == 2
    assert summary.tasks_succeeded == 2

    results["desktop"] = CheckResult(
        site_id="a", kind="pagespeed", status="offline",
        error="PageSpeed quota exceeded", error_kind="provider",
    )
    summary = await runtime.run("pagespeed", mode="batch")
    assert summary.tasks_failed == 1
    assert summary.errors == ["a/desktop: PageSpeed quota exceeded"]

    async with session_factory() as db:
        record = await CacheRepository(db).get("a", "pagespeed")
        site = await SiteRepository(db).get("a")
    assert record.payloads["mobile_data"]["scores"]["performance"] == 70
    assert record.payloads["desktop_data"]["scores"]["performance"] == 95
    # Only reachability drives the site status.
    assert site.status == "unknown"


@pytest.mark.asyncio
async def test_same_day_ranking_snapshot_overwrites(session_factory, channel):
    await add_site(session_factory, "a", "https://a.example")
    async with session_factory() as db:
        db.add(TrackedKeyword(site_id="a", source="google", keyword="wp hosting"))
        await db.commit()

    position = {"value": 8.0}

    def ranking(strategy):
        return CheckResult(
            site_id="a", kind="ranking", status="online",
            metrics={"source": strategy, "row_count": 2, "rows": [
                {"query": "wp hosting", "position": position["value"], "impressions": 10, "clicks": 1},
                {"query": "untracked", "position": 1.0, "impressions": 3, "clicks": 0},
            ]},
        )

    processor = TaskProcessor(
        session_factory,
        {"ranking": StubChecker("ranking", {"a": ranking})},
        Notifier([channel]),
        today=lambda: date(2026, 1, 1),
    )
    payload = TaskPayload(target_id="a", url="https://a.example", check_kind="ranking", strategy="google")

    await processor(payload)
    position["value"] = 5.0
    outcome = await processor(payload)

    assert outcome.succeeded
    async with session_factory() as db:
        rows = (await db.execute(select(KeywordRankingHistory))).scalars().all()
        record = await CacheRepository(db).get("a", "ranking")
    assert [(r.keyword, r.position, r.recorded_date) for r in rows] == [("wp hosting", 5.0, date(2026, 1, 1))]
    assert record.payloads["google_data"]["row_count"] == 2


@pytest.mark.asyncio
async def test_cache_write_failure_is_partial_success(runtime, session_factory, monkeypatch):
    for site_id in ("a", "b", "c"):
        await add_site(session_factory, site_id, f"https://{site_id}.example")
    runtime.checkers["uptime"] = StubChecker("uptime", {s: uptime(s, "online") for s in "abc"})

    original = CacheRepository.upsert

    async def flaky_upsert(self, site_id, kind, patch, synced_at=None):
        if site_id == "b":
            raise SQLAlchemyError("disk full")
        return await original(self, site_id, kind, patch, synced_at)

    monkeypatch.setattr(CacheRepository, "upsert", flaky_upsert)
    summary = await runtime.run("uptime", mode="batch", batch_size=1)

    assert summary.tasks_dispatched == 3
    assert summary.tasks_succeeded == 2
    assert summary.tasks_failed == 1
    assert summary.cache_failures == 1
    assert summary.errors[0].startswith("b: cache write failed")
    assert (await statuses(session_factory))["c"] == "online"


@pytest.mark.asyncio
async def test_registry_failure_aborts_the_run(runtime, monkeypatch):
    async def broken(self):
        raise OperationalError("SELECT sites", {}, Exception("connection refused"))

    monkeypatch.setattr(SiteRepository, "list_all", broken)
    with pytest.raises(RegistryError):
        await runtime.run("uptime", mode="batch")


@pytest.mark.asyncio
async def test_run_is_audited(runtime, session_factory):
    await add_site(session_factory, "a", "https://a.example")
    runtime.checkers["uptime"] = StubChecker("uptime", {"a": uptime("a", "online")})

    await runtime.run("uptime", mode="batch", triggered_by="cron")

    async with session_factory() as db:
        audits = (await db.execute(select(CheckAudit))).scalars().all()
    assert len(audits) == 1
    assert audits[0].kind == "uptime"
    assert audits[0].mode == "batch"
    assert audits[0].tasks_dispatched == 1
    assert audits[0].triggered_by == "cron"


@pytest.mark.asyncio
async def test_unregistered_site_is_skipped(runtime):
    outcome = await runtime.processor(
        TaskPayload(target_id="gone", url="https://gone.example", check_kind="uptime")
    )
    assert outcome.skipped
    assert not outcome.succeeded


def test_failed_metric_result_writes_nothing():
    failed = CheckResult(site_id="a", kind="pagespeed", strategy="mobile", status="offline",
                         error="quota", error_kind="provider")
    assert cache_patch(failed) == {}


def test_ranking_rows_are_capped():
    rows = [{"query": f"q{i}", "position": i, "impressions": 0, "clicks": 0} for i in range(250)]
    result = CheckResult(site_id="a", kind="ranking", strategy="bing", status="online",
                         metrics={"source": "bing", "row_count": 250, "rows": rows})
    patch = cache_patch(result)
    assert len(patch["bing_data"]["rows"]) == 100
    assert patch["bing_data"]["row_count"] == 250


@pytest.mark.asyncio
async def test_metric_timeouts_are_reported_as_failures(session_factory, fake_redis, channel):
    await add_site(session_factory, "a", "https://a.example")

    def handler(request):
        raise httpx.ReadTimeout("provider too slow", request=request)

    async with mock_http(handler) as http:
        runtime = MonitorRuntime(
            http, session_factory, TaskQueue(fake_redis),
            checkers={"pagespeed": PageSpeedChecker(PageSpeedClient(http, api_key="k"))},
            notifier=Notifier([channel]),
        )
        summary = await runtime.run("pagespeed", mode="batch", batch_size=1)

    assert summary.tasks_dispatched == 2
    assert summary.tasks_succeeded == 0
    assert summary.tasks_failed == 2
    assert [o.outcome.result.error_kind for o in summary.results] == ["timeout", "timeout"]


def test_offline_findings_are_not_failures_but_metric_gaps_are():
    timed_out = CheckResult(site_id="a", kind="uptime", status="offline",
                            error="timeout after 10s", error_kind="timeout")
    assert TaskOutcome(site_id="a", kind="uptime", result=timed_out).succeeded

    expired = CheckResult(site_id="a", kind="tls", status="offline", error="certificate expired",
                          metrics={"valid": False})
    assert TaskOutcome(site_id="a", kind="tls", result=expired).succeeded

    unreachable = CheckResult(site_id="a", kind="ranking", strategy="bing", status="offline",
                              error="ConnectError: refused", error_kind="transport")
    outcome = TaskOutcome(site_id="a", kind="ranking", strategy="bing", result=unreachable)
    assert not outcome.succeeded
    assert outcome.failure_reason == "ConnectError: refused"
