from __future__ import annotations

import time
from datetime import date
from typing import Any, Callable, Dict, Mapping, Optional

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from sitewatch.config import settings
from sitewatch.database import SessionFactory
from sitewatch.exceptions import RegistryError
from sitewatch.repositories.audits import AuditRepository
from sitewatch.repositories.cache_records import CacheRepository
from sitewatch.repositories.rankings import RankingRepository
from sitewatch.repositories.sites import SiteRepository
from sitewatch.schemas import (
    CheckResult, RankingRow, RunSummary, TaskOutcome, TaskPayload, payload_field,
)
from sitewatch.services.checkers import Checker, build_checkers
from sitewatch.services.fanout import BatchFanOut, FanOut, QueueFanOut
from sitewatch.services.notifier import Notifier
from sitewatch.taskqueue import TaskQueue

log = structlog.get_logger(__name__)

# Ranking payloads are capped so one busy site cannot bloat its cache row.
MAX_CACHED_RANKING_ROWS = 100


def cache_patch(result: CheckResult) -> Dict[str, Any]:
    """The cache sub-field a result writes, or {} when it should not overwrite anything."""
    field = payload_field(result.kind, result.strategy)
    checked_at = result.checked_at.isoformat()

    if result.kind == "uptime":
        return {field: {
            "status": result.status,
            "latency_ms": result.latency_ms,
            "status_code": result.status_code,
            "error": result.error,
            "checked_at": checked_at,
        }}
    if result.kind == "tls":
        return {field: {**(result.metrics or {}), "checked_at": checked_at}}

    # Provider failures keep the last good report in place.
    if not result.ok or not result.metrics:
        return {}
    metrics = dict(result.metrics)
    if result.kind == "ranking":
        metrics["rows"] = metrics.get("rows", [])[:MAX_CACHED_RANKING_ROWS]
    return {field: {**metrics, "checked_at": checked_at}}


class TaskProcessor:
    """
    Runs one (site, kind, strategy) unit end to end: check, persist status,
    merge into the cache, snapshot rankings, then notify on a transition.
    Every per-site failure comes back as a value on the TaskOutcome.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        checkers: Mapping[str, Checker],
        notifier: Notifier,
        today: Callable[[], date] = date.today,
    ):
        self._session_factory = session_factory
        self._checkers = checkers
        self._notifier = notifier
        self._today = today

    async def __call__(self, payload: TaskPayload) -> TaskOutcome:
        kind, strategy, site_id = payload.check_kind, payload.strategy, payload.target_id
        outcome = TaskOutcome(site_id=site_id, kind=kind, strategy=strategy)

        async with self._session_factory() as db:
            site = await SiteRepository(db).get(site_id)
            if site is None:
                log.info("task.skipped", site_id=site_id, reason="not registered")
                outcome.skipped = "site is no longer registered"
                return outcome
            previous = site.status
            url = site.url or payload.url

        result = await self._checkers[kind].check(site_id, url, strategy)
        outcome.result = result
        outcome.previous_status = previous

        status_written = False
        async with self._session_factory() as db:
            sites = SiteRepository(db)
            if kind == "uptime":
                try:
                    site = await sites.get(site_id)
                    if site is not None:
                        await sites.update_status(
                            site, result.status, result.checked_at,
                            latency_ms=result.latency_ms, status_code=result.status_code,
                        )
                        await db.commit()
                        status_written = True
                        outcome.status = result.status
                except SQLAlchemyError as exc:
                    await db.rollback()
                    log.error("status.write.failed", site_id=site_id, error=str(exc))
                    outcome.cache_error = str(exc)

            try:
                patch = cache_patch(result)
                if patch:
                    await CacheRepository(db).upsert(site_id, kind, patch, synced_at=result.checked_at)
                if kind == "ranking" and result.ok and result.metrics:
                    rows = [RankingRow(**r) for r in result.metrics.get("rows", [])]
                    written = await RankingRepository(db).record_snapshot(
                        site_id, strategy or "google", rows, self._today()
                    )
                    log.info("ranking.snapshot", site_id=site_id, source=strategy, keywords=written)
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                log.error("cache.write.failed", site_id=site_id, kind=kind, strategy=strategy, error=str(exc))
                outcome.cache_error = outcome.cache_error or str(exc)

        if status_written:
            outcome.notifications_sent = await self._notifier.maybe_notify(site, previous, result.status)

        log.info(
            "task.done",
            site_id=site_id, kind=kind, strategy=strategy,
            status=result.status, error_kind=result.error_kind,
            latency_ms=result.latency_ms,
        )
        return outcome


async def run_checks(
    kind: str,
    fanout: FanOut,
    session_factory: SessionFactory,
    triggered_by: str = "manual",
) -> RunSummary:
    """Load every registered site, fan the checks out, audit the run."""
    t0 = time.monotonic()
    async with session_factory() as db:
        try:
            sites = await SiteRepository(db).list_all()
        except SQLAlchemyError as exc:
            log.error("registry.read.failed", error=str(exc))
            raise RegistryError("Could not load the site registry") from exc

    outcomes = await fanout.run(sites, kind)

    errors = [
        f"{o.site_id}{'/' + o.strategy if o.strategy else ''}: {o.error}"
        for o in outcomes if not o.ok
    ]
    summary = RunSummary(
        kind=kind,
        mode=fanout.mode,
        sites_total=len(sites),
        tasks_dispatched=len(outcomes),
        tasks_succeeded=sum(1 for o in outcomes if o.ok),
        tasks_failed=len(errors),
        cache_failures=sum(1 for o in outcomes if o.outcome and o.outcome.cache_error),
        notifications_sent=sum(o.outcome.notifications_sent for o in outcomes if o.outcome),
        errors=errors,
        results=outcomes,
    )
    duration_ms = int((time.monotonic() - t0) * 1000)

    async with session_factory() as db:
        try:
            await AuditRepository(db).log(
                kind=kind,
                mode=fanout.mode,
                sites_total=summary.sites_total,
                tasks_dispatched=summary.tasks_dispatched,
                tasks_failed=summary.tasks_failed,
                duration_ms=duration_ms,
                error_detail="\n".join(errors[:50]) or None,
                triggered_by=triggered_by,
            )
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            log.warning("audit.write.failed", kind=kind, error=str(exc))

    log.info(
        "run.complete",
        kind=kind, mode=fanout.mode, sites=summary.sites_total,
        dispatched=summary.tasks_dispatched, failed=summary.tasks_failed,
        duration_ms=duration_ms, triggered_by=triggered_by,
    )
    return summary


class MonitorRuntime:
    """Long-lived collaborators shared by routes and scheduled jobs."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        session_factory: SessionFactory,
        queue: TaskQueue,
        checkers: Optional[Mapping[str, Checker]] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.queue = queue
        self.checkers = checkers if checkers is not None else build_checkers(client)
        self.notifier = notifier if notifier is not None else Notifier.from_settings(client)
        self.processor = TaskProcessor(session_factory, self.checkers, self.notifier)

    def fanout(self, mode: Optional[str] = None, batch_size: Optional[int] = None) -> FanOut:
        if (mode or settings.FANOUT_MODE) == "queue":
            return QueueFanOut(self.queue)
        return BatchFanOut(self.processor, batch_size=batch_size)

    async def run(self, kind: str, mode: Optional[str] = None, triggered_by: str = "manual",
                  batch_size: Optional[int] = None) -> RunSummary:
        return await run_checks(kind, self.fanout(mode, batch_size), self.session_factory, triggered_by)
