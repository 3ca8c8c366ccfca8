from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from sitewatch.config import settings
from sitewatch.exceptions import AppError
from sitewatch.services.monitor import MonitorRuntime
from sitewatch.taskqueue import drain_queue

log = structlog.get_logger(__name__)
_scheduler: AsyncIOScheduler | None = None


async def _scheduled_run(runtime: MonitorRuntime, kind: str) -> None:
    try:
        summary = await runtime.run(kind, triggered_by="scheduler")
        log.info(
            "scheduler.run.done",
            kind=kind,
            dispatched=summary.tasks_dispatched,
            failed=summary.tasks_failed,
        )
    except AppError as exc:
        log.error("scheduler.run.failed", kind=kind, error=exc.detail)


async def _drain(runtime: MonitorRuntime) -> None:
    try:
        await drain_queue(runtime.queue, runtime.client)
    except AppError as exc:
        log.error("scheduler.drain.failed", error=exc.detail)


def start_scheduler(runtime: MonitorRuntime) -> None:
    global _scheduler
    if not settings.SCHEDULER_ENABLED:
        log.info("scheduler.disabled")
        return

    intervals = {
        "uptime": settings.UPTIME_INTERVAL_MINUTES,
        "tls": settings.TLS_INTERVAL_MINUTES,
        "pagespeed": settings.PAGESPEED_INTERVAL_MINUTES,
        "ranking": settings.RANKING_INTERVAL_MINUTES,
    }

    _scheduler = AsyncIOScheduler()
    for kind, minutes in intervals.items():
        if minutes <= 0:
            continue
        _scheduler.add_job(
            _scheduled_run,
            trigger=IntervalTrigger(minutes=minutes),
            args=[runtime, kind],
            id=f"check_{kind}",
            replace_existing=True,
            max_instances=1,
        )
    if settings.FANOUT_MODE == "queue":
        _scheduler.add_job(
            _drain,
            trigger=IntervalTrigger(seconds=settings.QUEUE_POLL_SECONDS),
            args=[runtime],
            id="queue_drain",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    _scheduler.start()
    log.info("scheduler.started", intervals=intervals, mode=settings.FANOUT_MODE)


def scheduler_running() -> bool:
    return bool(_scheduler and _scheduler.running)


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        log.info("scheduler.stopped")
