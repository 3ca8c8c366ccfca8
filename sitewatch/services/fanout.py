from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from sitewatch.config import settings
from sitewatch.exceptions import QueueError
from sitewatch.schemas import KIND_STRATEGIES, DispatchOutcome, TaskOutcome, TaskPayload
from sitewatch.taskqueue import TaskQueue

log = structlog.get_logger(__name__)

ProcessFn = Callable[[TaskPayload], Awaitable[TaskOutcome]]


@dataclass(frozen=True)
class StaggerPolicy:
    """
    Admission control for rate-limited providers.

    Site ``i`` is delayed ``i * stagger_seconds``; the second strategy of the
    same site (desktop after mobile, bing after google) adds
    ``strategy_offset`` so one host is never hit twice at once.
    """
    stagger_seconds: float = 0
    strategy_offset: float = 0
    jitter_seconds: int = 0

    def delay(self, index: int, position: int, rng: random.Random | None = None) -> float:
        delay = index * self.stagger_seconds + position * self.strategy_offset
        if self.jitter_seconds > 0:
            delay += (rng or random).randrange(self.jitter_seconds)
        return delay


def policy_for(kind: str) -> StaggerPolicy:
    if kind == "uptime":
        return StaggerPolicy(jitter_seconds=settings.UPTIME_JITTER_SECONDS)
    if kind == "tls":
        return StaggerPolicy(stagger_seconds=settings.TLS_STAGGER_SECONDS)
    if kind == "pagespeed":
        return StaggerPolicy(
            stagger_seconds=settings.PAGESPEED_STAGGER_SECONDS,
            strategy_offset=settings.PAGESPEED_STRATEGY_OFFSET,
        )
    if kind == "ranking":
        return StaggerPolicy(
            stagger_seconds=settings.RANKING_STAGGER_SECONDS,
            strategy_offset=settings.RANKING_SOURCE_OFFSET,
        )
    raise ValueError(f"unknown check kind {kind!r}")


@dataclass
class PlannedTask:
    site_id: str
    payload: TaskPayload
    delay: float


def plan_tasks(
    sites: Sequence[Any],
    kind: str,
    policy: StaggerPolicy,
    rng: random.Random | None = None,
) -> List[PlannedTask]:
    planned: List[PlannedTask] = []
    for index, site in enumerate(sites):
        for position, strategy in enumerate(KIND_STRATEGIES[kind]):
            planned.append(
                PlannedTask(
                    site_id=str(site.id),
                    payload=TaskPayload(
                        target_id=str(site.id),
                        url=site.url,
                        check_kind=kind,
                        strategy=strategy,
                    ),
                    delay=policy.delay(index, position, rng),
                )
            )
    return planned


class FanOut:
    mode: str = ""

    async def run(self, sites: Sequence[Any], kind: str) -> List[DispatchOutcome]:
        raise NotImplementedError


class BatchFanOut(FanOut):
    """
    In-process fan-out: ``batch_size`` sites at a time, each batch awaited
    before the next starts. A site's strategies run one after another so
    two writers never race on the same cache row.
    """
    mode = "batch"

    def __init__(
        self,
        process: ProcessFn,
        batch_size: int | None = None,
        item_delay: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._process = process
        self.batch_size = max(1, batch_size or settings.INTERACTIVE_BATCH_SIZE)
        self.item_delay = settings.INTERACTIVE_ITEM_DELAY if item_delay is None else item_delay
        self._sleep = sleep

    async def _run_site(self, position: int, tasks: List[PlannedTask]) -> List[DispatchOutcome]:
        if position and self.item_delay:
            await self._sleep(position * self.item_delay)

        outcomes: List[DispatchOutcome] = []
        for task in tasks:
            p = task.payload
            try:
                outcome = await self._process(p)
            except Exception as exc:
                log.error("fanout.task.failed", site_id=task.site_id, kind=p.check_kind,
                          strategy=p.strategy, error=str(exc))
                outcomes.append(DispatchOutcome(
                    site_id=task.site_id, kind=p.check_kind, strategy=p.strategy,
                    ok=False, error=f"{type(exc).__name__}: {exc}",
                ))
                continue
            outcomes.append(DispatchOutcome(
                site_id=task.site_id, kind=p.check_kind, strategy=p.strategy,
                delay_seconds=position * self.item_delay,
                ok=outcome.succeeded, error=outcome.failure_reason, outcome=outcome,
            ))
        return outcomes

    async def run(self, sites: Sequence[Any], kind: str) -> List[DispatchOutcome]:
        by_site: Dict[str, List[PlannedTask]] = {}
        for task in plan_tasks(sites, kind, StaggerPolicy()):
            by_site.setdefault(task.site_id, []).append(task)
        groups = list(by_site.values())

        outcomes: List[DispatchOutcome] = []
        for start in range(0, len(groups), self.batch_size):
            batch = groups[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self._run_site(pos, group) for pos, group in enumerate(batch))
            )
            for site_outcomes in results:
                outcomes.extend(site_outcomes)
            log.debug("fanout.batch.done", kind=kind, start=start, size=len(batch))
        return outcomes


class QueueFanOut(FanOut):
    """Enqueue-and-return: success means the task is durably queued."""
    mode = "queue"

    def __init__(self, queue: TaskQueue, policy: Optional[StaggerPolicy] = None,
                 rng: random.Random | None = None):
        self._queue = queue
        self._policy = policy
        self._rng = rng

    async def run(self, sites: Sequence[Any], kind: str) -> List[DispatchOutcome]:
        policy = self._policy or policy_for(kind)
        outcomes: List[DispatchOutcome] = []
        for task in plan_tasks(sites, kind, policy, self._rng):
            p = task.payload
            try:
                await self._queue.enqueue(p, delay=task.delay)
            except QueueError as exc:
                outcomes.append(DispatchOutcome(
                    site_id=task.site_id, kind=p.check_kind, strategy=p.strategy,
                    delay_seconds=task.delay, ok=False, error=exc.detail,
                ))
                continue
            outcomes.append(DispatchOutcome(
                site_id=task.site_id, kind=p.check_kind, strategy=p.strategy,
                delay_seconds=task.delay, ok=True,
            ))
        return outcomes
