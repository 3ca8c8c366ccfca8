from __future__ import annotations

import json
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog
from redis.asyncio import Redis, ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from sitewatch.auth import SIGNATURE_HEADER, sign_body
from sitewatch.config import settings
from sitewatch.exceptions import QueueError
from sitewatch.schemas import QueueStats, TaskPayload

log = structlog.get_logger(__name__)

_pool: Optional[ConnectionPool] = None

QUEUE_KEY = "sitewatch:queue:tasks"


# ── Pool lifecycle ────────────────────────────────────────────────────────────

async def init_redis_pool() -> None:
    global _pool
    _pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_POOL_SIZE,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), retries=3),
        retry_on_error=[RedisError],
    )
    log.info("redis.pool.initialized", pool_size=settings.REDIS_POOL_SIZE)


async def close_redis_pool() -> None:
    global _pool
    if _pool:
        await _pool.aclose()
        _pool = None
        log.info("redis.pool.closed")


def get_redis() -> Redis:
    if _pool is None:
        raise QueueError("Redis pool not initialized")
    return Redis(connection_pool=_pool)


async def ping_redis() -> bool:
    try:
        r = get_redis()
        return await r.ping()
    except (QueueError, RedisError, OSError):
        return False


# ── Delayed task queue ───────────────────────────────────────────────────────
#
# One sorted set, scored by the unix time a task becomes due. Members are
# JSON envelopes {id, payload, attempts}. Whoever removes a member with
# ZREM owns its delivery, so concurrent drainers never double-deliver.

class TaskQueue:
    def __init__(
        self,
        redis: Optional[Redis] = None,
        key: str = QUEUE_KEY,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis
        self.key = key
        self._clock = clock

    @property
    def redis(self) -> Redis:
        return self._redis if self._redis is not None else get_redis()

    async def enqueue(self, payload: TaskPayload, delay: float = 0, attempts: int = 0) -> str:
        envelope = {
            "id": uuid.uuid4().hex,
            "payload": payload.model_dump(by_alias=True, exclude_none=True),
            "attempts": attempts,
        }
        due_at = self._clock() + max(0.0, float(delay))
        try:
            await self.redis.zadd(self.key, {json.dumps(envelope, sort_keys=True): due_at})
        except RedisError as e:
            log.warning("queue.enqueue.error", target_id=payload.target_id, error=str(e))
            raise QueueError("Could not enqueue task", {"target_id": payload.target_id}) from e
        log.debug("queue.enqueued", task_id=envelope["id"], target_id=payload.target_id,
                  kind=payload.check_kind, strategy=payload.strategy, delay=delay)
        return envelope["id"]

    async def claim_due(self, limit: int) -> List[Dict[str, Any]]:
        try:
            members = await self.redis.zrangebyscore(
                self.key, "-inf", self._clock(), start=0, num=limit
            )
            claimed = []
            for member in members:
                if await self.redis.zrem(self.key, member):
                    claimed.append(json.loads(member))
            return claimed
        except RedisError as e:
            log.warning("queue.claim.error", error=str(e))
            return []

    async def stats(self) -> QueueStats:
        try:
            pending = await self.redis.zcard(self.key)
            due = await self.redis.zcount(self.key, "-inf", self._clock())
        except RedisError as e:
            raise QueueError("Queue unavailable") from e
        return QueueStats(pending=pending, due=due)


async def drain_queue(
    queue: TaskQueue,
    client: httpx.AsyncClient,
    limit: int | None = None,
) -> Dict[str, int]:
    """
    Deliver every due task to the worker endpoint as a signed POST.

    5xx and transport failures are re-queued with exponential delay until
    QUEUE_MAX_ATTEMPTS; 4xx answers are permanent and dropped.
    """
    counts = {"delivered": 0, "retried": 0, "dropped": 0}
    for envelope in await queue.claim_due(limit or settings.QUEUE_BATCH_LIMIT):
        body = json.dumps(envelope["payload"]).encode()
        headers = {"Content-Type": "application/json"}
        if settings.QUEUE_CURRENT_SIGNING_KEY:
            headers[SIGNATURE_HEADER] = sign_body(body, settings.QUEUE_CURRENT_SIGNING_KEY)

        error: Optional[str] = None
        try:
            resp = await client.post(
                settings.WORKER_URL,
                content=body,
                headers=headers,
                timeout=settings.PAGESPEED_TIMEOUT + 15,
            )
            if resp.status_code < 400:
                counts["delivered"] += 1
                continue
            if resp.status_code < 500:
                log.error("queue.delivery.rejected", task_id=envelope["id"], status=resp.status_code)
                counts["dropped"] += 1
                continue
            error = f"worker returned {resp.status_code}"
        except httpx.HTTPError as exc:
            error = f"{type(exc).__name__}: {exc}"

        attempts = int(envelope.get("attempts", 0)) + 1
        if attempts >= settings.QUEUE_MAX_ATTEMPTS:
            log.error("queue.delivery.gave_up", task_id=envelope["id"], attempts=attempts, error=error)
            counts["dropped"] += 1
            continue

        delay = settings.QUEUE_RETRY_BASE_SECONDS * (2 ** (attempts - 1))
        try:
            await queue.enqueue(TaskPayload.model_validate(envelope["payload"]), delay=delay, attempts=attempts)
        except QueueError as exc:
            # Already claimed; the rest of the batch still gets delivered.
            log.error("queue.requeue.failed", task_id=envelope["id"], attempts=attempts, error=exc.detail)
            counts["dropped"] += 1
            continue
        log.warning("queue.delivery.retry", task_id=envelope["id"], attempts=attempts, delay=delay, error=error)
        counts["retried"] += 1

    if any(counts.values()):
        log.info("queue.drained", **counts)
    return counts
