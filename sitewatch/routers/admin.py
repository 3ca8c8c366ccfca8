from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
import sqlalchemy
from sqlalchemy.ext.asyncio import AsyncSession

from sitewatch.auth import require_api_key
from sitewatch.config import settings
from sitewatch.database import engine, get_db
from sitewatch.repositories.audits import AuditRepository
from sitewatch.routers.deps import get_runtime
from sitewatch.schemas import AuditOut, CheckKind, HealthResponse, QueueStats
from sitewatch.services.monitor import MonitorRuntime
from sitewatch.services.providers import circuit_status
from sitewatch.services.scheduler import scheduler_running
from sitewatch.taskqueue import ping_redis

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health():
    """Health check is intentionally unauthenticated for load balancer probes."""
    redis_ok = await ping_redis()
    try:
        async with engine.connect() as conn:
            await conn.execute(sqlalchemy.text("SELECT 1"))
        db_status = "ok"
    except Exception:
        db_status = "error"

    return HealthResponse(
        status="ok" if (redis_ok and db_status == "ok") else "degraded",
        database=db_status,
        redis="ok" if redis_ok else "error",
        scheduler="running" if scheduler_running() else "stopped",
        version=settings.APP_VERSION,
    )


@router.get("/runs", response_model=List[AuditOut], dependencies=[Depends(require_api_key)])
async def recent_runs(
    limit: int = Query(50, ge=1, le=500),
    kind: Optional[CheckKind] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    rows = await AuditRepository(db).recent(limit, kind)
    return [AuditOut.model_validate(r) for r in rows]


@router.get("/queue", response_model=QueueStats, dependencies=[Depends(require_api_key)])
async def queue_stats(runtime: MonitorRuntime = Depends(get_runtime)):
    return await runtime.queue.stats()


@router.get("/circuits", dependencies=[Depends(require_api_key)])
async def circuits():
    return {"providers": await circuit_status()}
