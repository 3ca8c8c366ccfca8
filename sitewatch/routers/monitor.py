from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sitewatch.auth import require_api_key
from sitewatch.database import get_db
from sitewatch.exceptions import InvalidTaskError, NotFoundError
from sitewatch.repositories.cache_records import CacheRepository
from sitewatch.repositories.rankings import RankingRepository
from sitewatch.repositories.sites import SiteRepository
from sitewatch.routers.deps import get_runtime
from sitewatch.schemas import (
    KIND_STRATEGIES, CacheRecordOut, CheckKind, RankingHistoryOut,
    RunSummary, SiteOut, TaskOutcome, TaskPayload,
)
from sitewatch.services.monitor import MonitorRuntime

router = APIRouter(prefix="/api/v1", tags=["monitor"], dependencies=[Depends(require_api_key)])


@router.post("/monitor/check-all", response_model=RunSummary)
async def check_all(
    kind: CheckKind = Query("uptime"),
    batch_size: Optional[int] = Query(None, ge=1, le=20),
    runtime: MonitorRuntime = Depends(get_runtime),
):
    """Interactive "check all": runs in batches and waits for every site."""
    return await runtime.run(kind, mode="batch", triggered_by="manual", batch_size=batch_size)


@router.post("/monitor/sites/{site_id}/check", response_model=TaskOutcome)
async def check_site(
    site_id: str,
    kind: CheckKind = Query("uptime"),
    strategy: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    runtime: MonitorRuntime = Depends(get_runtime),
):
    site = await SiteRepository(db).get(site_id)
    if site is None:
        raise NotFoundError(f"Site {site_id} not found")
    allowed = KIND_STRATEGIES[kind]
    strategy = strategy or allowed[0]
    if strategy not in allowed:
        raise InvalidTaskError(f"Strategy {strategy!r} is not valid for {kind}")
    return await runtime.processor(
        TaskPayload(target_id=site.id, url=site.url, check_kind=kind, strategy=strategy)
    )


@router.get("/sites", response_model=List[SiteOut])
async def list_sites(db: AsyncSession = Depends(get_db)):
    return [SiteOut.model_validate(s) for s in await SiteRepository(db).list_all()]


@router.get("/sites/{site_id}/cache", response_model=List[CacheRecordOut])
async def site_cache(site_id: str, db: AsyncSession = Depends(get_db)):
    if await SiteRepository(db).get(site_id) is None:
        raise NotFoundError(f"Site {site_id} not found")
    rows = await CacheRepository(db).for_site(site_id)
    return [CacheRecordOut.model_validate(r) for r in rows]


@router.get("/sites/{site_id}/rankings", response_model=List[RankingHistoryOut])
async def site_rankings(
    site_id: str,
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    if await SiteRepository(db).get(site_id) is None:
        raise NotFoundError(f"Site {site_id} not found")
    rows = await RankingRepository(db).history(site_id, limit)
    return [RankingHistoryOut.model_validate(r) for r in rows]
