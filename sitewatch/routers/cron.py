from __future__ import annotations
from fastapi import APIRouter, Depends

from sitewatch.auth import require_cron_secret
from sitewatch.routers.deps import get_runtime
from sitewatch.schemas import CheckKind, RunSummary
from sitewatch.services.monitor import MonitorRuntime

router = APIRouter(prefix="/api/v1/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.api_route("/{kind}", methods=["GET", "POST"], response_model=RunSummary)
async def trigger_checks(kind: CheckKind, runtime: MonitorRuntime = Depends(get_runtime)):
    """Time-based trigger. In queue mode this returns once every task is enqueued."""
    return await runtime.run(kind, triggered_by="cron")
