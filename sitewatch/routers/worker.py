from __future__ import annotations
from fastapi import APIRouter, Depends

from sitewatch.auth import require_signed_task
from sitewatch.routers.deps import get_runtime
from sitewatch.schemas import TaskOutcome, TaskPayload
from sitewatch.services.monitor import MonitorRuntime

router = APIRouter(prefix="/api/v1/worker", tags=["worker"])


@router.post("/check", response_model=TaskOutcome)
async def run_task(
    payload: TaskPayload = Depends(require_signed_task),
    runtime: MonitorRuntime = Depends(get_runtime),
):
    """Delivery target of the task queue: one site, one check kind."""
    return await runtime.processor(payload)
