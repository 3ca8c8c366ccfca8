from __future__ import annotations
from fastapi import Request

from sitewatch.exceptions import AppError
from sitewatch.services.monitor import MonitorRuntime


def get_runtime(request: Request) -> MonitorRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise AppError("Monitor runtime not initialized")
    return runtime
