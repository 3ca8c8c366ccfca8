from __future__ import annotations

import time

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from sitewatch.config import settings

log = structlog.get_logger(__name__)


def _resolve_client_ip(request: Request) -> str:
    for header in settings.TRUSTED_PROXY_HEADERS:
        value = request.headers.get(header)
        if value:
            return value.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        t0 = time.monotonic()
        response = await call_next(request)
        ms = int((time.monotonic() - t0) * 1000)
        # Worker deliveries are frequent; keep them out of INFO noise.
        emit = log.debug if request.url.path.startswith("/api/v1/worker") else log.info
        emit(
            "http.request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=ms,
            client=_resolve_client_ip(request),
        )
        response.headers["X-Response-Time-Ms"] = str(ms)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if not settings.DEBUG:
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response
