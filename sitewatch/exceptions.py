from __future__ import annotations
from typing import Any, Dict, Optional
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


# ── Typed domain exceptions ───────────────────────────────────────────────────

class AppError(Exception):
    """Base for all application-level errors."""
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)


class AuthenticationError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class SignatureError(AppError):
    status_code = 401
    error_code = "INVALID_SIGNATURE"


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class InvalidTaskError(AppError):
    status_code = 400
    error_code = "INVALID_TASK"


class RegistryError(AppError):
    status_code = 503
    error_code = "REGISTRY_UNAVAILABLE"


class ProviderError(AppError):
    """
    A third-party API refused or failed the request (quota, auth, 5xx).

    ``site_specific`` marks refusals about one target (unreachable page,
    unverified property) rather than about the provider itself.
    """
    status_code = 502
    error_code = "PROVIDER_FAILED"

    def __init__(
        self,
        detail: str,
        provider: str,
        status: int = 0,
        context: Optional[Dict[str, Any]] = None,
        site_specific: bool = False,
    ):
        self.provider = provider
        self.status = status
        self.site_specific = site_specific
        super().__init__(detail, {"provider": provider, "status": status, **(context or {})})


class MalformedResponseError(ProviderError):
    error_code = "PROVIDER_MALFORMED"


class QueueError(AppError):
    status_code = 503
    error_code = "QUEUE_UNAVAILABLE"


class CircuitOpenError(ProviderError):
    status_code = 503
    error_code = "CIRCUIT_OPEN"


# ── FastAPI exception handlers ────────────────────────────────────────────────

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "detail": exc.detail,
            "context": exc.context,
        },
    )


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "detail": exc.detail,
        },
    )
