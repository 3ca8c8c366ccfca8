from __future__ import annotations
import hashlib
import hmac
from typing import Optional

import structlog
from fastapi import Header, Request, Security
from fastapi.security import APIKeyHeader
from pydantic import ValidationError

from sitewatch.config import settings
from sitewatch.exceptions import AuthenticationError, InvalidTaskError, SignatureError
from sitewatch.schemas import TaskPayload

log = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Sitewatch-Signature"

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(
    api_key: str | None = Security(_api_key_header),
) -> str:
    if not api_key or not hmac.compare_digest(api_key, settings.API_KEY):
        raise AuthenticationError("Invalid or missing API key")
    return api_key


async def require_cron_secret(
    authorization: Optional[str] = Header(None),
) -> None:
    """
    Cron triggers carry ``Authorization: Bearer <CRON_SECRET>``.

    With no secret configured the trigger is open only in development.
    """
    secret = settings.CRON_SECRET
    if not secret:
        if settings.is_development:
            return
        raise AuthenticationError("Cron secret is not configured")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise AuthenticationError("Invalid or missing cron secret")


def sign_body(body: bytes, key: str) -> str:
    return hmac.new(key.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str]) -> bool:
    """Accept a signature made with either the current or the next key."""
    if not signature:
        return False
    for key in (settings.QUEUE_CURRENT_SIGNING_KEY, settings.QUEUE_NEXT_SIGNING_KEY):
        if key and hmac.compare_digest(sign_body(body, key), signature):
            return True
    return False


async def require_signed_task(request: Request) -> TaskPayload:
    body = await request.body()
    keys_configured = bool(settings.QUEUE_CURRENT_SIGNING_KEY or settings.QUEUE_NEXT_SIGNING_KEY)

    if keys_configured:
        if not verify_signature(body, request.headers.get(SIGNATURE_HEADER)):
            log.warning("worker.signature.invalid", client=request.client.host if request.client else None)
            raise SignatureError("Invalid task signature")
    elif not settings.is_development:
        raise SignatureError("Task signing keys are not configured")

    try:
        return TaskPayload.model_validate_json(body)
    except ValidationError as e:
        raise InvalidTaskError("Malformed task payload", {"errors": e.errors(include_url=False, include_context=False, include_input=False)}) from e
