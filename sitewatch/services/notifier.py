from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol, Sequence

import httpx
import structlog
from tenacity import (
    retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type,
)

from sitewatch.config import settings

log = structlog.get_logger(__name__)


def should_notify(previous: Optional[str], new: str, notify_recovery: bool = False) -> bool:
    """Alert on entering offline; optionally on leaving it."""
    if new == "offline":
        return previous != "offline"
    if notify_recovery and new == "online":
        return previous == "offline"
    return False


class SiteLike(Protocol):
    id: Any
    name: str
    url: str


class NotificationChannel(Protocol):
    name: str

    async def send(self, site: SiteLike, status: str) -> None:
        ...


_retry_transport = retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=4),
    reraise=True,
)


def _format_message(site: SiteLike, status: str, at: datetime) -> str:
    headline = "Site recovered" if status == "online" else "Site status alert"
    return (
        f"### {headline}\n"
        f"> **Site**: {site.name}\n"
        f"> **URL**: {site.url}\n"
        f"> **Status**: {status.upper()}\n"
        f"> **Checked at**: {at.strftime('%Y-%m-%d %H:%M:%S UTC')}"
    )


class WebhookChannel:
    name = "webhook"

    def __init__(self, client: httpx.AsyncClient, url: str):
        self._client = client
        self._url = url

    @_retry_transport
    async def send(self, site: SiteLike, status: str) -> None:
        body = {
            "msgtype": "markdown",
            "markdown": {"content": _format_message(site, status, datetime.now(timezone.utc))},
        }
        resp = await self._client.post(self._url, json=body, timeout=settings.NOTIFY_TIMEOUT)
        log.info("notify.webhook.response", site_id=site.id, status_code=resp.status_code)
        resp.raise_for_status()


class EmailChannel:
    name = "email"

    def __init__(self, client: httpx.AsyncClient, endpoint: str, to: str):
        self._client = client
        self._endpoint = endpoint
        self._to = to

    @_retry_transport
    async def send(self, site: SiteLike, status: str) -> None:
        resp = await self._client.post(
            self._endpoint,
            json={
                "to": self._to,
                "siteName": site.name,
                "siteUrl": site.url,
                "status": status,
            },
            timeout=settings.NOTIFY_TIMEOUT,
        )
        log.info("notify.email.response", site_id=site.id, status_code=resp.status_code)
        resp.raise_for_status()


class Notifier:
    def __init__(self, channels: Sequence[NotificationChannel], notify_recovery: bool = False):
        self.channels: List[NotificationChannel] = list(channels)
        self.notify_recovery = notify_recovery

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient) -> "Notifier":
        channels: List[NotificationChannel] = []
        if settings.ENABLE_WEBHOOK_NOTIFICATIONS and settings.WEBHOOK_URL:
            channels.append(WebhookChannel(client, settings.WEBHOOK_URL))
        if settings.ENABLE_EMAIL_NOTIFICATIONS and settings.NOTIFY_EMAIL and settings.MAIL_DISPATCH_URL:
            channels.append(EmailChannel(client, settings.MAIL_DISPATCH_URL, settings.NOTIFY_EMAIL))
        return cls(channels, notify_recovery=settings.NOTIFY_ON_RECOVERY)

    async def _deliver(self, channel: NotificationChannel, site: SiteLike, status: str) -> bool:
        try:
            await channel.send(site, status)
            return True
        except Exception as exc:
            log.error("notify.failed", channel=channel.name, site_id=site.id, error=str(exc))
            return False

    async def maybe_notify(self, site: SiteLike, previous: Optional[str], new: str) -> int:
        """
        Fire every channel once for a qualifying transition.

        Returns how many channels accepted the message. Channels fail
        independently of each other.
        """
        if not should_notify(previous, new, self.notify_recovery):
            return 0
        if not self.channels:
            log.info("notify.no_channels", site_id=site.id, status=new)
            return 0

        log.info("notify.transition", site_id=site.id, previous=previous, status=new)
        delivered = await asyncio.gather(
            *(self._deliver(ch, site, new) for ch in self.channels)
        )
        return sum(delivered)
