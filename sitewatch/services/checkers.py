from __future__ import annotations

import asyncio
import math
import ssl
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlsplit

import httpx
import structlog
from cryptography import x509
from cryptography.x509.oid import NameOID

from sitewatch.config import settings
from sitewatch.exceptions import MalformedResponseError, ProviderError
from sitewatch.schemas import CheckResult
from sitewatch.services.providers import (
    BingWebmasterClient, PageSpeedClient, SearchConsoleClient,
)

log = structlog.get_logger(__name__)

USER_AGENT = "sitewatch-uptime-monitor/1.0"


def normalize_url(url: str) -> str:
    target = url.strip()
    if not target.startswith(("http://", "https://")):
        target = f"https://{target}"
    return target.rstrip("/") or target


def is_online_status(code: int) -> bool:
    # 3xx counts: a redirecting site is answering.
    return 200 <= code < 400


class Checker(Protocol):
    kind: str

    async def check(self, site_id: str, url: str, strategy: Optional[str] = None) -> CheckResult:
        ...


# ── Reachability ─────────────────────────────────────────────────────────────

class ReachabilityChecker:
    kind = "uptime"

    def __init__(self, client: httpx.AsyncClient, timeout: float | None = None):
        self._client = client
        self._timeout = settings.UPTIME_TIMEOUT if timeout is None else timeout

    async def _probe(self, method: str, url: str) -> tuple[httpx.Response, int]:
        t0 = time.monotonic()
        resp = await self._client.request(
            method,
            url,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
            timeout=self._timeout,
        )
        return resp, int((time.monotonic() - t0) * 1000)

    def _offline(self, site_id: str, error: str, error_kind: str, code: int = 0) -> CheckResult:
        return CheckResult(
            site_id=site_id, kind="uptime", status="offline",
            status_code=code, error=error, error_kind=error_kind,
        )

    async def check(self, site_id: str, url: str, strategy: Optional[str] = None) -> CheckResult:
        target = normalize_url(url)
        try:
            try:
                resp, ms = await self._probe("HEAD", target)
                if resp.status_code == 405:
                    resp, ms = await self._probe("GET", target)
            except httpx.TimeoutException:
                raise
            except httpx.TransportError as exc:
                # Some servers drop HEAD outright.
                log.debug("check.uptime.head_failed", url=target, error=str(exc))
                resp, ms = await self._probe("GET", target)
        except httpx.TimeoutException:
            log.info("check.uptime.timeout", site_id=site_id, url=target)
            return self._offline(site_id, f"timeout after {self._timeout:g}s", "timeout")
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.info("check.uptime.unreachable", site_id=site_id, url=target, error=str(exc))
            return self._offline(site_id, f"{type(exc).__name__}: {exc}", "transport")
        except Exception as exc:
            log.exception("check.uptime.unexpected", site_id=site_id, url=target)
            return self._offline(site_id, f"{type(exc).__name__}: {exc}", "transport")

        online = is_online_status(resp.status_code)
        return CheckResult(
            site_id=site_id,
            kind="uptime",
            status="online" if online else "offline",
            latency_ms=ms,
            status_code=resp.status_code,
            error=None if online else f"HTTP {resp.status_code}",
        )


# ── TLS certificate ──────────────────────────────────────────────────────────

def _tls_host_port(url: str) -> tuple[str, int]:
    parts = urlsplit(normalize_url(url))
    host = (parts.hostname or "").strip()
    if not host:
        raise ValueError(f"no host in {url!r}")
    return host, int(parts.port or 443)


def _issuer_name(cert: x509.Certificate) -> str:
    names = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
    if names:
        return str(names[0].value)
    orgs = cert.issuer.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
    if orgs:
        return str(orgs[0].value)
    return cert.issuer.rfc4514_string()


def evaluate_certificate(der: bytes, now: datetime | None = None) -> Dict[str, Any]:
    """
    Summarize a DER certificate: validity window, issuer, whole days left,
    and whether it is currently valid.
    """
    now = now or datetime.now(timezone.utc)
    cert = x509.load_der_x509_certificate(der)
    not_before = cert.not_valid_before_utc
    not_after = cert.not_valid_after_utc
    days_remaining = math.floor((not_after - now).total_seconds() / 86400)
    valid = not_before <= now <= not_after and days_remaining > 0

    if valid:
        error = None
    elif now < not_before:
        error = "certificate not yet valid"
    else:
        error = "certificate expired"

    subject = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return {
        "valid": valid,
        "not_before": not_before.isoformat(),
        "not_after": not_after.isoformat(),
        "days_remaining": days_remaining,
        "issuer": _issuer_name(cert),
        "subject": str(subject[0].value) if subject else cert.subject.rfc4514_string(),
        "error": error,
    }


async def fetch_peer_certificate(host: str, port: int, timeout: float) -> bytes:
    # Verification is off: expired and self-signed certificates must
    # still be readable.
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE

    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host=host, port=port, ssl=ctx, server_hostname=host),
        timeout=timeout,
    )
    try:
        sslobj = writer.get_extra_info("ssl_object")
        der = sslobj.getpeercert(binary_form=True) if sslobj else None
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError):
            pass
    if not der:
        raise ssl.SSLError("server presented no certificate")
    return der


class TlsChecker:
    kind = "tls"

    def __init__(self, timeout: float | None = None, fetch=fetch_peer_certificate):
        self._timeout = settings.TLS_TIMEOUT if timeout is None else timeout
        self._fetch = fetch

    def _failed(self, site_id: str, error: str, error_kind: str) -> CheckResult:
        return CheckResult(
            site_id=site_id, kind="tls", status="offline",
            error=error, error_kind=error_kind,
            metrics={"valid": False, "error": error},
        )

    async def check(self, site_id: str, url: str, strategy: Optional[str] = None) -> CheckResult:
        t0 = time.monotonic()
        try:
            host, port = _tls_host_port(url)
            der = await self._fetch(host, port, self._timeout)
            metrics = evaluate_certificate(der)
        except asyncio.TimeoutError:
            return self._failed(site_id, f"timeout after {self._timeout:g}s", "timeout")
        except Exception as exc:
            log.info("check.tls.failed", site_id=site_id, url=url, error=str(exc))
            return self._failed(site_id, f"{type(exc).__name__}: {exc}", "transport")

        # The TLS success predicate is a currently valid certificate, not just
        # a completed handshake. An invalid one is still a finding to cache.
        if not metrics["valid"]:
            log.warning("check.tls.invalid", site_id=site_id, days_remaining=metrics["days_remaining"])
        return CheckResult(
            site_id=site_id,
            kind="tls",
            status="online" if metrics["valid"] else "offline",
            error=metrics["error"],
            latency_ms=int((time.monotonic() - t0) * 1000),
            metrics={**metrics, "host": host, "port": port},
        )


# ── Third-party metrics ──────────────────────────────────────────────────────

def _provider_failure(site_id: str, kind: str, strategy: Optional[str], exc: Exception) -> CheckResult:
    if isinstance(exc, MalformedResponseError):
        error_kind = "malformed"
    elif isinstance(exc, ProviderError):
        error_kind = "provider"
    elif isinstance(exc, httpx.TimeoutException):
        error_kind = "timeout"
    else:
        error_kind = "transport"
    return CheckResult(
        site_id=site_id,
        kind=kind,
        strategy=strategy,
        status="offline",
        status_code=getattr(exc, "status", 0) or 0,
        error=getattr(exc, "detail", None) or f"{type(exc).__name__}: {exc}",
        error_kind=error_kind,
    )


class PageSpeedChecker:
    kind = "pagespeed"

    def __init__(self, client: PageSpeedClient):
        self._client = client

    async def check(self, site_id: str, url: str, strategy: Optional[str] = None) -> CheckResult:
        strategy = strategy or "mobile"
        t0 = time.monotonic()
        try:
            report = await self._client.run(normalize_url(url), strategy)
        except Exception as exc:
            log.warning("check.pagespeed.failed", site_id=site_id, strategy=strategy, error=str(exc))
            return _provider_failure(site_id, self.kind, strategy, exc)
        return CheckResult(
            site_id=site_id,
            kind=self.kind,
            strategy=strategy,
            status="online",
            status_code=200,
            latency_ms=int((time.monotonic() - t0) * 1000),
            metrics=report,
        )


class RankingChecker:
    kind = "ranking"

    def __init__(self, google: SearchConsoleClient, bing: BingWebmasterClient):
        self._google = google
        self._bing = bing

    async def check(self, site_id: str, url: str, strategy: Optional[str] = None) -> CheckResult:
        source = strategy or "google"
        t0 = time.monotonic()
        try:
            if source == "google":
                rows = await self._google.query_rankings(url)
            elif source == "bing":
                rows = await self._bing.query_rankings(url)
            else:
                raise ProviderError(f"unknown ranking source {source!r}", source)
        except Exception as exc:
            log.warning("check.ranking.failed", site_id=site_id, source=source, error=str(exc))
            return _provider_failure(site_id, self.kind, source, exc)

        rows.sort(key=lambda r: (r.position is None, r.position or 0))
        return CheckResult(
            site_id=site_id,
            kind=self.kind,
            strategy=source,
            status="online",
            status_code=200,
            latency_ms=int((time.monotonic() - t0) * 1000),
            metrics={
                "source": source,
                "row_count": len(rows),
                "rows": [r.model_dump() for r in rows],
            },
        )


def build_checkers(client: httpx.AsyncClient) -> Dict[str, Checker]:
    return {
        "uptime": ReachabilityChecker(client),
        "tls": TlsChecker(),
        "pagespeed": PageSpeedChecker(PageSpeedClient(client)),
        "ranking": RankingChecker(SearchConsoleClient(client), BingWebmasterClient(client)),
    }
