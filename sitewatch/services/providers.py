from __future__ import annotations

import asyncio
import re
import time
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote, urlsplit

import httpx
import structlog
from tenacity import (
    retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type,
)

from sitewatch.config import settings
from sitewatch.exceptions import CircuitOpenError, MalformedResponseError, ProviderError
from sitewatch.schemas import RankingRow

log = structlog.get_logger(__name__)

T = TypeVar("T")

# ── Per-provider circuit breaker ─────────────────────────────────────────────
# Keeps a run from burning through a provider's daily quota once it has
# started refusing us. In-process only; each worker instance learns alone.

_circuit_lock = asyncio.Lock()
_circuit: dict[str, dict] = {}
FAILURE_THRESHOLD = 3
RECOVERY_SECONDS = 60


async def _is_open(provider: str) -> bool:
    async with _circuit_lock:
        state = _circuit.get(provider)
        if not state:
            return False
        if state["failures"] >= FAILURE_THRESHOLD:
            if time.monotonic() - state["opened_at"] < RECOVERY_SECONDS:
                return True
            # Half-open: allow one probe
            state["failures"] = FAILURE_THRESHOLD - 1
        return False


async def _record_failure(provider: str) -> None:
    async with _circuit_lock:
        state = _circuit.setdefault(provider, {"failures": 0, "opened_at": 0.0})
        state["failures"] += 1
        if state["failures"] >= FAILURE_THRESHOLD:
            state["opened_at"] = time.monotonic()
            log.warning("circuit.opened", provider=provider)


async def _record_success(provider: str) -> None:
    async with _circuit_lock:
        _circuit.pop(provider, None)


async def circuit_status() -> dict:
    async with _circuit_lock:
        return {
            name: {
                "failures": s["failures"],
                "open": s["failures"] >= FAILURE_THRESHOLD,
            }
            for name, s in _circuit.items()
        }


async def call_provider(provider: str, fn: Callable[[], Awaitable[T]]) -> T:
    if await _is_open(provider):
        log.warning("circuit.rejected", provider=provider)
        raise CircuitOpenError(f"{provider} temporarily disabled after repeated failures", provider)
    try:
        result = await fn()
    except ProviderError as exc:
        # A refusal about one site says nothing about the provider's health.
        if not exc.site_specific:
            await _record_failure(provider)
        raise
    except httpx.TransportError:
        await _record_failure(provider)
        raise
    await _record_success(provider)
    return result


# ── Transport helpers ────────────────────────────────────────────────────────

@retry(
    retry=retry_if_exception_type((httpx.ConnectError, httpx.RemoteProtocolError)),
    stop=stop_after_attempt(settings.MAX_RETRIES),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)
async def _send(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
    return await client.request(method, url, **kwargs)


def _provider_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return body.get("error_description") or err
        if body.get("Message"):
            return str(body["Message"])
    return resp.reason_phrase


# Lighthouse reports a page it could not load as a 500 from the API.
_PAGE_LOAD_ERROR = re.compile(r"Lighthouse returned error|_DOCUMENT_REQUEST|NO_FCP|DNS_FAILURE")


def _is_site_specific(status: int, message: str) -> bool:
    if status in (400, 404, 422):
        return True
    return status == 500 and bool(_PAGE_LOAD_ERROR.search(message))


def _json_or_raise(resp: httpx.Response, provider: str) -> Any:
    if resp.status_code >= 400:
        message = _provider_message(resp)
        raise ProviderError(
            f"{provider} returned {resp.status_code}: {message}",
            provider,
            status=resp.status_code,
            site_specific=_is_site_specific(resp.status_code, message),
        )
    try:
        return resp.json()
    except ValueError as exc:
        raise MalformedResponseError(
            f"{provider} returned a non-JSON body", provider, status=resp.status_code
        ) from exc


# ── PageSpeed Insights ───────────────────────────────────────────────────────

PAGESPEED_CATEGORIES = ("PERFORMANCE", "ACCESSIBILITY", "BEST_PRACTICES", "SEO")

_PAGESPEED_METRICS = {
    "first_contentful_paint": "first-contentful-paint",
    "largest_contentful_paint": "largest-contentful-paint",
    "total_blocking_time": "total-blocking-time",
    "cumulative_layout_shift": "cumulative-layout-shift",
    "speed_index": "speed-index",
    "time_to_interactive": "interactive",
}


def parse_pagespeed(data: Any, url: str, strategy: str) -> Dict[str, Any]:
    """Flatten a Lighthouse report into scores (0-100) and display values."""
    lh = data.get("lighthouseResult") if isinstance(data, dict) else None
    if not isinstance(lh, dict):
        raise MalformedResponseError("pagespeed response has no lighthouseResult", "pagespeed")

    categories = lh.get("categories") or {}
    audits = lh.get("audits") or {}

    def score(name: str) -> int:
        return round(((categories.get(name) or {}).get("score") or 0) * 100)

    try:
        return {
            "url": data.get("id") or url,
            "strategy": strategy,
            "fetch_time": lh.get("fetchTime"),
            "scores": {
                "performance": score("performance"),
                "accessibility": score("accessibility"),
                "best_practices": score("best-practices"),
                "seo": score("seo"),
            },
            "metrics": {
                key: (audits.get(audit) or {}).get("displayValue") or "-"
                for key, audit in _PAGESPEED_METRICS.items()
            },
        }
    except (AttributeError, TypeError, ValueError) as exc:
        raise MalformedResponseError(
            f"pagespeed report has an unexpected shape: {exc}", "pagespeed"
        ) from exc


class PageSpeedClient:
    provider = "pagespeed"

    def __init__(self, client: httpx.AsyncClient, api_key: str | None = None):
        self._client = client
        self._api_key = settings.PAGESPEED_API_KEY if api_key is None else api_key

    async def run(self, url: str, strategy: str) -> Dict[str, Any]:
        params: list[tuple[str, str]] = [("url", url), ("strategy", strategy)]
        params += [("category", c) for c in PAGESPEED_CATEGORIES]
        if self._api_key:
            params.append(("key", self._api_key))

        async def _call() -> Dict[str, Any]:
            resp = await _send(
                self._client, "GET", settings.PAGESPEED_API_URL,
                params=params, timeout=settings.PAGESPEED_TIMEOUT,
            )
            if resp.status_code in (403, 429):
                hint = "" if self._api_key else ", configure an API key"
                raise ProviderError(
                    f"PageSpeed quota exceeded{hint}", self.provider, status=resp.status_code
                )
            return parse_pagespeed(_json_or_raise(resp, self.provider), url, strategy)

        return await call_provider(self.provider, _call)


# ── Google Search Console ────────────────────────────────────────────────────

def candidate_properties(site_url: str) -> List[str]:
    """
    Search Console property names to try for a site, most specific first:
    the URL-prefix property, then the domain property.
    """
    raw = site_url.strip()
    if not raw.startswith("http"):
        raw = f"https://{raw}"
    parts = urlsplit(raw)
    host = (parts.hostname or "").lower()
    prefix = f"{parts.scheme}://{parts.netloc}{parts.path or '/'}"
    if not prefix.endswith("/"):
        prefix += "/"
    out = [prefix]
    if host:
        domain = re.sub(r"^www\.", "", host)
        out.append(f"sc-domain:{domain}")
    return out


def parse_search_analytics(data: Any) -> List[RankingRow]:
    if not isinstance(data, dict) or not isinstance(data.get("rows") or [], list):
        raise MalformedResponseError("search analytics response has no 'rows' array", "google")
    try:
        return [
            RankingRow(
                query=(row.get("keys") or [""])[0],
                position=row.get("position"),
                impressions=int(row.get("impressions") or 0),
                clicks=int(row.get("clicks") or 0),
            )
            for row in (data.get("rows") or [])
        ]
    except (AttributeError, TypeError, ValueError, IndexError) as exc:
        raise MalformedResponseError(f"search analytics row has an unexpected shape: {exc}", "google") from exc


class SearchConsoleClient:
    provider = "google"

    def __init__(self, client: httpx.AsyncClient):
        self._client = client
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(settings.GSC_CLIENT_ID and settings.GSC_CLIENT_SECRET and settings.GSC_REFRESH_TOKEN)

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        resp = await _send(
            self._client, "POST", settings.GSC_TOKEN_URL,
            data={
                "client_id": settings.GSC_CLIENT_ID,
                "client_secret": settings.GSC_CLIENT_SECRET,
                "refresh_token": settings.GSC_REFRESH_TOKEN,
                "grant_type": "refresh_token",
            },
            timeout=settings.PROVIDER_TIMEOUT,
        )
        data = _json_or_raise(resp, self.provider)
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise MalformedResponseError("token response has no access_token", self.provider)
        self._token = token
        # Refresh a minute early.
        self._token_expires_at = time.monotonic() + max(0, int(data.get("expires_in", 3600)) - 60)
        return token

    async def query_rankings(self, site_url: str, today: Optional[date] = None) -> List[RankingRow]:
        if not self.configured:
            raise ProviderError("Search Console credentials are not configured", self.provider)

        end = today or date.today()
        start = end - timedelta(days=settings.RANKING_LOOKBACK_DAYS)

        async def _call() -> List[RankingRow]:
            token = await self._access_token()
            rejected: List[int] = []
            for prop in candidate_properties(site_url):
                resp = await _send(
                    self._client, "POST",
                    f"{settings.GSC_API_BASE}/sites/{quote(prop, safe='')}/searchAnalytics/query",
                    headers={"Authorization": f"Bearer {token}"},
                    json={
                        "startDate": start.isoformat(),
                        "endDate": end.isoformat(),
                        "dimensions": ["query"],
                        "rowLimit": 1000,
                    },
                    timeout=settings.PROVIDER_TIMEOUT,
                )
                try:
                    data = _json_or_raise(resp, self.provider)
                except ProviderError as exc:
                    if exc.status in (403, 404):
                        log.info("gsc.property.rejected", prop=prop, status=exc.status)
                        rejected.append(exc.status)
                        continue
                    raise
                return parse_search_analytics(data)
            # Every candidate property was refused: the site is not verified.
            raise ProviderError(
                f"no accessible Search Console property for {site_url}",
                self.provider,
                status=rejected[-1] if rejected else 0,
                site_specific=True,
            )

        return await call_provider(self.provider, _call)


# ── Bing Webmaster ───────────────────────────────────────────────────────────

_BING_DATE = re.compile(r"/Date\((-?\d+)")


def _bing_timestamp(value: Any) -> int:
    m = _BING_DATE.match(str(value or ""))
    return int(m.group(1)) if m else 0


def parse_query_stats(data: Any) -> List[RankingRow]:
    entries = data.get("d") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise MalformedResponseError("bing response has no 'd' array", "bing")

    try:
        # Stats come back per query per period; keep the newest period.
        latest: Dict[str, dict] = {}
        for entry in entries:
            query = entry.get("Query")
            if not query:
                continue
            seen = latest.get(query)
            if seen is None or _bing_timestamp(entry.get("Date")) >= _bing_timestamp(seen.get("Date")):
                latest[query] = entry

        rows = []
        for query, entry in latest.items():
            position = entry.get("AvgImpressionPosition")
            rows.append(
                RankingRow(
                    query=query,
                    position=position if position is not None and position >= 0 else None,
                    impressions=int(entry.get("Impressions") or 0),
                    clicks=int(entry.get("Clicks") or 0),
                )
            )
    except (AttributeError, TypeError, ValueError) as exc:
        raise MalformedResponseError(f"bing query stats have an unexpected shape: {exc}", "bing") from exc
    return rows


class BingWebmasterClient:
    provider = "bing"

    def __init__(self, client: httpx.AsyncClient, api_key: str | None = None):
        self._client = client
        self._api_key = settings.BING_API_KEY if api_key is None else api_key

    async def query_rankings(self, site_url: str) -> List[RankingRow]:
        if not self._api_key:
            raise ProviderError("Bing Webmaster API key is not configured", self.provider)

        async def _call() -> List[RankingRow]:
            resp = await _send(
                self._client, "GET", f"{settings.BING_API_BASE}/GetQueryStats",
                params={"siteUrl": site_url, "apikey": self._api_key},
                timeout=settings.PROVIDER_TIMEOUT,
            )
            return parse_query_stats(_json_or_raise(resp, self.provider))

        return await call_provider(self.provider, _call)
