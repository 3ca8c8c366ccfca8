from __future__ import annotations
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

CheckKind = Literal["uptime", "tls", "pagespeed", "ranking"]
SiteStatus = Literal["unknown", "online", "offline"]
ErrorKind = Literal["transport", "timeout", "provider", "malformed"]

CHECK_KINDS: tuple[str, ...] = ("uptime", "tls", "pagespeed", "ranking")

# Kinds whose result only matters when a provider returned data.
METRIC_KINDS: tuple[str, ...] = ("pagespeed", "ranking")

# Strategies a kind fans out into, in dispatch order.
KIND_STRATEGIES: Dict[str, tuple[Optional[str], ...]] = {
    "uptime": (None,),
    "tls": (None,),
    "pagespeed": ("mobile", "desktop"),
    "ranking": ("google", "bing"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def payload_field(kind: str, strategy: Optional[str]) -> str:
    """Name of the cache sub-field a (kind, strategy) result is stored under."""
    return f"{strategy or kind}_data"


class CheckResult(BaseModel):
    site_id: str
    kind: CheckKind
    strategy: Optional[str] = None
    status: Literal["online", "offline"]
    latency_ms: int = Field(0, ge=0)
    status_code: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    metrics: Optional[Dict[str, Any]] = None
    checked_at: datetime = Field(default_factory=_utcnow)

    @property
    def ok(self) -> bool:
        return self.error_kind is None


class TaskPayload(BaseModel):
    """Body of one queued unit of work."""
    target_id: str = Field(alias="targetId")
    url: str
    check_kind: CheckKind = Field(alias="checkKind")
    strategy: Optional[str] = None

    model_config = {"populate_by_name": True}


class SiteOut(BaseModel):
    id: str
    url: str
    name: str
    site_type: str
    status: SiteStatus
    last_checked: Optional[datetime] = None
    latency_ms: Optional[int] = None
    status_code: Optional[int] = None
    model_config = {"from_attributes": True}


class CacheRecordOut(BaseModel):
    site_id: str
    kind: str
    payloads: Dict[str, Any]
    last_sync: datetime
    model_config = {"from_attributes": True}


class TaskOutcome(BaseModel):
    site_id: str
    kind: CheckKind
    strategy: Optional[str] = None
    result: Optional[CheckResult] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None
    cache_error: Optional[str] = None
    notifications_sent: int = 0
    skipped: Optional[str] = None

    @property
    def failure_reason(self) -> Optional[str]:
        """
        Why the task did not fully succeed.

        An offline site or an invalid certificate is a finding, not a failure.
        A metric kind that produced no data is a failure whatever the cause.
        """
        if self.skipped:
            return self.skipped
        if self.result is None:
            return "no result"
        if self.kind in METRIC_KINDS and not self.result.ok:
            return self.result.error or self.result.error_kind
        if self.cache_error:
            return f"cache write failed: {self.cache_error}"
        return None

    @property
    def succeeded(self) -> bool:
        return self.failure_reason is None


class DispatchOutcome(BaseModel):
    """What the fan-out knows about one planned task once it has been handled."""
    site_id: str
    kind: CheckKind
    strategy: Optional[str] = None
    delay_seconds: float = 0
    ok: bool
    error: Optional[str] = None
    outcome: Optional[TaskOutcome] = None


class RunSummary(BaseModel):
    kind: CheckKind
    mode: Literal["batch", "queue"]
    sites_total: int
    tasks_dispatched: int
    tasks_succeeded: int
    tasks_failed: int
    cache_failures: int = 0
    notifications_sent: int = 0
    errors: List[str] = []
    results: List[DispatchOutcome] = []
    finished_at: datetime = Field(default_factory=_utcnow)


class RankingRow(BaseModel):
    query: str
    position: Optional[float] = None
    impressions: int = 0
    clicks: int = 0


class RankingHistoryOut(BaseModel):
    site_id: str
    source: str
    keyword: str
    position: Optional[float]
    impressions: int
    clicks: int
    recorded_date: date
    model_config = {"from_attributes": True}


class AuditOut(BaseModel):
    id: int
    kind: str
    mode: str
    sites_total: int
    tasks_dispatched: int
    tasks_failed: int
    duration_ms: Optional[int]
    error_detail: Optional[str]
    triggered_by: str
    created_at: datetime
    model_config = {"from_attributes": True}


class QueueStats(BaseModel):
    pending: int
    due: int


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    scheduler: str
    version: str
