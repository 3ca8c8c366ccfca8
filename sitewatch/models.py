from sqlalchemy import (
    Column, Integer, String, JSON, Float, Date,
    DateTime, ForeignKey, Index, func, Text,
)
from sitewatch.database import Base


class Site(Base):
    """Registry row. The checker side only ever writes the status columns."""

    __tablename__ = "sites"

    id           = Column(String(64), primary_key=True)
    url          = Column(String(500), nullable=False)
    name         = Column(String(200), nullable=False)
    site_type    = Column(String(20), nullable=False, default="wordpress")  # wordpress | custom
    status       = Column(String(20), nullable=False, default="unknown")    # unknown | online | offline
    last_checked = Column(DateTime(timezone=True), nullable=True)
    latency_ms   = Column(Integer, nullable=True)
    status_code  = Column(Integer, nullable=True)
    created_at   = Column(DateTime(timezone=True), server_default=func.now())


class CacheRecord(Base):
    __tablename__ = "site_cache"

    id         = Column(Integer, primary_key=True)
    site_id    = Column(String(64), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False)
    kind       = Column(String(20), nullable=False)      # uptime | tls | pagespeed | ranking
    payloads   = Column(JSON, nullable=False, default=dict)
    last_sync  = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_cache_site_kind", "site_id", "kind", unique=True),
    )


class TrackedKeyword(Base):
    __tablename__ = "tracked_keywords"

    id      = Column(Integer, primary_key=True)
    site_id = Column(String(64), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False)
    source  = Column(String(20), nullable=False)         # google | bing
    keyword = Column(String(300), nullable=False)

    __table_args__ = (
        Index("ix_tracked_unique", "site_id", "source", "keyword", unique=True),
    )


class KeywordRankingHistory(Base):
    __tablename__ = "keyword_ranking_history"

    id            = Column(Integer, primary_key=True)
    site_id       = Column(String(64), ForeignKey("sites.id", ondelete="CASCADE"), nullable=False)
    source        = Column(String(20), nullable=False)
    keyword       = Column(String(300), nullable=False)
    position      = Column(Float, nullable=True)
    impressions   = Column(Integer, default=0)
    clicks        = Column(Integer, default=0)
    recorded_date = Column(Date, nullable=False)

    __table_args__ = (
        Index("ix_ranking_day", "site_id", "source", "keyword", "recorded_date", unique=True),
    )


class CheckAudit(Base):
    __tablename__ = "check_audits"

    id               = Column(Integer, primary_key=True)
    kind             = Column(String(20), nullable=False)
    mode             = Column(String(20), nullable=False)      # batch | queue
    sites_total      = Column(Integer, default=0)
    tasks_dispatched = Column(Integer, default=0)
    tasks_failed     = Column(Integer, default=0)
    duration_ms      = Column(Integer, nullable=True)
    error_detail     = Column(Text, nullable=True)
    triggered_by     = Column(String(50), default="manual")  # manual | cron | scheduler
    created_at       = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_audit_kind", "kind"),
        Index("ix_audit_created", "created_at"),
    )
