from __future__ import annotations
from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sitewatch.models import CheckAudit


class AuditRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        kind: str,
        mode: str,
        sites_total: int = 0,
        tasks_dispatched: int = 0,
        tasks_failed: int = 0,
        duration_ms: int = 0,
        error_detail: str | None = None,
        triggered_by: str = "manual",
    ) -> None:
        self.db.add(
            CheckAudit(
                kind=kind,
                mode=mode,
                sites_total=sites_total,
                tasks_dispatched=tasks_dispatched,
                tasks_failed=tasks_failed,
                duration_ms=duration_ms,
                error_detail=error_detail,
                triggered_by=triggered_by,
            )
        )

    async def recent(self, limit: int = 50, kind: Optional[str] = None) -> List[CheckAudit]:
        query = select(CheckAudit)
        if kind:
            query = query.where(CheckAudit.kind == kind)
        rows = await self.db.execute(
            query.order_by(CheckAudit.created_at.desc(), CheckAudit.id.desc()).limit(limit)
        )
        return list(rows.scalars().all())
