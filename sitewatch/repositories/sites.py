from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sitewatch.models import Site

# unknown is only ever the initial value.
_WRITABLE_STATUSES = {"online", "offline"}


class SiteRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_all(self) -> List[Site]:
        rows = await self.db.execute(select(Site).order_by(Site.created_at, Site.id))
        return list(rows.scalars().all())

    async def get(self, site_id: str) -> Optional[Site]:
        return await self.db.get(Site, site_id)

    async def update_status(
        self,
        site: Site,
        status: str,
        checked_at: datetime,
        latency_ms: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> Site:
        if status not in _WRITABLE_STATUSES:
            raise ValueError(f"cannot write site status {status!r}")
        site.status = status
        site.last_checked = checked_at
        site.latency_ms = latency_ms
        site.status_code = status_code
        await self.db.flush()
        return site
