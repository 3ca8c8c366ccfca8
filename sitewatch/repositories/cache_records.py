from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sitewatch.models import CacheRecord


def merge_into(
    existing: Optional[Mapping[str, Any]], patch: Mapping[str, Any]
) -> Dict[str, Any]:
    """
    Merge a partial result into the stored sub-fields of a cache record.

    Every sub-field already present is carried forward; patch entries
    replace their namesakes. ``None`` in the patch means "nothing new" and
    never erases a stored value.
    """
    merged = dict(existing or {})
    for name, value in patch.items():
        if value is not None:
            merged[name] = value
    return merged


class CacheRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, site_id: str, kind: str, for_update: bool = False) -> Optional[CacheRecord]:
        query = select(CacheRecord).where(
            CacheRecord.site_id == site_id,
            CacheRecord.kind == kind,
        )
        if for_update:
            query = query.with_for_update()
        rows = await self.db.execute(query)
        return rows.scalar_one_or_none()

    async def for_site(self, site_id: str) -> List[CacheRecord]:
        rows = await self.db.execute(
            select(CacheRecord)
            .where(CacheRecord.site_id == site_id)
            .order_by(CacheRecord.kind)
        )
        return list(rows.scalars().all())

    async def upsert(
        self,
        site_id: str,
        kind: str,
        patch: Mapping[str, Any],
        synced_at: Optional[datetime] = None,
    ) -> CacheRecord:
        """
        Read-modify-write of one (site, kind) row.

        The store's own upsert would replace the whole JSON column, so the
        merge happens here. The row is read FOR UPDATE where the dialect
        supports it; at most one writer per (site, kind, sub-field) runs per
        cycle.
        """
        synced_at = synced_at or datetime.now(timezone.utc)
        record = await self.get(site_id, kind, for_update=True)

        if record is None:
            record = CacheRecord(
                site_id=site_id,
                kind=kind,
                payloads=merge_into(None, patch),
                last_sync=synced_at,
            )
            self.db.add(record)
        else:
            # Assign a fresh dict so the JSON column is flagged dirty.
            record.payloads = merge_into(record.payloads, patch)
            record.last_sync = synced_at

        await self.db.flush()
        return record
