from __future__ import annotations

from datetime import date
from typing import Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sitewatch.models import KeywordRankingHistory, TrackedKeyword
from sitewatch.schemas import RankingRow


class RankingRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def tracked_keywords(self, site_id: str, source: str) -> List[str]:
        rows = await self.db.execute(
            select(TrackedKeyword.keyword).where(
                TrackedKeyword.site_id == site_id,
                TrackedKeyword.source == source,
            )
        )
        return list(rows.scalars().all())

    async def record_snapshot(
        self,
        site_id: str,
        source: str,
        rows: Iterable[RankingRow],
        recorded_date: date,
    ) -> int:
        """
        Store today's position for each tracked keyword found in ``rows``.

        Returns the number of keywords written. A second snapshot on the
        same day overwrites the first instead of adding a row.
        """
        tracked = set(await self.tracked_keywords(site_id, source))
        if not tracked:
            return 0

        by_query = {r.query: r for r in rows if r.query in tracked}
        if not by_query:
            return 0

        existing = {
            row.keyword: row
            for row in (
                await self.db.execute(
                    select(KeywordRankingHistory).where(
                        KeywordRankingHistory.site_id == site_id,
                        KeywordRankingHistory.source == source,
                        KeywordRankingHistory.recorded_date == recorded_date,
                        KeywordRankingHistory.keyword.in_(list(by_query)),
                    )
                )
            ).scalars().all()
        }

        for keyword, r in by_query.items():
            row = existing.get(keyword)
            if row is None:
                self.db.add(
                    KeywordRankingHistory(
                        site_id=site_id,
                        source=source,
                        keyword=keyword,
                        position=r.position,
                        impressions=r.impressions,
                        clicks=r.clicks,
                        recorded_date=recorded_date,
                    )
                )
            else:
                row.position = r.position
                row.impressions = r.impressions
                row.clicks = r.clicks

        await self.db.flush()
        return len(by_query)

    async def history(self, site_id: str, limit: int = 200) -> List[KeywordRankingHistory]:
        rows = await self.db.execute(
            select(KeywordRankingHistory)
            .where(KeywordRankingHistory.site_id == site_id)
            .order_by(KeywordRankingHistory.recorded_date.desc(), KeywordRankingHistory.keyword)
            .limit(limit)
        )
        return list(rows.scalars().all())
