"""
Error Log Repository

Filtered listing, metrics and resolution of error log entries.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stellarrec.infrastructure.db.models.error_log import ErrorLogEntry, ErrorLogFilter
from stellarrec.infrastructure.db.repositories.base_repository import BaseRepository


class ErrorLogRepository(BaseRepository[ErrorLogEntry]):
    """Repository for error log entries."""

    def __init__(self, session: AsyncSession):
        super().__init__(ErrorLogEntry, session)

    @staticmethod
    def _apply_filters(stmt, filters: Optional[ErrorLogFilter]):
        if filters is None:
            return stmt
        if filters.level is not None:
            stmt = stmt.where(ErrorLogEntry.level == filters.level.value)
        if filters.category is not None:
            stmt = stmt.where(ErrorLogEntry.category == filters.category.value)
        if filters.submission_id is not None:
            stmt = stmt.where(ErrorLogEntry.submission_id == filters.submission_id)
        if filters.university_id is not None:
            stmt = stmt.where(ErrorLogEntry.university_id == filters.university_id)
        if filters.resolved is not None:
            stmt = stmt.where(ErrorLogEntry.resolved == filters.resolved)
        if filters.start_date is not None:
            stmt = stmt.where(ErrorLogEntry.occurred_at >= filters.start_date)
        if filters.end_date is not None:
            stmt = stmt.where(ErrorLogEntry.occurred_at <= filters.end_date)
        return stmt

    async def list_filtered(
        self,
        filters: Optional[ErrorLogFilter] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Tuple[List[ErrorLogEntry], int]:
        """Newest-first page of entries plus the total matching count."""
        stmt = self._apply_filters(select(ErrorLogEntry), filters)
        stmt = stmt.order_by(ErrorLogEntry.occurred_at.desc()).offset(offset).limit(limit)
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        count_stmt = self._apply_filters(select(func.count(ErrorLogEntry.id)), filters)
        total = (await self._session.execute(count_stmt)).scalar_one()
        return entries, total

    async def count_by(self, column, since: datetime) -> Dict[str, int]:
        stmt = (
            select(column, func.count(ErrorLogEntry.id).label("count"))
            .where(ErrorLogEntry.occurred_at >= since)
            .group_by(column)
        )
        result = await self._session.execute(stmt)
        return {row[0]: row.count for row in result.all()}

    async def top_messages(self, since: datetime, limit: int = 10) -> List[Dict[str, object]]:
        stmt = (
            select(ErrorLogEntry.message, func.count(ErrorLogEntry.id).label("count"))
            .where(ErrorLogEntry.occurred_at >= since)
            .group_by(ErrorLogEntry.message)
            .order_by(func.count(ErrorLogEntry.id).desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [{"message": row.message, "count": row.count} for row in result.all()]

    async def count_unresolved(self, since: datetime) -> int:
        stmt = select(func.count(ErrorLogEntry.id)).where(
            ErrorLogEntry.occurred_at >= since,
            ErrorLogEntry.resolved.is_(False),
        )
        return (await self._session.execute(stmt)).scalar_one()

    async def occurrences(self, since: datetime) -> List[Tuple[datetime, str]]:
        """(occurred_at, level) for every entry since ``since``."""
        stmt = select(ErrorLogEntry.occurred_at, ErrorLogEntry.level).where(
            ErrorLogEntry.occurred_at >= since
        )
        result = await self._session.execute(stmt)
        return [(row.occurred_at, row.level) for row in result.all()]

    async def recent(self, limit: int = 20) -> List[ErrorLogEntry]:
        stmt = select(ErrorLogEntry).order_by(ErrorLogEntry.occurred_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def resolve(
        self,
        id: UUID,
        resolved_by: str,
        resolution: Optional[str],
        now: datetime
    ) -> Optional[ErrorLogEntry]:
        return await self.update_fields(
            id,
            {
                "resolved": True,
                "resolved_by": resolved_by,
                "resolved_at": now,
                "resolution": resolution,
            },
        )

    async def bulk_resolve(
        self,
        filters: Optional[ErrorLogFilter],
        resolved_by: str,
        resolution: Optional[str],
        now: datetime
    ) -> int:
        """Resolve every unresolved entry matching the filters."""
        ids = self._apply_filters(select(ErrorLogEntry.id), filters).where(
            ErrorLogEntry.resolved.is_(False)
        )
        stmt = (
            update(ErrorLogEntry)
            .where(ErrorLogEntry.id.in_(ids))
            .values(
                resolved=True,
                resolved_by=resolved_by,
                resolved_at=now,
                resolution=resolution,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def purge_resolved_before(self, cutoff: datetime) -> int:
        """Delete resolved entries older than ``cutoff``."""
        stmt = (
            delete(ErrorLogEntry)
            .where(
                ErrorLogEntry.resolved.is_(True),
                ErrorLogEntry.occurred_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0
