"""
Notification Repositories

Rules, their cooldown stamp, and the events they produce.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stellarrec.infrastructure.db.models.notification import NotificationEvent, NotificationRule
from stellarrec.infrastructure.db.repositories.base_repository import BaseRepository


class NotificationRuleRepository(BaseRepository[NotificationRule]):
    """Repository for alerting rules."""

    def __init__(self, session: AsyncSession):
        super().__init__(NotificationRule, session)

    async def list_rules(self, enabled_only: bool = False) -> List[NotificationRule]:
        stmt = select(NotificationRule).order_by(NotificationRule.created_at.asc())
        if enabled_only:
            stmt = stmt.where(NotificationRule.enabled.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def claim_cooldown(
        self,
        rule_id: UUID,
        expected_last_triggered: Optional[datetime],
        now: datetime
    ) -> bool:
        """
        Stamp ``last_triggered_at`` only if nobody else fired the rule since
        it was read. Returns False when the stamp moved underneath us.
        """
        if expected_last_triggered is None:
            guard = NotificationRule.last_triggered_at.is_(None)
        else:
            guard = NotificationRule.last_triggered_at == expected_last_triggered
        stmt = (
            update(NotificationRule)
            .where(NotificationRule.id == rule_id, guard)
            .values(last_triggered_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class NotificationEventRepository(BaseRepository[NotificationEvent]):
    """Repository for fired notification events."""

    def __init__(self, session: AsyncSession):
        super().__init__(NotificationEvent, session)

    async def list_events(
        self,
        limit: int = 50,
        offset: int = 0,
        severity: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        rule_id: Optional[UUID] = None
    ) -> List[NotificationEvent]:
        stmt = select(NotificationEvent)
        if severity is not None:
            stmt = stmt.where(NotificationEvent.severity == severity)
        if acknowledged is not None:
            stmt = stmt.where(NotificationEvent.acknowledged == acknowledged)
        if rule_id is not None:
            stmt = stmt.where(NotificationEvent.rule_id == rule_id)
        stmt = stmt.order_by(NotificationEvent.triggered_at.desc()).offset(offset).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def acknowledge(
        self,
        id: UUID,
        acknowledged_by: str,
        now: datetime
    ) -> Optional[NotificationEvent]:
        event = await self.get_by_id(id)
        if event is None:
            return None
        if event.acknowledged:
            return event
        return await self.update_fields(
            id,
            {
                "acknowledged": True,
                "acknowledged_by": acknowledged_by,
                "acknowledged_at": now,
            },
        )

    async def detach_rule(self, rule_id: UUID) -> int:
        """Keep a deleted rule's events as history by clearing their rule reference."""
        stmt = (
            update(NotificationEvent)
            .where(NotificationEvent.rule_id == rule_id)
            .values(rule_id=None)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0
