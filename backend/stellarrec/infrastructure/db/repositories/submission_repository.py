"""
Submission Repository

Extends BaseRepository with the queue claim, guarded outcome updates and
the windowed aggregate queries the analytics service reads.

Every state change is a conditional UPDATE so concurrent workers cannot
move a row twice; callers check the affected row count.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stellarrec.domain.submission import (
    BACKLOG_STATUSES,
    SUCCESS_STATUSES,
    SubmissionStatus,
    can_transition,
)
from stellarrec.infrastructure.db.models.submission import Submission
from stellarrec.infrastructure.db.repositories.base_repository import BaseRepository
from stellarrec.infrastructure.exceptions import InvalidTransitionError


_SUCCESS = [status.value for status in SUCCESS_STATUSES]
_BACKLOG = [status.value for status in BACKLOG_STATUSES]
_PENDING = SubmissionStatus.PENDING.value
_PROCESSING = SubmissionStatus.PROCESSING.value
_FAILED = SubmissionStatus.FAILED.value
_CONFIRMED = SubmissionStatus.CONFIRMED.value
_CANCELLED = SubmissionStatus.CANCELLED.value


def _check_transition(
    from_statuses: Sequence[SubmissionStatus],
    values: Dict[str, Any],
    operator_retry: bool = False
) -> None:
    if "status" not in values:
        return
    target = SubmissionStatus(values["status"])
    for current in from_statuses:
        if not can_transition(current, target, operator_retry=operator_retry):
            raise InvalidTransitionError(
                f"Submission cannot move from {SubmissionStatus(current).value} to {target.value}",
                current_status=SubmissionStatus(current).value,
                requested_status=target.value,
            )


class SubmissionRepository(BaseRepository[Submission]):
    """Repository for submissions and the delivery queue view over them."""

    def __init__(self, session: AsyncSession):
        super().__init__(Submission, session)

    async def get_by_pair(
        self,
        application_id: UUID,
        university_id: UUID
    ) -> Optional[Submission]:
        """Get the submission for an (application, university) pair."""
        stmt = select(Submission).where(
            Submission.application_id == application_id,
            Submission.university_id == university_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_fresh(self, id: UUID) -> Optional[Submission]:
        """Get a submission, bypassing any stale copy in the identity map."""
        stmt = (
            select(Submission)
            .where(Submission.id == id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    # =========================================================================
    # Queue
    # =========================================================================

    async def claim_due(
        self,
        limit: int,
        now: datetime,
        claim_token: UUID
    ) -> List[Submission]:
        """
        Atomically move up to ``limit`` due rows to processing.

        Selection and claim are one UPDATE statement; on PostgreSQL the inner
        SELECT takes row locks with SKIP LOCKED so concurrent claimers pass
        over each other's rows. The outer ``status = pending`` guard keeps
        the claim correct where row locks are unavailable.
        """
        due_ids = (
            select(Submission.id)
            .where(
                Submission.status == _PENDING,
                Submission.next_attempt_at <= now,
            )
            .order_by(Submission.priority.asc(), Submission.next_attempt_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(Submission)
            .where(
                Submission.id.in_(due_ids),
                Submission.status == _PENDING,
            )
            .values(
                status=_PROCESSING,
                claim_token=claim_token,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        return await self.get_claimed(claim_token)

    async def get_claimed(self, claim_token: UUID) -> List[Submission]:
        """Rows currently in-flight under a claim token, in dispatch order."""
        stmt = (
            select(Submission)
            .where(
                Submission.claim_token == claim_token,
                Submission.status == _PROCESSING,
            )
            .order_by(Submission.priority.asc(), Submission.next_attempt_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_in_flight(
        self,
        ids: Sequence[UUID],
        now: datetime,
        claim_token: UUID
    ) -> List[UUID]:
        """Compare-and-swap pending -> processing; returns the ids actually claimed."""
        if not ids:
            return []
        stmt = (
            update(Submission)
            .where(
                Submission.id.in_(list(ids)),
                Submission.status == _PENDING,
            )
            .values(
                status=_PROCESSING,
                claim_token=claim_token,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        return [row.id for row in await self.get_claimed(claim_token)]

    async def reclaim_stale(self, cutoff: datetime, now: datetime) -> int:
        """Return rows stuck in-flight since before ``cutoff`` to the queue."""
        stmt = (
            update(Submission)
            .where(
                Submission.status == _PROCESSING,
                Submission.claimed_at < cutoff,
            )
            .values(
                status=_PENDING,
                next_attempt_at=now,
                claim_token=None,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def release_claim(self, claim_token: UUID, now: datetime) -> int:
        """Put rows still in-flight under ``claim_token`` back on the queue, due now."""
        stmt = (
            update(Submission)
            .where(
                Submission.claim_token == claim_token,
                Submission.status == _PROCESSING,
            )
            .values(
                status=_PENDING,
                next_attempt_at=now,
                claim_token=None,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def cancel_pending(self, now: datetime) -> int:
        """Take every pending row off the queue; in-flight rows are left alone."""
        stmt = (
            update(Submission)
            .where(Submission.status == _PENDING)
            .values(
                status=_CANCELLED,
                claim_token=None,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def apply_claimed_outcome(
        self,
        id: UUID,
        claim_token: UUID,
        values: Dict[str, Any]
    ) -> bool:
        """
        Write a dispatch outcome if the row is still held by this claim.

        Returns False when the row was reclaimed or confirmed meanwhile.
        """
        _check_transition([SubmissionStatus.PROCESSING], values)
        stmt = (
            update(Submission)
            .where(
                Submission.id == id,
                Submission.status == _PROCESSING,
                Submission.claim_token == claim_token,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def transition(
        self,
        id: UUID,
        from_statuses: Sequence[SubmissionStatus],
        values: Dict[str, Any],
        operator_retry: bool = False
    ) -> bool:
        """
        Conditional update from any of ``from_statuses``.

        A status change must be allowed from every listed status; updates
        that leave ``status`` alone are not checked.
        """
        _check_transition(from_statuses, values, operator_retry)
        stmt = (
            update(Submission)
            .where(
                Submission.id == id,
                Submission.status.in_([SubmissionStatus(s).value for s in from_statuses]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def list_queue(self, limit: int = 50, offset: int = 0) -> List[Submission]:
        """Pending and in-flight submissions in dispatch order."""
        stmt = (
            select(Submission)
            .where(Submission.status.in_(_BACKLOG))
            .order_by(Submission.priority.asc(), Submission.next_attempt_at.asc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_due(self, now: datetime) -> int:
        stmt = select(func.count(Submission.id)).where(
            Submission.status == _PENDING,
            Submission.next_attempt_at <= now,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_by_status(
        self,
        university_id: Optional[UUID] = None,
        since: Optional[datetime] = None
    ) -> Dict[str, int]:
        """Submission counts for every status (zero-filled)."""
        stmt = select(Submission.status, func.count(Submission.id).label("count"))
        if university_id is not None:
            stmt = stmt.where(Submission.university_id == university_id)
        if since is not None:
            stmt = stmt.where(Submission.updated_at >= since)
        stmt = stmt.group_by(Submission.status)
        result = await self._session.execute(stmt)
        counts = {status.value: 0 for status in SubmissionStatus}
        for row in result.all():
            counts[row.status] = row.count
        return counts

    # =========================================================================
    # Operator retry
    # =========================================================================

    async def find_failed(
        self,
        university_id: Optional[UUID] = None,
        updated_before: Optional[datetime] = None,
        retry_count_below: Optional[int] = None,
        limit: int = 100
    ) -> List[Submission]:
        """Failed submissions matching an operator filter, oldest first."""
        stmt = select(Submission).where(Submission.status == _FAILED)
        if university_id is not None:
            stmt = stmt.where(Submission.university_id == university_id)
        if updated_before is not None:
            stmt = stmt.where(Submission.updated_at <= updated_before)
        if retry_count_below is not None:
            stmt = stmt.where(Submission.retry_count < retry_count_below)
        stmt = stmt.order_by(Submission.updated_at.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def reset_failed(self, id: UUID, priority: int, now: datetime) -> bool:
        """Operator retry: failed -> pending with a fresh retry budget."""
        return await self.transition(
            id,
            [SubmissionStatus.FAILED],
            {
                "status": _PENDING,
                "priority": priority,
                "retry_count": 0,
                "next_attempt_at": now,
                "claim_token": None,
                "claimed_at": None,
                "updated_at": now,
            },
            operator_retry=True,
        )

    # =========================================================================
    # Aggregates
    # =========================================================================

    async def window_outcomes(self, since: datetime) -> Tuple[int, int]:
        """(successes, failures) among rows last updated inside the window."""
        stmt = select(
            func.coalesce(func.sum(case((Submission.status.in_(_SUCCESS), 1), else_=0)), 0),
            func.coalesce(func.sum(case((Submission.status == _FAILED, 1), else_=0)), 0),
        ).where(Submission.updated_at >= since)
        result = await self._session.execute(stmt)
        successes, failures = result.one()
        return int(successes), int(failures)

    async def count_for_university(self, university_id: UUID) -> int:
        stmt = select(func.count(Submission.id)).where(Submission.university_id == university_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_failed_since(self, since: datetime) -> int:
        stmt = select(func.count(Submission.id)).where(
            Submission.status == _FAILED,
            Submission.updated_at >= since,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def outcomes_by_university(self, since: datetime) -> List[Dict[str, Any]]:
        """Per-university success/failure counts inside the window."""
        stmt = (
            select(
                Submission.university_id,
                func.sum(case((Submission.status.in_(_SUCCESS), 1), else_=0)).label("successes"),
                func.sum(case((Submission.status == _FAILED, 1), else_=0)).label("failures"),
            )
            .where(
                Submission.updated_at >= since,
                Submission.status.in_(_SUCCESS + [_FAILED]),
            )
            .group_by(Submission.university_id)
        )
        result = await self._session.execute(stmt)
        return [
            {
                "university_id": row.university_id,
                "successes": int(row.successes or 0),
                "failures": int(row.failures or 0),
            }
            for row in result.all()
        ]

    async def confirmation_latencies(
        self,
        since: datetime,
        university_id: Optional[UUID] = None
    ) -> List[Tuple[UUID, float]]:
        """(university_id, seconds from submitted to confirmed) for confirmations in the window."""
        stmt = select(
            Submission.university_id,
            Submission.submitted_at,
            Submission.confirmed_at,
        ).where(
            Submission.status == _CONFIRMED,
            Submission.confirmed_at >= since,
            Submission.submitted_at.is_not(None),
        )
        if university_id is not None:
            stmt = stmt.where(Submission.university_id == university_id)
        result = await self._session.execute(stmt)
        return [
            (row.university_id, (row.confirmed_at - row.submitted_at).total_seconds())
            for row in result.all()
        ]

    async def outcome_timestamps(
        self,
        since: datetime,
        university_id: Optional[UUID] = None
    ) -> List[Tuple[datetime, str]]:
        """(updated_at, status) for every finished attempt inside the window."""
        stmt = select(Submission.updated_at, Submission.status).where(
            Submission.updated_at >= since,
            Submission.status.in_(_SUCCESS + [_FAILED]),
        )
        if university_id is not None:
            stmt = stmt.where(Submission.university_id == university_id)
        result = await self._session.execute(stmt)
        return [(row.updated_at, row.status) for row in result.all()]

    async def failure_messages(
        self,
        since: datetime,
        university_id: Optional[UUID] = None
    ) -> List[Optional[str]]:
        stmt = select(Submission.last_error).where(
            Submission.status == _FAILED,
            Submission.updated_at >= since,
        )
        if university_id is not None:
            stmt = stmt.where(Submission.university_id == university_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def outcomes_by_channel(self, since: datetime) -> List[Dict[str, Any]]:
        """Per-channel totals and outcomes for submissions touched in the window."""
        stmt = (
            select(
                Submission.channel,
                func.count(Submission.id).label("total"),
                func.sum(case((Submission.status.in_(_SUCCESS), 1), else_=0)).label("successes"),
                func.sum(case((Submission.status == _FAILED, 1), else_=0)).label("failures"),
            )
            .where(Submission.updated_at >= since)
            .group_by(Submission.channel)
        )
        result = await self._session.execute(stmt)
        return [
            {
                "channel": row.channel,
                "total": int(row.total or 0),
                "successes": int(row.successes or 0),
                "failures": int(row.failures or 0),
            }
            for row in result.all()
        ]

    async def recent_changes(self, limit: int = 20) -> List[Submission]:
        """Most recently updated submissions."""
        stmt = (
            select(Submission)
            .order_by(Submission.updated_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
