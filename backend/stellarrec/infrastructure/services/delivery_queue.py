"""
Delivery Queue

Durable priority queue over the submissions table. A submission is due when
it is pending and its ``next_attempt_at`` has passed; due rows are handed
out in (priority, next_attempt_at) order and moved in-flight atomically.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stellarrec.domain.submission import (
    EnqueueSubmissionRequest,
    SubmissionStatus,
    is_terminal,
)
from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.db.models.submission import Submission
from stellarrec.infrastructure.db.repositories.submission_repository import SubmissionRepository
from stellarrec.infrastructure.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)


class DeliveryQueue:
    """
    Queue operations over the submission store.

    Each method runs in its own transaction, so a claimed batch is
    committed before any dispatch starts.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stale_after: timedelta = timedelta(minutes=15),
    ):
        self._session_factory = session_factory
        self._stale_after = stale_after

    async def enqueue(self, request: EnqueueSubmissionRequest) -> Submission:
        """
        Put a submission on the queue, due now.

        Re-enqueueing an existing (application, university) pair updates its
        priority and, when pending, makes it due immediately. Terminal
        submissions are returned unchanged, except a cancelled one, which goes
        back on the queue with a fresh retry budget.
        """
        async with self._session_factory() as session, session.begin():
            return await self._enqueue_one(session, request, utc_now())

    async def enqueue_bulk(self, requests: Sequence[EnqueueSubmissionRequest]) -> List[Submission]:
        """Enqueue many submissions atomically; results follow the request order."""
        now = utc_now()
        async with self._session_factory() as session, session.begin():
            submissions = [await self._enqueue_one(session, request, now) for request in requests]
        logger.info(f"[QUEUE] Bulk enqueued {len(submissions)} submissions")
        return submissions

    async def _enqueue_one(
        self,
        session: AsyncSession,
        request: EnqueueSubmissionRequest,
        now: datetime,
    ) -> Submission:
        repo = SubmissionRepository(session)
        existing = await repo.get_by_pair(request.application_id, request.university_id)
        if existing is None:
            try:
                async with session.begin_nested():
                    submission = await repo.add(Submission(
                        application_id=request.application_id,
                        university_id=request.university_id,
                        channel=request.channel.value,
                        status=SubmissionStatus.PENDING.value,
                        priority=request.priority,
                        max_retries=request.max_retries,
                        next_attempt_at=now,
                    ))
                logger.info(
                    f"[QUEUE] Enqueued {submission.id} "
                    f"({request.channel.value}, priority {request.priority})"
                )
                return submission
            except IntegrityError:
                # Lost an insert race for the same pair
                existing = await repo.get_by_pair(request.application_id, request.university_id)

        if existing.status == SubmissionStatus.CANCELLED.value:
            await repo.transition(
                existing.id,
                [SubmissionStatus.CANCELLED],
                {
                    "status": SubmissionStatus.PENDING.value,
                    "channel": request.channel.value,
                    "priority": request.priority,
                    "max_retries": request.max_retries,
                    "retry_count": 0,
                    "last_error": None,
                    "next_attempt_at": now,
                    "updated_at": now,
                },
            )
            logger.info(f"[QUEUE] Restored cancelled submission {existing.id} to the queue")
            return await repo.get_fresh(existing.id)

        if is_terminal(existing.status):
            return existing

        values: Dict[str, Any] = {"priority": request.priority, "updated_at": now}
        if existing.status == SubmissionStatus.PENDING.value:
            values["next_attempt_at"] = now
        await repo.transition(existing.id, [SubmissionStatus(existing.status)], values)
        logger.info(f"[QUEUE] Re-enqueued {existing.id} with priority {request.priority}")
        return await repo.get_fresh(existing.id)

    async def dequeue_due_batch(self, limit: int = 100) -> List[Submission]:
        """
        Claim up to ``limit`` due submissions and move them in-flight.

        Concurrent callers never receive the same submission.
        """
        if limit <= 0:
            return []
        claim_token = uuid.uuid4()
        async with self._session_factory() as session, session.begin():
            claimed = await SubmissionRepository(session).claim_due(limit, utc_now(), claim_token)
        if claimed:
            logger.debug(f"[QUEUE] Claimed {len(claimed)} due submissions")
        return claimed

    async def mark_in_flight(self, ids: Sequence[UUID]) -> List[UUID]:
        """Claim specific pending submissions; returns the ids actually moved."""
        async with self._session_factory() as session, session.begin():
            return await SubmissionRepository(session).mark_in_flight(ids, utc_now(), uuid.uuid4())

    async def reclaim_stale(self, older_than: Optional[timedelta] = None) -> int:
        """Return submissions stuck in-flight (e.g. after a crash) to the queue."""
        now = utc_now()
        cutoff = now - (older_than or self._stale_after)
        async with self._session_factory() as session, session.begin():
            count = await SubmissionRepository(session).reclaim_stale(cutoff, now)
        if count:
            logger.warning(f"[QUEUE] Reclaimed {count} stale in-flight submissions")
        return count

    async def release_claim(self, claim_token: UUID) -> int:
        """Return the unfinished part of a claimed batch to the queue."""
        now = utc_now()
        async with self._session_factory() as session, session.begin():
            count = await SubmissionRepository(session).release_claim(claim_token, now)
        if count:
            logger.warning(f"[QUEUE] Released {count} in-flight submissions back to the queue")
        return count

    async def set_priority(self, submission_id: UUID, priority: int) -> Submission:
        """Operator re-prioritisation of a queued submission."""
        if not 1 <= priority <= 10:
            raise ValidationError(
                "Priority must be between 1 (highest) and 10 (lowest)",
                details={"priority": priority},
            )
        async with self._session_factory() as session, session.begin():
            repo = SubmissionRepository(session)
            submission = await repo.get_by_id(submission_id)
            if submission is None:
                raise NotFoundError(
                    f"Submission {submission_id} not found",
                    operation="set_priority",
                    table="submissions",
                )
            if is_terminal(submission.status) or submission.status == SubmissionStatus.SUBMITTED.value:
                raise InvalidTransitionError(
                    f"Cannot re-prioritise a {submission.status} submission",
                    current_status=submission.status,
                )
            await repo.transition(
                submission_id,
                [SubmissionStatus.PENDING, SubmissionStatus.PROCESSING],
                {"priority": priority, "updated_at": utc_now()},
            )
            return await repo.get_fresh(submission_id)

    async def remove_from_queue(self, submission_id: UUID) -> Submission:
        """
        Take one pending submission off the queue.

        The row is kept as ``cancelled`` so its history survives; submissions
        already in flight or finished cannot be removed.
        """
        async with self._session_factory() as session, session.begin():
            repo = SubmissionRepository(session)
            submission = await repo.get_by_id(submission_id)
            if submission is None:
                raise NotFoundError(
                    f"Submission {submission_id} not found",
                    operation="remove_from_queue",
                    table="submissions",
                )
            removed = await repo.transition(
                submission_id,
                [SubmissionStatus.PENDING],
                {"status": SubmissionStatus.CANCELLED.value, "updated_at": utc_now()},
            )
            current = await repo.get_fresh(submission_id)
            if not removed:
                raise InvalidTransitionError(
                    "Only pending submissions can be removed from the queue "
                    f"(status is {current.status})",
                    current_status=current.status,
                    requested_status=SubmissionStatus.CANCELLED.value,
                )
        logger.info(f"[QUEUE] Removed {submission_id} from the queue")
        return current

    async def clear_queue(self) -> int:
        """Cancel every pending submission; returns how many were removed."""
        async with self._session_factory() as session, session.begin():
            count = await SubmissionRepository(session).cancel_pending(utc_now())
        logger.warning(f"[QUEUE] Cleared {count} pending submissions from the queue")
        return count

    async def queue_status(self) -> Dict[str, int]:
        """Operator view of queue depth."""
        async with self._session_factory() as session:
            repo = SubmissionRepository(session)
            counts = await repo.count_by_status()
            due = await repo.count_due(utc_now())
        pending = counts[SubmissionStatus.PENDING.value]
        return {
            "pending": pending,
            "due": due,
            "scheduled": pending - due,
            "processing": counts[SubmissionStatus.PROCESSING.value],
            "failed": counts[SubmissionStatus.FAILED.value],
        }

    async def list_queue(self, limit: int = 50, offset: int = 0) -> List[Submission]:
        async with self._session_factory() as session:
            return await SubmissionRepository(session).list_queue(limit, offset)
