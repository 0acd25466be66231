"""
Submission Processor

Wires the delivery queue, channel dispatcher and retry policy together:
claim a batch, dispatch it through a bounded pool, and apply each outcome
to the submission store in its own transaction.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stellarrec.domain.retry_policy import RetryPolicy
from stellarrec.domain.submission import (
    DeliveryChannel,
    DeliveryResult,
    SubmissionStatus,
)
from stellarrec.infrastructure.db.models.base import to_naive_utc, utc_now
from stellarrec.infrastructure.db.models.error_log import ErrorCategory, ErrorLevel, ErrorLogEntry
from stellarrec.infrastructure.db.models.submission import Submission
from stellarrec.infrastructure.db.repositories.submission_repository import SubmissionRepository
from stellarrec.infrastructure.exceptions import InvalidTransitionError, NotFoundError
from stellarrec.infrastructure.services.channel_dispatcher import ChannelDispatcher
from stellarrec.infrastructure.services.delivery_queue import DeliveryQueue
from stellarrec.infrastructure.services.error_logging_service import build_entry, mirror_to_logger


logger = logging.getLogger(__name__)


OUTCOMES = ("submitted", "confirmed", "retried", "failed", "skipped", "released", "errors")


class SubmissionProcessor:
    """
    Runs delivery batches and applies their outcomes.

    Outcome writes are guarded by the claim token: if the row was reclaimed
    by the stale sweep or confirmed out of band while the adapter was
    running, the late outcome is dropped.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: DeliveryQueue,
        dispatcher: ChannelDispatcher,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 100,
        concurrency: int = 10,
    ):
        self._session_factory = session_factory
        self._queue = queue
        self._dispatcher = dispatcher
        self._retry_policy = retry_policy or RetryPolicy()
        self._batch_size = batch_size
        self._concurrency = max(1, concurrency)
        self._draining = asyncio.Event()

    @property
    def queue(self) -> DeliveryQueue:
        return self._queue

    def drain(self) -> None:
        """Stop starting new dispatches; calls already running finish normally."""
        self._draining.set()

    def resume(self) -> None:
        self._draining.clear()

    async def process_batch(self) -> Dict[str, int]:
        """
        Process one batch of due submissions.

        Returns counts of claimed rows and of each outcome.
        """
        stats = {"claimed": 0, **{outcome: 0 for outcome in OUTCOMES}}

        await self._queue.reclaim_stale()
        batch = await self._queue.dequeue_due_batch(self._batch_size)
        stats["claimed"] = len(batch)
        if not batch:
            return stats

        semaphore = asyncio.Semaphore(self._concurrency)

        async def deliver(submission: Submission) -> str:
            async with semaphore:
                if self._draining.is_set():
                    return "released"
                result = await self._dispatcher.dispatch(submission)
                return await self.apply_outcome(submission, result)

        try:
            outcomes = await asyncio.gather(
                *(deliver(submission) for submission in batch),
                return_exceptions=True,
            )
        except asyncio.CancelledError:
            # Rows with a recorded outcome no longer carry the claim token
            await self._queue.release_claim(batch[0].claim_token)
            raise

        for submission, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                # Row stays in-flight; the stale sweep returns it to the queue
                logger.error(
                    f"[QUEUE] Failed to record outcome for {submission.id}: {outcome}",
                    exc_info=outcome,
                )
                stats["errors"] += 1
            else:
                stats[outcome] += 1

        if stats["released"]:
            await self._queue.release_claim(batch[0].claim_token)

        logger.info(
            f"[QUEUE] Batch done: {stats['claimed']} claimed, {stats['submitted']} submitted, "
            f"{stats['confirmed']} confirmed, {stats['retried']} retried, {stats['failed']} failed"
        )
        return stats

    async def apply_outcome(self, submission: Submission, result: DeliveryResult) -> str:
        """Write one dispatch outcome; returns the outcome name."""
        now = utc_now()
        entry: Optional[ErrorLogEntry] = None
        released = {"claim_token": None, "claimed_at": None, "updated_at": now}

        if result.ok:
            confirmed = result.confirmed and submission.channel == DeliveryChannel.API.value
            outcome = "confirmed" if confirmed else "submitted"
            values: Dict[str, Any] = {
                "status": (SubmissionStatus.CONFIRMED if confirmed else SubmissionStatus.SUBMITTED).value,
                "submitted_at": now,
                "external_reference": result.external_reference,
                "last_error": None,
                **released,
            }
            if confirmed:
                values["confirmed_at"] = now
        else:
            decision = self._retry_policy.next(
                submission.retry_count, result.failure_kind, submission.max_retries
            )
            message = result.message or "Delivery failed"
            if decision.should_retry:
                outcome = "retried"
                attempt = submission.retry_count + 1
                values = {
                    "status": SubmissionStatus.PENDING.value,
                    "retry_count": attempt,
                    "next_attempt_at": now + decision.delay,
                    "last_error": message[:2000],
                    **released,
                }
                entry = build_entry(
                    ErrorLevel.WARN,
                    ErrorCategory.INTEGRATION,
                    f"Delivery attempt {attempt} failed, retrying in "
                    f"{int(decision.delay.total_seconds())}s: {message}",
                    context={
                        "channel": submission.channel,
                        "failure_kind": result.failure_kind.value,
                        "retry_count": attempt,
                        "next_attempt_at": (now + decision.delay).isoformat(),
                    },
                    submission_id=submission.id,
                    university_id=submission.university_id,
                )
            else:
                outcome = "failed"
                values = {
                    "status": SubmissionStatus.FAILED.value,
                    "last_error": message[:2000],
                    **released,
                }
                entry = build_entry(
                    ErrorLevel.ERROR,
                    ErrorCategory.SUBMISSION,
                    f"Submission failed permanently: {message}",
                    context={
                        "channel": submission.channel,
                        "failure_kind": result.failure_kind.value,
                        "reason": decision.reason,
                        "retry_count": submission.retry_count,
                    },
                    submission_id=submission.id,
                    university_id=submission.university_id,
                )

        async with self._session_factory() as session, session.begin():
            applied = await SubmissionRepository(session).apply_claimed_outcome(
                submission.id, submission.claim_token, values
            )
            if applied and entry is not None:
                session.add(entry)

        if not applied:
            logger.info(f"[QUEUE] Dropped late outcome for {submission.id}; claim no longer held")
            return "skipped"

        if entry is not None:
            mirror_to_logger(entry)
        return outcome

    async def confirm(
        self,
        submission_id: UUID,
        external_reference: str,
        confirmed_at: Optional[datetime] = None,
    ) -> Submission:
        """
        Record a university's confirmation of receipt.

        Confirming an already-confirmed submission returns it unchanged.
        """
        async with self._session_factory() as session, session.begin():
            repo = SubmissionRepository(session)
            submission = await repo.get_by_id(submission_id)
            if submission is None:
                raise NotFoundError(
                    f"Submission {submission_id} not found",
                    operation="confirm",
                    table="submissions",
                )
            if submission.status == SubmissionStatus.CONFIRMED.value:
                return submission
            if submission.status == SubmissionStatus.FAILED.value:
                raise InvalidTransitionError(
                    "Failed submissions must be retried before they can be confirmed",
                    current_status=submission.status,
                    requested_status=SubmissionStatus.CONFIRMED.value,
                )

            now = utc_now()
            confirmed_at = to_naive_utc(confirmed_at) if confirmed_at else now
            changed = await repo.transition(
                submission_id,
                [SubmissionStatus.PENDING, SubmissionStatus.PROCESSING, SubmissionStatus.SUBMITTED],
                {
                    "status": SubmissionStatus.CONFIRMED.value,
                    "confirmed_at": confirmed_at,
                    "submitted_at": submission.submitted_at or confirmed_at,
                    "external_reference": external_reference,
                    "claim_token": None,
                    "claimed_at": None,
                    "updated_at": now,
                },
            )
            current = await repo.get_fresh(submission_id)
            if not changed and current.status != SubmissionStatus.CONFIRMED.value:
                raise InvalidTransitionError(
                    f"Cannot confirm a {current.status} submission",
                    current_status=current.status,
                    requested_status=SubmissionStatus.CONFIRMED.value,
                )

        logger.info(f"[QUEUE] Confirmed {submission_id} ({external_reference})")
        return current

    async def retry_submission(
        self,
        submission_id: UUID,
        priority: int = 2,
    ) -> Submission:
        """Operator retry: put one failed submission back on the queue with a fresh budget."""
        async with self._session_factory() as session, session.begin():
            repo = SubmissionRepository(session)
            submission = await repo.get_by_id(submission_id)
            if submission is None:
                raise NotFoundError(
                    f"Submission {submission_id} not found",
                    operation="retry",
                    table="submissions",
                )
            if not await repo.reset_failed(submission_id, priority, utc_now()):
                raise InvalidTransitionError(
                    f"Only failed submissions can be retried (status is {submission.status})",
                    current_status=submission.status,
                    requested_status=SubmissionStatus.PENDING.value,
                )
            submission = await repo.get_fresh(submission_id)

        logger.info(f"[QUEUE] Operator retry queued for {submission_id} at priority {priority}")
        return submission

