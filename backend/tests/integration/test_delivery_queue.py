"""
Integration tests for the delivery queue against the SQLite store.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from stellarrec.domain.submission import (
    DeliveryChannel,
    EnqueueSubmissionRequest,
    SubmissionStatus,
)
from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.db.repositories.submission_repository import SubmissionRepository
from stellarrec.infrastructure.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)


def _request(**overrides) -> EnqueueSubmissionRequest:
    values = {
        "application_id": uuid4(),
        "university_id": uuid4(),
        "channel": DeliveryChannel.API,
    }
    values.update(overrides)
    return EnqueueSubmissionRequest(**values)


class TestEnqueue:

    async def test_enqueue_is_due_immediately(self, queue):
        submission = await queue.enqueue(_request(priority=3))

        assert submission.status == SubmissionStatus.PENDING.value
        assert submission.priority == 3
        assert submission.retry_count == 0
        assert submission.next_attempt_at <= utc_now()

    async def test_enqueue_same_pair_updates_existing(self, queue):
        request = _request(priority=8)
        first = await queue.enqueue(request)
        second = await queue.enqueue(request.model_copy(update={"priority": 2}))

        assert second.id == first.id
        assert second.priority == 2
        assert (await queue.queue_status())["pending"] == 1

    async def test_enqueue_leaves_terminal_submission_alone(self, queue, make_submission):
        confirmed = await make_submission(status=SubmissionStatus.CONFIRMED.value, priority=5)

        result = await queue.enqueue(_request(
            application_id=confirmed.application_id,
            university_id=confirmed.university_id,
            priority=1,
        ))

        assert result.id == confirmed.id
        assert result.status == SubmissionStatus.CONFIRMED.value
        assert result.priority == 5


    async def test_cancelled_submission_is_restored_on_enqueue(self, queue, make_submission):
        cancelled = await make_submission(
            status=SubmissionStatus.CANCELLED.value, retry_count=3, last_error="HTTP 503"
        )

        result = await queue.enqueue(_request(
            application_id=cancelled.application_id,
            university_id=cancelled.university_id,
            priority=2,
        ))

        assert result.id == cancelled.id
        assert result.status == SubmissionStatus.PENDING.value
        assert result.retry_count == 0
        assert result.last_error is None
        assert result.priority == 2


class TestBulkEnqueue:

    async def test_bulk_enqueue(self, queue):
        requests = [_request(priority=p) for p in (3, 1, 2)]

        submissions = await queue.enqueue_bulk(requests)

        assert [s.priority for s in submissions] == [3, 1, 2]
        assert (await queue.queue_status())["pending"] == 3

    async def test_bulk_enqueue_merges_duplicate_pairs(self, queue):
        request = _request(priority=5)

        first, second = await queue.enqueue_bulk([request, request.model_copy(update={"priority": 1})])

        assert first.id == second.id
        assert second.priority == 1
        assert (await queue.queue_status())["pending"] == 1


class TestRemoval:

    async def test_remove_pending_submission(self, queue, make_submission, fetch_submission):
        submission = await make_submission()

        removed = await queue.remove_from_queue(submission.id)

        assert removed.status == SubmissionStatus.CANCELLED.value
        assert await queue.dequeue_due_batch(10) == []
        assert (await fetch_submission(submission.id)).status == SubmissionStatus.CANCELLED.value

    @pytest.mark.parametrize(
        "status",
        [SubmissionStatus.PROCESSING, SubmissionStatus.SUBMITTED, SubmissionStatus.CONFIRMED],
    )
    async def test_only_pending_can_be_removed(self, queue, make_submission, status):
        submission = await make_submission(status=status.value)

        with pytest.raises(InvalidTransitionError):
            await queue.remove_from_queue(submission.id)

    async def test_remove_unknown_submission(self, queue):
        with pytest.raises(NotFoundError):
            await queue.remove_from_queue(uuid4())

    async def test_clear_queue_leaves_in_flight_and_finished(self, queue, make_submission, fetch_submission):
        for _ in range(2):
            await make_submission()
        await make_submission(next_attempt_at=utc_now() + timedelta(hours=1))
        in_flight = await make_submission(status=SubmissionStatus.PROCESSING.value, claimed_at=utc_now())
        failed = await make_submission(status=SubmissionStatus.FAILED.value)

        assert await queue.clear_queue() == 3

        status = await queue.queue_status()
        assert status["pending"] == 0
        assert status["processing"] == 1
        assert (await fetch_submission(in_flight.id)).status == SubmissionStatus.PROCESSING.value
        assert (await fetch_submission(failed.id)).status == SubmissionStatus.FAILED.value


class TestDequeue:

    async def test_only_due_submissions_are_returned(self, queue, make_submission):
        due = await make_submission()
        await make_submission(next_attempt_at=utc_now() + timedelta(minutes=10))

        batch = await queue.dequeue_due_batch(10)

        assert [s.id for s in batch] == [due.id]
        assert batch[0].status == SubmissionStatus.PROCESSING.value
        assert batch[0].claim_token is not None

    async def test_higher_priority_first(self, queue, make_submission):
        now = utc_now()
        low = await make_submission(priority=5, next_attempt_at=now - timedelta(minutes=5))
        urgent = await make_submission(priority=1, next_attempt_at=now)

        batch = await queue.dequeue_due_batch(10)

        assert [s.id for s in batch] == [urgent.id, low.id]

    async def test_older_due_time_breaks_priority_ties(self, queue, make_submission):
        now = utc_now()
        newer = await make_submission(next_attempt_at=now - timedelta(minutes=1))
        older = await make_submission(next_attempt_at=now - timedelta(minutes=5))

        batch = await queue.dequeue_due_batch(10)

        assert [s.id for s in batch] == [older.id, newer.id]

    async def test_limit_is_respected(self, queue, make_submission):
        for _ in range(5):
            await make_submission()

        assert len(await queue.dequeue_due_batch(3)) == 3
        assert len(await queue.dequeue_due_batch(3)) == 2
        assert await queue.dequeue_due_batch(3) == []

    async def test_concurrent_dequeues_never_overlap(self, queue, make_submission):
        ids = {(await make_submission()).id for _ in range(10)}

        first, second = await asyncio.gather(
            queue.dequeue_due_batch(6),
            queue.dequeue_due_batch(6),
        )

        first_ids = {s.id for s in first}
        second_ids = {s.id for s in second}
        assert first_ids.isdisjoint(second_ids)
        assert first_ids | second_ids == ids

    async def test_mark_in_flight_skips_non_pending(self, queue, make_submission):
        pending = await make_submission()
        failed = await make_submission(status=SubmissionStatus.FAILED.value)

        moved = await queue.mark_in_flight([pending.id, failed.id])

        assert moved == [pending.id]


class TestStaleReclaim:

    async def test_stale_in_flight_returns_to_queue(self, queue, make_submission, fetch_submission):
        stale = await make_submission(
            status=SubmissionStatus.PROCESSING.value,
            claim_token=uuid4(),
            claimed_at=utc_now() - timedelta(hours=1),
        )
        fresh = await make_submission(
            status=SubmissionStatus.PROCESSING.value,
            claim_token=uuid4(),
            claimed_at=utc_now(),
        )

        assert await queue.reclaim_stale() == 1

        reclaimed = await fetch_submission(stale.id)
        assert reclaimed.status == SubmissionStatus.PENDING.value
        assert reclaimed.claim_token is None
        assert (await fetch_submission(fresh.id)).status == SubmissionStatus.PROCESSING.value


class TestPriority:

    async def test_set_priority(self, queue, make_submission):
        submission = await make_submission(priority=9)

        updated = await queue.set_priority(submission.id, 1)

        assert updated.priority == 1

    async def test_out_of_range_priority(self, queue, make_submission):
        submission = await make_submission()

        with pytest.raises(ValidationError):
            await queue.set_priority(submission.id, 11)

    async def test_unknown_submission(self, queue):
        with pytest.raises(NotFoundError):
            await queue.set_priority(uuid4(), 3)

    async def test_terminal_submission_cannot_be_reprioritised(self, queue, make_submission):
        submission = await make_submission(status=SubmissionStatus.FAILED.value)

        with pytest.raises(InvalidTransitionError):
            await queue.set_priority(submission.id, 3)


class TestQueueStatus:

    async def test_counts(self, queue, make_submission):
        await make_submission()
        await make_submission(next_attempt_at=utc_now() + timedelta(hours=1))
        await make_submission(status=SubmissionStatus.PROCESSING.value, claimed_at=utc_now())
        await make_submission(status=SubmissionStatus.FAILED.value)

        status = await queue.queue_status()

        assert status == {
            "pending": 2,
            "due": 1,
            "scheduled": 1,
            "processing": 1,
            "failed": 1,
        }

    async def test_list_queue_excludes_finished(self, queue, make_submission):
        pending = await make_submission()
        await make_submission(status=SubmissionStatus.SUBMITTED.value)

        items = await queue.list_queue()

        assert [s.id for s in items] == [pending.id]


class TestLifecycleGuard:

    async def test_repository_rejects_regression(self, session_factory, make_submission, fetch_submission):
        confirmed = await make_submission(status=SubmissionStatus.CONFIRMED.value)

        with pytest.raises(InvalidTransitionError):
            async with session_factory() as session, session.begin():
                await SubmissionRepository(session).transition(
                    confirmed.id,
                    [SubmissionStatus.CONFIRMED],
                    {"status": SubmissionStatus.PENDING.value},
                )

        assert (await fetch_submission(confirmed.id)).status == SubmissionStatus.CONFIRMED.value

    async def test_failed_needs_operator_retry(self, session_factory, make_submission):
        failed = await make_submission(status=SubmissionStatus.FAILED.value)

        async with session_factory() as session, session.begin():
            repo = SubmissionRepository(session)
            with pytest.raises(InvalidTransitionError):
                await repo.transition(
                    failed.id, [SubmissionStatus.FAILED], {"status": SubmissionStatus.PENDING.value}
                )
            assert await repo.reset_failed(failed.id, priority=2, now=utc_now()) is True

    async def test_priority_only_update_is_not_a_transition(self, session_factory, make_submission):
        submitted = await make_submission(status=SubmissionStatus.SUBMITTED.value)

        async with session_factory() as session, session.begin():
            changed = await SubmissionRepository(session).transition(
                submitted.id, [SubmissionStatus.SUBMITTED], {"priority": 1}
            )

        assert changed is True
