"""
Integration tests for the submission analytics aggregator.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from stellarrec.domain.health import SystemHealth, UniversityHealth
from stellarrec.domain.submission import DeliveryChannel, SubmissionStatus
from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.exceptions import NotFoundError
from stellarrec.infrastructure.services.analytics_service import classify_failure_reason


class TestHealthSnapshot:

    async def test_no_attempts_is_healthy_with_zero_rate(self, analytics):
        snapshot = await analytics.health_snapshot()

        assert snapshot.successes == 0
        assert snapshot.failures == 0
        assert snapshot.success_rate == 0.0
        assert snapshot.failure_rate == 0.0
        assert snapshot.status == SystemHealth.HEALTHY
        assert snapshot.alerts == []

    async def test_counts_outcomes_and_backlog(self, analytics, make_submission):
        for _ in range(9):
            await make_submission(status=SubmissionStatus.SUBMITTED.value)
        await make_submission(status=SubmissionStatus.FAILED.value)
        await make_submission()
        await make_submission(status=SubmissionStatus.PROCESSING.value, claimed_at=utc_now())

        snapshot = await analytics.health_snapshot()

        assert snapshot.successes == 9
        assert snapshot.failures == 1
        assert snapshot.success_rate == 90.0
        assert snapshot.failure_rate == 10.0
        assert snapshot.queue_backlog == 2
        assert snapshot.status == SystemHealth.HEALTHY

    async def test_outcomes_outside_window_are_ignored(self, analytics, make_submission):
        await make_submission(
            status=SubmissionStatus.FAILED.value,
            updated_at=utc_now() - timedelta(days=2),
        )

        snapshot = await analytics.health_snapshot(window_minutes=60)

        assert snapshot.failures == 0

    async def test_average_processing_time(self, analytics, make_submission):
        now = utc_now()
        await make_submission(
            status=SubmissionStatus.CONFIRMED.value,
            submitted_at=now - timedelta(seconds=600),
            confirmed_at=now,
        )
        await make_submission(
            status=SubmissionStatus.CONFIRMED.value,
            submitted_at=now - timedelta(seconds=200),
            confirmed_at=now,
        )

        snapshot = await analytics.health_snapshot()

        assert snapshot.avg_processing_time == 400.0
        assert snapshot.status == SystemHealth.WARNING


class TestUniversityPerformance:

    async def test_state_u_is_down(self, analytics, make_submission):
        state_u = uuid4()
        for _ in range(10):
            await make_submission(university_id=state_u, status=SubmissionStatus.FAILED.value)
        for _ in range(2):
            await make_submission(university_id=state_u, status=SubmissionStatus.SUBMITTED.value)
        healthy = uuid4()
        await make_submission(university_id=healthy, status=SubmissionStatus.CONFIRMED.value)

        performance = await analytics.university_performance(window_minutes=30)

        assert [p.university_id for p in performance] == [state_u, healthy]
        assert performance[0].status == UniversityHealth.DOWN
        assert performance[0].attempts == 12
        assert performance[1].status == UniversityHealth.HEALTHY

    async def test_pending_submissions_are_not_attempts(self, analytics, make_submission):
        await make_submission()

        assert await analytics.university_performance(window_minutes=30) == []


class TestReadModels:

    async def test_failures_by_reason(self, analytics, make_submission):
        await make_submission(status=SubmissionStatus.FAILED.value, last_error="Delivery timed out after 30 seconds")
        await make_submission(status=SubmissionStatus.FAILED.value, last_error="Request timeout")
        await make_submission(status=SubmissionStatus.FAILED.value, last_error="HTTP 401 from portal")

        reasons = await analytics.failures_by_reason()

        assert reasons == {"timeout": 2, "authentication": 1}

    async def test_channel_breakdown(self, analytics, make_submission):
        await make_submission(channel=DeliveryChannel.EMAIL.value, status=SubmissionStatus.SUBMITTED.value)
        await make_submission(channel=DeliveryChannel.EMAIL.value, status=SubmissionStatus.FAILED.value)

        [email] = await analytics.channel_breakdown()

        assert email["channel"] == "email"
        assert email["total"] == 2
        assert email["success_rate"] == 50.0

    async def test_hourly_throughput_is_zero_filled(self, analytics, make_submission):
        await make_submission(status=SubmissionStatus.SUBMITTED.value)

        hours = await analytics.hourly_throughput(hours=24)

        assert len(hours) == 24
        assert hours[-1]["successes"] == 1
        assert sum(h["total"] for h in hours) == 1

    async def test_processing_rate_per_hour(self, analytics, make_submission):
        for _ in range(3):
            await make_submission(status=SubmissionStatus.SUBMITTED.value)

        assert await analytics.processing_rate(minutes=30) == 6.0


class TestSeries:

    async def test_daily_metrics_are_zero_filled(self, analytics, make_submission):
        now = utc_now()
        await make_submission(status=SubmissionStatus.SUBMITTED.value, updated_at=now)
        await make_submission(status=SubmissionStatus.FAILED.value, updated_at=now)
        await make_submission(
            status=SubmissionStatus.CONFIRMED.value, updated_at=now - timedelta(days=2)
        )
        await make_submission(status=SubmissionStatus.CANCELLED.value, updated_at=now)

        days = await analytics.daily_metrics(days=7, now=now)

        assert len(days) == 7
        assert days[-1]["date"] == now.date()
        assert days[-1]["total"] == 2
        assert days[-1]["success_rate"] == 50.0
        assert days[-3]["successes"] == 1
        assert sum(d["total"] for d in days) == 3

    async def test_weekly_metrics_start_on_monday(self, analytics, make_submission):
        now = utc_now()
        await make_submission(status=SubmissionStatus.SUBMITTED.value, updated_at=now)
        await make_submission(
            status=SubmissionStatus.FAILED.value, updated_at=now - timedelta(weeks=1)
        )

        weeks = await analytics.weekly_metrics(weeks=12, now=now)

        assert len(weeks) == 12
        assert all(w["week_start"].weekday() == 0 for w in weeks)
        assert weeks[-1]["successes"] == 1
        assert weeks[-2]["failures"] == 1


class TestUniversityReport:

    async def test_report(self, analytics, make_submission):
        state_u = uuid4()
        now = utc_now()
        await make_submission(
            university_id=state_u,
            status=SubmissionStatus.CONFIRMED.value,
            submitted_at=now - timedelta(seconds=120),
            confirmed_at=now,
        )
        for message in ("Request timeout", "Delivery timed out", "HTTP 401 from portal"):
            await make_submission(
                university_id=state_u, status=SubmissionStatus.FAILED.value, last_error=message
            )
        await make_submission(university_id=state_u)
        await make_submission(status=SubmissionStatus.FAILED.value)

        report = await analytics.university_report(state_u, days=30, now=now)

        assert report["total_submissions"] == 5
        assert report["by_status"]["pending"] == 1
        assert report["successes"] == 1
        assert report["failures"] == 3
        assert report["success_rate"] == 25.0
        assert report["avg_processing_time"] == 120.0
        assert report["failures_by_reason"] == {"timeout": 2, "authentication": 1}
        assert len(report["daily_trend"]) == 30
        assert report["daily_trend"][-1]["total"] == 4

    async def test_unknown_university(self, analytics):
        with pytest.raises(NotFoundError):
            await analytics.university_report(uuid4())


class TestFailureReasons:

    @pytest.mark.parametrize(
        "message,reason",
        [
            ("Delivery timed out after 30 seconds", "timeout"),
            ("HTTP 403 from https://apply.example.edu", "authentication"),
            ("HTTP 429 Too Many Requests", "rate_limit"),
            ("ConnectError: connection refused", "network"),
            ("Payload rejected: missing field", "validation"),
            ("HTTP 503 from portal", "server_error"),
            ("Something odd", "other"),
            (None, "other"),
        ],
    )
    def test_classification(self, message, reason):
        assert classify_failure_reason(message) == reason
