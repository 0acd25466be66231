"""
Integration tests for the monitoring orchestrator: lifecycle, dashboard,
bulk retry and the health report.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from stellarrec.domain.health import HealthSnapshot, SystemHealth
from stellarrec.domain.submission import DeliveryChannel, RetryFailedFilter, SubmissionStatus
from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.db.models.error_log import ErrorCategory, ErrorLevel
from stellarrec.infrastructure.exceptions import ValidationError
from stellarrec.infrastructure.services.monitoring_orchestrator import (
    build_monitoring_orchestrator,
    build_recommendations,
)


async def _wait_for_calls(adapter, count, attempts=100):
    for _ in range(attempts):
        if len(adapter.calls) >= count:
            return
        await asyncio.sleep(0.02)
    raise AssertionError(f"adapter saw {len(adapter.calls)} calls, expected {count}")


class TestLifecycle:

    async def test_start_and_stop(self, orchestrator, make_submission, fetch_submission):
        submission = await make_submission()

        await orchestrator.start()
        assert orchestrator.is_running is True

        # The queue loop ticks once immediately on start
        for _ in range(50):
            if (await fetch_submission(submission.id)).status == SubmissionStatus.SUBMITTED.value:
                break
            await asyncio.sleep(0.05)

        await orchestrator.stop(timeout=5)

        assert orchestrator.is_running is False
        assert orchestrator.uptime_seconds == 0.0
        assert (await fetch_submission(submission.id)).status == SubmissionStatus.SUBMITTED.value
        assert len(await orchestrator.rule_engine.list_rules()) == 4

    async def test_default_stop_timeout_covers_dispatch_timeout(self, orchestrator, test_settings):
        assert orchestrator._stop_timeout == (
            test_settings.dispatch_timeout_seconds + test_settings.shutdown_grace_seconds
        )

    async def test_stop_waits_for_in_flight_dispatch(
        self, orchestrator, api_adapter, make_submission, fetch_submission
    ):
        api_adapter.delay = 0.3
        submission = await make_submission()

        await orchestrator.start()
        await _wait_for_calls(api_adapter, 1)
        await orchestrator.stop()

        stored = await fetch_submission(submission.id)
        assert stored.status == SubmissionStatus.SUBMITTED.value
        assert stored.claim_token is None

    async def test_stop_releases_dispatches_not_yet_started(
        self, test_settings, session_factory, api_adapter, make_submission, fetch_submission
    ):
        adapter = api_adapter
        adapter.delay = 0.3
        orchestrator = build_monitoring_orchestrator(
            test_settings.model_copy(update={"dispatch_concurrency": 1}),
            session_factory,
            adapters={DeliveryChannel.API: adapter},
        )
        first = await make_submission(priority=1)
        second = await make_submission(priority=2)

        await orchestrator.start()
        await _wait_for_calls(adapter, 1)
        await orchestrator.stop()

        assert adapter.calls == [first.id]
        assert (await fetch_submission(first.id)).status == SubmissionStatus.SUBMITTED.value
        waiting = await fetch_submission(second.id)
        assert waiting.status == SubmissionStatus.PENDING.value
        assert waiting.claim_token is None
        assert waiting.next_attempt_at <= utc_now()

    async def test_cancelled_batch_goes_back_to_queue(
        self, orchestrator, api_adapter, make_submission, fetch_submission
    ):
        api_adapter.delay = 10
        submission = await make_submission()

        await orchestrator.start()
        await _wait_for_calls(api_adapter, 1)
        await orchestrator.stop(timeout=0.1)

        stored = await fetch_submission(submission.id)
        assert stored.status == SubmissionStatus.PENDING.value
        assert stored.claim_token is None
        assert stored.retry_count == 0
        assert stored.next_attempt_at <= utc_now()

    async def test_stop_without_start_is_a_no_op(self, orchestrator):
        await orchestrator.stop()
        assert orchestrator.is_running is False

    async def test_failing_tick_is_logged_and_loop_survives(self, orchestrator, fetch_error_logs):
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("tick exploded")

        task = asyncio.create_task(orchestrator._run_periodic("test", 0.01, flaky))
        while len(calls) < 2:
            await asyncio.sleep(0.01)
        orchestrator._stop_event.set()
        await task

        entries = await fetch_error_logs()
        assert entries
        assert all(e.category == ErrorCategory.SYSTEM.value for e in entries)
        assert entries[0].context["loop"] == "test"


class TestDashboard:

    async def test_dashboard_sections(self, orchestrator, make_submission):
        await make_submission()
        await make_submission(status=SubmissionStatus.FAILED.value, last_error="HTTP 500")

        dashboard = await orchestrator.dashboard()

        assert dashboard["system_health"]["status"] == SystemHealth.CRITICAL.value
        assert dashboard["metrics"]["pending"] == 1
        assert dashboard["metrics"]["queue_backlog"] == 1
        assert len(dashboard["hourly_throughput"]) == 24
        assert len(dashboard["recent_activity"]) == 2
        assert dashboard["alerts"][0]["source"] == "health"
        assert dashboard["stale_sections"] == []

    async def test_failed_section_serves_last_known_value(self, orchestrator, make_submission, monkeypatch):
        await make_submission()
        first = await orchestrator.dashboard()

        async def broken():
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(orchestrator.analytics, "submission_counts", broken)
        second = await orchestrator.dashboard()

        assert second["stale_sections"] == ["counts"]
        assert second["metrics"]["pending"] == first["metrics"]["pending"] == 1


class TestRetryFailed:

    async def test_retries_matching_failed_submissions(
        self, orchestrator, make_submission, fetch_submission, fetch_error_logs
    ):
        state_u = uuid4()
        target = await make_submission(
            university_id=state_u, status=SubmissionStatus.FAILED.value, retry_count=5
        )
        other = await make_submission(status=SubmissionStatus.FAILED.value)

        result = await orchestrator.retry_failed(RetryFailedFilter(university_id=state_u))

        assert result.retried_count == 1
        assert result.skipped_count == 0
        assert result.errors == []

        retried = await fetch_submission(target.id)
        assert retried.status == SubmissionStatus.PENDING.value
        assert retried.retry_count == 0
        assert retried.priority == 2
        assert (await fetch_submission(other.id)).status == SubmissionStatus.FAILED.value

        entries = await fetch_error_logs()
        assert [(e.level, e.submission_id) for e in entries] == [(ErrorLevel.INFO.value, target.id)]

    async def test_older_than_filter(self, orchestrator, make_submission):
        await make_submission(status=SubmissionStatus.FAILED.value)
        await make_submission(
            status=SubmissionStatus.FAILED.value,
            updated_at=utc_now() - timedelta(hours=2),
        )

        result = await orchestrator.retry_failed({"older_than_minutes": 60})

        assert result.retried_count == 1

    async def test_max_retries_filter(self, orchestrator, make_submission):
        await make_submission(status=SubmissionStatus.FAILED.value, retry_count=0)
        await make_submission(status=SubmissionStatus.FAILED.value, retry_count=5)

        result = await orchestrator.retry_failed({"max_retries": 3})

        assert result.retried_count == 1

    async def test_invalid_filter(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.retry_failed({"older_than_minutes": -5})


class TestHealthReport:

    async def test_report(self, orchestrator, make_submission):
        for _ in range(3):
            await make_submission(status=SubmissionStatus.FAILED.value, last_error="Request timed out")
        await make_submission(status=SubmissionStatus.SUBMITTED.value)

        report = await orchestrator.health_report()

        assert report["summary"]["status"] == SystemHealth.CRITICAL.value
        assert report["failures_by_reason"] == {"timeout": 3}
        assert any("timeouts" in r for r in report["recommendations"])

    def test_healthy_recommendation(self):
        snapshot = HealthSnapshot(
            window_minutes=60,
            generated_at=utc_now(),
            successes=10,
            failures=0,
            success_rate=100.0,
            failure_rate=0.0,
            queue_backlog=0,
            avg_processing_time=0.0,
            status=SystemHealth.HEALTHY,
        )

        assert build_recommendations(snapshot, {}) == ["All systems operating normally."]
