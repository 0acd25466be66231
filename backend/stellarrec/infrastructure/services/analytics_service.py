"""
Submission Analytics Service

Read-only aggregation over the submission store. Holds no state of its own:
every call computes fresh numbers from the database.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stellarrec.domain.health import (
    HealthSnapshot,
    UniversityHealth,
    UniversityPerformance,
    UNIVERSITY_DOWN_MIN_ATTEMPTS,
    classify_system,
    classify_university,
    success_rate,
)
from stellarrec.domain.submission import SUCCESS_STATUSES, SubmissionStatus
from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.db.repositories.submission_repository import SubmissionRepository
from stellarrec.infrastructure.exceptions import NotFoundError


logger = logging.getLogger(__name__)


# Ordered: first match wins
FAILURE_REASON_PATTERNS: List[Tuple[str, Tuple[str, ...]]] = [
    ("timeout", ("timeout", "timed out")),
    ("authentication", ("auth", "401", "403", "unauthorized", "forbidden", "credential")),
    ("rate_limit", ("rate limit", "429", "too many requests")),
    ("network", ("network", "connect", "dns", "unreachable", "reset by peer")),
    ("validation", ("validation", "invalid", "400", "422", "rejected")),
    ("server_error", ("500", "502", "503", "504", "server error", "unavailable")),
]


def classify_failure_reason(message: Optional[str]) -> str:
    """Bucket a free-text ``last_error`` into a coarse reason."""
    if not message:
        return "other"
    lowered = message.lower()
    for reason, needles in FAILURE_REASON_PATTERNS:
        if any(needle in lowered for needle in needles):
            return reason
    return "other"


class SubmissionAnalyticsService:
    """
    Service computing rolling health metrics for submission delivery.

    Thresholds come from settings; the classification rules themselves
    live in the health domain module.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        window_minutes: int = 24 * 60,
        backlog_warning: int = 50,
        backlog_critical: int = 100,
        success_rate_warning: float = 90.0,
        success_rate_critical: float = 80.0,
        latency_warning: float = 300.0,
    ):
        self._session_factory = session_factory
        self._window_minutes = window_minutes
        self._backlog_warning = backlog_warning
        self._backlog_critical = backlog_critical
        self._success_rate_warning = success_rate_warning
        self._success_rate_critical = success_rate_critical
        self._latency_warning = latency_warning

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings,
    ) -> "SubmissionAnalyticsService":
        return cls(
            session_factory,
            window_minutes=settings.health_window_minutes,
            backlog_warning=settings.backlog_warning_threshold,
            backlog_critical=settings.backlog_critical_threshold,
            success_rate_warning=settings.success_rate_warning,
            success_rate_critical=settings.success_rate_critical,
            latency_warning=settings.latency_warning_seconds,
        )

    # =========================================================================
    # Health
    # =========================================================================

    async def health_snapshot(
        self,
        window_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> HealthSnapshot:
        """Rolling health metrics over the trailing window."""
        window_minutes = window_minutes or self._window_minutes
        now = now or utc_now()
        since = now - timedelta(minutes=window_minutes)

        async with self._session_factory() as session:
            repo = SubmissionRepository(session)
            successes, failures = await repo.window_outcomes(since)
            counts = await repo.count_by_status()
            latencies = await repo.confirmation_latencies(since)
            per_university_rows = await repo.outcomes_by_university(since)

        backlog = counts[SubmissionStatus.PENDING.value] + counts[SubmissionStatus.PROCESSING.value]
        avg_latency = _mean([seconds for _, seconds in latencies])
        rate = success_rate(successes, failures)
        failure_rate = 100 - rate if successes + failures else 0.0

        status, alerts = classify_system(
            queue_backlog=backlog,
            successes=successes,
            failures=failures,
            avg_processing_time=avg_latency,
            now=now,
            backlog_warning=self._backlog_warning,
            backlog_critical=self._backlog_critical,
            success_rate_warning=self._success_rate_warning,
            success_rate_critical=self._success_rate_critical,
            latency_warning=self._latency_warning,
            window_minutes=window_minutes,
        )

        snapshot = HealthSnapshot(
            window_minutes=window_minutes,
            generated_at=now,
            successes=successes,
            failures=failures,
            success_rate=round(rate, 2),
            failure_rate=round(failure_rate, 2),
            queue_backlog=backlog,
            avg_processing_time=round(avg_latency, 2),
            status=status,
            per_university=_university_performance(per_university_rows, latencies),
            alerts=alerts,
        )
        logger.debug(
            f"[ANALYTICS] Health {status.value}: {successes} ok / {failures} failed, "
            f"backlog {backlog}"
        )
        return snapshot

    async def university_performance(
        self,
        window_minutes: int,
        min_attempts_for_down: int = UNIVERSITY_DOWN_MIN_ATTEMPTS,
        now: Optional[datetime] = None,
    ) -> List[UniversityPerformance]:
        """Per-university classification over a window."""
        since = (now or utc_now()) - timedelta(minutes=window_minutes)
        async with self._session_factory() as session:
            repo = SubmissionRepository(session)
            rows = await repo.outcomes_by_university(since)
            latencies = await repo.confirmation_latencies(since)
        return _university_performance(rows, latencies, min_attempts_for_down)

    async def window_outcomes(
        self,
        window_minutes: int,
        now: Optional[datetime] = None,
    ) -> Tuple[int, int]:
        """(successes, failures) in the trailing window."""
        since = (now or utc_now()) - timedelta(minutes=window_minutes)
        async with self._session_factory() as session:
            return await SubmissionRepository(session).window_outcomes(since)

    async def failed_count(self, window_minutes: int, now: Optional[datetime] = None) -> int:
        since = (now or utc_now()) - timedelta(minutes=window_minutes)
        async with self._session_factory() as session:
            return await SubmissionRepository(session).count_failed_since(since)

    # =========================================================================
    # Read Models
    # =========================================================================

    async def submission_counts(self) -> Dict[str, int]:
        """Current submission count per status."""
        async with self._session_factory() as session:
            return await SubmissionRepository(session).count_by_status()

    async def failures_by_reason(self, since: Optional[datetime] = None) -> Dict[str, int]:
        since = since or utc_now() - timedelta(minutes=self._window_minutes)
        async with self._session_factory() as session:
            messages = await SubmissionRepository(session).failure_messages(since)
        reasons: Dict[str, int] = defaultdict(int)
        for message in messages:
            reasons[classify_failure_reason(message)] += 1
        return dict(sorted(reasons.items(), key=lambda item: item[1], reverse=True))

    async def channel_breakdown(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        since = since or utc_now() - timedelta(minutes=self._window_minutes)
        async with self._session_factory() as session:
            rows = await SubmissionRepository(session).outcomes_by_channel(since)
        for row in rows:
            row["success_rate"] = round(success_rate(row["successes"], row["failures"]), 2)
        return rows

    async def hourly_throughput(
        self,
        hours: int = 24,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Finished attempts bucketed by hour, oldest first, zero-filled."""
        now = now or utc_now()
        current_hour = _floor_hour(now)
        first_hour = current_hour - timedelta(hours=hours - 1)

        async with self._session_factory() as session:
            rows = await SubmissionRepository(session).outcome_timestamps(first_hour)

        starts = [first_hour + timedelta(hours=offset) for offset in range(hours)]
        return [
            {"hour": start, **bucket}
            for start, bucket in _bucket_outcomes(rows, starts, _floor_hour)
        ]

    async def processing_rate(self, minutes: int = 60, now: Optional[datetime] = None) -> float:
        """Finished attempts per hour, measured over the last ``minutes``."""
        successes, failures = await self.window_outcomes(minutes, now)
        return round((successes + failures) * 60 / minutes, 2) if minutes > 0 else 0.0

    async def daily_metrics(
        self,
        days: int = 30,
        now: Optional[datetime] = None,
        university_id: Optional[UUID] = None,
    ) -> List[Dict[str, Any]]:
        """Finished attempts per day, oldest first, zero-filled."""
        today = _floor_day(now or utc_now())
        starts = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
        async with self._session_factory() as session:
            rows = await SubmissionRepository(session).outcome_timestamps(
                starts[0], university_id
            )
        return [
            {"date": start.date(), **bucket}
            for start, bucket in _bucket_outcomes(rows, starts, _floor_day)
        ]

    async def weekly_metrics(
        self,
        weeks: int = 12,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Finished attempts per ISO week (Monday start), oldest first, zero-filled."""
        this_week = _floor_week(now or utc_now())
        starts = [this_week - timedelta(weeks=offset) for offset in range(weeks - 1, -1, -1)]
        async with self._session_factory() as session:
            rows = await SubmissionRepository(session).outcome_timestamps(starts[0])
        return [
            {"week_start": start.date(), **bucket}
            for start, bucket in _bucket_outcomes(rows, starts, _floor_week)
        ]

    async def university_report(
        self,
        university_id: UUID,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Delivery report for one university over the last ``days`` days.

        Raises NotFoundError when nothing was ever submitted to it.
        """
        now = now or utc_now()
        since = now - timedelta(days=days)
        async with self._session_factory() as session:
            repo = SubmissionRepository(session)
            if not await repo.count_for_university(university_id):
                raise NotFoundError(
                    f"No submissions found for university {university_id}",
                    operation="university_report",
                    table="submissions",
                )
            counts = await repo.count_by_status(university_id, since)
            latencies = await repo.confirmation_latencies(since, university_id)
            messages = await repo.failure_messages(since, university_id)

        success_values = {status.value for status in SUCCESS_STATUSES}
        successes = sum(count for status, count in counts.items() if status in success_values)
        failures = counts[SubmissionStatus.FAILED.value]
        avg_latency = _mean([seconds for _, seconds in latencies])

        reasons: Dict[str, int] = defaultdict(int)
        for message in messages:
            reasons[classify_failure_reason(message)] += 1

        return {
            "university_id": university_id,
            "days": days,
            "total_submissions": sum(counts.values()),
            "by_status": counts,
            "successes": successes,
            "failures": failures,
            "success_rate": round(success_rate(successes, failures), 2),
            "avg_processing_time": round(avg_latency, 2),
            "status": classify_university(successes, failures, avg_latency),
            "failures_by_reason": dict(
                sorted(reasons.items(), key=lambda item: item[1], reverse=True)[:10]
            ),
            "daily_trend": await self.daily_metrics(days, now, university_id),
        }


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _floor_hour(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


def _floor_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _floor_week(moment: datetime) -> datetime:
    return _floor_day(moment) - timedelta(days=moment.weekday())


def _bucket_outcomes(
    rows: List[Tuple[datetime, str]],
    starts: List[datetime],
    floor: Callable[[datetime], datetime],
) -> List[Tuple[datetime, Dict[str, Any]]]:
    """Count successes and failures into the buckets beginning at ``starts``."""
    buckets = {start: {"successes": 0, "failures": 0} for start in starts}
    success_values = {status.value for status in SUCCESS_STATUSES}
    for updated_at, status in rows:
        bucket = buckets.get(floor(updated_at))
        if bucket is None:
            continue
        if status in success_values:
            bucket["successes"] += 1
        else:
            bucket["failures"] += 1

    return [
        (start, {
            "total": b["successes"] + b["failures"],
            **b,
            "success_rate": round(success_rate(b["successes"], b["failures"]), 2),
        })
        for start, b in buckets.items()
    ]


def _university_performance(
    rows: List[Dict[str, Any]],
    latencies: List[Tuple[Any, float]],
    min_attempts_for_down: int = UNIVERSITY_DOWN_MIN_ATTEMPTS,
) -> List[UniversityPerformance]:
    by_university: Dict[Any, List[float]] = defaultdict(list)
    for university_id, seconds in latencies:
        by_university[university_id].append(seconds)

    performance = []
    for row in rows:
        latency = _mean(by_university.get(row["university_id"], []))
        status = classify_university(
            row["successes"], row["failures"], latency, min_attempts_for_down
        )
        performance.append(UniversityPerformance(
            university_id=row["university_id"],
            attempts=row["successes"] + row["failures"],
            successes=row["successes"],
            failures=row["failures"],
            success_rate=round(success_rate(row["successes"], row["failures"]), 2),
            avg_processing_time=round(latency, 2),
            status=status,
        ))

    # Worst first
    order = {UniversityHealth.DOWN: 0, UniversityHealth.DEGRADED: 1, UniversityHealth.HEALTHY: 2}
    performance.sort(key=lambda p: (order[p.status], p.success_rate))
    return performance
