"""
Monitoring Orchestrator

Owns the background loops (queue processing, rule evaluation, maintenance)
and exposes the aggregated dashboard and operator commands.

Lifecycle is an explicit object: ``start()`` spawns the loops, ``stop()``
signals them and waits for the current tick to finish.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stellarrec.config.settings import Settings
from stellarrec.domain.health import (
    SYSTEM_HEALTH_RANK,
    HealthSnapshot,
    SystemHealth,
    UniversityHealth,
)
from stellarrec.domain.retry_policy import RetryPolicy
from stellarrec.domain.submission import (
    DeliveryChannel,
    RetryFailedFilter,
    RetryFailedResult,
    SubmissionStatus,
)
from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.db.models.error_log import ErrorCategory, ErrorLevel
from stellarrec.infrastructure.db.repositories.submission_repository import SubmissionRepository
from stellarrec.infrastructure.exceptions import InvalidTransitionError, ValidationError
from stellarrec.infrastructure.services.analytics_service import SubmissionAnalyticsService
from stellarrec.infrastructure.services.channel_dispatcher import (
    ApplicationContextProvider,
    ChannelAdapter,
    ChannelDispatcher,
    ManualChannelAdapter,
)
from stellarrec.infrastructure.services.delivery_queue import DeliveryQueue
from stellarrec.infrastructure.services.error_logging_service import ErrorLoggingService
from stellarrec.infrastructure.services.notification_executors import (
    BroadcastHub,
    HttpxWebhookCaller,
    LoggingEmailSender,
)
from stellarrec.infrastructure.services.notification_rule_engine import NotificationRuleEngine
from stellarrec.infrastructure.services.submission_processor import SubmissionProcessor


logger = logging.getLogger(__name__)


RETRY_FAILED_LIMIT = 100
RECENT_ACTIVITY_LIMIT = 20


class MonitoringOrchestrator:
    """
    Background monitoring loops plus the operator-facing aggregate views.

    Every loop tick is isolated: an exception is logged (to the Python
    logger and as a ``system`` error log entry) and the loop carries on.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: SubmissionProcessor,
        analytics: SubmissionAnalyticsService,
        rule_engine: NotificationRuleEngine,
        error_log: ErrorLoggingService,
        hub: Optional[BroadcastHub] = None,
        queue_interval: float = 30.0,
        rule_interval: float = 300.0,
        maintenance_interval: float = 60.0,
        retention_days: int = 90,
        operator_retry_priority: int = 2,
        webhook_caller: Optional[HttpxWebhookCaller] = None,
        stop_timeout: float = 35.0,
    ):
        self._session_factory = session_factory
        self._processor = processor
        self._analytics = analytics
        self._rule_engine = rule_engine
        self._error_log = error_log
        self._hub = hub or BroadcastHub()
        self._queue_interval = queue_interval
        self._rule_interval = rule_interval
        self._maintenance_interval = maintenance_interval
        self._retention_days = retention_days
        self._operator_retry_priority = operator_retry_priority
        self._webhook_caller = webhook_caller
        self._stop_timeout = stop_timeout

        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._started_monotonic: Optional[float] = None
        self._last_check: Optional[datetime] = None
        self._last_health: Optional[SystemHealth] = None
        self._last_purge: Optional[datetime] = None
        self._last_good: Dict[str, Any] = {}

    # =========================================================================
    # Components
    # =========================================================================

    @property
    def processor(self) -> SubmissionProcessor:
        return self._processor

    @property
    def queue(self) -> DeliveryQueue:
        return self._processor.queue

    @property
    def analytics(self) -> SubmissionAnalyticsService:
        return self._analytics

    @property
    def rule_engine(self) -> NotificationRuleEngine:
        return self._rule_engine

    @property
    def error_log(self) -> ErrorLoggingService:
        return self._error_log

    @property
    def hub(self) -> BroadcastHub:
        return self._hub

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def uptime_seconds(self) -> float:
        if self._started_monotonic is None or not self.is_running:
            return 0.0
        return round(time.monotonic() - self._started_monotonic, 1)

    async def start(self) -> None:
        """Seed default rules and start the background loops."""
        if self.is_running:
            logger.warning("[MONITOR] Monitoring already running")
            return

        try:
            await self._rule_engine.seed_default_rules()
        except Exception as e:
            logger.exception("[MONITOR] Failed to seed default notification rules")
            await self._error_log.log_error_safely(
                ErrorLevel.ERROR, ErrorCategory.SYSTEM,
                "Failed to seed default notification rules", error=e,
            )

        self._processor.resume()
        self._stop_event = asyncio.Event()
        self._started_monotonic = time.monotonic()
        self._tasks = [
            asyncio.create_task(
                self._run_periodic("queue", self._queue_interval, self._processor.process_batch),
                name="monitor-queue",
            ),
            asyncio.create_task(
                self._run_periodic("rules", self._rule_interval, self._rule_engine.evaluate_all),
                name="monitor-rules",
            ),
            asyncio.create_task(
                self._run_periodic("maintenance", self._maintenance_interval, self.run_maintenance),
                name="monitor-maintenance",
            ),
        ]
        logger.info(
            f"[MONITOR] Started (queue every {self._queue_interval:g}s, "
            f"rules every {self._rule_interval:g}s)"
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal the loops to stop and wait for the in-flight tick.

        ``timeout`` defaults to the dispatch timeout plus a grace period, so
        a running batch can finish or time out. Loops still busy after that
        are cancelled and their unfinished submissions go back to the queue.
        """
        if not self._tasks:
            return
        if timeout is None:
            timeout = self._stop_timeout

        self._stop_event.set()
        self._processor.drain()
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"[MONITOR] Cancelled {len(pending)} loops that did not stop in {timeout}s")
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._started_monotonic = None

        if self._webhook_caller is not None:
            await self._webhook_caller.aclose()
        logger.info("[MONITOR] Stopped")

    async def _run_periodic(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
    ) -> None:
        while not self._stop_event.is_set():
            try:
                await tick()
            except Exception as e:
                logger.exception(f"[MONITOR] {name} tick failed")
                await self._error_log.log_error_safely(
                    ErrorLevel.ERROR,
                    ErrorCategory.SYSTEM,
                    f"Monitoring {name} loop tick failed",
                    context={"loop": name},
                    error=e,
                )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run_maintenance(self, now: Optional[datetime] = None) -> None:
        """Log health transitions and purge old resolved errors once a day."""
        now = now or utc_now()
        snapshot = await self._analytics.health_snapshot(now=now)
        self._last_check = now
        self._record_health_transition(snapshot)

        if self._last_purge is None or now - self._last_purge >= timedelta(days=1):
            await self._error_log.cleanup_resolved(self._retention_days)
            self._last_purge = now

    def _record_health_transition(self, snapshot: HealthSnapshot) -> None:
        previous, current = self._last_health, snapshot.status
        self._last_health = current
        if previous is None or previous == current:
            return
        message = f"[MONITOR] System health changed from {previous.value} to {current.value}"
        if SYSTEM_HEALTH_RANK[current] > SYSTEM_HEALTH_RANK[previous]:
            logger.warning(message)
        else:
            logger.info(message)

    # =========================================================================
    # Dashboard
    # =========================================================================

    async def _section(
        self,
        name: str,
        loader: Callable[[], Awaitable[Any]],
        default: Any,
        stale: List[str],
    ) -> Any:
        """Load one dashboard section, falling back to its last good value."""
        try:
            value = await loader()
        except Exception:
            logger.exception(f"[MONITOR] Dashboard section '{name}' failed; serving last known value")
            stale.append(name)
            return self._last_good.get(name, default)
        self._last_good[name] = value
        return value

    async def dashboard(self) -> Dict[str, Any]:
        """Aggregated operator view; degrades per section instead of failing."""
        now = utc_now()
        stale: List[str] = []

        snapshot: Optional[HealthSnapshot] = await self._section(
            "health", lambda: self._analytics.health_snapshot(now=now), None, stale
        )
        counts = await self._section(
            "counts", self._analytics.submission_counts, {}, stale
        )
        processing_rate = await self._section(
            "processing_rate", lambda: self._analytics.processing_rate(now=now), 0.0, stale
        )
        events = await self._section(
            "events", lambda: self._rule_engine.list_events(limit=20, acknowledged=False), [], stale
        )
        recent_errors = await self._section(
            "recent_errors", lambda: self._error_log.recent(RECENT_ACTIVITY_LIMIT), [], stale
        )
        recent_changes = await self._section(
            "recent_submissions", self._recent_submissions, [], stale
        )
        hourly = await self._section(
            "hourly_throughput", lambda: self._analytics.hourly_throughput(now=now), [], stale
        )
        self._last_check = now

        alerts: List[Dict[str, Any]] = []
        if snapshot is not None:
            alerts.extend(
                {"source": "health", **alert.model_dump()} for alert in snapshot.alerts
            )
        alerts.extend(
            {
                "source": "rule",
                "id": event.id,
                "level": event.severity,
                "title": event.title,
                "message": event.message,
                "timestamp": event.triggered_at,
            }
            for event in events
        )
        alerts.sort(key=lambda alert: alert["timestamp"], reverse=True)

        activity = [
            {
                "type": "error",
                "level": entry.level,
                "category": entry.category,
                "message": entry.message,
                "submission_id": entry.submission_id,
                "timestamp": entry.occurred_at,
            }
            for entry in recent_errors
        ] + [
            {
                "type": "submission",
                "submission_id": submission["id"],
                "university_id": submission["university_id"],
                "status": submission["status"],
                "message": f"Submission {submission['status']}",
                "timestamp": submission["updated_at"],
            }
            for submission in recent_changes
        ]
        activity.sort(key=lambda item: item["timestamp"], reverse=True)

        return {
            "system_health": {
                "status": snapshot.status.value if snapshot else "unknown",
                "uptime_seconds": self.uptime_seconds,
                "is_running": self.is_running,
                "last_check": self._last_check,
            },
            "metrics": {
                "queue_backlog": snapshot.queue_backlog if snapshot else None,
                "pending": counts.get(SubmissionStatus.PENDING.value),
                "processing": counts.get(SubmissionStatus.PROCESSING.value),
                "processing_rate": processing_rate,
                "success_rate": snapshot.success_rate if snapshot else None,
                "avg_processing_time": snapshot.avg_processing_time if snapshot else None,
            },
            "alerts": alerts,
            "recent_activity": activity[:RECENT_ACTIVITY_LIMIT],
            "university_performance": (
                [p.model_dump() for p in snapshot.per_university] if snapshot else []
            ),
            "hourly_throughput": hourly,
            "stale_sections": stale,
        }

    async def _recent_submissions(self) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await SubmissionRepository(session).recent_changes(RECENT_ACTIVITY_LIMIT)
        return [
            {
                "id": row.id,
                "university_id": row.university_id,
                "status": row.status,
                "updated_at": row.updated_at,
            }
            for row in rows
        ]

    # =========================================================================
    # Operator Commands
    # =========================================================================

    async def retry_failed(
        self,
        filters: Union[RetryFailedFilter, Mapping[str, Any], None] = None,
    ) -> RetryFailedResult:
        """
        Put failed submissions matching ``filters`` back on the queue.

        At most 100 submissions per call; each reset is logged on its own.
        """
        if not isinstance(filters, RetryFailedFilter):
            try:
                filters = RetryFailedFilter.model_validate(filters or {})
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid retry filter",
                    details={"errors": e.errors(
                        include_url=False, include_context=False, include_input=False
                    )},
                ) from e

        now = utc_now()
        updated_before = (
            now - timedelta(minutes=filters.older_than_minutes)
            if filters.older_than_minutes is not None
            else None
        )
        async with self._session_factory() as session:
            candidates = await SubmissionRepository(session).find_failed(
                university_id=filters.university_id,
                updated_before=updated_before,
                retry_count_below=filters.max_retries,
                limit=RETRY_FAILED_LIMIT,
            )

        result = RetryFailedResult()
        for submission in candidates:
            try:
                await self._processor.retry_submission(
                    submission.id, self._operator_retry_priority
                )
            except InvalidTransitionError:
                # Picked up or retried by someone else since the query
                result.skipped_count += 1
                continue
            except Exception as e:
                result.errors.append(f"{submission.id}: {e}")
                await self._error_log.log_error_safely(
                    ErrorLevel.ERROR,
                    ErrorCategory.SUBMISSION,
                    "Operator retry failed",
                    submission_id=submission.id,
                    university_id=submission.university_id,
                    error=e,
                )
                continue

            result.retried_count += 1
            await self._error_log.log_error_safely(
                ErrorLevel.INFO,
                ErrorCategory.SUBMISSION,
                "Submission reset for operator retry",
                context={"priority": self._operator_retry_priority},
                submission_id=submission.id,
                university_id=submission.university_id,
            )

        logger.info(
            f"[MONITOR] Retry failed: {result.retried_count} retried, "
            f"{result.skipped_count} skipped, {len(result.errors)} errors"
        )
        return result

    async def health_report(self, window_minutes: Optional[int] = None) -> Dict[str, Any]:
        """Health summary with plain-language recommendations."""
        snapshot = await self._analytics.health_snapshot(window_minutes)
        since = snapshot.generated_at - timedelta(minutes=snapshot.window_minutes)
        failures_by_reason = await self._analytics.failures_by_reason(since)
        channels = await self._analytics.channel_breakdown(since)
        error_metrics = await self._error_log.error_metrics(since)

        return {
            "generated_at": snapshot.generated_at,
            "window_minutes": snapshot.window_minutes,
            "summary": {
                "status": snapshot.status.value,
                "successes": snapshot.successes,
                "failures": snapshot.failures,
                "success_rate": snapshot.success_rate,
                "queue_backlog": snapshot.queue_backlog,
                "avg_processing_time": snapshot.avg_processing_time,
                "errors_logged": error_metrics["total"],
                "unresolved_errors": error_metrics["unresolved"],
            },
            "failures_by_reason": failures_by_reason,
            "channel_breakdown": channels,
            "university_performance": [p.model_dump() for p in snapshot.per_university],
            "alerts": [alert.model_dump() for alert in snapshot.alerts],
            "recommendations": build_recommendations(snapshot, failures_by_reason),
        }


def build_recommendations(
    snapshot: HealthSnapshot,
    failures_by_reason: Dict[str, int],
) -> List[str]:
    recommendations: List[str] = []

    down = [p for p in snapshot.per_university if p.status == UniversityHealth.DOWN]
    degraded = [p for p in snapshot.per_university if p.status == UniversityHealth.DEGRADED]
    if down:
        recommendations.append(
            f"{len(down)} universities are not accepting submissions; check their "
            "integrations and pause retries until they recover."
        )
    if degraded:
        recommendations.append(
            f"{len(degraded)} universities are degraded; review their recent errors."
        )

    if snapshot.attempts and snapshot.success_rate < 90:
        top_reason = next(iter(failures_by_reason), None)
        if top_reason == "authentication":
            recommendations.append("Most failures are authentication errors; rotate or verify channel credentials.")
        elif top_reason == "timeout":
            recommendations.append("Most failures are timeouts; consider a longer dispatch timeout.")
        elif top_reason == "rate_limit":
            recommendations.append("Universities are rate limiting deliveries; lower dispatch concurrency.")
        elif top_reason == "validation":
            recommendations.append("Payloads are being rejected; review submission formatting for the failing channels.")
        else:
            recommendations.append("Success rate is below target; investigate the error log for recurring failures.")

    if snapshot.queue_backlog > 50:
        recommendations.append(
            f"Queue backlog is {snapshot.queue_backlog}; increase dispatch concurrency or batch size."
        )
    if snapshot.avg_processing_time > 300:
        recommendations.append(
            "Confirmations are slow; follow up on submissions awaiting university acknowledgement."
        )

    if not recommendations:
        recommendations.append("All systems operating normally.")
    return recommendations


def build_monitoring_orchestrator(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    adapters: Optional[Mapping[DeliveryChannel, ChannelAdapter]] = None,
    context_provider: Optional[ApplicationContextProvider] = None,
    hub: Optional[BroadcastHub] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> MonitoringOrchestrator:
    """Wire the full monitoring stack from settings."""
    hub = hub or BroadcastHub()
    error_log = ErrorLoggingService(session_factory)
    queue = DeliveryQueue(
        session_factory,
        stale_after=timedelta(minutes=settings.stale_in_flight_minutes),
    )
    dispatcher = ChannelDispatcher(
        adapters if adapters is not None else {DeliveryChannel.MANUAL: ManualChannelAdapter()},
        timeout_seconds=settings.dispatch_timeout_seconds,
        context_provider=context_provider,
    )
    processor = SubmissionProcessor(
        session_factory,
        queue,
        dispatcher,
        retry_policy=retry_policy or RetryPolicy.from_settings(settings),
        batch_size=settings.queue_batch_size,
        concurrency=settings.dispatch_concurrency,
    )
    analytics = SubmissionAnalyticsService.from_settings(session_factory, settings)
    webhook_caller = HttpxWebhookCaller(timeout_seconds=settings.webhook_timeout_seconds)
    rule_engine = NotificationRuleEngine(
        session_factory,
        analytics,
        error_log,
        email_sender=LoggingEmailSender(settings.alert_email_subject_prefix),
        webhook_caller=webhook_caller,
        push_publisher=hub,
    )
    return MonitoringOrchestrator(
        session_factory,
        processor,
        analytics,
        rule_engine,
        error_log,
        hub=hub,
        queue_interval=settings.queue_interval_seconds,
        rule_interval=settings.rule_evaluation_interval_seconds,
        maintenance_interval=settings.maintenance_interval_seconds,
        retention_days=settings.error_log_retention_days,
        operator_retry_priority=settings.operator_retry_priority,
        webhook_caller=webhook_caller,
        stop_timeout=settings.dispatch_timeout_seconds + settings.shutdown_grace_seconds,
    )
