"""
Notification Rule Engine

Evaluates alerting rules against the analytics aggregator, fires
notification events with cooldown suppression, and runs each rule's
actions. Also owns rule CRUD and event acknowledgement.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stellarrec.domain.health import SYSTEM_HEALTH_RANK, SystemHealth, UniversityHealth
from stellarrec.domain.notifications import (
    DEFAULT_RULES,
    AlertRule,
    HighFailureRateCondition,
    NotificationRuleCreate,
    NotificationRuleUpdate,
    NotificationSeverity,
    QueueBacklogCondition,
    RuleEvaluation,
    SubmissionFailureCondition,
    SystemHealthCondition,
    UniversityDownCondition,
    parse_conditions,
    severity_for_count,
    severity_for_failure_rate,
)
from stellarrec.domain.submission import SubmissionStatus
from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.db.models.error_log import ErrorCategory, ErrorLevel
from stellarrec.infrastructure.db.models.notification import NotificationEvent, NotificationRule
from stellarrec.infrastructure.db.repositories.notification_repository import (
    NotificationEventRepository,
    NotificationRuleRepository,
)
from stellarrec.infrastructure.exceptions import NotFoundError, ValidationError
from stellarrec.infrastructure.services.analytics_service import SubmissionAnalyticsService
from stellarrec.infrastructure.services.error_logging_service import ErrorLoggingService
from stellarrec.infrastructure.services.notification_executors import (
    BroadcastHub,
    EmailSender,
    HttpxWebhookCaller,
    LoggingEmailSender,
    PushPublisher,
    WebhookCaller,
)


logger = logging.getLogger(__name__)


def to_alert_rule(row: NotificationRule) -> AlertRule:
    """Validate a stored rule into its typed domain form."""
    return AlertRule.model_validate({
        "id": row.id,
        "name": row.name,
        "type": row.type,
        "enabled": row.enabled,
        "conditions": row.conditions or {},
        "actions": row.actions or {},
        "cooldown_minutes": row.cooldown_minutes,
        "last_triggered_at": row.last_triggered_at,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    })


def in_cooldown(rule: AlertRule, now: datetime) -> bool:
    if rule.last_triggered_at is None:
        return False
    return now - rule.last_triggered_at < timedelta(minutes=rule.cooldown_minutes)


class NotificationRuleEngine:
    """
    Polling rule evaluator.

    The cooldown stamp is a compare-and-swap committed together with the
    event insert, so two evaluators racing on the same rule produce one
    event. Actions run after the commit; their failures are logged and
    never undo the event.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        analytics: SubmissionAnalyticsService,
        error_log: ErrorLoggingService,
        email_sender: Optional[EmailSender] = None,
        webhook_caller: Optional[WebhookCaller] = None,
        push_publisher: Optional[PushPublisher] = None,
    ):
        self._session_factory = session_factory
        self._analytics = analytics
        self._error_log = error_log
        self._email = email_sender or LoggingEmailSender()
        self._webhook = webhook_caller or HttpxWebhookCaller()
        self._push = push_publisher or BroadcastHub()

    # =========================================================================
    # Rule CRUD
    # =========================================================================

    async def create_rule(self, data: NotificationRuleCreate) -> AlertRule:
        async with self._session_factory() as session, session.begin():
            row = await NotificationRuleRepository(session).add(NotificationRule(
                name=data.name,
                type=data.type.value,
                enabled=data.enabled,
                conditions=data.conditions,
                actions=data.actions.model_dump(mode="json", exclude_none=True),
                cooldown_minutes=data.cooldown_minutes,
            ))
        logger.info(f"[RULES] Created rule '{row.name}' ({row.type})")
        return to_alert_rule(row)

    async def update_rule(self, rule_id: UUID, data: NotificationRuleUpdate) -> AlertRule:
        async with self._session_factory() as session, session.begin():
            repo = NotificationRuleRepository(session)
            row = await repo.get_by_id(rule_id)
            if row is None:
                raise NotFoundError(
                    f"Notification rule {rule_id} not found",
                    operation="update",
                    table="notification_rules",
                )

            values: Dict[str, Any] = data.model_dump(
                exclude_unset=True, exclude={"conditions", "actions"}
            )
            if data.conditions is not None:
                try:
                    conditions = parse_conditions(row.type, data.conditions)
                except PydanticValidationError as e:
                    raise ValidationError(
                        f"Invalid conditions for {row.type} rule",
                        details={"errors": e.errors(
                            include_url=False, include_context=False, include_input=False
                        )},
                    ) from e
                values["conditions"] = conditions.model_dump(mode="json")
            if data.actions is not None:
                values["actions"] = data.actions.model_dump(mode="json", exclude_none=True)
            values["updated_at"] = utc_now()

            row = await repo.update_fields(rule_id, values)
        logger.info(f"[RULES] Updated rule {rule_id}")
        return to_alert_rule(row)

    async def delete_rule(self, rule_id: UUID) -> None:
        """Delete a rule. Its past events stay listed, detached from the rule."""
        async with self._session_factory() as session, session.begin():
            await NotificationEventRepository(session).detach_rule(rule_id)
            deleted = await NotificationRuleRepository(session).delete(rule_id)
            if not deleted:
                raise NotFoundError(
                    f"Notification rule {rule_id} not found",
                    operation="delete",
                    table="notification_rules",
                )
        logger.info(f"[RULES] Deleted rule {rule_id}")

    async def get_rule(self, rule_id: UUID) -> AlertRule:
        async with self._session_factory() as session:
            row = await NotificationRuleRepository(session).get_by_id(rule_id)
        if row is None:
            raise NotFoundError(
                f"Notification rule {rule_id} not found",
                operation="get",
                table="notification_rules",
            )
        return to_alert_rule(row)

    async def list_rules(self) -> List[AlertRule]:
        async with self._session_factory() as session:
            rows = await NotificationRuleRepository(session).list_rules()
        return [to_alert_rule(row) for row in rows]

    async def seed_default_rules(self) -> int:
        """Create the default rule set when no rules exist yet."""
        async with self._session_factory() as session:
            if await NotificationRuleRepository(session).count() > 0:
                return 0
        for rule in DEFAULT_RULES:
            await self.create_rule(NotificationRuleCreate.model_validate(rule))
        logger.info(f"[RULES] Seeded {len(DEFAULT_RULES)} default rules")
        return len(DEFAULT_RULES)

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def evaluate_all(self, now: Optional[datetime] = None) -> List[NotificationEvent]:
        """
        Evaluate every enabled rule that is out of cooldown.

        A rule that fails to evaluate is logged and skipped.
        """
        now = now or utc_now()
        async with self._session_factory() as session:
            rows = await NotificationRuleRepository(session).list_rules(enabled_only=True)

        fired: List[NotificationEvent] = []
        for row in rows:
            try:
                rule = to_alert_rule(row)
                if in_cooldown(rule, now):
                    continue
                evaluation = await self.evaluate_rule(rule, now)
                if not evaluation.triggered:
                    continue
                event = await self._fire(rule, evaluation, now)
                if event is not None:
                    fired.append(event)
            except Exception as e:
                logger.exception(f"[RULES] Rule '{row.name}' ({row.id}) failed to evaluate")
                await self._error_log.log_error_safely(
                    ErrorLevel.ERROR,
                    ErrorCategory.SYSTEM,
                    f"Notification rule '{row.name}' failed to evaluate",
                    context={"rule_id": str(row.id), "rule_type": row.type},
                    error=e,
                )

        if fired:
            logger.info(f"[RULES] {len(fired)} rules fired")
        return fired

    async def evaluate_rule(self, rule: AlertRule, now: datetime) -> RuleEvaluation:
        """Check one rule's condition against current metrics."""
        condition = rule.conditions
        if isinstance(condition, SubmissionFailureCondition):
            return await self._check_submission_failures(condition, now)
        if isinstance(condition, HighFailureRateCondition):
            return await self._check_failure_rate(condition, now)
        if isinstance(condition, QueueBacklogCondition):
            return await self._check_queue_backlog(condition)
        if isinstance(condition, SystemHealthCondition):
            return await self._check_system_health(condition, now)
        if isinstance(condition, UniversityDownCondition):
            return await self._check_university_down(condition, now)
        raise ValidationError(f"Unsupported rule condition: {type(condition).__name__}")

    async def _check_submission_failures(
        self,
        condition: SubmissionFailureCondition,
        now: datetime,
    ) -> RuleEvaluation:
        failed = await self._analytics.failed_count(condition.time_window, now)
        data = {
            "failed_count": failed,
            "threshold": condition.threshold,
            "time_window": condition.time_window,
        }
        if failed < condition.threshold:
            return RuleEvaluation.quiet(**data)
        return RuleEvaluation(
            triggered=True,
            severity=severity_for_count(failed, condition.threshold),
            title="High Submission Failures",
            message=f"{failed} submissions failed in the last {condition.time_window} minutes",
            data=data,
        )

    async def _check_failure_rate(
        self,
        condition: HighFailureRateCondition,
        now: datetime,
    ) -> RuleEvaluation:
        successes, failures = await self._analytics.window_outcomes(condition.time_window, now)
        attempts = successes + failures
        failure_rate = failures / attempts * 100 if attempts else 0.0
        data = {
            "failure_rate": round(failure_rate, 2),
            "attempts": attempts,
            "failures": failures,
            "threshold": condition.threshold,
            "time_window": condition.time_window,
        }
        if attempts < condition.min_sample_size or failure_rate < condition.threshold:
            return RuleEvaluation.quiet(**data)
        return RuleEvaluation(
            triggered=True,
            severity=severity_for_failure_rate(failure_rate),
            title="High Failure Rate",
            message=(
                f"Failure rate is {failure_rate:.1f}% over the last "
                f"{condition.time_window} minutes ({failures} of {attempts})"
            ),
            data=data,
        )

    async def _check_queue_backlog(self, condition: QueueBacklogCondition) -> RuleEvaluation:
        counts = await self._analytics.submission_counts()
        pending = counts[SubmissionStatus.PENDING.value]
        data = {"pending": pending, "threshold": condition.threshold}
        if pending < condition.threshold:
            return RuleEvaluation.quiet(**data)
        return RuleEvaluation(
            triggered=True,
            severity=severity_for_count(pending, condition.threshold),
            title="Queue Backlog",
            message=f"{pending} submissions are waiting in the queue",
            data=data,
        )

    async def _check_system_health(
        self,
        condition: SystemHealthCondition,
        now: datetime,
    ) -> RuleEvaluation:
        snapshot = await self._analytics.health_snapshot(now=now)
        data = {
            "status": snapshot.status.value,
            "success_rate": snapshot.success_rate,
            "queue_backlog": snapshot.queue_backlog,
            "avg_processing_time": snapshot.avg_processing_time,
        }
        threshold = SystemHealth(condition.min_status)
        if SYSTEM_HEALTH_RANK[snapshot.status] < SYSTEM_HEALTH_RANK[threshold]:
            return RuleEvaluation.quiet(**data)
        severity = (
            NotificationSeverity.CRITICAL
            if snapshot.status == SystemHealth.CRITICAL
            else NotificationSeverity.HIGH
        )
        return RuleEvaluation(
            triggered=True,
            severity=severity,
            title="System Health Alert",
            message=f"System health is {snapshot.status.value}: "
                    + "; ".join(alert.message for alert in snapshot.alerts),
            data=data,
        )

    async def _check_university_down(
        self,
        condition: UniversityDownCondition,
        now: datetime,
    ) -> RuleEvaluation:
        performance = await self._analytics.university_performance(
            condition.time_window,
            min_attempts_for_down=condition.consecutive_failures,
            now=now,
        )
        if condition.university_scope:
            scope = set(condition.university_scope)
            performance = [p for p in performance if p.university_id in scope]

        down = [p for p in performance if p.status == UniversityHealth.DOWN]
        data = {
            "observed": len(performance),
            "down": [
                {
                    "university_id": str(p.university_id),
                    "successes": p.successes,
                    "failures": p.failures,
                    "success_rate": p.success_rate,
                }
                for p in down
            ],
            "time_window": condition.time_window,
        }
        if not down:
            return RuleEvaluation.quiet(**data)

        severity = (
            NotificationSeverity.CRITICAL
            if len(down) == len(performance)
            else NotificationSeverity.HIGH
        )
        return RuleEvaluation(
            triggered=True,
            severity=severity,
            title="University Delivery Down",
            message=(
                f"{len(down)} of {len(performance)} universities are down over the last "
                f"{condition.time_window} minutes"
            ),
            data=data,
        )

    # =========================================================================
    # Firing
    # =========================================================================

    async def _fire(
        self,
        rule: AlertRule,
        evaluation: RuleEvaluation,
        now: datetime,
    ) -> Optional[NotificationEvent]:
        async with self._session_factory() as session, session.begin():
            claimed = await NotificationRuleRepository(session).claim_cooldown(
                rule.id, rule.last_triggered_at, now
            )
            if not claimed:
                logger.info(f"[RULES] Rule '{rule.name}' already fired elsewhere; skipping")
                return None
            event = await NotificationEventRepository(session).add(NotificationEvent(
                rule_id=rule.id,
                rule_type=rule.type.value,
                severity=evaluation.severity.value,
                title=evaluation.title,
                message=evaluation.message,
                data=evaluation.data,
                triggered_at=now,
            ))

        logger.warning(
            f"[RULES] Rule '{rule.name}' fired ({evaluation.severity.value}): {evaluation.message}"
        )
        await self._run_actions(rule, event)
        return event

    async def _run_actions(self, rule: AlertRule, event: NotificationEvent) -> None:
        """Run every configured action concurrently; failures are logged, not raised."""
        payload = {
            "event_id": str(event.id),
            "rule_id": str(rule.id),
            "rule_name": rule.name,
            "rule_type": rule.type.value,
            "severity": event.severity,
            "title": event.title,
            "message": event.message,
            "data": event.data,
            "triggered_at": event.triggered_at.isoformat(),
        }
        actions = rule.actions
        names: List[str] = []
        calls = []
        if actions.email:
            names.append("email")
            calls.append(self._email.send(actions.email.recipients, actions.email.template, payload))
        if actions.webhook:
            names.append("webhook")
            calls.append(self._webhook.call(
                actions.webhook.method,
                str(actions.webhook.url),
                actions.webhook.headers,
                payload,
            ))
        if actions.push:
            names.append("push")
            push_payload = dict(payload)
            if actions.push.message:
                push_payload["message"] = actions.push.message
            calls.append(self._push.publish(actions.push.channel, push_payload))

        if not calls:
            return

        results = await asyncio.gather(*calls, return_exceptions=True)
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"[RULES] {name} action failed for rule '{rule.name}': {result}")
                await self._error_log.log_error_safely(
                    ErrorLevel.ERROR,
                    ErrorCategory.INTEGRATION,
                    f"Notification {name} action failed for rule '{rule.name}'",
                    context={"rule_id": str(rule.id), "event_id": str(event.id), "action": name},
                    error=result,
                )

    # =========================================================================
    # Events
    # =========================================================================

    async def list_events(
        self,
        limit: int = 50,
        offset: int = 0,
        severity: Optional[NotificationSeverity] = None,
        acknowledged: Optional[bool] = None,
    ) -> List[NotificationEvent]:
        async with self._session_factory() as session:
            return await NotificationEventRepository(session).list_events(
                limit=limit,
                offset=offset,
                severity=severity.value if severity else None,
                acknowledged=acknowledged,
            )

    async def acknowledge_event(self, event_id: UUID, acknowledged_by: str) -> NotificationEvent:
        async with self._session_factory() as session, session.begin():
            event = await NotificationEventRepository(session).acknowledge(
                event_id, acknowledged_by, utc_now()
            )
        if event is None:
            raise NotFoundError(
                f"Notification event {event_id} not found",
                operation="acknowledge",
                table="notification_events",
            )
        return event
