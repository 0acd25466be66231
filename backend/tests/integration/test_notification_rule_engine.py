"""
Integration tests for rule evaluation, cooldown and action execution.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from stellarrec.domain.notifications import (
    NotificationRuleCreate,
    NotificationRuleUpdate,
    NotificationSeverity,
    RuleType,
)
from stellarrec.domain.submission import SubmissionStatus
from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.db.models.error_log import ErrorCategory
from stellarrec.infrastructure.exceptions import (
    NotFoundError,
    NotificationActionError,
    ValidationError,
)


async def _failed(make_submission, count, university_id=None, **overrides):
    university_id = university_id or uuid4()
    for _ in range(count):
        await make_submission(
            university_id=university_id,
            status=SubmissionStatus.FAILED.value,
            last_error="HTTP 503 from university",
            **overrides,
        )
    return university_id


class TestRuleCrud:

    async def test_create_and_list(self, rule_engine):
        rule = await rule_engine.create_rule(NotificationRuleCreate(
            name="Failures",
            type=RuleType.SUBMISSION_FAILURE,
            conditions={"threshold": 3},
        ))

        rules = await rule_engine.list_rules()

        assert [r.id for r in rules] == [rule.id]
        assert rule.conditions.threshold == 3
        assert rule.last_triggered_at is None

    async def test_update_revalidates_conditions(self, rule_engine):
        rule = await rule_engine.create_rule(NotificationRuleCreate(
            name="Backlog", type=RuleType.QUEUE_BACKLOG
        ))

        updated = await rule_engine.update_rule(
            rule.id, NotificationRuleUpdate(conditions={"threshold": 10}, enabled=False)
        )
        assert updated.conditions.threshold == 10
        assert updated.enabled is False

        with pytest.raises(ValidationError):
            await rule_engine.update_rule(
                rule.id, NotificationRuleUpdate(conditions={"threshold": -1})
            )

    async def test_delete_rule(self, rule_engine):
        rule = await rule_engine.create_rule(NotificationRuleCreate(
            name="Backlog", type=RuleType.QUEUE_BACKLOG
        ))

        await rule_engine.delete_rule(rule.id)

        with pytest.raises(NotFoundError):
            await rule_engine.get_rule(rule.id)
        with pytest.raises(NotFoundError):
            await rule_engine.delete_rule(rule.id)

    async def test_delete_rule_keeps_event_history(self, rule_engine, make_submission):
        rule = await rule_engine.create_rule(NotificationRuleCreate(
            name="Backlog", type=RuleType.QUEUE_BACKLOG, conditions={"threshold": 1}
        ))
        await make_submission()
        [event] = await rule_engine.evaluate_all()
        await rule_engine.acknowledge_event(event.id, "operator")

        await rule_engine.delete_rule(rule.id)

        [kept] = await rule_engine.list_events()
        assert kept.id == event.id
        assert kept.rule_id is None
        assert kept.rule_type == RuleType.QUEUE_BACKLOG.value
        assert kept.acknowledged is True

    async def test_seed_default_rules_once(self, rule_engine):
        assert await rule_engine.seed_default_rules() == 4
        assert await rule_engine.seed_default_rules() == 0
        assert len(await rule_engine.list_rules()) == 4


class TestEvaluation:

    async def test_quiet_rule_does_not_fire(self, rule_engine, make_submission):
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Failures", type=RuleType.SUBMISSION_FAILURE, conditions={"threshold": 5}
        ))
        await _failed(make_submission, 2)

        assert await rule_engine.evaluate_all() == []

    async def test_cooldown_suppresses_refiring(self, rule_engine, make_submission):
        rule = await rule_engine.create_rule(NotificationRuleCreate(
            name="Failures",
            type=RuleType.SUBMISSION_FAILURE,
            conditions={"threshold": 2, "time_window": 120},
            cooldown_minutes=30,
        ))
        await _failed(make_submission, 3)
        now = utc_now()

        fired = await rule_engine.evaluate_all(now)
        assert len(fired) == 1
        assert fired[0].rule_id == rule.id
        assert fired[0].data["failed_count"] == 3

        assert await rule_engine.evaluate_all(now + timedelta(minutes=10)) == []
        assert len(await rule_engine.evaluate_all(now + timedelta(minutes=31))) == 1

        stored = await rule_engine.get_rule(rule.id)
        assert stored.last_triggered_at == now + timedelta(minutes=31)

    async def test_disabled_rule_is_skipped(self, rule_engine, make_submission):
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Failures",
            type=RuleType.SUBMISSION_FAILURE,
            enabled=False,
            conditions={"threshold": 1},
        ))
        await _failed(make_submission, 3)

        assert await rule_engine.evaluate_all() == []

    async def test_university_down_fires_once(self, rule_engine, make_submission):
        """12 submissions to one university in 30 minutes, 10 failed."""
        await rule_engine.create_rule(NotificationRuleCreate(
            name="University down",
            type=RuleType.UNIVERSITY_DOWN,
            conditions={"time_window": 30},
        ))
        university_id = await _failed(make_submission, 10)
        for _ in range(2):
            await make_submission(university_id=university_id, status=SubmissionStatus.SUBMITTED.value)
        now = utc_now()

        fired = await rule_engine.evaluate_all(now)
        again = await rule_engine.evaluate_all(now + timedelta(minutes=1))

        assert len(fired) == 1
        assert again == []
        assert fired[0].data["down"][0]["university_id"] == str(university_id)
        assert fired[0].severity == NotificationSeverity.CRITICAL.value

    async def test_university_scope_filters(self, rule_engine, make_submission):
        await _failed(make_submission, 10)
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Watched university",
            type=RuleType.UNIVERSITY_DOWN,
            conditions={"university_scope": [str(uuid4())]},
        ))

        assert await rule_engine.evaluate_all() == []

    async def test_failure_rate_needs_minimum_sample(self, rule_engine, make_submission):
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Failure rate",
            type=RuleType.HIGH_FAILURE_RATE,
            conditions={"threshold": 50, "min_sample_size": 10},
        ))
        await _failed(make_submission, 4)

        assert await rule_engine.evaluate_all() == []

        await _failed(make_submission, 4)
        for _ in range(2):
            await make_submission(status=SubmissionStatus.CONFIRMED.value)

        [event] = await rule_engine.evaluate_all()
        assert event.data["failure_rate"] == 80.0
        assert event.severity == NotificationSeverity.CRITICAL.value

    async def test_queue_backlog(self, rule_engine, make_submission):
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Backlog", type=RuleType.QUEUE_BACKLOG, conditions={"threshold": 3}
        ))
        for _ in range(3):
            await make_submission()

        [event] = await rule_engine.evaluate_all()
        assert event.data["pending"] == 3

    async def test_system_health(self, rule_engine, make_submission):
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Health", type=RuleType.SYSTEM_HEALTH, conditions={"min_status": "critical"}
        ))
        await _failed(make_submission, 3)

        [event] = await rule_engine.evaluate_all()
        assert event.data["status"] == "critical"


class TestActions:

    async def test_all_actions_run(self, rule_engine, make_submission, email_sender, webhook_caller, hub):
        subscription = hub.subscribe("admin-alerts")
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Backlog",
            type=RuleType.QUEUE_BACKLOG,
            conditions={"threshold": 1},
            actions={
                "email": {"recipients": ["ops@stellarrec.example"]},
                "webhook": {"url": "https://hooks.example.com/alerts"},
                "push": {"channel": "admin-alerts"},
            },
        ))
        await make_submission()

        [event] = await rule_engine.evaluate_all()

        assert email_sender.sent[0]["recipients"] == ["ops@stellarrec.example"]
        assert webhook_caller.calls[0]["body"]["event_id"] == str(event.id)
        assert subscription.get_nowait()["title"] == "Queue Backlog"

    async def test_failing_action_does_not_block_others(
        self, rule_engine, make_submission, email_sender, webhook_caller, hub, fetch_error_logs
    ):
        webhook_caller.error = NotificationActionError("Webhook POST failed: 500", action="webhook")
        subscription = hub.subscribe("admin-alerts")
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Backlog",
            type=RuleType.QUEUE_BACKLOG,
            conditions={"threshold": 1},
            actions={
                "email": {"recipients": ["ops@stellarrec.example"]},
                "webhook": {"url": "https://hooks.example.com/alerts"},
                "push": {"channel": "admin-alerts"},
            },
        ))
        await make_submission()

        fired = await rule_engine.evaluate_all()

        assert len(fired) == 1
        assert len(email_sender.sent) == 1
        assert subscription.qsize() == 1

        entries = await fetch_error_logs()
        assert len(entries) == 1
        assert entries[0].category == ErrorCategory.INTEGRATION.value
        assert entries[0].context["action"] == "webhook"


class TestEvents:

    async def test_list_and_acknowledge(self, rule_engine, make_submission):
        await rule_engine.create_rule(NotificationRuleCreate(
            name="Backlog", type=RuleType.QUEUE_BACKLOG, conditions={"threshold": 1}
        ))
        await make_submission()
        [event] = await rule_engine.evaluate_all()

        acknowledged = await rule_engine.acknowledge_event(event.id, "operator@stellarrec")

        assert acknowledged.acknowledged is True
        assert acknowledged.acknowledged_by == "operator@stellarrec"
        assert await rule_engine.list_events(acknowledged=False) == []
        assert len(await rule_engine.list_events(acknowledged=True)) == 1

    async def test_acknowledge_unknown_event(self, rule_engine):
        with pytest.raises(NotFoundError):
            await rule_engine.acknowledge_event(uuid4(), "operator")
