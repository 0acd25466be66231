"""
Notification Rule Domain Models

Rule conditions are a tagged union keyed by ``type``: each rule type has its
own condition shape, validated when a rule is created or loaded from storage.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, HttpUrl, TypeAdapter, model_validator


class RuleType(str, Enum):
    """Kinds of alerting rules."""
    SUBMISSION_FAILURE = "submission_failure"
    HIGH_FAILURE_RATE = "high_failure_rate"
    QUEUE_BACKLOG = "queue_backlog"
    SYSTEM_HEALTH = "system_health"
    UNIVERSITY_DOWN = "university_down"


class NotificationSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# =============================================================================
# Rule Conditions (tagged union)
# =============================================================================

class SubmissionFailureCondition(BaseModel):
    """Fires when the failed count within the window reaches the threshold."""
    type: Literal["submission_failure"] = "submission_failure"
    threshold: int = Field(default=5, ge=1)
    time_window: int = Field(default=60, ge=1, description="Minutes")


class HighFailureRateCondition(BaseModel):
    """Fires when the failure percentage within the window reaches the threshold."""
    type: Literal["high_failure_rate"] = "high_failure_rate"
    threshold: float = Field(default=50.0, gt=0, le=100, description="Percent")
    time_window: int = Field(default=60, ge=1, description="Minutes")
    min_sample_size: int = Field(default=10, ge=1)


class QueueBacklogCondition(BaseModel):
    """Fires when the pending count reaches the threshold."""
    type: Literal["queue_backlog"] = "queue_backlog"
    threshold: int = Field(default=100, ge=1)


class SystemHealthCondition(BaseModel):
    """Fires when overall health is at or above ``min_status``."""
    type: Literal["system_health"] = "system_health"
    min_status: Literal["warning", "critical"] = "warning"


class UniversityDownCondition(BaseModel):
    """Fires when any university in scope is classified down."""
    type: Literal["university_down"] = "university_down"
    time_window: int = Field(default=30, ge=1, description="Minutes")
    consecutive_failures: int = Field(default=5, ge=1)
    university_scope: List[UUID] = Field(
        default_factory=list,
        description="Universities to watch; empty watches all"
    )


RuleConditions = Annotated[
    Union[
        SubmissionFailureCondition,
        HighFailureRateCondition,
        QueueBacklogCondition,
        SystemHealthCondition,
        UniversityDownCondition,
    ],
    Field(discriminator="type"),
]

_conditions_adapter = TypeAdapter(RuleConditions)


def parse_conditions(rule_type: RuleType, raw: Optional[Dict[str, Any]]) -> RuleConditions:
    """
    Validate stored condition JSON into its variant.

    The rule's own type always wins over any ``type`` key in the payload so a
    rule cannot carry conditions for a different kind of check.
    """
    payload = dict(raw or {})
    payload["type"] = RuleType(rule_type).value
    return _conditions_adapter.validate_python(payload)


# =============================================================================
# Rule Actions
# =============================================================================

class EmailAction(BaseModel):
    recipients: List[str] = Field(..., min_length=1)
    template: str = "alert"


class WebhookAction(BaseModel):
    url: HttpUrl
    method: Literal["POST", "PUT"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


class PushAction(BaseModel):
    channel: str = Field(..., min_length=1)
    message: Optional[str] = None


class RuleActions(BaseModel):
    """Actions executed when a rule fires. Every field is optional."""
    email: Optional[EmailAction] = None
    webhook: Optional[WebhookAction] = None
    push: Optional[PushAction] = None

    def configured(self) -> List[str]:
        return [name for name in ("email", "webhook", "push") if getattr(self, name)]


# =============================================================================
# Rule DTOs
# =============================================================================

class AlertRule(BaseModel):
    """A notification rule with conditions and actions already validated."""
    id: UUID
    name: str
    type: RuleType
    enabled: bool
    conditions: RuleConditions
    actions: RuleActions
    cooldown_minutes: int
    last_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def tag_conditions(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("conditions"), dict):
            conditions = dict(data["conditions"])
            conditions["type"] = RuleType(data["type"]).value
            data = {**data, "conditions": conditions}
        return data


class NotificationRuleCreate(BaseModel):
    """Request DTO for creating a notification rule."""
    name: str = Field(..., min_length=1, max_length=200)
    type: RuleType
    enabled: bool = True
    conditions: Dict[str, Any] = Field(default_factory=dict)
    actions: RuleActions = Field(default_factory=RuleActions)
    cooldown_minutes: int = Field(default=30, ge=0)

    @model_validator(mode="after")
    def validate_conditions(self) -> "NotificationRuleCreate":
        self.conditions = parse_conditions(self.type, self.conditions).model_dump(mode="json")
        return self


class NotificationRuleUpdate(BaseModel):
    """Partial update for a notification rule. Conditions are re-validated."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    enabled: Optional[bool] = None
    conditions: Optional[Dict[str, Any]] = None
    actions: Optional[RuleActions] = None
    cooldown_minutes: Optional[int] = Field(default=None, ge=0)


class EventAcknowledgeRequest(BaseModel):
    acknowledged_by: str = Field(..., min_length=1, max_length=200)


class RuleEvaluation(BaseModel):
    """Outcome of evaluating one rule's condition."""
    triggered: bool
    severity: NotificationSeverity = NotificationSeverity.MEDIUM
    title: str = ""
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def quiet(cls, **data: Any) -> "RuleEvaluation":
        return cls(triggered=False, data=data)


# =============================================================================
# Severity
# =============================================================================

def severity_for_count(observed: float, threshold: float) -> NotificationSeverity:
    """Escalate by how far a count overshoots its threshold."""
    if threshold > 0 and observed >= threshold * 3:
        return NotificationSeverity.CRITICAL
    if threshold > 0 and observed >= threshold * 2:
        return NotificationSeverity.HIGH
    if threshold > 0 and observed >= threshold * 1.5:
        return NotificationSeverity.MEDIUM
    return NotificationSeverity.LOW


def severity_for_failure_rate(failure_rate: float) -> NotificationSeverity:
    if failure_rate >= 80:
        return NotificationSeverity.CRITICAL
    if failure_rate >= 70:
        return NotificationSeverity.HIGH
    if failure_rate >= 60:
        return NotificationSeverity.MEDIUM
    return NotificationSeverity.LOW


# Seeded on first start when the rule table is empty
DEFAULT_RULES: List[Dict[str, Any]] = [
    {
        "name": "High Submission Failures",
        "type": RuleType.SUBMISSION_FAILURE,
        "conditions": {"threshold": 10, "time_window": 30},
        "actions": {"push": {"channel": "admin-alerts"}},
        "cooldown_minutes": 30,
    },
    {
        "name": "Critical Failure Rate",
        "type": RuleType.HIGH_FAILURE_RATE,
        "conditions": {"threshold": 75, "time_window": 60},
        "actions": {"push": {"channel": "admin-alerts"}},
        "cooldown_minutes": 60,
    },
    {
        "name": "Queue Backlog Alert",
        "type": RuleType.QUEUE_BACKLOG,
        "conditions": {"threshold": 100},
        "actions": {"push": {"channel": "admin-alerts"}},
        "cooldown_minutes": 60,
    },
    {
        "name": "System Health Critical",
        "type": RuleType.SYSTEM_HEALTH,
        "conditions": {"min_status": "critical"},
        "actions": {"push": {"channel": "admin-alerts"}},
        "cooldown_minutes": 30,
    },
]
