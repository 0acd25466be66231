"""
Notification Rule and Event Models

Rules hold their conditions and actions as JSON; validation into the typed
condition variants happens in the domain layer when a rule is loaded.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, String
from sqlmodel import Field, SQLModel

from stellarrec.infrastructure.db.models.base import BaseModel, JSONType, utc_now


class NotificationRule(BaseModel, table=True):
    """Alerting rule database model."""

    __tablename__ = "notification_rules"

    name: str = Field(..., max_length=200)
    type: str = Field(
        ...,
        sa_column=Column(String(30), nullable=False, index=True),
        description="Rule type; selects the condition variant"
    )
    enabled: bool = Field(default=True, index=True)
    conditions: dict = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
        description="Type-specific condition parameters"
    )
    actions: dict = Field(
        default_factory=dict,
        sa_column=Column(JSONType, nullable=False),
        description="Optional email, webhook and push actions"
    )
    cooldown_minutes: int = Field(default=30, ge=0)
    last_triggered_at: Optional[datetime] = Field(default=None)


class NotificationEvent(SQLModel, table=True):
    """One firing of a notification rule."""

    __tablename__ = "notification_events"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True
    )
    rule_id: Optional[UUID] = Field(
        default=None,
        foreign_key="notification_rules.id",
        ondelete="SET NULL",
        nullable=True,
        index=True,
        description="Cleared when the rule is deleted; the event is kept"
    )
    rule_type: str = Field(..., sa_column=Column(String(30), nullable=False))
    severity: str = Field(
        ...,
        sa_column=Column(String(10), nullable=False, index=True),
        description="low, medium, high or critical"
    )
    title: str = Field(..., max_length=300)
    message: str = Field(..., max_length=2000)
    data: Optional[dict] = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
        description="Metrics snapshot at firing time"
    )
    triggered_at: datetime = Field(default_factory=utc_now, index=True)
    acknowledged: bool = Field(default=False, index=True)
    acknowledged_by: Optional[str] = Field(default=None, max_length=200)
    acknowledged_at: Optional[datetime] = Field(default=None)


class NotificationEventRead(SQLModel):
    """Schema for reading a notification event."""
    id: UUID
    rule_id: Optional[UUID] = None
    rule_type: str
    severity: str
    title: str
    message: str
    data: Optional[dict] = None
    triggered_at: datetime
    acknowledged: bool
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
