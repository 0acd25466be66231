"""
Submission Model

One recommendation delivery to one university. The row doubles as the
durable delivery-queue entry: ``status``, ``priority`` and
``next_attempt_at`` drive dequeue order.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import Column, Index, String, UniqueConstraint
from sqlmodel import Field, SQLModel

from stellarrec.domain.submission import DeliveryChannel, SubmissionStatus
from stellarrec.infrastructure.db.models.base import BaseModel, utc_now


class Submission(BaseModel, table=True):
    """Submission database model."""

    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("application_id", "university_id", name="uq_submissions_application_university"),
        Index("ix_submissions_due", "status", "priority", "next_attempt_at"),
    )

    application_id: UUID = Field(
        ...,
        index=True,
        description="Recommendation application being delivered"
    )
    university_id: UUID = Field(
        ...,
        index=True,
        description="Destination university"
    )
    channel: str = Field(
        ...,
        sa_column=Column(String(20), nullable=False),
        description="Delivery channel: api, email or manual"
    )
    status: str = Field(
        default=SubmissionStatus.PENDING.value,
        sa_column=Column(String(20), nullable=False, index=True),
        description="Lifecycle status"
    )
    priority: int = Field(
        default=5,
        ge=1,
        le=10,
        description="1 = most urgent, 10 = least"
    )
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=5, ge=0)
    next_attempt_at: datetime = Field(
        default_factory=utc_now,
        description="Earliest time the next attempt may start (meaningful while pending)"
    )
    submitted_at: Optional[datetime] = Field(default=None)
    confirmed_at: Optional[datetime] = Field(default=None)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    external_reference: Optional[str] = Field(default=None, max_length=255)

    # In-flight bookkeeping
    claim_token: Optional[UUID] = Field(
        default=None,
        index=True,
        description="Dequeue call that moved this row in-flight"
    )
    claimed_at: Optional[datetime] = Field(
        default=None,
        description="When the row was moved in-flight; used by the stale sweep"
    )


class SubmissionRead(SQLModel):
    """Schema for reading a submission."""
    id: UUID
    application_id: UUID
    university_id: UUID
    channel: DeliveryChannel
    status: SubmissionStatus
    priority: int
    retry_count: int
    max_retries: int
    next_attempt_at: datetime
    submitted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    external_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime
