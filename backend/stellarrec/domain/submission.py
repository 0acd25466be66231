"""
Submission Domain Models

Enums, DTOs and the status state machine for the submission delivery
bounded context. No framework dependencies beyond Pydantic.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class SubmissionStatus(str, Enum):
    """Submission lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeliveryChannel(str, Enum):
    """Delivery mechanism for a submission."""
    API = "api"
    EMAIL = "email"
    MANUAL = "manual"


class FailureKind(str, Enum):
    """Classification of a delivery failure; drives the retry policy."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


TERMINAL_STATUSES: FrozenSet[SubmissionStatus] = frozenset({
    SubmissionStatus.CONFIRMED,
    SubmissionStatus.FAILED,
    SubmissionStatus.CANCELLED,
})

# Delivered to the university, whether or not it has confirmed receipt yet.
SUCCESS_STATUSES: FrozenSet[SubmissionStatus] = frozenset({
    SubmissionStatus.SUBMITTED,
    SubmissionStatus.CONFIRMED,
})

BACKLOG_STATUSES: FrozenSet[SubmissionStatus] = frozenset({
    SubmissionStatus.PENDING,
    SubmissionStatus.PROCESSING,
})

ALLOWED_TRANSITIONS: Dict[SubmissionStatus, FrozenSet[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({
        SubmissionStatus.PROCESSING,
        SubmissionStatus.CONFIRMED,
        SubmissionStatus.CANCELLED,
    }),
    SubmissionStatus.PROCESSING: frozenset({
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.CONFIRMED,
        SubmissionStatus.PENDING,
        SubmissionStatus.FAILED,
    }),
    SubmissionStatus.SUBMITTED: frozenset({SubmissionStatus.CONFIRMED}),
    SubmissionStatus.CONFIRMED: frozenset(),
    SubmissionStatus.FAILED: frozenset(),
    # Re-enqueueing a removed submission puts it back on the queue
    SubmissionStatus.CANCELLED: frozenset({SubmissionStatus.PENDING}),
}


def can_transition(
    current: SubmissionStatus,
    target: SubmissionStatus,
    operator_retry: bool = False,
) -> bool:
    """
    Check whether a status change keeps the lifecycle monotonic.

    The only way out of ``failed`` is an explicit operator retry back to
    ``pending``; a ``cancelled`` submission only comes back when it is
    enqueued again. ``confirmed`` is final.
    """
    current = SubmissionStatus(current)
    target = SubmissionStatus(target)
    if operator_retry:
        return current == SubmissionStatus.FAILED and target == SubmissionStatus.PENDING
    return target in ALLOWED_TRANSITIONS[current]


def is_terminal(status: SubmissionStatus) -> bool:
    """Check if a status is terminal (confirmed, failed-exhausted or cancelled)."""
    return SubmissionStatus(status) in TERMINAL_STATUSES


# =============================================================================
# Delivery DTOs
# =============================================================================

class DeliveryResult(BaseModel):
    """Outcome of one channel adapter call."""
    ok: bool
    external_reference: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    message: Optional[str] = None
    confirmed: bool = Field(
        default=False,
        description="Adapter reports the university already acknowledged receipt"
    )

    @model_validator(mode="after")
    def validate_failure_kind(self) -> "DeliveryResult":
        if not self.ok and self.failure_kind is None:
            self.failure_kind = FailureKind.TRANSIENT
        if self.ok:
            self.failure_kind = None
        return self

    @classmethod
    def success(
        cls,
        external_reference: Optional[str] = None,
        confirmed: bool = False,
    ) -> "DeliveryResult":
        return cls(ok=True, external_reference=external_reference, confirmed=confirmed)

    @classmethod
    def failure(cls, kind: FailureKind, message: str) -> "DeliveryResult":
        return cls(ok=False, failure_kind=kind, message=message)


class EnqueueSubmissionRequest(BaseModel):
    """Request DTO for putting a submission on the delivery queue."""
    application_id: UUID
    university_id: UUID
    channel: DeliveryChannel
    priority: int = Field(default=5, ge=1, le=10, description="1 = most urgent")
    max_retries: int = Field(default=5, ge=0, le=20)


class BulkEnqueueRequest(BaseModel):
    """Request DTO for enqueueing many submissions in one transaction."""
    submissions: List[EnqueueSubmissionRequest] = Field(..., min_length=1, max_length=500)


class ConfirmSubmissionRequest(BaseModel):
    """Confirmation callback payload from email/manual workflows."""
    external_reference: str = Field(..., min_length=1, max_length=255)
    confirmed_at: Optional[datetime] = None


class SetPriorityRequest(BaseModel):
    """Request DTO for re-prioritising a queued submission."""
    priority: int = Field(..., ge=1, le=10)


class RetryFailedFilter(BaseModel):
    """Operator filter for bulk retry of failed submissions."""
    university_id: Optional[UUID] = None
    older_than_minutes: Optional[int] = Field(default=None, ge=0)
    max_retries: Optional[int] = Field(
        default=None,
        ge=0,
        description="Only retry submissions whose retry_count is below this value"
    )


class RetryFailedResult(BaseModel):
    """Outcome of a bulk retry operation."""
    retried_count: int = 0
    skipped_count: int = 0
    errors: list[str] = Field(default_factory=list)
