"""
Error Log Model

Append-only record of failures and operational events. Only the resolution
fields change after insert.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, String
from sqlmodel import Field, SQLModel

from stellarrec.infrastructure.db.models.base import JSONType, utc_now


class ErrorLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class ErrorCategory(str, Enum):
    SUBMISSION = "submission"
    INTEGRATION = "integration"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    SYSTEM = "system"


class ErrorLogEntry(SQLModel, table=True):
    """Error log database model."""

    __tablename__ = "error_logs"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True
    )
    level: str = Field(
        ...,
        sa_column=Column(String(10), nullable=False, index=True),
        description="debug, info, warn, error or fatal"
    )
    category: str = Field(
        ...,
        sa_column=Column(String(20), nullable=False, index=True),
        description="submission, integration, validation, authentication or system"
    )
    message: str = Field(..., max_length=2000)
    context: Optional[dict] = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
        description="Structured context (submission_id, error details, ...)"
    )
    submission_id: Optional[UUID] = Field(
        default=None,
        index=True,
        description="Submission this entry refers to, if any"
    )
    university_id: Optional[UUID] = Field(default=None, index=True)
    occurred_at: datetime = Field(
        default_factory=utc_now,
        index=True,
        description="When this entry was recorded"
    )

    # Resolution
    resolved: bool = Field(default=False, index=True)
    resolved_by: Optional[str] = Field(default=None, max_length=200)
    resolved_at: Optional[datetime] = Field(default=None)
    resolution: Optional[str] = Field(default=None, max_length=2000)


class ErrorLogRead(SQLModel):
    """Schema for reading an error log entry."""
    id: UUID
    level: ErrorLevel
    category: ErrorCategory
    message: str
    context: Optional[dict] = None
    submission_id: Optional[UUID] = None
    university_id: Optional[UUID] = None
    occurred_at: datetime
    resolved: bool
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


class ErrorLogFilter(SQLModel):
    """Filter for listing and bulk-resolving error log entries."""
    level: Optional[ErrorLevel] = None
    category: Optional[ErrorCategory] = None
    submission_id: Optional[UUID] = None
    university_id: Optional[UUID] = None
    resolved: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ErrorResolveRequest(SQLModel):
    resolved_by: str = Field(..., min_length=1, max_length=200)
    resolution: Optional[str] = Field(default=None, max_length=2000)


class BulkResolveRequest(ErrorResolveRequest):
    filters: ErrorLogFilter = Field(default_factory=ErrorLogFilter)
