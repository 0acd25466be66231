"""
SQLModel ORM Models for StellarRec Submission Monitoring

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from stellarrec.infrastructure.db.models.base import (
    BaseModel,
    JSONType,
    TimestampMixin,
    UUIDMixin,
    to_naive_utc,
    utc_now,
)
from stellarrec.infrastructure.db.models.submission import (
    Submission,
    SubmissionRead,
)
from stellarrec.infrastructure.db.models.error_log import (
    BulkResolveRequest,
    ErrorCategory,
    ErrorLevel,
    ErrorLogEntry,
    ErrorLogFilter,
    ErrorLogRead,
    ErrorResolveRequest,
)
from stellarrec.infrastructure.db.models.notification import (
    NotificationEvent,
    NotificationEventRead,
    NotificationRule,
)


__all__ = [
    # Base
    "BaseModel",
    "JSONType",
    "TimestampMixin",
    "UUIDMixin",
    "to_naive_utc",
    "utc_now",
    # Submission
    "Submission",
    "SubmissionRead",
    # Error log
    "BulkResolveRequest",
    "ErrorCategory",
    "ErrorLevel",
    "ErrorLogEntry",
    "ErrorLogFilter",
    "ErrorLogRead",
    "ErrorResolveRequest",
    # Notifications
    "NotificationEvent",
    "NotificationEventRead",
    "NotificationRule",
]
