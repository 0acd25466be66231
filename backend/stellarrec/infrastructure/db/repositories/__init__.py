"""
Repository Layer for StellarRec Submission Monitoring

Exports all repository classes for dependency injection.
"""

from stellarrec.infrastructure.db.repositories.base_repository import (
    BaseRepository,
)
from stellarrec.infrastructure.db.repositories.submission_repository import (
    SubmissionRepository,
)
from stellarrec.infrastructure.db.repositories.error_log_repository import (
    ErrorLogRepository,
)
from stellarrec.infrastructure.db.repositories.notification_repository import (
    NotificationEventRepository,
    NotificationRuleRepository,
)


__all__ = [
    # Base
    "BaseRepository",
    # Repositories
    "SubmissionRepository",
    "ErrorLogRepository",
    "NotificationEventRepository",
    "NotificationRuleRepository",
]
