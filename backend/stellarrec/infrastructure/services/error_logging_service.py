"""
Error Logging Service

Persists structured error log entries and mirrors each one to the Python
logger at the matching level. Entries are immutable apart from resolution.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stellarrec.infrastructure.db.models.base import utc_now
from stellarrec.infrastructure.db.models.error_log import (
    ErrorCategory,
    ErrorLevel,
    ErrorLogEntry,
    ErrorLogFilter,
)
from stellarrec.infrastructure.db.repositories.error_log_repository import ErrorLogRepository
from stellarrec.infrastructure.exceptions import NotFoundError


logger = logging.getLogger(__name__)


_PYTHON_LEVELS = {
    ErrorLevel.DEBUG: logging.DEBUG,
    ErrorLevel.INFO: logging.INFO,
    ErrorLevel.WARN: logging.WARNING,
    ErrorLevel.ERROR: logging.ERROR,
    ErrorLevel.FATAL: logging.CRITICAL,
}


def build_entry(
    level: ErrorLevel,
    category: ErrorCategory,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    submission_id: Optional[UUID] = None,
    university_id: Optional[UUID] = None,
    error: Optional[BaseException] = None,
) -> ErrorLogEntry:
    """Build an entry without persisting it, so callers can add it to their own transaction."""
    context = dict(context or {})
    if submission_id is not None:
        context.setdefault("submission_id", str(submission_id))
    if university_id is not None:
        context.setdefault("university_id", str(university_id))
    if error is not None:
        context.setdefault("error_type", type(error).__name__)
        context.setdefault("error", str(error))

    return ErrorLogEntry(
        level=ErrorLevel(level).value,
        category=ErrorCategory(category).value,
        message=message[:2000],
        context=context or None,
        submission_id=submission_id,
        university_id=university_id,
        occurred_at=utc_now(),
    )


def mirror_to_logger(entry: ErrorLogEntry) -> None:
    """Emit a persisted entry through the module logger."""
    logger.log(
        _PYTHON_LEVELS[ErrorLevel(entry.level)],
        f"[ERRORLOG] {entry.category}: {entry.message}",
    )


class ErrorLoggingService:
    """
    Service for writing, querying and resolving error log entries.

    Each public method runs in its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # =========================================================================
    # Writing
    # =========================================================================

    async def log_error(
        self,
        level: ErrorLevel,
        category: ErrorCategory,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        submission_id: Optional[UUID] = None,
        university_id: Optional[UUID] = None,
        error: Optional[BaseException] = None,
    ) -> ErrorLogEntry:
        """Persist one entry and mirror it to the logger."""
        entry = build_entry(
            level, category, message, context, submission_id, university_id, error
        )
        async with self._session_factory() as session, session.begin():
            entry = await ErrorLogRepository(session).add(entry)
        mirror_to_logger(entry)
        return entry

    async def log_error_safely(self, *args: Any, **kwargs: Any) -> Optional[ErrorLogEntry]:
        """
        Same as ``log_error`` but never raises.

        Used from the monitoring loops, where the database being down must
        not take the loop with it.
        """
        try:
            return await self.log_error(*args, **kwargs)
        except Exception:
            logger.exception("[ERRORLOG] Failed to persist error log entry")
            return None

    async def log_submission_error(
        self,
        submission_id: UUID,
        message: str,
        university_id: Optional[UUID] = None,
        context: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
    ) -> ErrorLogEntry:
        return await self.log_error(
            ErrorLevel.ERROR, ErrorCategory.SUBMISSION, message,
            context, submission_id, university_id, error,
        )

    async def log_integration_error(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        submission_id: Optional[UUID] = None,
        university_id: Optional[UUID] = None,
        error: Optional[BaseException] = None,
        level: ErrorLevel = ErrorLevel.ERROR,
    ) -> ErrorLogEntry:
        return await self.log_error(
            level, ErrorCategory.INTEGRATION, message,
            context, submission_id, university_id, error,
        )

    async def log_validation_error(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> ErrorLogEntry:
        return await self.log_error(ErrorLevel.WARN, ErrorCategory.VALIDATION, message, context)

    async def log_system_error(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        level: ErrorLevel = ErrorLevel.ERROR,
    ) -> ErrorLogEntry:
        return await self.log_error(level, ErrorCategory.SYSTEM, message, context, error=error)

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_errors(
        self,
        filters: Optional[ErrorLogFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ErrorLogEntry], int]:
        async with self._session_factory() as session:
            return await ErrorLogRepository(session).list_filtered(filters, limit, offset)

    async def recent(self, limit: int = 20) -> List[ErrorLogEntry]:
        async with self._session_factory() as session:
            return await ErrorLogRepository(session).recent(limit)

    async def get_error(self, error_id: UUID) -> ErrorLogEntry:
        async with self._session_factory() as session:
            entry = await ErrorLogRepository(session).get_by_id(error_id)
        if entry is None:
            raise NotFoundError(
                f"Error log entry {error_id} not found",
                operation="get_error",
                table="error_logs",
            )
        return entry

    async def error_metrics(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals by level and category plus the most frequent messages."""
        since = since or utc_now() - timedelta(hours=24)
        async with self._session_factory() as session:
            repo = ErrorLogRepository(session)
            by_level = await repo.count_by(ErrorLogEntry.level, since)
            by_category = await repo.count_by(ErrorLogEntry.category, since)
            top_messages = await repo.top_messages(since)
            unresolved = await repo.count_unresolved(since)

        return {
            "since": since,
            "total": sum(by_level.values()),
            "unresolved": unresolved,
            "by_level": {level.value: by_level.get(level.value, 0) for level in ErrorLevel},
            "by_category": {
                category.value: by_category.get(category.value, 0) for category in ErrorCategory
            },
            "top_messages": top_messages,
        }

    async def error_trends(
        self,
        hours: int = 24,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Entries per hour and level, oldest first, zero-filled."""
        current_hour = (now or utc_now()).replace(minute=0, second=0, microsecond=0)
        first_hour = current_hour - timedelta(hours=hours - 1)
        async with self._session_factory() as session:
            rows = await ErrorLogRepository(session).occurrences(first_hour)

        buckets = {
            first_hour + timedelta(hours=offset): {level.value: 0 for level in ErrorLevel}
            for offset in range(hours)
        }
        for occurred_at, level in rows:
            bucket = buckets.get(occurred_at.replace(minute=0, second=0, microsecond=0))
            if bucket is not None:
                bucket[level] += 1

        return [
            {"hour": hour, "total": sum(by_level.values()), "by_level": by_level}
            for hour, by_level in buckets.items()
        ]

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(
        self,
        error_id: UUID,
        resolved_by: str,
        resolution: Optional[str] = None,
    ) -> ErrorLogEntry:
        async with self._session_factory() as session, session.begin():
            entry = await ErrorLogRepository(session).resolve(
                error_id, resolved_by, resolution, utc_now()
            )
        if entry is None:
            raise NotFoundError(
                f"Error log entry {error_id} not found",
                operation="resolve",
                table="error_logs",
            )
        logger.info(f"[ERRORLOG] Resolved {error_id} by {resolved_by}")
        return entry

    async def bulk_resolve(
        self,
        filters: Optional[ErrorLogFilter],
        resolved_by: str,
        resolution: Optional[str] = None,
    ) -> int:
        async with self._session_factory() as session, session.begin():
            count = await ErrorLogRepository(session).bulk_resolve(
                filters, resolved_by, resolution, utc_now()
            )
        logger.info(f"[ERRORLOG] Bulk resolved {count} entries by {resolved_by}")
        return count

    async def cleanup_resolved(self, days_to_keep: int = 90) -> int:
        """Purge resolved entries older than the retention window."""
        cutoff = utc_now() - timedelta(days=days_to_keep)
        async with self._session_factory() as session, session.begin():
            count = await ErrorLogRepository(session).purge_resolved_before(cutoff)
        if count:
            logger.info(f"[ERRORLOG] Purged {count} resolved entries older than {days_to_keep} days")
        return count
