"""
Custom Exceptions for StellarRec Submission Monitoring

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class StellarRecError(Exception):
    """Base exception for all StellarRec errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ValidationError(StellarRecError):
    """Raised when operator input validation fails."""
    pass


class DatabaseError(StellarRecError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    pass


class InvalidTransitionError(StellarRecError):
    """Raised when a submission status change would break monotonicity."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
    ):
        details = {}
        if current_status:
            details["current_status"] = current_status
        if requested_status:
            details["requested_status"] = requested_status
        super().__init__(message, details)


class ChannelError(StellarRecError):
    """
    Raised by channel adapters to report a classified delivery failure.

    ``kind`` is a FailureKind value (transient or permanent).
    """

    def __init__(
        self,
        message: str,
        kind: str,
        channel: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {"failure_kind": kind}
        if channel:
            details["channel"] = channel
        super().__init__(message, details, original_error)
        self.kind = kind


class NotificationActionError(StellarRecError):
    """Raised when a notification action (email/webhook/push) fails."""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if action:
            details["action"] = action
        super().__init__(message, details, original_error)


class ConfigurationError(StellarRecError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
