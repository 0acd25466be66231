"""
Database Infrastructure Package for StellarRec Submission Monitoring

Exports database utilities, models, and repositories.
"""

from stellarrec.infrastructure.db.database import (
    DatabaseManager,
    create_session_factory,
    get_db_manager,
    get_session,
    init_db,
    close_db,
    normalize_database_url,
)

from stellarrec.infrastructure.db.dependencies import (
    SessionDep,
    get_submission_repository,
    get_error_log_repository,
    SubmissionRepoDep,
    ErrorLogRepoDep,
)


__all__ = [
    # Database management
    "DatabaseManager",
    "create_session_factory",
    "get_db_manager",
    "get_session",
    "init_db",
    "close_db",
    "normalize_database_url",
    # Dependencies
    "SessionDep",
    "get_submission_repository",
    "get_error_log_repository",
    "SubmissionRepoDep",
    "ErrorLogRepoDep",
]
