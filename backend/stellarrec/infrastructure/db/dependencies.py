"""
Dependency Injection Providers for StellarRec Submission Monitoring

Provides FastAPI dependencies for database sessions and repositories.
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stellarrec.infrastructure.db.database import get_session
from stellarrec.infrastructure.db.repositories import (
    ErrorLogRepository,
    SubmissionRepository,
)


# Type alias for session dependency
SessionDep = Annotated[AsyncSession, Depends(get_session)]


async def get_submission_repository(
    session: SessionDep,
) -> AsyncGenerator[SubmissionRepository, None]:
    """
    Dependency provider for SubmissionRepository.

    Usage:
        @router.get("/queue/items")
        async def list_items(
            repo: SubmissionRepository = Depends(get_submission_repository)
        ):
            ...
    """
    yield SubmissionRepository(session)


async def get_error_log_repository(
    session: SessionDep,
) -> AsyncGenerator[ErrorLogRepository, None]:
    """Dependency provider for ErrorLogRepository."""
    yield ErrorLogRepository(session)


# Type aliases for repository dependencies
SubmissionRepoDep = Annotated[
    SubmissionRepository,
    Depends(get_submission_repository)
]
ErrorLogRepoDep = Annotated[
    ErrorLogRepository,
    Depends(get_error_log_repository)
]
