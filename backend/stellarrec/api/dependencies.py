"""
API Dependencies

FastAPI dependency injection for operator authentication and the
monitoring services.

Security: every operator route requires the ``X-Admin-Key`` header, compared
in constant time against ``ADMIN_API_KEY``.
"""

import logging
import secrets
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from stellarrec.config.settings import get_settings
from stellarrec.infrastructure.db.database import get_db_manager
from stellarrec.infrastructure.services.monitoring_orchestrator import (
    MonitoringOrchestrator,
    build_monitoring_orchestrator,
)


logger = logging.getLogger(__name__)


# =============================================================================
# Admin API Key Authentication
# =============================================================================

async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for operator endpoints")
) -> bool:
    """
    Verify admin API key from header.

    The admin key should be set in environment variable ADMIN_API_KEY.
    """
    expected_key = get_settings().admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )

    # Use secrets.compare_digest for timing-attack resistance
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )

    return True


# =============================================================================
# Service Providers
# =============================================================================

@lru_cache
def get_monitoring_orchestrator() -> MonitoringOrchestrator:
    """
    Process-wide orchestrator wired to the shared database pool.

    Cached so the API and the lifespan-managed loops share one instance.
    Override in tests via ``app.dependency_overrides``.
    """
    return build_monitoring_orchestrator(get_settings(), get_db_manager().session_factory)


OrchestratorDep = Annotated[MonitoringOrchestrator, Depends(get_monitoring_orchestrator)]


# =============================================================================
# Re-export DB dependencies for a single import source
# Routers should import from api.dependencies, not db.dependencies directly.
# =============================================================================
from stellarrec.infrastructure.db.dependencies import (  # noqa: E402, F401
    SessionDep,
    SubmissionRepoDep,
    ErrorLogRepoDep,
)
