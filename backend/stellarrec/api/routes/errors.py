"""
Error Log API Routes

Filtered listing, metrics and resolution of error log entries.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from stellarrec.api.dependencies import ErrorLogRepoDep, OrchestratorDep, verify_admin_api_key
from stellarrec.infrastructure.db.models.base import to_naive_utc, utc_now
from stellarrec.infrastructure.db.models.error_log import (
    BulkResolveRequest,
    ErrorCategory,
    ErrorLevel,
    ErrorLogFilter,
    ErrorLogRead,
    ErrorResolveRequest,
)


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/errors",
    tags=["Errors"],
    dependencies=[Depends(verify_admin_api_key)],
)


@router.get("")
async def list_errors(
    repo: ErrorLogRepoDep,
    level: Optional[ErrorLevel] = None,
    category: Optional[ErrorCategory] = None,
    submission_id: Optional[UUID] = None,
    university_id: Optional[UUID] = None,
    resolved: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> Dict[str, Any]:
    """Newest-first page of error log entries plus the total match count."""
    filters = ErrorLogFilter(
        level=level,
        category=category,
        submission_id=submission_id,
        university_id=university_id,
        resolved=resolved,
        start_date=to_naive_utc(start_date) if start_date else None,
        end_date=to_naive_utc(end_date) if end_date else None,
    )
    entries, total = await repo.list_filtered(filters, limit, offset)
    return {
        "items": [ErrorLogRead.model_validate(entry, from_attributes=True) for entry in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/metrics")
async def get_error_metrics(
    orchestrator: OrchestratorDep,
    hours: int = Query(24, ge=1, le=24 * 90),
) -> Dict[str, Any]:
    """Totals by level and category plus the most frequent messages."""
    return await orchestrator.error_log.error_metrics(utc_now() - timedelta(hours=hours))


@router.get("/trends")
async def get_error_trends(
    orchestrator: OrchestratorDep,
    hours: int = Query(24, ge=1, le=24 * 7),
) -> List[Dict[str, Any]]:
    """Entries per hour and level."""
    return await orchestrator.error_log.error_trends(hours)


@router.post("/bulk-resolve")
async def bulk_resolve_errors(
    request: BulkResolveRequest,
    orchestrator: OrchestratorDep,
) -> Dict[str, int]:
    count = await orchestrator.error_log.bulk_resolve(
        request.filters, request.resolved_by, request.resolution
    )
    return {"resolved": count}


@router.delete("/resolved")
async def cleanup_resolved_errors(
    orchestrator: OrchestratorDep,
    days_to_keep: int = Query(90, ge=0),
) -> Dict[str, int]:
    """Purge resolved entries older than ``days_to_keep`` days."""
    count = await orchestrator.error_log.cleanup_resolved(days_to_keep)
    return {"deleted": count}


@router.get("/{error_id}", response_model=ErrorLogRead)
async def get_error(error_id: UUID, orchestrator: OrchestratorDep):
    return await orchestrator.error_log.get_error(error_id)


@router.post("/{error_id}/resolve", response_model=ErrorLogRead)
async def resolve_error(
    error_id: UUID,
    request: ErrorResolveRequest,
    orchestrator: OrchestratorDep,
):
    return await orchestrator.error_log.resolve(error_id, request.resolved_by, request.resolution)
