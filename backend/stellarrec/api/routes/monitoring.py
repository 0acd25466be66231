"""
Monitoring API Routes

Operator dashboard, health snapshot, health report and a Server-Sent
Events stream of push notifications.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sse_starlette.sse import EventSourceResponse

from stellarrec.api.dependencies import OrchestratorDep, verify_admin_api_key
from stellarrec.domain.health import HealthSnapshot


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/monitoring",
    tags=["Monitoring"],
    dependencies=[Depends(verify_admin_api_key)],
)


@router.get("/dashboard")
async def get_dashboard(orchestrator: OrchestratorDep) -> Dict[str, Any]:
    """
    Aggregated system view.

    Sections that fail to load are served from their last good value and
    listed under ``stale_sections``.
    """
    return await orchestrator.dashboard()


@router.get("/health", response_model=HealthSnapshot)
async def get_health(
    orchestrator: OrchestratorDep,
    window_minutes: Optional[int] = Query(None, ge=1, le=7 * 24 * 60),
):
    """Rolling health metrics over the trailing window."""
    return await orchestrator.analytics.health_snapshot(window_minutes)


@router.get("/report")
async def get_health_report(
    orchestrator: OrchestratorDep,
    window_minutes: Optional[int] = Query(None, ge=1, le=7 * 24 * 60),
) -> Dict[str, Any]:
    """Health summary with recommendations."""
    return await orchestrator.health_report(window_minutes)


@router.get("/metrics/daily")
async def get_daily_metrics(
    orchestrator: OrchestratorDep,
    days: int = Query(30, ge=1, le=365),
) -> List[Dict[str, Any]]:
    """Finished deliveries per day with success rate."""
    return await orchestrator.analytics.daily_metrics(days)


@router.get("/metrics/weekly")
async def get_weekly_metrics(
    orchestrator: OrchestratorDep,
    weeks: int = Query(12, ge=1, le=104),
) -> List[Dict[str, Any]]:
    return await orchestrator.analytics.weekly_metrics(weeks)


@router.get("/universities/{university_id}")
async def get_university_report(
    university_id: UUID,
    orchestrator: OrchestratorDep,
    days: int = Query(30, ge=1, le=365),
) -> Dict[str, Any]:
    """Delivery report for one university: outcomes, failure reasons and daily trend."""
    return await orchestrator.analytics.university_report(university_id, days)


@router.get("/stream/{topic}")
async def stream_notifications(
    topic: str,
    request: Request,
    orchestrator: OrchestratorDep,
):
    """Stream push notifications published to ``topic`` via Server-Sent Events."""

    async def event_generator():
        async for payload in orchestrator.hub.stream(topic):
            if await request.is_disconnected():
                break
            yield {
                "event": "notification",
                "data": json.dumps(payload, default=str),
            }

    logger.info(f"[MONITOR] Operator subscribed to '{topic}'")
    return EventSourceResponse(event_generator())
