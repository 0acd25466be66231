"""
Notification API Routes

Rule CRUD, on-demand evaluation and event acknowledgement.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from stellarrec.api.dependencies import OrchestratorDep, verify_admin_api_key
from stellarrec.domain.notifications import (
    AlertRule,
    EventAcknowledgeRequest,
    NotificationRuleCreate,
    NotificationRuleUpdate,
    NotificationSeverity,
)
from stellarrec.infrastructure.db.models.notification import NotificationEventRead


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/notifications",
    tags=["Notifications"],
    dependencies=[Depends(verify_admin_api_key)],
)


# =============================================================================
# Rules
# =============================================================================

@router.get("/rules", response_model=List[AlertRule])
async def list_rules(orchestrator: OrchestratorDep):
    return await orchestrator.rule_engine.list_rules()


@router.post("/rules", response_model=AlertRule, status_code=status.HTTP_201_CREATED)
async def create_rule(request: NotificationRuleCreate, orchestrator: OrchestratorDep):
    """Create a rule; conditions are validated against the rule type."""
    return await orchestrator.rule_engine.create_rule(request)


@router.post("/rules/evaluate")
async def evaluate_rules(orchestrator: OrchestratorDep) -> Dict[str, Any]:
    """Evaluate all enabled rules now instead of waiting for the next tick."""
    events = await orchestrator.rule_engine.evaluate_all()
    return {
        "fired": len(events),
        "events": [
            NotificationEventRead.model_validate(event, from_attributes=True) for event in events
        ],
    }


@router.get("/rules/{rule_id}", response_model=AlertRule)
async def get_rule(rule_id: UUID, orchestrator: OrchestratorDep):
    return await orchestrator.rule_engine.get_rule(rule_id)


@router.put("/rules/{rule_id}", response_model=AlertRule)
async def update_rule(
    rule_id: UUID,
    request: NotificationRuleUpdate,
    orchestrator: OrchestratorDep,
):
    return await orchestrator.rule_engine.update_rule(rule_id, request)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: UUID, orchestrator: OrchestratorDep):
    await orchestrator.rule_engine.delete_rule(rule_id)


# =============================================================================
# Events
# =============================================================================

@router.get("/events", response_model=List[NotificationEventRead])
async def list_events(
    orchestrator: OrchestratorDep,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    severity: Optional[NotificationSeverity] = None,
    acknowledged: Optional[bool] = None,
):
    return await orchestrator.rule_engine.list_events(limit, offset, severity, acknowledged)


@router.post("/events/{event_id}/acknowledge", response_model=NotificationEventRead)
async def acknowledge_event(
    event_id: UUID,
    request: EventAcknowledgeRequest,
    orchestrator: OrchestratorDep,
):
    return await orchestrator.rule_engine.acknowledge_event(event_id, request.acknowledged_by)
