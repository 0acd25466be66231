"""
Submission API Routes

Enqueue, confirm, retry and re-prioritise submissions, and inspect the
delivery queue.
"""

import logging
from typing import Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from stellarrec.api.dependencies import (
    OrchestratorDep,
    SubmissionRepoDep,
    verify_admin_api_key,
)
from stellarrec.config.settings import get_settings
from stellarrec.domain.submission import (
    BulkEnqueueRequest,
    ConfirmSubmissionRequest,
    EnqueueSubmissionRequest,
    RetryFailedFilter,
    RetryFailedResult,
    SetPriorityRequest,
)
from stellarrec.infrastructure.db.models.submission import SubmissionRead


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/submissions",
    tags=["Submissions"],
    dependencies=[Depends(verify_admin_api_key)],
)


@router.post("", response_model=SubmissionRead, status_code=status.HTTP_201_CREATED)
async def enqueue_submission(
    request: EnqueueSubmissionRequest,
    orchestrator: OrchestratorDep,
):
    """Put a submission on the delivery queue (idempotent per application and university)."""
    return await orchestrator.queue.enqueue(request)


@router.post("/bulk", response_model=List[SubmissionRead], status_code=status.HTTP_201_CREATED)
async def enqueue_submissions_bulk(
    request: BulkEnqueueRequest,
    orchestrator: OrchestratorDep,
):
    """Enqueue up to 500 submissions in one transaction."""
    return await orchestrator.queue.enqueue_bulk(request.submissions)


@router.get("/queue")
async def get_queue_status(orchestrator: OrchestratorDep) -> Dict[str, int]:
    """Queue depth: pending, due, scheduled, processing and failed counts."""
    return await orchestrator.queue.queue_status()


@router.get("/queue/items", response_model=List[SubmissionRead])
async def list_queue_items(
    repo: SubmissionRepoDep,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Pending and in-flight submissions in dispatch order."""
    return await repo.list_queue(limit, offset)


@router.delete("/queue")
async def clear_queue(orchestrator: OrchestratorDep) -> Dict[str, int]:
    """Cancel every pending submission. In-flight deliveries are not touched."""
    return {"cancelled": await orchestrator.queue.clear_queue()}


@router.delete("/queue/{submission_id}", response_model=SubmissionRead)
async def remove_from_queue(
    submission_id: UUID,
    orchestrator: OrchestratorDep,
):
    """Take one pending submission off the queue."""
    return await orchestrator.queue.remove_from_queue(submission_id)


@router.post("/retry-failed", response_model=RetryFailedResult)
async def retry_failed_submissions(
    filters: RetryFailedFilter,
    orchestrator: OrchestratorDep,
):
    """Bulk retry of failed submissions (at most 100 per call)."""
    return await orchestrator.retry_failed(filters)


@router.post("/{submission_id}/confirm", response_model=SubmissionRead)
async def confirm_submission(
    submission_id: UUID,
    request: ConfirmSubmissionRequest,
    orchestrator: OrchestratorDep,
):
    """Record a university's confirmation. Confirming twice is a no-op."""
    return await orchestrator.processor.confirm(
        submission_id, request.external_reference, request.confirmed_at
    )


@router.post("/{submission_id}/retry", response_model=SubmissionRead)
async def retry_submission(
    submission_id: UUID,
    orchestrator: OrchestratorDep,
):
    """Operator retry of one failed submission."""
    return await orchestrator.processor.retry_submission(
        submission_id, get_settings().operator_retry_priority
    )


@router.put("/{submission_id}/priority", response_model=SubmissionRead)
async def set_submission_priority(
    submission_id: UUID,
    request: SetPriorityRequest,
    orchestrator: OrchestratorDep,
):
    """Re-prioritise a queued submission (1 = most urgent)."""
    return await orchestrator.queue.set_priority(submission_id, request.priority)
