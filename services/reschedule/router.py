"""
services/reschedule/router.py
Admin review of customer reschedule requests.
Approval moves the booking to the new slot atomically; decline leaves
the booking untouched.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from services.booking.dependencies import get_reschedule_workflow
from services.reschedule.workflow import RescheduleRequestWorkflow
from shared.middleware.auth import require_admin
from shared.models.models import RescheduleRequest, RescheduleRequestStatus, User
from shared.schemas.results import RescheduleSuccess
from shared.schemas.schemas import (
    RescheduleApproveRequest,
    RescheduleDeclineRequest,
    RescheduleRequestResponse,
    RescheduleRespondRequest,
)
from shared.utils.responses import raise_for_failure

router = APIRouter(prefix="/admin/reschedule-requests", tags=["Reschedule Requests"])


def _to_response(result):
    result = raise_for_failure(result)
    if isinstance(result, RescheduleRequest):
        return RescheduleRequestResponse.model_validate(result)
    return result


@router.get("", response_model=list[RescheduleRequestResponse])
async def list_reschedule_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(require_admin),
    workflow: RescheduleRequestWorkflow = Depends(get_reschedule_workflow),
):
    request_status = None
    if status_filter:
        try:
            request_status = RescheduleRequestStatus(status_filter)
        except ValueError:
            valid = [s.value for s in RescheduleRequestStatus]
            raise HTTPException(status_code=400, detail=f"Invalid status. Valid: {valid}")
    return await workflow.list_requests(status=request_status)


@router.get("/{request_id}", response_model=RescheduleRequestResponse)
async def get_reschedule_request(
    request_id: UUID,
    current_user: User = Depends(require_admin),
    workflow: RescheduleRequestWorkflow = Depends(get_reschedule_workflow),
):
    request = await workflow.get_request(request_id)
    if not request:
        raise HTTPException(status_code=404, detail="Reschedule request not found")
    return request


@router.post("/{request_id}/approve", response_model=RescheduleSuccess)
async def approve_reschedule_request(
    request_id: UUID,
    payload: Optional[RescheduleApproveRequest] = None,
    current_user: User = Depends(require_admin),
    workflow: RescheduleRequestWorkflow = Depends(get_reschedule_workflow),
):
    """
    Move the booking to the requested slot (or to `new_date`/`new_time`
    if given). 409 if the slot has been taken meanwhile.
    """
    payload = payload or RescheduleApproveRequest()
    return raise_for_failure(
        await workflow.approve(
            request_id,
            new_date=payload.new_date,
            new_time=payload.new_time,
            admin_response=payload.admin_response,
            changed_by=current_user.id,
        )
    )


@router.post("/{request_id}/decline", response_model=RescheduleRequestResponse)
async def decline_reschedule_request(
    request_id: UUID,
    payload: Optional[RescheduleDeclineRequest] = None,
    current_user: User = Depends(require_admin),
    workflow: RescheduleRequestWorkflow = Depends(get_reschedule_workflow),
):
    return _to_response(
        await workflow.decline(
            request_id,
            reason=payload.reason if payload else None,
            changed_by=current_user.id,
        )
    )


@router.post("/{request_id}/respond", response_model=RescheduleSuccess | RescheduleRequestResponse)
async def respond_to_reschedule_request(
    request_id: UUID,
    payload: RescheduleRespondRequest,
    current_user: User = Depends(require_admin),
    workflow: RescheduleRequestWorkflow = Depends(get_reschedule_workflow),
):
    """`{"decision": {"action": "approve", ...}}` or `{"decision": {"action": "decline", ...}}`."""
    return _to_response(
        await workflow.respond(request_id, payload.decision, changed_by=current_user.id)
    )
