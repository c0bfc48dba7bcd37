"""
services/booking/router.py
Customer-facing booking endpoints.
Customers see and act on their own bookings; admins see all of them.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from services.booking.dependencies import get_booking_repository, get_reschedule_workflow
from services.booking.repository import BookingRepository
from services.reschedule.workflow import RescheduleRequestWorkflow
from shared.middleware.auth import is_admin, require_customer
from shared.models.models import Booking, BookingStatus, User
from shared.schemas.results import Ack
from shared.schemas.schemas import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
    PaginatedResponse,
    RescheduleRequestCreate,
    RescheduleRequestResponse,
    StatusHistoryResponse,
)
from shared.utils.responses import raise_for_failure

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_booking_or_404(
    booking_id: UUID, repo: BookingRepository, current_user: User
) -> Booking:
    booking = await repo.get(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    if not is_admin(current_user) and booking.customer_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized")
    return booking


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreateRequest,
    current_user: User = Depends(require_customer),
    repo: BookingRepository = Depends(get_booking_repository),
):
    """
    Book a free time slot. The slot is held from this moment and the
    booking starts in `pending` until staff confirm it.
    """
    customer_id = current_user.id
    if is_admin(current_user) and payload.customer_id:
        customer_id = payload.customer_id

    booking = raise_for_failure(
        await repo.create(
            customer_id=customer_id,
            slot_id=payload.slot_id,
            total_price=payload.total_price,
            duration_minutes=payload.duration_minutes,
            special_instructions=payload.special_instructions,
            created_by=current_user.id,
        )
    )
    return BookingResponse.model_validate(booking)


# ── Read ──────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    customer_id: Optional[UUID] = Query(None, description="Admin only"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_customer),
    repo: BookingRepository = Depends(get_booking_repository),
):
    """Customers list their own bookings; admins may list anyone's."""
    booking_status = None
    if status_filter:
        try:
            booking_status = BookingStatus(status_filter)
        except ValueError:
            valid = [s.value for s in BookingStatus]
            raise HTTPException(status_code=400, detail=f"Invalid status. Valid: {valid}")

    owner = customer_id if is_admin(current_user) else current_user.id
    items, total = await repo.list_bookings(
        customer_id=owner, status=booking_status, page=page, page_size=page_size
    )
    return PaginatedResponse(
        items=[BookingResponse.model_validate(b) for b in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(require_customer),
    repo: BookingRepository = Depends(get_booking_repository),
):
    return await _get_booking_or_404(booking_id, repo, current_user)


@router.get("/{booking_id}/history", response_model=list[StatusHistoryResponse])
async def get_booking_history(
    booking_id: UUID,
    current_user: User = Depends(require_customer),
    repo: BookingRepository = Depends(get_booking_repository),
):
    """Every status change of the booking, oldest first."""
    await _get_booking_or_404(booking_id, repo, current_user)
    return await repo.history(booking_id) or []


# ── Cancel ────────────────────────────────────────────────────

@router.delete("/{booking_id}", response_model=Ack)
async def cancel_booking(
    booking_id: UUID,
    payload: Optional[BookingCancelRequest] = None,
    current_user: User = Depends(require_customer),
    repo: BookingRepository = Depends(get_booking_repository),
):
    """Cancel the booking and free its slot. The booking row is kept."""
    await _get_booking_or_404(booking_id, repo, current_user)
    return raise_for_failure(
        await repo.delete(
            booking_id,
            reason=payload.reason if payload else None,
            changed_by=current_user.id,
        )
    )


# ── Reschedule Requests ───────────────────────────────────────

@router.post(
    "/{booking_id}/reschedule-requests",
    response_model=RescheduleRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_reschedule_request(
    booking_id: UUID,
    payload: RescheduleRequestCreate,
    current_user: User = Depends(require_customer),
    workflow: RescheduleRequestWorkflow = Depends(get_reschedule_workflow),
):
    """Ask staff to move a booking. At most one request may be pending per booking."""
    request = raise_for_failure(
        await workflow.submit_request(
            booking_id,
            payload.requested_date,
            payload.requested_time,
            reason=payload.reason,
            customer_notes=payload.customer_notes,
            requested_by=None if is_admin(current_user) else current_user.id,
        )
    )
    return RescheduleRequestResponse.model_validate(request)


@router.get("/{booking_id}/reschedule-requests", response_model=list[RescheduleRequestResponse])
async def list_booking_reschedule_requests(
    booking_id: UUID,
    current_user: User = Depends(require_customer),
    repo: BookingRepository = Depends(get_booking_repository),
    workflow: RescheduleRequestWorkflow = Depends(get_reschedule_workflow),
):
    await _get_booking_or_404(booking_id, repo, current_user)
    return await workflow.list_requests(booking_id=booking_id)
