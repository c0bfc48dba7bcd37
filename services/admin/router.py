"""
services/admin/router.py
Admin-only endpoints: booking status and payment changes, and the
time-slot calendar (single, bulk, preview, delete).

Status changes go through BookingRepository so the state machine,
slot bookkeeping and history are applied the same way as everywhere
else.
"""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.dependencies import get_booking_repository
from services.booking.repository import BookingRepository
from services.booking.slots import TimeRange, TimeSlotRegistry, add_minutes, generate_dates, preview
from shared.middleware.auth import require_admin
from shared.models.models import TimeSlot, User
from shared.schemas.results import Ack
from shared.schemas.schemas import (
    BookingStatusUpdateRequest,
    BulkSlotRequest,
    BulkSlotResponse,
    MessageResponse,
    PaymentStatusUpdateRequest,
    SlotPreviewResponse,
    TimeSlotCreateRequest,
    TimeSlotResponse,
)
from shared.utils.responses import raise_for_failure

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Booking Status ─────────────────────────────────────────────────────────────

@router.patch("/bookings/{booking_id}/status", response_model=Ack)
async def update_booking_status(
    booking_id: UUID,
    payload: BookingStatusUpdateRequest,
    current_user: User = Depends(require_admin),
    repo: BookingRepository = Depends(get_booking_repository),
):
    """
    Move a booking to a new status. Illegal moves are refused with 409;
    risky but legal moves succeed and carry a `warning`.
    """
    return raise_for_failure(
        await repo.transition_status(
            booking_id,
            payload.status,
            changed_by=current_user.id,
            reason=payload.reason,
            notes=payload.notes,
        )
    )


@router.patch("/bookings/{booking_id}/payment-status", response_model=Ack)
async def update_payment_status(
    booking_id: UUID,
    payload: PaymentStatusUpdateRequest,
    current_user: User = Depends(require_admin),
    repo: BookingRepository = Depends(get_booking_repository),
):
    return raise_for_failure(await repo.update_payment_status(booking_id, payload.payment_status))


# ── Time Slots ─────────────────────────────────────────────────────────────────

@router.get("/time-slots", response_model=list[TimeSlotResponse])
async def list_time_slots(
    date_from: date = Query(...),
    date_to: date = Query(...),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """All slots in a range, booked or not, with their booking references."""
    if date_to < date_from:
        raise HTTPException(status_code=422, detail="date_to must be on or after date_from")
    return await TimeSlotRegistry(db).list_for_range(date_from, date_to)


@router.post("/time-slots", response_model=TimeSlotResponse, status_code=status.HTTP_201_CREATED)
async def create_time_slot(
    payload: TimeSlotCreateRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    end_time = payload.end_time
    if end_time is None:
        try:
            end_time = add_minutes(payload.start_time, payload.duration_minutes)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

    existing = await db.scalar(
        select(TimeSlot.id).where(
            TimeSlot.slot_date == payload.slot_date,
            TimeSlot.start_time == payload.start_time,
        )
    )
    if existing:
        raise HTTPException(status_code=409, detail="A slot already starts at that date and time")

    return await TimeSlotRegistry(db).create(
        payload.slot_date,
        payload.start_time,
        end_time,
        created_by=current_user.id,
        notes=payload.notes,
    )


def _schedule(payload: BulkSlotRequest) -> tuple[list[date], list[TimeRange]]:
    dates = generate_dates(
        payload.start_date, payload.end_date, payload.days_of_week, payload.exclude_dates
    )
    ranges = [TimeRange(r.start_time, r.duration_minutes) for r in payload.time_ranges]
    return dates, ranges


@router.post("/time-slots/preview", response_model=SlotPreviewResponse)
async def preview_time_slots(
    payload: BulkSlotRequest,
    current_user: User = Depends(require_admin),
):
    """What `/time-slots/bulk` would create for the same body. Writes nothing."""
    dates, ranges = _schedule(payload)
    return preview(dates, ranges)


@router.post("/time-slots/bulk", response_model=BulkSlotResponse, status_code=status.HTTP_201_CREATED)
async def bulk_create_time_slots(
    payload: BulkSlotRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Create one slot per (matching date, time range). Slots that already
    exist are skipped, so the same schedule can be posted twice.
    """
    dates, ranges = _schedule(payload)
    if not dates:
        raise HTTPException(status_code=422, detail="No dates match the selected days of week")

    created = await TimeSlotRegistry(db).bulk_create(dates, ranges, created_by=current_user.id)
    return BulkSlotResponse(
        created=len(created),
        skipped=len(dates) * len(ranges) - len(created),
        slots=[TimeSlotResponse.model_validate(s) for s in created],
    )


@router.delete("/time-slots/{slot_id}", response_model=MessageResponse)
async def delete_time_slot(
    slot_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Only free slots can be deleted; cancel or move the booking first."""
    registry = TimeSlotRegistry(db)
    if not await registry.get(slot_id):
        raise HTTPException(status_code=404, detail="Time slot not found")
    if not await registry.delete(slot_id):
        raise HTTPException(status_code=409, detail="Cannot delete a booked time slot")
    return MessageResponse(message="Time slot deleted")
