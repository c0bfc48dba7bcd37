"""
services/availability/router.py
Public slot availability. Read-only: nothing here takes a lock, so the
answer can be stale by the time a booking is attempted. Booking and
rescheduling re-check availability under lock.
"""

from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.slots import TimeSlotRegistry
from shared.models.models import TimeSlot
from shared.schemas.schemas import (
    AvailabilityRangeResponse,
    DayAvailabilityResponse,
    TimeSlotResponse,
)

router = APIRouter(prefix="/time-slots", tags=["Availability"])

MAX_RANGE_DAYS = 62


def _day(slot_date: date, slots: list[TimeSlot]) -> DayAvailabilityResponse:
    return DayAvailabilityResponse(
        slot_date=slot_date,
        slots=[TimeSlotResponse.model_validate(s) for s in slots],
        total_slots=len(slots),
        available_slots=sum(1 for s in slots if s.is_available),
    )


def _hide_imminent(slot_date: date, slots: list[TimeSlot]) -> list[TimeSlot]:
    """Today's slots starting within the booking buffer are not offered."""
    if slot_date != date.today():
        return slots
    cutoff = (datetime.now() + timedelta(minutes=settings.BOOKING_BUFFER_MINUTES)).time()
    return [s for s in slots if s.start_time > cutoff]


@router.get("/availability", response_model=DayAvailabilityResponse | AvailabilityRangeResponse)
async def get_availability(
    on_date: Optional[date] = Query(None, alias="date"),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Slots for one day (`?date=`) or for a range (`?date_from=&date_to=`),
    each with its availability flag.
    """
    registry = TimeSlotRegistry(db)

    if on_date is not None:
        slots = await registry.list_for_date(on_date)
        return _day(on_date, _hide_imminent(on_date, slots))

    if date_from is None or date_to is None:
        raise HTTPException(status_code=422, detail="Provide date, or both date_from and date_to")
    if date_to < date_from:
        raise HTTPException(status_code=422, detail="date_to must be on or after date_from")
    if (date_to - date_from).days > MAX_RANGE_DAYS:
        raise HTTPException(status_code=422, detail=f"Range cannot exceed {MAX_RANGE_DAYS} days")

    by_day: dict[date, list[TimeSlot]] = {}
    for slot in await registry.list_for_range(date_from, date_to):
        by_day.setdefault(slot.slot_date, []).append(slot)

    return AvailabilityRangeResponse(
        date_from=date_from,
        date_to=date_to,
        days=[_day(d, _hide_imminent(d, s)) for d, s in sorted(by_day.items())],
    )
