"""
services/booking/slots.py
TimeSlotRegistry: reads and writes time_slots rows.

Every method that writes runs inside the caller's transaction (see
config.database.serialized_transaction). Availability is never trusted
from an earlier read: `lock()` re-reads under FOR UPDATE and `occupy()`
is a compare-and-swap on is_available, so a lost race shows up as
"not occupied" rather than as a double booking.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import SlotBookingStatus, TimeSlot, utcnow

logger = logging.getLogger(__name__)

MIN_SLOT_MINUTES = 30
MAX_SLOT_MINUTES = 480


@dataclass(frozen=True)
class TimeRange:
    start_time: time
    duration_minutes: int

    @property
    def end_time(self) -> time:
        return add_minutes(self.start_time, self.duration_minutes)


def add_minutes(start: time, minutes: int) -> time:
    """Clock arithmetic on a time of day. Raises ValueError past midnight."""
    moment = datetime.combine(date.min, start) + timedelta(minutes=minutes)
    if moment.date() != date.min:
        raise ValueError(f"{start.isoformat()} + {minutes}min runs past midnight")
    return moment.time()


def minutes_between(start: time, end: time) -> int:
    delta = datetime.combine(date.min, end) - datetime.combine(date.min, start)
    return int(delta.total_seconds() // 60)


def generate_dates(
    start_date: date,
    end_date: date,
    days_of_week: Iterable[int],
    exclude_dates: Iterable[date] = (),
) -> list[date]:
    """
    Every date in [start_date, end_date] whose weekday is listed.
    Weekdays use 0=Sunday … 6=Saturday.
    """
    wanted = set(days_of_week)
    excluded = set(exclude_dates)
    dates = []
    current = start_date
    while current <= end_date:
        sunday_based = (current.weekday() + 1) % 7
        if sunday_based in wanted and current not in excluded:
            dates.append(current)
        current += timedelta(days=1)
    return dates


def preview(dates: Sequence[date], time_ranges: Sequence[TimeRange]) -> dict:
    """Summary of what bulk_create would produce, grouped by month."""
    by_month: dict[str, list[str]] = {}
    for d in dates:
        by_month.setdefault(d.strftime("%B %Y"), []).append(d.isoformat())
    return {
        "total_slots": len(dates) * len(time_ranges),
        "total_dates": len(dates),
        "dates": [d.isoformat() for d in dates],
        "dates_by_month": by_month,
        "slots_per_day": len(time_ranges),
        "preview_slots": [
            {
                "start_time": r.start_time.strftime("%H:%M"),
                "end_time": r.end_time.strftime("%H:%M"),
                "duration_minutes": r.duration_minutes,
            }
            for r in time_ranges
        ],
    }


class TimeSlotRegistry:
    """Slot rows for one unit of work (bound to its session)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, slot_id: uuid.UUID) -> Optional[TimeSlot]:
        return await self.db.get(TimeSlot, slot_id)

    async def lock(self, slot_id: uuid.UUID, only_available: bool = False) -> Optional[TimeSlot]:
        """Re-read a slot holding its row lock until the transaction ends."""
        query = select(TimeSlot).where(TimeSlot.id == slot_id)
        if only_available:
            query = query.where(TimeSlot.is_available.is_(True))
        result = await self.db.execute(
            query.with_for_update().execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_available(self, slot_date: date, start_time: time) -> Optional[TimeSlot]:
        """Lock the free slot starting at (slot_date, start_time), if any."""
        result = await self.db.execute(
            select(TimeSlot)
            .where(
                TimeSlot.slot_date == slot_date,
                TimeSlot.start_time == start_time,
                TimeSlot.is_available.is_(True),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_date(self, slot_date: date) -> list[TimeSlot]:
        result = await self.db.execute(
            select(TimeSlot).where(TimeSlot.slot_date == slot_date).order_by(TimeSlot.start_time)
        )
        return list(result.scalars().all())

    async def list_for_range(self, date_from: date, date_to: date) -> list[TimeSlot]:
        result = await self.db.execute(
            select(TimeSlot)
            .where(TimeSlot.slot_date >= date_from, TimeSlot.slot_date <= date_to)
            .order_by(TimeSlot.slot_date, TimeSlot.start_time)
        )
        return list(result.scalars().all())

    # ── Writes ────────────────────────────────────────────────

    async def occupy(
        self,
        slot_id: uuid.UUID,
        booking_reference: str,
        mirrored_status: SlotBookingStatus = SlotBookingStatus.CONFIRMED,
    ) -> bool:
        """
        Attach a booking to a free slot. Returns False if the slot was not
        free at write time (someone else got there first).
        """
        result = await self.db.execute(
            update(TimeSlot)
            .where(TimeSlot.id == slot_id, TimeSlot.is_available.is_(True))
            .values(
                is_available=False,
                booking_reference=booking_reference,
                booking_status=mirrored_status,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        occupied = result.rowcount == 1
        if not occupied:
            logger.info(f"Slot {slot_id} could not be occupied by {booking_reference}: already taken")
        return occupied

    async def release(self, slot_id: uuid.UUID) -> None:
        """Free a slot and clear its booking link."""
        await self.db.execute(
            update(TimeSlot)
            .where(TimeSlot.id == slot_id)
            .values(
                is_available=True,
                booking_reference=None,
                booking_status=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def mirror_status(self, slot_id: uuid.UUID, status: SlotBookingStatus) -> None:
        """Copy the booking's coarse status onto the occupied slot."""
        await self.db.execute(
            update(TimeSlot)
            .where(TimeSlot.id == slot_id, TimeSlot.is_available.is_(False))
            .values(booking_status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def create(
        self,
        slot_date: date,
        start_time: time,
        end_time: time,
        created_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> TimeSlot:
        slot = TimeSlot(
            slot_date=slot_date,
            start_time=start_time,
            end_time=end_time,
            is_available=True,
            created_by=created_by,
            notes=notes,
        )
        self.db.add(slot)
        await self.db.flush()
        return slot

    async def bulk_create(
        self,
        dates: Sequence[date],
        time_ranges: Sequence[TimeRange],
        created_by: Optional[uuid.UUID] = None,
    ) -> list[TimeSlot]:
        """
        Create one free slot per (date, time range). Pairs that already
        exist are skipped, so re-running a schedule is harmless.
        """
        if not dates or not time_ranges:
            return []

        existing = await self.db.execute(
            select(TimeSlot.slot_date, TimeSlot.start_time).where(
                TimeSlot.slot_date.in_(list(dates))
            )
        )
        taken = {(row.slot_date, row.start_time) for row in existing}

        created = []
        for slot_date in dates:
            for time_range in time_ranges:
                if (slot_date, time_range.start_time) in taken:
                    continue
                slot = TimeSlot(
                    slot_date=slot_date,
                    start_time=time_range.start_time,
                    end_time=time_range.end_time,
                    is_available=True,
                    created_by=created_by,
                )
                self.db.add(slot)
                created.append(slot)
                taken.add((slot_date, time_range.start_time))

        await self.db.flush()
        logger.info(
            f"Bulk-created {len(created)} slots across {len(dates)} dates "
            f"({len(dates) * len(time_ranges) - len(created)} already existed)"
        )
        return created

    async def delete(self, slot_id: uuid.UUID) -> bool:
        """Delete a slot only while it is free. Returns False otherwise."""
        result = await self.db.execute(
            delete(TimeSlot)
            .where(TimeSlot.id == slot_id, TimeSlot.is_available.is_(True))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
