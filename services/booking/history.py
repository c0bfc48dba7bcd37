"""
services/booking/history.py
Append-only audit trail of booking status changes.
"""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import BookingStatus, BookingStatusHistory


def _status_value(status: Optional[BookingStatus | str]) -> Optional[str]:
    if status is None:
        return None
    return BookingStatus(status).value


class StatusHistoryLog:
    """Writes history rows inside the caller's transaction. No update/delete API."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        booking_id: uuid.UUID,
        from_status: Optional[BookingStatus | str],
        to_status: BookingStatus | str,
        changed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BookingStatusHistory:
        entry = BookingStatusHistory(
            booking_id=booking_id,
            from_status=_status_value(from_status),
            to_status=_status_value(to_status),
            changed_by=changed_by,
            reason=reason,
            notes=notes,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def for_booking(self, booking_id: uuid.UUID) -> list[BookingStatusHistory]:
        result = await self.db.execute(
            select(BookingStatusHistory)
            .where(BookingStatusHistory.booking_id == booking_id)
            .order_by(BookingStatusHistory.created_at, BookingStatusHistory.id)
        )
        return list(result.scalars().all())
