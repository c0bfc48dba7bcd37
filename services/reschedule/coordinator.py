"""
services/reschedule/coordinator.py
RescheduleCoordinator: move a booking from its current slot to another
one as a single unit of work.

Row locks are always taken in the same order so that two coordinators
(or a coordinator and a status change) wait on each other instead of
deadlocking:

    reschedule request → booking → target slot

The new slot is occupied before the old one is released. If anything
fails before commit, the request, the booking, both slots and the
history are left exactly as they were.
"""

import logging
import uuid
from datetime import date, time
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import serialized_transaction
from services.booking import state_machine
from services.booking.history import StatusHistoryLog
from services.booking.repository import lock_booking
from services.booking.slots import TimeSlotRegistry, add_minutes, minutes_between
from services.notification.dispatcher import dispatch_safely
from shared.models.models import (
    BookingStatus,
    RescheduleRequest,
    RescheduleRequestStatus,
    SlotBookingStatus,
    User,
)
from shared.schemas.results import CoordinatorResult, Failure, RescheduleSuccess
from shared.utils.exceptions import TransactionAborted, engine_errors

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_RESPONSE = "Reschedule request approved"
APPROVAL_HISTORY_REASON = "Reschedule request approved by admin"


async def lock_request(db: AsyncSession, request_id: uuid.UUID) -> Optional[RescheduleRequest]:
    result = await db.execute(
        select(RescheduleRequest)
        .where(RescheduleRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _fmt(d: date, t: time) -> str:
    return f"{d.isoformat()} {t.strftime('%H:%M')}"


class RescheduleCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier=None,
        history_factory: Callable[[AsyncSession], StatusHistoryLog] = StatusHistoryLog,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.history_factory = history_factory

    async def reschedule(
        self,
        request_id: uuid.UUID,
        new_date: Optional[date] = None,
        new_time: Optional[time] = None,
        admin_response: Optional[str] = None,
        changed_by: Optional[uuid.UUID] = None,
    ) -> CoordinatorResult:
        """
        Approve `request_id` and move its booking to (new_date, new_time),
        defaulting to the date/time the customer asked for.

        Returns RescheduleSuccess or a Failure (NotFound, InvalidState,
        SlotUnavailable, ValidationError). Raises ConcurrencyConflict when
        the store gives up on a lock, InternalError for anything else.
        """
        try:
            with engine_errors(f"Reschedule {request_id}"):
                async with serialized_transaction(self.session_factory) as db:
                    result, booking, old_status = await self._move(
                        db, request_id, new_date, new_time, admin_response, changed_by
                    )
                    customer = await db.get(User, booking.customer_id)
        except TransactionAborted as aborted:
            logger.info(f"Reschedule {request_id} refused: {aborted.failure.message}")
            return aborted.failure

        logger.info(
            f"Booking {booking.booking_reference} rescheduled "
            f"{_fmt(result.old_date, result.old_time)} → {_fmt(result.new_date, result.new_time)}"
        )
        await dispatch_safely(
            self.notifier, "notify", booking, customer, old_status, BookingStatus.RESCHEDULED
        )
        return result

    async def _move(self, db, request_id, new_date, new_time, admin_response, changed_by):
        # 1. request
        request = await lock_request(db, request_id)
        if request is None or request.status != RescheduleRequestStatus.PENDING:
            raise TransactionAborted(Failure.not_found("Reschedule request not found or already processed"))

        # 2. booking
        booking = await lock_booking(db, request.booking_id)
        if booking is None:
            raise TransactionAborted(Failure.not_found("Booking not found"))
        old_status = BookingStatus(booking.status)
        if state_machine.is_terminal(old_status):
            raise TransactionAborted(
                Failure.invalid_state(f"Cannot reschedule a booking that is {old_status.value}")
            )

        target_date = new_date or request.requested_date
        target_time = new_time or request.requested_time
        duration = minutes_between(booking.scheduled_start_time, booking.scheduled_end_time)
        try:
            target_end = add_minutes(target_time, duration)
        except ValueError as e:
            raise TransactionAborted(Failure.validation_error(str(e)))

        # 3. target slot
        slots = TimeSlotRegistry(db)
        new_slot = await slots.find_available(target_date, target_time)
        if new_slot is None:
            raise TransactionAborted(Failure.slot_unavailable())

        # 4.
        previous_slot_id = booking.time_slot_id
        old_date, old_time = booking.scheduled_date, booking.scheduled_start_time

        # 5. consume the request
        request.status = RescheduleRequestStatus.APPROVED
        request.admin_response = admin_response or DEFAULT_APPROVAL_RESPONSE

        # 6. move the booking
        booking.scheduled_date = target_date
        booking.scheduled_start_time = target_time
        booking.scheduled_end_time = target_end
        booking.status = BookingStatus.RESCHEDULED
        booking.time_slot_id = new_slot.id

        # 7. occupy new slot; the booking row is only flushed once the slot is ours
        if not await slots.occupy(new_slot.id, booking.booking_reference, SlotBookingStatus.CONFIRMED):
            raise TransactionAborted(Failure.slot_unavailable())
        await db.flush()

        # 8. release the old slot
        if previous_slot_id is not None:
            await slots.release(previous_slot_id)

        # 9. audit
        notes = f"Rescheduled from {_fmt(old_date, old_time)} to {_fmt(target_date, target_time)}"
        if request.reason:
            notes += f". Customer reason: {request.reason}"
        await self.history_factory(db).append(
            booking.id,
            old_status,
            BookingStatus.RESCHEDULED,
            changed_by=changed_by,
            reason=APPROVAL_HISTORY_REASON,
            notes=notes,
        )

        result = RescheduleSuccess(
            booking_id=booking.id,
            request_id=request.id,
            old_date=old_date,
            old_time=old_time,
            new_date=target_date,
            new_time=target_time,
            old_slot_id=previous_slot_id,
            new_slot_id=new_slot.id,
        )
        return result, booking, old_status
