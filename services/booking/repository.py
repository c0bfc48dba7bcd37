"""
services/booking/repository.py
BookingRepository: create, read and move bookings through their lifecycle.

Every write opens its own serialized unit of work (see
config.database.serialized_transaction) and keeps the booking and its
time slot consistent inside it. Every status change goes through
services/booking/state_machine.py and leaves a history entry.
"""

import logging
import secrets
import string
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import serialized_transaction
from config.settings import settings
from services.booking import state_machine
from services.booking.history import StatusHistoryLog
from services.booking.slots import TimeSlotRegistry, add_minutes
from services.notification.dispatcher import dispatch_safely
from shared.models.models import (
    Booking,
    BookingStatus,
    BookingStatusHistory,
    PaymentStatus,
    SlotBookingStatus,
    User,
    utcnow,
)
from shared.schemas.results import Ack, Failure
from shared.utils.exceptions import TransactionAborted, engine_errors

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def generate_booking_reference(year: Optional[int] = None) -> str:
    """DT-2026-7KQ2M"""
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(5))
    return f"{settings.BOOKING_REFERENCE_PREFIX}-{year or date.today().year}-{suffix}"


async def lock_booking(db: AsyncSession, booking_id: uuid.UUID) -> Optional[Booking]:
    """Re-read a booking holding its row lock until the transaction ends."""
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class BookingRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], notifier=None):
        self.session_factory = session_factory
        self.notifier = notifier

    # ── Create ────────────────────────────────────────────────

    async def create(
        self,
        customer_id: uuid.UUID,
        slot_id: uuid.UUID,
        total_price: Decimal,
        duration_minutes: Optional[int] = None,
        special_instructions: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> Union[Booking, Failure]:
        """
        Book a free slot for a customer. The booking starts in `pending`
        and holds the slot from the moment it exists.
        """
        if total_price is None or Decimal(total_price) < 0:
            return Failure.validation_error("Total price must be zero or more")
        if duration_minutes is not None and duration_minutes <= 0:
            return Failure.validation_error("Duration must be positive")

        try:
            with engine_errors(f"Create booking for customer {customer_id}"):
                async with serialized_transaction(self.session_factory) as db:
                    customer = await db.get(User, customer_id)
                    if customer is None or not customer.is_active:
                        return Failure.not_found("Customer not found")

                    slots = TimeSlotRegistry(db)
                    slot = await slots.lock(slot_id)
                    if slot is None:
                        return Failure.not_found("Time slot not found")
                    if not slot.is_available:
                        return Failure.slot_unavailable()
                    if slot.slot_date < date.today():
                        return Failure.validation_error("Cannot book a time slot in the past")

                    if duration_minutes is None:
                        end_time = slot.end_time
                    else:
                        try:
                            end_time = add_minutes(slot.start_time, duration_minutes)
                        except ValueError as e:
                            return Failure.validation_error(str(e))

                    reference = await self._new_reference(db)
                    if not await slots.occupy(slot.id, reference, SlotBookingStatus.CONFIRMED):
                        return Failure.slot_unavailable()

                    booking = Booking(
                        booking_reference=reference,
                        customer_id=customer_id,
                        scheduled_date=slot.slot_date,
                        scheduled_start_time=slot.start_time,
                        scheduled_end_time=end_time,
                        time_slot_id=slot.id,
                        status=BookingStatus.PENDING,
                        total_price=Decimal(total_price),
                        payment_status=PaymentStatus.PENDING,
                        special_instructions=special_instructions,
                    )
                    db.add(booking)
                    await db.flush()

                    await StatusHistoryLog(db).append(
                        booking.id,
                        None,
                        BookingStatus.PENDING,
                        changed_by=created_by or customer_id,
                        reason="Booking created",
                    )
        except TransactionAborted as aborted:
            return aborted.failure

        logger.info(f"Booking {reference} created on slot {slot_id}")
        await dispatch_safely(self.notifier, "notify", booking, customer, None, BookingStatus.PENDING)
        return booking

    async def _new_reference(self, db: AsyncSession) -> str:
        for _ in range(10):
            reference = generate_booking_reference()
            taken = await db.scalar(
                select(func.count()).select_from(Booking).where(Booking.booking_reference == reference)
            )
            if not taken:
                return reference
        raise RuntimeError("Could not generate a unique booking reference")

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, booking_id: uuid.UUID) -> Optional[Booking]:
        async with self.session_factory() as db:
            return await db.get(Booking, booking_id)

    async def get_by_reference(self, reference: str) -> Optional[Booking]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Booking).where(Booking.booking_reference == reference)
            )
            return result.scalar_one_or_none()

    async def list_bookings(
        self,
        customer_id: Optional[uuid.UUID] = None,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Booking], int]:
        query = select(Booking)
        if customer_id is not None:
            query = query.where(Booking.customer_id == customer_id)
        if status is not None:
            query = query.where(Booking.status == BookingStatus(status))

        async with self.session_factory() as db:
            total = await db.scalar(select(func.count()).select_from(query.subquery()))
            result = await db.execute(
                query.order_by(Booking.scheduled_date.desc(), Booking.scheduled_start_time.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), total or 0

    async def history(self, booking_id: uuid.UUID) -> Optional[list[BookingStatusHistory]]:
        """Status history oldest first, or None if the booking does not exist."""
        async with self.session_factory() as db:
            if await db.get(Booking, booking_id) is None:
                return None
            return await StatusHistoryLog(db).for_booking(booking_id)

    # ── Status transitions ────────────────────────────────────

    async def transition_status(
        self,
        booking_id: uuid.UUID,
        new_status: BookingStatus | str,
        changed_by: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Union[Ack, Failure]:
        try:
            new_status = BookingStatus(new_status)
        except ValueError:
            return Failure.validation_error(f"Unknown booking status: {new_status}")

        try:
            with engine_errors(f"Status change for booking {booking_id}"):
                async with serialized_transaction(self.session_factory) as db:
                    booking = await lock_booking(db, booking_id)
                    if booking is None:
                        return Failure.not_found("Booking not found")

                    old_status = BookingStatus(booking.status)
                    check = state_machine.validate(
                        old_status,
                        new_status,
                        state_machine.TransitionContext(payment_status=booking.payment_status),
                    )
                    if not check.valid:
                        return Failure.invalid_state(check.reason)

                    await self._sync_slot(db, booking, old_status, new_status)

                    now = utcnow()
                    booking.status = new_status
                    if new_status == BookingStatus.CONFIRMED:
                        booking.confirmed_at = now
                    elif new_status == BookingStatus.COMPLETED:
                        booking.completed_at = now
                    elif new_status == BookingStatus.CANCELLED:
                        booking.cancelled_at = now
                        booking.cancellation_reason = reason
                    elif new_status == BookingStatus.PENDING:
                        booking.cancelled_at = None
                        booking.cancellation_reason = None
                    await db.flush()

                    await StatusHistoryLog(db).append(
                        booking.id, old_status, new_status, changed_by=changed_by, reason=reason, notes=notes
                    )
                    customer = await db.get(User, booking.customer_id)
        except TransactionAborted as aborted:
            return aborted.failure

        logger.info(f"Booking {booking.booking_reference}: {old_status.value} → {new_status.value}")
        await dispatch_safely(self.notifier, "notify", booking, customer, old_status, new_status)

        return Ack(
            message=f"Booking status updated to {state_machine.status_label(new_status)}",
            booking_id=booking.id,
            status=new_status.value,
            warning=check.warning,
            requires_confirmation=check.requires_confirmation,
        )

    async def _sync_slot(
        self,
        db: AsyncSession,
        booking: Booking,
        old_status: BookingStatus,
        new_status: BookingStatus,
    ) -> None:
        """Keep the booking's slot in step with its new status."""
        slots = TimeSlotRegistry(db)

        if new_status in state_machine.INACTIVE_STATUSES:
            if booking.time_slot_id is not None:
                await slots.release(booking.time_slot_id)
                booking.time_slot_id = None
            return

        if old_status in state_machine.INACTIVE_STATUSES:
            # Reactivation: take the original slot back if nobody else has
            slot = await slots.find_available(booking.scheduled_date, booking.scheduled_start_time)
            if slot is None or not await slots.occupy(
                slot.id, booking.booking_reference, state_machine.mirrored_slot_status(new_status)
            ):
                raise TransactionAborted(
                    Failure.slot_unavailable("The booking's original time slot is no longer available")
                )
            booking.time_slot_id = slot.id
            return

        if booking.time_slot_id is not None:
            await slots.mirror_status(booking.time_slot_id, state_machine.mirrored_slot_status(new_status))

    async def update_payment_status(
        self, booking_id: uuid.UUID, payment_status: PaymentStatus | str
    ) -> Union[Ack, Failure]:
        try:
            payment_status = PaymentStatus(payment_status)
        except ValueError:
            return Failure.validation_error(f"Unknown payment status: {payment_status}")

        try:
            with engine_errors(f"Payment update for booking {booking_id}"):
                async with serialized_transaction(self.session_factory) as db:
                    booking = await lock_booking(db, booking_id)
                    if booking is None:
                        return Failure.not_found("Booking not found")
                    booking.payment_status = payment_status
                    await db.flush()
        except TransactionAborted as aborted:
            return aborted.failure

        return Ack(
            message=f"Payment status updated to {payment_status.value}",
            booking_id=booking.id,
            status=BookingStatus(booking.status).value,
        )

    async def delete(
        self,
        booking_id: uuid.UUID,
        reason: Optional[str] = None,
        changed_by: Optional[uuid.UUID] = None,
    ) -> Union[Ack, Failure]:
        """Soft delete: cancel the booking and free its slot. Rows are kept."""
        return await self.transition_status(
            booking_id,
            BookingStatus.CANCELLED,
            changed_by=changed_by,
            reason=reason or "Booking cancelled",
            notes="Booking deleted",
        )
