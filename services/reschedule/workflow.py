"""
services/reschedule/workflow.py
Customer-facing submit and admin-facing approve / decline of
reschedule requests. Approval is delegated to RescheduleCoordinator.
"""

import logging
import uuid
from datetime import date, time
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import serialized_transaction
from services.booking import state_machine
from services.booking.history import StatusHistoryLog
from services.booking.repository import lock_booking
from services.notification.dispatcher import dispatch_safely
from services.reschedule.coordinator import RescheduleCoordinator, lock_request
from shared.models.models import (
    BookingStatus,
    RescheduleRequest,
    RescheduleRequestStatus,
    User,
)
from shared.schemas.results import CoordinatorResult, Failure
from shared.schemas.schemas import ApproveDecision, DeclineDecision, RescheduleDecision
from shared.utils.exceptions import TransactionAborted, engine_errors

logger = logging.getLogger(__name__)

DEFAULT_DECLINE_RESPONSE = "Reschedule request declined by admin"


class RescheduleRequestWorkflow:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier=None,
        coordinator: Optional[RescheduleCoordinator] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.coordinator = coordinator or RescheduleCoordinator(session_factory, notifier)

    # ── Customer side ─────────────────────────────────────────

    async def submit_request(
        self,
        booking_id: uuid.UUID,
        requested_date: date,
        requested_time: time,
        reason: Optional[str] = None,
        customer_notes: Optional[str] = None,
        requested_by: Optional[uuid.UUID] = None,
    ) -> Union[RescheduleRequest, Failure]:
        """
        Record a pending request to move a booking. `requested_by`, when
        given, must be the booking's customer. Only one pending request
        per booking; the booking row lock makes concurrent submissions
        queue up behind each other.
        """
        if requested_date is None or requested_time is None:
            return Failure.validation_error("Requested date and time are required")
        if requested_date < date.today():
            return Failure.validation_error("Requested date cannot be in the past")

        try:
            with engine_errors(f"Reschedule request for booking {booking_id}"):
                async with serialized_transaction(self.session_factory) as db:
                    booking = await lock_booking(db, booking_id)
                    if booking is None:
                        return Failure.not_found("Booking not found")
                    if requested_by is not None and booking.customer_id != requested_by:
                        return Failure.validation_error("You can only reschedule your own bookings")

                    status = BookingStatus(booking.status)
                    if state_machine.is_terminal(status):
                        return Failure.invalid_state(
                            f"Cannot request reschedule for booking with status: {status.value}"
                        )
                    current_time = (booking.scheduled_date, booking.scheduled_start_time)
                    if (requested_date, requested_time) == current_time:
                        return Failure.validation_error("Requested time is the booking's current time")

                    pending = await db.scalar(
                        select(RescheduleRequest.id).where(
                            RescheduleRequest.booking_id == booking.id,
                            RescheduleRequest.status == RescheduleRequestStatus.PENDING,
                        )
                    )
                    if pending is not None:
                        return Failure.invalid_state(
                            "There is already a pending reschedule request for this booking"
                        )

                    request = RescheduleRequest(
                        booking_id=booking.id,
                        requested_date=requested_date,
                        requested_time=requested_time,
                        original_date=booking.scheduled_date,
                        original_time=booking.scheduled_start_time,
                        reason=reason,
                        customer_notes=customer_notes,
                        status=RescheduleRequestStatus.PENDING,
                    )
                    db.add(request)
                    await db.flush()
                    customer = await db.get(User, booking.customer_id)
        except TransactionAborted as aborted:
            return aborted.failure

        logger.info(
            f"Reschedule request {request.id} submitted for {booking.booking_reference}: "
            f"{requested_date.isoformat()} {requested_time.strftime('%H:%M')}"
        )
        await dispatch_safely(self.notifier, "reschedule_requested", request, booking, customer)
        return request

    # ── Admin side ────────────────────────────────────────────

    async def approve(
        self,
        request_id: uuid.UUID,
        new_date: Optional[date] = None,
        new_time: Optional[time] = None,
        admin_response: Optional[str] = None,
        changed_by: Optional[uuid.UUID] = None,
    ) -> CoordinatorResult:
        return await self.coordinator.reschedule(
            request_id,
            new_date=new_date,
            new_time=new_time,
            admin_response=admin_response,
            changed_by=changed_by,
        )

    async def decline(
        self,
        request_id: uuid.UUID,
        reason: Optional[str] = None,
        changed_by: Optional[uuid.UUID] = None,
    ) -> Union[RescheduleRequest, Failure]:
        """
        Reject a pending request. The booking keeps its date, time, slot
        and status; only the request and the history change. Declining
        an already processed request returns NotFound and writes nothing.
        """
        try:
            with engine_errors(f"Decline of reschedule request {request_id}"):
                async with serialized_transaction(self.session_factory) as db:
                    request = await lock_request(db, request_id)
                    if request is None or request.status != RescheduleRequestStatus.PENDING:
                        return Failure.not_found("Reschedule request not found or already processed")

                    booking = await lock_booking(db, request.booking_id)
                    if booking is None:
                        return Failure.not_found("Booking not found")

                    request.status = RescheduleRequestStatus.REJECTED
                    request.admin_response = reason or DEFAULT_DECLINE_RESPONSE

                    current = BookingStatus(booking.status)
                    notes = [
                        f"Reschedule request declined ({request.requested_date.isoformat()} "
                        f"{request.requested_time.strftime('%H:%M')})",
                        "Original booking time maintained",
                    ]
                    if request.reason:
                        notes.append(f"Customer reason: {request.reason}")
                    if reason:
                        notes.append(f"Admin reason: {reason}")

                    await db.flush()
                    await StatusHistoryLog(db).append(
                        booking.id,
                        current,
                        current,
                        changed_by=changed_by,
                        reason=DEFAULT_DECLINE_RESPONSE,
                        notes=". ".join(notes),
                    )
                    customer = await db.get(User, booking.customer_id)
        except TransactionAborted as aborted:
            return aborted.failure

        logger.info(f"Reschedule request {request_id} declined for {booking.booking_reference}")
        await dispatch_safely(self.notifier, "reschedule_declined", request, booking, customer)
        return request

    async def respond(
        self,
        request_id: uuid.UUID,
        decision: RescheduleDecision,
        changed_by: Optional[uuid.UUID] = None,
    ) -> Union[CoordinatorResult, RescheduleRequest]:
        """Single entry point for an admin decision."""
        if isinstance(decision, ApproveDecision):
            return await self.approve(
                request_id,
                new_date=decision.new_date,
                new_time=decision.new_time,
                admin_response=decision.admin_response,
                changed_by=changed_by,
            )
        if isinstance(decision, DeclineDecision):
            return await self.decline(request_id, reason=decision.reason, changed_by=changed_by)
        raise TypeError(f"Unhandled reschedule decision: {type(decision).__name__}")

    # ── Reads ─────────────────────────────────────────────────

    async def list_requests(
        self,
        status: Optional[RescheduleRequestStatus] = None,
        booking_id: Optional[uuid.UUID] = None,
    ) -> list[RescheduleRequest]:
        query = select(RescheduleRequest)
        if status is not None:
            query = query.where(RescheduleRequest.status == RescheduleRequestStatus(status))
        if booking_id is not None:
            query = query.where(RescheduleRequest.booking_id == booking_id)

        async with self.session_factory() as db:
            result = await db.execute(query.order_by(RescheduleRequest.created_at.desc()))
            return list(result.scalars().all())

    async def get_request(self, request_id: uuid.UUID) -> Optional[RescheduleRequest]:
        async with self.session_factory() as db:
            return await db.get(RescheduleRequest, request_id)
