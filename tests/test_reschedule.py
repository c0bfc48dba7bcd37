"""
tests/test_reschedule.py
Reschedule requests end to end: submit, approve (atomic move between
slots), decline, and what happens when approvals race or fail midway.
"""

import asyncio
from datetime import time

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from services.booking.history import StatusHistoryLog
from services.booking.repository import BookingRepository
from services.reschedule.coordinator import RescheduleCoordinator
from services.reschedule.workflow import RescheduleRequestWorkflow
from shared.models.models import (
    Booking,
    BookingStatus,
    RescheduleRequest,
    RescheduleRequestStatus,
    TimeSlot,
    User,
)
from shared.schemas.results import Failure, FailureReason, RescheduleSuccess
from shared.schemas.schemas import ApproveDecision, DeclineDecision
from shared.utils.exceptions import ConcurrencyConflict, InternalError, TransactionAborted, engine_errors
from tests.conftest import auth_headers, create_booking, create_slot, future, reload


async def _history(session_factory, booking_id):
    return await BookingRepository(session_factory).history(booking_id)


@pytest.fixture
def workflow(session_factory, notifier) -> RescheduleRequestWorkflow:
    return RescheduleRequestWorkflow(session_factory, notifier)


@pytest.fixture
def target_day():
    return future(8)


# ── Submit ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_submit_snapshots_original_time(workflow, session_factory, user: User, target_day, notifier):
    slot = await create_slot(session_factory, future(5), time(10, 0))
    booking = await create_booking(session_factory, user, slot, BookingStatus.CONFIRMED)

    request = await workflow.submit_request(
        booking.id, target_day, time(14, 0), reason="Work trip", requested_by=user.id
    )

    assert isinstance(request, RescheduleRequest)
    assert request.status == RescheduleRequestStatus.PENDING
    assert (request.original_date, request.original_time) == (future(5), time(10, 0))
    assert notifier.events[-1][0] == "reschedule_requested"


@pytest.mark.asyncio
async def test_only_one_pending_request(workflow, session_factory, user: User, target_day):
    booking = await create_booking(session_factory, user, await create_slot(session_factory, future(5), time(10, 0)))

    assert isinstance(await workflow.submit_request(booking.id, target_day, time(14, 0)), RescheduleRequest)
    second = await workflow.submit_request(booking.id, target_day, time(9, 0))

    assert second.reason == FailureReason.INVALID_STATE
    assert second.message == "There is already a pending reschedule request for this booking"


@pytest.mark.asyncio
async def test_submit_rejections(workflow, session_factory, user: User, other_user: User, target_day):
    slot = await create_slot(session_factory, future(5), time(10, 0))
    booking = await create_booking(session_factory, user, slot)

    past = await workflow.submit_request(booking.id, future(-1), time(14, 0))
    assert past.reason == FailureReason.VALIDATION_ERROR

    same = await workflow.submit_request(booking.id, future(5), time(10, 0))
    assert same.reason == FailureReason.VALIDATION_ERROR

    not_owner = await workflow.submit_request(booking.id, target_day, time(14, 0), requested_by=other_user.id)
    assert not_owner.reason == FailureReason.VALIDATION_ERROR

    missing = await workflow.submit_request(user.id, target_day, time(14, 0))
    assert missing.reason == FailureReason.NOT_FOUND


@pytest.mark.asyncio
async def test_cannot_request_for_finished_booking(workflow, session_factory, user: User, target_day):
    booking = await create_booking(
        session_factory, user, await create_slot(session_factory, future(5), time(10, 0)), BookingStatus.CANCELLED
    )
    result = await workflow.submit_request(booking.id, target_day, time(14, 0))
    assert result.reason == FailureReason.INVALID_STATE


# ── Approve ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_moves_booking_between_slots(workflow, session_factory, user: User, target_day, notifier):
    old_slot = await create_slot(session_factory, future(5), time(10, 0))
    new_slot = await create_slot(session_factory, target_day, time(14, 0))
    booking = await create_booking(session_factory, user, old_slot, BookingStatus.CONFIRMED)
    request = await workflow.submit_request(booking.id, target_day, time(14, 0), reason="Work trip")

    result = await workflow.approve(request.id)

    assert isinstance(result, RescheduleSuccess)
    assert result.old_slot_id == old_slot.id
    assert result.new_slot_id == new_slot.id
    assert (result.new_date, result.new_time) == (target_day, time(14, 0))

    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == BookingStatus.RESCHEDULED
    assert (stored.scheduled_date, stored.scheduled_start_time) == (target_day, time(14, 0))
    assert stored.scheduled_end_time == time(16, 0)
    assert stored.time_slot_id == new_slot.id

    freed = await reload(session_factory, TimeSlot, old_slot.id)
    assert freed.is_available and freed.booking_reference is None
    held = await reload(session_factory, TimeSlot, new_slot.id)
    assert not held.is_available and held.booking_reference == booking.booking_reference

    stored_request = await reload(session_factory, RescheduleRequest, request.id)
    assert stored_request.status == RescheduleRequestStatus.APPROVED
    assert stored_request.admin_response == "Reschedule request approved"

    last = (await _history(session_factory, booking.id))[-1]
    assert (last.from_status, last.to_status) == ("confirmed", "rescheduled")
    assert last.reason == "Reschedule request approved by admin"
    assert last.notes.endswith("Customer reason: Work trip")
    assert notifier.statuses()[-1] == ("confirmed", "rescheduled")


@pytest.mark.asyncio
async def test_approve_with_admin_override(workflow, session_factory, user: User, target_day):
    booking = await create_booking(session_factory, user, await create_slot(session_factory, future(5), time(10, 0)))
    override = await create_slot(session_factory, target_day, time(9, 0))
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))

    result = await workflow.approve(request.id, new_time=time(9, 0), admin_response="Morning works better")

    assert result.new_slot_id == override.id
    assert (await reload(session_factory, RescheduleRequest, request.id)).admin_response == "Morning works better"


@pytest.mark.asyncio
async def test_approve_when_target_taken_changes_nothing(
    workflow, session_factory, user: User, other_user: User, target_day
):
    old_slot = await create_slot(session_factory, future(5), time(10, 0))
    new_slot = await create_slot(session_factory, target_day, time(14, 0))
    booking = await create_booking(session_factory, user, old_slot, BookingStatus.CONFIRMED)
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))
    await create_booking(session_factory, other_user, new_slot)

    result = await workflow.approve(request.id)

    assert isinstance(result, Failure)
    assert result.reason == FailureReason.SLOT_UNAVAILABLE
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == BookingStatus.CONFIRMED
    assert stored.time_slot_id == old_slot.id
    assert (await reload(session_factory, TimeSlot, old_slot.id)).booking_reference == booking.booking_reference
    assert (await reload(session_factory, RescheduleRequest, request.id)).status == RescheduleRequestStatus.PENDING


@pytest.mark.asyncio
async def test_approve_for_completed_booking(workflow, session_factory, user: User, target_day):
    booking = await create_booking(
        session_factory, user, await create_slot(session_factory, future(5), time(10, 0)), BookingStatus.CONFIRMED
    )
    await create_slot(session_factory, target_day, time(14, 0))
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))
    repo = BookingRepository(session_factory)
    await repo.transition_status(booking.id, BookingStatus.IN_PROGRESS)
    await repo.transition_status(booking.id, BookingStatus.COMPLETED)

    result = await workflow.approve(request.id)

    assert result.reason == FailureReason.INVALID_STATE
    assert (await reload(session_factory, Booking, booking.id)).status == BookingStatus.COMPLETED
    assert (await reload(session_factory, RescheduleRequest, request.id)).status == RescheduleRequestStatus.PENDING


@pytest.mark.asyncio
async def test_request_is_consumed_once(workflow, session_factory, user: User, target_day):
    booking = await create_booking(session_factory, user, await create_slot(session_factory, future(5), time(10, 0)))
    await create_slot(session_factory, target_day, time(14, 0))
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))

    assert (await workflow.approve(request.id)).ok
    again = await workflow.approve(request.id)
    assert again.reason == FailureReason.NOT_FOUND
    assert (await workflow.decline(request.id)).reason == FailureReason.NOT_FOUND


@pytest.mark.asyncio
async def test_round_trip_returns_to_original_slot(workflow, session_factory, user: User, target_day):
    first = await create_slot(session_factory, future(5), time(10, 0))
    second = await create_slot(session_factory, target_day, time(14, 0))
    booking = await create_booking(session_factory, user, first, BookingStatus.CONFIRMED)

    there = await workflow.submit_request(booking.id, target_day, time(14, 0))
    assert (await workflow.approve(there.id)).ok
    back = await workflow.submit_request(booking.id, future(5), time(10, 0))
    assert (await workflow.approve(back.id)).ok

    stored = await reload(session_factory, Booking, booking.id)
    assert stored.time_slot_id == first.id
    assert stored.status == BookingStatus.RESCHEDULED
    assert (await reload(session_factory, TimeSlot, first.id)).booking_reference == booking.booking_reference
    assert (await reload(session_factory, TimeSlot, second.id)).is_available


@pytest.mark.asyncio
async def test_rescheduled_booking_can_start_service(workflow, session_factory, user: User, target_day):
    booking = await create_booking(session_factory, user, await create_slot(session_factory, future(5), time(10, 0)))
    await create_slot(session_factory, target_day, time(14, 0))
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))
    await workflow.approve(request.id)

    ack = await BookingRepository(session_factory).transition_status(booking.id, BookingStatus.IN_PROGRESS)
    assert ack.ok


# ── Decline ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_decline_keeps_booking(workflow, session_factory, user: User, target_day, notifier):
    slot = await create_slot(session_factory, future(5), time(10, 0))
    booking = await create_booking(session_factory, user, slot, BookingStatus.CONFIRMED)
    request = await workflow.submit_request(booking.id, target_day, time(14, 0), reason="Work trip")
    history_before = len(await _history(session_factory, booking.id))

    declined = await workflow.decline(request.id, reason="Fully booked that week")

    assert declined.status == RescheduleRequestStatus.REJECTED
    assert declined.admin_response == "Fully booked that week"
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == BookingStatus.CONFIRMED
    assert stored.time_slot_id == slot.id
    assert stored.version == booking.version

    history = await _history(session_factory, booking.id)
    assert len(history) == history_before + 1
    assert (history[-1].from_status, history[-1].to_status) == ("confirmed", "confirmed")
    assert "Admin reason: Fully booked that week" in history[-1].notes
    assert notifier.events[-1][0] == "reschedule_declined"

    again = await workflow.decline(request.id)
    assert again.reason == FailureReason.NOT_FOUND
    assert len(await _history(session_factory, booking.id)) == history_before + 1


@pytest.mark.asyncio
async def test_respond_dispatches_on_decision(workflow, session_factory, user: User, target_day):
    booking = await create_booking(session_factory, user, await create_slot(session_factory, future(5), time(10, 0)))
    await create_slot(session_factory, target_day, time(14, 0))

    request = await workflow.submit_request(booking.id, target_day, time(14, 0))
    declined = await workflow.respond(request.id, DeclineDecision(action="decline"))
    assert declined.admin_response == "Reschedule request declined by admin"

    request = await workflow.submit_request(booking.id, target_day, time(14, 0))
    approved = await workflow.respond(request.id, ApproveDecision(action="approve"))
    assert isinstance(approved, RescheduleSuccess)

    with pytest.raises(TypeError):
        await workflow.respond(request.id, object())


# ── Races and failures ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_approvals_for_one_slot(session_factory, user: User, other_user: User, target_day):
    workflow = RescheduleRequestWorkflow(session_factory)
    my_slot = await create_slot(session_factory, future(5), time(10, 0))
    their_slot = await create_slot(session_factory, future(6), time(10, 0))
    mine = await create_booking(session_factory, user, my_slot)
    theirs = await create_booking(session_factory, other_user, their_slot)
    contested = await create_slot(session_factory, target_day, time(14, 0))
    first = await workflow.submit_request(mine.id, target_day, time(14, 0))
    second = await workflow.submit_request(theirs.id, target_day, time(14, 0))

    results = await asyncio.gather(
        RescheduleCoordinator(session_factory).reschedule(first.id),
        RescheduleCoordinator(session_factory).reschedule(second.id),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, RescheduleSuccess)]
    assert len(winners) == 1
    loser = next(r for r in results if r is not winners[0])
    assert isinstance(loser, Failure)
    assert loser.reason == FailureReason.SLOT_UNAVAILABLE

    async with session_factory() as db:
        on_slot = (await db.execute(select(Booking).where(Booking.time_slot_id == contested.id))).scalars().all()
    assert [b.id for b in on_slot] == [winners[0].booking_id]
    held = await reload(session_factory, TimeSlot, contested.id)
    assert held.booking_reference == on_slot[0].booking_reference

    # the losing booking still sits in its original slot
    losing, losing_slot = (theirs, their_slot) if winners[0].booking_id == mine.id else (mine, my_slot)
    stored = await reload(session_factory, Booking, losing.id)
    assert stored.time_slot_id == losing_slot.id
    assert stored.status == BookingStatus.PENDING
    assert (await reload(session_factory, TimeSlot, losing_slot.id)).booking_reference == losing.booking_reference


class SlotClashHistoryLog(StatusHistoryLog):
    """Fails the way a unique-key clash on the booking's slot surfaces from the store."""

    async def append(self, *args, **kwargs):
        raise IntegrityError(
            "UPDATE bookings", {}, Exception("UNIQUE constraint failed: bookings.time_slot_id")
        )


@pytest.mark.asyncio
async def test_slot_clash_from_store_is_slot_unavailable(workflow, session_factory, user: User, target_day):
    old_slot = await create_slot(session_factory, future(5), time(10, 0))
    new_slot = await create_slot(session_factory, target_day, time(14, 0))
    booking = await create_booking(session_factory, user, old_slot, BookingStatus.CONFIRMED)
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))

    coordinator = RescheduleCoordinator(session_factory, history_factory=SlotClashHistoryLog)
    result = await coordinator.reschedule(request.id)

    assert isinstance(result, Failure)
    assert result.reason == FailureReason.SLOT_UNAVAILABLE
    assert (await reload(session_factory, Booking, booking.id)).time_slot_id == old_slot.id
    assert (await reload(session_factory, TimeSlot, new_slot.id)).is_available
    assert (await reload(session_factory, RescheduleRequest, request.id)).status == RescheduleRequestStatus.PENDING


def test_engine_errors_mapping():
    with pytest.raises(TransactionAborted) as aborted:
        with engine_errors("Create booking"):
            raise IntegrityError("INSERT", {}, Exception("duplicate key value violates unique constraint on time_slot_id"))
    assert aborted.value.failure.reason == FailureReason.SLOT_UNAVAILABLE

    with pytest.raises(InternalError):
        with engine_errors("Create booking"):
            raise IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: bookings.customer_id"))

    with pytest.raises(InternalError):
        with engine_errors("Create booking"):
            raise RuntimeError("boom")

    with pytest.raises(ConcurrencyConflict):
        with engine_errors("Create booking"):
            raise ConcurrencyConflict()


class ExplodingHistoryLog(StatusHistoryLog):
    async def append(self, *args, **kwargs):
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_failure_midway_rolls_everything_back(workflow, session_factory, user: User, target_day, notifier):
    old_slot = await create_slot(session_factory, future(5), time(10, 0))
    new_slot = await create_slot(session_factory, target_day, time(14, 0))
    booking = await create_booking(session_factory, user, old_slot, BookingStatus.CONFIRMED)
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))
    history_before = len(await _history(session_factory, booking.id))
    events_before = len(notifier.events)

    coordinator = RescheduleCoordinator(session_factory, notifier, history_factory=ExplodingHistoryLog)
    with pytest.raises(InternalError):
        await coordinator.reschedule(request.id)

    stored = await reload(session_factory, Booking, booking.id)
    assert stored.status == BookingStatus.CONFIRMED
    assert stored.time_slot_id == old_slot.id
    assert stored.scheduled_date == future(5)
    assert (await reload(session_factory, TimeSlot, old_slot.id)).booking_reference == booking.booking_reference
    assert (await reload(session_factory, TimeSlot, new_slot.id)).is_available
    assert (await reload(session_factory, RescheduleRequest, request.id)).status == RescheduleRequestStatus.PENDING
    assert len(await _history(session_factory, booking.id)) == history_before
    assert len(notifier.events) == events_before


@pytest.mark.asyncio
async def test_failure_while_declining_leaves_request_pending(workflow, session_factory, user: User, target_day, monkeypatch):
    slot = await create_slot(session_factory, future(5), time(10, 0))
    booking = await create_booking(session_factory, user, slot, BookingStatus.CONFIRMED)
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))
    monkeypatch.setattr(StatusHistoryLog, "append", ExplodingHistoryLog.append)

    with pytest.raises(InternalError):
        await workflow.decline(request.id, reason="No capacity")

    stored = await reload(session_factory, RescheduleRequest, request.id)
    assert stored.status == RescheduleRequestStatus.PENDING
    assert stored.admin_response is None


async def _step_by_step_reschedule(session_factory, request_id, crash_after_booking_update: bool):
    """
    The old way: each step committed on its own. Kept here only to show
    what the single unit of work protects against.
    """
    async with session_factory() as db:
        request = await db.get(RescheduleRequest, request_id)
        booking = await db.get(Booking, request.booking_id)
        slot = (await db.execute(
            select(TimeSlot).where(
                TimeSlot.slot_date == request.requested_date,
                TimeSlot.start_time == request.requested_time,
            )
        )).scalar_one()
        booking.scheduled_date = request.requested_date
        booking.scheduled_start_time = request.requested_time
        booking.status = BookingStatus.RESCHEDULED
        booking.time_slot_id = slot.id
        await db.commit()

    if crash_after_booking_update:
        raise RuntimeError("process died")


@pytest.mark.asyncio
async def test_step_by_step_commits_leave_dangling_state(workflow, session_factory, user: User, target_day):
    old_slot = await create_slot(session_factory, future(5), time(10, 0))
    new_slot = await create_slot(session_factory, target_day, time(14, 0))
    booking = await create_booking(session_factory, user, old_slot, BookingStatus.CONFIRMED)
    request = await workflow.submit_request(booking.id, target_day, time(14, 0))

    with pytest.raises(RuntimeError):
        await _step_by_step_reschedule(session_factory, request.id, crash_after_booking_update=True)

    # The booking claims the new slot, which is still free; the old slot is still held
    stored = await reload(session_factory, Booking, booking.id)
    assert stored.time_slot_id == new_slot.id
    assert (await reload(session_factory, TimeSlot, new_slot.id)).is_available
    assert (await reload(session_factory, TimeSlot, old_slot.id)).booking_reference == booking.booking_reference
    assert (await reload(session_factory, RescheduleRequest, request.id)).status == RescheduleRequestStatus.PENDING


# ── HTTP ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_over_http(client: AsyncClient, session_factory, user: User, admin_user: User, target_day):
    booking = await create_booking(session_factory, user, await create_slot(session_factory, future(5), time(10, 0)))
    new_slot = await create_slot(session_factory, target_day, time(14, 0))

    submitted = await client.post(
        f"/bookings/{booking.id}/reschedule-requests",
        headers=auth_headers(user),
        json={"requested_date": target_day.isoformat(), "requested_time": "14:00", "reason": "Work trip"},
    )
    assert submitted.status_code == 201
    request_id = submitted.json()["id"]

    pending = await client.get(
        "/admin/reschedule-requests", headers=auth_headers(admin_user), params={"status": "pending"}
    )
    assert [r["id"] for r in pending.json()] == [request_id]

    forbidden = await client.post(f"/admin/reschedule-requests/{request_id}/approve", headers=auth_headers(user))
    assert forbidden.status_code == 403

    approved = await client.post(
        f"/admin/reschedule-requests/{request_id}/respond",
        headers=auth_headers(admin_user),
        json={"decision": {"action": "approve"}},
    )
    assert approved.status_code == 200
    assert approved.json()["new_slot_id"] == str(new_slot.id)

    again = await client.post(
        f"/admin/reschedule-requests/{request_id}/decline", headers=auth_headers(admin_user)
    )
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_decline_over_http(client: AsyncClient, session_factory, user: User, admin_user: User, target_day):
    booking = await create_booking(session_factory, user, await create_slot(session_factory, future(5), time(10, 0)))
    submitted = await client.post(
        f"/bookings/{booking.id}/reschedule-requests",
        headers=auth_headers(user),
        json={"requested_date": target_day.isoformat(), "requested_time": "14:00"},
    )
    request_id = submitted.json()["id"]

    declined = await client.post(
        f"/admin/reschedule-requests/{request_id}/respond",
        headers=auth_headers(admin_user),
        json={"decision": {"action": "decline", "reason": "No capacity"}},
    )
    assert declined.status_code == 200
    assert declined.json()["status"] == "rejected"
    assert declined.json()["admin_response"] == "No capacity"

    bad = await client.post(
        f"/admin/reschedule-requests/{request_id}/respond",
        headers=auth_headers(admin_user),
        json={"decision": {"action": "postpone"}},
    )
    assert bad.status_code == 422


@pytest.mark.asyncio
async def test_approve_taken_slot_over_http(
    client: AsyncClient, session_factory, user: User, other_user: User, admin_user: User, target_day
):
    booking = await create_booking(session_factory, user, await create_slot(session_factory, future(5), time(10, 0)))
    new_slot = await create_slot(session_factory, target_day, time(14, 0))
    request = await RescheduleRequestWorkflow(session_factory).submit_request(booking.id, target_day, time(14, 0))
    await create_booking(session_factory, other_user, new_slot)

    response = await client.post(
        f"/admin/reschedule-requests/{request.id}/approve", headers=auth_headers(admin_user)
    )
    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "SlotUnavailable"
