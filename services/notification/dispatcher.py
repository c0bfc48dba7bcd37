"""
services/notification/dispatcher.py
Fire-and-forget notifications for booking events.

The dispatcher turns ORM objects into flat payloads and enqueues the
Celery tasks in tasks/notification_tasks.py. It is always called after
the unit of work has committed, and it never raises: a broker outage
costs an email, not a booking.

The broker round trip runs in a background task so a slow broker never
holds up the response. `drain()` waits for whatever is still in flight;
the app calls it on shutdown.
"""

import asyncio
import logging
from typing import Optional

from services.booking.state_machine import status_label
from shared.models.models import Booking, BookingStatus, RescheduleRequest, User

logger = logging.getLogger(__name__)


def booking_payload(booking: Booking, customer: Optional[User]) -> dict:
    return {
        "booking_id": str(booking.id),
        "booking_reference": booking.booking_reference,
        "scheduled_date": booking.scheduled_date.isoformat(),
        "scheduled_time": booking.scheduled_start_time.strftime("%H:%M"),
        "customer_name": customer.name if customer else None,
        "customer_email": customer.email if customer else None,
        "customer_phone": customer.phone if customer else None,
    }


def request_payload(request: RescheduleRequest) -> dict:
    return {
        "request_id": str(request.id),
        "requested_date": request.requested_date.isoformat(),
        "requested_time": request.requested_time.strftime("%H:%M"),
        "reason": request.reason,
        "admin_response": request.admin_response,
    }


class NotificationDispatcher:
    """Enqueues notification tasks. Every public method swallows and logs failures."""

    def __init__(self):
        self._pending: set[asyncio.Task] = set()

    async def notify(
        self,
        booking: Booking,
        customer: Optional[User],
        old_status: Optional[BookingStatus | str],
        new_status: BookingStatus | str,
    ) -> None:
        from tasks.notification_tasks import send_booking_status_update

        new_status = BookingStatus(new_status)
        payload = booking_payload(booking, customer)
        payload.update(
            old_status=BookingStatus(old_status).value if old_status else None,
            new_status=new_status.value,
            status_label=status_label(new_status),
        )
        await self._enqueue(send_booking_status_update, payload)

    async def reschedule_requested(
        self, request: RescheduleRequest, booking: Booking, customer: Optional[User]
    ) -> None:
        from tasks.notification_tasks import send_reschedule_request_alert

        payload = booking_payload(booking, customer) | request_payload(request)
        await self._enqueue(send_reschedule_request_alert, payload)

    async def reschedule_declined(
        self, request: RescheduleRequest, booking: Booking, customer: Optional[User]
    ) -> None:
        from tasks.notification_tasks import send_reschedule_declined

        payload = booking_payload(booking, customer) | request_payload(request)
        await self._enqueue(send_reschedule_declined, payload)

    async def _enqueue(self, task, payload: dict) -> None:
        pending = asyncio.create_task(self._send(task, payload))
        # the loop only keeps weak references to tasks
        self._pending.add(pending)
        pending.add_done_callback(self._pending.discard)

    async def _send(self, task, payload: dict) -> None:
        try:
            # .delay() talks to the broker synchronously
            await asyncio.to_thread(task.delay, payload)
        except Exception as e:
            logger.warning(
                f"Failed to enqueue {task.name} for booking "
                f"{payload.get('booking_reference')}: {e}"
            )

    async def drain(self) -> None:
        """Wait for every enqueue still in flight."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


async def dispatch_safely(notifier, event: str, *args) -> None:
    """
    Call `notifier.<event>(*args)` without letting anything escape.
    Engine components use this so a misbehaving notifier can never turn
    a committed write into an error response.
    """
    if notifier is None:
        return
    try:
        await getattr(notifier, event)(*args)
    except Exception as e:
        logger.warning(f"Notification '{event}' failed: {e}")


_dispatcher = NotificationDispatcher()


def get_notifier() -> NotificationDispatcher:
    """FastAPI dependency. Overridden in tests with a recording fake."""
    return _dispatcher
