"""
services/booking/state_machine.py
Booking status transition rules.

    pending        → processing | confirmed | declined | cancelled
    processing     → confirmed | payment_failed | cancelled
    payment_failed → processing | cancelled
    confirmed      → in_progress | rescheduled | cancelled
    rescheduled    → in_progress | cancelled
    in_progress    → completed | cancelled
    completed      → in_progress
    declined | cancelled | no_show → pending

Pure functions only; nothing here touches the database.
"""

from dataclasses import dataclass
from typing import Optional

from shared.models.models import BookingStatus, PaymentStatus, SlotBookingStatus

S = BookingStatus

VALID_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.CONFIRMED, S.DECLINED, S.CANCELLED}),
    S.PROCESSING: frozenset({S.CONFIRMED, S.PAYMENT_FAILED, S.CANCELLED}),
    S.PAYMENT_FAILED: frozenset({S.PROCESSING, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.IN_PROGRESS, S.RESCHEDULED, S.CANCELLED}),
    S.RESCHEDULED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.CANCELLED}),
    # listed, but validate() refuses it: in_progress needs confirmed or rescheduled
    S.COMPLETED: frozenset({S.IN_PROGRESS}),
    S.DECLINED: frozenset({S.PENDING}),
    S.CANCELLED: frozenset({S.PENDING}),
    S.NO_SHOW: frozenset({S.PENDING}),
}

ACTIVE_STATUSES = frozenset(
    {S.PENDING, S.PROCESSING, S.CONFIRMED, S.RESCHEDULED, S.IN_PROGRESS}
)
SERVICE_READY_STATUSES = frozenset({S.CONFIRMED, S.RESCHEDULED})
INACTIVE_STATUSES = frozenset({S.DECLINED, S.CANCELLED, S.NO_SHOW})

# A booking in one of these can no longer be moved to another slot
TERMINAL_STATUSES = frozenset({S.CANCELLED, S.COMPLETED, S.DECLINED})

STATUS_LABELS = {
    S.PENDING: "Pending Review",
    S.PROCESSING: "Processing Payment",
    S.PAYMENT_FAILED: "Payment Failed",
    S.CONFIRMED: "Confirmed",
    S.RESCHEDULED: "Rescheduled",
    S.IN_PROGRESS: "Service In Progress",
    S.COMPLETED: "Completed",
    S.DECLINED: "Declined",
    S.CANCELLED: "Cancelled",
    S.NO_SHOW: "No Show",
}

RECOMMENDED_ACTIONS = {
    S.PENDING: ["Review booking details", "Send payment link", "Confirm or decline"],
    S.PROCESSING: ["Monitor payment", "Follow up if overdue", "Confirm when paid"],
    S.PAYMENT_FAILED: ["Contact customer", "Provide payment assistance", "Retry or cancel"],
    S.CONFIRMED: ["Schedule service", "Prepare equipment", "Contact customer"],
    S.RESCHEDULED: ["Confirm new time", "Update schedule", "Notify team"],
    S.IN_PROGRESS: ["Provide updates", "Complete service", "Document completion"],
    S.COMPLETED: ["Follow up", "Request feedback", "Archive booking"],
    S.DECLINED: ["Explain reason", "Offer alternatives", "Document decision"],
    S.CANCELLED: ["Process refunds", "Update schedule", "Document cancellation"],
    S.NO_SHOW: ["Attempt contact", "Document incident", "Follow policy"],
}

_DESTRUCTIVE_VERBS = {
    S.CANCELLED: "cancel",
    S.DECLINED: "decline",
    S.NO_SHOW: "mark as no-show",
}


@dataclass(frozen=True)
class TransitionContext:
    """Facts about the booking that the business rules look at."""
    payment_status: Optional[PaymentStatus] = None


@dataclass(frozen=True)
class TransitionValidation:
    valid: bool
    reason: Optional[str] = None
    warning: Optional[str] = None
    requires_confirmation: bool = False


def allowed_targets(status: BookingStatus) -> frozenset[BookingStatus]:
    return VALID_TRANSITIONS.get(BookingStatus(status), frozenset())


def is_valid_transition(from_status: BookingStatus, to_status: BookingStatus) -> bool:
    return BookingStatus(to_status) in allowed_targets(from_status)


def is_active(status: BookingStatus) -> bool:
    return BookingStatus(status) in ACTIVE_STATUSES


def is_terminal(status: BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


def status_label(status: BookingStatus) -> str:
    return STATUS_LABELS.get(BookingStatus(status), str(status))


def recommended_actions(status: BookingStatus) -> list[str]:
    return list(RECOMMENDED_ACTIONS.get(BookingStatus(status), []))


def mirrored_slot_status(status: BookingStatus) -> SlotBookingStatus:
    """Coarse status written onto the slot a booking occupies."""
    status = BookingStatus(status)
    if status in ACTIVE_STATUSES:
        return SlotBookingStatus.CONFIRMED
    if status == S.COMPLETED:
        return SlotBookingStatus.COMPLETED
    return SlotBookingStatus.CANCELLED


def validate(
    from_status: BookingStatus,
    to_status: BookingStatus,
    context: Optional[TransitionContext] = None,
) -> TransitionValidation:
    """
    Decide whether `from_status → to_status` may be applied.

    Illegal moves come back with valid=False and a reason. Legal but
    risky moves come back valid with a warning and
    requires_confirmation=True; the warning does not block the write.
    """
    from_status = BookingStatus(from_status)
    to_status = BookingStatus(to_status)
    context = context or TransitionContext()

    if not is_valid_transition(from_status, to_status):
        return TransitionValidation(
            valid=False,
            reason=(
                f'illegal transition: cannot move from "{from_status.value}" '
                f'to "{to_status.value}"'
            ),
        )

    if to_status == S.IN_PROGRESS and from_status not in SERVICE_READY_STATUSES:
        return TransitionValidation(
            valid=False,
            reason="service not ready: booking must be confirmed before work starts",
        )

    warning: Optional[str] = None
    requires_confirmation = False

    if from_status == S.PROCESSING and to_status == S.CONFIRMED:
        if context.payment_status != PaymentStatus.COMPLETED:
            warning = "Marking as confirmed without payment confirmation. Ensure payment was received."
            requires_confirmation = True

    if from_status == S.PROCESSING and to_status == S.PAYMENT_FAILED:
        warning = "This will mark the payment as failed and may trigger cancellation."
        requires_confirmation = True

    if to_status == S.COMPLETED and from_status != S.IN_PROGRESS:
        warning = "Completing service without marking as in progress first."
        requires_confirmation = True

    if to_status in _DESTRUCTIVE_VERBS:
        requires_confirmation = True
        if from_status in ACTIVE_STATUSES:
            warning = f"This will {_DESTRUCTIVE_VERBS[to_status]} an active booking."

    return TransitionValidation(
        valid=True,
        warning=warning,
        requires_confirmation=requires_confirmation,
    )
