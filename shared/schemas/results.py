"""
shared/schemas/results.py
Tagged results returned by the booking engine.

Business failures are values, not exceptions: every engine operation
returns either a success model (`ok=True`) or a `Failure` carrying one
of four reasons and a human-readable message.
"""

import uuid
from datetime import date, time
from enum import Enum
from typing import Literal, Optional, Union

from shared.schemas.schemas import BaseSchema


class FailureReason(str, Enum):
    NOT_FOUND = "NotFound"
    INVALID_STATE = "InvalidState"
    SLOT_UNAVAILABLE = "SlotUnavailable"
    VALIDATION_ERROR = "ValidationError"


class Failure(BaseSchema):
    ok: Literal[False] = False
    reason: FailureReason
    message: str

    @classmethod
    def not_found(cls, message: str) -> "Failure":
        return cls(reason=FailureReason.NOT_FOUND, message=message)

    @classmethod
    def invalid_state(cls, message: str) -> "Failure":
        return cls(reason=FailureReason.INVALID_STATE, message=message)

    @classmethod
    def slot_unavailable(
        cls, message: str = "Selected time slot is not available"
    ) -> "Failure":
        return cls(reason=FailureReason.SLOT_UNAVAILABLE, message=message)

    @classmethod
    def validation_error(cls, message: str) -> "Failure":
        return cls(reason=FailureReason.VALIDATION_ERROR, message=message)


class Ack(BaseSchema):
    """Successful write. `warning` is informational and never blocks."""
    ok: Literal[True] = True
    message: str
    booking_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    warning: Optional[str] = None
    requires_confirmation: bool = False


class RescheduleSuccess(BaseSchema):
    ok: Literal[True] = True
    booking_id: uuid.UUID
    request_id: uuid.UUID
    old_date: date
    old_time: time
    new_date: date
    new_time: time
    old_slot_id: Optional[uuid.UUID]
    new_slot_id: uuid.UUID


CoordinatorResult = Union[RescheduleSuccess, Failure]
