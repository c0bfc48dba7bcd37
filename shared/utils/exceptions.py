"""
shared/utils/exceptions.py
Errors that propagate out of the booking engine.

Expected business failures (not found, illegal transition, slot taken,
bad input) are NOT exceptions; they come back as tagged `Failure`
results (see shared/schemas/results.py). Only conditions the caller
cannot decide on up-front are raised.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


class BookingEngineError(Exception):
    """Base class for errors raised by the booking engine."""

    default_message = "Booking engine error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConcurrencyConflict(BookingEngineError):
    """
    The store refused the unit of work because of concurrent access:
    lock-wait timeout, deadlock, serialization failure or a stale
    version token. Nothing was written; the caller may retry.
    """

    default_message = "The booking was modified concurrently. Please retry."


class InternalError(BookingEngineError):
    """Unexpected failure inside a unit of work. Nothing was written."""

    default_message = "An internal error occurred while processing the booking"


class TransactionAborted(Exception):
    """
    Raised inside a unit of work to roll it back and hand a tagged
    `Failure` to the caller. Never escapes the engine component that
    raised it.
    """

    def __init__(self, failure):
        self.failure = failure
        super().__init__(failure.message)


@contextmanager
def engine_errors(operation: str):
    """
    Wrap a unit of work so only engine errors leave it.

    A unique-key hit on `bookings.time_slot_id` means another writer took
    the slot first and becomes a SlotUnavailable failure; anything else
    unexpected is logged and re-raised as InternalError.
    """
    try:
        yield
    except (BookingEngineError, TransactionAborted):
        raise
    except IntegrityError as e:
        if "time_slot_id" in str(e.orig):
            from shared.schemas.results import Failure

            raise TransactionAborted(Failure.slot_unavailable()) from e
        logger.exception(f"{operation} failed, rolled back: {e}")
        raise InternalError() from e
    except Exception as e:
        logger.exception(f"{operation} failed, rolled back: {e}")
        raise InternalError() from e
