"""
shared/utils/responses.py
Turn tagged engine failures into HTTP errors.
"""

from fastapi import HTTPException, status

from shared.schemas.results import Failure, FailureReason

FAILURE_STATUS_CODES = {
    FailureReason.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureReason.INVALID_STATE: status.HTTP_409_CONFLICT,
    FailureReason.SLOT_UNAVAILABLE: status.HTTP_409_CONFLICT,
    FailureReason.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def raise_for_failure(result):
    """Return `result` unchanged unless it is a Failure, which becomes an HTTPException."""
    if isinstance(result, Failure):
        reason = FailureReason(result.reason)
        raise HTTPException(
            status_code=FAILURE_STATUS_CODES[reason],
            detail={"reason": reason.value, "message": result.message},
        )
    return result
