"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the booking API.
"""

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from services.booking.slots import MAX_SLOT_MINUTES, MIN_SLOT_MINUTES, add_minutes
from shared.models.models import (
    BookingStatus,
    PaymentStatus,
    RescheduleRequestStatus,
    SlotBookingStatus,
)

MAX_BULK_RANGE_DAYS = 366


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Time Slots ────────────────────────────────────────────────

class TimeSlotResponse(BaseSchema):
    id: uuid.UUID
    slot_date: date
    start_time: time
    end_time: time
    is_available: bool
    booking_reference: Optional[str] = None
    booking_status: Optional[SlotBookingStatus] = None
    notes: Optional[str] = None


class DayAvailabilityResponse(BaseSchema):
    slot_date: date
    slots: List[TimeSlotResponse]
    total_slots: int
    available_slots: int


class AvailabilityRangeResponse(BaseSchema):
    date_from: date
    date_to: date
    days: List[DayAvailabilityResponse]


class TimeSlotCreateRequest(BaseSchema):
    slot_date: date
    start_time: time
    end_time: Optional[time] = None
    duration_minutes: Optional[int] = Field(None, ge=MIN_SLOT_MINUTES, le=MAX_SLOT_MINUTES)
    notes: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def validate_range(self) -> "TimeSlotCreateRequest":
        if self.end_time is None and self.duration_minutes is None:
            raise ValueError("Provide end_time or duration_minutes")
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class TimeRangeSchema(BaseSchema):
    start_time: time
    duration_minutes: int = Field(..., ge=MIN_SLOT_MINUTES, le=MAX_SLOT_MINUTES)

    @model_validator(mode="after")
    def validate_same_day(self) -> "TimeRangeSchema":
        add_minutes(self.start_time, self.duration_minutes)
        return self


class BulkSlotRequest(BaseSchema):
    start_date: date
    end_date: date
    days_of_week: List[int] = Field(..., min_length=1, description="0=Sunday … 6=Saturday")
    time_ranges: List[TimeRangeSchema] = Field(..., min_length=1)
    exclude_dates: List[date] = Field(default_factory=list)

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v: List[int]) -> List[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("days_of_week values must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(v))

    @model_validator(mode="after")
    def validate_dates(self) -> "BulkSlotRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        if (self.end_date - self.start_date).days > MAX_BULK_RANGE_DAYS:
            raise ValueError(f"Date range cannot exceed {MAX_BULK_RANGE_DAYS} days")
        return self


class BulkSlotResponse(BaseSchema):
    created: int
    skipped: int
    slots: List[TimeSlotResponse]


class PreviewSlotSchema(BaseSchema):
    start_time: str
    end_time: str
    duration_minutes: int


class SlotPreviewResponse(BaseSchema):
    total_slots: int
    total_dates: int
    dates: List[str]
    dates_by_month: dict[str, List[str]]
    slots_per_day: int
    preview_slots: List[PreviewSlotSchema]


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    slot_id: uuid.UUID
    total_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    duration_minutes: Optional[int] = Field(None, ge=MIN_SLOT_MINUTES, le=MAX_SLOT_MINUTES)
    special_instructions: Optional[str] = Field(None, max_length=1000)
    # Staff may book on a customer's behalf; ignored for customers
    customer_id: Optional[uuid.UUID] = None


class BookingResponse(BaseSchema):
    id: uuid.UUID
    booking_reference: str
    customer_id: uuid.UUID
    scheduled_date: date
    scheduled_start_time: time
    scheduled_end_time: time
    time_slot_id: Optional[uuid.UUID]
    status: BookingStatus
    payment_status: PaymentStatus
    total_price: Decimal
    special_instructions: Optional[str]
    cancellation_reason: Optional[str]
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    version: int
    created_at: datetime
    updated_at: datetime


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)


class PaymentStatusUpdateRequest(BaseSchema):
    payment_status: PaymentStatus


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class StatusHistoryResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    from_status: Optional[str]
    to_status: str
    changed_by: Optional[uuid.UUID]
    reason: Optional[str]
    notes: Optional[str]
    created_at: datetime


# ── Reschedule Requests ───────────────────────────────────────

class RescheduleRequestCreate(BaseSchema):
    requested_date: date
    requested_time: time
    reason: Optional[str] = Field(None, max_length=500)
    customer_notes: Optional[str] = Field(None, max_length=1000)


class RescheduleRequestResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    requested_date: date
    requested_time: time
    original_date: date
    original_time: time
    reason: Optional[str]
    customer_notes: Optional[str]
    status: RescheduleRequestStatus
    admin_response: Optional[str]
    created_at: datetime
    updated_at: datetime


class RescheduleApproveRequest(BaseSchema):
    new_date: Optional[date] = None
    new_time: Optional[time] = None
    admin_response: Optional[str] = Field(None, max_length=500)


class RescheduleDeclineRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class ApproveDecision(RescheduleApproveRequest):
    action: Literal["approve"]


class DeclineDecision(RescheduleDeclineRequest):
    action: Literal["decline"]


RescheduleDecision = Annotated[
    Union[ApproveDecision, DeclineDecision],
    Field(discriminator="action"),
]


class RescheduleRespondRequest(BaseSchema):
    decision: RescheduleDecision


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True

