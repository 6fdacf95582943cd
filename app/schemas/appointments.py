"""Appointment schemas for request/response validation."""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


ACTIVE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})
TERMINAL_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED})


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    doctor_id: int = Field(..., ge=1)
    date: date
    time: str = Field(..., min_length=1, max_length=20, description="Slot label, e.g. 14:00")
    symptoms: str = Field(..., min_length=1, max_length=2000)

    @field_validator("time")
    @classmethod
    def strip_time(cls, v: str) -> str:
        """Slot labels are compared exactly, so normalise surrounding whitespace."""
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("Time slot must not be blank")
        return cleaned

    @field_validator("symptoms")
    @classmethod
    def validate_symptoms(cls, v: str) -> str:
        """Reject whitespace-only symptom descriptions."""
        if not v.strip():
            raise ValueError("Symptoms must not be blank")
        return v


class AdminStatusUpdate(BaseModel):
    """Schema for the admin status override."""

    status: AppointmentStatus
    notes: str | None = Field(None, max_length=1000)


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: int
    doctor_id: int
    patient_id: int
    date: date
    time: str
    status: AppointmentStatus
    payment_status: PaymentStatus
    symptoms: str
    notes: str
    created_at: datetime
    updated_at: datetime
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    status: AppointmentStatus | None = None
    payment_status: PaymentStatus | None = None
    patient_id: int | None = None
    doctor_id: int | None = None
    from_date: date | None = None
    to_date: date | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class AvailabilityResponse(BaseModel):
    """Result of a slot availability check."""

    doctor_id: int
    date: date
    time: str
    available: bool
    conflicting_appointment_id: int | None = None


class BookedSlotsResponse(BaseModel):
    """Slot labels already taken for a doctor on one day."""

    doctor_id: int
    date: date
    booked: list[str]
