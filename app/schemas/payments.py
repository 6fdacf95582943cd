"""Simulated payment schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from app.schemas.appointments import AppointmentResponse, PaymentStatus


class PaymentIntentCreate(BaseModel):
    """Schema for requesting a payment intent."""

    appointment_id: int = Field(..., ge=1)


class PaymentIntentResponse(BaseModel):
    """Schema for a freshly issued payment intent."""

    appointment_id: int
    client_secret: str
    amount: Decimal
    currency: str
    is_mock: bool = True


class PaymentProcessRequest(BaseModel):
    """Schema for settling a payment intent."""

    appointment_id: int = Field(..., ge=1)
    client_secret: str = Field(..., min_length=1)
    simulate_failure: bool = Field(
        default=False,
        description="Simulate a declined card instead of a successful capture",
    )


class PaymentProcessResponse(BaseModel):
    """Outcome of processing a payment intent."""

    success: bool
    message: str
    payment_id: str | None = None
    appointment: AppointmentResponse


class DoctorSummary(BaseModel):
    """Doctor details shown on the checkout page."""

    id: int
    name: str
    specialty: str | None = None


class PaymentDetailsResponse(BaseModel):
    """Payment information for one appointment."""

    appointment_id: int
    amount: Decimal
    currency: str
    payment_status: PaymentStatus
    doctor: DoctorSummary | None
    date: date
    time: str


class PaymentRecord(BaseModel):
    """Payment ledger entry derived from an appointment."""

    id: int
    appointment_id: int
    patient_id: int
    doctor_id: int
    amount: Decimal
    currency: str
    status: Literal["pending", "completed", "failed", "refunded"]
    transaction_id: str
    created_at: datetime
    updated_at: datetime


class PaymentListResponse(BaseModel):
    """Paginated payment ledger."""

    payments: list[PaymentRecord]
    total: int
    page: int
    page_size: int
    total_pages: int
