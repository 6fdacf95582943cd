"""Admin-specific schemas."""

from pydantic import BaseModel, ConfigDict

from app.schemas.appointments import AppointmentResponse


class AdminAppointmentListResponse(BaseModel):
    """Response schema for admin appointment listing."""

    appointments: list[AppointmentResponse]
    total: int
    page: int
    page_size: int
    total_pages: int

    model_config = ConfigDict(from_attributes=True)


class AppointmentStatusCounts(BaseModel):
    pending: int = 0
    confirmed: int = 0
    completed: int = 0
    cancelled: int = 0


class PaymentStatusCounts(BaseModel):
    pending: int = 0
    paid: int = 0
    failed: int = 0
    refunded: int = 0


class AppointmentStatsResponse(BaseModel):
    """Dashboard counts plus the latest bookings."""

    total_appointments: int
    appointment_stats: AppointmentStatusCounts
    payment_stats: PaymentStatusCounts
    recent_appointments: list[AppointmentResponse]
