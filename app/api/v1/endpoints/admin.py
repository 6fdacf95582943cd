"""Admin-only endpoints for appointment and payment management."""

from datetime import date

from fastapi import APIRouter, Query, Response, status

from app.dependencies import AdminActor, Appointments, Payments
from app.schemas.admin import AdminAppointmentListResponse, AppointmentStatsResponse
from app.schemas.appointments import (
    AdminStatusUpdate,
    AppointmentFilters,
    AppointmentResponse,
    AppointmentStatus,
    PaymentStatus,
)
from app.schemas.payments import PaymentListResponse, PaymentRecord

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get(
    "/appointments",
    response_model=AdminAppointmentListResponse,
    summary="List all appointments (admin only)",
)
async def list_all_appointments(
    admin: AdminActor,
    service: Appointments,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    status_filter: AppointmentStatus | None = Query(
        None, alias="status", description="Filter by status"
    ),
    payment_status: PaymentStatus | None = Query(None, description="Filter by payment status"),
    doctor_id: int | None = Query(None, description="Filter by doctor"),
    patient_id: int | None = Query(None, description="Filter by patient"),
    from_date: date | None = Query(None, description="Filter from date"),
    to_date: date | None = Query(None, description="Filter to date"),
) -> AdminAppointmentListResponse:
    """
    Get paginated list of all appointments with filtering.

    Requires admin role.

    Args:
        admin: Authenticated admin
        service: Appointment service
        page: Page number
        page_size: Items per page
        status_filter: Filter by appointment status
        payment_status: Filter by payment status
        doctor_id: Filter by doctor
        patient_id: Filter by patient
        from_date: Filter from date
        to_date: Filter to date

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        status=status_filter,
        payment_status=payment_status,
        doctor_id=doctor_id,
        patient_id=patient_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )
    result = await service.list_appointments(filters)

    return AdminAppointmentListResponse(
        appointments=result.items,
        total=result.total,
        page=page,
        page_size=page_size,
        total_pages=(result.total + page_size - 1) // page_size,
    )


@router.get(
    "/appointments/stats",
    response_model=AppointmentStatsResponse,
    summary="Appointment statistics (admin only)",
)
async def get_appointment_stats(
    admin: AdminActor,
    service: Appointments,
    response: Response,
) -> AppointmentStatsResponse:
    """
    Counts by appointment status and by payment status, with the five most
    recent bookings.

    Args:
        admin: Authenticated admin
        service: Appointment service
        response: Outgoing response, used to allow brief private caching

    Returns:
        Dashboard statistics
    """
    response.headers["Cache-Control"] = "private, max-age=30"
    return await service.stats(admin)


@router.patch(
    "/appointments/{appointment_id}/confirm",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Confirm appointment (admin only)",
)
async def confirm_appointment(
    appointment_id: int,
    admin: AdminActor,
    service: Appointments,
) -> AppointmentResponse:
    """Confirm a pending appointment."""
    return await service.confirm(appointment_id, admin)


@router.patch(
    "/appointments/{appointment_id}/complete",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Complete appointment (admin only)",
)
async def complete_appointment(
    appointment_id: int,
    admin: AdminActor,
    service: Appointments,
) -> AppointmentResponse:
    """Mark a confirmed appointment as completed."""
    return await service.complete(appointment_id, admin)


@router.patch(
    "/appointments/{appointment_id}/status",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Override appointment status (admin only)",
)
async def set_appointment_status(
    appointment_id: int,
    data: AdminStatusUpdate,
    admin: AdminActor,
    service: Appointments,
) -> AppointmentResponse:
    """
    Force an appointment into a status.

    Cancelling a paid appointment this way still refunds it, and moving a
    cancelled appointment back to an active status fails if its slot has been
    taken since.

    Raises:
        SlotConflictException: If the slot is held by another active appointment
    """
    return await service.set_status(appointment_id, admin, data.status, data.notes)


@router.post(
    "/payments/{appointment_id}/refund",
    response_model=PaymentRecord,
    status_code=status.HTTP_200_OK,
    summary="Refund payment (admin only)",
)
async def refund_payment(
    appointment_id: int,
    admin: AdminActor,
    payments: Payments,
) -> PaymentRecord:
    """
    Refund a paid, confirmed appointment.

    Raises:
        InvalidTransitionException: If the appointment is not confirmed and paid
    """
    return await payments.refund(appointment_id, admin)


@router.get(
    "/payments",
    response_model=PaymentListResponse,
    summary="List payments (admin only)",
)
async def list_payments(
    admin: AdminActor,
    payments: Payments,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    payment_status: PaymentStatus | None = Query(
        None, alias="status", description="Filter by payment status"
    ),
) -> PaymentListResponse:
    """Payment ledger derived from appointments."""
    filters = AppointmentFilters(payment_status=payment_status, page=page, page_size=page_size)
    return await payments.list_payments(admin, filters)
