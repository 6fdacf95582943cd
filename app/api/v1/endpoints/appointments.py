"""Appointment endpoints."""

from datetime import date

from fastapi import APIRouter, Query, status

from app.dependencies import Appointments, CurrentActor, DatabaseSession
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    AvailabilityResponse,
    BookedSlotsResponse,
)
from app.services.availability_service import AvailabilityService

router = APIRouter()


@router.get(
    "/availability",
    response_model=AvailabilityResponse,
    status_code=status.HTTP_200_OK,
    summary="Check slot availability",
)
async def check_availability(
    actor: CurrentActor,
    db: DatabaseSession,
    doctor_id: int = Query(..., ge=1),
    slot_date: date = Query(..., alias="date"),
    slot_time: str = Query(..., alias="time", min_length=1),
) -> AvailabilityResponse:
    """
    Check whether a doctor's slot is still free.

    Args:
        actor: Authenticated user
        db: Database session
        doctor_id: Doctor ID
        slot_date: Calendar day
        slot_time: Slot label

    Returns:
        Availability of the slot
    """
    return await AvailabilityService(db).check_availability(doctor_id, slot_date, slot_time.strip())


@router.get(
    "/booked-slots",
    response_model=BookedSlotsResponse,
    status_code=status.HTTP_200_OK,
    summary="List booked slots for a day",
)
async def booked_slots(
    actor: CurrentActor,
    db: DatabaseSession,
    doctor_id: int = Query(..., ge=1),
    slot_date: date = Query(..., alias="date"),
) -> BookedSlotsResponse:
    """List slot labels already taken for a doctor on one day."""
    return await AvailabilityService(db).booked_slots(doctor_id, slot_date)


@router.post(
    "/",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    actor: CurrentActor,
    service: Appointments,
) -> AppointmentResponse:
    """
    Book a slot for the authenticated patient.

    Args:
        data: Requested slot and symptoms
        actor: Authenticated user
        service: Appointment service

    Returns:
        Created appointment

    Raises:
        SlotConflictException: If the slot is already booked
    """
    return await service.book(actor, data)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List my appointments",
)
async def list_appointments(
    actor: CurrentActor,
    service: Appointments,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments for the authenticated patient with filtering.

    Args:
        actor: Authenticated user
        service: Appointment service
        status_filter: Filter by status
        from_date: Filter by start date
        to_date: Filter by end date
        page: Page number
        page_size: Items per page

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        status=status_filter,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )
    return await service.list_for_patient(actor, filters)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: int,
    actor: CurrentActor,
    service: Appointments,
) -> AppointmentResponse:
    """
    Get a specific appointment by ID.

    Raises:
        NotFoundException: If appointment not found
        ForbiddenException: If the caller does not own the appointment
    """
    return await service.get_appointment(appointment_id, actor)


@router.patch(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: int,
    actor: CurrentActor,
    service: Appointments,
) -> AppointmentResponse:
    """
    Cancel an appointment.

    A paid appointment is moved to refunded as part of the cancellation.

    Raises:
        InvalidTransitionException: If the appointment is already cancelled or completed
    """
    return await service.cancel(appointment_id, actor)
