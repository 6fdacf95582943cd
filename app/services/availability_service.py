"""Slot conflict checks."""

from datetime import date

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.retry import with_read_retry
from app.repositories.appointment_repository import AppointmentRepository
from app.schemas.appointments import AvailabilityResponse, BookedSlotsResponse

logger = structlog.get_logger(__name__)


class AvailabilityService:
    """Answers whether a (doctor, date, time) slot is free.

    This is a fast path only. The unique index on active slots is what
    actually prevents two concurrent bookings from both succeeding.
    """

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.repository = AppointmentRepository(db)

    async def check_availability(
        self,
        doctor_id: int,
        slot_date: date,
        slot_time: str,
    ) -> AvailabilityResponse:
        """
        Check whether a slot is free.

        Args:
            doctor_id: Doctor ID
            slot_date: Calendar day
            slot_time: Slot label, compared exactly

        Returns:
            Availability, with the occupying appointment on conflict

        Raises:
            StorageFailureException: If storage stayed unreachable after a retry
        """
        existing = await with_read_retry(
            lambda: self.repository.find_active_appointment(doctor_id, slot_date, slot_time),
            name="find_active_appointment",
        )

        if existing:
            logger.info(
                "slot_conflict_detected",
                doctor_id=doctor_id,
                date=slot_date.isoformat(),
                time=slot_time,
                existing_appointment_id=existing["id"],
            )

        return AvailabilityResponse(
            doctor_id=doctor_id,
            date=slot_date,
            time=slot_time,
            available=existing is None,
            conflicting_appointment_id=existing["id"] if existing else None,
        )

    async def booked_slots(self, doctor_id: int, slot_date: date) -> BookedSlotsResponse:
        """List slot labels already taken for a doctor on one day."""
        booked = await with_read_retry(
            lambda: self.repository.list_booked_times(doctor_id, slot_date),
            name="list_booked_times",
        )
        return BookedSlotsResponse(doctor_id=doctor_id, date=slot_date, booked=booked)
