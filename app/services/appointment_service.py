"""Appointment service for business logic."""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    ConcurrentModificationException,
    InvalidTransitionException,
    NotFoundException,
    SlotConflictException,
)
from app.core.metrics import appointment_transitions
from app.core.redis_client import CacheManager
from app.core.retry import with_read_retry
from app.repositories.appointment_repository import AppointmentRepository
from app.schemas.admin import (
    AppointmentStatsResponse,
    AppointmentStatusCounts,
    PaymentStatusCounts,
)
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    PaymentStatus,
)
from app.services.appointment_state_machine import (
    AppointmentState,
    Decision,
    Event,
    EventType,
    decide,
    initial_state,
)
from app.services.authorization_service import Actor, AuthorizationService
from app.services.availability_service import AvailabilityService
from app.services.doctor_service import DoctorService
from app.services.notification_service import NotificationService

logger = structlog.get_logger(__name__)

# Attempts at a compare-and-swap transition before giving up
MAX_TRANSITION_ATTEMPTS = 3

# Latest bookings shown on the admin dashboard
RECENT_APPOINTMENTS = 5


class AppointmentService:
    """Service for managing appointments.

    Every status or payment change goes through ``transition`` so that all
    actors (patient, admin, payment simulator) share one set of rules.
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService | None = None,
        cache_manager: CacheManager | None = None,
        require_payment_for_completion: bool | None = None,
    ):
        """Initialize service with database session and collaborators."""
        self.db = db
        self.repository = AppointmentRepository(db)
        self.availability = AvailabilityService(db)
        self.doctors = DoctorService(db, cache_manager)
        self.notifier = notifier
        self.require_payment_for_completion = (
            settings.require_payment_for_completion
            if require_payment_for_completion is None
            else require_payment_for_completion
        )

    async def book(self, actor: Actor, data: AppointmentCreate) -> AppointmentResponse:
        """
        Book a slot for the acting patient.

        Args:
            actor: Patient booking the appointment
            data: Requested slot and symptoms

        Returns:
            Created appointment in (pending, pending)

        Raises:
            ForbiddenException: If the actor is not a patient
            NotFoundException: If the doctor does not exist or is inactive
            SlotConflictException: If the slot is already held
            StorageFailureException: If storage is unreachable (nothing is created)
        """
        AuthorizationService.ensure_patient(actor)

        doctor = await self.doctors.get_bookable_doctor(data.doctor_id)
        if doctor is None:
            raise NotFoundException("Doctor not found")

        availability = await self.availability.check_availability(
            data.doctor_id, data.date, data.time
        )
        if not availability.available:
            appointment_transitions.labels(event=EventType.BOOK.value, outcome="conflict").inc()
            raise SlotConflictException(
                existing_appointment_id=availability.conflicting_appointment_id
            )

        state = initial_state()
        now = datetime.now(UTC)
        values = {
            "doctor_id": data.doctor_id,
            "patient_id": actor.user_id,
            "date": data.date,
            "time": data.time,
            "symptoms": data.symptoms,
            "notes": "",
            "status": state.status.value,
            "payment_status": state.payment_status.value,
            "created_at": now,
            "updated_at": now,
        }

        try:
            row = await self.repository.create_appointment(values)
        except SlotConflictException:
            # Lost the race between the availability check and the insert
            appointment_transitions.labels(event=EventType.BOOK.value, outcome="conflict").inc()
            logger.info(
                "appointment_booking_race_lost",
                doctor_id=data.doctor_id,
                date=data.date.isoformat(),
                time=data.time,
            )
            raise

        appointment_transitions.labels(event=EventType.BOOK.value, outcome="applied").inc()
        logger.info(
            "appointment_booked",
            appointment_id=row["id"],
            patient_id=actor.user_id,
            doctor_id=data.doctor_id,
            date=data.date.isoformat(),
            time=data.time,
        )
        return AppointmentResponse.model_validate(row)

    async def get_record(self, appointment_id: int) -> dict[str, Any]:
        """
        Load the raw appointment row.

        Raises:
            NotFoundException: If appointment not found
        """
        row = await with_read_retry(
            lambda: self.repository.get_appointment(appointment_id),
            name="get_appointment",
        )
        if not row:
            raise NotFoundException("Appointment not found")
        return row

    async def get_appointment(self, appointment_id: int, actor: Actor) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If the actor is neither the patient nor an admin
        """
        row = await self.get_record(appointment_id)
        AuthorizationService.ensure_can_access(actor, row)
        return AppointmentResponse.model_validate(row)

    async def list_appointments(self, filters: AppointmentFilters) -> AppointmentListResponse:
        """List appointments matching the filters."""
        total, rows = await with_read_retry(
            lambda: self.repository.list_appointments(filters),
            name="list_appointments",
        )
        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=[AppointmentResponse.model_validate(row) for row in rows],
        )

    async def stats(
        self,
        actor: Actor,
        recent: int = RECENT_APPOINTMENTS,
    ) -> AppointmentStatsResponse:
        """
        Admin dashboard figures: counts per status and payment status, and
        the latest bookings.

        Raises:
            ForbiddenException: If the actor is not an admin
        """
        AuthorizationService.ensure_admin(actor)

        counts = await with_read_retry(self.repository.count_by_status, name="count_by_status")
        rows = await with_read_retry(
            lambda: self.repository.list_recent(recent),
            name="list_recent",
        )

        return AppointmentStatsResponse(
            total_appointments=sum(counts["status"].values()),
            appointment_stats=AppointmentStatusCounts(**counts["status"]),
            payment_stats=PaymentStatusCounts(**counts["payment_status"]),
            recent_appointments=[AppointmentResponse.model_validate(row) for row in rows],
        )

    async def list_for_patient(
        self,
        actor: Actor,
        filters: AppointmentFilters,
    ) -> AppointmentListResponse:
        """List the acting patient's own appointments."""
        scoped = filters.model_copy(update={"patient_id": actor.user_id})
        return await self.list_appointments(scoped)

    async def transition(self, appointment_id: int, event: Event) -> AppointmentResponse:
        """
        Apply an event to an appointment and persist the outcome.

        The write is conditional on the version that was read. If another
        writer got in first, the appointment is re-read and the event is
        decided again against the fresh state, so a repeated event becomes a
        no-op instead of a second side effect.

        Args:
            appointment_id: Appointment ID
            event: Event to apply

        Returns:
            Appointment after the event

        Raises:
            NotFoundException: If appointment not found
            InvalidTransitionException: If the event is illegal in the current state
            SlotConflictException: If an override re-activates onto a taken slot
            ConcurrentModificationException: If the appointment kept changing
            StorageFailureException: If a read or the write failed
        """
        for attempt in range(1, MAX_TRANSITION_ATTEMPTS + 1):
            row = await self.get_record(appointment_id)
            current = AppointmentState.from_row(row)

            try:
                decision = decide(current, event, self.require_payment_for_completion)
            except InvalidTransitionException as e:
                appointment_transitions.labels(event=event.type.value, outcome="rejected").inc()
                logger.info(
                    "appointment_transition_rejected",
                    appointment_id=appointment_id,
                    transition_event=event.type.value,
                    actor=event.actor,
                    state=str(current),
                    reason=e.message,
                )
                raise

            if decision.is_noop:
                appointment_transitions.labels(event=event.type.value, outcome="noop").inc()
                logger.info(
                    "appointment_transition_noop",
                    appointment_id=appointment_id,
                    transition_event=event.type.value,
                    state=str(current),
                    reason=decision.reason,
                )
                return AppointmentResponse.model_validate(row)

            updated = await self.repository.update_appointment_state(
                appointment_id,
                expected_version=row["version"],
                values=self._values_for(decision),
            )

            if updated is None:
                logger.warning(
                    "appointment_transition_stale",
                    appointment_id=appointment_id,
                    transition_event=event.type.value,
                    attempt=attempt,
                )
                continue

            appointment_transitions.labels(event=event.type.value, outcome="applied").inc()
            logger.info(
                "appointment_transition_applied",
                appointment_id=appointment_id,
                transition_event=event.type.value,
                actor=event.actor,
                from_state=str(decision.current),
                to_state=str(decision.next),
            )

            if decision.notify:
                await self._notify(updated, decision, event)

            return AppointmentResponse.model_validate(updated)

        appointment_transitions.labels(event=event.type.value, outcome="stale").inc()
        raise ConcurrentModificationException()

    async def cancel(self, appointment_id: int, actor: Actor) -> AppointmentResponse:
        """Cancel an appointment on behalf of its patient or an admin."""
        row = await self.get_record(appointment_id)
        AuthorizationService.ensure_can_access(actor, row)
        return await self.transition(appointment_id, Event(EventType.CANCEL, actor=actor.label))

    async def confirm(self, appointment_id: int, actor: Actor) -> AppointmentResponse:
        """Admin confirmation of a pending appointment."""
        AuthorizationService.ensure_admin(actor)
        return await self.transition(
            appointment_id, Event(EventType.ADMIN_CONFIRM, actor=actor.label)
        )

    async def complete(self, appointment_id: int, actor: Actor) -> AppointmentResponse:
        """Admin completion of a confirmed appointment."""
        AuthorizationService.ensure_admin(actor)
        return await self.transition(
            appointment_id, Event(EventType.ADMIN_COMPLETE, actor=actor.label)
        )

    async def set_status(
        self,
        appointment_id: int,
        actor: Actor,
        status: AppointmentStatus,
        notes: str | None = None,
    ) -> AppointmentResponse:
        """Admin override forcing a status, optionally updating notes."""
        AuthorizationService.ensure_admin(actor)
        return await self.transition(
            appointment_id,
            Event(EventType.ADMIN_SET_STATUS, actor=actor.label, status=status, notes=notes),
        )

    async def refund(self, appointment_id: int, actor: Actor) -> AppointmentResponse:
        """Admin refund of a paid, confirmed appointment."""
        AuthorizationService.ensure_admin(actor)
        return await self.transition(
            appointment_id, Event(EventType.ADMIN_REFUND, actor=actor.label)
        )

    async def record_payment(
        self,
        appointment_id: int,
        succeeded: bool,
        actor: str = "payment-simulator",
    ) -> AppointmentResponse:
        """Feed a payment outcome into the state machine."""
        event_type = EventType.PAYMENT_SUCCEEDED if succeeded else EventType.PAYMENT_FAILED
        return await self.transition(appointment_id, Event(event_type, actor=actor))

    @staticmethod
    def _values_for(decision: Decision) -> dict[str, Any]:
        """Column updates that move a row from ``decision.current`` to ``decision.next``."""
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "status": decision.next.status.value,
            "payment_status": decision.next.payment_status.value,
            "updated_at": now,
        }

        if decision.next.status != decision.current.status:
            if decision.next.status == AppointmentStatus.CANCELLED:
                values["cancelled_at"] = now
            elif decision.current.status == AppointmentStatus.CANCELLED:
                values["cancelled_at"] = None

        if decision.notes is not None:
            values["notes"] = decision.notes

        return values

    async def _notify(self, row: dict[str, Any], decision: Decision, event: Event) -> None:
        """Tell the patient about an applied transition; never fails the caller."""
        if self.notifier is None:
            return

        context: dict[str, Any] = {
            "reason": decision.reason,
            "event": event.type.value,
            "payment_status": decision.next.payment_status.value,
            "old_payment_status": decision.current.payment_status.value,
            **decision.context,
        }
        refunded_now = (
            decision.next.payment_status == PaymentStatus.REFUNDED
            and decision.current.payment_status != PaymentStatus.REFUNDED
        )
        if refunded_now:
            context["refund_pending"] = True

        try:
            await self.notifier.on_transition(
                appointment_id=row["id"],
                patient_id=row["patient_id"],
                old_status=decision.current.status.value,
                new_status=decision.next.status.value,
                context=context,
            )
        except Exception as e:
            # Log error but don't fail the request
            logger.warning(
                "failed_to_send_status_notification",
                appointment_id=row["id"],
                error=str(e),
            )
