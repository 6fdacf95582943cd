"""Tests for appointment booking and lifecycle."""

import asyncio
import json
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.exceptions import (
    ConcurrentModificationException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    SlotConflictException,
    StorageFailureException,
)
from app.core.redis_client import CacheManager
from app.models.doctors import doctors
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilters,
    AppointmentResponse,
    AppointmentStatus,
    AvailabilityResponse,
    PaymentStatus,
)
from app.services.appointment_service import MAX_TRANSITION_ATTEMPTS, AppointmentService
from app.services.authorization_service import Actor

SLOT_DATE = date(2030, 5, 1)
API = "/api/v1"


def booking(doctor: dict, time: str = "10:00", slot_date: date = SLOT_DATE) -> AppointmentCreate:
    return AppointmentCreate(
        doctor_id=doctor["id"],
        date=slot_date,
        time=time,
        symptoms="Chest pain when climbing stairs",
    )


def payload(doctor: dict, time: str = "10:00") -> dict:
    return {
        "doctor_id": doctor["id"],
        "date": SLOT_DATE.isoformat(),
        "time": time,
        "symptoms": "Persistent headache",
    }


@pytest.fixture
def patient(patient_user) -> Actor:
    return Actor.from_user(patient_user)


@pytest.fixture
def other(other_patient) -> Actor:
    return Actor.from_user(other_patient)


@pytest.fixture
def admin(admin_user) -> Actor:
    return Actor.from_user(admin_user)


@pytest.fixture
def service(db_session, notifier) -> AppointmentService:
    return AppointmentService(db_session, notifier=notifier)


class TestBooking:
    """Slot conflict checks and booking."""

    @pytest.mark.asyncio
    async def test_book_then_same_slot_conflicts(self, service, patient, other, doctor):
        """First booking of a slot succeeds, the second is refused."""
        first = await service.book(patient, booking(doctor))
        assert first.status == AppointmentStatus.PENDING
        assert first.payment_status == PaymentStatus.PENDING
        assert first.patient_id == patient.user_id

        with pytest.raises(SlotConflictException) as exc_info:
            await service.book(other, booking(doctor))

        assert exc_info.value.existing_appointment_id == first.id
        assert exc_info.value.status_code == 409
        assert exc_info.value.message == (
            "This time slot is already booked. Please select another time."
        )

    @pytest.mark.asyncio
    async def test_other_slots_stay_free(self, service, patient, doctor):
        """A different time or day for the same doctor is a different slot."""
        await service.book(patient, booking(doctor, time="10:00"))
        await service.book(patient, booking(doctor, time="10:30"))
        await service.book(patient, booking(doctor, slot_date=date(2030, 5, 2)))

        booked = await service.availability.booked_slots(doctor["id"], SLOT_DATE)
        assert booked.booked == ["10:00", "10:30"]

    @pytest.mark.asyncio
    async def test_cancel_frees_slot(self, service, patient, other, doctor):
        """Cancelled appointments no longer occupy their slot."""
        first = await service.book(patient, booking(doctor))
        await service.cancel(first.id, patient)

        availability = await service.availability.check_availability(
            doctor["id"], SLOT_DATE, "10:00"
        )
        assert availability.available is True

        second = await service.book(other, booking(doctor))
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_index_rejects_booking_that_passed_the_check(
        self, service, patient, other, doctor
    ):
        """Two bookings that both saw the slot free cannot both be stored."""
        service.availability.check_availability = AsyncMock(
            return_value=AvailabilityResponse(
                doctor_id=doctor["id"], date=SLOT_DATE, time="10:00", available=True
            )
        )

        await service.book(patient, booking(doctor))
        with pytest.raises(SlotConflictException):
            await service.book(other, booking(doctor))

        result = await service.list_appointments(AppointmentFilters(doctor_id=doctor["id"]))
        assert result.total == 1

    @pytest.mark.asyncio
    async def test_unknown_doctor(self, service, patient, doctor):
        """Booking with a doctor that does not exist is NotFound."""
        data = booking(doctor)
        data.doctor_id = doctor["id"] + 100

        with pytest.raises(NotFoundException):
            await service.book(patient, data)

    @pytest.mark.asyncio
    async def test_inactive_doctor(self, db_session, service, patient, doctor):
        """Inactive doctors cannot be booked."""
        await db_session.execute(
            update(doctors).where(doctors.c.id == doctor["id"]).values(is_active=False)
        )
        await db_session.commit()

        with pytest.raises(NotFoundException):
            await service.book(patient, booking(doctor))

    @pytest.mark.asyncio
    async def test_cached_doctor_cannot_outlive_deactivation(
        self, db_session, notifier, patient, doctor
    ):
        """Booking checks is_active in the directory even when the cache says active."""
        redis_client = MagicMock()
        redis_client.get.return_value = json.dumps({**doctor, "is_active": True}, default=str)
        service = AppointmentService(
            db_session, notifier=notifier, cache_manager=CacheManager(redis_client)
        )

        await db_session.execute(
            update(doctors).where(doctors.c.id == doctor["id"]).values(is_active=False)
        )
        await db_session.commit()

        with pytest.raises(NotFoundException):
            await service.book(patient, booking(doctor))

        key, _, refreshed = redis_client.setex.call_args.args
        assert key == f"doctor:{doctor['id']}"
        assert json.loads(refreshed)["is_active"] is False

    @pytest.mark.asyncio
    async def test_admin_cannot_book(self, service, admin, doctor):
        """Slots are held by patients only."""
        with pytest.raises(ForbiddenException):
            await service.book(admin, booking(doctor))

        availability = await service.availability.check_availability(
            doctor["id"], SLOT_DATE, "10:00"
        )
        assert availability.available is True


class TestLifecycle:
    """Transitions driven through the service."""

    @pytest.mark.asyncio
    async def test_paid_then_cancelled_is_refunded(self, service, patient, doctor, notifier):
        """Payment confirms the booking; cancelling afterwards refunds it."""
        appointment = await service.book(patient, booking(doctor))

        paid = await service.record_payment(appointment.id, succeeded=True)
        assert paid.status == AppointmentStatus.CONFIRMED
        assert paid.payment_status == PaymentStatus.PAID

        cancelled = await service.cancel(appointment.id, patient)
        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.payment_status == PaymentStatus.REFUNDED
        assert cancelled.cancelled_at is not None

        last_call = notifier.on_transition.await_args
        assert last_call.kwargs["new_status"] == "cancelled"
        assert last_call.kwargs["context"]["refund_pending"] is True

    @pytest.mark.asyncio
    async def test_complete_requires_confirmation(self, service, patient, admin, doctor):
        """A pending appointment cannot be completed."""
        appointment = await service.book(patient, booking(doctor))

        with pytest.raises(InvalidTransitionException):
            await service.complete(appointment.id, admin)

        await service.confirm(appointment.id, admin)
        completed = await service.complete(appointment.id, admin)
        assert completed.status == AppointmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_appointment_rejects_cancel(self, service, patient, doctor):
        """Cancelling twice is an invalid transition and sends nothing."""
        appointment = await service.book(patient, booking(doctor))
        await service.cancel(appointment.id, patient)

        with pytest.raises(InvalidTransitionException):
            await service.cancel(appointment.id, patient)

    @pytest.mark.asyncio
    async def test_admin_only_operations(self, service, patient, doctor):
        """Patients cannot confirm, complete or override."""
        appointment = await service.book(patient, booking(doctor))

        with pytest.raises(ForbiddenException):
            await service.confirm(appointment.id, patient)
        with pytest.raises(ForbiddenException):
            await service.set_status(appointment.id, patient, AppointmentStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_other_patient_cannot_read_or_cancel(self, service, patient, other, doctor):
        """Only the owner and admins see an appointment."""
        appointment = await service.book(patient, booking(doctor))

        with pytest.raises(ForbiddenException):
            await service.get_appointment(appointment.id, other)
        with pytest.raises(ForbiddenException):
            await service.cancel(appointment.id, other)

    @pytest.mark.asyncio
    async def test_missing_appointment(self, service, admin):
        """Transitions against unknown ids are NotFound."""
        with pytest.raises(NotFoundException):
            await service.confirm(424242, admin)

    @pytest.mark.asyncio
    async def test_override_cannot_reactivate_onto_taken_slot(
        self, service, patient, other, admin, doctor
    ):
        """Reopening a cancelled appointment fails while its slot is held."""
        first = await service.book(patient, booking(doctor))
        await service.cancel(first.id, patient)
        await service.book(other, booking(doctor))

        with pytest.raises(SlotConflictException):
            await service.set_status(first.id, admin, AppointmentStatus.PENDING)

        still_cancelled = await service.get_appointment(first.id, admin)
        assert still_cancelled.status == AppointmentStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_override_updates_notes(self, service, patient, admin, doctor, notifier):
        """Setting the same status only writes the notes, silently."""
        appointment = await service.book(patient, booking(doctor))
        notifier.on_transition.reset_mock()

        updated = await service.set_status(
            appointment.id, admin, AppointmentStatus.PENDING, notes="Fasting required"
        )

        assert updated.notes == "Fasting required"
        assert updated.status == AppointmentStatus.PENDING
        notifier.on_transition.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_transition(
        self, service, patient, admin, doctor, notifier
    ):
        """A broken notifier never rolls back a committed transition."""
        appointment = await service.book(patient, booking(doctor))
        notifier.on_transition.side_effect = RuntimeError("socket gone")

        confirmed = await service.confirm(appointment.id, admin)
        assert confirmed.status == AppointmentStatus.CONFIRMED


class TestConcurrency:
    """Compare-and-swap transitions and read retries."""

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_version_conflicts(
        self, service, patient, admin, doctor
    ):
        appointment = await service.book(patient, booking(doctor))
        service.repository.update_appointment_state = AsyncMock(return_value=None)

        with pytest.raises(ConcurrentModificationException):
            await service.confirm(appointment.id, admin)

        assert service.repository.update_appointment_state.await_count == MAX_TRANSITION_ATTEMPTS

    @pytest.mark.asyncio
    async def test_rereads_and_redecides_after_losing_a_race(
        self, service, patient, doctor, notifier
    ):
        """A concurrent identical payment turns the retry into a no-op."""
        appointment = await service.book(patient, booking(doctor))
        real_update = service.repository.update_appointment_state
        calls = []

        async def racing_update(appointment_id, expected_version, values):
            calls.append(expected_version)
            if len(calls) == 1:
                # Another writer captures the payment first
                await real_update(appointment_id, expected_version, values)
                return None
            return await real_update(appointment_id, expected_version, values)

        service.repository.update_appointment_state = racing_update
        notifier.on_transition.reset_mock()

        result = await service.record_payment(appointment.id, succeeded=True)

        assert result.payment_status == PaymentStatus.PAID
        assert calls == [1]
        notifier.on_transition.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_read_is_retried_once(self, service, patient, doctor):
        """A transient read failure is retried before giving up."""
        appointment = await service.book(patient, booking(doctor))
        row = await service.repository.get_appointment(appointment.id)
        service.repository.get_appointment = AsyncMock(
            side_effect=[StorageFailureException(), row]
        )

        result = await service.get_appointment(appointment.id, patient)
        assert result.id == appointment.id
        assert service.repository.get_appointment.await_count == 2

    @pytest.mark.asyncio
    async def test_read_failure_surfaces_after_retry(self, service, patient):
        service.repository.get_appointment = AsyncMock(side_effect=StorageFailureException())

        with pytest.raises(StorageFailureException):
            await service.get_appointment(1, patient)

        assert service.repository.get_appointment.await_count == 2

    @pytest.mark.asyncio
    async def test_write_failure_is_not_retried_or_announced(
        self, service, patient, admin, doctor, notifier
    ):
        """A failed state write surfaces once and tells nobody."""
        appointment = await service.book(patient, booking(doctor))
        service.repository.update_appointment_state = AsyncMock(
            side_effect=StorageFailureException()
        )
        notifier.on_transition.reset_mock()

        with pytest.raises(StorageFailureException):
            await service.confirm(appointment.id, admin)

        assert service.repository.update_appointment_state.await_count == 1
        notifier.on_transition.assert_not_awaited()

        unchanged = await service.get_appointment(appointment.id, admin)
        assert unchanged.status == AppointmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_booking_fails_closed_when_availability_is_unknown(
        self, service, patient, doctor
    ):
        """No appointment is created when the slot check cannot be read."""
        check = AsyncMock(side_effect=StorageFailureException())
        service.availability.repository.find_active_appointment = check

        with pytest.raises(StorageFailureException):
            await service.book(patient, booking(doctor))

        assert check.await_count == 2
        result = await service.list_appointments(AppointmentFilters(doctor_id=doctor["id"]))
        assert result.total == 0

    @pytest.mark.asyncio
    async def test_concurrent_bookings_store_one_appointment(
        self, database_url, db_session, patient, other, doctor, notifier
    ):
        """Two sessions racing for one slot: one booking wins, the other conflicts."""
        engine = create_async_engine(database_url, poolclass=NullPool)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        try:
            async with session_factory() as first, session_factory() as second:
                results = await asyncio.gather(
                    AppointmentService(first, notifier=notifier).book(patient, booking(doctor)),
                    AppointmentService(second, notifier=notifier).book(other, booking(doctor)),
                    return_exceptions=True,
                )
        finally:
            await engine.dispose()

        assert sorted(type(result).__name__ for result in results) == [
            "AppointmentResponse",
            "SlotConflictException",
        ]
        stored = await AppointmentService(db_session).list_appointments(
            AppointmentFilters(doctor_id=doctor["id"])
        )
        assert stored.total == 1
        winner = next(r for r in results if isinstance(r, AppointmentResponse))
        assert stored.items[0].id == winner.id


class TestStatistics:
    """Admin dashboard counts."""

    @pytest.mark.asyncio
    async def test_counts_by_status_and_recent(self, service, patient, admin, doctor):
        paid = await service.book(patient, booking(doctor, time="09:00"))
        cancelled = await service.book(patient, booking(doctor, time="09:30"))
        waiting = await service.book(patient, booking(doctor, time="10:00"))
        await service.record_payment(paid.id, succeeded=True)
        await service.cancel(cancelled.id, patient)

        stats = await service.stats(admin)

        assert stats.total_appointments == 3
        assert stats.appointment_stats.model_dump() == {
            "pending": 1,
            "confirmed": 1,
            "completed": 0,
            "cancelled": 1,
        }
        assert stats.payment_stats.model_dump() == {
            "pending": 2,
            "paid": 1,
            "failed": 0,
            "refunded": 0,
        }
        assert len(stats.recent_appointments) == 3
        assert stats.recent_appointments[0].id == waiting.id

        latest = await service.stats(admin, recent=1)
        assert [a.id for a in latest.recent_appointments] == [waiting.id]

    @pytest.mark.asyncio
    async def test_empty_and_admin_only(self, service, patient, admin):
        stats = await service.stats(admin)
        assert stats.total_appointments == 0
        assert stats.recent_appointments == []

        with pytest.raises(ForbiddenException):
            await service.stats(patient)


class TestAppointmentEndpoints:
    """HTTP surface for patients."""

    @pytest.mark.asyncio
    async def test_create_and_conflict(
        self, client: AsyncClient, auth_headers, other_auth_headers, doctor
    ):
        response = await client.post(
            f"{API}/appointments/", json=payload(doctor), headers=auth_headers
        )
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["payment_status"] == "pending"
        assert data["date"] == SLOT_DATE.isoformat()
        assert data["time"] == "10:00"

        response = await client.post(
            f"{API}/appointments/", json=payload(doctor), headers=other_auth_headers
        )
        assert response.status_code == 409
        assert response.json()["error"] == "SlotConflictException"

    @pytest.mark.asyncio
    async def test_availability_and_booked_slots(self, client, auth_headers, doctor):
        params = {"doctor_id": doctor["id"], "date": SLOT_DATE.isoformat(), "time": "09:00"}
        response = await client.get(
            f"{API}/appointments/availability", params=params, headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["available"] is True

        await client.post(
            f"{API}/appointments/", json=payload(doctor, "09:00"), headers=auth_headers
        )

        response = await client.get(
            f"{API}/appointments/availability", params=params, headers=auth_headers
        )
        assert response.json()["available"] is False
        assert response.json()["conflicting_appointment_id"] is not None

        response = await client.get(
            f"{API}/appointments/booked-slots",
            params={"doctor_id": doctor["id"], "date": SLOT_DATE.isoformat()},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["booked"] == ["09:00"]

    @pytest.mark.asyncio
    async def test_list_only_own_appointments(
        self, client, auth_headers, other_auth_headers, doctor
    ):
        await client.post(
            f"{API}/appointments/", json=payload(doctor, "09:00"), headers=auth_headers
        )
        await client.post(
            f"{API}/appointments/", json=payload(doctor, "09:30"), headers=other_auth_headers
        )

        response = await client.get(f"{API}/appointments/", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["time"] == "09:00"

    @pytest.mark.asyncio
    async def test_cancel_twice(self, client, auth_headers, doctor, notifier):
        created = await client.post(
            f"{API}/appointments/", json=payload(doctor), headers=auth_headers
        )
        appointment_id = created.json()["id"]

        response = await client.patch(
            f"{API}/appointments/{appointment_id}/cancel", headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        notifier.on_transition.assert_awaited_once()

        response = await client.patch(
            f"{API}/appointments/{appointment_id}/cancel", headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidTransitionException"

    @pytest.mark.asyncio
    async def test_other_patient_forbidden(self, client, auth_headers, other_auth_headers, doctor):
        created = await client.post(
            f"{API}/appointments/", json=payload(doctor), headers=auth_headers
        )
        appointment_id = created.json()["id"]

        response = await client.get(
            f"{API}/appointments/{appointment_id}", headers=other_auth_headers
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_not_found(self, client, auth_headers):
        response = await client.get(f"{API}/appointments/9999", headers=auth_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_blank_symptoms_rejected(self, client, auth_headers, doctor):
        body = payload(doctor)
        body["symptoms"] = "   "
        response = await client.post(f"{API}/appointments/", json=body, headers=auth_headers)
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client, doctor):
        response = await client.post(f"{API}/appointments/", json=payload(doctor))
        assert response.status_code in (401, 403)

        response = await client.get(
            f"{API}/appointments/", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401


class TestAdminEndpoints:
    """HTTP surface for admins."""

    @pytest.mark.asyncio
    async def test_confirm_complete_flow(self, client, auth_headers, admin_headers, doctor):
        created = await client.post(
            f"{API}/appointments/", json=payload(doctor), headers=auth_headers
        )
        appointment_id = created.json()["id"]

        response = await client.patch(
            f"{API}/admin/appointments/{appointment_id}/complete", headers=admin_headers
        )
        assert response.status_code == 400

        response = await client.patch(
            f"{API}/admin/appointments/{appointment_id}/confirm", headers=auth_headers
        )
        assert response.status_code == 403

        response = await client.patch(
            f"{API}/admin/appointments/{appointment_id}/confirm", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

        response = await client.patch(
            f"{API}/admin/appointments/{appointment_id}/complete", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_status_override(self, client, auth_headers, admin_headers, doctor):
        created = await client.post(
            f"{API}/appointments/", json=payload(doctor), headers=auth_headers
        )
        appointment_id = created.json()["id"]

        response = await client.patch(
            f"{API}/admin/appointments/{appointment_id}/status",
            json={"status": "cancelled", "notes": "Doctor unavailable"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["notes"] == "Doctor unavailable"

    @pytest.mark.asyncio
    async def test_list_with_filters(self, client, auth_headers, admin_headers, doctor):
        for time in ("09:00", "09:30", "10:00"):
            await client.post(
                f"{API}/appointments/", json=payload(doctor, time), headers=auth_headers
            )

        response = await client.get(
            f"{API}/admin/appointments",
            params={"status": "pending", "page_size": 2},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert data["total_pages"] == 2
        assert len(data["appointments"]) == 2

        response = await client.get(f"{API}/admin/appointments", headers=auth_headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_stats(self, client, auth_headers, admin_headers, doctor):
        await client.post(f"{API}/appointments/", json=payload(doctor), headers=auth_headers)

        response = await client.get(f"{API}/admin/appointments/stats", headers=admin_headers)
        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "private, max-age=30"
        data = response.json()
        assert data["total_appointments"] == 1
        assert data["appointment_stats"]["pending"] == 1
        assert data["payment_stats"]["pending"] == 1
        assert len(data["recent_appointments"]) == 1

        response = await client.get(f"{API}/admin/appointments/stats", headers=auth_headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_booking_forbidden(self, client, admin_headers, doctor):
        response = await client.post(
            f"{API}/appointments/", json=payload(doctor), headers=admin_headers
        )
        assert response.status_code == 403
