"""Simulated payment processing.

Stands in for a real gateway: intents are never stored. The client secret is
signed with the application key so it can be validated on its own, and the
appointment's payment status (written through the state machine) is the only
durable record of a payment.
"""

import hashlib
import hmac
import re
import time
from collections.abc import Callable
from decimal import Decimal

import structlog
from app.config import settings
from app.core.exceptions import InvalidIntentException, InvalidTransitionException
from app.schemas.appointments import (
    ACTIVE_STATUSES,
    AppointmentFilters,
    AppointmentResponse,
    AppointmentStatus,
    PaymentStatus,
)
from app.schemas.payments import (
    DoctorSummary,
    PaymentDetailsResponse,
    PaymentIntentResponse,
    PaymentListResponse,
    PaymentProcessResponse,
    PaymentRecord,
)
from app.services.appointment_service import AppointmentService
from app.services.authorization_service import Actor, AuthorizationService

logger = structlog.get_logger(__name__)

SECRET_PREFIX = "mock_pi_"
SECRET_PATTERN = re.compile(
    r"^mock_pi_(?P<appointment_id>\d+)_(?P<issued_at>\d+)_secret_(?P<signature>[0-9a-f]{32})$"
)
# Tolerated clock skew for secrets issued "in the future"
CLOCK_SKEW_SECONDS = 60

LEDGER_STATUS = {
    PaymentStatus.PENDING: "pending",
    PaymentStatus.PAID: "completed",
    PaymentStatus.FAILED: "failed",
    PaymentStatus.REFUNDED: "refunded",
}


class PaymentService:
    """Issues and settles simulated payment intents."""

    def __init__(
        self,
        appointments: AppointmentService,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize service with the appointment service that owns transitions."""
        self.appointments = appointments
        self.doctors = appointments.doctors
        self.clock = clock
        self.secret_key = settings.jwt_secret_key.encode()
        self.currency = settings.payment_currency
        self.fallback_amount = settings.payment_fallback_amount
        self.intent_ttl = settings.payment_intent_ttl_seconds

    def _sign(self, appointment_id: int, issued_at: int) -> str:
        message = f"{appointment_id}:{issued_at}".encode()
        return hmac.new(self.secret_key, message, hashlib.sha256).hexdigest()[:32]

    def issue_secret(self, appointment_id: int) -> str:
        """Build a signed client secret for an appointment."""
        issued_at = int(self.clock())
        signature = self._sign(appointment_id, issued_at)
        return f"{SECRET_PREFIX}{appointment_id}_{issued_at}_secret_{signature}"

    def validate_secret(self, appointment_id: int, client_secret: str) -> str:
        """
        Check a client secret's shape, signature, correlation and age.

        Returns:
            The secret's signature, stable for the lifetime of the intent

        Raises:
            InvalidIntentException: On any mismatch
        """
        if not client_secret.startswith(SECRET_PREFIX):
            raise InvalidIntentException()

        match = SECRET_PATTERN.match(client_secret)
        if not match:
            raise InvalidIntentException("Malformed client secret")

        if int(match["appointment_id"]) != appointment_id:
            raise InvalidIntentException("Client secret does not belong to this appointment")

        issued_at = int(match["issued_at"])
        expected = self._sign(appointment_id, issued_at)
        if not hmac.compare_digest(expected, match["signature"]):
            raise InvalidIntentException("Client secret signature mismatch")

        age = self.clock() - issued_at
        if age > self.intent_ttl or age < -CLOCK_SKEW_SECONDS:
            raise InvalidIntentException("Client secret has expired")

        return match["signature"]

    async def amount_for(self, doctor_id: int) -> Decimal:
        """Consultation fee for a doctor, or the configured fallback."""
        doctor = await self.doctors.get_doctor(doctor_id)
        return self.doctors.consultation_fee(doctor, self.fallback_amount)

    async def create_intent(self, appointment_id: int, actor: Actor) -> PaymentIntentResponse:
        """
        Create a payment intent for an appointment.

        Args:
            appointment_id: Appointment to pay for
            actor: Patient paying (or an admin)

        Returns:
            Intent carrying the client secret and amount

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If the actor may not pay for this appointment
            InvalidTransitionException: If the appointment cannot take a payment
        """
        row = await self.appointments.get_record(appointment_id)
        AuthorizationService.ensure_can_access(actor, row)

        status = AppointmentStatus(row["status"])
        payment_status = PaymentStatus(row["payment_status"])
        if status not in ACTIVE_STATUSES or payment_status in (
            PaymentStatus.PAID,
            PaymentStatus.REFUNDED,
        ):
            raise InvalidTransitionException(
                status.value,
                PaymentStatus.PAID.value,
                f"Appointment cannot be paid (status {status.value}, "
                f"payment {payment_status.value})",
            )

        amount = await self.amount_for(row["doctor_id"])
        client_secret = self.issue_secret(appointment_id)

        logger.info(
            "payment_intent_created",
            appointment_id=appointment_id,
            actor=actor.label,
            amount=str(amount),
            currency=self.currency,
        )
        return PaymentIntentResponse(
            appointment_id=appointment_id,
            client_secret=client_secret,
            amount=amount,
            currency=self.currency,
        )

    async def process_intent(
        self,
        appointment_id: int,
        client_secret: str,
        actor: Actor,
        simulate_failure: bool = False,
    ) -> PaymentProcessResponse:
        """
        Settle a payment intent and drive the payment transition.

        Processing an already-settled intent again is harmless: the state
        machine treats the repeated success as a no-op, so nothing is written
        and no second notification goes out.

        Raises:
            InvalidIntentException: If the client secret does not validate
            NotFoundException: If appointment not found
            ForbiddenException: If the actor may not pay for this appointment
            InvalidTransitionException: If the appointment cannot take a payment
        """
        signature = self.validate_secret(appointment_id, client_secret)

        row = await self.appointments.get_record(appointment_id)
        AuthorizationService.ensure_can_access(actor, row)

        appointment = await self.appointments.record_payment(
            appointment_id,
            succeeded=not simulate_failure,
            actor=actor.label,
        )

        if simulate_failure:
            logger.info("payment_failed", appointment_id=appointment_id, actor=actor.label)
            return PaymentProcessResponse(
                success=False,
                message="Payment failed, please retry",
                appointment=appointment,
            )

        logger.info("payment_processed", appointment_id=appointment_id, actor=actor.label)
        return PaymentProcessResponse(
            success=True,
            message="Payment processed successfully",
            payment_id=f"mock_payment_{appointment_id}_{signature[:12]}",
            appointment=appointment,
        )

    async def get_payment_details(
        self,
        appointment_id: int,
        actor: Actor,
    ) -> PaymentDetailsResponse:
        """Payment information for one appointment."""
        row = await self.appointments.get_record(appointment_id)
        AuthorizationService.ensure_can_access(actor, row)

        doctor = await self.doctors.get_doctor(row["doctor_id"])
        return PaymentDetailsResponse(
            appointment_id=appointment_id,
            amount=self.doctors.consultation_fee(doctor, self.fallback_amount),
            currency=self.currency,
            payment_status=PaymentStatus(row["payment_status"]),
            doctor=(
                DoctorSummary(
                    id=doctor["id"],
                    name=doctor["name"],
                    specialty=doctor.get("specialty"),
                )
                if doctor
                else None
            ),
            date=row["date"],
            time=row["time"],
        )

    async def refund(self, appointment_id: int, actor: Actor) -> PaymentRecord:
        """Admin refund, returned as a ledger entry."""
        appointment = await self.appointments.refund(appointment_id, actor)
        return await self._to_record(appointment)

    async def list_payments(
        self,
        actor: Actor,
        filters: AppointmentFilters,
    ) -> PaymentListResponse:
        """Admin view of every appointment as a payment ledger entry."""
        AuthorizationService.ensure_admin(actor)
        page = await self.appointments.list_appointments(filters)

        records = [await self._to_record(item) for item in page.items]
        return PaymentListResponse(
            payments=records,
            total=page.total,
            page=page.page,
            page_size=page.page_size,
            total_pages=(page.total + page.page_size - 1) // page.page_size,
        )

    async def _to_record(self, appointment: AppointmentResponse) -> PaymentRecord:
        return PaymentRecord(
            id=appointment.id,
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            amount=await self.amount_for(appointment.doctor_id),
            currency=self.currency,
            status=LEDGER_STATUS[appointment.payment_status],
            transaction_id=f"TRANS-{appointment.id}",
            created_at=appointment.created_at,
            updated_at=appointment.updated_at,
        )
