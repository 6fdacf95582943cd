"""Transition rules for the appointment status / payment status pair.

The rules are pure: ``decide`` looks at the current pair and an event and
either returns the next pair, reports that the event changes nothing, or
raises ``InvalidTransitionException``. Persisting the decision and notifying
the patient is the job of ``AppointmentService``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import NoReturn

from app.core.exceptions import InvalidTransitionException
from app.schemas.appointments import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AppointmentStatus,
    PaymentStatus,
)

MESSAGE_CONFIRMED = "Your appointment has been confirmed by the doctor."
MESSAGE_CANCELLED = "Your appointment has been cancelled."
MESSAGE_COMPLETED = "Your appointment has been marked as completed."
MESSAGE_PAYMENT_SUCCEEDED = "Payment received. Your appointment is confirmed."
MESSAGE_PAYMENT_FAILED = "Payment failed, please retry."
MESSAGE_REFUNDED = "Your payment has been refunded."


class EventType(str, Enum):
    """Events accepted by the state machine."""

    BOOK = "book"
    ADMIN_CONFIRM = "admin_confirm"
    ADMIN_COMPLETE = "admin_complete"
    CANCEL = "cancel"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    ADMIN_REFUND = "admin_refund"
    ADMIN_SET_STATUS = "admin_set_status"


@dataclass(frozen=True)
class AppointmentState:
    """Status and payment status of one appointment."""

    status: AppointmentStatus
    payment_status: PaymentStatus

    @classmethod
    def from_row(cls, row: dict) -> "AppointmentState":
        """Build a state from a persisted appointment row."""
        return cls(AppointmentStatus(row["status"]), PaymentStatus(row["payment_status"]))

    def __str__(self) -> str:
        return f"({self.status.value}, {self.payment_status.value})"


@dataclass(frozen=True)
class Event:
    """An event fired against an appointment.

    ``actor`` identifies who fired it (used for audit logging); ``status`` and
    ``notes`` are only meaningful for ``ADMIN_SET_STATUS``.
    """

    type: EventType
    actor: str | None = None
    status: AppointmentStatus | None = None
    notes: str | None = None


@dataclass(frozen=True)
class Decision:
    """Outcome of applying an event to a state."""

    current: AppointmentState
    next: AppointmentState
    reason: str
    notify: bool
    notes: str | None = None
    context: dict = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        """True when nothing needs to be written."""
        return self.current == self.next and self.notes is None


def initial_state() -> AppointmentState:
    """State of a freshly booked appointment."""
    return AppointmentState(AppointmentStatus.PENDING, PaymentStatus.PENDING)


def status_change_message(old: AppointmentStatus, new: AppointmentStatus) -> str:
    """Human readable reason for a status change."""
    if new == AppointmentStatus.CONFIRMED:
        return MESSAGE_CONFIRMED
    if new == AppointmentStatus.CANCELLED:
        return MESSAGE_CANCELLED
    if new == AppointmentStatus.COMPLETED:
        return MESSAGE_COMPLETED
    return f"Your appointment status has changed from {old.value} to {new.value}."


def _reject(current: AppointmentState, target: str, message: str | None = None) -> NoReturn:
    raise InvalidTransitionException(current.status.value, target, message)


def _reject_payment(current: AppointmentState, target: PaymentStatus) -> NoReturn:
    # Payment rules depend on both columns, so name the full pair
    raise InvalidTransitionException(str(current), target.value)


def _noop(current: AppointmentState, reason: str) -> Decision:
    return Decision(current=current, next=current, reason=reason, notify=False)


def _cancelled(current: AppointmentState) -> AppointmentState:
    # A paid appointment that is cancelled becomes refund-pending
    payment = current.payment_status
    if payment == PaymentStatus.PAID:
        payment = PaymentStatus.REFUNDED
    return AppointmentState(AppointmentStatus.CANCELLED, payment)


def decide(
    current: AppointmentState,
    event: Event,
    require_payment_for_completion: bool = False,
) -> Decision:
    """
    Apply an event to the current state.

    Args:
        current: Current status pair
        event: Event to apply
        require_payment_for_completion: Reject completing unpaid appointments

    Returns:
        Decision carrying the next state, or a no-op decision

    Raises:
        InvalidTransitionException: If the event is not legal from ``current``
    """
    status = current.status
    payment = current.payment_status

    if event.type == EventType.BOOK:
        # Booking only ever creates a new record
        _reject(current, AppointmentStatus.PENDING.value, "Appointment already exists")

    if event.type == EventType.PAYMENT_SUCCEEDED:
        if payment == PaymentStatus.PAID:
            return _noop(current, "payment already captured")
        if status not in ACTIVE_STATUSES or payment == PaymentStatus.REFUNDED:
            _reject_payment(current, PaymentStatus.PAID)
        # Payment implies confirmation
        next_state = AppointmentState(AppointmentStatus.CONFIRMED, PaymentStatus.PAID)
        return Decision(current, next_state, MESSAGE_PAYMENT_SUCCEEDED, notify=True)

    if event.type == EventType.PAYMENT_FAILED:
        if payment == PaymentStatus.FAILED:
            return _noop(current, "payment failure already recorded")
        if status not in ACTIVE_STATUSES or payment != PaymentStatus.PENDING:
            _reject_payment(current, PaymentStatus.FAILED)
        next_state = AppointmentState(status, PaymentStatus.FAILED)
        return Decision(current, next_state, MESSAGE_PAYMENT_FAILED, notify=True)

    if event.type == EventType.ADMIN_CONFIRM:
        if status != AppointmentStatus.PENDING:
            _reject(current, AppointmentStatus.CONFIRMED.value)
        next_state = AppointmentState(AppointmentStatus.CONFIRMED, payment)
        return Decision(current, next_state, MESSAGE_CONFIRMED, notify=True)

    if event.type == EventType.ADMIN_COMPLETE:
        if status != AppointmentStatus.CONFIRMED:
            _reject(current, AppointmentStatus.COMPLETED.value)
        if require_payment_for_completion and payment != PaymentStatus.PAID:
            _reject(
                current,
                AppointmentStatus.COMPLETED.value,
                f"Cannot complete an appointment while payment is {payment.value}",
            )
        next_state = AppointmentState(AppointmentStatus.COMPLETED, payment)
        return Decision(current, next_state, MESSAGE_COMPLETED, notify=True)

    if event.type == EventType.CANCEL:
        if status in TERMINAL_STATUSES:
            message = (
                "This appointment is already cancelled"
                if status == AppointmentStatus.CANCELLED
                else "Cannot cancel a completed appointment"
            )
            _reject(current, AppointmentStatus.CANCELLED.value, message)
        next_state = _cancelled(current)
        context = {"refund_pending": next_state.payment_status != payment}
        return Decision(current, next_state, MESSAGE_CANCELLED, notify=True, context=context)

    if event.type == EventType.ADMIN_REFUND:
        if status != AppointmentStatus.CONFIRMED or payment != PaymentStatus.PAID:
            _reject_payment(current, PaymentStatus.REFUNDED)
        next_state = AppointmentState(status, PaymentStatus.REFUNDED)
        return Decision(current, next_state, MESSAGE_REFUNDED, notify=True)

    if event.type == EventType.ADMIN_SET_STATUS:
        if event.status is None:
            _reject(current, "unknown", "A target status is required")
        target = event.status
        if target == status:
            return Decision(current, current, "notes updated", notify=False, notes=event.notes)
        if target == AppointmentStatus.CANCELLED:
            next_state = _cancelled(current)
        else:
            next_state = AppointmentState(target, payment)
        return Decision(
            current,
            next_state,
            status_change_message(status, target),
            notify=True,
            notes=event.notes,
            context={"override": True},
        )

    _reject(current, "unknown", f"Unsupported event {event.type}")
