"""Simulated payment endpoints."""

from fastapi import APIRouter, status

from app.dependencies import CurrentActor, Payments
from app.schemas.payments import (
    PaymentDetailsResponse,
    PaymentIntentCreate,
    PaymentIntentResponse,
    PaymentProcessRequest,
    PaymentProcessResponse,
)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post(
    "/create-intent",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_200_OK,
    summary="Create payment intent",
)
async def create_payment_intent(
    data: PaymentIntentCreate,
    actor: CurrentActor,
    payments: Payments,
) -> PaymentIntentResponse:
    """
    Create a payment intent for one of the caller's appointments.

    Args:
        data: Appointment to pay for
        actor: Authenticated user
        payments: Payment service

    Returns:
        Client secret and amount to charge
    """
    return await payments.create_intent(data.appointment_id, actor)


@router.post(
    "/process",
    response_model=PaymentProcessResponse,
    status_code=status.HTTP_200_OK,
    summary="Process payment",
)
async def process_payment(
    data: PaymentProcessRequest,
    actor: CurrentActor,
    payments: Payments,
) -> PaymentProcessResponse:
    """
    Settle a payment intent.

    A declined (simulated) payment is reported with ``success`` false and
    leaves the appointment in place so the patient can retry.

    Raises:
        InvalidIntentException: If the client secret does not validate
    """
    return await payments.process_intent(
        data.appointment_id,
        data.client_secret,
        actor,
        simulate_failure=data.simulate_failure,
    )


@router.get(
    "/appointments/{appointment_id}",
    response_model=PaymentDetailsResponse,
    status_code=status.HTTP_200_OK,
    summary="Get payment details",
)
async def get_payment_details(
    appointment_id: int,
    actor: CurrentActor,
    payments: Payments,
) -> PaymentDetailsResponse:
    """Payment details for an appointment."""
    return await payments.get_payment_details(appointment_id, actor)
