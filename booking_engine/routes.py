"""
Direct Booking Engine - API Routes

Public endpoints used by the booking site: availability quotes, booking
creation, self-service lookup, payment initiation/verification,
cancellation and the published cancellation policy.
"""

# =============================================================================
# IMPORTS & CONFIGURATION
# =============================================================================

from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from redis import asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .bookings import create_booking as create_booking_record
from .bookings import lookup_booking as lookup_booking_record
from .cancellation import cancel_booking as cancel_booking_record
from .cancellation import quote_cancellation
from .database import get_db
from .effects import run_best_effort
from .notifications import send_booking_email
from .payments import initiate_payment, verify_payment as verify_payment_record
from .paystack import PaystackClient
from .pricing import quote
from .rate_limiter import create_booking_limit, rate_limit, verify_payment_limit
from .schemas import (
    AvailabilityCheckRequest,
    AvailabilityCheckResponse,
    BookingCancelRequest,
    BookingCancelResponse,
    BookingCreatedResponse,
    BookingCreateRequest,
    BookingLookupRequest,
    BookingLookupResponse,
    BookingOut,
    CancellationCustomer,
    CancellationPolicyResponse,
    CancellationProperty,
    CancellationQuoteRequest,
    CancellationQuoteResponse,
    CancelledBookingOut,
    CustomerOut,
    PaymentInitResponse,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
    PriceBreakdownOut,
    PropertyOut,
    RefundOut,
    TransactionSummary,
)
from .settings_store import get_cancellation_policy_with_version

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["booking-engine"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_paystack(request: Request) -> PaystackClient:
    return request.app.state.paystack


def get_redis(request: Request) -> Optional[aioredis.Redis]:
    return getattr(request.app.state, "redis", None)


# =============================================================================
# AVAILABILITY
# =============================================================================

@router.post("/bookings/check-availability", response_model=AvailabilityCheckResponse)
async def check_availability(
    request: AvailabilityCheckRequest,
    db: AsyncSession = Depends(get_db),
) -> AvailabilityCheckResponse:
    """
    Check availability and get pricing for a property and date range.

    Advisory only: booking creation re-checks under the calendar lock.
    """
    availability, breakdown = await quote(
        db, request.property_id, request.check_in, request.check_out, request.num_guests
    )
    if not availability.available:
        return AvailabilityCheckResponse(
            available=False,
            message="Property is not available for the selected dates",
        )

    return AvailabilityCheckResponse(
        available=True,
        price_breakdown=PriceBreakdownOut.model_validate(breakdown),
    )


# =============================================================================
# BOOKINGS
# =============================================================================

@router.post(
    "/bookings",
    response_model=BookingCreatedResponse,
    dependencies=[Depends(rate_limit(create_booking_limit))],
)
async def create_booking(
    request: BookingCreateRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    redis: Optional[aioredis.Redis] = Depends(get_redis),
) -> BookingCreatedResponse:
    """Create a pending booking priced server-side."""
    booking, _ = await create_booking_record(db, request, redis=redis)

    background_tasks.add_task(
        run_best_effort,
        "audit",
        record_audit,
        "booking.created",
        user_email=request.guest_info.email,
        details={"booking_number": booking.booking_number, "source": "website"},
    )

    return BookingCreatedResponse(
        booking=BookingOut.model_validate(booking),
        customer_id=booking.customer_id,
    )


@router.post("/bookings/lookup", response_model=BookingLookupResponse)
async def lookup_booking(
    request: BookingLookupRequest,
    db: AsyncSession = Depends(get_db),
) -> BookingLookupResponse:
    """Self-service booking retrieval by booking number and email."""
    booking = await lookup_booking_record(db, request.booking_number, request.email)
    return BookingLookupResponse(
        booking=BookingOut.model_validate(booking),
        customer=CustomerOut.model_validate(booking.customer),
        property=PropertyOut.model_validate(booking.property),
    )


# =============================================================================
# PAYMENTS
# =============================================================================

@router.post("/bookings/{booking_id}/payment", response_model=PaymentInitResponse)
async def start_payment(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
) -> PaymentInitResponse:
    """Reference, amount and keys for the hosted payment popup."""
    initiation = await initiate_payment(db, booking_id)
    return PaymentInitResponse(
        reference=initiation.reference,
        amount=initiation.amount,
        currency=initiation.currency,
        public_key=initiation.public_key,
        email=initiation.email,
        booking_number=initiation.booking_number,
        metadata=initiation.metadata,
    )


@router.post(
    "/payments/verify",
    response_model=PaymentVerifyResponse,
    dependencies=[Depends(rate_limit(verify_payment_limit))],
)
async def verify_payment(
    request: PaymentVerifyRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    paystack: PaystackClient = Depends(get_paystack),
) -> PaymentVerifyResponse:
    """
    Verify a payment with Paystack and confirm the booking.

    The confirmation email is sent after the commit and never affects
    the response.
    """
    outcome = await verify_payment_record(db, request, paystack)
    booking = outcome.booking

    if outcome.reconciliation is None:
        background_tasks.add_task(
            run_best_effort,
            "confirmation_email",
            send_booking_email,
            booking.id,
            "confirmation",
            {"transaction_ref": outcome.transaction.payment_reference},
        )
    background_tasks.add_task(
        run_best_effort,
        "audit",
        record_audit,
        "payment.verified" if outcome.reconciliation is None else "payment.needs_reconciliation",
        user_email=outcome.verified.customer_email,
        details={
            "booking_number": booking.booking_number,
            "reference": outcome.transaction.payment_reference,
            "amount": str(outcome.transaction.amount),
            "reconciliation": outcome.reconciliation,
        },
    )

    return PaymentVerifyResponse(
        message=(
            "Payment verified and processed successfully"
            if outcome.reconciliation is None
            else "Payment verified and recorded for reconciliation"
        ),
        booking=BookingOut.model_validate(booking),
        transaction=TransactionSummary(
            id=outcome.transaction.id,
            reference=outcome.transaction.payment_reference,
            amount=outcome.transaction.amount,
            channel=outcome.verified.channel,
            paid_at=outcome.verified.paid_at,
        ),
        warning=outcome.warning,
        reconciliation=outcome.reconciliation,
    )


# =============================================================================
# CANCELLATION
# =============================================================================

@router.post("/bookings/cancellation-quote", response_model=CancellationQuoteResponse)
async def cancellation_quote(
    request: CancellationQuoteRequest,
    db: AsyncSession = Depends(get_db),
) -> CancellationQuoteResponse:
    """Refund the customer would get by cancelling now."""
    result = await quote_cancellation(db, request.booking_id, request.email)
    return CancellationQuoteResponse(
        booking_number=result.booking.booking_number,
        days_until_check_in=result.days_until_check_in,
        refund=RefundOut(
            amount=result.refund.amount,
            percent=result.refund.percent,
            message=result.refund.message,
        ),
        policy=result.policy,
    )


@router.post("/bookings/cancel", response_model=BookingCancelResponse)
async def cancel_booking(
    request: BookingCancelRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    paystack: PaystackClient = Depends(get_paystack),
) -> BookingCancelResponse:
    """
    Cancel a booking.

    If payment was made, refunds according to the cancellation policy.
    """
    outcome = await cancel_booking_record(
        db, request.booking_id, request.email, request.reason, paystack
    )
    booking = outcome.booking

    background_tasks.add_task(
        run_best_effort,
        "cancellation_email",
        send_booking_email,
        booking.id,
        "cancellation",
        {"refund_amount": outcome.refund.amount, "refund_message": outcome.refund.message},
    )
    background_tasks.add_task(
        run_best_effort,
        "audit",
        record_audit,
        "booking.cancelled",
        user_email=booking.customer.email,
        details={
            "booking_number": booking.booking_number,
            "refund_amount": str(outcome.refund.amount),
            "refund_percent": str(outcome.refund.percent),
        },
    )

    return BookingCancelResponse(
        message="Booking cancelled successfully",
        booking=CancelledBookingOut(
            id=booking.id,
            booking_number=booking.booking_number,
            status=booking.status,
            payment_status=booking.payment_status,
        ),
        refund=RefundOut(
            amount=outcome.refund.amount,
            percent=outcome.refund.percent,
            message=outcome.refund.message,
            processed=outcome.refund_processed,
            provider_refund_id=outcome.provider_refund.refund_id if outcome.refund_processed else None,
        ),
        housekeeping_tasks_cancelled=outcome.housekeeping_tasks_cancelled,
        customer=CancellationCustomer(name=booking.customer.full_name, email=booking.customer.email),
        property=CancellationProperty(name=booking.property.name),
    )


# =============================================================================
# SETTINGS
# =============================================================================

@router.get("/settings/cancellation-policy", response_model=CancellationPolicyResponse)
async def get_cancellation_policy(
    db: AsyncSession = Depends(get_db),
) -> CancellationPolicyResponse:
    """Published cancellation policy for the booking site."""
    policy, version = await get_cancellation_policy_with_version(db)
    return CancellationPolicyResponse(policy=policy, version=version)
