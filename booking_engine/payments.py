"""
Payment Initiation & Verification
=================================

Payments are taken in the Paystack popup. The browser only reports that
the popup closed; the booking is marked paid solely after the server has
re-verified the reference with Paystack and matched the charged amount
against the booking's own total.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from .bookings import get_booking, parse_booking_id, transition
from .config import settings
from .exceptions import Conflict, NotFound, StateConflict, UpstreamError, ValidationFailed
from .models import (
    Booking,
    BookingStatus,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from .paystack import (
    PaymentProviderError,
    PaystackClient,
    ProviderNotConfigured,
    ProviderRequestError,
    VerifiedTransaction,
    parse_paid_at,
)
from .pricing import to_minor_units
from .schemas import PaymentVerifyRequest

logger = structlog.get_logger(__name__)

PAYMENT_VERIFICATIONS = Counter(
    "booking_payment_verifications_total",
    "Payment verification attempts by result",
    ["result"]
)


@dataclass
class PaymentInitiation:
    reference: str
    amount: int
    currency: str
    public_key: str
    email: str
    booking_number: str
    metadata: Dict[str, Any]


@dataclass
class VerificationOutcome:
    booking: Booking
    transaction: Transaction
    verified: VerifiedTransaction
    warning: Optional[str] = None
    # Set when the charge was recorded without confirming the booking
    reconciliation: Optional[str] = None


def generate_payment_reference(booking_id) -> str:
    """Fresh reference per attempt, bound to the booking id."""
    return f"BK{str(booking_id)[:8]}-{int(time.time() * 1000)}-{random.randint(0, 999)}"


# =============================================================================
# INITIATION
# =============================================================================

async def initiate_payment(db: AsyncSession, booking_id: str) -> PaymentInitiation:
    """Parameters for the hosted Paystack popup."""
    booking_uuid = parse_booking_id(booking_id)
    booking = await get_booking(db, booking_uuid, with_relations=True) if booking_uuid else None
    if booking is None:
        raise NotFound("Booking not found", reason="booking_not_found")

    if booking.status == BookingStatus.CANCELLED.value:
        raise StateConflict("Booking has been cancelled", reason="invalid_booking_state")
    if booking.payment_status != PaymentStatus.PENDING.value:
        raise StateConflict("Booking has already been paid", reason="invalid_booking_state")

    # Holds the reservation open while the popup is in progress
    booking.payment_initiated_at = utcnow()
    await db.commit()

    return PaymentInitiation(
        reference=generate_payment_reference(booking.id),
        amount=to_minor_units(booking.total_amount),
        currency=settings.PAYMENT_CURRENCY,
        public_key=settings.PAYSTACK_PUBLIC_KEY,
        email=booking.customer.email,
        booking_number=booking.booking_number,
        metadata={
            "booking_id": str(booking.id),
            "booking_number": booking.booking_number,
            "property_id": str(booking.property_id),
            "property_name": booking.property.name,
            "customer_name": booking.customer.full_name,
        },
    )


# =============================================================================
# VERIFICATION
# =============================================================================

async def completed_transaction_exists(db: AsyncSession, reference: str) -> bool:
    result = await db.execute(
        select(Transaction.id).where(
            and_(
                Transaction.payment_reference == reference,
                Transaction.status == TransactionStatus.COMPLETED.value,
            )
        )
    )
    return result.first() is not None


async def verify_payment(
    db: AsyncSession,
    request: PaymentVerifyRequest,
    paystack: PaystackClient,
) -> VerificationOutcome:
    """
    Verify a payment and mark the booking paid.

    Order of checks:
    1. reference and bookingId present
    2. no completed transaction with this reference
    3. booking exists
    4. Paystack reports the charge as successful
    5. charged kobo == booking total in kobo

    The client-reported amount is only logged. A genuine charge against a
    booking that is cancelled or already paid is still recorded as a
    completed transaction, leaving the booking untouched, and the outcome
    carries a ``reconciliation`` reason.

    Raises:
        ValidationFailed: missing_fields, payment_not_successful, amount_mismatch
        Conflict: already_processed
        NotFound: booking_not_found
        UpstreamError: provider_error
    """
    if not request.reference or not request.booking_id:
        PAYMENT_VERIFICATIONS.labels(result="missing_fields").inc()
        raise ValidationFailed("Missing required fields: reference, bookingId", reason="missing_fields")

    reference = request.reference.strip()
    log = logger.bind(reference=reference, booking_id=request.booking_id)
    log.info("Verifying payment")

    if await completed_transaction_exists(db, reference):
        PAYMENT_VERIFICATIONS.labels(result="already_processed").inc()
        log.warning("Payment reference already processed")
        raise Conflict("Payment has already been processed", reason="already_processed")

    booking_uuid = parse_booking_id(request.booking_id)
    booking = None
    if booking_uuid:
        result = await db.execute(
            select(Booking).options(joinedload(Booking.property)).where(Booking.id == booking_uuid)
        )
        booking = result.scalar_one_or_none()
    if booking is None:
        PAYMENT_VERIFICATIONS.labels(result="booking_not_found").inc()
        raise NotFound("Booking not found", reason="booking_not_found")

    expected_kobo = to_minor_units(booking.total_amount)
    if request.amount is not None and to_minor_units(request.amount) != expected_kobo:
        log.warning(
            "Client amount differs from booking total",
            client_amount=str(request.amount),
            booking_total=str(booking.total_amount),
        )

    try:
        verified = await paystack.verify_transaction(reference)
    except ProviderNotConfigured as e:
        PAYMENT_VERIFICATIONS.labels(result="provider_error").inc()
        log.error("Payment provider not configured")
        raise UpstreamError(e.message, reason="provider_not_configured", status_code=503)
    except ProviderRequestError as e:
        PAYMENT_VERIFICATIONS.labels(result="provider_error").inc()
        log.error("Payment provider unavailable", error=e.message)
        raise UpstreamError("Payment provider unavailable. Please try again.", reason="provider_error")
    except PaymentProviderError as e:
        PAYMENT_VERIFICATIONS.labels(result="payment_not_successful").inc()
        log.warning("Payment verification failed", error=e.message, status_code=e.status_code)
        raise ValidationFailed("Payment verification failed", reason="payment_not_successful")

    if not verified.successful:
        PAYMENT_VERIFICATIONS.labels(result="payment_not_successful").inc()
        log.warning("Payment not successful", payment_status=verified.status)
        raise ValidationFailed(
            f"Payment not successful (status: {verified.status})",
            reason="payment_not_successful",
        )

    if verified.amount != expected_kobo:
        PAYMENT_VERIFICATIONS.labels(result="amount_mismatch").inc()
        log.error("Payment amount mismatch", expected=expected_kobo, received=verified.amount)
        raise ValidationFailed("Payment amount mismatch", reason="amount_mismatch")

    warning = None
    reconciliation = None
    if booking.status == BookingStatus.CANCELLED.value:
        reconciliation = "booking_cancelled"
        warning = "Booking was cancelled before payment completed; payment recorded for refund"
    elif booking.payment_status != PaymentStatus.PENDING.value:
        reconciliation = "already_paid"
        warning = f"Booking was already {booking.payment_status}; payment recorded for reconciliation"

    metadata = dict(request.metadata or {})
    metadata.update({
        "paystack_reference": reference,
        "paystack_transaction_id": verified.id,
        "paystack_channel": verified.channel,
        "customer_email": verified.customer_email,
        "client_amount": str(request.amount) if request.amount is not None else None,
    })
    if reconciliation:
        metadata["reconciliation"] = reconciliation
        metadata["booking_cancelled"] = reconciliation == "booking_cancelled"

    transaction = Transaction(
        transaction_type=TransactionType.BOOKING.value,
        category="accommodation",
        amount=booking.total_amount,
        currency=verified.currency or settings.PAYMENT_CURRENCY,
        booking_id=booking.id,
        customer_id=booking.customer_id,
        payment_method=settings.PAYMENT_METHOD_GATEWAY,
        payment_reference=reference,
        status=TransactionStatus.COMPLETED.value,
        description=f"Payment for booking {booking.booking_number} - {booking.property.name}",
        processed_at=parse_paid_at(verified.paid_at),
        metadata_json=metadata,
    )
    db.add(transaction)

    if reconciliation is None:
        booking.payment_status = PaymentStatus.PAID.value
        if booking.status == BookingStatus.PENDING.value:
            transition(booking, BookingStatus.CONFIRMED)

    try:
        await db.commit()
    except IntegrityError:
        # A concurrent verification with this reference committed first
        await db.rollback()
        PAYMENT_VERIFICATIONS.labels(result="already_processed").inc()
        log.warning("Payment reference committed concurrently")
        raise Conflict("Payment has already been processed", reason="already_processed")

    if reconciliation:
        PAYMENT_VERIFICATIONS.labels(result=reconciliation).inc()
        log.warning(
            "Payment recorded for reconciliation",
            booking_number=booking.booking_number,
            booking_status=booking.status,
            reconciliation=reconciliation,
            transaction_id=str(transaction.id),
        )
    else:
        PAYMENT_VERIFICATIONS.labels(result="success").inc()
        log.info(
            "Payment verified",
            booking_number=booking.booking_number,
            amount=str(booking.total_amount),
            transaction_id=str(transaction.id),
        )
    return VerificationOutcome(
        booking=booking,
        transaction=transaction,
        verified=verified,
        warning=warning,
        reconciliation=reconciliation,
    )