"""
Cancellation & Refund Engine
============================

Self-service cancellation with policy-driven refunds.

Preconditions (ownership, booking state) are strict and change nothing when
they fail. Once a booking is eligible the cancellation always completes:
a failed provider refund is recorded as a pending refund for manual
reconciliation, and housekeeping bookkeeping is best-effort.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import get_booking, parse_booking_id, transition
from .config import settings
from .database import get_async_session
from .effects import run_best_effort
from .exceptions import Forbidden, NotFound, StateConflict, ValidationFailed
from .models import (
    Booking,
    BookingStatus,
    HousekeepingStatus,
    HousekeepingTask,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from .paystack import PaystackClient, RefundResult
from .pricing import ZERO, money, to_minor_units
from .schemas import CancellationPolicy
from .settings_store import get_cancellation_policy

logger = structlog.get_logger(__name__)

CANCELLATIONS = Counter(
    "booking_cancellations_total",
    "Cancellations by refund outcome",
    ["outcome"]  # outcome: refunded, refund_pending, no_refund
)

DEFAULT_REASON = "Customer requested cancellation"
NOT_PAID_MESSAGE = "No refund applicable - booking was not paid"
IN_PROGRESS_STATES = {
    BookingStatus.CHECKED_IN.value,
    BookingStatus.CHECKED_OUT.value,
    BookingStatus.COMPLETED.value,
}
SECONDS_PER_DAY = 86400


@dataclass
class RefundDecision:
    amount: Decimal
    percent: Decimal
    message: str


@dataclass
class CancellationOutcome:
    booking: Booking
    refund: RefundDecision
    provider_refund: Optional[RefundResult]
    refund_transaction: Optional[Transaction]
    housekeeping_tasks_cancelled: int
    days_until_check_in: int

    @property
    def refund_processed(self) -> bool:
        return bool(self.provider_refund and self.provider_refund.accepted)


@dataclass
class CancellationQuote:
    booking: Booking
    refund: RefundDecision
    days_until_check_in: int
    policy: CancellationPolicy


# =============================================================================
# REFUND POLICY
# =============================================================================

def days_until_check_in(check_in: date, now: datetime) -> int:
    """Whole days from ``now`` to check-in at 00:00 UTC, rounded up."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    check_in_at = datetime.combine(check_in, time.min, tzinfo=timezone.utc)
    return math.ceil((check_in_at - now).total_seconds() / SECONDS_PER_DAY)


def _percent_label(percent: Decimal) -> str:
    return str(int(percent)) if percent == percent.to_integral_value() else str(percent.normalize())


def compute_refund(
    policy: CancellationPolicy,
    total_amount: Decimal,
    payment_status: str,
    days: int,
) -> RefundDecision:
    """
    Refund tier for a cancellation ``days`` before check-in.

    Only paid bookings are refunded:
    - days >= full_refund_days: 100%
    - partial_refund_days <= days < full_refund_days: partial percent
    - otherwise nothing, with the policy's message
    """
    if payment_status != PaymentStatus.PAID.value:
        return RefundDecision(amount=ZERO, percent=ZERO, message=NOT_PAID_MESSAGE)

    total = money(total_amount)
    if days >= policy.full_refund_days:
        return RefundDecision(
            amount=total,
            percent=Decimal("100"),
            message=f"Full refund - cancelled more than {policy.full_refund_days} days before check-in",
        )
    if days >= policy.partial_refund_days:
        percent = Decimal(policy.partial_refund_percent)
        return RefundDecision(
            amount=money(total * percent / 100),
            percent=percent,
            message=f"{_percent_label(percent)}% refund - cancelled {days} days before check-in",
        )
    return RefundDecision(amount=ZERO, percent=ZERO, message=policy.no_refund_message)


# =============================================================================
# HELPERS
# =============================================================================

async def load_cancellable_booking(db: AsyncSession, booking_id: Optional[str], email: Optional[str]) -> Booking:
    """Booking with customer and property, after the ownership and state checks."""
    if not booking_id or not email:
        raise ValidationFailed("Missing required fields: bookingId, email", reason="missing_fields")

    booking_uuid = parse_booking_id(booking_id)
    booking = await get_booking(db, booking_uuid, with_relations=True) if booking_uuid else None
    if booking is None:
        raise NotFound("Booking not found", reason="booking_not_found")

    if (booking.customer.email or "").strip().lower() != email.strip().lower():
        logger.warning("Cancellation email mismatch", booking_number=booking.booking_number)
        raise Forbidden("Email does not match booking records", reason="email_mismatch")

    if booking.status == BookingStatus.CANCELLED.value:
        raise StateConflict("Booking is already cancelled", reason="already_cancelled")
    if booking.status in IN_PROGRESS_STATES:
        raise StateConflict(
            "Cannot cancel a booking that has already started or completed",
            reason="booking_in_progress",
        )
    return booking


async def latest_booking_payment(db: AsyncSession, booking_id) -> Optional[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(
            and_(
                Transaction.booking_id == booking_id,
                Transaction.transaction_type == TransactionType.BOOKING.value,
                Transaction.status == TransactionStatus.COMPLETED.value,
            )
        )
        .order_by(Transaction.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def request_provider_refund(
    paystack: PaystackClient,
    original: Transaction,
    amount: Decimal,
    merchant_note: str,
) -> RefundResult:
    """Refund through Paystack, reusing the stored transaction id when known."""
    transaction_id = (original.metadata_json or {}).get("paystack_transaction_id")
    if transaction_id:
        return await paystack.create_refund(int(transaction_id), to_minor_units(amount), merchant_note)
    return await paystack.refund_by_reference(original.payment_reference, to_minor_units(amount), merchant_note)


async def cancel_housekeeping_tasks(booking_id, booking_number: str) -> int:
    """
    Cancel the booking's open housekeeping tasks; returns how many.

    Uses its own session so a failure cannot disturb the committed
    cancellation. Completed tasks are left untouched.
    """
    note = f"Cancelled due to booking cancellation: {booking_number}"
    async with get_async_session() as session:
        result = await session.execute(
            select(HousekeepingTask).where(
                and_(
                    HousekeepingTask.booking_id == booking_id,
                    HousekeepingTask.status.notin_([
                        HousekeepingStatus.COMPLETED.value,
                        HousekeepingStatus.CANCELLED.value,
                    ]),
                )
            )
        )
        tasks = list(result.scalars().all())
        for task in tasks:
            task.status = HousekeepingStatus.CANCELLED.value
            task.completion_notes = f"{task.completion_notes}\n{note}" if task.completion_notes else note
        await session.commit()

    logger.info("Housekeeping tasks cancelled", booking_number=booking_number, count=len(tasks))
    return len(tasks)


# =============================================================================
# OPERATIONS
# =============================================================================

async def quote_cancellation(
    db: AsyncSession,
    booking_id: Optional[str],
    email: Optional[str],
    now: Optional[datetime] = None,
) -> CancellationQuote:
    """Refund the customer would receive if they cancelled now. No state change."""
    booking = await load_cancellable_booking(db, booking_id, email)
    policy = await get_cancellation_policy(db)
    days = days_until_check_in(booking.check_in_date, now or utcnow())
    refund = compute_refund(policy, booking.total_amount, booking.payment_status, days)
    return CancellationQuote(booking=booking, refund=refund, days_until_check_in=days, policy=policy)


async def cancel_booking(
    db: AsyncSession,
    booking_id: Optional[str],
    email: Optional[str],
    reason: Optional[str],
    paystack: PaystackClient,
    now: Optional[datetime] = None,
) -> CancellationOutcome:
    """
    Cancel a booking and refund it according to the current policy.

    Flow:
    1. Ownership and state checks (hard failures)
    2. Refund tier from the policy read fresh from settings
    3. Provider refund for gateway payments (best-effort)
    4. Refund transaction, completed or pending
    5. Booking cancelled and committed
    6. Open housekeeping tasks cancelled (best-effort)

    Raises:
        ValidationFailed: missing_fields
        NotFound: booking_not_found
        Forbidden: email_mismatch
        StateConflict: already_cancelled, booking_in_progress
    """
    now = now or utcnow()
    booking = await load_cancellable_booking(db, booking_id, email)
    reason = (reason or "").strip() or None
    log = logger.bind(booking_number=booking.booking_number)

    policy = await get_cancellation_policy(db)
    days = days_until_check_in(booking.check_in_date, now)
    refund = compute_refund(policy, booking.total_amount, booking.payment_status, days)
    log.info(
        "Refund calculated",
        days_until_check_in=days,
        refund_percent=str(refund.percent),
        refund_amount=str(refund.amount),
    )

    provider_refund: Optional[RefundResult] = None
    refund_transaction: Optional[Transaction] = None

    if refund.amount > 0:
        original = await latest_booking_payment(db, booking.id)

        if (
            original is not None
            and original.payment_method == settings.PAYMENT_METHOD_GATEWAY
            and original.payment_reference
            and paystack.configured
        ):
            merchant_note = (
                f"Refund for cancelled booking {booking.booking_number}. "
                f"Reason: {reason or DEFAULT_REASON}"
            )
            provider_refund = await run_best_effort(
                "provider_refund",
                request_provider_refund,
                paystack,
                original,
                refund.amount,
                merchant_note,
            )
            if provider_refund is not None and not provider_refund.accepted:
                log.warning("Paystack declined refund", message=provider_refund.message)

        processed = bool(provider_refund and provider_refund.accepted)
        provider_refund_id = provider_refund.refund_id if processed else None
        metadata: Dict[str, Any] = {
            "original_transaction_id": str(original.id) if original else None,
            "cancellation_reason": reason,
            "refund_percent": str(refund.percent),
            "days_until_checkin": days,
            "paystack_refund": provider_refund.raw if provider_refund else None,
        }
        refund_transaction = Transaction(
            transaction_type=TransactionType.REFUND.value,
            category="other_expenses",
            amount=refund.amount,
            currency=original.currency if original else settings.PAYMENT_CURRENCY,
            booking_id=booking.id,
            customer_id=booking.customer_id,
            payment_method=original.payment_method if original and original.payment_method else "bank_transfer",
            payment_reference=(
                f"REFUND-{provider_refund_id}" if provider_refund_id else f"REFUND-{booking.booking_number}"
            ),
            status=TransactionStatus.COMPLETED.value if processed else TransactionStatus.PENDING.value,
            description=f"Refund for cancelled booking {booking.booking_number}",
            processed_at=now if processed else None,
            metadata_json=metadata,
        )
        db.add(refund_transaction)

    transition(booking, BookingStatus.CANCELLED)
    booking.cancelled_at = now
    booking.cancellation_reason = reason or DEFAULT_REASON
    if refund.amount > 0:
        booking.payment_status = (
            PaymentStatus.REFUNDED.value if refund.percent >= 100 else PaymentStatus.PARTIAL.value
        )
    await db.commit()

    if refund.amount <= 0:
        CANCELLATIONS.labels(outcome="no_refund").inc()
    elif provider_refund is not None and provider_refund.accepted:
        CANCELLATIONS.labels(outcome="refunded").inc()
    else:
        CANCELLATIONS.labels(outcome="refund_pending").inc()

    tasks_cancelled = await run_best_effort(
        "housekeeping_cancel", cancel_housekeeping_tasks, booking.id, booking.booking_number
    )

    log.info(
        "Booking cancelled",
        payment_status=booking.payment_status,
        refund_processed=bool(provider_refund and provider_refund.accepted),
        housekeeping_tasks_cancelled=tasks_cancelled or 0,
    )
    return CancellationOutcome(
        booking=booking,
        refund=refund,
        provider_refund=provider_refund,
        refund_transaction=refund_transaction,
        housekeeping_tasks_cancelled=tasks_cancelled or 0,
        days_until_check_in=days,
    )
