"""
Booking Records
===============

Booking creation, the status state machine, booking numbers and the
self-service lookup.

Double booking is guarded three ways: an advisory availability check, an
authoritative re-check under a per-property calendar lock, and (on
PostgreSQL) an exclusion constraint on the stay's date range.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import AsyncIterator, List, Optional, Tuple
from uuid import UUID

import structlog
from redis import asyncio as aioredis
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from .audit import record_audit
from .config import settings
from .effects import run_best_effort
from .exceptions import Conflict, NotFound, StateConflict, ValidationFailed
from .models import Booking, BookingStatus, Customer, PaymentStatus, utcnow
from .pricing import PriceBreakdown, calculate_price, check_availability, get_property
from .schemas import BookingCreateRequest, ClientPricing
from .settings_store import active_seasonal_rules

logger = structlog.get_logger(__name__)

LOOKUP_NOT_FOUND = "Booking not found. Please check your booking number and email."
BOOKING_NUMBER_ATTEMPTS = 5


# =============================================================================
# STATE MACHINE
# =============================================================================

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.CHECKED_IN, BookingStatus.CANCELLED},
    BookingStatus.CHECKED_IN: {BookingStatus.CHECKED_OUT},
    BookingStatus.CHECKED_OUT: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


def transition(booking: Booking, new_status: BookingStatus) -> None:
    """Move a booking to ``new_status`` or raise StateConflict."""
    current = BookingStatus(booking.status)
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise StateConflict(
            f"Cannot change booking from {current.value} to {new_status.value}",
            reason="invalid_transition",
        )
    booking.status = new_status.value
    booking.updated_at = utcnow()


def parse_booking_id(value: Optional[str]) -> Optional[UUID]:
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


# =============================================================================
# BOOKING NUMBERS
# =============================================================================

async def generate_booking_number(db: AsyncSession, now: Optional[datetime] = None) -> str:
    """Generate the next booking number like BK-2025-000123."""
    year = (now or utcnow()).year
    prefix = f"{settings.BOOKING_NUMBER_PREFIX}-{year}-"

    result = await db.execute(
        select(func.max(Booking.booking_number)).where(Booking.booking_number.like(f"{prefix}%"))
    )
    last_number = result.scalar_one_or_none()

    next_sequence = int(last_number.rsplit("-", 1)[-1]) + 1 if last_number else 1
    return f"{prefix}{next_sequence:06d}"


# =============================================================================
# CALENDAR LOCK
# =============================================================================

@asynccontextmanager
async def calendar_lock(redis: Optional[aioredis.Redis], property_id: UUID) -> AsyncIterator[None]:
    """
    Serialize booking creation per property across instances.

    Without Redis this is a no-op and the storage constraints are the guard.
    """
    if redis is None:
        yield
        return

    lock = redis.lock(
        f"booking:lock:{property_id}",
        timeout=settings.CALENDAR_LOCK_TIMEOUT_SECONDS,
    )
    if not await lock.acquire(blocking_timeout=settings.CALENDAR_LOCK_WAIT_SECONDS):
        raise Conflict(
            "Another booking is being processed for this property. Please try again.",
            reason="calendar_locked",
        )
    try:
        yield
    finally:
        try:
            await lock.release()
        except Exception as e:
            # Lock expired while held; nothing left to release
            logger.warning("Calendar lock release failed", property_id=str(property_id), error=str(e))


# =============================================================================
# CREATION
# =============================================================================

async def find_or_create_customer(
    db: AsyncSession,
    full_name: str,
    email: str,
    phone: Optional[str] = None,
) -> Customer:
    """Return the customer with this email, creating one if needed."""
    email = email.strip().lower()
    result = await db.execute(select(Customer).where(func.lower(Customer.email) == email))
    customer = result.scalar_one_or_none()
    if customer:
        return customer

    customer = Customer(full_name=full_name, email=email, phone=phone)
    db.add(customer)
    await db.flush()
    return customer


def price_mismatches(client: ClientPricing, server: PriceBreakdown) -> List[str]:
    """Names of client figures further than the tolerance from the server's."""
    pairs = {
        "base_amount": (client.base_amount, server.base_amount),
        "cleaning_fee": (client.cleaning_fee, server.cleaning_fee),
        "tax_amount": (client.tax_amount, server.tax_amount),
        "discount_amount": (client.discount_amount, server.discount_amount),
        "total_amount": (client.total_amount, server.total_amount),
    }
    return [
        name for name, (shown, expected) in pairs.items()
        if abs(shown - expected) > settings.PRICE_TOLERANCE
    ]


async def create_booking(
    db: AsyncSession,
    request: BookingCreateRequest,
    redis: Optional[aioredis.Redis] = None,
) -> Tuple[Booking, PriceBreakdown]:
    """
    Create a pending booking.

    Flow:
    1. Load the property and recompute the price server-side
    2. Reject client figures that drift past the tolerance (audited)
    3. Under the calendar lock, re-check availability and insert
       the booking as pending/pending

    Raises:
        NotFound: Unknown property
        ValidationFailed: Bad dates/guests or pricing mismatch
        Conflict: Dates taken, the overlap constraint fired, or no free
            booking number after BOOKING_NUMBER_ATTEMPTS tries
    """
    property = await get_property(db, request.property_id)
    if property.status != "available":
        raise NotFound("Property not found or not available", reason="property_not_found")

    rules = await active_seasonal_rules(db, request.check_in_date, request.check_out_date)
    breakdown = calculate_price(
        property,
        request.check_in_date,
        request.check_out_date,
        request.num_guests,
        rules,
    )

    if request.pricing is not None:
        mismatched = price_mismatches(request.pricing, breakdown)
        if mismatched:
            logger.warning(
                "Price mismatch on booking request",
                property_id=str(property.id),
                fields=mismatched,
                client_total=str(request.pricing.total_amount),
                server_total=str(breakdown.total_amount),
            )
            await run_best_effort(
                "audit",
                record_audit,
                "booking.price_manipulation_attempt",
                user_email=request.guest_info.email,
                details={"property_id": str(property.id), "fields": mismatched},
            )
            raise ValidationFailed(
                "Pricing verification failed. Please refresh and try again.",
                reason="price_mismatch",
            )

    property_id = property.id
    async with calendar_lock(redis, property_id):
        availability = await check_availability(
            db, property_id, request.check_in_date, request.check_out_date
        )
        if not availability.available:
            raise Conflict(
                "Property is not available for the selected dates",
                reason="dates_unavailable",
            )

        guest = request.guest_info
        for attempt in range(1, BOOKING_NUMBER_ATTEMPTS + 1):
            booking_number = await generate_booking_number(db)
            try:
                customer = await find_or_create_customer(db, guest.full_name, guest.email, guest.phone)

                booking = Booking(
                    booking_number=booking_number,
                    property_id=property_id,
                    customer_id=customer.id,
                    check_in_date=request.check_in_date,
                    check_out_date=request.check_out_date,
                    num_guests=request.num_guests,
                    base_amount=breakdown.base_amount,
                    cleaning_fee=breakdown.cleaning_fee,
                    tax_amount=breakdown.tax_amount,
                    discount_amount=breakdown.discount_amount,
                    total_amount=breakdown.total_amount,
                    status=BookingStatus.PENDING.value,
                    payment_status=PaymentStatus.PENDING.value,
                    special_requests=(guest.special_requests or "").strip() or None,
                    source="direct",
                    booked_via="website",
                )
                db.add(booking)
                await db.commit()
                break
            except IntegrityError:
                await db.rollback()
                recheck = await check_availability(
                    db, property_id, request.check_in_date, request.check_out_date
                )
                if not recheck.available:
                    # Exclusion constraint on the stay
                    raise Conflict(
                        "Property is no longer available for selected dates. Please try again.",
                        reason="booking_conflict",
                    )
                # Booking number or new customer email taken by a concurrent insert
                logger.warning(
                    "Unique key taken concurrently, retrying",
                    booking_number=booking_number,
                    attempt=attempt,
                )
        else:
            raise Conflict(
                "Could not allocate a booking number. Please try again.",
                reason="booking_number_conflict",
            )

    logger.info(
        "Booking created",
        booking_id=str(booking.id),
        booking_number=booking.booking_number,
        total_amount=str(booking.total_amount),
    )
    return booking, breakdown


# =============================================================================
# RETRIEVAL
# =============================================================================

async def get_booking(db: AsyncSession, booking_id: UUID, with_relations: bool = False) -> Optional[Booking]:
    query = select(Booking).where(Booking.id == booking_id)
    if with_relations:
        query = query.options(joinedload(Booking.customer), joinedload(Booking.property))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def lookup_booking(db: AsyncSession, booking_number: Optional[str], email: Optional[str]) -> Booking:
    """
    Self-service retrieval by (booking number, email).

    An unknown number and a wrong email give the same answer.
    """
    if not booking_number or not email:
        raise ValidationFailed("Missing required fields: bookingNumber, email", reason="missing_fields")

    result = await db.execute(
        select(Booking)
        .options(joinedload(Booking.customer), joinedload(Booking.property))
        .where(Booking.booking_number == booking_number.strip())
    )
    booking = result.scalar_one_or_none()

    if booking is None or booking.customer.email.lower() != email.strip().lower():
        raise NotFound(LOOKUP_NOT_FOUND, reason="booking_not_found")
    return booking


# =============================================================================
# SCHEDULED MAINTENANCE
# =============================================================================

async def expire_stale_bookings(db: AsyncSession, now: Optional[datetime] = None) -> List[str]:
    """
    Cancel unpaid pending bookings older than the reservation timeout.

    A booking whose payment was started within the timeout is left alone.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.BOOKING_RESERVATION_TIMEOUT_MINUTES)

    result = await db.execute(
        select(Booking).where(
            and_(
                Booking.status == BookingStatus.PENDING.value,
                Booking.payment_status == PaymentStatus.PENDING.value,
                Booking.created_at < cutoff,
                or_(
                    Booking.payment_initiated_at.is_(None),
                    Booking.payment_initiated_at < cutoff,
                ),
            )
        )
    )
    expired = []
    for booking in result.scalars().all():
        transition(booking, BookingStatus.CANCELLED)
        booking.cancelled_at = now
        booking.cancellation_reason = "Payment not completed within reservation window"
        expired.append(booking.booking_number)

    await db.commit()
    if expired:
        logger.info("Expired stale bookings", count=len(expired), booking_numbers=expired)
    return expired


async def bookings_checking_in(db: AsyncSession, day: date) -> List[Booking]:
    """Confirmed bookings arriving on ``day``, with customer and property."""
    result = await db.execute(
        select(Booking)
        .options(joinedload(Booking.customer), joinedload(Booking.property))
        .where(
            and_(
                Booking.status == BookingStatus.CONFIRMED.value,
                Booking.check_in_date == day,
            )
        )
    )
    return list(result.scalars().all())
