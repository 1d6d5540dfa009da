"""
Availability & Pricing
======================

Availability checks against existing bookings and the price breakdown for
a stay. Pricing is a pure function of the property, the dates, the guest
count and the seasonal rules, so the same figures come out of the advisory
quote and the authoritative booking creation.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .exceptions import NotFound, ValidationFailed
from .models import Booking, BookingStatus, Property, SeasonalPricingRule
from .settings_store import active_seasonal_rules

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def money(value) -> Decimal:
    """Quantize to currency precision."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Convert an amount to kobo/cents."""
    return int((money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass
class PriceBreakdown:
    nights: int
    base_amount: Decimal
    cleaning_fee: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str = field(default_factory=lambda: settings.PAYMENT_CURRENCY)


@dataclass
class AvailabilityResult:
    available: bool
    conflicting_booking_ids: List[UUID] = field(default_factory=list)


# =============================================================================
# PRICING
# =============================================================================

def nightly_discount(night: date, rate: Decimal, rules: Sequence[SeasonalPricingRule]) -> Decimal:
    """Discount for one night: the deepest active rule below 1.0 covering it."""
    multipliers = [
        Decimal(str(rule.multiplier))
        for rule in rules
        if rule.active
        and rule.start_date <= night <= rule.end_date
        and Decimal(str(rule.multiplier)) < 1
    ]
    if not multipliers:
        return ZERO
    return rate * (1 - min(multipliers))


def calculate_price(
    property: Property,
    check_in: date,
    check_out: date,
    num_guests: int,
    seasonal_rules: Sequence[SeasonalPricingRule] = (),
    tax_rate: Optional[Decimal] = None,
) -> PriceBreakdown:
    """
    Calculate the price breakdown for a stay.

    Args:
        property: Property being booked
        check_in: Arrival date
        check_out: Departure date (exclusive)
        num_guests: Number of guests
        seasonal_rules: Candidate promotional rules
        tax_rate: Overrides TAX_RATE

    Returns:
        PriceBreakdown with total = base + cleaning + tax - discount

    Raises:
        ValidationFailed: Fewer than one night or too many guests
    """
    nights = (check_out - check_in).days
    if nights < 1:
        raise ValidationFailed("Check-out date must be after check-in date", reason="invalid_dates")
    if num_guests < 1:
        raise ValidationFailed("Invalid number of guests", reason="invalid_guests")
    if num_guests > property.max_guests:
        raise ValidationFailed(
            f"Maximum {property.max_guests} guests allowed for this property",
            reason="too_many_guests",
        )

    rate = Decimal(str(property.base_price_per_night))
    base_amount = money(rate * nights)
    cleaning_fee = money(property.cleaning_fee or ZERO)

    discount = sum(
        (nightly_discount(check_in + timedelta(days=i), rate, seasonal_rules) for i in range(nights)),
        ZERO,
    )
    discount_amount = min(money(discount), base_amount)

    rate_for_tax = settings.TAX_RATE if tax_rate is None else tax_rate
    tax_amount = money((base_amount + cleaning_fee - discount_amount) * rate_for_tax)
    total_amount = base_amount + cleaning_fee + tax_amount - discount_amount

    return PriceBreakdown(
        nights=nights,
        base_amount=base_amount,
        cleaning_fee=cleaning_fee,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        total_amount=total_amount,
    )


# =============================================================================
# AVAILABILITY
# =============================================================================

async def check_availability(
    db: AsyncSession,
    property_id: UUID,
    check_in: date,
    check_out: date,
    exclude_booking_id: Optional[UUID] = None,
) -> AvailabilityResult:
    """Find non-cancelled bookings overlapping [check_in, check_out)."""
    conditions = [
        Booking.property_id == property_id,
        Booking.status != BookingStatus.CANCELLED.value,
        Booking.check_in_date < check_out,
        Booking.check_out_date > check_in,
    ]
    if exclude_booking_id is not None:
        conditions.append(Booking.id != exclude_booking_id)

    result = await db.execute(select(Booking.id).where(and_(*conditions)))
    conflicts = list(result.scalars().all())
    return AvailabilityResult(available=not conflicts, conflicting_booking_ids=conflicts)


async def get_property(db: AsyncSession, property_id: UUID) -> Property:
    property = await db.get(Property, property_id)
    if property is None:
        raise NotFound("Property not found", reason="property_not_found")
    return property


async def quote(
    db: AsyncSession,
    property_id: UUID,
    check_in: date,
    check_out: date,
    num_guests: int,
) -> tuple[AvailabilityResult, Optional[PriceBreakdown]]:
    """Advisory availability plus price, as shown while the guest picks dates."""
    property = await get_property(db, property_id)
    availability = await check_availability(db, property_id, check_in, check_out)
    if not availability.available:
        return availability, None

    rules = await active_seasonal_rules(db, check_in, check_out)
    breakdown = calculate_price(property, check_in, check_out, num_guests, rules)
    return availability, breakdown
