"""
Tests for availability and price calculation.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from booking_engine.exceptions import NotFound, ValidationFailed
from booking_engine.models import Property, SeasonalPricingRule
from booking_engine.pricing import (
    calculate_price,
    check_availability,
    money,
    quote,
    to_minor_units,
)


def make_property(rate="50000", cleaning="5000", max_guests=4) -> Property:
    return Property(
        name="Garden Flat",
        base_price_per_night=Decimal(rate),
        cleaning_fee=Decimal(cleaning),
        max_guests=max_guests,
        status="available",
    )


def rule(start, end, multiplier, active=True) -> SeasonalPricingRule:
    return SeasonalPricingRule(
        name="Promo",
        start_date=start,
        end_date=end,
        multiplier=Decimal(multiplier),
        active=active,
    )


# =============================================================================
# MONEY
# =============================================================================

class TestMoney:
    def test_rounds_half_up_to_cents(self):
        assert money(Decimal("10.005")) == Decimal("10.01")
        assert money(Decimal("10.004")) == Decimal("10.00")

    def test_minor_units(self):
        assert to_minor_units(Decimal("150000")) == 15000000
        assert to_minor_units(Decimal("1234.565")) == 123457
        assert to_minor_units(Decimal("0.1")) == 10


# =============================================================================
# PRICE BREAKDOWN
# =============================================================================

class TestCalculatePrice:
    def test_basic_breakdown(self):
        breakdown = calculate_price(make_property(), date(2030, 3, 1), date(2030, 3, 4), 2)

        assert breakdown.nights == 3
        assert breakdown.base_amount == Decimal("150000.00")
        assert breakdown.cleaning_fee == Decimal("5000.00")
        assert breakdown.discount_amount == Decimal("0.00")
        assert breakdown.tax_amount == Decimal("11625.00")
        assert breakdown.total_amount == Decimal("166625.00")
        assert breakdown.currency == "NGN"

    def test_total_identity_holds(self):
        breakdown = calculate_price(
            make_property(rate="33333.33", cleaning="1234.56"),
            date(2030, 3, 1),
            date(2030, 3, 8),
            1,
            [rule(date(2030, 3, 2), date(2030, 3, 3), "0.85")],
        )
        assert breakdown.total_amount == (
            breakdown.base_amount + breakdown.cleaning_fee + breakdown.tax_amount - breakdown.discount_amount
        )

    def test_cleaning_fee_is_flat(self):
        one = calculate_price(make_property(), date(2030, 3, 1), date(2030, 3, 2), 1)
        five = calculate_price(make_property(), date(2030, 3, 1), date(2030, 3, 6), 1)
        assert one.cleaning_fee == five.cleaning_fee == Decimal("5000.00")

    def test_tax_rounded_to_cents(self):
        breakdown = calculate_price(
            make_property(rate="65000", cleaning="9534.88"),
            date(2030, 3, 1),
            date(2030, 3, 3),
            2,
        )
        assert breakdown.tax_amount == Decimal("10465.12")
        assert breakdown.total_amount == Decimal("150000.00")

    def test_tax_rate_override(self):
        breakdown = calculate_price(
            make_property(), date(2030, 3, 1), date(2030, 3, 2), 1, tax_rate=Decimal("0")
        )
        assert breakdown.tax_amount == Decimal("0.00")
        assert breakdown.total_amount == Decimal("55000.00")

    def test_zero_nights_rejected(self):
        with pytest.raises(ValidationFailed) as exc_info:
            calculate_price(make_property(), date(2030, 3, 1), date(2030, 3, 1), 1)
        assert exc_info.value.reason == "invalid_dates"

    def test_reversed_dates_rejected(self):
        with pytest.raises(ValidationFailed):
            calculate_price(make_property(), date(2030, 3, 5), date(2030, 3, 1), 1)

    def test_too_many_guests(self):
        with pytest.raises(ValidationFailed) as exc_info:
            calculate_price(make_property(max_guests=2), date(2030, 3, 1), date(2030, 3, 2), 3)
        assert exc_info.value.reason == "too_many_guests"
        assert "Maximum 2 guests" in exc_info.value.message

    def test_no_guests(self):
        with pytest.raises(ValidationFailed) as exc_info:
            calculate_price(make_property(), date(2030, 3, 1), date(2030, 3, 2), 0)
        assert exc_info.value.reason == "invalid_guests"


class TestSeasonalDiscounts:
    def test_discount_applies_to_covered_nights_only(self):
        breakdown = calculate_price(
            make_property(),
            date(2030, 3, 1),
            date(2030, 3, 4),
            2,
            [rule(date(2030, 3, 2), date(2030, 3, 10), "0.8")],
        )
        # Nights of 2 and 3 March at 20% off
        assert breakdown.discount_amount == Decimal("20000.00")
        assert breakdown.tax_amount == Decimal("10125.00")
        assert breakdown.total_amount == Decimal("145125.00")

    def test_surcharge_rules_ignored(self):
        breakdown = calculate_price(
            make_property(),
            date(2030, 3, 1),
            date(2030, 3, 3),
            2,
            [rule(date(2030, 3, 1), date(2030, 3, 31), "1.5")],
        )
        assert breakdown.discount_amount == Decimal("0.00")
        assert breakdown.base_amount == Decimal("100000.00")

    def test_inactive_rule_ignored(self):
        breakdown = calculate_price(
            make_property(),
            date(2030, 3, 1),
            date(2030, 3, 3),
            2,
            [rule(date(2030, 3, 1), date(2030, 3, 31), "0.5", active=False)],
        )
        assert breakdown.discount_amount == Decimal("0.00")

    def test_deepest_discount_wins_per_night(self):
        breakdown = calculate_price(
            make_property(),
            date(2030, 3, 1),
            date(2030, 3, 2),
            1,
            [
                rule(date(2030, 3, 1), date(2030, 3, 31), "0.9"),
                rule(date(2030, 3, 1), date(2030, 3, 1), "0.7"),
            ],
        )
        assert breakdown.discount_amount == Decimal("15000.00")

    def test_check_out_day_not_discounted(self):
        breakdown = calculate_price(
            make_property(),
            date(2030, 3, 1),
            date(2030, 3, 3),
            1,
            [rule(date(2030, 3, 3), date(2030, 3, 31), "0.5")],
        )
        assert breakdown.discount_amount == Decimal("0.00")


# =============================================================================
# AVAILABILITY
# =============================================================================

class TestAvailability:
    async def test_overlaps_detected(self, db, make_property, make_customer, make_booking):
        prop = await make_property()
        customer = await make_customer()
        existing = await make_booking(prop, customer, date(2030, 1, 10), date(2030, 1, 15))

        for check_in, check_out in [
            (date(2030, 1, 8), date(2030, 1, 11)),
            (date(2030, 1, 14), date(2030, 1, 20)),
            (date(2030, 1, 11), date(2030, 1, 12)),
            (date(2030, 1, 1), date(2030, 1, 31)),
            (date(2030, 1, 10), date(2030, 1, 15)),
        ]:
            result = await check_availability(db, prop.id, check_in, check_out)
            assert result.available is False, (check_in, check_out)
            assert result.conflicting_booking_ids == [existing.id]

    async def test_adjacent_stays_allowed(self, db, make_property, make_customer, make_booking):
        prop = await make_property()
        customer = await make_customer()
        await make_booking(prop, customer, date(2030, 1, 10), date(2030, 1, 15))

        before = await check_availability(db, prop.id, date(2030, 1, 5), date(2030, 1, 10))
        after = await check_availability(db, prop.id, date(2030, 1, 15), date(2030, 1, 18))

        assert before.available is True
        assert after.available is True

    async def test_cancelled_bookings_free_the_dates(self, db, make_property, make_customer, make_booking):
        prop = await make_property()
        customer = await make_customer()
        await make_booking(prop, customer, date(2030, 1, 10), date(2030, 1, 15), status="cancelled")

        result = await check_availability(db, prop.id, date(2030, 1, 10), date(2030, 1, 15))
        assert result.available is True

    async def test_other_property_does_not_conflict(self, db, make_property, make_customer, make_booking):
        first = await make_property()
        second = await make_property(name="Second Flat")
        customer = await make_customer()
        await make_booking(first, customer, date(2030, 1, 10), date(2030, 1, 15))

        result = await check_availability(db, second.id, date(2030, 1, 10), date(2030, 1, 15))
        assert result.available is True

    async def test_exclude_booking(self, db, make_property, make_customer, make_booking):
        prop = await make_property()
        customer = await make_customer()
        existing = await make_booking(prop, customer, date(2030, 1, 10), date(2030, 1, 15))

        result = await check_availability(
            db, prop.id, date(2030, 1, 12), date(2030, 1, 16), exclude_booking_id=existing.id
        )
        assert result.available is True


class TestQuote:
    async def test_quote_uses_stored_rules(self, db, make_property):
        prop = await make_property()
        db.add(rule(date(2030, 2, 1), date(2030, 2, 28), "0.9"))
        await db.commit()

        availability, breakdown = await quote(db, prop.id, date(2030, 2, 10), date(2030, 2, 12), 2)

        assert availability.available is True
        assert breakdown.discount_amount == Decimal("10000.00")

    async def test_quote_when_unavailable(self, db, make_property, make_customer, make_booking):
        prop = await make_property()
        customer = await make_customer()
        await make_booking(prop, customer, date(2030, 2, 10), date(2030, 2, 12))

        availability, breakdown = await quote(db, prop.id, date(2030, 2, 11), date(2030, 2, 13), 2)

        assert availability.available is False
        assert breakdown is None

    async def test_unknown_property(self, db):
        with pytest.raises(NotFound) as exc_info:
            await quote(db, uuid.uuid4(), date(2030, 2, 10), date(2030, 2, 12), 2)
        assert exc_info.value.reason == "property_not_found"
