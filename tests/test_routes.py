"""
End-to-end tests through the HTTP API.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from booking_engine.models import AuditLog, Transaction


@pytest.fixture
async def suite(make_property):
    return await make_property(
        name="Brooklyn Hills Suite",
        base_price_per_night=Decimal("65000"),
        cleaning_fee=Decimal("9534.88"),
        max_guests=4,
    )


def stay(days_ahead: int = 10, nights: int = 2):
    check_in = (datetime.now(timezone.utc) + timedelta(days=days_ahead)).date()
    return check_in, check_in + timedelta(days=nights)


def booking_payload(property_id, check_in, check_out, **overrides):
    payload = {
        "propertyId": str(property_id),
        "checkInDate": check_in.isoformat(),
        "checkOutDate": check_out.isoformat(),
        "numGuests": 2,
        "guestInfo": {
            "fullName": "Ada Obi",
            "email": "ada@example.com",
            "phone": "+2348000000000",
            "specialRequests": "Late check-in",
        },
        "pricing": {
            "baseAmount": 130000,
            "cleaningFee": 9534.88,
            "taxAmount": 10465.12,
            "discountAmount": 0,
            "totalAmount": 150000,
        },
    }
    payload.update(overrides)
    return payload


async def book_and_pay(client, paystack_stub, property_id, days_ahead=10):
    check_in, check_out = stay(days_ahead)
    created = await client.post("/api/v1/bookings", json=booking_payload(property_id, check_in, check_out))
    assert created.status_code == 200, created.text
    booking = created.json()["booking"]

    init = await client.post(f"/api/v1/bookings/{booking['id']}/payment")
    assert init.status_code == 200, init.text
    reference = init.json()["reference"]
    paystack_stub.add_transaction(reference, init.json()["amount"], transaction_id=555)

    verified = await client.post(
        "/api/v1/payments/verify",
        json={"reference": reference, "bookingId": booking["id"], "amount": 150000},
    )
    assert verified.status_code == 200, verified.text
    return booking, reference


class TestBookingLifecycle:
    async def test_book_pay_cancel(self, client, db, suite, paystack_stub):
        check_in, check_out = stay()

        created = await client.post("/api/v1/bookings", json=booking_payload(suite.id, check_in, check_out))
        assert created.status_code == 200
        body = created.json()
        booking = body["booking"]
        assert body["success"] is True
        assert booking["status"] == "pending"
        assert booking["payment_status"] == "pending"
        assert booking["total_amount"] == 150000
        assert booking["tax_amount"] == 10465.12

        init = await client.post(f"/api/v1/bookings/{booking['id']}/payment")
        assert init.status_code == 200
        assert init.json()["amount"] == 15000000
        reference = init.json()["reference"]
        paystack_stub.add_transaction(reference, 15000000, transaction_id=555)

        verified = await client.post(
            "/api/v1/payments/verify",
            json={"reference": reference, "bookingId": booking["id"], "amount": 150000},
        )
        assert verified.status_code == 200
        verified_body = verified.json()
        assert verified_body["booking"]["status"] == "confirmed"
        assert verified_body["booking"]["payment_status"] == "paid"
        assert verified_body["transaction"]["reference"] == reference
        assert verified_body["transaction"]["channel"] == "card"

        cancelled = await client.post(
            "/api/v1/bookings/cancel",
            json={"bookingId": booking["id"], "email": "ada@example.com", "reason": "Change of plans"},
        )
        assert cancelled.status_code == 200
        cancel_body = cancelled.json()
        assert cancel_body["booking"]["status"] == "cancelled"
        assert cancel_body["booking"]["payment_status"] == "refunded"
        assert cancel_body["refund"]["amount"] == 150000
        assert cancel_body["refund"]["percent"] == 100
        assert cancel_body["refund"]["processed"] is True
        assert cancel_body["refund"]["provider_refund_id"] == 9001
        assert cancel_body["customer"] == {"name": "Ada Obi", "email": "ada@example.com"}
        assert cancel_body["property"] == {"name": "Brooklyn Hills Suite"}
        assert paystack_stub.refunds[0] == {
            "transaction": 555,
            "amount": 15000000,
            "merchant_note": f"Refund for cancelled booking {booking['booking_number']}. Reason: Change of plans",
        }

        refunds = (await db.execute(
            select(Transaction).where(Transaction.transaction_type == "refund")
        )).scalars().all()
        assert len(refunds) == 1

        actions = (await db.execute(select(AuditLog.action))).scalars().all()
        assert {"booking.created", "payment.verified", "booking.cancelled"} <= set(actions)

    async def test_lookup(self, client, suite, paystack_stub):
        booking, _ = await book_and_pay(client, paystack_stub, suite.id)

        found = await client.post(
            "/api/v1/bookings/lookup",
            json={"bookingNumber": booking["booking_number"], "email": "ADA@example.com"},
        )
        assert found.status_code == 200
        assert found.json()["property"]["name"] == "Brooklyn Hills Suite"
        assert found.json()["customer"]["full_name"] == "Ada Obi"

        wrong = await client.post(
            "/api/v1/bookings/lookup",
            json={"bookingNumber": booking["booking_number"], "email": "eve@example.com"},
        )
        assert wrong.status_code == 404
        assert wrong.json()["error"] == "Booking not found. Please check your booking number and email."

    async def test_cancellation_quote(self, client, suite, paystack_stub):
        booking, _ = await book_and_pay(client, paystack_stub, suite.id, days_ahead=5)

        response = await client.post(
            "/api/v1/bookings/cancellation-quote",
            json={"bookingId": booking["id"], "email": "ada@example.com"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["days_until_check_in"] == 5
        assert body["refund"]["amount"] == 75000
        assert body["policy"]["fullRefundDays"] == 7


class TestCreateBookingErrors:
    async def test_overlap_is_a_conflict(self, client, suite):
        check_in, check_out = stay()
        first = await client.post("/api/v1/bookings", json=booking_payload(suite.id, check_in, check_out))
        assert first.status_code == 200

        second = await client.post(
            "/api/v1/bookings",
            json=booking_payload(suite.id, check_in + timedelta(days=1), check_out + timedelta(days=1), pricing=None),
        )
        assert second.status_code == 409
        assert second.json()["reason"] == "dates_unavailable"

    async def test_price_mismatch(self, client, suite):
        check_in, check_out = stay()
        payload = booking_payload(suite.id, check_in, check_out)
        payload["pricing"]["totalAmount"] = 100

        response = await client.post("/api/v1/bookings", json=payload)

        assert response.status_code == 400
        assert response.json()["reason"] == "price_mismatch"

    async def test_invalid_email(self, client, suite):
        check_in, check_out = stay()
        payload = booking_payload(suite.id, check_in, check_out)
        payload["guestInfo"]["email"] = "not-an-email"

        response = await client.post("/api/v1/bookings", json=payload)

        assert response.status_code == 400
        assert response.json()["reason"] == "validation_error"
        assert response.json()["details"]


class TestVerifyErrors:
    async def test_duplicate_verification(self, client, suite, paystack_stub):
        booking, reference = await book_and_pay(client, paystack_stub, suite.id)

        again = await client.post(
            "/api/v1/payments/verify",
            json={"reference": reference, "bookingId": booking["id"]},
        )

        assert again.status_code == 409
        assert again.json() == {"error": "Payment has already been processed", "reason": "already_processed"}

    async def test_amount_mismatch(self, client, suite, paystack_stub):
        check_in, check_out = stay()
        created = await client.post("/api/v1/bookings", json=booking_payload(suite.id, check_in, check_out))
        booking = created.json()["booking"]
        paystack_stub.add_transaction("BKshort-1", 100)

        response = await client.post(
            "/api/v1/payments/verify",
            json={"reference": "BKshort-1", "bookingId": booking["id"], "amount": 150000},
        )

        assert response.status_code == 400
        assert response.json()["reason"] == "amount_mismatch"

    async def test_charge_on_cancelled_booking_recorded(self, client, db, suite, paystack_stub):
        check_in, check_out = stay()
        created = await client.post("/api/v1/bookings", json=booking_payload(suite.id, check_in, check_out))
        booking = created.json()["booking"]
        init = await client.post(f"/api/v1/bookings/{booking['id']}/payment")
        reference = init.json()["reference"]
        cancelled = await client.post(
            "/api/v1/bookings/cancel",
            json={"bookingId": booking["id"], "email": "ada@example.com"},
        )
        assert cancelled.status_code == 200
        paystack_stub.add_transaction(reference, 15000000)

        response = await client.post(
            "/api/v1/payments/verify",
            json={"reference": reference, "bookingId": booking["id"]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["reconciliation"] == "booking_cancelled"
        assert body["booking"]["status"] == "cancelled"
        recorded = (await db.execute(
            select(Transaction).where(Transaction.payment_reference == reference)
        )).scalars().all()
        assert [t.status for t in recorded] == ["completed"]

    async def test_missing_fields(self, client):
        response = await client.post("/api/v1/payments/verify", json={"reference": "BKx-1"})
        assert response.status_code == 400
        assert response.json()["reason"] == "missing_fields"

    async def test_rate_limited(self, client):
        for _ in range(10):
            response = await client.post("/api/v1/payments/verify", json={})
            assert response.status_code == 400

        blocked = await client.post("/api/v1/payments/verify", json={})
        assert blocked.status_code == 429
        assert blocked.json()["error"] == "Too many requests. Please try again later."
        assert 1 <= int(blocked.headers["Retry-After"]) <= 60

        other_client = await client.post(
            "/api/v1/payments/verify", json={}, headers={"X-Forwarded-For": "198.51.100.9"}
        )
        assert other_client.status_code == 400


class TestCancelErrors:
    async def test_email_mismatch(self, client, suite, paystack_stub):
        booking, _ = await book_and_pay(client, paystack_stub, suite.id)

        response = await client.post(
            "/api/v1/bookings/cancel",
            json={"bookingId": booking["id"], "email": "eve@example.com"},
        )

        assert response.status_code == 403
        assert response.json()["reason"] == "email_mismatch"

    async def test_cancel_twice(self, client, suite, paystack_stub):
        booking, _ = await book_and_pay(client, paystack_stub, suite.id)
        payload = {"bookingId": booking["id"], "email": "ada@example.com"}

        assert (await client.post("/api/v1/bookings/cancel", json=payload)).status_code == 200
        again = await client.post("/api/v1/bookings/cancel", json=payload)

        assert again.status_code == 400
        assert again.json()["reason"] == "already_cancelled"


class TestAvailabilityEndpoint:
    async def test_available_with_breakdown(self, client, suite):
        check_in, check_out = stay()
        response = await client.post(
            "/api/v1/bookings/check-availability",
            json={"propertyId": str(suite.id), "checkIn": check_in.isoformat(),
                  "checkOut": check_out.isoformat(), "numGuests": 2},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["available"] is True
        assert body["price_breakdown"]["nights"] == 2
        assert body["price_breakdown"]["total_amount"] == 150000

    async def test_unavailable_after_booking(self, client, suite):
        check_in, check_out = stay()
        await client.post("/api/v1/bookings", json=booking_payload(suite.id, check_in, check_out))

        response = await client.post(
            "/api/v1/bookings/check-availability",
            json={"propertyId": str(suite.id), "checkIn": check_in.isoformat(), "checkOut": check_out.isoformat()},
        )

        assert response.json()["available"] is False
        assert response.json()["price_breakdown"] is None

    async def test_check_out_before_check_in(self, client, suite):
        check_in, check_out = stay()
        response = await client.post(
            "/api/v1/bookings/check-availability",
            json={"propertyId": str(suite.id), "checkIn": check_out.isoformat(), "checkOut": check_in.isoformat()},
        )
        assert response.status_code == 400


class TestServiceEndpoints:
    async def test_cancellation_policy(self, client):
        response = await client.get("/api/v1/settings/cancellation-policy")

        assert response.status_code == 200
        policy = response.json()["policy"]
        assert policy["fullRefundDays"] == 7
        assert policy["partialRefundDays"] == 3
        assert policy["partialRefundPercent"] == 50

    async def test_health_and_request_id(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.json() == {"status": "ok"}
        assert response.headers["X-Request-ID"] == "req-123"

    async def test_metrics(self, client):
        await client.post("/api/v1/payments/verify", json={})
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "booking_payment_verifications_total" in response.text
