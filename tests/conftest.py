"""
Shared fixtures: a SQLite database per test, a stubbed Paystack API and an
HTTP client bound to the application.
"""

import json
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

# Settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["PAYSTACK_PUBLIC_KEY"] = "pk_test_public"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("REDIS_URL", None)
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("PAYSTACK_SECRET_KEY", None)

import httpx  # noqa: E402
import pytest  # noqa: E402

from booking_engine.app import create_app  # noqa: E402
from booking_engine.database import Base, dispose_engine, get_session_factory, init_engine  # noqa: E402
from booking_engine.models import (  # noqa: E402
    Booking,
    Customer,
    HousekeepingTask,
    Property,
    Transaction,
)
from booking_engine.paystack import PaystackClient  # noqa: E402
from booking_engine.rate_limiter import InMemoryRateLimiter  # noqa: E402

PAYSTACK_TEST_URL = "https://api.paystack.test"


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def engine(tmp_path):
    await dispose_engine()
    engine = init_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await dispose_engine()


@pytest.fixture
async def db(engine):
    async with get_session_factory()() as session:
        yield session


@pytest.fixture
def make_property(db):
    async def factory(**overrides) -> Property:
        values = {
            "name": "Brooklyn Hills Suite",
            "city": "Abuja",
            "base_price_per_night": Decimal("50000"),
            "cleaning_fee": Decimal("5000"),
            "max_guests": 4,
            "status": "available",
        }
        values.update(overrides)
        prop = Property(**values)
        db.add(prop)
        await db.commit()
        return prop

    return factory


@pytest.fixture
def make_customer(db):
    async def factory(email: str = "ada@example.com", full_name: str = "Ada Obi") -> Customer:
        customer = Customer(full_name=full_name, email=email, phone="+2348000000000")
        db.add(customer)
        await db.commit()
        return customer

    return factory


@pytest.fixture
def make_booking(db):
    counter = {"n": 0}

    async def factory(
        prop: Property,
        customer: Customer,
        check_in: date,
        check_out: date,
        total: Decimal = Decimal("100000"),
        status: str = "pending",
        payment_status: str = "pending",
        created_at: Optional[datetime] = None,
    ) -> Booking:
        counter["n"] += 1
        booking = Booking(
            booking_number=f"BK-TEST-{counter['n']:06d}",
            property_id=prop.id,
            customer_id=customer.id,
            check_in_date=check_in,
            check_out_date=check_out,
            num_guests=2,
            base_amount=total,
            cleaning_fee=Decimal("0"),
            tax_amount=Decimal("0"),
            discount_amount=Decimal("0"),
            total_amount=total,
            status=status,
            payment_status=payment_status,
        )
        if created_at is not None:
            booking.created_at = created_at
        db.add(booking)
        await db.commit()
        return booking

    return factory


@pytest.fixture
def make_payment(db):
    async def factory(
        booking: Booking,
        reference: str = "BKref-1",
        payment_method: str = "paystack",
        paystack_transaction_id: Optional[int] = 777,
    ) -> Transaction:
        metadata = {}
        if paystack_transaction_id is not None:
            metadata["paystack_transaction_id"] = paystack_transaction_id
        txn = Transaction(
            transaction_type="booking",
            category="accommodation",
            amount=booking.total_amount,
            booking_id=booking.id,
            customer_id=booking.customer_id,
            payment_method=payment_method,
            payment_reference=reference,
            status="completed",
            metadata_json=metadata,
        )
        db.add(txn)
        await db.commit()
        return txn

    return factory


@pytest.fixture
def make_task(db):
    async def factory(booking: Booking, status: str = "pending") -> HousekeepingTask:
        task = HousekeepingTask(
            booking_id=booking.id,
            property_id=booking.property_id,
            task_type="checkout_cleaning",
            status=status,
            scheduled_date=booking.check_out_date,
        )
        db.add(task)
        await db.commit()
        return task

    return factory


# =============================================================================
# PAYSTACK STUB
# =============================================================================

class PaystackStub:
    """In-process stand-in for the Paystack REST API."""

    def __init__(self):
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.refund_error: Optional[Exception] = None
        self.refund_accepted = True
        self.verify_status_code = 200

    def add_transaction(
        self,
        reference: str,
        amount: int,
        status: str = "success",
        transaction_id: int = 555,
        email: str = "ada@example.com",
    ) -> None:
        self.transactions[reference] = {
            "id": transaction_id,
            "status": status,
            "reference": reference,
            "amount": amount,
            "currency": "NGN",
            "channel": "card",
            "paid_at": "2030-01-01T10:00:00.000Z",
            "customer": {"email": email, "customer_code": "CUS_test"},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.startswith("/transaction/verify/"):
            if self.verify_status_code >= 500:
                return httpx.Response(self.verify_status_code, json={"status": False, "message": "Server error"})
            reference = unquote(path.rsplit("/", 1)[-1])
            data = self.transactions.get(reference)
            if data is None:
                return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": data})

        if path == "/refund":
            if self.refund_error is not None:
                raise self.refund_error
            body = json.loads(request.content)
            self.refunds.append(body)
            if not self.refund_accepted:
                return httpx.Response(400, json={"status": False, "message": "Transaction has been fully reversed"})
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Refund has been queued for processing",
                    "data": {"id": 9001, "status": "pending", "amount": body["amount"]},
                },
            )

        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def client(self, max_retries: int = 0, secret_key: str = "sk_test_secret") -> PaystackClient:
        return PaystackClient(
            secret_key=secret_key,
            base_url=PAYSTACK_TEST_URL,
            max_retries=max_retries,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def paystack_stub():
    return PaystackStub()


@pytest.fixture
def paystack(paystack_stub):
    return paystack_stub.client()


# =============================================================================
# HTTP CLIENT
# =============================================================================

@pytest.fixture
async def client(engine, paystack):
    app = create_app(paystack=paystack, rate_limiter=InMemoryRateLimiter())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def utc_now():
    return datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
