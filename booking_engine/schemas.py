"""
Request/Response Schemas
========================

Pydantic models for the public JSON contract. Request bodies use the
camelCase keys the booking site sends; responses use snake_case.

Required identifiers are Optional on purpose: the services report a
missing ``reference``/``bookingId``/``email`` with their own reasons.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .config import settings

# Decimals travel as JSON numbers
JsonDecimal = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
Money = JsonDecimal


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# CANCELLATION POLICY
# =============================================================================

DEFAULT_NO_REFUND_MESSAGE = "Cancellations made less than 3 days before check-in are non-refundable."


class CancellationPolicy(CamelModel):
    """Typed payload stored under the ``cancellation_policy`` settings key."""

    full_refund_days: int = Field(default=7, ge=0)
    partial_refund_days: int = Field(default=3, ge=0)
    partial_refund_percent: JsonDecimal = Field(default=Decimal("50"), ge=0, le=100)
    no_refund_message: str = DEFAULT_NO_REFUND_MESSAGE

    @model_validator(mode="after")
    def partial_before_full(self) -> "CancellationPolicy":
        if self.partial_refund_days >= self.full_refund_days:
            raise ValueError("partialRefundDays must be less than fullRefundDays")
        return self


class CancellationPolicyResponse(BaseModel):
    policy: CancellationPolicy
    version: Optional[int] = None


# =============================================================================
# AVAILABILITY & PRICING
# =============================================================================

class AvailabilityCheckRequest(CamelModel):
    property_id: UUID
    check_in: date
    check_out: date
    num_guests: int = Field(default=1, ge=1)

    @field_validator("check_out")
    @classmethod
    def check_out_after_check_in(cls, v: date, info) -> date:
        check_in = info.data.get("check_in")
        if check_in and v <= check_in:
            raise ValueError("Check-out must be after check-in")
        return v


class PriceBreakdownOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    nights: int
    base_amount: Money
    cleaning_fee: Money
    tax_amount: Money
    discount_amount: Money
    total_amount: Money
    currency: str = settings.PAYMENT_CURRENCY


class AvailabilityCheckResponse(BaseModel):
    available: bool
    price_breakdown: Optional[PriceBreakdownOut] = None
    message: Optional[str] = None


# =============================================================================
# BOOKINGS
# =============================================================================

class GuestInfo(CamelModel):
    full_name: str
    email: EmailStr
    phone: Optional[str] = None
    special_requests: Optional[str] = None

    @field_validator("full_name")
    @classmethod
    def full_name_length(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Full name is required")
        return v


class ClientPricing(CamelModel):
    """Figures the booking site displayed; checked against the server's."""
    base_amount: Decimal
    cleaning_fee: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total_amount: Decimal


class BookingCreateRequest(CamelModel):
    property_id: UUID
    check_in_date: date
    check_out_date: date
    num_guests: int = Field(ge=1, le=settings.MAX_GUESTS_PER_BOOKING)
    guest_info: GuestInfo
    pricing: Optional[ClientPricing] = None


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_number: str
    property_id: UUID
    customer_id: UUID
    check_in_date: date
    check_out_date: date
    num_guests: int
    base_amount: Money
    cleaning_fee: Money
    tax_amount: Money
    discount_amount: Money
    total_amount: Money
    status: str
    payment_status: str
    special_requests: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class BookingCreatedResponse(BaseModel):
    success: bool = True
    booking: BookingOut
    customer_id: UUID


class BookingLookupRequest(CamelModel):
    booking_number: Optional[str] = None
    email: Optional[str] = None


class CustomerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    full_name: str
    email: str
    phone: Optional[str] = None


class PropertyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    address: Optional[str] = None
    city: Optional[str] = None


class BookingLookupResponse(BaseModel):
    success: bool = True
    booking: BookingOut
    customer: CustomerOut
    property: PropertyOut


# =============================================================================
# PAYMENTS
# =============================================================================

class PaymentInitResponse(BaseModel):
    reference: str
    amount: int  # minor units
    currency: str
    public_key: str
    email: str
    booking_number: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentVerifyRequest(CamelModel):
    reference: Optional[str] = None
    booking_id: Optional[str] = None
    property_id: Optional[str] = None
    amount: Optional[Decimal] = None
    metadata: Optional[Dict[str, Any]] = None


class TransactionSummary(BaseModel):
    id: UUID
    reference: str
    amount: Money
    channel: Optional[str] = None
    paid_at: Optional[str] = None


class PaymentVerifyResponse(BaseModel):
    success: bool = True
    message: str
    booking: BookingOut
    transaction: TransactionSummary
    warning: Optional[str] = None
    reconciliation: Optional[str] = None


# =============================================================================
# CANCELLATION
# =============================================================================

class BookingCancelRequest(CamelModel):
    booking_id: Optional[str] = None
    reason: Optional[str] = None
    email: Optional[str] = None


class CancellationQuoteRequest(CamelModel):
    booking_id: Optional[str] = None
    email: Optional[str] = None


class CancelledBookingOut(BaseModel):
    id: UUID
    booking_number: str
    status: str
    payment_status: str


class RefundOut(BaseModel):
    amount: Money
    percent: JsonDecimal
    message: str
    processed: bool = False
    provider_refund_id: Optional[int] = None


class CancellationCustomer(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class CancellationProperty(BaseModel):
    name: Optional[str] = None


class BookingCancelResponse(BaseModel):
    success: bool = True
    message: str
    booking: CancelledBookingOut
    refund: RefundOut
    housekeeping_tasks_cancelled: int = 0
    customer: CancellationCustomer
    property: CancellationProperty


class CancellationQuoteResponse(BaseModel):
    booking_number: str
    days_until_check_in: int
    refund: RefundOut
    policy: CancellationPolicy


class ErrorResponse(BaseModel):
    error: str
    reason: Optional[str] = None
    details: Optional[List[Dict[str, Any]]] = None
