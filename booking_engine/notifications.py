"""
Booking Emails
==============

Transactional emails sent through the Resend HTTP API. Every value that
comes from a guest is HTML-escaped before it is placed in a template.

All senders open their own database session: they run as background
tasks after the request's session has closed.
"""

from dataclasses import dataclass
from datetime import date
from html import escape
from typing import Any, Dict, Optional
from uuid import UUID

import httpx
import structlog

from .bookings import get_booking
from .config import settings
from .database import get_async_session
from .models import Booking

logger = structlog.get_logger(__name__)

EMAIL_TYPES = ("confirmation", "cancellation", "payment_receipt", "check_in_reminder")


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str


def _format_money(amount) -> str:
    return f"{settings.PAYMENT_CURRENCY} {float(amount):,.2f}"


def _format_date(value: date) -> str:
    return value.strftime("%A, %d %B %Y")


def render_booking_email(booking: Booking, email_type: str, extra: Optional[Dict[str, Any]] = None) -> EmailMessage:
    """
    Build subject and HTML body for one booking email.

    Raises:
        ValueError: Unknown email type
    """
    if email_type not in EMAIL_TYPES:
        raise ValueError(f"Unknown email type: {email_type}")

    extra = extra or {}
    name = escape(booking.customer.full_name)
    number = escape(booking.booking_number)
    property_name = escape(booking.property.name)
    stay = (
        f"<p><strong>{property_name}</strong><br>"
        f"Check-in: {_format_date(booking.check_in_date)}<br>"
        f"Check-out: {_format_date(booking.check_out_date)}<br>"
        f"Guests: {booking.num_guests}</p>"
    )
    manage_link = f'<p><a href="{escape(settings.SITE_URL)}/booking/{number}">View your booking</a></p>'

    if email_type == "confirmation":
        subject = f"Booking confirmed - {booking.booking_number}"
        body = (
            f"<p>Dear {name},</p>"
            f"<p>Your booking <strong>{number}</strong> is confirmed.</p>"
            f"{stay}"
            f"<p>Total paid: {_format_money(booking.total_amount)}</p>"
        )
        if extra.get("transaction_ref"):
            body += f"<p>Payment reference: {escape(str(extra['transaction_ref']))}</p>"
    elif email_type == "payment_receipt":
        subject = f"Payment receipt - {booking.booking_number}"
        body = (
            f"<p>Dear {name},</p>"
            f"<p>We received {_format_money(extra.get('amount', booking.total_amount))} "
            f"for booking <strong>{number}</strong>.</p>"
            f"{stay}"
        )
    elif email_type == "cancellation":
        subject = f"Booking cancelled - {booking.booking_number}"
        refund_amount = extra.get("refund_amount", 0)
        body = (
            f"<p>Dear {name},</p>"
            f"<p>Your booking <strong>{number}</strong> has been cancelled.</p>"
            f"{stay}"
            f"<p>Refund: {_format_money(refund_amount)}</p>"
        )
        if extra.get("refund_message"):
            body += f"<p>{escape(str(extra['refund_message']))}</p>"
        if booking.cancellation_reason:
            body += f"<p>Reason: {escape(booking.cancellation_reason)}</p>"
    else:
        subject = f"See you tomorrow - {booking.booking_number}"
        body = (
            f"<p>Dear {name},</p>"
            f"<p>This is a reminder that your stay begins tomorrow.</p>"
            f"{stay}"
        )

    html = f"<html><body>{body}{manage_link}</body></html>"
    return EmailMessage(to=booking.customer.email, subject=subject, html=html)


class ResendClient:
    """Minimal client for ``POST /emails``."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.base_url = base_url or settings.RESEND_BASE_URL
        self._transport = transport

    async def send(self, message: EmailMessage) -> Optional[str]:
        """Send one email; returns Resend's id, or None if not configured."""
        if not self.api_key:
            logger.warning("RESEND_API_KEY not configured, email skipped", subject=message.subject)
            return None

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            transport=self._transport,
        ) as client:
            response = await client.post(
                "/emails",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": settings.EMAIL_FROM,
                    "to": [message.to],
                    "subject": message.subject,
                    "html": message.html,
                },
            )
            response.raise_for_status()
            email_id = response.json().get("id")

        logger.info("Email sent", subject=message.subject, email_id=email_id)
        return email_id


async def send_booking_email(
    booking_id: UUID,
    email_type: str,
    extra: Optional[Dict[str, Any]] = None,
    client: Optional[ResendClient] = None,
) -> Optional[str]:
    """Load the booking and send one of the booking emails."""
    async with get_async_session() as session:
        booking = await get_booking(session, booking_id, with_relations=True)
        if booking is None:
            logger.warning("Email skipped, booking not found", booking_id=str(booking_id), email_type=email_type)
            return None
        message = render_booking_email(booking, email_type, extra)

    return await (client or ResendClient()).send(message)
