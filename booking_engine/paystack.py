"""
Paystack Client
===============

Async client for the two Paystack REST calls the booking engine needs:

- ``GET /transaction/verify/{reference}`` to confirm a charge server-side
- ``POST /refund`` to return money for a cancelled booking

All amounts on the wire are in kobo (minor units).
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
import structlog
from prometheus_client import Histogram

from .config import settings

logger = structlog.get_logger(__name__)

PROVIDER_LATENCY = Histogram(
    "paystack_request_seconds",
    "Paystack API request latency",
    ["operation", "outcome"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0]
)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class VerifiedTransaction:
    """Result of ``GET /transaction/verify/{reference}``."""
    id: Optional[int]
    reference: str
    status: str
    amount: int  # kobo
    currency: Optional[str]
    channel: Optional[str]
    paid_at: Optional[str]
    customer_email: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def successful(self) -> bool:
        return self.status == "success"


@dataclass
class RefundResult:
    """Result of ``POST /refund``."""
    accepted: bool
    refund_id: Optional[int]
    status: Optional[str]
    message: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class PaymentProviderError(Exception):
    """Base exception for Paystack errors."""
    def __init__(self, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class ProviderRequestError(PaymentProviderError):
    """Raised when Paystack could not be reached or kept failing."""
    pass


class ProviderNotConfigured(PaymentProviderError):
    """Raised when no secret key is configured."""
    pass


# =============================================================================
# CLIENT
# =============================================================================

def calculate_retry_delay(attempt: int, base: Optional[float] = None) -> float:
    """Exponential backoff with jitter."""
    base = settings.HTTP_BACKOFF_BASE_SECONDS if base is None else base
    delay = base * (2 ** attempt)
    return delay + random.uniform(0, delay / 2)


class PaystackClient:
    """
    Paystack REST client.

    Verification is idempotent and retried on transport errors, 5xx and 429.
    Refund creation is retried only when the request never reached Paystack
    (connect errors), so a refund is never issued twice.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            secret_key: Paystack secret key (defaults to PAYSTACK_SECRET_KEY)
            base_url: API base URL
            timeout: HTTP request timeout in seconds
            max_retries: Extra attempts after the first for retryable failures
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.secret_key = secret_key if secret_key is not None else settings.PAYSTACK_SECRET_KEY
        self.base_url = base_url or settings.PAYSTACK_BASE_URL
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.HTTP_MAX_RETRIES
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json"
        }

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # API CALLS
    # =========================================================================

    async def verify_transaction(self, reference: str) -> VerifiedTransaction:
        """
        Verify a transaction by reference.

        Args:
            reference: Payment reference handed to the checkout popup

        Returns:
            The verified transaction as Paystack reports it

        Raises:
            PaymentProviderError: Paystack rejected the lookup
            ProviderRequestError: Paystack could not be reached
        """
        response = await self._make_request(
            "GET",
            f"/transaction/verify/{quote(reference, safe='')}",
            operation="verify",
            retry_on_status=True,
        )
        body = self._json(response)

        if response.status_code >= 400 or not body.get("status"):
            raise PaymentProviderError(
                body.get("message") or "Payment verification failed",
                status_code=response.status_code,
                response_body=response.text,
            )

        data = body.get("data") or {}
        customer = data.get("customer") or {}
        return VerifiedTransaction(
            id=data.get("id"),
            reference=data.get("reference") or reference,
            status=data.get("status") or "unknown",
            amount=int(data.get("amount") or 0),
            currency=data.get("currency"),
            channel=data.get("channel"),
            paid_at=data.get("paid_at"),
            customer_email=customer.get("email"),
            raw=data,
        )

    async def create_refund(self, transaction_id: int, amount: int, merchant_note: str) -> RefundResult:
        """
        Refund part or all of a transaction.

        Args:
            transaction_id: Paystack's numeric transaction id
            amount: Amount to refund in kobo
            merchant_note: Note shown on the Paystack dashboard

        Returns:
            RefundResult; ``accepted`` is False when Paystack declined it
        """
        response = await self._make_request(
            "POST",
            "/refund",
            json={
                "transaction": transaction_id,
                "amount": amount,
                "merchant_note": merchant_note,
            },
            operation="refund",
            retry_on_status=False,
        )
        body = self._json(response)
        data = body.get("data") or {}

        return RefundResult(
            accepted=bool(body.get("status")) and response.status_code < 400,
            refund_id=data.get("id"),
            status=data.get("status"),
            message=body.get("message"),
            raw=body,
        )

    async def refund_by_reference(self, reference: str, amount: int, merchant_note: str) -> RefundResult:
        """Look up the transaction id for a reference, then refund it."""
        verified = await self.verify_transaction(reference)
        if not verified.id:
            raise PaymentProviderError(f"No Paystack transaction id for reference {reference}")
        return await self.create_refund(verified.id, amount, merchant_note)

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        operation: str,
        retry_on_status: bool,
        json: Optional[Dict] = None,
    ) -> httpx.Response:
        """
        Make an HTTP request with bounded retries.

        Raises:
            ProviderNotConfigured: No secret key
            ProviderRequestError: Transport failure after all attempts
        """
        if not self.configured:
            raise ProviderNotConfigured("Payment service not configured")

        client = await self.get_client()
        attempt = 0

        while True:
            started = time.perf_counter()
            try:
                response = await client.request(method=method, url=endpoint, json=json)
            except httpx.RequestError as e:
                PROVIDER_LATENCY.labels(operation=operation, outcome="error").observe(
                    time.perf_counter() - started
                )
                # A POST that may have reached Paystack must not be replayed
                retryable = retry_on_status or isinstance(e, httpx.ConnectError)
                if retryable and attempt < self.max_retries:
                    delay = calculate_retry_delay(attempt)
                    logger.warning(
                        "Paystack request failed, retrying",
                        operation=operation,
                        attempt=attempt + 1,
                        delay=round(delay, 2),
                        error=str(e)
                    )
                    attempt += 1
                    await asyncio.sleep(delay)
                    continue

                logger.error(
                    "Paystack request failed",
                    operation=operation,
                    endpoint=endpoint,
                    error=str(e)
                )
                raise ProviderRequestError(f"Request failed: {e}") from e

            PROVIDER_LATENCY.labels(operation=operation, outcome=str(response.status_code)).observe(
                time.perf_counter() - started
            )

            transient = response.status_code == 429 or response.status_code >= 500
            if transient and retry_on_status and attempt < self.max_retries:
                delay = self._retry_after(response) or calculate_retry_delay(attempt)
                logger.warning(
                    "Paystack returned transient error, retrying",
                    operation=operation,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    delay=round(delay, 2)
                )
                attempt += 1
                await asyncio.sleep(delay)
                continue

            if transient:
                raise ProviderRequestError(
                    f"Server error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text,
                )

            logger.info(
                "Paystack response",
                operation=operation,
                status_code=response.status_code
            )
            return response

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value and value.isdigit():
            return float(value)
        return None

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


def parse_paid_at(value: Optional[str]) -> Optional[datetime]:
    """Parse Paystack's ISO-8601 ``paid_at`` timestamp."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
