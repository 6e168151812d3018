"""
Razorpay payment gateway client.

WHAT: Order creation, payment lookup, and signature verification for the
gateway that collects partner storage purchases and subscription payments.

WHY: Billing must never trust the browser's claim that a payment
succeeded. Two independent proofs are available:
1. The checkout signature: HMAC-SHA256 of ``order_id|payment_id`` with the
   key secret, returned to the client after checkout.
2. The webhook signature: HMAC-SHA256 of the raw request body with the
   webhook secret.
Both are checked with constant-time comparison (OWASP A08).

HOW: httpx with HTTP Basic auth (key id / key secret), bounded timeout,
errors wrapped in PaymentGatewayError.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from quota_ledger.core.config import settings
from quota_ledger.core.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 20.0

# Gateway limit on the receipt field
MAX_RECEIPT_LENGTH = 40


@dataclass
class GatewayOrder:
    """Order as returned by the gateway."""

    id: str
    amount: int
    currency: str
    receipt: Optional[str]
    status: str


@dataclass
class GatewayPayment:
    """Payment as returned by the gateway."""

    id: str
    order_id: Optional[str]
    amount: int
    currency: str
    status: str
    method: Optional[str] = None

    @property
    def is_captured(self) -> bool:
        return self.status == "captured"

    @classmethod
    def from_entity(cls, entity: Dict[str, Any]) -> "GatewayPayment":
        return cls(
            id=entity["id"],
            order_id=entity.get("order_id"),
            amount=int(entity.get("amount", 0)),
            currency=entity.get("currency", "INR"),
            status=entity.get("status", ""),
            method=entity.get("method"),
        )


# ============================================================================
# Signatures
# ============================================================================


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def compute_payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    """
    Expected checkout signature for an order/payment pair.
    """
    return _hmac_hex(secret, f"{order_id}|{payment_id}".encode())


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """
    Validate the checkout signature returned to the client.

    Returns:
        True if the signature matches
    """
    if not signature or not secret:
        return False
    expected = compute_payment_signature(order_id, payment_id, secret)
    return hmac.compare_digest(signature.encode(), expected.encode())


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Validate a webhook signature over the raw request body.

    Args:
        payload: Raw request body, exactly as received
        signature: Value of the X-Razorpay-Signature header
        secret: Webhook secret

    Returns:
        True if the signature matches
    """
    if not signature or not secret:
        return False
    return hmac.compare_digest(signature.encode(), _hmac_hex(secret, payload).encode())


# ============================================================================
# API Client
# ============================================================================


class RazorpayClient:
    """
    Async HTTP client for the Razorpay REST API.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an authenticated request to the gateway.

        Raises:
            PaymentGatewayError: If the request fails or returns an error status
        """
        url = f"{self._base_url}/{endpoint.lstrip('/')}"

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                auth=(self.key_id, self._key_secret),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.request(method=method, url=url, json=data)
        except httpx.TimeoutException:
            raise PaymentGatewayError(
                message="Payment gateway request timed out",
                endpoint=endpoint,
                timeout=self._timeout,
            )
        except httpx.RequestError as e:
            raise PaymentGatewayError(
                message=f"Payment gateway connection error: {str(e)}",
                endpoint=endpoint,
            )

        if response.status_code >= 400:
            raise PaymentGatewayError(
                message=f"Payment gateway error: {self._parse_error_response(response)}",
                upstream_status=response.status_code,
                endpoint=endpoint,
            )

        return response.json()

    @staticmethod
    def _parse_error_response(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            return error.get("description") or error.get("code") or response.text
        except (ValueError, AttributeError):
            return response.text or f"HTTP {response.status_code}"

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, Any]] = None,
    ) -> GatewayOrder:
        """
        Create an order to be paid through checkout.

        Args:
            amount_minor: Amount in minor units (paise)
            currency: ISO currency code
            receipt: Merchant reference, at most 40 characters
            notes: Key/value metadata echoed back in webhooks
        """
        if len(receipt) > MAX_RECEIPT_LENGTH:
            receipt = receipt[:MAX_RECEIPT_LENGTH]

        body = await self._request(
            "POST",
            "/orders",
            data={
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )
        logger.info(
            f"Created gateway order {body.get('id')} for {amount_minor} {currency}",
            extra={"order_id": body.get("id"), "receipt": receipt},
        )
        return GatewayOrder(
            id=body["id"],
            amount=int(body.get("amount", amount_minor)),
            currency=body.get("currency", currency),
            receipt=body.get("receipt"),
            status=body.get("status", "created"),
        )

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch a payment's current status."""
        body = await self._request("GET", f"/payments/{payment_id}")
        return GatewayPayment.from_entity(body)


def create_razorpay_client() -> RazorpayClient:
    """
    Create a gateway client from application settings.

    Also used as a FastAPI dependency so tests can override it.
    """
    return RazorpayClient(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        base_url=settings.RAZORPAY_API_URL,
        timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
    )
