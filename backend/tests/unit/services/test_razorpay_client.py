"""
Unit tests for the Razorpay gateway client and signature helpers.

WHY: A payment settles an invoice and grows a storage pool. Both signature
checks must reject anything not produced with the right secret, and the
HTTP client must surface gateway errors instead of returning half-parsed
orders.
"""

import base64
import hashlib
import hmac
import json

import httpx
import pytest

from quota_ledger.core.exceptions import PaymentGatewayError
from quota_ledger.services.razorpay_client import (
    RazorpayClient,
    compute_payment_signature,
    verify_payment_signature,
    verify_webhook_signature,
)


def make_client(handler) -> RazorpayClient:
    return RazorpayClient(
        key_id="rzp_test_key",
        key_secret="test_key_secret",
        base_url="https://api.razorpay.test/v1/",
        transport=httpx.MockTransport(handler),
    )


class TestPaymentSignature:
    """Checkout signature over ``order_id|payment_id``."""

    def test_matches_reference_hmac(self):
        expected = hmac.new(
            b"test_key_secret", b"order_abc|pay_xyz", hashlib.sha256
        ).hexdigest()

        assert compute_payment_signature("order_abc", "pay_xyz", "test_key_secret") == expected

    def test_valid_signature_accepted(self):
        signature = compute_payment_signature("order_abc", "pay_xyz", "test_key_secret")
        assert verify_payment_signature("order_abc", "pay_xyz", signature, "test_key_secret")

    def test_swapped_ids_rejected(self):
        signature = compute_payment_signature("order_abc", "pay_xyz", "test_key_secret")
        assert not verify_payment_signature("pay_xyz", "order_abc", signature, "test_key_secret")

    def test_wrong_secret_rejected(self):
        signature = compute_payment_signature("order_abc", "pay_xyz", "other_secret")
        assert not verify_payment_signature("order_abc", "pay_xyz", signature, "test_key_secret")

    def test_empty_signature_or_secret_rejected(self):
        assert not verify_payment_signature("order_abc", "pay_xyz", "", "test_key_secret")
        assert not verify_payment_signature("order_abc", "pay_xyz", "abc", "")

    def test_non_ascii_signature_rejected(self):
        assert not verify_payment_signature("order_abc", "pay_xyz", "é" * 64, "test_key_secret")


class TestWebhookSignature:
    """Webhook signature over the raw body."""

    def test_valid_body_signature(self):
        body = b'{"event":"payment.captured"}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

        assert verify_webhook_signature(body, signature, "whsec")

    def test_reserialized_body_rejected(self):
        body = b'{"event":"payment.captured"}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        reserialized = json.dumps(json.loads(body)).encode()

        assert not verify_webhook_signature(reserialized, signature, "whsec")

    def test_missing_header_rejected(self):
        assert not verify_webhook_signature(b"{}", "", "whsec")

    def test_non_ascii_header_rejected(self):
        assert not verify_webhook_signature(b"{}", "é" * 64, "whsec")


@pytest.mark.asyncio
class TestRazorpayClient:
    """HTTP calls against a mocked gateway."""

    async def test_create_order_uses_basic_auth_and_minor_units(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "id": "order_abc",
                    "amount": 94400,
                    "currency": "INR",
                    "receipt": seen["body"]["receipt"],
                    "status": "created",
                },
            )

        order = await make_client(handler).create_order(
            94400, "INR", receipt="INV-2610-ABCDEF", notes={"invoice_id": "1"}
        )

        expected_auth = base64.b64encode(b"rzp_test_key:test_key_secret").decode()
        assert seen["url"] == "https://api.razorpay.test/v1/orders"
        assert seen["auth"] == f"Basic {expected_auth}"
        assert seen["body"]["amount"] == 94400
        assert seen["body"]["notes"] == {"invoice_id": "1"}
        assert order.id == "order_abc"
        assert order.amount == 94400
        assert order.status == "created"

    async def test_long_receipt_truncated(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "order_abc", "amount": 100, "currency": "INR"})

        await make_client(handler).create_order(100, "INR", receipt="R" * 60)

        assert len(seen["body"]["receipt"]) == 40

    async def test_error_status_uses_gateway_description(self):
        def handler(request):
            return httpx.Response(
                400,
                json={"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too small"}},
            )

        with pytest.raises(PaymentGatewayError) as exc_info:
            await make_client(handler).create_order(1, "INR", receipt="r")

        assert "amount too small" in exc_info.value.message
        assert exc_info.value.context["upstream_status"] == 400

    async def test_timeout_wrapped(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(PaymentGatewayError):
            await make_client(handler).get_payment("pay_xyz")

    async def test_get_payment_parses_entity(self):
        def handler(request):
            assert request.url.path == "/v1/payments/pay_xyz"
            return httpx.Response(
                200,
                json={
                    "id": "pay_xyz",
                    "order_id": "order_abc",
                    "amount": 94400,
                    "currency": "INR",
                    "status": "captured",
                    "method": "card",
                },
            )

        payment = await make_client(handler).get_payment("pay_xyz")

        assert payment.is_captured
        assert payment.order_id == "order_abc"
        assert payment.method == "card"
