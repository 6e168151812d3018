"""
Billing API endpoints.

WHAT: Order creation for storage top-ups and subscriptions, checkout
verification, invoice listing, and the payment gateway webhook.

WHY: A captured payment is reported twice, once by the browser after
checkout (``/billing/payments/verify``) and once by the gateway
(``/webhooks/razorpay``). Both end in BillingService settlement, which
applies the ledger effect exactly once.

HOW:
- ``router`` is authenticated and capability-checked like the rest of the API
- ``webhooks_router`` is unauthenticated; the body's HMAC signature is the
  only credential, so it must be read as raw bytes before any parsing
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.api.access import ensure_invoice_access, load_organization, load_partner
from quota_ledger.core.capabilities import Capability, Principal, Role
from quota_ledger.core.deps import require_capability
from quota_ledger.db.session import get_db
from quota_ledger.dao.invoice import InvoiceDAO
from quota_ledger.models.invoice import InvoiceStatus
from quota_ledger.schemas.billing import (
    InvoiceListResponse,
    InvoiceResponse,
    OrderResponse,
    PaymentSettlementResponse,
    PaymentVerification,
    StorageOrderCreate,
    SubscriptionOrderCreate,
    WebhookAck,
)
from quota_ledger.services.billing_service import BillingService
from quota_ledger.services.razorpay_client import RazorpayClient, create_razorpay_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# ============================================================================
# Orders
# ============================================================================


@router.post(
    "/partners/{partner_id}/storage-orders",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Order partner storage",
)
async def create_storage_order(
    partner_id: int,
    data: StorageOrderCreate,
    principal: Principal = Depends(require_capability(Capability.BILLING_PURCHASE)),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(create_razorpay_client),
) -> OrderResponse:
    """
    Open a gateway order for additional partner pool storage.

    The pool grows only after the payment is captured and settled.

    Raises:
        PaymentGatewayError: If the gateway rejected the order (502)
    """
    await load_partner(db, principal, partner_id)
    result = await BillingService(db, gateway).create_storage_order(partner_id, data.storage_gb)
    return OrderResponse.model_validate(result)


@router.post(
    "/organizations/{organization_id}/subscription-orders",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Order organization subscription",
)
async def create_subscription_order(
    organization_id: int,
    data: SubscriptionOrderCreate,
    principal: Principal = Depends(require_capability(Capability.BILLING_PURCHASE)),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(create_razorpay_client),
) -> OrderResponse:
    await load_organization(db, principal, organization_id)
    result = await BillingService(db, gateway).create_subscription_order(
        organization_id, data.plan, data.billing_cycle, data.user_count
    )
    return OrderResponse.model_validate(result)


# ============================================================================
# Settlement
# ============================================================================


@router.post(
    "/payments/verify",
    response_model=PaymentSettlementResponse,
    summary="Verify checkout payment",
)
async def verify_payment(
    data: PaymentVerification,
    principal: Principal = Depends(require_capability(Capability.BILLING_PURCHASE)),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(create_razorpay_client),
) -> PaymentSettlementResponse:
    """
    Settle a payment using the values checkout returned.

    Safe to repeat: a second call for a settled invoice reports
    ``already_processed=true`` and changes nothing.

    Raises:
        InvalidSignatureError: Signature mismatch (400)
        PaymentNotCapturedError: Gateway does not confirm capture (402)
    """
    invoice = await InvoiceDAO(db).get_by_gateway_order_id(data.razorpay_order_id)
    if invoice is not None:
        await ensure_invoice_access(db, principal, invoice)

    settlement = await BillingService(db, gateway).verify_payment(
        data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature
    )
    return PaymentSettlementResponse.model_validate(settlement)


@webhooks_router.post("/razorpay", response_model=WebhookAck, summary="Payment gateway webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str = Header(default=""),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(create_razorpay_client),
) -> WebhookAck:
    """
    Receive gateway events.

    Unknown events and unknown orders are acknowledged with
    ``processed=false`` so the gateway stops retrying them. A bad signature
    is rejected with 400.
    """
    raw_body = await request.body()
    settlement = await BillingService(db, gateway).handle_webhook(raw_body, x_razorpay_signature)
    return WebhookAck(processed=settlement is not None)


# ============================================================================
# Invoices
# ============================================================================


@router.get("/invoices", response_model=InvoiceListResponse, summary="List invoices")
async def list_invoices(
    partner_id: Optional[int] = Query(default=None),
    organization_id: Optional[int] = Query(default=None),
    invoice_status: Optional[InvoiceStatus] = Query(default=None, alias="status"),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_capability(Capability.BILLING_READ)),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(create_razorpay_client),
) -> InvoiceListResponse:
    """
    List invoices visible to the caller.

    Organization admins always see their own organization's invoices.
    Partner admins see their own invoices, or one of their organizations'
    when ``organization_id`` is given.
    """
    if principal.role == Role.ORGANIZATION_ADMIN:
        partner_id, organization_id = None, principal.organization_id
    elif organization_id is not None:
        await load_organization(db, principal, organization_id)
        partner_id = None
    elif principal.role == Role.PARTNER_ADMIN:
        partner_id = principal.partner_id

    service = BillingService(db, gateway)
    invoices = await service.list_invoices(
        partner_id=partner_id,
        organization_id=organization_id,
        status=invoice_status,
        skip=skip,
        limit=limit,
    )
    total = await service.count_invoices(
        partner_id=partner_id, organization_id=organization_id, status=invoice_status
    )
    return InvoiceListResponse(
        items=[InvoiceResponse.model_validate(i) for i in invoices],
        total=total,
        skip=skip,
        limit=limit,
    )
