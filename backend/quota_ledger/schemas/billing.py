"""
Billing schemas for API request/response validation.

WHAT: Order creation, checkout verification and invoice listing payloads.

WHY: The order response carries everything the gateway's checkout form
needs (order id, amount in minor units, public key id); the verification
request carries the three values checkout hands back.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from quota_ledger.models.invoice import InvoiceStatus, InvoiceType
from quota_ledger.services.billing_service import BillingCycle


# ============================================================================
# Request Schemas
# ============================================================================


class StorageOrderCreate(BaseModel):
    storage_gb: int = Field(..., gt=0, le=100000, description="Gigabytes to add to the pool")


class SubscriptionOrderCreate(BaseModel):
    plan: str = Field(..., min_length=1, max_length=50, description="Plan code, e.g. 10gb")
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    user_count: int = Field(..., gt=0, le=100000)


class PaymentVerification(BaseModel):
    """Values returned to the browser by the gateway checkout."""

    razorpay_order_id: str = Field(..., min_length=1, max_length=64)
    razorpay_payment_id: str = Field(..., min_length=1, max_length=64)
    razorpay_signature: str = Field(..., min_length=1, max_length=256)


# ============================================================================
# Response Schemas
# ============================================================================


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    invoice_id: int
    invoice_number: str
    amount: Decimal
    amount_minor: int
    currency: str
    key_id: str


class PaymentSettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    invoice_id: int
    payment_id: str
    status: InvoiceStatus
    already_processed: bool


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    invoice_type: InvoiceType
    partner_id: Optional[int] = None
    organization_id: Optional[int] = None
    description: str
    quantity: int
    storage_bytes: int
    subtotal: Decimal
    discount_percentage: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str
    status: InvoiceStatus
    due_date: date
    paid_at: Optional[datetime] = None
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    created_at: datetime


class InvoiceListResponse(BaseModel):
    items: List[InvoiceResponse]
    total: int
    skip: int
    limit: int


class WebhookAck(BaseModel):
    status: str = "ok"
    processed: bool = False
