"""
Billing reconciliation service.

WHAT: Prices purchases, creates gateway orders and invoices, and settles
captured payments into the ledger.

WHY: Two independent paths learn that a payment was captured: the browser
calling ``verify_payment`` after checkout, and the gateway's webhook. Either
may arrive first, both may arrive, and either may be retried. Settlement
must apply the purchase's ledger effect exactly once.

HOW:
- Money is Decimal, quantized to 0.01 with ROUND_HALF_UP at each step.
- Signatures are verified before anything is read from the database.
- ``_settle`` inserts the PaymentTransaction inside a SAVEPOINT. Its UNIQUE
  constraints (payment id, invoice id) are the serialization point: the
  path that loses the race sees IntegrityError and returns the winner's
  result as a no-op.
"""

import logging
import json
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.config import settings
from quota_ledger.core.exceptions import (
    InvalidSignatureError,
    InvalidStateTransitionError,
    PaymentNotCapturedError,
    ResourceNotFoundError,
    ValidationError,
)
from quota_ledger.dao.invoice import InvoiceDAO, PaymentTransactionDAO
from quota_ledger.dao.organization import OrganizationDAO
from quota_ledger.dao.partner import PartnerDAO
from quota_ledger.models.base import BYTES_PER_GB
from quota_ledger.models.invoice import Invoice, InvoiceStatus, InvoiceType
from quota_ledger.models.organization import Organization
from quota_ledger.models.partner import Partner
from quota_ledger.models.payment_transaction import SettlementSource
from quota_ledger.services.allocation_engine import AllocationEngine
from quota_ledger.services.razorpay_client import (
    MAX_RECEIPT_LENGTH,
    GatewayPayment,
    RazorpayClient,
    verify_payment_signature,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)


TWO_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")

# Webhook events that mean "this order's payment is captured"
SETTLING_EVENTS = {"payment.captured", "order.paid"}


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a rupee amount to paise, rounding half up."""
    return int((amount * HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def _as_object(value: Any) -> Dict[str, Any]:
    """Nested webhook fields that are not JSON objects read as empty."""
    return value if isinstance(value, dict) else {}


# ============================================================================
# Catalog and pricing
# ============================================================================


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class SubscriptionPlan:
    """Per-user subscription plan."""

    code: str
    display_name: str
    storage_bytes_per_user: int
    monthly_price: Decimal
    yearly_price: Decimal

    def price_for(self, cycle: BillingCycle) -> Decimal:
        return self.monthly_price if cycle == BillingCycle.MONTHLY else self.yearly_price


SUBSCRIPTION_PLANS: Dict[str, SubscriptionPlan] = {
    plan.code: plan
    for plan in (
        SubscriptionPlan("1gb", "1 GB", 1 * BYTES_PER_GB, Decimal("49"), Decimal("499")),
        SubscriptionPlan("5gb", "5 GB", 5 * BYTES_PER_GB, Decimal("79"), Decimal("799")),
        SubscriptionPlan("10gb", "10 GB", 10 * BYTES_PER_GB, Decimal("129"), Decimal("1299")),
        SubscriptionPlan("25gb", "25 GB", 25 * BYTES_PER_GB, Decimal("199"), Decimal("1999")),
        SubscriptionPlan("50gb", "50 GB", 50 * BYTES_PER_GB, Decimal("349"), Decimal("3499")),
        SubscriptionPlan("100gb", "100 GB", 100 * BYTES_PER_GB, Decimal("599"), Decimal("5999")),
    )
}


@dataclass(frozen=True)
class PriceableItem:
    """
    Something a buyer can order.

    ``storage_bytes`` is the ledger effect applied when the invoice is paid
    (zero for subscriptions).
    """

    kind: InvoiceType
    description: str
    unit_price: Decimal
    quantity: int
    storage_bytes: int = 0
    notes: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    discount_percentage: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    @property
    def amount_minor(self) -> int:
        return to_minor_units(self.total_amount)


def price_item(
    item: PriceableItem,
    discount_percentage: Decimal,
    tax_rate: Decimal,
) -> PriceBreakdown:
    """
    subtotal = unit price x quantity x (1 - discount/100); tax = subtotal x rate.
    """
    gross = item.unit_price * item.quantity
    subtotal = quantize_money(gross * (HUNDRED - discount_percentage) / HUNDRED)
    tax_amount = quantize_money(subtotal * tax_rate)
    return PriceBreakdown(
        subtotal=subtotal,
        discount_percentage=discount_percentage,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        total_amount=quantize_money(subtotal + tax_amount),
    )


@dataclass
class OrderResult:
    """What checkout needs to open the gateway's payment form."""

    order_id: str
    invoice_id: int
    invoice_number: str
    amount: Decimal
    amount_minor: int
    currency: str
    key_id: str


@dataclass
class PaymentSettlement:
    """Outcome of settling a captured payment."""

    invoice_id: int
    payment_id: str
    status: InvoiceStatus
    already_processed: bool = False


Buyer = Union[Partner, Organization]


# ============================================================================
# Service
# ============================================================================


class BillingService:
    """
    Orders, payment verification and webhook settlement.

    Args:
        session: Database session
        gateway: Payment gateway client
    """

    def __init__(self, session: AsyncSession, gateway: RazorpayClient):
        self.session = session
        self.gateway = gateway
        self.invoices = InvoiceDAO(session)
        self.transactions = PaymentTransactionDAO(session)
        self.partners = PartnerDAO(session)
        self.organizations = OrganizationDAO(session)
        self.engine = AllocationEngine(session)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_storage_order(self, partner_id: int, storage_gb: int) -> OrderResult:
        """
        Order additional pool storage for a partner.

        Raises:
            ValidationError: If storage_gb is not positive
            ResourceNotFoundError: If the partner does not exist
        """
        if storage_gb <= 0:
            raise ValidationError(message="Storage amount must be positive", storage_gb=storage_gb)

        partner = await self.partners.get_by_id(partner_id)
        if partner is None:
            raise ResourceNotFoundError(message="Partner not found", partner_id=partner_id)

        item = PriceableItem(
            kind=InvoiceType.PARTNER_STORAGE,
            description=f"Storage pool top-up: {storage_gb} GB",
            unit_price=settings.STORAGE_PRICE_PER_GB,
            quantity=storage_gb,
            storage_bytes=storage_gb * BYTES_PER_GB,
            notes={"storage_gb": storage_gb},
        )
        return await self.create_order(partner, item)

    async def create_subscription_order(
        self,
        organization_id: int,
        plan_code: str,
        billing_cycle: BillingCycle,
        user_count: int,
    ) -> OrderResult:
        """
        Order a per-user subscription for an organization.

        Partner-managed organizations get their partner's discount.
        """
        if user_count <= 0:
            raise ValidationError(message="User count must be positive", user_count=user_count)

        plan = SUBSCRIPTION_PLANS.get(plan_code)
        if plan is None:
            raise ResourceNotFoundError(message="Subscription plan not found", plan=plan_code)

        organization = await self.organizations.get_by_id(organization_id)
        if organization is None:
            raise ResourceNotFoundError(
                message="Organization not found", organization_id=organization_id
            )

        item = PriceableItem(
            kind=InvoiceType.ORGANIZATION_SUBSCRIPTION,
            description=f"{plan.display_name} - {user_count} users ({billing_cycle.value})",
            unit_price=plan.price_for(billing_cycle),
            quantity=user_count,
            notes={"plan": plan.code, "billing_cycle": billing_cycle.value},
        )
        return await self.create_order(organization, item)

    async def _discount_for(self, buyer: Buyer) -> Decimal:
        if isinstance(buyer, Partner):
            return buyer.discount_percentage
        if buyer.partner_id is None:
            return Decimal("0.00")
        partner = await self.partners.get_by_id(buyer.partner_id)
        return partner.discount_percentage if partner else Decimal("0.00")

    async def create_order(self, buyer: Buyer, item: PriceableItem) -> OrderResult:
        """
        Price an item, open a gateway order, and record a draft invoice.

        No ledger effect happens here; it waits for a captured payment.

        Raises:
            PaymentGatewayError: If the gateway rejected the order
        """
        is_partner = isinstance(buyer, Partner)
        breakdown = price_item(item, await self._discount_for(buyer), settings.GST_RATE)

        prefix = "st" if item.kind == InvoiceType.PARTNER_STORAGE else "sb"
        receipt = f"{prefix}_{buyer.id}_{_base36(int(datetime.utcnow().timestamp() * 1000))}"
        notes = {
            "type": item.kind.value,
            "partner_id" if is_partner else "organization_id": str(buyer.id),
            **{k: str(v) for k, v in (item.notes or {}).items()},
        }

        order = await self.gateway.create_order(
            amount_minor=breakdown.amount_minor,
            currency=settings.BILLING_CURRENCY,
            receipt=receipt[:MAX_RECEIPT_LENGTH],
            notes=notes,
        )

        invoice = await self.invoices.create(
            invoice_number=self._invoice_number(),
            invoice_type=item.kind,
            partner_id=buyer.id if is_partner else None,
            organization_id=None if is_partner else buyer.id,
            description=item.description,
            quantity=item.quantity,
            storage_bytes=item.storage_bytes,
            subtotal=breakdown.subtotal,
            discount_percentage=breakdown.discount_percentage,
            tax_rate=breakdown.tax_rate,
            tax_amount=breakdown.tax_amount,
            total_amount=breakdown.total_amount,
            currency=settings.BILLING_CURRENCY,
            status=InvoiceStatus.DRAFT,
            due_date=date.today() + timedelta(days=settings.INVOICE_DUE_DAYS),
            gateway_order_id=order.id,
        )

        logger.info(
            f"Order {order.id} created for invoice {invoice.invoice_number} "
            f"({breakdown.total_amount} {settings.BILLING_CURRENCY})",
            extra={"invoice_id": invoice.id, "order_id": order.id, "type": item.kind.value},
        )
        return OrderResult(
            order_id=order.id,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            amount=breakdown.total_amount,
            amount_minor=breakdown.amount_minor,
            currency=settings.BILLING_CURRENCY,
            key_id=self.gateway.key_id,
        )

    @staticmethod
    def _invoice_number() -> str:
        return f"INV-{datetime.utcnow():%y%m}-{secrets.token_hex(3).upper()}"

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def verify_payment(
        self, order_id: str, payment_id: str, signature: str
    ) -> PaymentSettlement:
        """
        Settle a payment reported by checkout.

        Raises:
            InvalidSignatureError: If the checkout signature does not match
            PaymentNotCapturedError: If the gateway does not confirm capture
            ResourceNotFoundError: If no invoice exists for the order
        """
        if not verify_payment_signature(
            order_id, payment_id, signature, settings.RAZORPAY_KEY_SECRET
        ):
            logger.warning(
                f"Invalid payment signature for order {order_id}",
                extra={"order_id": order_id, "payment_id": payment_id},
            )
            raise InvalidSignatureError(order_id=order_id)

        payment = await self.gateway.get_payment(payment_id)
        if not payment.is_captured or payment.order_id != order_id:
            logger.warning(
                f"Payment {payment_id} not captured for order {order_id} "
                f"(status={payment.status}, order={payment.order_id})",
                extra={"order_id": order_id, "payment_id": payment_id},
            )
            raise PaymentNotCapturedError(
                payment_id=payment_id, payment_status=payment.status
            )

        invoice = await self.invoices.get_by_gateway_order_id(order_id)
        if invoice is None:
            raise ResourceNotFoundError(message="Invoice not found", order_id=order_id)

        return await self._settle(invoice, payment, SettlementSource.VERIFY, signature)

    async def handle_webhook(self, raw_body: bytes, signature: str) -> Optional[PaymentSettlement]:
        """
        Process a gateway webhook delivery.

        Returns:
            The settlement for settling events on known orders, None for
            anything acknowledged and ignored

        Raises:
            InvalidSignatureError: If the body signature does not match
            ValidationError: If the body is not a JSON object
        """
        if not verify_webhook_signature(raw_body, signature, settings.webhook_secret):
            logger.warning("Webhook rejected: invalid signature")
            raise InvalidSignatureError()

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationError(message="Webhook body is not valid JSON")
        if not isinstance(event, dict):
            raise ValidationError(message="Webhook body must be a JSON object")

        event_type = event.get("event")
        if event_type not in SETTLING_EVENTS:
            logger.info(f"Ignoring webhook event {event_type}")
            return None

        payload = _as_object(event.get("payload"))
        entity = _as_object(_as_object(payload.get("payment")).get("entity"))
        if not entity.get("id"):
            logger.info(f"Webhook {event_type} carries no payment entity; ignoring")
            return None
        payment = GatewayPayment.from_entity(entity)
        if event_type == "order.paid":
            payment.status = "captured"

        order_id = payment.order_id or (
            _as_object(_as_object(payload.get("order")).get("entity")).get("id")
        )
        invoice = await self.invoices.get_by_gateway_order_id(order_id) if order_id else None
        if invoice is None:
            logger.info(
                f"Webhook {event_type} for unknown order {order_id}; ignoring",
                extra={"order_id": order_id},
            )
            return None

        return await self._settle(invoice, payment, SettlementSource.WEBHOOK)

    async def _settle(
        self,
        invoice: Invoice,
        payment: GatewayPayment,
        source: SettlementSource,
        signature: Optional[str] = None,
    ) -> PaymentSettlement:
        """
        Record a captured payment and apply its ledger effect once.
        """
        prior = await self.transactions.get_by_gateway_payment_id(payment.id)
        if prior is not None:
            return await self._prior_result(prior.invoice_id, payment.id)

        invoice = await self.invoices.get_by_gateway_order_id_for_update(invoice.gateway_order_id)
        if invoice.status == InvoiceStatus.CANCELLED:
            raise InvalidStateTransitionError(
                message="Invoice is cancelled and cannot be paid",
                invoice_id=invoice.id,
            )
        if invoice.is_paid:
            return PaymentSettlement(
                invoice_id=invoice.id,
                payment_id=invoice.gateway_payment_id or payment.id,
                status=invoice.status,
                already_processed=True,
            )

        try:
            async with self.session.begin_nested():
                await self.transactions.create(
                    invoice_id=invoice.id,
                    partner_id=invoice.partner_id,
                    organization_id=invoice.organization_id,
                    gateway_order_id=invoice.gateway_order_id,
                    gateway_payment_id=payment.id,
                    gateway_signature=signature,
                    amount=invoice.total_amount,
                    currency=invoice.currency,
                    status="captured",
                    payment_method=payment.method,
                    source=source.value,
                )
        except IntegrityError:
            logger.info(
                f"Payment {payment.id} already recorded by a concurrent settlement",
                extra={"invoice_id": invoice.id, "source": source.value},
            )
            return await self._prior_result(invoice.id, payment.id)

        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = datetime.utcnow()
        invoice.gateway_payment_id = payment.id
        invoice.payment_method = payment.method
        await self.session.flush()

        if invoice.invoice_type == InvoiceType.PARTNER_STORAGE and invoice.storage_bytes > 0:
            await self.engine.top_up_partner_pool(invoice.partner_id, invoice.storage_bytes)

        logger.info(
            f"Invoice {invoice.invoice_number} paid via {source.value}",
            extra={"invoice_id": invoice.id, "payment_id": payment.id},
        )
        return PaymentSettlement(
            invoice_id=invoice.id,
            payment_id=payment.id,
            status=invoice.status,
        )

    async def _prior_result(self, invoice_id: int, payment_id: str) -> PaymentSettlement:
        invoice = await self.invoices.get_by_id(invoice_id)
        return PaymentSettlement(
            invoice_id=invoice_id,
            payment_id=payment_id,
            status=invoice.status if invoice else InvoiceStatus.PAID,
            already_processed=True,
        )

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    async def list_invoices(
        self,
        partner_id: Optional[int] = None,
        organization_id: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Invoice]:
        return await self.invoices.get_for_buyer(
            partner_id=partner_id,
            organization_id=organization_id,
            status=status,
            skip=skip,
            limit=limit,
        )

    async def count_invoices(
        self,
        partner_id: Optional[int] = None,
        organization_id: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
    ) -> int:
        return await self.invoices.count_for_buyer(
            partner_id=partner_id, organization_id=organization_id, status=status
        )

    async def mark_overdue_invoices(self, today: Optional[date] = None) -> int:
        """
        Flag unpaid invoices past their due date. Overdue invoices still settle.
        """
        count = await self.invoices.mark_overdue(today or date.today())
        if count:
            logger.info(f"Marked {count} invoices overdue")
        return count
