"""
Invoice model for storage purchases and subscriptions.

WHAT: One invoice per gateway order, billed to exactly one buyer: a Partner
(storage top-up) or an Organization (subscription).

WHY: The invoice is the local record of what was priced and what ledger
effect a captured payment must apply. ``storage_bytes`` is copied here at
order time so the effect never depends on gateway-supplied metadata.

HOW: Amounts are Decimal with two places; ``gateway_order_id`` links the
invoice to the gateway order; ``status`` moves to PAID exactly once, gated
by the PaymentTransaction uniqueness constraints.
"""

from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped

from quota_ledger.models.base import Base, TimestampMixin, enum_values


class InvoiceStatus(str, Enum):
    """
    Invoice payment workflow status.

    - DRAFT: order created, awaiting payment
    - SENT: delivered to the buyer
    - PAID: captured payment recorded
    - OVERDUE: past due date without payment (still payable)
    - CANCELLED: voided; payments are refused
    """

    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class InvoiceType(str, Enum):
    """What was purchased."""

    PARTNER_STORAGE = "partner_storage"
    ORGANIZATION_SUBSCRIPTION = "organization_subscription"


# Statuses from which a captured payment may settle the invoice
PAYABLE_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE})


class Invoice(Base, TimestampMixin):
    """Invoice for a partner storage purchase or organization subscription."""

    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint(
            "(partner_id IS NOT NULL AND organization_id IS NULL) OR "
            "(partner_id IS NULL AND organization_id IS NOT NULL)",
            name="ck_invoices_single_buyer",
        ),
        CheckConstraint("storage_bytes >= 0", name="ck_invoices_storage_nonneg"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)
    invoice_number: Mapped[str] = Column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique invoice number (e.g., INV-2410-3FA9C1)",
    )
    invoice_type: Mapped[InvoiceType] = Column(
        SQLEnum(InvoiceType, name="invoicetype", values_callable=enum_values),
        nullable=False,
    )

    partner_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("partners.id", ondelete="SET NULL"), nullable=True, index=True
    )
    organization_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("organizations.id", ondelete="SET NULL"), nullable=True, index=True
    )

    description: Mapped[str] = Column(String(500), nullable=False)
    quantity: Mapped[int] = Column(Integer, nullable=False, default=1)
    storage_bytes: Mapped[int] = Column(
        BigInteger, nullable=False, default=0, comment="Bytes added to the buyer pool when paid"
    )

    subtotal: Mapped[Decimal] = Column(Numeric(12, 2), nullable=False)
    discount_percentage: Mapped[Decimal] = Column(
        Numeric(5, 2), nullable=False, default=Decimal("0.00")
    )
    tax_rate: Mapped[Decimal] = Column(Numeric(5, 4), nullable=False)
    tax_amount: Mapped[Decimal] = Column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = Column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = Column(String(3), nullable=False, default="INR")

    status: Mapped[InvoiceStatus] = Column(
        SQLEnum(InvoiceStatus, name="invoicestatus", values_callable=enum_values),
        nullable=False,
        default=InvoiceStatus.DRAFT,
        index=True,
    )
    due_date: Mapped[date] = Column(Date, nullable=False)
    paid_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    payment_method: Mapped[Optional[str]] = Column(String(50), nullable=True)

    gateway_order_id: Mapped[str] = Column(String(64), unique=True, nullable=False, index=True)
    gateway_payment_id: Mapped[Optional[str]] = Column(String(64), nullable=True)

    notes: Mapped[Optional[str]] = Column(Text, nullable=True)

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_STATUSES

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"
