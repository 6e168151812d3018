"""
PaymentTransaction model: immutable record of a captured payment.

WHY: This row is the idempotency guard for settlement. Both the direct
verify path and the webhook path insert it before touching the ledger;
the UNIQUE constraints on ``gateway_payment_id`` and ``invoice_id`` let
exactly one of them win, atomically, at the storage layer.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped

from quota_ledger.models.base import Base, TimestampMixin


class SettlementSource(str, Enum):
    """Which path recorded the payment."""

    VERIFY = "verify"
    WEBHOOK = "webhook"


class PaymentTransaction(Base, TimestampMixin):
    """Captured payment linked 1:1 to the invoice it settled."""

    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("gateway_payment_id", name="uq_payment_transactions_payment_id"),
        UniqueConstraint("invoice_id", name="uq_payment_transactions_invoice_id"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)
    invoice_id: Mapped[int] = Column(
        Integer, ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=False
    )
    partner_id: Mapped[Optional[int]] = Column(Integer, nullable=True)
    organization_id: Mapped[Optional[int]] = Column(Integer, nullable=True)

    gateway_order_id: Mapped[str] = Column(String(64), nullable=False, index=True)
    gateway_payment_id: Mapped[str] = Column(String(64), nullable=False)
    gateway_signature: Mapped[Optional[str]] = Column(String(256), nullable=True)

    amount: Mapped[Decimal] = Column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = Column(String(3), nullable=False)
    status: Mapped[str] = Column(String(20), nullable=False, default="captured")
    payment_method: Mapped[Optional[str]] = Column(String(50), nullable=True)
    source: Mapped[str] = Column(String(20), nullable=False)
    notes: Mapped[Optional[str]] = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(id={self.id}, payment_id={self.gateway_payment_id}, "
            f"invoice_id={self.invoice_id})>"
        )
