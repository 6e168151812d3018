"""
Partner model: the root of the storage hierarchy.

WHAT: A reseller that purchases a storage pool and carves it into
Organizations.

WHY: The partner pool is the first tier of the ledger. ``used_storage_bytes``
always equals the sum of ``total_storage_bytes`` over the partner's
Organizations, and never exceeds ``allocated_storage_bytes``.

HOW: Counters are only written through the allocation engine; the CHECK
constraints are the database's last line of defence.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped

from quota_ledger.models.base import Base, TimestampMixin


class PartnerTier(Base, TimestampMixin):
    """
    Named discount tier (e.g. Silver, Gold) applied to partner purchases.
    """

    __tablename__ = "partner_tiers"

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)
    name: Mapped[str] = Column(String(100), unique=True, nullable=False)
    discount_percentage: Mapped[Decimal] = Column(
        Numeric(5, 2), nullable=False, default=Decimal("0.00")
    )
    description: Mapped[Optional[str]] = Column(Text, nullable=True)


class Partner(Base, TimestampMixin):
    """
    Partner storage pool.

    Attributes:
        allocated_storage_bytes: Purchased pool size
        used_storage_bytes: Bytes carved into Organizations
        tier_name / discount_percentage: Pricing tier applied to orders
        is_active / suspended_at / suspension_reason: Account state
    """

    __tablename__ = "partners"
    __table_args__ = (
        CheckConstraint("allocated_storage_bytes >= 0", name="ck_partners_allocated_nonneg"),
        CheckConstraint("used_storage_bytes >= 0", name="ck_partners_used_nonneg"),
        CheckConstraint(
            "used_storage_bytes <= allocated_storage_bytes", name="ck_partners_used_within_pool"
        ),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)
    name: Mapped[str] = Column(String(255), nullable=False)
    contact_email: Mapped[Optional[str]] = Column(String(255), nullable=True)

    allocated_storage_bytes: Mapped[int] = Column(
        BigInteger, nullable=False, default=0, comment="Purchased storage pool in bytes"
    )
    used_storage_bytes: Mapped[int] = Column(
        BigInteger, nullable=False, default=0, comment="Bytes carved into organizations"
    )

    tier_name: Mapped[Optional[str]] = Column(String(100), nullable=True)
    discount_percentage: Mapped[Decimal] = Column(
        Numeric(5, 2), nullable=False, default=Decimal("20.00")
    )

    is_active: Mapped[bool] = Column(Boolean, nullable=False, default=True)
    suspended_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    suspension_reason: Mapped[Optional[str]] = Column(Text, nullable=True)

    @property
    def available_storage_bytes(self) -> int:
        return self.allocated_storage_bytes - self.used_storage_bytes

    def __repr__(self) -> str:
        return (
            f"<Partner(id={self.id}, allocated={self.allocated_storage_bytes}, "
            f"used={self.used_storage_bytes})>"
        )
