"""
Organization model: second tier of the storage hierarchy.

WHAT: A customer workspace. Partner-managed organizations draw their pool
from the partner; retail organizations (``partner_id`` is NULL) own their
pool outright.

WHY: ``used_storage_bytes`` is the sum of every Domain quota and every
user's mailbox and drive bytes carved from this pool.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped

from quota_ledger.models.base import Base, TimestampMixin


class Organization(Base, TimestampMixin):
    """
    Organization storage pool.

    Attributes:
        partner_id: Owning partner, NULL for retail customers
        is_retail: True when the pool is not backed by a partner
        total_storage_bytes: Pool size (reserved from the partner when partner-managed)
        used_storage_bytes: Bytes carved into domains and users
    """

    __tablename__ = "organizations"
    __table_args__ = (
        CheckConstraint("total_storage_bytes >= 0", name="ck_organizations_total_nonneg"),
        CheckConstraint("used_storage_bytes >= 0", name="ck_organizations_used_nonneg"),
        CheckConstraint(
            "used_storage_bytes <= total_storage_bytes", name="ck_organizations_used_within_pool"
        ),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)
    partner_id: Mapped[Optional[int]] = Column(
        Integer,
        ForeignKey("partners.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = Column(String(255), nullable=False)
    is_retail: Mapped[bool] = Column(Boolean, nullable=False, default=False)

    total_storage_bytes: Mapped[int] = Column(BigInteger, nullable=False, default=0)
    used_storage_bytes: Mapped[int] = Column(BigInteger, nullable=False, default=0)

    is_active: Mapped[bool] = Column(Boolean, nullable=False, default=True)
    suspended_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    suspension_reason: Mapped[Optional[str]] = Column(Text, nullable=True)

    @property
    def available_storage_bytes(self) -> int:
        return self.total_storage_bytes - self.used_storage_bytes

    @property
    def is_suspended(self) -> bool:
        return self.suspended_at is not None

    def __repr__(self) -> str:
        return (
            f"<Organization(id={self.id}, partner_id={self.partner_id}, "
            f"total={self.total_storage_bytes}, used={self.used_storage_bytes})>"
        )
