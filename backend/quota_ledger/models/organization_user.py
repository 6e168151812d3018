"""
OrganizationUser model: an end-user mailbox plus drive allowance.

WHY: A user's ``mailbox_storage_bytes + drive_storage_bytes`` is reserved
from the Organization pool. Only the mailbox part is pushed to the mail
host as the mailbox quota.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped

from quota_ledger.models.base import Base, TimestampMixin, BYTES_PER_GB, enum_values


class UserStatus(str, Enum):
    """Mailbox user lifecycle."""

    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class OrganizationUser(Base, TimestampMixin):
    """End user with a mailbox on one of the organization's domains."""

    __tablename__ = "organization_users"
    __table_args__ = (
        CheckConstraint("mailbox_storage_bytes >= 0", name="ck_users_mailbox_nonneg"),
        CheckConstraint("drive_storage_bytes >= 0", name="ck_users_drive_nonneg"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)
    organization_id: Mapped[int] = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    domain_id: Mapped[int] = Column(
        Integer,
        ForeignKey("organization_domains.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email_address: Mapped[str] = Column(String(255), unique=True, nullable=False, index=True)
    display_name: Mapped[Optional[str]] = Column(String(255), nullable=True)

    mailbox_storage_bytes: Mapped[int] = Column(BigInteger, nullable=False, default=BYTES_PER_GB)
    drive_storage_bytes: Mapped[int] = Column(BigInteger, nullable=False, default=0)

    status: Mapped[UserStatus] = Column(
        SQLEnum(UserStatus, name="userstatus", values_callable=enum_values),
        nullable=False,
        default=UserStatus.PENDING,
    )
    provisioned_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)

    @property
    def total_storage_bytes(self) -> int:
        return self.mailbox_storage_bytes + self.drive_storage_bytes

    def __repr__(self) -> str:
        return f"<OrganizationUser(id={self.id}, email={self.email_address})>"
