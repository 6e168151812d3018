"""
Domain model: a mail domain hosted for an Organization.

WHAT: Holds the domain's quota (carved from the Organization), its
provisioning state on the mail host, and the DNS records the customer must
publish before mailboxes can be created.

WHY: ``status`` and ``mailcow_provisioned`` are independent: a domain can
be provisioned on the mail host while still waiting for DNS (``pending``),
or pass DNS while provisioning failed (``failed`` with
``mailcow_provisioned=False``). Both must hold for mailboxes to work.
"""

from datetime import datetime
from enum import Enum
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
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped

from quota_ledger.models.base import Base, TimestampMixin, enum_values


class DomainStatus(str, Enum):
    """
    Domain lifecycle.

    - PENDING: created, DNS not yet checked
    - DNS_PENDING: checked at least once, not all four records pass
    - ACTIVE: all records verified and provisioned; mailboxes allowed
    - SUSPENDED: administratively disabled
    - FAILED: provisioning on the mail host failed; retryable
    """

    PENDING = "pending"
    DNS_PENDING = "dns_pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    FAILED = "failed"


class Domain(Base, TimestampMixin):
    """Mail domain with quota and DNS verification state."""

    __tablename__ = "organization_domains"
    __table_args__ = (
        CheckConstraint("domain_quota_bytes >= 0", name="ck_domains_quota_nonneg"),
    )

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)
    organization_id: Mapped[int] = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    domain_name: Mapped[str] = Column(String(255), unique=True, nullable=False, index=True)

    domain_quota_bytes: Mapped[int] = Column(
        BigInteger, nullable=False, default=0, comment="Quota carved from the organization pool"
    )
    max_quota_per_mailbox_mb: Mapped[int] = Column(Integer, nullable=False, default=10240)
    default_quota_per_mailbox_mb: Mapped[int] = Column(Integer, nullable=False, default=1024)
    max_mailboxes: Mapped[int] = Column(
        Integer, nullable=False, default=0, comment="0 means the platform default"
    )

    status: Mapped[DomainStatus] = Column(
        SQLEnum(DomainStatus, name="domainstatus", values_callable=enum_values),
        nullable=False,
        default=DomainStatus.PENDING,
        index=True,
    )
    mailcow_provisioned: Mapped[bool] = Column(Boolean, nullable=False, default=False)
    provisioning_error: Mapped[Optional[str]] = Column(Text, nullable=True)

    # Expected DNS records, shown to the customer
    mx_record: Mapped[Optional[str]] = Column(String(255), nullable=True)
    spf_record: Mapped[Optional[str]] = Column(Text, nullable=True)
    dkim_selector: Mapped[str] = Column(String(63), nullable=False, default="dkim")
    dkim_record: Mapped[Optional[str]] = Column(Text, nullable=True)
    dmarc_record: Mapped[Optional[str]] = Column(Text, nullable=True)

    dns_verified: Mapped[bool] = Column(Boolean, nullable=False, default=False)
    dns_verified_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    last_verification_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == DomainStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<Domain(id={self.id}, name={self.domain_name}, status={self.status})>"
