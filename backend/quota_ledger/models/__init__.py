"""
Database models package.

WHY: Importing every model here registers it with Base.metadata so that
Alembic and the test fixtures see the complete schema.
"""

from quota_ledger.models.base import Base, TimestampMixin, BYTES_PER_GB, BYTES_PER_MB
from quota_ledger.models.partner import Partner, PartnerTier
from quota_ledger.models.organization import Organization
from quota_ledger.models.domain import Domain, DomainStatus
from quota_ledger.models.organization_user import OrganizationUser, UserStatus
from quota_ledger.models.invoice import Invoice, InvoiceStatus, InvoiceType, PAYABLE_STATUSES
from quota_ledger.models.payment_transaction import PaymentTransaction, SettlementSource

__all__ = [
    "Base",
    "TimestampMixin",
    "BYTES_PER_GB",
    "BYTES_PER_MB",
    "Partner",
    "PartnerTier",
    "Organization",
    "Domain",
    "DomainStatus",
    "OrganizationUser",
    "UserStatus",
    "Invoice",
    "InvoiceStatus",
    "InvoiceType",
    "PAYABLE_STATUSES",
    "PaymentTransaction",
    "SettlementSource",
]
