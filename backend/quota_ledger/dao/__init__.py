"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from quota_ledger.dao.base import BaseDAO
from quota_ledger.dao.ledger import LedgerDAO, PoolTier
from quota_ledger.dao.partner import PartnerDAO, PartnerTierDAO
from quota_ledger.dao.organization import OrganizationDAO
from quota_ledger.dao.domain import DomainDAO
from quota_ledger.dao.organization_user import OrganizationUserDAO
from quota_ledger.dao.invoice import InvoiceDAO, PaymentTransactionDAO

__all__ = [
    "BaseDAO",
    "LedgerDAO",
    "PoolTier",
    "PartnerDAO",
    "PartnerTierDAO",
    "OrganizationDAO",
    "DomainDAO",
    "OrganizationUserDAO",
    "InvoiceDAO",
    "PaymentTransactionDAO",
]
