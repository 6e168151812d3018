"""
Ownership-scoped loaders shared by the routers.

WHAT: Load a partner, organization, domain, user or invoice and check that
the caller may see it.

WHY: Every route needs the same "exists and belongs to you" check.
Failing either half raises ResourceNotFoundError, so callers cannot probe
other tenants' ids.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.capabilities import (
    Principal,
    ensure_organization_access,
    ensure_partner_access,
)
from quota_ledger.core.exceptions import ResourceNotFoundError
from quota_ledger.dao.domain import DomainDAO
from quota_ledger.dao.organization import OrganizationDAO
from quota_ledger.dao.organization_user import OrganizationUserDAO
from quota_ledger.dao.partner import PartnerDAO
from quota_ledger.models.domain import Domain
from quota_ledger.models.invoice import Invoice
from quota_ledger.models.organization import Organization
from quota_ledger.models.organization_user import OrganizationUser
from quota_ledger.models.partner import Partner


async def load_partner(db: AsyncSession, principal: Principal, partner_id: int) -> Partner:
    ensure_partner_access(principal, partner_id)
    partner = await PartnerDAO(db).get_by_id(partner_id)
    if partner is None:
        raise ResourceNotFoundError(message="Partner not found", partner_id=partner_id)
    return partner


async def load_organization(
    db: AsyncSession, principal: Principal, organization_id: int
) -> Organization:
    organization = await OrganizationDAO(db).get_by_id(organization_id)
    if organization is None:
        raise ResourceNotFoundError(
            message="Organization not found", organization_id=organization_id
        )
    ensure_organization_access(principal, organization.id, organization.partner_id)
    return organization


async def load_domain(db: AsyncSession, principal: Principal, domain_id: int) -> Domain:
    domain = await DomainDAO(db).get_by_id(domain_id)
    if domain is None:
        raise ResourceNotFoundError(message="Domain not found", domain_id=domain_id)
    await load_organization(db, principal, domain.organization_id)
    return domain


async def load_user(db: AsyncSession, principal: Principal, user_id: int) -> OrganizationUser:
    user = await OrganizationUserDAO(db).get_by_id(user_id)
    if user is None:
        raise ResourceNotFoundError(message="User not found", user_id=user_id)
    await load_organization(db, principal, user.organization_id)
    return user


async def ensure_invoice_access(db: AsyncSession, principal: Principal, invoice: Invoice) -> None:
    if invoice.partner_id is not None:
        ensure_partner_access(principal, invoice.partner_id)
    else:
        await load_organization(db, principal, invoice.organization_id)
