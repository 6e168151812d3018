"""
Partner and organization management.

WHAT: Account-level operations above the domain tier: creating partners,
sizing their pools, creating organizations, suspending and deleting them.

WHY: Routes stay thin; all ledger movement still happens in the
AllocationEngine and all mail host work in the ProvisioningService.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.exceptions import ResourceNotFoundError, ValidationError
from quota_ledger.dao.organization import OrganizationDAO
from quota_ledger.dao.partner import PartnerDAO, PartnerTierDAO
from quota_ledger.models.organization import Organization
from quota_ledger.models.partner import Partner
from quota_ledger.services.allocation_engine import AllocationEngine
from quota_ledger.services.provisioning_service import ProvisioningService

logger = logging.getLogger(__name__)


class PartnerService:
    """Partner and organization lifecycle."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.engine = AllocationEngine(session)
        self.partners = PartnerDAO(session)
        self.tiers = PartnerTierDAO(session)
        self.organizations = OrganizationDAO(session)

    # ------------------------------------------------------------------
    # Partners
    # ------------------------------------------------------------------

    async def create_partner(
        self,
        name: str,
        contact_email: Optional[str] = None,
        allocated_storage_bytes: int = 0,
        tier_name: Optional[str] = None,
    ) -> Partner:
        """
        Register a partner with an initial pool.

        The tier, when given, fixes the partner's discount on purchases.

        Raises:
            ResourceNotFoundError: If the tier does not exist
        """
        if allocated_storage_bytes < 0:
            raise ValidationError(message="Pool size cannot be negative")

        discount = Decimal("20.00")
        if tier_name:
            tier = await self.tiers.get_by_name(tier_name)
            if tier is None:
                raise ResourceNotFoundError(message="Partner tier not found", tier_name=tier_name)
            discount = tier.discount_percentage

        partner = await self.partners.create(
            name=name,
            contact_email=contact_email,
            allocated_storage_bytes=allocated_storage_bytes,
            used_storage_bytes=0,
            tier_name=tier_name,
            discount_percentage=discount,
            is_active=True,
        )
        logger.info(
            f"Partner {partner.id} created with {allocated_storage_bytes} bytes",
            extra={"partner_id": partner.id, "tier_name": tier_name},
        )
        return partner

    async def get_partner(self, partner_id: int) -> Partner:
        partner = await self.partners.get_by_id(partner_id)
        if partner is None:
            raise ResourceNotFoundError(message="Partner not found", partner_id=partner_id)
        return partner

    async def resize_partner_pool(self, partner_id: int, allocated_storage_bytes: int) -> Partner:
        return await self.engine.resize_partner_pool(partner_id, allocated_storage_bytes)

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def get_organization(self, organization_id: int) -> Organization:
        organization = await self.organizations.get_by_id(organization_id)
        if organization is None:
            raise ResourceNotFoundError(
                message="Organization not found", organization_id=organization_id
            )
        return organization

    async def list_organizations(self, partner_id: int) -> List[Organization]:
        return await self.organizations.get_by_partner(partner_id)

    async def create_organization(
        self,
        name: str,
        total_storage_bytes: int,
        partner_id: Optional[int] = None,
    ) -> Organization:
        return await self.engine.allocate_organization(name, total_storage_bytes, partner_id)

    async def resize_organization(self, organization_id: int, total_storage_bytes: int) -> Organization:
        return await self.engine.resize_organization(organization_id, total_storage_bytes)

    async def set_organization_suspension(
        self,
        organization_id: int,
        suspended: bool,
        reason: Optional[str] = None,
    ) -> Organization:
        """
        Suspend or reinstate an organization.

        Suspension blocks new reservations; existing allocations are kept.
        """
        organization = await self.engine.lock_organization(organization_id)
        if suspended:
            organization.is_active = False
            organization.suspended_at = datetime.utcnow()
            organization.suspension_reason = reason
        else:
            organization.is_active = True
            organization.suspended_at = None
            organization.suspension_reason = None
        await self.session.flush()

        logger.info(
            f"Organization {organization.id} {'suspended' if suspended else 'reinstated'}",
            extra={"organization_id": organization.id, "reason": reason},
        )
        return organization

    async def delete_organization(
        self,
        organization_id: int,
        provisioning: ProvisioningService,
    ) -> None:
        """
        Delete every domain (and mailbox), then return the organization's
        pool to its partner and remove it.

        Raises:
            ExternalProvisioningError: If the mail host still holds a domain;
                the organization and its remaining storage are kept
        """
        organization = await self.get_organization(organization_id)

        for domain in await provisioning.domains.get_by_organization(organization.id):
            await provisioning.delete_domain(domain.id)

        await self.engine.release_organization(organization.id)
        await self.organizations.delete_instance(organization)
        logger.info(
            f"Organization {organization_id} deleted",
            extra={"organization_id": organization_id, "partner_id": organization.partner_id},
        )
