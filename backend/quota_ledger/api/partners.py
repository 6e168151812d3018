"""
Partner and organization API endpoints.

WHAT: Pool management for the top two tiers: partners, their
organizations, suspension and deletion.

WHY: Partners sell workspaces; every organization they create draws its
pool from the partner's purchased storage. These endpoints are the only
way to move bytes between those tiers.

HOW: FastAPI router with:
- Capability checks via ``require_capability``
- Ownership checks via the ``access`` loaders (other tenants' ids are 404)
- All ledger work delegated to PartnerService / AllocationEngine
"""

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.api.access import load_organization, load_partner
from quota_ledger.core.capabilities import Capability, Principal, ensure_partner_access
from quota_ledger.core.deps import require_capability
from quota_ledger.db.session import AsyncSessionLocal, get_db
from quota_ledger.schemas.partner import (
    OrganizationCreate,
    OrganizationListResponse,
    OrganizationResponse,
    OrganizationSuspension,
    PartnerCreate,
    PartnerResponse,
    PoolResize,
)
from quota_ledger.services.mailcow_client import MailcowClient, create_mailcow_client
from quota_ledger.services.partner_service import PartnerService
from quota_ledger.services.provisioning_service import ProvisioningService


router = APIRouter(tags=["partners"])


# ============================================================================
# Partners
# ============================================================================


@router.post(
    "/partners",
    response_model=PartnerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register partner",
)
async def create_partner(
    data: PartnerCreate,
    principal: Principal = Depends(require_capability(Capability.PARTNERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
) -> PartnerResponse:
    """
    Register a partner with an initial storage pool (platform admins only).
    """
    partner = await PartnerService(db).create_partner(
        name=data.name,
        contact_email=data.contact_email,
        allocated_storage_bytes=data.allocated_storage_bytes,
        tier_name=data.tier_name,
    )
    return PartnerResponse.model_validate(partner)


@router.get("/partners/{partner_id}", response_model=PartnerResponse, summary="Get partner")
async def get_partner(
    partner_id: int,
    principal: Principal = Depends(require_capability(Capability.PARTNERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> PartnerResponse:
    partner = await load_partner(db, principal, partner_id)
    return PartnerResponse.model_validate(partner)


@router.patch(
    "/partners/{partner_id}/storage",
    response_model=PartnerResponse,
    summary="Resize partner pool",
)
async def resize_partner_pool(
    partner_id: int,
    data: PoolResize,
    principal: Principal = Depends(require_capability(Capability.PARTNERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
) -> PartnerResponse:
    """
    Set a partner's pool size (grant or correction).

    Raises:
        QuotaBelowUsageError: If organizations already hold more than the new size (422)
    """
    await load_partner(db, principal, partner_id)
    partner = await PartnerService(db).resize_partner_pool(partner_id, data.storage_bytes)
    return PartnerResponse.model_validate(partner)


# ============================================================================
# Organizations
# ============================================================================


@router.get(
    "/partners/{partner_id}/organizations",
    response_model=OrganizationListResponse,
    summary="List partner organizations",
)
async def list_organizations(
    partner_id: int,
    principal: Principal = Depends(require_capability(Capability.PARTNERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> OrganizationListResponse:
    ensure_partner_access(principal, partner_id)
    organizations = await PartnerService(db).list_organizations(partner_id)
    return OrganizationListResponse(
        items=[OrganizationResponse.model_validate(o) for o in organizations],
        total=len(organizations),
    )


@router.post(
    "/partners/{partner_id}/organizations",
    response_model=OrganizationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create organization",
)
async def create_organization(
    partner_id: int,
    data: OrganizationCreate,
    principal: Principal = Depends(require_capability(Capability.ORGANIZATIONS_STORAGE_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    """
    Create an organization, reserving its pool from the partner.

    Raises:
        InsufficientCapacityError: If the partner pool cannot cover it (422)
    """
    await load_partner(db, principal, partner_id)
    organization = await PartnerService(db).create_organization(
        name=data.name,
        total_storage_bytes=data.total_storage_bytes,
        partner_id=partner_id,
    )
    return OrganizationResponse.model_validate(organization)


@router.post(
    "/organizations",
    response_model=OrganizationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create retail organization",
)
async def create_retail_organization(
    data: OrganizationCreate,
    principal: Principal = Depends(require_capability(Capability.PARTNERS_MANAGE)),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    """Create an organization that owns its pool outright (no partner)."""
    organization = await PartnerService(db).create_organization(
        name=data.name,
        total_storage_bytes=data.total_storage_bytes,
    )
    return OrganizationResponse.model_validate(organization)


@router.patch(
    "/organizations/{organization_id}/storage",
    response_model=OrganizationResponse,
    summary="Resize organization pool",
)
async def resize_organization(
    organization_id: int,
    data: PoolResize,
    principal: Principal = Depends(require_capability(Capability.ORGANIZATIONS_STORAGE_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    """
    Grow or shrink an organization's pool against its partner.

    Raises:
        InsufficientCapacityError: Growth exceeds the partner's available bytes (422)
        QuotaBelowUsageError: Domains and users already hold more than the new size (422)
    """
    await load_organization(db, principal, organization_id)
    organization = await PartnerService(db).resize_organization(
        organization_id, data.storage_bytes
    )
    return OrganizationResponse.model_validate(organization)


@router.post(
    "/organizations/{organization_id}/suspension",
    response_model=OrganizationResponse,
    summary="Suspend or reinstate organization",
)
async def set_organization_suspension(
    organization_id: int,
    data: OrganizationSuspension,
    principal: Principal = Depends(require_capability(Capability.ORGANIZATIONS_SUSPEND)),
    db: AsyncSession = Depends(get_db),
) -> OrganizationResponse:
    await load_organization(db, principal, organization_id)
    organization = await PartnerService(db).set_organization_suspension(
        organization_id, data.suspended, data.reason
    )
    return OrganizationResponse.model_validate(organization)


@router.delete(
    "/organizations/{organization_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete organization",
)
async def delete_organization(
    organization_id: int,
    principal: Principal = Depends(require_capability(Capability.ORGANIZATIONS_STORAGE_WRITE)),
    db: AsyncSession = Depends(get_db),
    mailcow: MailcowClient = Depends(create_mailcow_client),
) -> Response:
    """
    Delete an organization's domains and mailboxes, then return its pool
    to the partner.

    Raises:
        ExternalProvisioningError: If the mail host still holds a domain (502)
    """
    await load_organization(db, principal, organization_id)
    provisioning = ProvisioningService(db, mailcow, session_factory=AsyncSessionLocal)
    await PartnerService(db).delete_organization(organization_id, provisioning)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
