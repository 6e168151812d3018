"""
Workspace API endpoints: domains, DNS verification and mailbox users.

WHAT: Routes that carve an organization's pool into mail domains and
mailboxes, and drive them on the mail host.

WHY: Each of these operations touches the ledger and the mail host. The
routes only resolve ownership and hand off to the ProvisioningService,
whose compensation table decides what a mail host failure leaves behind.

HOW: The mail host client and DNS verifier are FastAPI dependencies
(``create_mailcow_client``, ``create_dns_verifier``) so tests can override
them.
"""

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.api.access import load_domain, load_organization, load_user
from quota_ledger.core.capabilities import Capability, Principal
from quota_ledger.core.deps import require_capability
from quota_ledger.db.session import AsyncSessionLocal, get_db
from quota_ledger.schemas.workspace import (
    DomainCreate,
    DomainMailboxLimitsUpdate,
    DomainQuotaUpdate,
    DomainResponse,
    DomainSuspension,
    DomainVerificationResponse,
    UserCreate,
    UserQuotaUpdate,
    UserResponse,
    UserSuspension,
)
from quota_ledger.services.dns_verifier import DnsVerifier, create_dns_verifier
from quota_ledger.services.domain_verification_service import DomainVerificationService
from quota_ledger.services.mailcow_client import MailcowClient, create_mailcow_client
from quota_ledger.services.provisioning_service import MailboxDefaults, ProvisioningService


router = APIRouter(tags=["workspace"])


def get_provisioning_service(
    db: AsyncSession = Depends(get_db),
    mailcow: MailcowClient = Depends(create_mailcow_client),
) -> ProvisioningService:
    """Request-scoped orchestrator; DKIM issuance gets its own session."""
    return ProvisioningService(db, mailcow, session_factory=AsyncSessionLocal)


# ============================================================================
# Domains
# ============================================================================


@router.post(
    "/organizations/{organization_id}/domains",
    response_model=DomainResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add domain",
)
async def create_domain(
    organization_id: int,
    data: DomainCreate,
    principal: Principal = Depends(require_capability(Capability.DOMAINS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> DomainResponse:
    """
    Reserve quota for a domain and create it on the mail host.

    The response lists the DNS records to publish; the domain becomes
    usable once ``POST /domains/{id}/verify`` reports all four records.

    Raises:
        InsufficientCapacityError: Organization pool too small (422)
        ResourceAlreadyExistsError: Domain already registered (409)
        ExternalProvisioningError: Mail host failed; the domain is kept as
            ``failed`` with its quota reserved and will be retried (502)
    """
    await load_organization(db, principal, organization_id)

    platform = MailboxDefaults.from_settings()
    defaults = MailboxDefaults(
        max_quota_per_mailbox_mb=data.max_quota_per_mailbox_mb or platform.max_quota_per_mailbox_mb,
        default_quota_per_mailbox_mb=(
            data.default_quota_per_mailbox_mb or platform.default_quota_per_mailbox_mb
        ),
        max_mailboxes=data.max_mailboxes,
    )
    domain = await provisioning.create_domain(
        organization_id, data.domain_name, data.quota_bytes, defaults
    )
    return DomainResponse.model_validate(domain)


@router.get("/domains/{domain_id}", response_model=DomainResponse, summary="Get domain")
async def get_domain(
    domain_id: int,
    principal: Principal = Depends(require_capability(Capability.DOMAINS_VERIFY)),
    db: AsyncSession = Depends(get_db),
) -> DomainResponse:
    domain = await load_domain(db, principal, domain_id)
    return DomainResponse.model_validate(domain)


@router.patch(
    "/domains/{domain_id}/quota",
    response_model=DomainResponse,
    summary="Change domain quota",
)
async def update_domain_quota(
    domain_id: int,
    data: DomainQuotaUpdate,
    principal: Principal = Depends(require_capability(Capability.DOMAINS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> DomainResponse:
    await load_domain(db, principal, domain_id)
    domain = await provisioning.update_domain_quota(domain_id, data.quota_bytes)
    return DomainResponse.model_validate(domain)


@router.patch(
    "/domains/{domain_id}/mailbox-limits",
    response_model=DomainResponse,
    summary="Change per-mailbox limits",
)
async def update_domain_mailbox_limits(
    domain_id: int,
    data: DomainMailboxLimitsUpdate,
    principal: Principal = Depends(require_capability(Capability.DOMAINS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> DomainResponse:
    """
    Raises:
        QuotaBelowUsageError: Existing mailboxes exceed the new limits (422)
        ExternalProvisioningError: Mail host rejected the change (502)
    """
    await load_domain(db, principal, domain_id)
    domain = await provisioning.update_domain_mailbox_limits(
        domain_id,
        max_quota_per_mailbox_mb=data.max_quota_per_mailbox_mb,
        default_quota_per_mailbox_mb=data.default_quota_per_mailbox_mb,
        max_mailboxes=data.max_mailboxes,
    )
    return DomainResponse.model_validate(domain)


@router.post(
    "/domains/{domain_id}/suspension",
    response_model=DomainResponse,
    summary="Suspend or reinstate domain",
)
async def set_domain_suspension(
    domain_id: int,
    data: DomainSuspension,
    principal: Principal = Depends(require_capability(Capability.DOMAINS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> DomainResponse:
    await load_domain(db, principal, domain_id)
    domain = await provisioning.set_domain_suspension(domain_id, data.suspended)
    return DomainResponse.model_validate(domain)


@router.post(
    "/domains/{domain_id}/verify",
    response_model=DomainVerificationResponse,
    summary="Verify domain DNS",
)
async def verify_domain(
    domain_id: int,
    principal: Principal = Depends(require_capability(Capability.DOMAINS_VERIFY)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
    verifier: DnsVerifier = Depends(create_dns_verifier),
) -> DomainVerificationResponse:
    """
    Check MX, SPF, DKIM and DMARC and update the domain's status.

    Incomplete verification returns 200 with ``all_verified=false``.
    """
    await load_domain(db, principal, domain_id)
    result = await DomainVerificationService(db, verifier, provisioning).verify_domain(domain_id)
    return DomainVerificationResponse.model_validate(result)


@router.delete(
    "/domains/{domain_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete domain",
)
async def delete_domain(
    domain_id: int,
    principal: Principal = Depends(require_capability(Capability.DOMAINS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> Response:
    """
    Delete a domain and its mailboxes and return their quota.

    Also the way to reclaim the quota of a domain stuck in ``failed``.
    """
    await load_domain(db, principal, domain_id)
    await provisioning.delete_domain(domain_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Users
# ============================================================================


@router.post(
    "/domains/{domain_id}/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create mailbox user",
)
async def create_user(
    domain_id: int,
    data: UserCreate,
    principal: Principal = Depends(require_capability(Capability.USERS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> UserResponse:
    """
    Raises:
        DomainNotActiveError: Domain has not passed DNS verification (422)
        InsufficientCapacityError: Organization or domain quota exhausted (422)
        ExternalProvisioningError: Mailbox creation failed; nothing was kept (502)
    """
    await load_domain(db, principal, domain_id)
    user = await provisioning.create_user(
        domain_id=domain_id,
        local_part=data.local_part,
        display_name=data.display_name,
        password=data.password,
        mailbox_storage_bytes=data.mailbox_storage_bytes,
        drive_storage_bytes=data.drive_storage_bytes,
    )
    return UserResponse.model_validate(user)


@router.patch("/users/{user_id}/quota", response_model=UserResponse, summary="Change user quota")
async def update_user_quota(
    user_id: int,
    data: UserQuotaUpdate,
    principal: Principal = Depends(require_capability(Capability.USERS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> UserResponse:
    await load_user(db, principal, user_id)
    user = await provisioning.update_user_quota(
        user_id, data.mailbox_storage_bytes, data.drive_storage_bytes
    )
    return UserResponse.model_validate(user)


@router.post(
    "/users/{user_id}/suspension",
    response_model=UserResponse,
    summary="Suspend or reinstate mailbox user",
)
async def set_user_suspension(
    user_id: int,
    data: UserSuspension,
    principal: Principal = Depends(require_capability(Capability.USERS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> UserResponse:
    await load_user(db, principal, user_id)
    user = await provisioning.set_user_suspension(user_id, data.suspended)
    return UserResponse.model_validate(user)


@router.delete(
    "/users/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete mailbox user",
)
async def delete_user(
    user_id: int,
    principal: Principal = Depends(require_capability(Capability.USERS_WRITE)),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> Response:
    await load_user(db, principal, user_id)
    await provisioning.delete_user(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
