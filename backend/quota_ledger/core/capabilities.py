"""
Capability-based authorization.

WHAT: A closed set of capability tags, the role → capability table, and the
ownership checks every route applies after authenticating the caller.

WHY: Checking enum members instead of free-form permission strings means a
typo fails at import time, and the full permission surface of the API is
readable in one table.

HOW: Routes declare ``Depends(require_capability(Capability.X))``; services
receive the resulting Principal and call ``ensure_*_access`` for ownership.
Ownership failures raise ResourceNotFoundError so that ids of other tenants
are indistinguishable from ids that do not exist.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from quota_ledger.core.exceptions import AuthorizationError, ResourceNotFoundError


class Role(str, Enum):
    """Roles carried in the access token."""

    PLATFORM_ADMIN = "platform_admin"
    PARTNER_ADMIN = "partner_admin"
    ORGANIZATION_ADMIN = "organization_admin"


class Capability(str, Enum):
    """Closed set of actions the API authorizes."""

    PARTNERS_MANAGE = "partners:manage"
    PARTNERS_READ = "partners:read"
    ORGANIZATIONS_STORAGE_WRITE = "organizations:storage:write"
    ORGANIZATIONS_SUSPEND = "organizations:suspend"
    DOMAINS_WRITE = "domains:write"
    DOMAINS_VERIFY = "domains:verify"
    USERS_WRITE = "users:write"
    BILLING_PURCHASE = "billing:purchase"
    BILLING_READ = "billing:read"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.PLATFORM_ADMIN: frozenset(Capability),
    Role.PARTNER_ADMIN: frozenset(
        {
            Capability.PARTNERS_READ,
            Capability.ORGANIZATIONS_STORAGE_WRITE,
            Capability.ORGANIZATIONS_SUSPEND,
            Capability.DOMAINS_WRITE,
            Capability.DOMAINS_VERIFY,
            Capability.USERS_WRITE,
            Capability.BILLING_PURCHASE,
            Capability.BILLING_READ,
        }
    ),
    Role.ORGANIZATION_ADMIN: frozenset(
        {
            Capability.DOMAINS_WRITE,
            Capability.DOMAINS_VERIFY,
            Capability.USERS_WRITE,
            Capability.BILLING_PURCHASE,
            Capability.BILLING_READ,
        }
    ),
}


@dataclass(frozen=True)
class Principal:
    """
    Authenticated caller, built from access token claims.

    ``partner_id`` is set for partner admins, ``organization_id`` for
    organization admins; platform admins carry neither.
    """

    subject: str
    role: Role
    partner_id: Optional[int] = None
    organization_id: Optional[int] = None

    @property
    def capabilities(self) -> frozenset[Capability]:
        return ROLE_CAPABILITIES[self.role]

    @property
    def is_platform_admin(self) -> bool:
        return self.role == Role.PLATFORM_ADMIN

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities


def authorize(principal: Principal, capability: Capability) -> None:
    """
    Raise AuthorizationError unless the principal holds ``capability``.
    """
    if not principal.has(capability):
        raise AuthorizationError(
            message=f"Missing capability: {capability.value}",
            subject=principal.subject,
            role=principal.role.value,
            capability=capability.value,
        )


def ensure_partner_access(principal: Principal, partner_id: int) -> None:
    """Partner-scoped resources are visible to platform admins and their own partner admin."""
    if principal.is_platform_admin:
        return
    if principal.role == Role.PARTNER_ADMIN and principal.partner_id == partner_id:
        return
    raise ResourceNotFoundError(message="Partner not found", partner_id=partner_id)


def ensure_organization_access(
    principal: Principal,
    organization_id: int,
    partner_id: Optional[int],
) -> None:
    """
    Organization-scoped resources are visible to platform admins, the
    owning partner's admins, and the organization's own admins.
    """
    if principal.is_platform_admin:
        return
    if (
        principal.role == Role.PARTNER_ADMIN
        and partner_id is not None
        and principal.partner_id == partner_id
    ):
        return
    if principal.role == Role.ORGANIZATION_ADMIN and principal.organization_id == organization_id:
        return
    raise ResourceNotFoundError(message="Organization not found", organization_id=organization_id)
