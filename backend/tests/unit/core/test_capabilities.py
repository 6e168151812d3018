"""
Unit tests for capability-based authorization.

WHY: The role table is the API's whole permission surface. Ownership checks
must answer "not found" for other tenants' ids so they cannot be probed.
"""

import pytest

from quota_ledger.core.capabilities import (
    ROLE_CAPABILITIES,
    Capability,
    Principal,
    Role,
    authorize,
    ensure_organization_access,
    ensure_partner_access,
)
from quota_ledger.core.exceptions import AuthorizationError, ResourceNotFoundError


PLATFORM = Principal(subject="ops@example.com", role=Role.PLATFORM_ADMIN)
PARTNER = Principal(subject="p@example.com", role=Role.PARTNER_ADMIN, partner_id=1)
ORG_ADMIN = Principal(subject="o@example.com", role=Role.ORGANIZATION_ADMIN, organization_id=7)


class TestRoleTable:
    """Which role holds which capability."""

    def test_platform_admin_holds_everything(self):
        assert ROLE_CAPABILITIES[Role.PLATFORM_ADMIN] == frozenset(Capability)

    def test_partner_admin_cannot_manage_partners(self):
        assert not PARTNER.has(Capability.PARTNERS_MANAGE)
        assert PARTNER.has(Capability.ORGANIZATIONS_STORAGE_WRITE)
        assert PARTNER.has(Capability.BILLING_PURCHASE)

    def test_organization_admin_scope(self):
        assert ORG_ADMIN.capabilities == frozenset(
            {
                Capability.DOMAINS_WRITE,
                Capability.DOMAINS_VERIFY,
                Capability.USERS_WRITE,
                Capability.BILLING_PURCHASE,
                Capability.BILLING_READ,
            }
        )

    def test_every_role_listed(self):
        assert set(ROLE_CAPABILITIES) == set(Role)


class TestAuthorize:
    """Capability checks."""

    def test_allowed(self):
        authorize(ORG_ADMIN, Capability.DOMAINS_WRITE)

    def test_denied_carries_capability(self):
        with pytest.raises(AuthorizationError) as exc_info:
            authorize(ORG_ADMIN, Capability.ORGANIZATIONS_SUSPEND)

        assert exc_info.value.status_code == 403
        assert exc_info.value.context["capability"] == "organizations:suspend"


class TestOwnership:
    """Tenant scoping."""

    def test_platform_admin_sees_any_partner(self):
        ensure_partner_access(PLATFORM, 99)

    def test_partner_admin_sees_own_partner(self):
        ensure_partner_access(PARTNER, 1)

    def test_partner_admin_other_partner_is_not_found(self):
        with pytest.raises(ResourceNotFoundError):
            ensure_partner_access(PARTNER, 2)

    def test_organization_admin_cannot_see_partner(self):
        with pytest.raises(ResourceNotFoundError):
            ensure_partner_access(ORG_ADMIN, 1)

    def test_partner_admin_sees_child_organization(self):
        ensure_organization_access(PARTNER, 7, partner_id=1)

    def test_partner_admin_cannot_see_retail_organization(self):
        with pytest.raises(ResourceNotFoundError):
            ensure_organization_access(PARTNER, 8, partner_id=None)

    def test_organization_admin_sees_only_own(self):
        ensure_organization_access(ORG_ADMIN, 7, partner_id=1)
        with pytest.raises(ResourceNotFoundError):
            ensure_organization_access(ORG_ADMIN, 8, partner_id=1)
