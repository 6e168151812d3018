"""
Integration tests for partner and organization endpoints.

WHY: These routes are where capability checks and tenant scoping meet the
allocation engine. The tests drive the reference partner scenario over
HTTP and confirm that other tenants' ids read as "not found".
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from tests.factories import GB, PartnerFactory, build_hierarchy


API = "/api"


@pytest.mark.asyncio
class TestPartnerScenario:
    """100 GB partner carving organizations over HTTP."""

    async def test_pool_accounting(self, client: AsyncClient, admin_headers, make_auth_headers):
        response = await client.post(
            f"{API}/partners",
            json={
                "name": "Acme Hosting",
                "contact_email": "ops@acmehosting.com",
                "allocated_storage_bytes": 100 * GB,
            },
            headers=admin_headers,
        )
        assert response.status_code == 201
        partner = response.json()
        assert partner["available_storage_bytes"] == 100 * GB

        partner_headers = make_auth_headers("partner_admin", partner_id=partner["id"])
        orgs_url = f"{API}/partners/{partner['id']}/organizations"

        first = await client.post(
            orgs_url, json={"name": "Globex", "total_storage_bytes": 60 * GB}, headers=partner_headers
        )
        assert first.status_code == 201
        assert first.json()["is_retail"] is False

        too_big = await client.post(
            orgs_url, json={"name": "Initech", "total_storage_bytes": 50 * GB}, headers=partner_headers
        )
        assert too_big.status_code == 422
        body = too_big.json()
        assert body["error"] == "InsufficientCapacityError"

        second = await client.post(
            orgs_url, json={"name": "Initech", "total_storage_bytes": 20 * GB}, headers=partner_headers
        )
        assert second.status_code == 201

        response = await client.get(f"{API}/partners/{partner['id']}", headers=partner_headers)
        assert response.json()["used_storage_bytes"] == 80 * GB
        assert response.json()["available_storage_bytes"] == 20 * GB

        listing = await client.get(orgs_url, headers=partner_headers)
        assert listing.json()["total"] == 2

    async def test_resize_organization_against_partner_pool(
        self, client: AsyncClient, db_session: AsyncSession, make_auth_headers
    ):
        partner, organization = await build_hierarchy(db_session, 100 * GB, 60 * GB)
        headers = make_auth_headers("partner_admin", partner_id=partner.id)

        grown = await client.patch(
            f"{API}/organizations/{organization.id}/storage",
            json={"storage_bytes": 90 * GB},
            headers=headers,
        )
        assert grown.status_code == 200
        assert grown.json()["total_storage_bytes"] == 90 * GB

        too_much = await client.patch(
            f"{API}/organizations/{organization.id}/storage",
            json={"storage_bytes": 120 * GB},
            headers=headers,
        )
        assert too_much.status_code == 422

    async def test_suspend_and_delete_organization(
        self, client: AsyncClient, db_session: AsyncSession, make_auth_headers
    ):
        partner, organization = await build_hierarchy(db_session, 100 * GB, 60 * GB)
        headers = make_auth_headers("partner_admin", partner_id=partner.id)

        response = await client.post(
            f"{API}/organizations/{organization.id}/suspension",
            json={"suspended": True, "reason": "non-payment"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert response.json()["suspension_reason"] == "non-payment"

        response = await client.delete(f"{API}/organizations/{organization.id}", headers=headers)
        assert response.status_code == 204

        response = await client.get(f"{API}/partners/{partner.id}", headers=headers)
        assert response.json()["used_storage_bytes"] == 0


@pytest.mark.asyncio
class TestAccessControl:
    """Authentication, capabilities and tenant scoping."""

    async def test_missing_token(self, client: AsyncClient):
        response = await client.get(f"{API}/partners/1")

        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client: AsyncClient):
        response = await client.get(
            f"{API}/partners/1", headers={"Authorization": "Bearer not-a-token"}
        )

        assert response.status_code == 401
        assert response.json()["error"] == "TokenInvalidError"

    async def test_partner_admin_cannot_register_partners(
        self, client: AsyncClient, make_auth_headers
    ):
        response = await client.post(
            f"{API}/partners",
            json={"name": "Rogue", "allocated_storage_bytes": GB},
            headers=make_auth_headers("partner_admin", partner_id=1),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "AuthorizationError"

    async def test_other_partner_is_not_found(
        self, client: AsyncClient, db_session: AsyncSession, make_auth_headers
    ):
        partner, organization = await build_hierarchy(db_session)
        other = await PartnerFactory.create(db_session, name="Other Hosting")
        headers = make_auth_headers("partner_admin", partner_id=other.id)

        partner_response = await client.get(f"{API}/partners/{partner.id}", headers=headers)
        org_response = await client.patch(
            f"{API}/organizations/{organization.id}/storage",
            json={"storage_bytes": GB},
            headers=headers,
        )

        assert partner_response.status_code == 404
        assert org_response.status_code == 404

    async def test_organization_admin_cannot_read_partner(
        self, client: AsyncClient, db_session: AsyncSession, make_auth_headers
    ):
        partner, organization = await build_hierarchy(db_session)
        headers = make_auth_headers("organization_admin", organization_id=organization.id)

        response = await client.get(f"{API}/partners/{partner.id}", headers=headers)

        assert response.status_code == 403

    async def test_negative_pool_is_a_validation_error(self, client: AsyncClient, admin_headers):
        response = await client.post(
            f"{API}/partners",
            json={"name": "Acme", "allocated_storage_bytes": -1},
            headers=admin_headers,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "ValidationError"
        assert body["details"]["errors"][0]["field"].endswith("allocated_storage_bytes")
