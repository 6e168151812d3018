"""
Unit tests for access token handling.

WHY: Every route trusts the Principal built from the token. Expired,
forged or under-scoped tokens must be rejected before any capability
check runs.
"""

from datetime import timedelta

import pytest
from jose import jwt

from quota_ledger.core.auth import create_access_token, principal_from_claims, verify_token
from quota_ledger.core.capabilities import Role
from quota_ledger.core.exceptions import TokenExpiredError, TokenInvalidError


class TestTokens:
    """Encoding and verification."""

    def test_round_trip_keeps_claims(self):
        token = create_access_token({"sub": "ops@example.com", "role": "platform_admin"})

        payload = verify_token(token)

        assert payload["sub"] == "ops@example.com"
        assert payload["role"] == "platform_admin"
        assert {"exp", "iat", "nbf"} <= set(payload)

    def test_expired_token(self):
        token = create_access_token(
            {"sub": "ops@example.com", "role": "platform_admin"},
            expires_delta=timedelta(seconds=-10),
        )

        with pytest.raises(TokenExpiredError):
            verify_token(token)

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": "ops@example.com", "role": "platform_admin"},
            "some-other-secret",
            algorithm="HS256",
        )

        with pytest.raises(TokenInvalidError):
            verify_token(token)

    def test_garbage(self):
        with pytest.raises(TokenInvalidError):
            verify_token("not.a.token")


class TestPrincipalFromClaims:
    """Claims to Principal."""

    def test_partner_admin(self):
        principal = principal_from_claims(
            {"sub": "p@example.com", "role": "partner_admin", "partner_id": "3"}
        )

        assert principal.role == Role.PARTNER_ADMIN
        assert principal.partner_id == 3
        assert principal.organization_id is None

    def test_organization_admin(self):
        principal = principal_from_claims(
            {"sub": "o@example.com", "role": "organization_admin", "organization_id": 9}
        )

        assert principal.organization_id == 9

    def test_unknown_role(self):
        with pytest.raises(TokenInvalidError):
            principal_from_claims({"sub": "x@example.com", "role": "superuser"})

    def test_missing_subject(self):
        with pytest.raises(TokenInvalidError):
            principal_from_claims({"role": "platform_admin"})

    def test_partner_admin_without_partner_id(self):
        with pytest.raises(TokenInvalidError):
            principal_from_claims({"sub": "p@example.com", "role": "partner_admin"})

    def test_organization_admin_without_organization_id(self):
        with pytest.raises(TokenInvalidError):
            principal_from_claims({"sub": "o@example.com", "role": "organization_admin"})
