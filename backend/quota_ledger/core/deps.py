"""
FastAPI dependencies for authentication and authorization.

WHY: Dependencies provide reusable authentication and capability checks
that can be injected into route handlers, ensuring consistent security
across the API.
"""

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from quota_ledger.core.auth import principal_from_claims, verify_token
from quota_ledger.core.capabilities import Capability, Principal, authorize


# HTTP Bearer token security scheme
# Format: "Authorization: Bearer <token>"
security = HTTPBearer()


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """
    Get the authenticated caller from the bearer token.

    Usage:
        @router.get("/partners/{partner_id}")
        async def get_partner(principal: Principal = Depends(get_current_principal)):
            ...

    Raises:
        TokenExpiredError: If the token has expired
        TokenInvalidError: If the token is malformed or lacks required claims
    """
    payload = verify_token(credentials.credentials)
    return principal_from_claims(payload)


def require_capability(capability: Capability):
    """
    Factory function to create a capability requirement dependency.

    Usage:
        @router.post("/partners")
        async def create_partner(
            principal: Principal = Depends(require_capability(Capability.PARTNERS_MANAGE)),
        ):
            ...

    Args:
        capability: Capability the caller must hold

    Returns:
        Dependency function returning the Principal
    """

    async def capability_checker(
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        authorize(principal, capability)
        return principal

    return capability_checker
