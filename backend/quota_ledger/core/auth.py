"""
JWT access token utilities.

WHY: Tokens are issued by the platform's identity service and carry the
claims this API authorizes on (role plus the partner or organization the
caller administers). Verification is stateless so the ledger API scales
without shared session storage.
"""

from datetime import datetime, timedelta
from typing import Dict, Any, Optional
from jose import jwt, JWTError

from quota_ledger.core.capabilities import Principal, Role
from quota_ledger.core.config import settings
from quota_ledger.core.exceptions import (
    TokenExpiredError,
    TokenInvalidError,
)


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT access token.

    Token includes:
    - Caller claims (sub, role, partner_id, organization_id)
    - exp: Expiration time (default: JWT_EXPIRATION_MINUTES)
    - iat / nbf: Issued at / not before

    Args:
        data: Claims to encode
        expires_delta: Optional custom expiration time

    Returns:
        JWT token string

    Example:
        >>> token = create_access_token({"sub": "ops@example.com", "role": "platform_admin"})
        >>> verify_token(token)["role"]
        'platform_admin'
    """
    to_encode = data.copy()
    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES))

    to_encode.update({"exp": expire, "iat": now, "nbf": now})

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded token payload

    Raises:
        TokenExpiredError: If token has expired
        TokenInvalidError: If token is malformed or signature invalid
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError(message="Token has expired")
    except JWTError as e:
        raise TokenInvalidError(message="Invalid token", error=str(e))


def principal_from_claims(payload: Dict[str, Any]) -> Principal:
    """
    Build a Principal from verified token claims.

    WHY: A token whose role is unknown, or a partner/organization admin token
    without the id it is scoped to, is unusable; reject it as invalid rather
    than guessing a scope.

    Raises:
        TokenInvalidError: If required claims are missing or malformed
    """
    subject = payload.get("sub")
    try:
        role = Role(payload.get("role"))
    except ValueError:
        raise TokenInvalidError(message="Token carries an unknown role", role=payload.get("role"))

    if not subject:
        raise TokenInvalidError(message="Token has no subject")

    partner_id = payload.get("partner_id")
    organization_id = payload.get("organization_id")
    if role == Role.PARTNER_ADMIN and partner_id is None:
        raise TokenInvalidError(message="Partner token missing partner_id")
    if role == Role.ORGANIZATION_ADMIN and organization_id is None:
        raise TokenInvalidError(message="Organization token missing organization_id")

    return Principal(
        subject=str(subject),
        role=role,
        partner_id=int(partner_id) if partner_id is not None else None,
        organization_id=int(organization_id) if organization_id is not None else None,
    )
