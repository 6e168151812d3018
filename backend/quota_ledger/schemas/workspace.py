"""
Domain and mailbox user schemas for API request/response validation.

WHAT: Pydantic schemas for the workspace tier: domains, their DNS
verification, and mailbox users.

WHY: Domain responses carry the DNS records the customer must publish, so
the same payload drives the "set up your DNS" screen and the verification
result.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from quota_ledger.models.domain import DomainStatus
from quota_ledger.models.organization_user import UserStatus


# ============================================================================
# Domains
# ============================================================================


class DomainCreate(BaseModel):
    """
    Schema for adding a domain to an organization.

    The per-mailbox limits are pushed to the mail host; omitted values use
    the platform defaults.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    domain_name: str = Field(..., min_length=3, max_length=253)
    quota_bytes: int = Field(..., ge=0, description="Domain quota carved from the organization")
    max_quota_per_mailbox_mb: Optional[int] = Field(default=None, gt=0)
    default_quota_per_mailbox_mb: Optional[int] = Field(default=None, gt=0)
    max_mailboxes: int = Field(default=0, ge=0, description="0 means the platform default")


class DomainQuotaUpdate(BaseModel):
    quota_bytes: int = Field(..., ge=0)


class DomainMailboxLimitsUpdate(BaseModel):
    """Per-mailbox limits; omitted fields keep their current value."""

    max_quota_per_mailbox_mb: Optional[int] = Field(default=None, gt=0)
    default_quota_per_mailbox_mb: Optional[int] = Field(default=None, gt=0)
    max_mailboxes: Optional[int] = Field(
        default=None, ge=0, description="0 means the platform default"
    )


class DomainSuspension(BaseModel):
    suspended: bool


class DomainResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    domain_name: str
    domain_quota_bytes: int
    max_quota_per_mailbox_mb: int
    default_quota_per_mailbox_mb: int
    max_mailboxes: int
    status: DomainStatus
    mailcow_provisioned: bool
    provisioning_error: Optional[str] = None
    mx_record: Optional[str] = None
    spf_record: Optional[str] = None
    dkim_selector: str
    dkim_record: Optional[str] = None
    dmarc_record: Optional[str] = None
    dns_verified: bool
    dns_verified_at: Optional[datetime] = None
    last_verification_at: Optional[datetime] = None
    created_at: datetime


class DomainVerificationResponse(BaseModel):
    """
    Result of a verification pass.

    ``all_verified=False`` is a normal answer: the listed checks are still
    failing and the domain stays in ``dns_pending``.
    """

    model_config = ConfigDict(from_attributes=True)

    domain_id: int
    status: DomainStatus
    checks: Dict[str, bool]
    all_verified: bool
    provisioning_error: Optional[str] = None


# ============================================================================
# Users
# ============================================================================


class UserCreate(BaseModel):
    """
    Schema for creating a mailbox user on an active domain.

    The password is forwarded to the mail host and never stored.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    local_part: str = Field(..., min_length=1, max_length=64)
    display_name: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    mailbox_storage_bytes: int = Field(..., gt=0)
    drive_storage_bytes: int = Field(default=0, ge=0)


class UserQuotaUpdate(BaseModel):
    mailbox_storage_bytes: int = Field(..., gt=0)
    drive_storage_bytes: int = Field(default=0, ge=0)


class UserSuspension(BaseModel):
    suspended: bool


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    domain_id: int
    email_address: str
    display_name: Optional[str] = None
    mailbox_storage_bytes: int
    drive_storage_bytes: int
    status: UserStatus
    provisioned_at: Optional[datetime] = None
    created_at: datetime
