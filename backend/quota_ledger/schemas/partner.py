"""
Partner and organization schemas for API request/response validation.

WHAT: Pydantic schemas for the top two tiers of the storage hierarchy.

HOW: Byte quantities are plain integers; ``ge=0`` rejects negative sizes
before they reach the allocation engine.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


# ============================================================================
# Partners
# ============================================================================


class PartnerCreate(BaseModel):
    """Schema for registering a partner (platform admins only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255)
    contact_email: Optional[EmailStr] = None
    allocated_storage_bytes: int = Field(default=0, ge=0, description="Initial pool size")
    tier_name: Optional[str] = Field(default=None, max_length=100)


class PoolResize(BaseModel):
    """New size for a partner or organization pool."""

    storage_bytes: int = Field(..., ge=0)


class PartnerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    contact_email: Optional[str] = None
    allocated_storage_bytes: int
    used_storage_bytes: int
    available_storage_bytes: int
    tier_name: Optional[str] = None
    discount_percentage: Decimal
    is_active: bool
    created_at: datetime


# ============================================================================
# Organizations
# ============================================================================


class OrganizationCreate(BaseModel):
    """
    Schema for creating an organization under a partner.

    ``total_storage_bytes`` is reserved from the partner pool immediately.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255)
    total_storage_bytes: int = Field(..., ge=0)


class OrganizationSuspension(BaseModel):
    suspended: bool
    reason: Optional[str] = Field(default=None, max_length=1000)


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    partner_id: Optional[int] = None
    name: str
    is_retail: bool
    total_storage_bytes: int
    used_storage_bytes: int
    available_storage_bytes: int
    is_active: bool
    suspended_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    created_at: datetime


class OrganizationListResponse(BaseModel):
    items: List[OrganizationResponse]
    total: int
