"""
Partner data access.
"""

from typing import List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.dao.base import BaseDAO
from quota_ledger.models.partner import Partner, PartnerTier


class PartnerDAO(BaseDAO[Partner]):
    """Data access for partners."""

    def __init__(self, session: AsyncSession):
        super().__init__(Partner, session)


class PartnerTierDAO(BaseDAO[PartnerTier]):
    """Data access for discount tiers."""

    def __init__(self, session: AsyncSession):
        super().__init__(PartnerTier, session)

    async def get_by_name(self, name: str) -> Optional[PartnerTier]:
        result = await self.session.execute(
            select(PartnerTier).where(PartnerTier.name == name)
        )
        return result.scalar_one_or_none()

    async def list_tiers(self) -> List[PartnerTier]:
        result = await self.session.execute(
            select(PartnerTier).order_by(PartnerTier.discount_percentage)
        )
        return list(result.scalars().all())
