"""
Organization data access.
"""

from typing import List
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.dao.base import BaseDAO
from quota_ledger.models.organization import Organization


class OrganizationDAO(BaseDAO[Organization]):
    """Data access for organizations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Organization, session)

    async def get_by_partner(
        self, partner_id: int, skip: int = 0, limit: int = 100
    ) -> List[Organization]:
        """
        List a partner's organizations.
        """
        result = await self.session.execute(
            select(Organization)
            .where(Organization.partner_id == partner_id)
            .order_by(Organization.id)
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sum_total_storage_for_partner(self, partner_id: int) -> int:
        """
        Sum of organization pools carved from a partner.

        WHY: Used by the reconciliation job and tests to check that
        ``partner.used_storage_bytes`` matches its children.
        """
        result = await self.session.execute(
            select(func.coalesce(func.sum(Organization.total_storage_bytes), 0)).where(
                Organization.partner_id == partner_id
            )
        )
        return int(result.scalar_one())
