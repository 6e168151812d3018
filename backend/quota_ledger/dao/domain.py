"""
Domain data access.
"""

from typing import List, Optional, Sequence
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.dao.base import BaseDAO
from quota_ledger.models.domain import Domain, DomainStatus


class DomainDAO(BaseDAO[Domain]):
    """Data access for hosted mail domains."""

    def __init__(self, session: AsyncSession):
        super().__init__(Domain, session)

    async def get_by_name(self, domain_name: str) -> Optional[Domain]:
        result = await self.session.execute(
            select(Domain).where(Domain.domain_name == domain_name.lower())
        )
        return result.scalar_one_or_none()

    async def get_by_organization(self, organization_id: int) -> List[Domain]:
        result = await self.session.execute(
            select(Domain).where(Domain.organization_id == organization_id).order_by(Domain.id)
        )
        return list(result.scalars().all())

    async def get_by_statuses(
        self, statuses: Sequence[DomainStatus], limit: int = 100
    ) -> List[Domain]:
        """
        Domains in any of ``statuses``, oldest first.
        """
        result = await self.session.execute(
            select(Domain)
            .where(Domain.status.in_(list(statuses)))
            .order_by(Domain.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_unprovisioned(self, limit: int = 100) -> List[Domain]:
        """
        Domains whose mail-host provisioning has not succeeded yet.

        Suspended domains are excluded; they are not meant to be live.
        """
        result = await self.session.execute(
            select(Domain)
            .where(Domain.mailcow_provisioned.is_(False))
            .where(Domain.status != DomainStatus.SUSPENDED)
            .order_by(Domain.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sum_quota_for_organization(self, organization_id: int) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(Domain.domain_quota_bytes), 0)).where(
                Domain.organization_id == organization_id
            )
        )
        return int(result.scalar_one())
