"""
Organization user data access.
"""

from typing import List, Optional
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.dao.base import BaseDAO
from quota_ledger.models.organization_user import OrganizationUser


class OrganizationUserDAO(BaseDAO[OrganizationUser]):
    """Data access for mailbox users."""

    def __init__(self, session: AsyncSession):
        super().__init__(OrganizationUser, session)

    async def get_by_email(self, email_address: str) -> Optional[OrganizationUser]:
        result = await self.session.execute(
            select(OrganizationUser).where(
                OrganizationUser.email_address == email_address.lower()
            )
        )
        return result.scalar_one_or_none()

    async def get_by_domain(self, domain_id: int) -> List[OrganizationUser]:
        result = await self.session.execute(
            select(OrganizationUser)
            .where(OrganizationUser.domain_id == domain_id)
            .order_by(OrganizationUser.id)
        )
        return list(result.scalars().all())

    async def sum_mailbox_bytes_for_domain(self, domain_id: int) -> int:
        """
        Sum of mailbox quotas on a domain.

        WHY: The mail host refuses a domain quota smaller than the quotas of
        the mailboxes it contains, so this is the domain's shrink floor.
        """
        result = await self.session.execute(
            select(func.coalesce(func.sum(OrganizationUser.mailbox_storage_bytes), 0)).where(
                OrganizationUser.domain_id == domain_id
            )
        )
        return int(result.scalar_one())

    async def sum_storage_for_organization(self, organization_id: int) -> int:
        result = await self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        OrganizationUser.mailbox_storage_bytes
                        + OrganizationUser.drive_storage_bytes
                    ),
                    0,
                )
            ).where(OrganizationUser.organization_id == organization_id)
        )
        return int(result.scalar_one())
