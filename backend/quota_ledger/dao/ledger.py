"""
Ledger counter DAO.

WHAT: The only code that writes pool counters
(``used_storage_bytes`` and pool capacity columns).

WHY: Each write is a single conditional UPDATE, i.e. an atomic
compare-and-swap evaluated by the database. Even if two transactions
planned against the same snapshot, at most one of them can move the
counter past the pool's capacity; the other sees zero affected rows.

HOW: Pools are addressed by tier (partner or organization) and id. The
caller (AllocationEngine) has already locked the row with
``SELECT ... FOR UPDATE``; the WHERE clause re-checks the invariant anyway.
"""

from enum import Enum
from typing import Union

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.models.organization import Organization
from quota_ledger.models.partner import Partner


class PoolTier(str, Enum):
    """Entities that own a pool children are carved from."""

    PARTNER = "partner"
    ORGANIZATION = "organization"


PoolModel = Union[Partner, Organization]


class LedgerDAO:
    """
    Atomic counter updates for partner and organization pools.

    Every method returns True when the row was updated, False when the
    conditional check rejected the change (or the row does not exist).
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _model(tier: PoolTier):
        return Partner if tier == PoolTier.PARTNER else Organization

    @staticmethod
    def _capacity_column(tier: PoolTier):
        if tier == PoolTier.PARTNER:
            return Partner.allocated_storage_bytes
        return Organization.total_storage_bytes

    async def _execute(self, stmt) -> bool:
        result = await self.session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def consume(self, tier: PoolTier, pool_id: int, delta_bytes: int) -> bool:
        """
        Add ``delta_bytes`` to the pool's used counter if capacity allows.

        ``UPDATE ... SET used = used + :d WHERE id = :id AND capacity - used >= :d``
        """
        model = self._model(tier)
        capacity = self._capacity_column(tier)
        stmt = (
            update(model)
            .where(model.id == pool_id)
            .where(capacity - model.used_storage_bytes >= delta_bytes)
            .values(used_storage_bytes=model.used_storage_bytes + delta_bytes)
        )
        return await self._execute(stmt)

    async def give_back(self, tier: PoolTier, pool_id: int, bytes_released: int) -> bool:
        """
        Subtract ``bytes_released`` from the pool's used counter, floored at 0.
        """
        model = self._model(tier)
        stmt = (
            update(model)
            .where(model.id == pool_id)
            .values(
                used_storage_bytes=case(
                    (
                        model.used_storage_bytes >= bytes_released,
                        model.used_storage_bytes - bytes_released,
                    ),
                    else_=0,
                )
            )
        )
        return await self._execute(stmt)

    async def set_capacity(self, tier: PoolTier, pool_id: int, new_capacity: int) -> bool:
        """
        Set the pool's capacity if it does not drop below current usage.
        """
        model = self._model(tier)
        capacity = self._capacity_column(tier)
        stmt = (
            update(model)
            .where(model.id == pool_id)
            .where(model.used_storage_bytes <= new_capacity)
            .values({capacity.key: new_capacity})
        )
        return await self._execute(stmt)

    async def add_capacity(self, tier: PoolTier, pool_id: int, extra_bytes: int) -> bool:
        """
        Grow the pool's capacity by ``extra_bytes`` (purchase top-up).
        """
        model = self._model(tier)
        capacity = self._capacity_column(tier)
        stmt = (
            update(model)
            .where(model.id == pool_id)
            .values({capacity.key: capacity + extra_bytes})
        )
        return await self._execute(stmt)

    async def refresh(self, pool: PoolModel) -> PoolModel:
        """Reload counters after a conditional update bypassed the identity map."""
        await self.session.refresh(pool)
        return pool
