"""
Unit tests for LedgerDAO conditional updates.

WHAT: consume / give_back / set_capacity / add_capacity on both pool tiers.

WHY: These statements are the last line of defence against over-commit:
the WHERE clause must reject any change that would push a pool's used
counter past its capacity, even if the caller planned against stale data.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.dao.ledger import LedgerDAO, PoolTier

from tests.factories import PartnerFactory, build_hierarchy


@pytest.mark.asyncio
class TestConsume:
    """Reserving bytes from a pool."""

    async def test_consume_within_capacity(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session, allocated_storage_bytes=100)
        ledger = LedgerDAO(db_session)

        assert await ledger.consume(PoolTier.PARTNER, partner.id, 60) is True
        await ledger.refresh(partner)

        assert partner.used_storage_bytes == 60

    async def test_consume_exact_remaining(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session, allocated_storage_bytes=100)
        ledger = LedgerDAO(db_session)

        await ledger.consume(PoolTier.PARTNER, partner.id, 60)
        assert await ledger.consume(PoolTier.PARTNER, partner.id, 40) is True

    async def test_consume_beyond_capacity_rejected(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session, allocated_storage_bytes=100)
        ledger = LedgerDAO(db_session)

        await ledger.consume(PoolTier.PARTNER, partner.id, 60)
        assert await ledger.consume(PoolTier.PARTNER, partner.id, 41) is False

        await ledger.refresh(partner)
        assert partner.used_storage_bytes == 60

    async def test_consume_unknown_pool(self, db_session: AsyncSession):
        assert await LedgerDAO(db_session).consume(PoolTier.ORGANIZATION, 999, 1) is False

    async def test_consume_organization_tier(self, db_session: AsyncSession):
        _, organization = await build_hierarchy(db_session, 100, 50)
        ledger = LedgerDAO(db_session)

        assert await ledger.consume(PoolTier.ORGANIZATION, organization.id, 50) is True
        assert await ledger.consume(PoolTier.ORGANIZATION, organization.id, 1) is False


@pytest.mark.asyncio
class TestGiveBack:
    """Returning bytes to a pool."""

    async def test_give_back_reduces_used(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session, allocated_storage_bytes=100)
        ledger = LedgerDAO(db_session)
        await ledger.consume(PoolTier.PARTNER, partner.id, 70)

        assert await ledger.give_back(PoolTier.PARTNER, partner.id, 30) is True
        await ledger.refresh(partner)

        assert partner.used_storage_bytes == 40

    async def test_give_back_floors_at_zero(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session, allocated_storage_bytes=100)
        ledger = LedgerDAO(db_session)
        await ledger.consume(PoolTier.PARTNER, partner.id, 10)

        await ledger.give_back(PoolTier.PARTNER, partner.id, 30)
        await ledger.refresh(partner)

        assert partner.used_storage_bytes == 0


@pytest.mark.asyncio
class TestCapacity:
    """Changing a pool's size."""

    async def test_set_capacity_above_usage(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session, allocated_storage_bytes=100)
        ledger = LedgerDAO(db_session)
        await ledger.consume(PoolTier.PARTNER, partner.id, 60)

        assert await ledger.set_capacity(PoolTier.PARTNER, partner.id, 60) is True
        await ledger.refresh(partner)
        assert partner.allocated_storage_bytes == 60

    async def test_set_capacity_below_usage_rejected(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session, allocated_storage_bytes=100)
        ledger = LedgerDAO(db_session)
        await ledger.consume(PoolTier.PARTNER, partner.id, 60)

        assert await ledger.set_capacity(PoolTier.PARTNER, partner.id, 59) is False
        await ledger.refresh(partner)
        assert partner.allocated_storage_bytes == 100

    async def test_set_capacity_on_organization_uses_total_column(
        self, db_session: AsyncSession
    ):
        _, organization = await build_hierarchy(db_session, 100, 50)
        ledger = LedgerDAO(db_session)

        assert await ledger.set_capacity(PoolTier.ORGANIZATION, organization.id, 30) is True
        await ledger.refresh(organization)
        assert organization.total_storage_bytes == 30

    async def test_add_capacity(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session, allocated_storage_bytes=100)
        ledger = LedgerDAO(db_session)

        assert await ledger.add_capacity(PoolTier.PARTNER, partner.id, 25) is True
        await ledger.refresh(partner)
        assert partner.allocated_storage_bytes == 125
