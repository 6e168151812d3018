"""
Concurrency tests for pool reservations.

WHY: Two requests reading the same partner pool and both deciding there is
room is the classic over-commit. Reservations lock the parent row and
apply a conditional UPDATE, so concurrent requests must serialize and the
pool can never be sold past its size.

HOW: Several sessions on separate connections race to carve organizations
out of a small partner pool; exactly as many as fit must succeed.
"""

import asyncio

import pytest

from quota_ledger.core.exceptions import InsufficientCapacityError
from quota_ledger.models.partner import Partner
from quota_ledger.services.allocation_engine import AllocationEngine


@pytest.mark.asyncio
class TestConcurrentReservations:
    """Parallel organization allocations against one partner pool."""

    async def test_pool_never_over_committed(self, file_session_factory):
        async with file_session_factory() as session:
            partner = Partner(
                name="Tight Pool Hosting",
                allocated_storage_bytes=100,
                used_storage_bytes=0,
            )
            session.add(partner)
            await session.commit()
            partner_id = partner.id

        async def reserve(index: int):
            async with file_session_factory() as session:
                organization = await AllocationEngine(session).allocate_organization(
                    f"Org {index}", 21, partner_id
                )
                await session.commit()
                return organization.id

        results = await asyncio.gather(
            *(reserve(i) for i in range(5)), return_exceptions=True
        )

        created = [r for r in results if isinstance(r, int)]
        rejected = [r for r in results if isinstance(r, InsufficientCapacityError)]
        assert len(created) == 4
        assert len(rejected) == 1

        async with file_session_factory() as session:
            partner = await session.get(Partner, partner_id)
            assert partner.used_storage_bytes == 84
            assert partner.used_storage_bytes <= partner.allocated_storage_bytes

    async def test_concurrent_release_and_reserve_conserve_bytes(self, file_session_factory):
        async with file_session_factory() as session:
            partner = Partner(name="Churn Hosting", allocated_storage_bytes=100)
            session.add(partner)
            await session.flush()
            organization = await AllocationEngine(session).allocate_organization(
                "Leaving", 60, partner.id
            )
            await session.commit()
            partner_id, leaving_id = partner.id, organization.id

        async def release():
            async with file_session_factory() as session:
                await AllocationEngine(session).release_organization(leaving_id)
                await session.commit()

        async def reserve():
            async with file_session_factory() as session:
                await AllocationEngine(session).allocate_organization("Arriving", 40, partner_id)
                await session.commit()

        await asyncio.gather(release(), reserve())

        async with file_session_factory() as session:
            partner = await session.get(Partner, partner_id)
            assert partner.used_storage_bytes == 40
