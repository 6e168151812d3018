"""
Unit tests for the background job scheduler.

WHY: The health endpoint reports scheduler state, and both reconciliation
jobs must be registered when the application starts.
"""

from unittest.mock import MagicMock

import pytest

from quota_ledger.services import scheduler
from quota_ledger.services.reconciliation_service import ReconciliationService


@pytest.mark.asyncio
class TestScheduler:
    """Start, inspect and stop the scheduler."""

    async def test_status_before_start(self):
        status = scheduler.get_scheduler_status()

        assert status["running"] is False
        assert status["jobs"] == []

    async def test_start_registers_both_jobs(self):
        service = ReconciliationService(MagicMock())

        await scheduler.start_scheduler(service)
        try:
            status = scheduler.get_scheduler_status()
            job_ids = {job["id"] for job in status["jobs"]}

            assert status["running"] is True
            assert job_ids == {scheduler.RECONCILIATION_JOB_ID, scheduler.OVERDUE_JOB_ID}
        finally:
            await scheduler.shutdown_scheduler()

        assert scheduler.get_scheduler() is None
        assert scheduler.get_scheduler_status()["running"] is False

    async def test_second_start_is_ignored(self):
        service = ReconciliationService(MagicMock())

        await scheduler.start_scheduler(service)
        try:
            first = scheduler.get_scheduler()
            await scheduler.start_scheduler(service)
            assert scheduler.get_scheduler() is first
        finally:
            await scheduler.shutdown_scheduler()

    async def test_shutdown_without_start(self):
        await scheduler.shutdown_scheduler()

        assert scheduler.get_scheduler() is None
