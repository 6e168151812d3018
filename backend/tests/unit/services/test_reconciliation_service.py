"""
Unit tests for the reconciliation job.

WHY: Failed provisioning and late DNS publication are resolved only by this
job. Each domain runs in its own transaction, so one failing domain must
not stop the rest of the batch.

HOW: A file-backed database gives every domain step its own connection,
as in production; the mail host and DNS are mocked.
"""

from datetime import date, timedelta

import pytest

from quota_ledger.core.exceptions import MailcowError
from quota_ledger.models.domain import Domain, DomainStatus
from quota_ledger.models.invoice import Invoice, InvoiceStatus
from quota_ledger.services.reconciliation_service import ReconciliationService

from tests.factories import (
    DomainFactory,
    InvoiceFactory,
    build_hierarchy,
    dns_result,
    make_dns_verifier_mock,
    make_mailcow_mock,
)


async def seed_domains(session_factory) -> dict:
    """One failed, one awaiting DNS, one live domain."""
    async with session_factory() as session:
        _, organization = await build_hierarchy(session)
        failed = await DomainFactory.create(
            session,
            organization,
            domain_name="failed.example",
            status=DomainStatus.FAILED,
            mailcow_provisioned=False,
        )
        pending = await DomainFactory.create(
            session, organization, domain_name="pending.example", status=DomainStatus.DNS_PENDING
        )
        live = await DomainFactory.create(session, organization, domain_name="live.example")
        await session.commit()
        return {"failed": failed.id, "pending": pending.id, "live": live.id}


async def load_domain(session_factory, domain_id: int) -> Domain:
    async with session_factory() as session:
        return await session.get(Domain, domain_id)


@pytest.mark.asyncio
class TestRunOnce:
    """The combined provisioning retry and DNS re-verification pass."""

    async def test_failed_domain_provisioned_then_activated(self, file_session_factory):
        ids = await seed_domains(file_session_factory)
        mailcow = make_mailcow_mock()
        service = ReconciliationService(
            file_session_factory,
            mailcow_factory=lambda: mailcow,
            verifier_factory=make_dns_verifier_mock,
        )

        report = await service.run_once()

        assert report["provisioned"] == 1
        assert report["provisioning_failures"] == 0
        assert report["activated"] == 2
        assert report["still_pending"] == 0
        assert report["errors"] == 0
        mailcow.create_domain.assert_awaited_once()
        assert mailcow.create_domain.await_args.kwargs["domain_name"] == "failed.example"

        failed = await load_domain(file_session_factory, ids["failed"])
        assert failed.status == DomainStatus.ACTIVE
        assert failed.mailcow_provisioned is True
        assert failed.provisioning_error is None

    async def test_provisioning_failure_counted_and_batch_continues(
        self, file_session_factory
    ):
        ids = await seed_domains(file_session_factory)
        mailcow = make_mailcow_mock()
        mailcow.create_domain.side_effect = MailcowError(message="HTTP 503")
        service = ReconciliationService(
            file_session_factory,
            mailcow_factory=lambda: mailcow,
            verifier_factory=make_dns_verifier_mock,
        )

        report = await service.run_once()

        assert report["provisioned"] == 0
        assert report["provisioning_failures"] == 1
        assert report["activated"] == 1

        failed = await load_domain(file_session_factory, ids["failed"])
        assert failed.status == DomainStatus.FAILED
        assert "HTTP 503" in failed.provisioning_error
        pending = await load_domain(file_session_factory, ids["pending"])
        assert pending.status == DomainStatus.ACTIVE

    async def test_missing_records_leave_domains_pending(self, file_session_factory):
        ids = await seed_domains(file_session_factory)
        mailcow = make_mailcow_mock()
        service = ReconciliationService(
            file_session_factory,
            mailcow_factory=lambda: mailcow,
            verifier_factory=lambda: make_dns_verifier_mock(dns_result(dkim=False)),
        )

        report = await service.run_once()

        assert report["activated"] == 0
        assert report["still_pending"] == 2
        pending = await load_domain(file_session_factory, ids["pending"])
        assert pending.status == DomainStatus.DNS_PENDING
        assert pending.last_verification_at is not None

    async def test_batch_size_limits_work(self, file_session_factory):
        await seed_domains(file_session_factory)
        mailcow = make_mailcow_mock()
        verifier = make_dns_verifier_mock()
        service = ReconciliationService(
            file_session_factory,
            mailcow_factory=lambda: mailcow,
            verifier_factory=lambda: verifier,
            batch_size=1,
        )

        report = await service.run_once()

        assert report["provisioned"] == 1
        assert verifier.verify_all.await_count == 1


@pytest.mark.asyncio
class TestOverdueInvoices:
    """The overdue-invoice job."""

    async def test_marks_and_commits(self, file_session_factory):
        async with file_session_factory() as session:
            partner, _ = await build_hierarchy(session)
            invoice = await InvoiceFactory.create(
                session, partner=partner, due_date=date.today() - timedelta(days=1)
            )
            await session.commit()
            invoice_id = invoice.id

        count = await ReconciliationService(file_session_factory).mark_overdue_invoices()

        assert count == 1
        async with file_session_factory() as session:
            stored = await session.get(Invoice, invoice_id)
            assert stored.status == InvoiceStatus.OVERDUE
