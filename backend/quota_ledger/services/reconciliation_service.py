"""
Reconciliation background service.

WHAT: Periodic job that resumes work left behind by failed or incomplete
requests.

WHY: A mail host outage leaves domains FAILED with their quota reserved,
and customers often publish DNS records long after creating a domain.
Neither should depend on someone pressing "retry":
1. Domains the mail host never accepted are provisioned again
2. Domains awaiting DNS are re-verified (activating them when ready)
3. Unpaid invoices past their due date are flagged overdue

HOW: Runs from APScheduler. Each domain is handled in its own session
and transaction so one failure never blocks the rest of the batch.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from quota_ledger.core.exceptions import AppException
from quota_ledger.dao.domain import DomainDAO
from quota_ledger.dao.invoice import InvoiceDAO
from quota_ledger.db.session import AsyncSessionLocal
from quota_ledger.models.domain import DomainStatus
from quota_ledger.services.dns_verifier import DnsVerifier, create_dns_verifier
from quota_ledger.services.domain_verification_service import DomainVerificationService
from quota_ledger.services.mailcow_client import MailcowClient, create_mailcow_client
from quota_ledger.services.provisioning_service import ProvisioningService

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    provisioned: int = 0
    provisioning_failures: int = 0
    activated: int = 0
    still_pending: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class ReconciliationService:
    """
    Retries unprovisioned domains, re-verifies pending ones, marks overdue invoices.

    Args:
        session_factory: Factory for job-scoped sessions
        mailcow_factory: Builds the mail host client
        verifier_factory: Builds the DNS verifier
        batch_size: Maximum domains handled per step per run
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        mailcow_factory: Callable[[], MailcowClient] = create_mailcow_client,
        verifier_factory: Callable[[], DnsVerifier] = create_dns_verifier,
        batch_size: int = 50,
    ):
        self._session_factory = session_factory
        self._mailcow_factory = mailcow_factory
        self._verifier_factory = verifier_factory
        self.batch_size = batch_size

    async def run_once(self) -> dict:
        """
        Main job function: retry provisioning, then re-verify DNS.

        Returns:
            Dict with counts for each step
        """
        logger.info("Starting reconciliation job")
        start_time = datetime.utcnow()
        report = ReconciliationReport()

        mailcow = self._mailcow_factory()
        await self.retry_unprovisioned_domains(mailcow, report)
        await self.reverify_pending_domains(mailcow, self._verifier_factory(), report)

        elapsed = (datetime.utcnow() - start_time).total_seconds()
        logger.info(
            f"Reconciliation completed in {elapsed:.2f}s. "
            f"Provisioned: {report.provisioned}, Activated: {report.activated}, "
            f"Still pending: {report.still_pending}, Errors: {report.errors}"
        )
        return report.as_dict()

    async def _domain_ids(self, unprovisioned: bool) -> list:
        async with self._session_factory() as session:
            dao = DomainDAO(session)
            if unprovisioned:
                domains = await dao.get_unprovisioned(limit=self.batch_size)
            else:
                domains = await dao.get_by_statuses(
                    [DomainStatus.PENDING, DomainStatus.DNS_PENDING], limit=self.batch_size
                )
            return [domain.id for domain in domains]

    async def retry_unprovisioned_domains(
        self,
        mailcow: MailcowClient,
        report: Optional[ReconciliationReport] = None,
    ) -> ReconciliationReport:
        """
        Provision every domain the mail host has not accepted yet.
        """
        report = report or ReconciliationReport()

        for domain_id in await self._domain_ids(unprovisioned=True):
            async with self._session_factory() as session:
                provisioning = ProvisioningService(
                    session, mailcow, session_factory=self._session_factory
                )
                try:
                    await provisioning.provision_domain(domain_id)
                    report.provisioned += 1
                except AppException as e:
                    logger.warning(
                        f"Provisioning retry for domain {domain_id} failed: {e.message}",
                        extra={"domain_id": domain_id},
                    )
                    report.provisioning_failures += 1
                    await session.rollback()
                except Exception as e:
                    logger.error(f"Error retrying provisioning for domain {domain_id}: {e}")
                    report.errors += 1
                    await session.rollback()

        return report

    async def reverify_pending_domains(
        self,
        mailcow: MailcowClient,
        verifier: DnsVerifier,
        report: Optional[ReconciliationReport] = None,
    ) -> ReconciliationReport:
        """
        Re-run DNS verification for domains that are not active yet.
        """
        report = report or ReconciliationReport()

        for domain_id in await self._domain_ids(unprovisioned=False):
            async with self._session_factory() as session:
                provisioning = ProvisioningService(
                    session, mailcow, session_factory=self._session_factory
                )
                verification = DomainVerificationService(session, verifier, provisioning)
                try:
                    result = await verification.verify_domain(domain_id)
                    await session.commit()
                except AppException as e:
                    logger.warning(
                        f"Re-verification of domain {domain_id} failed: {e.message}",
                        extra={"domain_id": domain_id},
                    )
                    report.errors += 1
                    await session.rollback()
                    continue
                except Exception as e:
                    logger.error(f"Error re-verifying domain {domain_id}: {e}")
                    report.errors += 1
                    await session.rollback()
                    continue

            if result.status == DomainStatus.ACTIVE:
                report.activated += 1
            else:
                report.still_pending += 1

        return report

    async def mark_overdue_invoices(self) -> int:
        async with self._session_factory() as session:
            count = await InvoiceDAO(session).mark_overdue(datetime.utcnow().date())
            await session.commit()
        if count:
            logger.info(f"Marked {count} invoices overdue")
        return count


_reconciliation_service: Optional[ReconciliationService] = None


def get_reconciliation_service() -> ReconciliationService:
    """Get or create the reconciliation service instance."""
    global _reconciliation_service
    if _reconciliation_service is None:
        _reconciliation_service = ReconciliationService(AsyncSessionLocal)
    return _reconciliation_service
