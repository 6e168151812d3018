"""
Domain DNS verification state machine.

WHAT: Moves a domain through ``pending → dns_pending → active`` (or
``failed``) based on the four mail DNS checks.

WHY: A domain may only receive mailboxes once mail will route to the
platform and authenticate. Activation requires every check to pass in the
same pass; there is no partial credit. Incomplete verification is an
ordinary result returned to the caller, not an error.

HOW:
1. DNS lookups run before any row lock is taken (they can be slow).
2. The domain row is then locked and the transition applied.
3. On the first all-pass, a domain the mail host does not have yet is
   provisioned. The row lock plus the ``mailcow_provisioned`` flag mean
   this happens at most once even if verifications race.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.exceptions import (
    ExternalProvisioningError,
    InvalidStateTransitionError,
    ResourceNotFoundError,
)
from quota_ledger.dao.domain import DomainDAO
from quota_ledger.models.domain import Domain, DomainStatus
from quota_ledger.services.dns_verifier import DnsCheckResult, DnsVerifier
from quota_ledger.services.provisioning_service import ProvisioningService

logger = logging.getLogger(__name__)


@dataclass
class DomainVerificationResult:
    """Outcome of one verification pass."""

    domain_id: int
    status: DomainStatus
    checks: Dict[str, bool] = field(default_factory=dict)
    all_verified: bool = False
    provisioning_error: Optional[str] = None


class DomainVerificationService:
    """
    Runs DNS verification and applies the resulting status transition.

    Args:
        session: Request-scoped (or job-scoped) session
        verifier: DNS checker
        provisioning: Orchestrator used for the provisioning trigger
    """

    def __init__(
        self,
        session: AsyncSession,
        verifier: DnsVerifier,
        provisioning: ProvisioningService,
    ):
        self.session = session
        self.verifier = verifier
        self.provisioning = provisioning
        self.domains = DomainDAO(session)

    async def verify_domain(self, domain_id: int) -> DomainVerificationResult:
        """
        Check a domain's DNS records and update its status.

        Returns:
            DomainVerificationResult; ``all_verified`` is False while records
            are missing and ``status`` is ``failed`` if the provisioning
            trigger failed

        Raises:
            ResourceNotFoundError: If the domain does not exist
            InvalidStateTransitionError: If the domain is suspended
        """
        domain = await self.domains.get_by_id(domain_id)
        if domain is None:
            raise ResourceNotFoundError(message="Domain not found", domain_id=domain_id)
        self._ensure_verifiable(domain)

        checks = await self.verifier.verify_all(domain.domain_name, domain.dkim_selector)

        domain = await self.domains.get_by_id_for_update(domain_id)
        if domain is None:
            raise ResourceNotFoundError(message="Domain not found", domain_id=domain_id)
        self._ensure_verifiable(domain)

        domain.last_verification_at = datetime.utcnow()

        if domain.status == DomainStatus.ACTIVE:
            await self.session.flush()
            return self._result(domain, checks)

        if not checks.all_verified:
            domain.status = DomainStatus.DNS_PENDING
            await self.session.flush()
            logger.info(
                f"Domain {domain.domain_name} awaiting DNS: {', '.join(checks.failing)} missing",
                extra={"domain_id": domain.id, "failing": checks.failing},
            )
            return self._result(domain, checks)

        if not domain.mailcow_provisioned:
            try:
                domain = await self.provisioning.provision_domain(domain.id)
            except ExternalProvisioningError as e:
                # The orchestrator already committed the FAILED state.
                return self._result(domain, checks, provisioning_error=e.message)

        domain.status = DomainStatus.ACTIVE
        domain.dns_verified = True
        domain.dns_verified_at = datetime.utcnow()
        await self.session.flush()

        logger.info(
            f"Domain {domain.domain_name} verified and active",
            extra={"domain_id": domain.id, "organization_id": domain.organization_id},
        )
        return self._result(domain, checks)

    @staticmethod
    def _ensure_verifiable(domain: Domain) -> None:
        if domain.status == DomainStatus.SUSPENDED:
            raise InvalidStateTransitionError(
                message="Suspended domains cannot be verified",
                domain_id=domain.id,
                status=domain.status.value,
            )

    @staticmethod
    def _result(
        domain: Domain,
        checks: DnsCheckResult,
        provisioning_error: Optional[str] = None,
    ) -> DomainVerificationResult:
        return DomainVerificationResult(
            domain_id=domain.id,
            status=domain.status,
            checks=checks.as_dict(),
            all_verified=checks.all_verified,
            provisioning_error=provisioning_error,
        )
