"""
Provisioning orchestrator.

WHAT: Keeps the ledger and the mail host in agreement for domains and
mailboxes: create, quota and limit updates, suspension, delete.

WHY: The mail host fails independently of our database. Every operation
therefore follows one shape: validate and reserve locally, call the mail
host, and on failure run the compensating actions listed for that
operation in COMPENSATION_TABLE. Nothing in this module catches a mail
host error anywhere else, so the failure behaviour of every operation is
readable in one table.

HOW:
- Creates reserve first (capacity errors abort before any external call).
- Quota updates plan first, call the mail host, then commit the resize.
- Deletes call the mail host first; "already absent" counts as success
  only when an existence probe confirms it. Otherwise bytes stay reserved.
- Domain creation and retry own their transaction: a failed domain is
  committed as FAILED with its reservation intact, so the error the caller
  receives never erases the record an operator or the retry job needs.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quota_ledger.core.config import settings
from quota_ledger.core.exceptions import (
    DomainNotActiveError,
    ExternalProvisioningError,
    InvalidStateTransitionError,
    MailcowError,
    QuotaBelowUsageError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ValidationError,
)
from quota_ledger.dao.domain import DomainDAO
from quota_ledger.dao.organization_user import OrganizationUserDAO
from quota_ledger.models.base import BYTES_PER_MB
from quota_ledger.models.domain import Domain, DomainStatus
from quota_ledger.models.organization_user import OrganizationUser, UserStatus
from quota_ledger.services.allocation_engine import AllocationEngine
from quota_ledger.services.dns_verifier import expected_records
from quota_ledger.services.mailcow_client import MailcowClient

logger = logging.getLogger(__name__)


DOMAIN_NAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)
LOCAL_PART_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9._+-]{0,62}[a-z0-9])?$")


# ============================================================================
# Compensation table
# ============================================================================


class ProvisioningOperation(str, Enum):
    """Operations that touch the mail host."""

    CREATE_DOMAIN = "create_domain"
    PROVISION_DOMAIN = "provision_domain"
    UPDATE_DOMAIN_QUOTA = "update_domain_quota"
    UPDATE_DOMAIN_LIMITS = "update_domain_limits"
    SET_DOMAIN_SUSPENSION = "set_domain_suspension"
    DELETE_DOMAIN = "delete_domain"
    CREATE_USER = "create_user"
    UPDATE_USER_QUOTA = "update_user_quota"
    SET_USER_SUSPENSION = "set_user_suspension"
    DELETE_USER = "delete_user"


class Compensation(str, Enum):
    """Actions run when the mail host call fails."""

    MARK_DOMAIN_FAILED = "mark_domain_failed"
    RELEASE_RESERVATION = "release_reservation"
    SKIP_LEDGER_COMMIT = "skip_ledger_commit"
    CONFIRM_ABSENT = "confirm_absent"


@dataclass(frozen=True)
class CompensationPlan:
    """
    What to undo, in order, and whether the failure reaches the caller.

    ``surface_error=False`` means the compensations decide: they either
    raise themselves or let the operation continue (delete of an object the
    mail host no longer has).
    """

    actions: tuple[Compensation, ...]
    surface_error: bool = True


COMPENSATION_TABLE: dict[ProvisioningOperation, CompensationPlan] = {
    # Keep the reservation; persist FAILED so the quota decision survives.
    ProvisioningOperation.CREATE_DOMAIN: CompensationPlan((Compensation.MARK_DOMAIN_FAILED,)),
    ProvisioningOperation.PROVISION_DOMAIN: CompensationPlan((Compensation.MARK_DOMAIN_FAILED,)),
    # No user-visible side effect exists yet; undo the reservation entirely.
    ProvisioningOperation.CREATE_USER: CompensationPlan((Compensation.RELEASE_RESERVATION,)),
    # The ledger has not moved; the old quota stays reserved.
    ProvisioningOperation.UPDATE_DOMAIN_QUOTA: CompensationPlan((Compensation.SKIP_LEDGER_COMMIT,)),
    ProvisioningOperation.UPDATE_USER_QUOTA: CompensationPlan((Compensation.SKIP_LEDGER_COMMIT,)),
    # Local settings and status change only after the mail host accepts.
    ProvisioningOperation.UPDATE_DOMAIN_LIMITS: CompensationPlan((Compensation.SKIP_LEDGER_COMMIT,)),
    ProvisioningOperation.SET_DOMAIN_SUSPENSION: CompensationPlan(
        (Compensation.SKIP_LEDGER_COMMIT,)
    ),
    ProvisioningOperation.SET_USER_SUSPENSION: CompensationPlan((Compensation.SKIP_LEDGER_COMMIT,)),
    # Continue to release only if the object is confirmed gone.
    ProvisioningOperation.DELETE_DOMAIN: CompensationPlan(
        (Compensation.CONFIRM_ABSENT,), surface_error=False
    ),
    ProvisioningOperation.DELETE_USER: CompensationPlan(
        (Compensation.CONFIRM_ABSENT,), surface_error=False
    ),
}

CompensationHandler = Callable[[MailcowError], Awaitable[None]]


@dataclass(frozen=True)
class MailboxDefaults:
    """Per-mailbox limits pushed to the mail host with a new domain."""

    max_quota_per_mailbox_mb: int = 10240
    default_quota_per_mailbox_mb: int = 1024
    max_mailboxes: int = 0

    @classmethod
    def from_settings(cls) -> "MailboxDefaults":
        return cls(
            max_quota_per_mailbox_mb=settings.MAX_MAILBOX_QUOTA_MB,
            default_quota_per_mailbox_mb=settings.DEFAULT_MAILBOX_QUOTA_MB,
            max_mailboxes=0,
        )


# ============================================================================
# Background DKIM issuance
# ============================================================================

_background_tasks: set = set()


def run_in_background(func: Callable[..., Awaitable[Any]], *args: Any) -> None:
    """
    Run ``func(*args)`` as a fire-and-forget task.

    A reference is kept until the task finishes so it is not garbage
    collected mid-flight.
    """
    task = asyncio.create_task(func(*args))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def issue_dkim_key(
    mailcow: MailcowClient,
    session_factory: async_sessionmaker,
    domain_id: int,
    domain_name: str,
    selector: str,
) -> None:
    """
    Ask the mail host for a DKIM key and store the public record.

    Failures are logged only: the DKIM DNS check will keep the domain out
    of ``active`` until a key exists, and the reconciliation job retries.
    """
    try:
        await mailcow.generate_dkim(domain_name, selector, settings.DKIM_KEY_SIZE)
    except MailcowError as e:
        logger.warning(
            f"DKIM generation for {domain_name} failed: {e.message}",
            extra={"domain_id": domain_id},
        )
        return

    dkim = await mailcow.get_dkim(domain_name)
    if not dkim:
        return

    async with session_factory() as session:
        domain = await DomainDAO(session).get_by_id(domain_id)
        if domain is None:
            return
        domain.dkim_record = dkim["dkim_txt"]
        domain.dkim_selector = dkim.get("dkim_selector") or selector
        await session.commit()

    logger.info(f"Stored DKIM record for {domain_name}", extra={"domain_id": domain_id})


# ============================================================================
# Orchestrator
# ============================================================================


class ProvisioningService:
    """
    Orchestrates ledger changes with mail host provisioning.

    Args:
        session: Request-scoped session
        mailcow: Mail host client
        session_factory: Factory for the background DKIM task's own session
        background: Scheduler for fire-and-forget work (tests pass a recorder)
    """

    def __init__(
        self,
        session: AsyncSession,
        mailcow: MailcowClient,
        session_factory: Optional[async_sessionmaker] = None,
        background: Callable[..., None] = run_in_background,
    ):
        self.session = session
        self.mailcow = mailcow
        self.engine = AllocationEngine(session)
        self.domains = DomainDAO(session)
        self.users = OrganizationUserDAO(session)
        self._session_factory = session_factory
        self._background = background

    # ------------------------------------------------------------------
    # Orchestration primitive
    # ------------------------------------------------------------------

    async def _provision(
        self,
        operation: ProvisioningOperation,
        external_call: Callable[[], Awaitable[Any]],
        handlers: Mapping[Compensation, CompensationHandler],
        **context: Any,
    ) -> bool:
        """
        Run one mail host call and compensate on failure.

        Returns:
            True if the call succeeded, False if it failed but the
            compensations allowed the operation to continue

        Raises:
            ExternalProvisioningError: If the plan surfaces the failure, or a
                compensation refuses to continue
        """
        try:
            await external_call()
            return True
        except MailcowError as exc:
            plan = COMPENSATION_TABLE[operation]
            logger.error(
                f"{operation.value} failed on mail host: {exc.message}; "
                f"compensating with {[a.value for a in plan.actions]}",
                extra={"operation": operation.value, **context},
            )
            for action in plan.actions:
                await handlers[action](exc)

            if plan.surface_error:
                raise ExternalProvisioningError(
                    message=f"{operation.value.replace('_', ' ').capitalize()} failed: {exc.message}",
                    retryable=True,
                    operation=operation.value,
                    **context,
                ) from exc
            return False

    @staticmethod
    async def _skip_ledger_commit(exc: MailcowError) -> None:
        # Nothing to undo: the resize is applied only after the mail host accepts it.
        return None

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    async def get_domain(self, domain_id: int) -> Domain:
        domain = await self.domains.get_by_id(domain_id)
        if domain is None:
            raise ResourceNotFoundError(message="Domain not found", domain_id=domain_id)
        return domain

    async def create_domain(
        self,
        organization_id: int,
        domain_name: str,
        quota_bytes: int,
        mailbox_defaults: Optional[MailboxDefaults] = None,
    ) -> Domain:
        """
        Reserve quota for a domain and create it on the mail host.

        Args:
            organization_id: Organization whose pool funds the domain
            domain_name: Domain to host (lowercased)
            quota_bytes: Domain quota carved from the organization
            mailbox_defaults: Per-mailbox limits (platform defaults if omitted)

        Returns:
            The domain in ``pending`` status, provisioned on the mail host

        Raises:
            ResourceAlreadyExistsError: If the domain is already hosted
            InsufficientCapacityError: If the organization pool is too small
            ExternalProvisioningError: If the mail host failed; the domain is
                kept as FAILED with its quota still reserved
        """
        name = domain_name.strip().lower()
        if not DOMAIN_NAME_PATTERN.match(name):
            raise ValidationError(message="Invalid domain name", domain_name=domain_name)
        if await self.domains.get_by_name(name) is not None:
            raise ResourceAlreadyExistsError(
                message=f"Domain {name} is already registered", domain_name=name
            )

        defaults = mailbox_defaults or MailboxDefaults.from_settings()
        selector = settings.DKIM_SELECTOR

        try:
            async with self.session.begin_nested():
                domain = await self.engine.reserve_domain(
                    organization_id,
                    quota_bytes,
                    domain_name=name,
                    status=DomainStatus.PENDING,
                    mailcow_provisioned=False,
                    max_quota_per_mailbox_mb=defaults.max_quota_per_mailbox_mb,
                    default_quota_per_mailbox_mb=defaults.default_quota_per_mailbox_mb,
                    max_mailboxes=defaults.max_mailboxes,
                    dkim_selector=selector,
                    **expected_records(name, selector),
                )
        except IntegrityError:
            logger.info(f"Domain {name} registered by a concurrent request")
            raise ResourceAlreadyExistsError(
                message=f"Domain {name} is already registered", domain_name=name
            )

        await self._provision_domain_on_host(domain, ProvisioningOperation.CREATE_DOMAIN)
        await self.session.commit()
        self._schedule_dkim(domain)
        return domain

    async def provision_domain(self, domain_id: int) -> Domain:
        """
        Create a not-yet-provisioned domain on the mail host.

        Idempotent: a domain already provisioned is returned unchanged.
        The row lock makes concurrent callers (verification, retry job)
        provision at most once.

        Raises:
            ExternalProvisioningError: If the mail host failed; the domain is FAILED
        """
        domain = await self.domains.get_by_id_for_update(domain_id)
        if domain is None:
            raise ResourceNotFoundError(message="Domain not found", domain_id=domain_id)
        if domain.mailcow_provisioned:
            return domain

        await self._provision_domain_on_host(domain, ProvisioningOperation.PROVISION_DOMAIN)
        if domain.status == DomainStatus.FAILED:
            domain.status = DomainStatus.PENDING
        await self.session.commit()
        self._schedule_dkim(domain)
        return domain

    async def _provision_domain_on_host(
        self, domain: Domain, operation: ProvisioningOperation
    ) -> None:
        max_mailboxes = domain.max_mailboxes or settings.DEFAULT_MAX_MAILBOXES

        async def create_on_host() -> None:
            if await self.mailcow.domain_exists(domain.domain_name):
                logger.info(
                    f"Domain {domain.domain_name} already exists on mail host; adopting it",
                    extra={"domain_id": domain.id},
                )
                return
            await self.mailcow.create_domain(
                domain_name=domain.domain_name,
                quota_mb=domain.domain_quota_bytes // BYTES_PER_MB,
                max_quota_per_mailbox_mb=domain.max_quota_per_mailbox_mb,
                default_quota_per_mailbox_mb=domain.default_quota_per_mailbox_mb,
                max_mailboxes=max_mailboxes,
            )

        async def mark_failed(exc: MailcowError) -> None:
            domain.status = DomainStatus.FAILED
            domain.mailcow_provisioned = False
            domain.provisioning_error = exc.message
            await self.session.commit()

        await self._provision(
            operation,
            create_on_host,
            {Compensation.MARK_DOMAIN_FAILED: mark_failed},
            domain_id=domain.id,
            domain_name=domain.domain_name,
        )

        domain.mailcow_provisioned = True
        domain.provisioning_error = None
        await self.session.flush()
        logger.info(
            f"Domain {domain.domain_name} provisioned on mail host",
            extra={"domain_id": domain.id, "organization_id": domain.organization_id},
        )

    def _schedule_dkim(self, domain: Domain) -> None:
        if self._session_factory is None:
            return
        self._background(
            issue_dkim_key,
            self.mailcow,
            self._session_factory,
            domain.id,
            domain.domain_name,
            domain.dkim_selector,
        )

    async def update_domain_quota(self, domain_id: int, new_quota_bytes: int) -> Domain:
        """
        Change a domain's quota on the mail host, then in the ledger.

        Raises:
            InsufficientCapacityError / QuotaBelowUsageError: Before any external call
            ExternalProvisioningError: If the mail host rejected the change;
                the old quota stays reserved
        """
        domain = await self.get_domain(domain_id)
        plan = await self.engine.plan_domain_resize(domain, new_quota_bytes)
        if plan.delta_bytes == 0:
            return domain

        if domain.mailcow_provisioned:
            await self._provision(
                ProvisioningOperation.UPDATE_DOMAIN_QUOTA,
                lambda: self.mailcow.update_domain(
                    domain.domain_name, {"quota": new_quota_bytes // BYTES_PER_MB}
                ),
                {Compensation.SKIP_LEDGER_COMMIT: self._skip_ledger_commit},
                domain_id=domain.id,
            )

        return await self.engine.resize_domain(domain, new_quota_bytes)

    async def update_domain_mailbox_limits(
        self,
        domain_id: int,
        max_quota_per_mailbox_mb: Optional[int] = None,
        default_quota_per_mailbox_mb: Optional[int] = None,
        max_mailboxes: Optional[int] = None,
    ) -> Domain:
        """
        Change a domain's per-mailbox limits on the mail host, then locally.

        Omitted values keep their current setting. ``max_mailboxes=0``
        means the platform default.

        Raises:
            ValidationError: If the default quota exceeds the maximum
            QuotaBelowUsageError: If an existing mailbox is larger than the
                new maximum, or there are more mailboxes than the new count
            ExternalProvisioningError: If the mail host rejected the change;
                the old limits are kept
        """
        domain = await self.domains.get_by_id_for_update(domain_id)
        if domain is None:
            raise ResourceNotFoundError(message="Domain not found", domain_id=domain_id)

        new_max = max_quota_per_mailbox_mb or domain.max_quota_per_mailbox_mb
        new_default = default_quota_per_mailbox_mb or domain.default_quota_per_mailbox_mb
        new_count = domain.max_mailboxes if max_mailboxes is None else max_mailboxes
        if new_default > new_max:
            raise ValidationError(
                message=(
                    f"Default mailbox quota {new_default} MB exceeds the maximum of {new_max} MB"
                ),
                domain_id=domain.id,
            )

        users = await self.users.get_by_domain(domain.id)
        largest_mb = max((u.mailbox_storage_bytes // BYTES_PER_MB for u in users), default=0)
        if largest_mb > new_max:
            raise QuotaBelowUsageError(
                message=f"A mailbox on {domain.domain_name} already has {largest_mb} MB",
                requested_mb=new_max,
                used_mb=largest_mb,
            )
        if new_count and len(users) > new_count:
            raise QuotaBelowUsageError(
                message=f"{domain.domain_name} already has {len(users)} mailboxes",
                requested_mailboxes=new_count,
                used_mailboxes=len(users),
            )

        current = (
            domain.max_quota_per_mailbox_mb,
            domain.default_quota_per_mailbox_mb,
            domain.max_mailboxes,
        )
        if (new_max, new_default, new_count) == current:
            return domain

        if domain.mailcow_provisioned:
            attrs = {
                "maxquota": new_max,
                "defquota": new_default,
                "mailboxes": new_count or settings.DEFAULT_MAX_MAILBOXES,
            }
            await self._provision(
                ProvisioningOperation.UPDATE_DOMAIN_LIMITS,
                lambda: self.mailcow.update_domain(domain.domain_name, attrs),
                {Compensation.SKIP_LEDGER_COMMIT: self._skip_ledger_commit},
                domain_id=domain.id,
            )

        domain.max_quota_per_mailbox_mb = new_max
        domain.default_quota_per_mailbox_mb = new_default
        domain.max_mailboxes = new_count
        await self.session.flush()
        logger.info(
            f"Mailbox limits for {domain.domain_name} set to max {new_max} MB, "
            f"default {new_default} MB, {new_count or 'default'} mailboxes",
            extra={"domain_id": domain.id},
        )
        return domain

    async def set_domain_suspension(self, domain_id: int, suspended: bool) -> Domain:
        """
        Suspend an active domain or reinstate a suspended one.

        The mail host stops accepting mail for a suspended domain. Quota
        and mailboxes are kept; no new mailboxes can be created until the
        domain is reinstated. Repeating the current state is a no-op.

        Raises:
            InvalidStateTransitionError: If the domain is neither active nor suspended
            ExternalProvisioningError: If the mail host rejected the change;
                the status is unchanged
        """
        domain = await self.domains.get_by_id_for_update(domain_id)
        if domain is None:
            raise ResourceNotFoundError(message="Domain not found", domain_id=domain_id)

        target = DomainStatus.SUSPENDED if suspended else DomainStatus.ACTIVE
        if domain.status == target:
            return domain
        if domain.status not in (DomainStatus.ACTIVE, DomainStatus.SUSPENDED):
            raise InvalidStateTransitionError(
                message=(
                    f"Domain {domain.domain_name} is {domain.status.value}; only active "
                    "domains can be suspended"
                ),
                domain_id=domain.id,
                status=domain.status.value,
            )

        if domain.mailcow_provisioned:
            await self._provision(
                ProvisioningOperation.SET_DOMAIN_SUSPENSION,
                lambda: self.mailcow.update_domain(
                    domain.domain_name, {"active": 0 if suspended else 1}
                ),
                {Compensation.SKIP_LEDGER_COMMIT: self._skip_ledger_commit},
                domain_id=domain.id,
            )

        domain.status = target
        await self.session.flush()
        logger.info(
            f"Domain {domain.domain_name} {'suspended' if suspended else 'reinstated'}",
            extra={"domain_id": domain.id, "organization_id": domain.organization_id},
        )
        return domain

    async def delete_domain(self, domain_id: int) -> None:
        """
        Remove a domain and its mailboxes from the mail host and release
        every byte they held.

        Mailboxes are deleted first since the mail host refuses to delete a
        non-empty domain.

        Raises:
            ExternalProvisioningError: If the mail host still has the domain
                (or a mailbox) after a failed delete; nothing is released
        """
        domain = await self.get_domain(domain_id)

        for user in await self.users.get_by_domain(domain.id):
            await self._delete_user(user, domain)

        if domain.mailcow_provisioned:

            async def confirm_absent(exc: MailcowError) -> None:
                await self._confirm_absent(
                    self.mailcow.domain_exists, domain.domain_name, domain_id=domain.id
                )

            await self._provision(
                ProvisioningOperation.DELETE_DOMAIN,
                lambda: self.mailcow.delete_domain(domain.domain_name),
                {Compensation.CONFIRM_ABSENT: confirm_absent},
                domain_id=domain.id,
            )

        plan = await self.engine.release_domain(domain)
        await self.domains.delete_instance(domain)
        logger.info(
            f"Domain {domain.domain_name} deleted; released {-plan.delta_bytes} bytes",
            extra={"domain_id": domain_id, "organization_id": domain.organization_id},
        )

    async def _confirm_absent(self, probe, name: str, **context: Any) -> None:
        """
        Let a failed delete continue only if the object is provably gone.

        Raises:
            ExternalProvisioningError: If the object still exists or the probe failed
        """
        try:
            still_present = await probe(name, strict=True)
        except MailcowError as probe_error:
            raise ExternalProvisioningError(
                message=f"Could not confirm deletion of {name}: {probe_error.message}",
                retryable=True,
                **context,
            ) from probe_error

        if still_present:
            raise ExternalProvisioningError(
                message=f"Mail host still has {name}; storage not released",
                retryable=True,
                **context,
            )
        logger.info(f"{name} already absent on mail host; treating delete as done", extra=context)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: int) -> OrganizationUser:
        user = await self.users.get_by_id(user_id)
        if user is None:
            raise ResourceNotFoundError(message="User not found", user_id=user_id)
        return user

    @staticmethod
    def _validate_mailbox_quota(domain: Domain, mailbox_bytes: int) -> int:
        quota_mb = mailbox_bytes // BYTES_PER_MB
        if quota_mb < 1:
            raise ValidationError(message="Mailbox quota must be at least 1 MB")
        if quota_mb > domain.max_quota_per_mailbox_mb:
            raise ValidationError(
                message=(
                    f"Mailbox quota {quota_mb} MB exceeds the domain limit of "
                    f"{domain.max_quota_per_mailbox_mb} MB"
                ),
                quota_mb=quota_mb,
            )
        return quota_mb

    async def create_user(
        self,
        domain_id: int,
        local_part: str,
        display_name: str,
        password: str,
        mailbox_storage_bytes: int,
        drive_storage_bytes: int = 0,
    ) -> OrganizationUser:
        """
        Reserve storage for a user and create the mailbox.

        Raises:
            DomainNotActiveError: If the domain has not passed DNS verification
            ResourceAlreadyExistsError: If the address is taken
            InsufficientCapacityError: If the organization or domain is full
            ExternalProvisioningError: If the mail host failed; nothing is kept
        """
        domain = await self.get_domain(domain_id)
        if domain.status != DomainStatus.ACTIVE:
            raise DomainNotActiveError(
                message=f"Domain {domain.domain_name} is {domain.status.value}; verify DNS first",
                domain_id=domain.id,
                status=domain.status.value,
            )

        local_part = local_part.strip().lower()
        if not LOCAL_PART_PATTERN.match(local_part):
            raise ValidationError(message="Invalid mailbox name", local_part=local_part)
        email = f"{local_part}@{domain.domain_name}"
        if await self.users.get_by_email(email) is not None:
            raise ResourceAlreadyExistsError(message=f"{email} already exists", email=email)

        quota_mb = self._validate_mailbox_quota(domain, mailbox_storage_bytes)

        user = await self.engine.reserve_user(
            domain.organization_id,
            mailbox_storage_bytes,
            drive_storage_bytes,
            domain_id=domain.id,
            email_address=email,
            display_name=display_name,
            status=UserStatus.PENDING,
        )

        async def release(exc: MailcowError) -> None:
            await self.engine.release_user(user)
            await self.users.delete_instance(user)

        await self._provision(
            ProvisioningOperation.CREATE_USER,
            lambda: self.mailcow.create_mailbox(
                local_part=local_part,
                domain_name=domain.domain_name,
                display_name=display_name,
                password=password,
                quota_mb=quota_mb,
            ),
            {Compensation.RELEASE_RESERVATION: release},
            domain_id=domain.id,
            email=email,
        )

        user.status = UserStatus.ACTIVE
        user.provisioned_at = datetime.utcnow()
        await self.session.flush()
        logger.info(f"Mailbox {email} provisioned", extra={"user_id": user.id})
        return user

    async def update_user_quota(
        self,
        user_id: int,
        mailbox_storage_bytes: int,
        drive_storage_bytes: int,
    ) -> OrganizationUser:
        """
        Change a user's allowances: mail host first (mailbox part), then ledger.

        Drive-only changes never call the mail host.

        Raises:
            InsufficientCapacityError: If the organization or domain is full;
                checked with both rows locked, before any external call
        """
        user = await self.get_user(user_id)
        domain = await self.get_domain(user.domain_id)
        await self.engine.plan_user_resize(user, mailbox_storage_bytes, drive_storage_bytes)

        mailbox_delta = mailbox_storage_bytes - user.mailbox_storage_bytes
        if mailbox_delta != 0:
            quota_mb = self._validate_mailbox_quota(domain, mailbox_storage_bytes)
            await self._provision(
                ProvisioningOperation.UPDATE_USER_QUOTA,
                lambda: self.mailcow.update_mailbox(user.email_address, {"quota": quota_mb}),
                {Compensation.SKIP_LEDGER_COMMIT: self._skip_ledger_commit},
                user_id=user.id,
            )

        return await self.engine.resize_user(user, mailbox_storage_bytes, drive_storage_bytes)

    async def set_user_suspension(self, user_id: int, suspended: bool) -> OrganizationUser:
        """
        Disable or re-enable a mailbox. Its storage stays reserved.

        Raises:
            InvalidStateTransitionError: If the mailbox was never provisioned
            ExternalProvisioningError: If the mail host rejected the change
        """
        user = await self.users.get_by_id_for_update(user_id)
        if user is None:
            raise ResourceNotFoundError(message="User not found", user_id=user_id)

        target = UserStatus.SUSPENDED if suspended else UserStatus.ACTIVE
        if user.status == target:
            return user
        if user.status == UserStatus.PENDING:
            raise InvalidStateTransitionError(
                message=f"Mailbox {user.email_address} is not provisioned yet",
                user_id=user.id,
                status=user.status.value,
            )

        await self._provision(
            ProvisioningOperation.SET_USER_SUSPENSION,
            lambda: self.mailcow.update_mailbox(
                user.email_address, {"active": 0 if suspended else 1}
            ),
            {Compensation.SKIP_LEDGER_COMMIT: self._skip_ledger_commit},
            user_id=user.id,
        )

        user.status = target
        await self.session.flush()
        logger.info(
            f"Mailbox {user.email_address} {'suspended' if suspended else 'reinstated'}",
            extra={"user_id": user.id},
        )
        return user

    async def delete_user(self, user_id: int) -> None:
        """
        Delete a mailbox and release its storage.

        Raises:
            ExternalProvisioningError: If the mailbox still exists after a failed delete
        """
        user = await self.get_user(user_id)
        domain = await self.get_domain(user.domain_id)
        await self._delete_user(user, domain)

    async def _delete_user(self, user: OrganizationUser, domain: Domain) -> None:
        email = user.email_address

        async def confirm_absent(exc: MailcowError) -> None:
            await self._confirm_absent(self.mailcow.mailbox_exists, email, user_id=user.id)

        if domain.mailcow_provisioned:
            await self._provision(
                ProvisioningOperation.DELETE_USER,
                lambda: self.mailcow.delete_mailbox(email),
                {Compensation.CONFIRM_ABSENT: confirm_absent},
                user_id=user.id,
            )

        plan = await self.engine.release_user(user)
        await self.users.delete_instance(user)
        logger.info(
            f"Mailbox {email} deleted; released {-plan.delta_bytes} bytes",
            extra={"organization_id": user.organization_id},
        )
