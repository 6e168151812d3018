"""
Allocation engine for the storage hierarchy.

WHAT: Moves storage bytes between Partner → Organization → Domain/User pools.

WHY: Every byte a child holds must be accounted for in exactly one parent
pool. Centralizing the arithmetic (planning functions) and the writes
(AllocationEngine) in one module means no route or service updates a
counter on its own, so conservation holds after every operation.

HOW:
1. ``plan_reserve`` / ``plan_release`` / ``plan_resize`` are pure functions
   over snapshots. They validate and compute the new counter values.
2. ``AllocationEngine`` locks the parent row (SELECT ... FOR UPDATE), plans
   against the locked snapshot, then applies the delta through LedgerDAO's
   conditional UPDATE and writes the child allocation in the same
   transaction. Locks are always taken parent before child.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.core.exceptions import (
    BusinessRuleViolation,
    InactiveAccountError,
    InsufficientCapacityError,
    QuotaBelowUsageError,
    ResourceNotFoundError,
    ValidationError,
)
from quota_ledger.dao.domain import DomainDAO
from quota_ledger.dao.ledger import LedgerDAO, PoolTier
from quota_ledger.dao.organization import OrganizationDAO
from quota_ledger.dao.organization_user import OrganizationUserDAO
from quota_ledger.dao.partner import PartnerDAO
from quota_ledger.models.domain import Domain
from quota_ledger.models.organization import Organization
from quota_ledger.models.organization_user import OrganizationUser
from quota_ledger.models.partner import Partner

logger = logging.getLogger(__name__)


# ============================================================================
# Snapshots and plans
# ============================================================================


@dataclass(frozen=True)
class PoolSnapshot:
    """Parent pool counters as read under lock."""

    allocated_bytes: int
    used_bytes: int

    @property
    def available_bytes(self) -> int:
        return self.allocated_bytes - self.used_bytes


@dataclass(frozen=True)
class ChildSnapshot:
    """
    Child allocation as seen by its parent.

    ``used_bytes`` is what the child's own children consume; the child
    cannot shrink below it.
    """

    allocated_bytes: int = 0
    used_bytes: int = 0


@dataclass(frozen=True)
class AllocationPlan:
    """
    Result of planning a ledger change.

    ``delta_bytes`` is signed: positive reserves from the parent,
    negative returns bytes to it.
    """

    delta_bytes: int
    parent_used_bytes: int
    child_allocated_bytes: int


def plan_reserve(parent: PoolSnapshot, child: ChildSnapshot, delta_bytes: int) -> AllocationPlan:
    """
    Plan reserving ``delta_bytes`` from ``parent`` on behalf of ``child``.

    Raises:
        ValidationError: If delta_bytes is negative
        InsufficientCapacityError: If delta_bytes exceeds the parent's available bytes
    """
    if delta_bytes < 0:
        raise ValidationError(message="Reservation size cannot be negative", delta_bytes=delta_bytes)

    if delta_bytes > parent.available_bytes:
        raise InsufficientCapacityError(
            message=(
                f"Requested {delta_bytes} bytes but only "
                f"{max(parent.available_bytes, 0)} bytes are available"
            ),
            requested_bytes=delta_bytes,
            available_bytes=max(parent.available_bytes, 0),
        )

    return AllocationPlan(
        delta_bytes=delta_bytes,
        parent_used_bytes=parent.used_bytes + delta_bytes,
        child_allocated_bytes=child.allocated_bytes + delta_bytes,
    )


def plan_release(parent: PoolSnapshot, child: ChildSnapshot) -> AllocationPlan:
    """
    Plan returning everything ``child`` holds to ``parent``.

    The parent's used counter is floored at 0 so a ledger that drifted
    (e.g. rows edited by hand) never goes negative.
    """
    released = child.allocated_bytes
    return AllocationPlan(
        delta_bytes=-released,
        parent_used_bytes=max(0, parent.used_bytes - released),
        child_allocated_bytes=0,
    )


def plan_resize(parent: PoolSnapshot, child: ChildSnapshot, new_bytes: int) -> AllocationPlan:
    """
    Plan changing ``child`` to ``new_bytes``.

    Growing reserves the difference (capacity re-checked); shrinking returns
    it, but never below what the child's own children consume.

    Raises:
        ValidationError: If new_bytes is negative
        QuotaBelowUsageError: If new_bytes < child.used_bytes
        InsufficientCapacityError: If growth exceeds the parent's available bytes
    """
    if new_bytes < 0:
        raise ValidationError(message="Quota cannot be negative", new_bytes=new_bytes)

    if new_bytes < child.used_bytes:
        raise QuotaBelowUsageError(
            message=(
                f"Cannot reduce quota to {new_bytes} bytes; "
                f"{child.used_bytes} bytes are already allocated below it"
            ),
            requested_bytes=new_bytes,
            used_bytes=child.used_bytes,
        )

    diff = new_bytes - child.allocated_bytes
    if diff > 0:
        return plan_reserve(parent, child, diff)

    return AllocationPlan(
        delta_bytes=diff,
        parent_used_bytes=max(0, parent.used_bytes + diff),
        child_allocated_bytes=new_bytes,
    )


def partner_snapshot(partner: Partner) -> PoolSnapshot:
    return PoolSnapshot(partner.allocated_storage_bytes, partner.used_storage_bytes)


def organization_snapshot(organization: Organization) -> PoolSnapshot:
    return PoolSnapshot(organization.total_storage_bytes, organization.used_storage_bytes)


# ============================================================================
# Transactional engine
# ============================================================================


class AllocationEngine:
    """
    Sole write path for storage counters.

    WHAT: Creates, resizes and releases pool allocations at every tier.

    WHY: Each operation plans against a locked parent row and then applies
    the delta with a conditional UPDATE, so concurrent requests against the
    same parent serialize and cannot over-commit. Parent and child change in
    the same transaction: if anything fails, the request's rollback undoes
    both.

    HOW: Methods flush but never commit; the caller's unit of work
    (``get_db`` or an explicit session) decides when to commit.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = LedgerDAO(session)
        self.partners = PartnerDAO(session)
        self.organizations = OrganizationDAO(session)
        self.domains = DomainDAO(session)
        self.users = OrganizationUserDAO(session)

    # ------------------------------------------------------------------
    # Locking helpers (parent before child)
    # ------------------------------------------------------------------

    async def lock_partner(self, partner_id: int) -> Partner:
        partner = await self.partners.get_by_id_for_update(partner_id)
        if partner is None:
            raise ResourceNotFoundError(message="Partner not found", partner_id=partner_id)
        return partner

    async def lock_organization(self, organization_id: int) -> Organization:
        organization = await self.organizations.get_by_id_for_update(organization_id)
        if organization is None:
            raise ResourceNotFoundError(
                message="Organization not found", organization_id=organization_id
            )
        return organization

    async def _lock_organization_chain(self, organization_id: int) -> tuple[Optional[Partner], Organization]:
        """
        Lock an organization's partner (if any), then the organization.

        ``partner_id`` never changes after creation, so reading it without a
        lock to decide which partner row to lock first is safe.
        """
        organization = await self.organizations.get_by_id(organization_id)
        if organization is None:
            raise ResourceNotFoundError(
                message="Organization not found", organization_id=organization_id
            )

        partner = None
        if organization.partner_id is not None:
            partner = await self.lock_partner(organization.partner_id)
        organization = await self.lock_organization(organization_id)
        return partner, organization

    async def _apply(self, tier: PoolTier, pool, plan: AllocationPlan) -> None:
        """
        Apply a plan's delta to the parent pool with a conditional UPDATE.

        Raises:
            InsufficientCapacityError: If the pool no longer has room
        """
        if plan.delta_bytes > 0:
            applied = await self.ledger.consume(tier, pool.id, plan.delta_bytes)
            if not applied:
                # Only reachable if the row changed after the planning read.
                raise InsufficientCapacityError(
                    message="Storage pool changed concurrently; not enough capacity remains",
                    requested_bytes=plan.delta_bytes,
                    pool=tier.value,
                    pool_id=pool.id,
                )
        elif plan.delta_bytes < 0:
            await self.ledger.give_back(tier, pool.id, -plan.delta_bytes)

        await self.ledger.refresh(pool)

    @staticmethod
    def _ensure_active(account, label: str) -> None:
        if not account.is_active:
            raise InactiveAccountError(
                message=f"{label} is suspended and cannot allocate storage",
                account_id=account.id,
            )

    # ------------------------------------------------------------------
    # Partner pool
    # ------------------------------------------------------------------

    async def resize_partner_pool(self, partner_id: int, new_allocated_bytes: int) -> Partner:
        """
        Set a partner's purchased pool (administrative grant or correction).

        Raises:
            QuotaBelowUsageError: If organizations already hold more than the new size
        """
        partner = await self.lock_partner(partner_id)
        if new_allocated_bytes < 0:
            raise ValidationError(message="Pool size cannot be negative")
        if new_allocated_bytes < partner.used_storage_bytes:
            raise QuotaBelowUsageError(
                message=(
                    f"Cannot reduce partner pool to {new_allocated_bytes} bytes; "
                    f"{partner.used_storage_bytes} bytes are assigned to organizations"
                ),
                requested_bytes=new_allocated_bytes,
                used_bytes=partner.used_storage_bytes,
            )

        if not await self.ledger.set_capacity(PoolTier.PARTNER, partner.id, new_allocated_bytes):
            raise QuotaBelowUsageError(partner_id=partner.id)
        await self.ledger.refresh(partner)

        logger.info(
            f"Partner {partner.id} pool set to {new_allocated_bytes} bytes",
            extra={"partner_id": partner.id, "allocated_bytes": new_allocated_bytes},
        )
        return partner

    async def top_up_partner_pool(self, partner_id: int, extra_bytes: int) -> Partner:
        """
        Grow a partner's pool after a paid storage purchase.
        """
        if extra_bytes <= 0:
            raise ValidationError(message="Top-up must be positive", extra_bytes=extra_bytes)

        partner = await self.lock_partner(partner_id)
        await self.ledger.add_capacity(PoolTier.PARTNER, partner.id, extra_bytes)
        await self.ledger.refresh(partner)

        logger.info(
            f"Partner {partner.id} pool topped up by {extra_bytes} bytes",
            extra={
                "partner_id": partner.id,
                "extra_bytes": extra_bytes,
                "allocated_bytes": partner.allocated_storage_bytes,
            },
        )
        return partner

    # ------------------------------------------------------------------
    # Organization tier
    # ------------------------------------------------------------------

    async def allocate_organization(
        self,
        name: str,
        total_storage_bytes: int,
        partner_id: Optional[int] = None,
    ) -> Organization:
        """
        Create an organization with its pool.

        Partner-managed organizations reserve their pool from the partner;
        retail organizations (no partner) own it outright.

        Raises:
            InsufficientCapacityError: If the partner cannot cover the pool
        """
        if total_storage_bytes < 0:
            raise ValidationError(message="Storage cannot be negative")

        if partner_id is None:
            organization = await self.organizations.create(
                name=name,
                partner_id=None,
                is_retail=True,
                total_storage_bytes=total_storage_bytes,
                used_storage_bytes=0,
            )
            logger.info(
                f"Retail organization {organization.id} created with {total_storage_bytes} bytes",
                extra={"organization_id": organization.id},
            )
            return organization

        partner = await self.lock_partner(partner_id)
        self._ensure_active(partner, "Partner")

        plan = plan_reserve(partner_snapshot(partner), ChildSnapshot(), total_storage_bytes)
        await self._apply(PoolTier.PARTNER, partner, plan)

        organization = await self.organizations.create(
            name=name,
            partner_id=partner.id,
            is_retail=False,
            total_storage_bytes=plan.child_allocated_bytes,
            used_storage_bytes=0,
        )

        logger.info(
            f"Organization {organization.id} reserved {total_storage_bytes} bytes "
            f"from partner {partner.id}",
            extra={
                "partner_id": partner.id,
                "organization_id": organization.id,
                "partner_used_bytes": partner.used_storage_bytes,
            },
        )
        return organization

    async def resize_organization(self, organization_id: int, new_total_bytes: int) -> Organization:
        """
        Resize an organization's pool.

        Raises:
            InsufficientCapacityError: If growth exceeds the partner's available bytes
            QuotaBelowUsageError: If domains and users already hold more than the new size
        """
        partner, organization = await self._lock_organization_chain(organization_id)
        child = ChildSnapshot(organization.total_storage_bytes, organization.used_storage_bytes)

        if partner is not None:
            plan = plan_resize(partner_snapshot(partner), child, new_total_bytes)
            await self._apply(PoolTier.PARTNER, partner, plan)
        else:
            # Retail pools have no parent; only the shrink floor applies.
            plan = plan_resize(PoolSnapshot(new_total_bytes, 0), child, new_total_bytes)

        if not await self.ledger.set_capacity(
            PoolTier.ORGANIZATION, organization.id, plan.child_allocated_bytes
        ):
            raise QuotaBelowUsageError(organization_id=organization.id)
        await self.ledger.refresh(organization)

        logger.info(
            f"Organization {organization.id} resized to {new_total_bytes} bytes",
            extra={
                "organization_id": organization.id,
                "delta_bytes": plan.delta_bytes,
                "partner_id": organization.partner_id,
            },
        )
        return organization

    async def release_organization(self, organization_id: int) -> Organization:
        """
        Return an organization's whole pool to its partner.

        The organization must already be empty (its domains and users
        released); afterwards it is eligible for deletion.

        Raises:
            BusinessRuleViolation: If the organization still holds allocations
        """
        partner, organization = await self._lock_organization_chain(organization_id)
        if organization.used_storage_bytes > 0:
            raise BusinessRuleViolation(
                message="Organization still has domains or users holding storage",
                organization_id=organization.id,
                used_bytes=organization.used_storage_bytes,
            )

        if partner is not None:
            plan = plan_release(
                partner_snapshot(partner), ChildSnapshot(organization.total_storage_bytes)
            )
            await self._apply(PoolTier.PARTNER, partner, plan)

        await self.ledger.set_capacity(PoolTier.ORGANIZATION, organization.id, 0)
        await self.ledger.refresh(organization)
        return organization

    # ------------------------------------------------------------------
    # Domain tier
    # ------------------------------------------------------------------

    async def reserve_domain(
        self,
        organization_id: int,
        quota_bytes: int,
        **domain_fields: Any,
    ) -> Domain:
        """
        Create a domain row holding ``quota_bytes`` of the organization pool.

        Raises:
            InsufficientCapacityError: If the organization cannot cover the quota
        """
        organization = await self.lock_organization(organization_id)
        self._ensure_active(organization, "Organization")

        plan = plan_reserve(organization_snapshot(organization), ChildSnapshot(), quota_bytes)
        await self._apply(PoolTier.ORGANIZATION, organization, plan)

        domain = await self.domains.create(
            organization_id=organization.id,
            domain_quota_bytes=plan.child_allocated_bytes,
            **domain_fields,
        )
        logger.info(
            f"Domain {domain.domain_name} reserved {quota_bytes} bytes",
            extra={"organization_id": organization.id, "domain_id": domain.id},
        )
        return domain

    async def plan_domain_resize(self, domain: Domain, new_quota_bytes: int) -> AllocationPlan:
        """
        Lock the organization and domain and validate a domain resize
        without applying it.

        WHY: Quota updates must reach the mail host before the ledger
        changes; planning first means capacity errors surface before any
        external call.
        """
        organization = await self.lock_organization(domain.organization_id)
        locked = await self.domains.get_by_id_for_update(domain.id)
        mailbox_floor = await self.users.sum_mailbox_bytes_for_domain(locked.id)
        return plan_resize(
            organization_snapshot(organization),
            ChildSnapshot(locked.domain_quota_bytes, mailbox_floor),
            new_quota_bytes,
        )

    async def resize_domain(self, domain: Domain, new_quota_bytes: int) -> Domain:
        """
        Resize a domain's quota against its organization.

        Raises:
            InsufficientCapacityError: If growth exceeds the organization's available bytes
            QuotaBelowUsageError: If mailboxes on the domain exceed the new quota
        """
        plan = await self.plan_domain_resize(domain, new_quota_bytes)
        organization = await self.lock_organization(domain.organization_id)
        await self._apply(PoolTier.ORGANIZATION, organization, plan)

        domain.domain_quota_bytes = plan.child_allocated_bytes
        await self.session.flush()

        logger.info(
            f"Domain {domain.domain_name} resized to {new_quota_bytes} bytes",
            extra={"domain_id": domain.id, "delta_bytes": plan.delta_bytes},
        )
        return domain

    async def release_domain(self, domain: Domain) -> AllocationPlan:
        """
        Return a domain's quota to its organization; the row is then eligible for deletion.
        """
        organization = await self.lock_organization(domain.organization_id)
        locked = await self.domains.get_by_id_for_update(domain.id)
        plan = plan_release(
            organization_snapshot(organization), ChildSnapshot(locked.domain_quota_bytes)
        )
        await self._apply(PoolTier.ORGANIZATION, organization, plan)

        locked.domain_quota_bytes = plan.child_allocated_bytes
        await self.session.flush()
        return plan

    # ------------------------------------------------------------------
    # User tier
    # ------------------------------------------------------------------

    async def _lock_domain(self, domain_id: int) -> Domain:
        domain = await self.domains.get_by_id_for_update(domain_id)
        if domain is None:
            raise ResourceNotFoundError(message="Domain not found", domain_id=domain_id)
        return domain

    async def _check_domain_headroom(self, domain: Domain, mailbox_delta_bytes: int) -> None:
        """
        Check that a domain's mailboxes still fit after growing by ``mailbox_delta_bytes``.

        Callers hold the organization and domain locks, so two mailboxes
        competing for the same domain quota serialize and the second sees
        the first's bytes.

        Raises:
            InsufficientCapacityError: If the domain's mailbox quotas would
                exceed ``domain_quota_bytes``
        """
        if mailbox_delta_bytes <= 0:
            return

        used = await self.users.sum_mailbox_bytes_for_domain(domain.id)
        available = max(domain.domain_quota_bytes - used, 0)
        if mailbox_delta_bytes > available:
            raise InsufficientCapacityError(
                message=(
                    f"Domain {domain.domain_name} has {available} bytes of mailbox "
                    f"quota left; {mailbox_delta_bytes} requested"
                ),
                requested_bytes=mailbox_delta_bytes,
                available_bytes=available,
                pool="domain",
                pool_id=domain.id,
            )

    async def reserve_user(
        self,
        organization_id: int,
        mailbox_storage_bytes: int,
        drive_storage_bytes: int,
        *,
        domain_id: int,
        **user_fields: Any,
    ) -> OrganizationUser:
        """
        Create a user row holding mailbox + drive bytes of the organization pool.

        The mailbox part must also fit in the domain's quota; the check
        runs with the organization and domain rows locked.
        """
        if mailbox_storage_bytes < 0 or drive_storage_bytes < 0:
            raise ValidationError(message="Storage cannot be negative")

        organization = await self.lock_organization(organization_id)
        self._ensure_active(organization, "Organization")
        domain = await self._lock_domain(domain_id)
        await self._check_domain_headroom(domain, mailbox_storage_bytes)

        plan = plan_reserve(
            organization_snapshot(organization),
            ChildSnapshot(),
            mailbox_storage_bytes + drive_storage_bytes,
        )
        await self._apply(PoolTier.ORGANIZATION, organization, plan)

        user = await self.users.create(
            organization_id=organization.id,
            domain_id=domain_id,
            mailbox_storage_bytes=mailbox_storage_bytes,
            drive_storage_bytes=drive_storage_bytes,
            **user_fields,
        )
        logger.info(
            f"User {user.email_address} reserved {plan.delta_bytes} bytes",
            extra={"organization_id": organization.id, "user_id": user.id},
        )
        return user

    async def plan_user_resize(
        self,
        user: OrganizationUser,
        mailbox_storage_bytes: int,
        drive_storage_bytes: int,
    ) -> AllocationPlan:
        """Lock organization, domain and user, then validate a resize without applying it."""
        if mailbox_storage_bytes < 0 or drive_storage_bytes < 0:
            raise ValidationError(message="Storage cannot be negative")

        organization = await self.lock_organization(user.organization_id)
        # domain_id never changes after creation.
        domain = await self._lock_domain(user.domain_id)
        locked = await self.users.get_by_id_for_update(user.id)
        await self._check_domain_headroom(
            domain, mailbox_storage_bytes - locked.mailbox_storage_bytes
        )
        return plan_resize(
            organization_snapshot(organization),
            ChildSnapshot(locked.total_storage_bytes),
            mailbox_storage_bytes + drive_storage_bytes,
        )

    async def resize_user(
        self,
        user: OrganizationUser,
        mailbox_storage_bytes: int,
        drive_storage_bytes: int,
    ) -> OrganizationUser:
        """
        Resize a user's mailbox and drive allowances against the organization.
        """
        plan = await self.plan_user_resize(user, mailbox_storage_bytes, drive_storage_bytes)
        organization = await self.lock_organization(user.organization_id)
        await self._apply(PoolTier.ORGANIZATION, organization, plan)

        user.mailbox_storage_bytes = mailbox_storage_bytes
        user.drive_storage_bytes = drive_storage_bytes
        await self.session.flush()
        return user

    async def release_user(self, user: OrganizationUser) -> AllocationPlan:
        """
        Return a user's bytes to the organization; the row is then eligible for deletion.
        """
        organization = await self.lock_organization(user.organization_id)
        locked = await self.users.get_by_id_for_update(user.id)
        plan = plan_release(
            organization_snapshot(organization), ChildSnapshot(locked.total_storage_bytes)
        )
        await self._apply(PoolTier.ORGANIZATION, organization, plan)

        locked.mailbox_storage_bytes = 0
        locked.drive_storage_bytes = 0
        await self.session.flush()
        return plan
