"""
Test factories for creating ledger data and collaborator doubles.

WHY: Most tests need a funded partner and organization. Building them
through the AllocationEngine (rather than inserting rows with hand-written
counters) keeps every fixture hierarchy conserved, so assertions on
``used_storage_bytes`` mean something.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.models.base import BYTES_PER_GB
from quota_ledger.models.domain import Domain, DomainStatus
from quota_ledger.models.invoice import Invoice, InvoiceStatus, InvoiceType
from quota_ledger.models.organization import Organization
from quota_ledger.models.partner import Partner
from quota_ledger.services.allocation_engine import AllocationEngine
from quota_ledger.services.dns_verifier import DnsCheckResult, DnsVerifier, RecordCheck
from quota_ledger.services.mailcow_client import MailcowClient
from quota_ledger.services.razorpay_client import GatewayOrder, GatewayPayment, RazorpayClient

GB = BYTES_PER_GB


class PartnerFactory:
    """Factory for partners with an empty pool of a given size."""

    @staticmethod
    async def create(
        session: AsyncSession,
        name: str = "Acme Hosting",
        allocated_storage_bytes: int = 100 * GB,
        discount_percentage: Decimal = Decimal("20.00"),
        is_active: bool = True,
    ) -> Partner:
        partner = Partner(
            name=name,
            contact_email="billing@acme-hosting.example",
            allocated_storage_bytes=allocated_storage_bytes,
            used_storage_bytes=0,
            discount_percentage=discount_percentage,
            is_active=is_active,
        )
        session.add(partner)
        await session.flush()
        await session.refresh(partner)
        return partner


class OrganizationFactory:
    """Factory for organizations reserved through the allocation engine."""

    @staticmethod
    async def create(
        session: AsyncSession,
        partner: Optional[Partner] = None,
        name: str = "Globex",
        total_storage_bytes: int = 60 * GB,
    ) -> Organization:
        return await AllocationEngine(session).allocate_organization(
            name, total_storage_bytes, partner.id if partner else None
        )


async def build_hierarchy(
    session: AsyncSession,
    partner_bytes: int = 100 * GB,
    organization_bytes: int = 60 * GB,
) -> Tuple[Partner, Organization]:
    """Partner with one organization carved from it."""
    partner = await PartnerFactory.create(session, allocated_storage_bytes=partner_bytes)
    organization = await OrganizationFactory.create(
        session, partner, total_storage_bytes=organization_bytes
    )
    await session.refresh(partner)
    return partner, organization


class DomainFactory:
    """
    Factory for domains reserved against an organization.

    Defaults to an active, provisioned domain ready for mailboxes.
    """

    @staticmethod
    async def create(
        session: AsyncSession,
        organization: Organization,
        domain_name: str = "globex.example",
        quota_bytes: int = 10 * GB,
        status: DomainStatus = DomainStatus.ACTIVE,
        mailcow_provisioned: bool = True,
    ) -> Domain:
        domain = await AllocationEngine(session).reserve_domain(
            organization.id,
            quota_bytes,
            domain_name=domain_name,
            status=status,
            mailcow_provisioned=mailcow_provisioned,
            dns_verified=status == DomainStatus.ACTIVE,
        )
        return domain


class InvoiceFactory:
    """Factory for unpaid invoices linked to a gateway order."""

    @staticmethod
    async def create(
        session: AsyncSession,
        partner: Optional[Partner] = None,
        organization: Optional[Organization] = None,
        gateway_order_id: str = "order_test_1",
        storage_bytes: int = 0,
        total_amount: Decimal = Decimal("944.00"),
        status: InvoiceStatus = InvoiceStatus.DRAFT,
        due_date: Optional[date] = None,
        invoice_number: Optional[str] = None,
    ) -> Invoice:
        invoice = Invoice(
            invoice_number=invoice_number or f"INV-TEST-{gateway_order_id}",
            invoice_type=(
                InvoiceType.PARTNER_STORAGE if partner else InvoiceType.ORGANIZATION_SUBSCRIPTION
            ),
            partner_id=partner.id if partner else None,
            organization_id=organization.id if organization and not partner else None,
            description="Test invoice",
            quantity=1,
            storage_bytes=storage_bytes,
            subtotal=Decimal("800.00"),
            discount_percentage=Decimal("20.00"),
            tax_rate=Decimal("0.18"),
            tax_amount=Decimal("144.00"),
            total_amount=total_amount,
            currency="INR",
            status=status,
            due_date=due_date or date.today() + timedelta(days=7),
            gateway_order_id=gateway_order_id,
        )
        session.add(invoice)
        await session.flush()
        await session.refresh(invoice)
        return invoice


# ============================================================================
# Collaborator doubles
# ============================================================================


def make_mailcow_mock() -> MagicMock:
    """
    Mail host double where every call succeeds and nothing pre-exists.
    """
    mailcow = MagicMock(spec=MailcowClient)
    ok = [{"type": "success", "msg": ["ok"]}]
    mailcow.domain_exists = AsyncMock(return_value=False)
    mailcow.mailbox_exists = AsyncMock(return_value=False)
    mailcow.create_domain = AsyncMock(return_value=ok)
    mailcow.update_domain = AsyncMock(return_value=ok)
    mailcow.delete_domain = AsyncMock(return_value=ok)
    mailcow.create_mailbox = AsyncMock(return_value=ok)
    mailcow.update_mailbox = AsyncMock(return_value=ok)
    mailcow.delete_mailbox = AsyncMock(return_value=ok)
    mailcow.generate_dkim = AsyncMock(return_value=ok)
    mailcow.get_dkim = AsyncMock(return_value=None)
    return mailcow


def make_gateway_mock(
    order_id: str = "order_test_1",
    payment_id: str = "pay_test_1",
    payment_status: str = "captured",
) -> MagicMock:
    """Gateway double that opens ``order_id`` and reports ``payment_id`` against it."""
    gateway = MagicMock(spec=RazorpayClient)
    gateway.key_id = "rzp_test_key"
    gateway.create_order = AsyncMock(
        return_value=GatewayOrder(
            id=order_id, amount=94400, currency="INR", receipt=None, status="created"
        )
    )
    gateway.get_payment = AsyncMock(
        return_value=GatewayPayment(
            id=payment_id,
            order_id=order_id,
            amount=94400,
            currency="INR",
            status=payment_status,
            method="upi",
        )
    )
    return gateway


def dns_result(
    mx: bool = True, spf: bool = True, dkim: bool = True, dmarc: bool = True
) -> DnsCheckResult:
    return DnsCheckResult(
        mx=RecordCheck(verified=mx),
        spf=RecordCheck(verified=spf),
        dkim=RecordCheck(verified=dkim),
        dmarc=RecordCheck(verified=dmarc),
    )


def make_dns_verifier_mock(result: Optional[DnsCheckResult] = None) -> MagicMock:
    verifier = MagicMock(spec=DnsVerifier)
    verifier.verify_all = AsyncMock(return_value=result or dns_result())
    return verifier
