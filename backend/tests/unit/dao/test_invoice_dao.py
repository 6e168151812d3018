"""
Unit tests for invoice and payment transaction data access.

WHY: Settlement idempotency rests on two unique constraints (one payment
per gateway payment id, one payment per invoice); the overdue sweep must
never touch paid or cancelled invoices.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.dao.invoice import InvoiceDAO, PaymentTransactionDAO
from quota_ledger.models.invoice import InvoiceStatus
from quota_ledger.models.payment_transaction import SettlementSource

from tests.factories import InvoiceFactory, PartnerFactory, build_hierarchy


async def _record_payment(session: AsyncSession, invoice, payment_id: str):
    return await PaymentTransactionDAO(session).create(
        invoice_id=invoice.id,
        partner_id=invoice.partner_id,
        gateway_order_id=invoice.gateway_order_id,
        gateway_payment_id=payment_id,
        amount=Decimal("944.00"),
        currency="INR",
        source=SettlementSource.VERIFY.value,
    )


@pytest.mark.asyncio
class TestInvoiceLookup:
    """Reading invoices by gateway order and buyer."""

    async def test_get_by_gateway_order_id(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, partner=partner, gateway_order_id="order_a")

        dao = InvoiceDAO(db_session)
        assert (await dao.get_by_gateway_order_id("order_a")).id == invoice.id
        assert await dao.get_by_gateway_order_id("order_missing") is None

    async def test_get_by_gateway_order_id_for_update_sees_latest_status(
        self, db_session: AsyncSession
    ):
        partner = await PartnerFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, partner=partner)
        invoice.status = InvoiceStatus.PAID
        await db_session.flush()

        locked = await InvoiceDAO(db_session).get_by_gateway_order_id_for_update(
            invoice.gateway_order_id
        )
        assert locked.status == InvoiceStatus.PAID

    async def test_get_for_buyer_filters_and_orders(self, db_session: AsyncSession):
        partner, organization = await build_hierarchy(db_session)
        first = await InvoiceFactory.create(db_session, partner=partner, gateway_order_id="order_1")
        second = await InvoiceFactory.create(
            db_session, partner=partner, gateway_order_id="order_2", status=InvoiceStatus.PAID
        )
        await InvoiceFactory.create(db_session, organization=organization, gateway_order_id="order_3")

        dao = InvoiceDAO(db_session)
        partner_invoices = await dao.get_for_buyer(partner_id=partner.id)
        assert [i.id for i in partner_invoices] == [second.id, first.id]

        paid = await dao.get_for_buyer(partner_id=partner.id, status=InvoiceStatus.PAID)
        assert [i.id for i in paid] == [second.id]

        org_invoices = await dao.get_for_buyer(organization_id=organization.id)
        assert len(org_invoices) == 1
        assert org_invoices[0].organization_id == organization.id

    async def test_count_for_buyer_ignores_paging(self, db_session: AsyncSession):
        partner, organization = await build_hierarchy(db_session)
        await InvoiceFactory.create(db_session, partner=partner, gateway_order_id="order_1")
        await InvoiceFactory.create(
            db_session, partner=partner, gateway_order_id="order_2", status=InvoiceStatus.PAID
        )
        await InvoiceFactory.create(db_session, organization=organization, gateway_order_id="order_3")

        dao = InvoiceDAO(db_session)
        page = await dao.get_for_buyer(partner_id=partner.id, limit=1)

        assert len(page) == 1
        assert await dao.count_for_buyer(partner_id=partner.id) == 2
        assert await dao.count_for_buyer(partner_id=partner.id, status=InvoiceStatus.PAID) == 1
        assert await dao.count_for_buyer(organization_id=organization.id) == 1


@pytest.mark.asyncio
class TestMarkOverdue:
    """The overdue sweep."""

    async def test_only_unpaid_past_due_invoices_move(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session)
        today = date(2026, 3, 15)
        past = today - timedelta(days=1)

        late_draft = await InvoiceFactory.create(
            db_session, partner=partner, gateway_order_id="order_late", due_date=past
        )
        late_paid = await InvoiceFactory.create(
            db_session,
            partner=partner,
            gateway_order_id="order_paid",
            due_date=past,
            status=InvoiceStatus.PAID,
        )
        due_today = await InvoiceFactory.create(
            db_session, partner=partner, gateway_order_id="order_today", due_date=today
        )

        updated = await InvoiceDAO(db_session).mark_overdue(today)
        assert updated == 1

        for invoice in (late_draft, late_paid, due_today):
            await db_session.refresh(invoice)
        assert late_draft.status == InvoiceStatus.OVERDUE
        assert late_paid.status == InvoiceStatus.PAID
        assert due_today.status == InvoiceStatus.DRAFT


@pytest.mark.asyncio
class TestPaymentTransactionConstraints:
    """One captured payment per payment id and per invoice."""

    async def test_lookup_by_payment_and_invoice(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, partner=partner)
        payment = await _record_payment(db_session, invoice, "pay_1")

        dao = PaymentTransactionDAO(db_session)
        assert (await dao.get_by_gateway_payment_id("pay_1")).id == payment.id
        assert (await dao.get_by_invoice_id(invoice.id)).id == payment.id

    async def test_duplicate_payment_id_rejected(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session)
        first = await InvoiceFactory.create(db_session, partner=partner, gateway_order_id="order_a")
        second = await InvoiceFactory.create(db_session, partner=partner, gateway_order_id="order_b")
        await _record_payment(db_session, first, "pay_dup")

        with pytest.raises(IntegrityError):
            async with db_session.begin_nested():
                await _record_payment(db_session, second, "pay_dup")

    async def test_second_payment_for_invoice_rejected(self, db_session: AsyncSession):
        partner = await PartnerFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, partner=partner)
        await _record_payment(db_session, invoice, "pay_1")

        with pytest.raises(IntegrityError):
            async with db_session.begin_nested():
                await _record_payment(db_session, invoice, "pay_2")
