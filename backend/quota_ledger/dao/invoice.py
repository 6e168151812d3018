"""
Invoice and payment transaction data access.

WHY: Settlement reads invoices by gateway order id (both the verify path
and the webhook carry it) and payment transactions by gateway payment id
(the idempotency key).
"""

from datetime import date
from typing import List, Optional

from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.dao.base import BaseDAO
from quota_ledger.models.invoice import Invoice, InvoiceStatus
from quota_ledger.models.payment_transaction import PaymentTransaction


class InvoiceDAO(BaseDAO[Invoice]):
    """Data access for invoices."""

    def __init__(self, session: AsyncSession):
        super().__init__(Invoice, session)

    async def get_by_gateway_order_id(self, order_id: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(Invoice.gateway_order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def get_by_gateway_order_id_for_update(self, order_id: str) -> Optional[Invoice]:
        """
        Load and lock an invoice by gateway order id.

        ``populate_existing`` makes a second settlement attempt in the same
        session see the status written by the first.
        """
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.gateway_order_id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _filter_buyer(
        query: Select,
        partner_id: Optional[int],
        organization_id: Optional[int],
        status: Optional[InvoiceStatus],
    ) -> Select:
        if partner_id is not None:
            query = query.where(Invoice.partner_id == partner_id)
        if organization_id is not None:
            query = query.where(Invoice.organization_id == organization_id)
        if status is not None:
            query = query.where(Invoice.status == status)
        return query

    async def get_for_buyer(
        self,
        partner_id: Optional[int] = None,
        organization_id: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Invoice]:
        """
        List invoices billed to a partner or an organization, newest first.
        """
        query = self._filter_buyer(select(Invoice), partner_id, organization_id, status)
        query = query.order_by(Invoice.id.desc()).offset(skip).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_for_buyer(
        self,
        partner_id: Optional[int] = None,
        organization_id: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
    ) -> int:
        """Count the invoices ``get_for_buyer`` would page through."""
        query = self._filter_buyer(
            select(func.count()).select_from(Invoice), partner_id, organization_id, status
        )
        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def mark_overdue(self, today: date) -> int:
        """
        Move draft/sent invoices past their due date to OVERDUE.

        Returns:
            Number of invoices updated
        """
        result = await self.session.execute(
            update(Invoice)
            .where(Invoice.status.in_([InvoiceStatus.DRAFT, InvoiceStatus.SENT]))
            .where(Invoice.due_date < today)
            .values(status=InvoiceStatus.OVERDUE)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class PaymentTransactionDAO(BaseDAO[PaymentTransaction]):
    """Data access for captured payments."""

    def __init__(self, session: AsyncSession):
        super().__init__(PaymentTransaction, session)

    async def get_by_gateway_payment_id(self, payment_id: str) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction).where(PaymentTransaction.gateway_payment_id == payment_id)
        )
        return result.scalar_one_or_none()

    async def get_by_invoice_id(self, invoice_id: int) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction).where(PaymentTransaction.invoice_id == invoice_id)
        )
        return result.scalar_one_or_none()
