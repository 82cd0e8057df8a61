"""
Invoice Data Access Object (DAO).

WHAT: Database operations for invoices and invoice number allocation.

WHY: Centralizes invoice queries:
1. Gap-free invoice number allocation per calendar year
2. Filtering invoices by subscription and status
3. Conditional status transitions for concurrent callers
4. Finding invoices whose due date has passed

HOW: Extends BaseDAO. Number allocation increments the InvoiceSequence
row with UPDATE ... RETURNING inside the caller's transaction. The row is
locked until commit, so concurrent creators serialize on it and a rolled
back creation also rolls back its number.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.base import BaseDAO
from billing_engine.models.invoice import Invoice, InvoiceSequence, InvoiceStatus


class InvoiceDAO(BaseDAO[Invoice]):
    """
    Data Access Object for Invoice model.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize InvoiceDAO.

        Args:
            session: Async database session
        """
        super().__init__(Invoice, session)

    async def allocate_sequence_number(self, year: int) -> int:
        """
        Allocate the next invoice sequence number for a year.

        WHAT: Atomically increments the year's counter and returns the new value.

        WHY: MAX()+1 style numbering lets two creators read the same maximum.
        The counter row update takes a row lock, so the second creator waits
        for the first transaction and then sees its increment.

        HOW:
        1. UPDATE ... SET last_value = last_value + 1 RETURNING last_value
        2. No row yet: INSERT the row with 1 inside a savepoint
        3. Lost the INSERT race: the row now exists, repeat step 1

        Args:
            year: Calendar year of the invoice

        Returns:
            Sequence number (starts at 1 each year)
        """
        value = await self._increment_sequence(year)
        if value is not None:
            return value

        try:
            async with self.session.begin_nested():
                self.session.add(InvoiceSequence(year=year, last_value=1))
            return 1
        except IntegrityError:
            # Another creator inserted the row first
            value = await self._increment_sequence(year)
            if value is None:
                raise
            return value

    async def _increment_sequence(self, year: int) -> Optional[int]:
        result = await self.session.execute(
            update(InvoiceSequence)
            .where(InvoiceSequence.year == year)
            .values(last_value=InvoiceSequence.last_value + 1)
            .returning(InvoiceSequence.last_value)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def get_by_invoice_number(self, invoice_number: str) -> Optional[Invoice]:
        """
        Get invoice by its unique invoice number.

        Args:
            invoice_number: Invoice number (e.g., INV-2025-000001)

        Returns:
            Invoice if found, None otherwise
        """
        result = await self.session.execute(
            select(Invoice).where(Invoice.invoice_number == invoice_number)
        )
        return result.scalar_one_or_none()

    async def list_invoices(
        self,
        subscription_id: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Invoice]:
        """
        List invoices, newest first.

        Args:
            subscription_id: Only invoices of this subscription
            status: Only invoices in this status
            skip: Pagination offset
            limit: Pagination limit

        Returns:
            Matching invoices
        """
        query = select(Invoice)
        if subscription_id is not None:
            query = query.where(Invoice.subscription_id == subscription_id)
        if status is not None:
            query = query.where(Invoice.status == status)

        result = await self.session.execute(
            query.order_by(Invoice.created_at.desc(), Invoice.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_invoices(
        self,
        subscription_id: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
    ) -> int:
        """Count invoices matching the same filters as list_invoices."""
        return await self.count(subscription_id=subscription_id, status=status)

    async def get_past_due(self, now: datetime, limit: int = 500) -> List[Invoice]:
        """
        Get sent invoices whose due date has passed.

        WHY: Drives the time-based SENT -> OVERDUE transition.

        Args:
            now: Reference time
            limit: Maximum invoices to return

        Returns:
            Invoices to mark overdue, oldest due date first
        """
        result = await self.session.execute(
            select(Invoice)
            .where(
                Invoice.status == InvoiceStatus.SENT,
                Invoice.due_date < now,
            )
            .order_by(Invoice.due_date.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def transition_status(
        self,
        invoice_id: int,
        from_statuses: tuple,
        to_status: InvoiceStatus,
        **values,
    ) -> bool:
        """
        Move an invoice to `to_status` only if it is currently in `from_statuses`.

        WHY: Two payment confirmations for the same invoice (e.g. a webhook
        and a dunning retry) must not both "win". Only the caller whose
        UPDATE matched a row performs the follow-up side effects.

        Returns:
            True if this call performed the transition
        """
        return await self.update_if(
            invoice_id,
            {"status": tuple(from_statuses)},
            status=to_status,
            **values,
        )
