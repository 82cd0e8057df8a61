"""
Unit tests for Invoice DAO.

WHAT: Tests for InvoiceDAO database operations.

WHY: Verifies that:
1. Invoice numbers are allocated from a gap-free per-year sequence
2. Conditional status transitions only win once
3. Query methods filter, order and paginate correctly
4. Past-due lookup only returns sent invoices

HOW: Uses pytest-asyncio with a per-test SQLite database.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from billing_engine.dao.invoice import InvoiceDAO
from billing_engine.models.invoice import Invoice, InvoiceSequence, InvoiceStatus
from tests.factories import InvoiceFactory, SubscriptionFactory


class TestInvoiceSequence:
    """Tests for invoice number allocation."""

    @pytest.mark.asyncio
    async def test_first_number_of_year_is_one(self, db_session):
        """The first allocation of a year creates the counter row."""
        dao = InvoiceDAO(db_session)

        assert await dao.allocate_sequence_number(2025) == 1

        row = await db_session.get(InvoiceSequence, 2025)
        assert row.last_value == 1

    @pytest.mark.asyncio
    async def test_numbers_increase_without_gaps(self, db_session):
        """Consecutive allocations return consecutive numbers."""
        dao = InvoiceDAO(db_session)

        numbers = [await dao.allocate_sequence_number(2025) for _ in range(5)]

        assert numbers == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_each_year_has_its_own_sequence(self, db_session):
        """
        Test that a new year restarts at 1.

        WHY: Invoice numbers are INV-YYYY-NNNNNN, numbered within the year.
        """
        dao = InvoiceDAO(db_session)

        await dao.allocate_sequence_number(2024)
        await dao.allocate_sequence_number(2024)

        assert await dao.allocate_sequence_number(2025) == 1
        assert await dao.allocate_sequence_number(2024) == 3

    @pytest.mark.asyncio
    async def test_rolled_back_allocation_is_reused(self, session_factory):
        """
        Test that a rolled back invoice does not burn its number.

        WHY: The counter increments in the invoice's transaction, so a
        failed creation leaves no gap.
        """
        async with session_factory() as session:
            dao = InvoiceDAO(session)
            assert await dao.allocate_sequence_number(2025) == 1
            await session.commit()

        async with session_factory() as session:
            assert await InvoiceDAO(session).allocate_sequence_number(2025) == 2
            await session.rollback()

        async with session_factory() as session:
            assert await InvoiceDAO(session).allocate_sequence_number(2025) == 2

    def test_format_invoice_number(self):
        """Numbers are zero padded to six digits."""
        assert Invoice.format_invoice_number(2025, 42) == "INV-2025-000042"


class TestInvoiceTransitions:
    """Tests for conditional status transitions."""

    @pytest.mark.asyncio
    async def test_transition_from_allowed_status(self, db_session):
        """Test a transition whose precondition holds."""
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.SENT)
        dao = InvoiceDAO(db_session)

        moved = await dao.transition_status(
            invoice.id,
            (InvoiceStatus.SENT, InvoiceStatus.OVERDUE),
            InvoiceStatus.PAID,
            payment_reference="pi_123",
        )

        assert moved is True
        await db_session.refresh(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.payment_reference == "pi_123"

    @pytest.mark.asyncio
    async def test_second_transition_loses(self, db_session):
        """
        Test that only one of two competing transitions wins.

        WHY: A webhook and a dunning retry can confirm the same payment.
        """
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.SENT)
        dao = InvoiceDAO(db_session)

        first = await dao.transition_status(invoice.id, (InvoiceStatus.SENT,), InvoiceStatus.PAID)
        second = await dao.transition_status(invoice.id, (InvoiceStatus.SENT,), InvoiceStatus.PAID)

        assert first is True
        assert second is False

    @pytest.mark.asyncio
    async def test_transition_missing_invoice(self, db_session):
        """A missing invoice never matches."""
        dao = InvoiceDAO(db_session)

        assert await dao.transition_status(999, (InvoiceStatus.DRAFT,), InvoiceStatus.SENT) is False


class TestInvoiceQueries:
    """Tests for invoice listing and lookups."""

    @pytest.mark.asyncio
    async def test_get_by_invoice_number(self, db_session):
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, subscription)

        found = await InvoiceDAO(db_session).get_by_invoice_number(invoice.invoice_number)

        assert found.id == invoice.id

    @pytest.mark.asyncio
    async def test_list_filters_by_subscription_and_status(self, db_session):
        """Test filtering and newest-first ordering."""
        first = await SubscriptionFactory.create(db_session)
        second = await SubscriptionFactory.create(db_session)
        older = await InvoiceFactory.create(
            db_session, first, created_at=datetime(2025, 1, 1, 9, 0)
        )
        newer = await InvoiceFactory.create(
            db_session, first, created_at=datetime(2025, 1, 2, 9, 0)
        )
        await InvoiceFactory.create(db_session, first, status=InvoiceStatus.PAID)
        await InvoiceFactory.create(db_session, second)
        dao = InvoiceDAO(db_session)

        drafts = await dao.list_invoices(subscription_id=first.id, status=InvoiceStatus.DRAFT)

        assert [i.id for i in drafts] == [newer.id, older.id]
        assert await dao.count_invoices(subscription_id=first.id) == 3
        assert await dao.count_invoices(status=InvoiceStatus.DRAFT) == 3

    @pytest.mark.asyncio
    async def test_list_paginates(self, db_session):
        subscription = await SubscriptionFactory.create(db_session)
        for day in range(1, 6):
            await InvoiceFactory.create(
                db_session, subscription, created_at=datetime(2025, 1, day, 9, 0)
            )

        page = await InvoiceDAO(db_session).list_invoices(skip=1, limit=2)

        assert [i.created_at.day for i in page] == [4, 3]

    @pytest.mark.asyncio
    async def test_get_past_due_only_returns_sent(self, db_session):
        """
        Test the overdue candidate query.

        WHY: Drafts are not yet owed, and paid or cancelled invoices are closed.
        """
        subscription = await SubscriptionFactory.create(db_session)
        now = datetime(2025, 2, 1, 12, 0)
        past = now - timedelta(days=1)

        sent_past_due = await InvoiceFactory.create(
            db_session, subscription, status=InvoiceStatus.SENT, due_date=past
        )
        await InvoiceFactory.create(
            db_session, subscription, status=InvoiceStatus.SENT, due_date=now + timedelta(days=1)
        )
        await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.DRAFT, due_date=past)
        await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.PAID, due_date=past)

        result = await InvoiceDAO(db_session).get_past_due(now)

        assert [i.id for i in result] == [sent_past_due.id]

    @pytest.mark.asyncio
    async def test_amounts_round_trip_as_decimal(self, db_session):
        """Money columns come back as Decimal, never float."""
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(
            db_session, subscription, amount=Decimal("19.99"), tax_amount=Decimal("1.60")
        )
        db_session.expire_all()

        loaded = await InvoiceDAO(db_session).get_by_id(invoice.id)

        assert isinstance(loaded.total_amount, Decimal)
        assert loaded.total_amount == Decimal("21.59")
