"""
Unit tests for DunningEvent DAO.

WHAT: Tests for the dunning queue queries and conditional transitions.

WHY: The dunning chain must never fork (one pending event per
subscription) and a pre-empted event must never be processed.
"""

import pytest
from datetime import datetime, timedelta
from sqlalchemy.exc import IntegrityError

from billing_engine.dao.dunning_event import DunningEventDAO
from billing_engine.models.dunning_event import (
    DunningEvent,
    DunningEventStatus,
    DunningEventType,
)
from tests.factories import DunningEventFactory, InvoiceFactory, SubscriptionFactory

NOW = datetime(2025, 1, 15, 12, 0)


class TestPendingQueue:
    """Tests for due lookup and the single pending event rule."""

    @pytest.mark.asyncio
    async def test_get_due_ids(self, db_session):
        due = await DunningEventFactory.create(
            db_session, await SubscriptionFactory.create(db_session), NOW - timedelta(minutes=5)
        )
        await DunningEventFactory.create(
            db_session, await SubscriptionFactory.create(db_session), NOW + timedelta(days=2)
        )
        await DunningEventFactory.create(
            db_session,
            await SubscriptionFactory.create(db_session),
            NOW - timedelta(days=1),
            status=DunningEventStatus.SENT,
        )

        assert await DunningEventDAO(db_session).get_due_ids(NOW) == [due.id]

    @pytest.mark.asyncio
    async def test_second_pending_event_rejected(self, db_session):
        """
        Test the partial unique index on pending events.

        WHY: Two pending events for one subscription would be two
        concurrent dunning chains.
        """
        subscription = await SubscriptionFactory.create(db_session)
        await DunningEventFactory.create(db_session, subscription, NOW)

        db_session.add(
            DunningEvent(
                subscription_id=subscription.id,
                type=DunningEventType.PAYMENT_RETRY,
                status=DunningEventStatus.PENDING,
                attempt=2,
                scheduled_for=NOW + timedelta(days=2),
                metadata_={},
            )
        )
        with pytest.raises(IntegrityError):
            await db_session.flush()

    @pytest.mark.asyncio
    async def test_sent_events_do_not_block_successor(self, db_session):
        subscription = await SubscriptionFactory.create(db_session)
        await DunningEventFactory.create(
            db_session, subscription, NOW, status=DunningEventStatus.SENT
        )
        successor = await DunningEventFactory.create(
            db_session,
            subscription,
            NOW + timedelta(days=2),
            event_type=DunningEventType.PAYMENT_RETRY,
            attempt=2,
        )

        pending = await DunningEventDAO(db_session).get_pending_for_subscription(subscription.id)

        assert pending.id == successor.id


class TestMarkSent:
    """Tests for the pending -> sent finalisation."""

    @pytest.mark.asyncio
    async def test_mark_sent_once(self, db_session):
        subscription = await SubscriptionFactory.create(db_session)
        dunning_event = await DunningEventFactory.create(db_session, subscription, NOW)
        dao = DunningEventDAO(db_session)

        assert await dao.mark_sent(dunning_event.id, NOW) is True
        assert await dao.mark_sent(dunning_event.id, NOW) is False

        await db_session.refresh(dunning_event)
        assert dunning_event.status == DunningEventStatus.SENT
        assert dunning_event.sent_at == NOW

    @pytest.mark.asyncio
    async def test_resolved_event_is_not_sent(self, db_session):
        """A pre-empted (resolved) event reports False."""
        subscription = await SubscriptionFactory.create(db_session)
        dunning_event = await DunningEventFactory.create(
            db_session, subscription, NOW, status=DunningEventStatus.RESOLVED
        )

        assert await DunningEventDAO(db_session).mark_sent(dunning_event.id, NOW) is False


class TestChainState:
    """Tests for open-chain detection and resolution."""

    @pytest.mark.asyncio
    async def test_has_unresolved(self, db_session):
        subscription = await SubscriptionFactory.create(db_session)
        dao = DunningEventDAO(db_session)

        assert await dao.has_unresolved(subscription.id) is False

        await DunningEventFactory.create(
            db_session, subscription, NOW, status=DunningEventStatus.FAILED
        )

        assert await dao.has_unresolved(subscription.id) is True

    @pytest.mark.asyncio
    async def test_resolve_for_subscription(self, db_session):
        """Only events in the given statuses of that subscription are resolved."""
        subscription = await SubscriptionFactory.create(db_session)
        other = await SubscriptionFactory.create(db_session)
        sent = await DunningEventFactory.create(
            db_session, subscription, NOW, status=DunningEventStatus.SENT
        )
        failed = await DunningEventFactory.create(
            db_session, subscription, NOW, status=DunningEventStatus.FAILED
        )
        pending = await DunningEventFactory.create(db_session, subscription, NOW)
        other_sent = await DunningEventFactory.create(
            db_session, other, NOW, status=DunningEventStatus.SENT
        )
        dao = DunningEventDAO(db_session)

        resolved = await dao.resolve_for_subscription(
            subscription.id, (DunningEventStatus.SENT, DunningEventStatus.FAILED), NOW
        )

        assert resolved == 2
        for dunning_event in (sent, failed, pending, other_sent):
            await db_session.refresh(dunning_event)
        assert sent.status == DunningEventStatus.RESOLVED
        assert sent.resolved_at == NOW
        assert failed.status == DunningEventStatus.RESOLVED
        assert pending.status == DunningEventStatus.PENDING
        assert other_sent.status == DunningEventStatus.SENT

    @pytest.mark.asyncio
    async def test_latest_invoice_id_of_open_chain(self, db_session):
        subscription = await SubscriptionFactory.create(db_session)
        old_invoice = await InvoiceFactory.create(db_session, subscription)
        invoice = await InvoiceFactory.create(db_session, subscription)
        await DunningEventFactory.create(
            db_session, subscription, NOW, status=DunningEventStatus.RESOLVED, invoice=old_invoice
        )
        await DunningEventFactory.create(
            db_session, subscription, NOW, status=DunningEventStatus.SENT, invoice=invoice
        )

        assert await DunningEventDAO(db_session).get_latest_invoice_id(subscription.id) == invoice.id
