"""
Unit tests for the dunning state machine.

WHAT: Each dunning step, the full retry/suspension chain, pre-emption,
manual reactivation and requeueing.

WHY: Dunning decides when a subscriber is charged again and when they
lose access. The backoff (2, 4, 6 days), the suspension after the third
failed retry and the single open chain per subscription are all
business-critical.

HOW: DunningManager over the per-test database with the fake gateway,
the mock email provider and a frozen clock.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from billing_engine.core.exceptions import (
    InvalidStateTransitionError,
    ResourceAlreadyExistsError,
)
from billing_engine.dao.billing_schedule import BillingScheduleDAO
from billing_engine.dao.dunning_event import DunningEventDAO
from billing_engine.models.billing_schedule import BillingScheduleStatus
from billing_engine.models.dunning_event import (
    DunningEvent,
    DunningEventStatus,
    DunningEventType,
)
from billing_engine.models.invoice import Invoice, InvoiceStatus
from billing_engine.models.subscription import Subscription, SubscriptionStatus
from billing_engine.services.batch import ItemOutcome
from billing_engine.services.dunning_service import DunningManager, DunningService
from billing_engine.services.email import EmailType, MockEmailProvider
from tests.factories import (
    BillingScheduleFactory,
    DunningEventFactory,
    InvoiceFactory,
    SubscriptionFactory,
)
from tests.fakes import DECLINE, REQUIRES_ACTION


@pytest.fixture
def manager(session_factory, payment_router, notification_service, clock):
    return DunningManager(
        session_factory,
        router=payment_router,
        notification_service=notification_service,
        now=clock,
        concurrency=1,
    )


@pytest.fixture
def dunning_service(db_session, payment_router, notification_service, clock):
    return DunningService(
        db_session,
        router=payment_router,
        notification_service=notification_service,
        now=clock,
    )


async def pending_event(session_factory, subscription_id):
    async with session_factory() as session:
        return await DunningEventDAO(session).get_pending_for_subscription(subscription_id)


async def load(session_factory, model, row_id):
    async with session_factory() as session:
        return await session.get(model, row_id)


class TestPaymentFailed:
    """Tests for the PAYMENT_FAILED step."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempt,delay_days", [(1, 2), (2, 4), (3, 6)])
    async def test_schedules_retry_with_backoff(
        self, db_session, session_factory, manager, clock, attempt, delay_days
    ):
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.SENT)
        failed = await DunningEventFactory.create(
            db_session, subscription, clock(), attempt=attempt, invoice=invoice
        )

        result = await manager.process_dunning_events()

        assert result.succeeded == 1
        assert (await load(session_factory, DunningEvent, failed.id)).status == DunningEventStatus.SENT
        retry = await pending_event(session_factory, subscription.id)
        assert retry.type == DunningEventType.PAYMENT_RETRY
        assert retry.attempt == attempt + 1
        assert retry.scheduled_for == clock() + timedelta(days=delay_days)
        assert retry.invoice_id == invoice.id

        message = MockEmailProvider.sent_emails[0]
        assert message.email_type == EmailType.PAYMENT_FAILED
        assert "108.00 USD" in message.html_content

    @pytest.mark.asyncio
    async def test_exhausted_retries_schedule_suspension(self, db_session, session_factory, manager, clock):
        subscription = await SubscriptionFactory.create(db_session)
        await DunningEventFactory.create(db_session, subscription, clock(), attempt=4)

        await manager.process_dunning_events()

        suspension = await pending_event(session_factory, subscription.id)
        assert suspension.type == DunningEventType.ACCOUNT_SUSPENDED
        assert suspension.attempt == 4
        assert suspension.scheduled_for == clock() + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_future_event_not_processed(self, db_session, manager, clock):
        subscription = await SubscriptionFactory.create(db_session)
        await DunningEventFactory.create(db_session, subscription, clock() + timedelta(seconds=1))

        result = await manager.process_dunning_events()

        assert result.processed == 0


class TestPaymentRetry:
    """Tests for the PAYMENT_RETRY step."""

    @pytest.mark.asyncio
    async def test_successful_retry_reactivates(
        self, db_session, session_factory, manager, fake_gateway, clock
    ):
        """
        Test recovery.

        WHY: A collected retry pays the invoice, reactivates the
        subscription and rolls billing forward.
        """
        subscription = await SubscriptionFactory.create(db_session, status=SubscriptionStatus.PAST_DUE)
        invoice = await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.OVERDUE)
        schedule = await BillingScheduleFactory.create(
            db_session, subscription, clock() - timedelta(days=2), status=BillingScheduleStatus.FAILED,
            retry_count=1,
        )
        await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.PAYMENT_RETRY,
            attempt=2, invoice=invoice,
        )

        await manager.process_dunning_events()

        assert fake_gateway.requests[0].amount == Decimal("108.00")
        assert fake_gateway.requests[0].metadata["retry_attempt"] == 2
        paid = await load(session_factory, Invoice, invoice.id)
        assert paid.status == InvoiceStatus.PAID
        assert paid.payment_reference == "stripe_txn_1"
        assert (await load(session_factory, Subscription, subscription.id)).status == SubscriptionStatus.ACTIVE

        reactivation = await pending_event(session_factory, subscription.id)
        assert reactivation.type == DunningEventType.ACCOUNT_REACTIVATED
        assert reactivation.scheduled_for == clock()

        async with session_factory() as session:
            dao = BillingScheduleDAO(session)
            successor = await dao.get_active_for_subscription(subscription.id)
            assert successor.next_billing_date == schedule.next_billing_date.replace(month=2)
            assert (await dao.get_by_id(schedule.id)).status == BillingScheduleStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_retry_loops_back(self, db_session, session_factory, manager, fake_gateway, clock):
        fake_gateway.script(DECLINE)
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.SENT)
        await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.PAYMENT_RETRY,
            attempt=3, invoice=invoice,
        )

        result = await manager.process_dunning_events()

        assert result.succeeded == 1
        failed = await pending_event(session_factory, subscription.id)
        assert failed.type == DunningEventType.PAYMENT_FAILED
        assert failed.attempt == 3
        assert failed.scheduled_for == clock()

    @pytest.mark.asyncio
    async def test_pending_checkout_is_not_a_recovery(
        self, db_session, session_factory, manager, fake_gateway, clock
    ):
        """
        Test a retry answered with a hosted payment page.

        WHY: Nothing was collected, so the invoice stays open and the
        subscription stays past due until the provider webhook arrives.
        """
        fake_gateway.script(REQUIRES_ACTION)
        subscription = await SubscriptionFactory.create(
            db_session, status=SubscriptionStatus.PAST_DUE, payment_method_id=None
        )
        invoice = await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.SENT)
        await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.PAYMENT_RETRY,
            attempt=2, invoice=invoice,
        )

        await manager.process_dunning_events()

        assert len(fake_gateway.requests) == 1
        failed = await pending_event(session_factory, subscription.id)
        assert failed.type == DunningEventType.PAYMENT_FAILED
        assert failed.attempt == 2
        async with session_factory() as session:
            assert (await session.get(Invoice, invoice.id)).status == InvoiceStatus.SENT
            stored = await session.get(Subscription, subscription.id)
            assert stored.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_invoice_paid_meanwhile_counts_as_success(
        self, db_session, session_factory, manager, fake_gateway, clock
    ):
        """A webhook paid the invoice before the retry; no second charge."""
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.PAID)
        await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.PAYMENT_RETRY,
            attempt=2, invoice=invoice,
        )

        await manager.process_dunning_events()

        assert fake_gateway.requests == []
        reactivation = await pending_event(session_factory, subscription.id)
        assert reactivation.type == DunningEventType.ACCOUNT_REACTIVATED

    @pytest.mark.asyncio
    async def test_cancelled_invoice_fails_event(self, db_session, session_factory, manager, fake_gateway, clock):
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, subscription, status=InvoiceStatus.CANCELLED)
        retry = await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.PAYMENT_RETRY,
            attempt=2, invoice=invoice,
        )

        result = await manager.process_dunning_events()

        assert result.failed == 1
        assert fake_gateway.requests == []
        assert (await load(session_factory, DunningEvent, retry.id)).status == DunningEventStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_without_invoice_charges_plan_amount(self, db_session, manager, fake_gateway, clock):
        subscription = await SubscriptionFactory.create(db_session, amount=Decimal("49.99"))
        await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.PAYMENT_RETRY, attempt=2,
        )

        await manager.process_dunning_events()

        assert fake_gateway.requests[0].amount == Decimal("49.99")


class TestSuspensionAndReactivation:
    """Tests for the terminal steps."""

    @pytest.mark.asyncio
    async def test_suspension(self, db_session, session_factory, manager, clock):
        subscription = await SubscriptionFactory.create(db_session)
        await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.ACCOUNT_SUSPENDED, attempt=4
        )

        await manager.process_dunning_events()

        assert (await load(session_factory, Subscription, subscription.id)).status == SubscriptionStatus.PAST_DUE
        assert MockEmailProvider.sent_emails[0].email_type == EmailType.ACCOUNT_SUSPENDED
        assert await pending_event(session_factory, subscription.id) is None

    @pytest.mark.asyncio
    async def test_reactivation_closes_chain(self, db_session, session_factory, manager, clock):
        subscription = await SubscriptionFactory.create(db_session, status=SubscriptionStatus.PAST_DUE)
        await DunningEventFactory.create(
            db_session, subscription, clock() - timedelta(days=2), status=DunningEventStatus.SENT
        )
        await DunningEventFactory.create(
            db_session, subscription, clock() - timedelta(days=1), status=DunningEventStatus.FAILED
        )
        await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.ACCOUNT_REACTIVATED
        )

        await manager.process_dunning_events()

        async with session_factory() as session:
            dao = DunningEventDAO(session)
            assert await dao.has_unresolved(subscription.id) is False
            assert (await session.get(Subscription, subscription.id)).status == SubscriptionStatus.ACTIVE
        assert MockEmailProvider.sent_emails[0].email_type == EmailType.ACCOUNT_REACTIVATED


class TestFullChain:
    """Walk a subscription through every retry to suspension."""

    @pytest.mark.asyncio
    async def test_three_retries_then_suspension(
        self, db_session, session_factory, manager, fake_gateway, clock
    ):
        fake_gateway.default = DECLINE
        subscription = await SubscriptionFactory.create(db_session)
        await DunningEventFactory.create(db_session, subscription, clock())
        start = clock()
        steps = []

        for _ in range(20):
            result = await manager.process_dunning_events()
            if result.processed:
                continue
            upcoming = await pending_event(session_factory, subscription.id)
            if upcoming is None:
                break
            steps.append((upcoming.type, upcoming.attempt, upcoming.scheduled_for - start))
            clock.current = upcoming.scheduled_for

        retry, failed, suspended = (
            DunningEventType.PAYMENT_RETRY,
            DunningEventType.PAYMENT_FAILED,
            DunningEventType.ACCOUNT_SUSPENDED,
        )
        assert steps == [
            (retry, 2, timedelta(days=2)),
            (retry, 3, timedelta(days=6)),
            (retry, 4, timedelta(days=12)),
            (suspended, 4, timedelta(days=19)),
        ]
        assert len(fake_gateway.requests) == 3
        assert (await load(session_factory, Subscription, subscription.id)).status == SubscriptionStatus.PAST_DUE

        async with session_factory() as session:
            events = await DunningEventDAO(session).list_events(subscription_id=subscription.id)
        assert [(e.type, e.attempt) for e in events] == [
            (failed, 1), (retry, 2), (failed, 2), (retry, 3),
            (failed, 3), (retry, 4), (failed, 4), (suspended, 4),
        ]


class TestManualOperations:
    """Tests for start_dunning, reactivate_subscription and requeue."""

    @pytest.mark.asyncio
    async def test_start_dunning_once(self, db_session, dunning_service, clock):
        subscription = await SubscriptionFactory.create(db_session)

        first = await dunning_service.start_dunning(subscription.id)
        second = await dunning_service.start_dunning(subscription.id)

        assert first.type == DunningEventType.PAYMENT_FAILED
        assert first.scheduled_for == clock()
        assert second is None

    @pytest.mark.asyncio
    async def test_reactivation_pre_empts_pending_step(self, db_session, dunning_service, clock):
        """
        Test pre-emption.

        WHY: Once the subscriber has paid out of band, the queued retry
        must never charge them again.
        """
        subscription = await SubscriptionFactory.create(db_session)
        invoice = await InvoiceFactory.create(db_session, subscription)
        retry = await DunningEventFactory.create(
            db_session, subscription, clock(), event_type=DunningEventType.PAYMENT_RETRY,
            attempt=3, invoice=invoice,
        )

        reactivation = await dunning_service.reactivate_subscription(subscription.id, reason="paid by wire")

        assert reactivation.type == DunningEventType.ACCOUNT_REACTIVATED
        assert reactivation.attempt == 3
        assert reactivation.invoice_id == invoice.id
        assert reactivation.metadata_ == {"manual": True, "reason": "paid by wire"}
        await db_session.refresh(retry)
        assert retry.status == DunningEventStatus.RESOLVED
        assert await dunning_service.process_event(retry.id) == ItemOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_reactivation_resumes_billing(self, db_session, dunning_service, clock):
        subscription = await SubscriptionFactory.create(db_session)
        await BillingScheduleFactory.create(
            db_session, subscription, clock() - timedelta(days=3), status=BillingScheduleStatus.FAILED
        )

        await dunning_service.reactivate_subscription(subscription.id)

        active = await BillingScheduleDAO(db_session).get_active_for_subscription(subscription.id)
        assert active is not None

    @pytest.mark.asyncio
    async def test_requeue_failed_event(self, db_session, dunning_service, clock):
        subscription = await SubscriptionFactory.create(db_session)
        failed = await DunningEventFactory.create(
            db_session, subscription, clock() - timedelta(days=1), status=DunningEventStatus.FAILED
        )

        requeued = await dunning_service.requeue_failed_event(failed.id)

        assert requeued.status == DunningEventStatus.PENDING
        assert requeued.scheduled_for == clock()

    @pytest.mark.asyncio
    async def test_requeue_rejects_non_failed(self, db_session, dunning_service, clock):
        subscription = await SubscriptionFactory.create(db_session)
        sent = await DunningEventFactory.create(
            db_session, subscription, clock(), status=DunningEventStatus.SENT
        )

        with pytest.raises(InvalidStateTransitionError):
            await dunning_service.requeue_failed_event(sent.id)

    @pytest.mark.asyncio
    async def test_requeue_conflicts_with_pending(self, db_session, dunning_service, clock):
        subscription = await SubscriptionFactory.create(db_session)
        failed = await DunningEventFactory.create(
            db_session, subscription, clock() - timedelta(days=1), status=DunningEventStatus.FAILED
        )
        await DunningEventFactory.create(db_session, subscription, clock())

        with pytest.raises(ResourceAlreadyExistsError):
            await dunning_service.requeue_failed_event(failed.id)
