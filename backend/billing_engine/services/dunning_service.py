"""
Dunning service and batch manager.

WHAT: The payment-recovery state machine that runs after a failed charge.

WHY: A failed renewal should not cut the subscriber off immediately.
Dunning gives them time to fix their payment method:
1. PAYMENT_FAILED: notify, then schedule a retry with growing backoff
   (2, 4, 6 days) or, once retries are exhausted, a suspension
2. PAYMENT_RETRY: charge again; success reactivates, failure loops back
3. ACCOUNT_SUSPENDED: subscription goes past_due
4. ACCOUNT_REACTIVATED: subscription active again, chain closed

HOW: Each step is a DunningEvent row. Processing an event first moves it
pending -> sent with a conditional UPDATE (this both claims it and
detects pre-emption), then performs the step and queues the successor.
The partial unique index allows one pending event per subscription, so
a chain can never fork.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.core.config import settings
from billing_engine.core.exceptions import (
    DunningEventNotFoundError,
    InvalidStateTransitionError,
    ResourceAlreadyExistsError,
)
from billing_engine.dao.dunning_event import DunningEventDAO
from billing_engine.dao.invoice import InvoiceDAO
from billing_engine.models.base import normalize_metadata, utcnow
from billing_engine.models.dunning_event import (
    DunningEvent,
    DunningEventStatus,
    DunningEventType,
)
from billing_engine.models.invoice import InvoiceStatus
from billing_engine.models.subscription import Subscription, SubscriptionStatus
from billing_engine.services.batch import BatchResult, ItemOutcome, run_isolated
from billing_engine.services.invoice_service import (
    InvoiceService,
    build_invoice_payment_request,
)
from billing_engine.services.notification_service import (
    NotificationService,
    Recipient,
    get_notification_service,
)
from billing_engine.services.payment_gateways import (
    PaymentRequest,
    PaymentRouter,
    get_payment_router,
)
from billing_engine.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class DunningService:
    """
    Dunning Manager operations on one database session.
    """

    def __init__(
        self,
        db: AsyncSession,
        router: Optional[PaymentRouter] = None,
        notification_service: Optional[NotificationService] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.dao = DunningEventDAO(db)
        self.invoice_dao = InvoiceDAO(db)
        self.router = router or get_payment_router()
        self.notifications = notification_service or get_notification_service()
        self.subscriptions = SubscriptionService(db)
        self.invoices = InvoiceService(db, notification_service=self.notifications, now=now)
        self.now = now

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_event(self, event_id: int) -> DunningEvent:
        """
        Load a dunning event.

        Raises:
            DunningEventNotFoundError: If it does not exist
        """
        event = await self.dao.get_by_id(event_id)
        if event is None:
            raise DunningEventNotFoundError(
                message=f"Dunning event {event_id} not found",
                event_id=event_id,
            )
        return event

    async def list_events(
        self,
        subscription_id: Optional[int] = None,
        status: Optional[DunningEventStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[DunningEvent]:
        return await self.dao.list_events(subscription_id, status, skip, limit)

    # ========================================================================
    # Chain management
    # ========================================================================

    async def _schedule(
        self,
        subscription_id: int,
        event_type: DunningEventType,
        attempt: int,
        scheduled_for: datetime,
        invoice_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DunningEvent:
        event = await self.dao.create(
            subscription_id=subscription_id,
            invoice_id=invoice_id,
            type=event_type,
            status=DunningEventStatus.PENDING,
            attempt=attempt,
            scheduled_for=scheduled_for,
            metadata_=normalize_metadata(metadata),
        )
        logger.info(
            f"Scheduled {event_type.value} for subscription {subscription_id}",
            extra={
                "event_id": event.id,
                "subscription_id": subscription_id,
                "attempt": attempt,
                "scheduled_for": scheduled_for.isoformat(),
            },
        )
        return event

    async def start_dunning(
        self,
        subscription_id: int,
        invoice_id: Optional[int] = None,
    ) -> Optional[DunningEvent]:
        """
        Open a dunning chain with an immediate PAYMENT_FAILED event.

        Returns:
            The first event, or None if the subscription already has an
            open chain
        """
        if await self.dao.has_unresolved(subscription_id):
            logger.info(
                f"Subscription {subscription_id} already in dunning",
                extra={"subscription_id": subscription_id, "invoice_id": invoice_id},
            )
            return None

        try:
            async with self.db.begin_nested():
                return await self._schedule(
                    subscription_id,
                    DunningEventType.PAYMENT_FAILED,
                    attempt=1,
                    scheduled_for=self.now(),
                    invoice_id=invoice_id,
                )
        except IntegrityError:
            # Another writer opened the chain first
            return None

    async def reactivate_subscription(
        self,
        subscription_id: int,
        reason: Optional[str] = None,
    ) -> DunningEvent:
        """
        Reactivate a subscription out of band (e.g. payment received offline).

        The pending step of the chain is resolved before its time and an
        immediate ACCOUNT_REACTIVATED event takes its place. Billing is
        resumed from the last failed schedule.

        Raises:
            SubscriptionNotFoundError: Unknown subscription
        """
        await self.subscriptions.get_subscription(subscription_id)
        now = self.now()

        invoice_id = await self.dao.get_latest_invoice_id(subscription_id)
        pending = await self.dao.get_pending_for_subscription(subscription_id)
        if pending is not None:
            await self.dao.update_if(
                pending.id,
                {"status": DunningEventStatus.PENDING},
                status=DunningEventStatus.RESOLVED,
                resolved_at=now,
            )

        event = await self._schedule(
            subscription_id,
            DunningEventType.ACCOUNT_REACTIVATED,
            attempt=pending.attempt if pending is not None else 1,
            scheduled_for=now,
            invoice_id=invoice_id,
            metadata={"manual": True, "reason": reason},
        )
        await self._resume_billing(subscription_id)
        return event

    async def requeue_failed_event(self, event_id: int) -> DunningEvent:
        """
        Put a FAILED event back in the queue, due immediately.

        Raises:
            DunningEventNotFoundError: Unknown event
            InvalidStateTransitionError: Event is not FAILED
            ResourceAlreadyExistsError: Subscription already has a pending event
        """
        event = await self.get_event(event_id)
        if event.status != DunningEventStatus.FAILED:
            raise InvalidStateTransitionError(
                message=f"Only failed dunning events can be requeued (status: {event.status.value})",
                event_id=event_id,
            )

        conflict = ResourceAlreadyExistsError(
            message=f"Subscription {event.subscription_id} already has a pending dunning event",
            subscription_id=event.subscription_id,
        )
        if await self.dao.get_pending_for_subscription(event.subscription_id) is not None:
            raise conflict

        try:
            async with self.db.begin_nested():
                requeued = await self.dao.update_if(
                    event_id,
                    {"status": DunningEventStatus.FAILED},
                    status=DunningEventStatus.PENDING,
                    scheduled_for=self.now(),
                )
        except IntegrityError:
            raise conflict

        if not requeued:
            raise InvalidStateTransitionError(
                message="Dunning event changed status while being requeued",
                event_id=event_id,
            )
        await self.db.refresh(event)
        return event

    # ========================================================================
    # Processing
    # ========================================================================

    async def process_event(self, event_id: int) -> ItemOutcome:
        """
        Process one due dunning event.

        Returns:
            SKIPPED if the event is missing, not due, or was pre-empted;
            SUCCEEDED once the step has been carried out
        """
        now = self.now()
        event = await self.dao.get_by_id(event_id)
        if event is None or not event.is_due(now):
            return ItemOutcome.SKIPPED

        if not await self.dao.mark_sent(event_id, now):
            logger.info(
                f"Dunning event {event_id} pre-empted",
                extra={"event_id": event_id, "subscription_id": event.subscription_id},
            )
            return ItemOutcome.SKIPPED

        subscription = await self.subscriptions.get_subscription(event.subscription_id)
        handlers = {
            DunningEventType.PAYMENT_FAILED: self._handle_payment_failed,
            DunningEventType.PAYMENT_RETRY: self._handle_payment_retry,
            DunningEventType.ACCOUNT_SUSPENDED: self._handle_account_suspended,
            DunningEventType.ACCOUNT_REACTIVATED: self._handle_account_reactivated,
        }
        await handlers[event.type](event, subscription)
        return ItemOutcome.SUCCEEDED

    async def mark_failed(self, event_id: int) -> bool:
        """Mark a pending event failed after an unexpected error."""
        return await self.dao.update_if(
            event_id,
            {"status": DunningEventStatus.PENDING},
            status=DunningEventStatus.FAILED,
        )

    async def _handle_payment_failed(self, event: DunningEvent, subscription: Subscription) -> None:
        now = self.now()
        amount, currency = subscription.amount, subscription.currency
        if event.invoice_id is not None:
            invoice = await self.invoice_dao.get_by_id(event.invoice_id)
            if invoice is not None:
                amount, currency = invoice.total_amount, invoice.currency

        if event.attempt <= settings.DUNNING_MAX_RETRY_ATTEMPTS:
            retry_at = now + timedelta(days=event.attempt * settings.DUNNING_RETRY_INTERVAL_DAYS)
            await self.notifications.send_payment_failed_notice(
                Recipient.from_subscription(subscription),
                attempt=event.attempt,
                amount=amount,
                currency=currency,
                next_retry_at=retry_at,
            )
            await self._schedule(
                subscription.id,
                DunningEventType.PAYMENT_RETRY,
                attempt=event.attempt + 1,
                scheduled_for=retry_at,
                invoice_id=event.invoice_id,
            )
            return

        await self.notifications.send_payment_failed_notice(
            Recipient.from_subscription(subscription),
            attempt=event.attempt,
            amount=amount,
            currency=currency,
        )
        await self._schedule(
            subscription.id,
            DunningEventType.ACCOUNT_SUSPENDED,
            attempt=event.attempt,
            scheduled_for=now + timedelta(days=settings.DUNNING_SUSPENSION_DELAY_DAYS),
            invoice_id=event.invoice_id,
        )

    async def _handle_payment_retry(self, event: DunningEvent, subscription: Subscription) -> None:
        invoice = None
        if event.invoice_id is not None:
            invoice = await self.invoice_dao.get_by_id(event.invoice_id)

        if invoice is not None and invoice.status == InvoiceStatus.CANCELLED:
            raise InvalidStateTransitionError(
                message=f"Cannot retry payment for cancelled invoice {invoice.invoice_number}",
                invoice_id=invoice.id,
            )

        if invoice is not None and invoice.status == InvoiceStatus.PAID:
            # Paid out of band (webhook or manual) since the chain started
            succeeded = True
        else:
            if invoice is not None:
                request = build_invoice_payment_request(
                    invoice, subscription, retry_attempt=event.attempt
                )
            else:
                request = PaymentRequest(
                    amount=subscription.amount,
                    currency=subscription.currency,
                    payment_method=subscription.payment_method or settings.DEFAULT_PAYMENT_METHOD,
                    description=f"Retry payment for subscription {subscription.id}",
                    metadata={"subscription_id": subscription.id, "retry_attempt": event.attempt},
                    customer_id=subscription.payment_customer_id,
                    payment_method_id=subscription.payment_method_id,
                )

            response = await self.router.process_payment(request, subscription.preferred_gateway)
            succeeded = response.collected
            if succeeded and invoice is not None:
                await self.invoices.mark_invoice_as_paid(
                    invoice.id,
                    response.transaction_id or f"{response.gateway}:{invoice.invoice_number}",
                )
            if not succeeded:
                logger.warning(
                    f"Dunning retry {event.attempt} failed for subscription {subscription.id}",
                    extra={
                        "event_id": event.id,
                        "subscription_id": subscription.id,
                        "error_code": response.error_code,
                        "requires_action": response.requires_action,
                    },
                )

        if not succeeded:
            await self._schedule(
                subscription.id,
                DunningEventType.PAYMENT_FAILED,
                attempt=event.attempt,
                scheduled_for=self.now(),
                invoice_id=event.invoice_id,
            )
            return

        await self.subscriptions.set_subscription_status(subscription.id, SubscriptionStatus.ACTIVE)
        await self._resume_billing(subscription.id)
        await self._schedule(
            subscription.id,
            DunningEventType.ACCOUNT_REACTIVATED,
            attempt=event.attempt,
            scheduled_for=self.now(),
            invoice_id=event.invoice_id,
        )

    async def _handle_account_suspended(self, event: DunningEvent, subscription: Subscription) -> None:
        await self.subscriptions.set_subscription_status(subscription.id, SubscriptionStatus.PAST_DUE)
        await self.notifications.send_account_suspended_notice(Recipient.from_subscription(subscription))

    async def _handle_account_reactivated(self, event: DunningEvent, subscription: Subscription) -> None:
        await self.subscriptions.set_subscription_status(subscription.id, SubscriptionStatus.ACTIVE)
        await self.notifications.send_account_reactivated_notice(Recipient.from_subscription(subscription))

        resolved = await self.dao.resolve_for_subscription(
            subscription.id,
            (DunningEventStatus.SENT, DunningEventStatus.FAILED),
            self.now(),
        )
        logger.info(
            f"Dunning chain closed for subscription {subscription.id}",
            extra={"subscription_id": subscription.id, "resolved_events": resolved},
        )

    async def _resume_billing(self, subscription_id: int) -> None:
        # billing_schedule_service imports this module
        from billing_engine.services.billing_schedule_service import BillingScheduleService

        billing = BillingScheduleService(
            self.db,
            router=self.router,
            notification_service=self.notifications,
            now=self.now,
        )
        await billing.resume_after_recovery(subscription_id)


class DunningManager:
    """
    Batch driver for due dunning events.

    Example:
        manager = DunningManager(get_session_factory())
        result = await manager.process_dunning_events()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: Optional[PaymentRouter] = None,
        notification_service: Optional[NotificationService] = None,
        now: Callable[[], datetime] = utcnow,
        concurrency: Optional[int] = None,
        batch_size: int = 500,
    ):
        self.session_factory = session_factory
        self.router = router
        self.notification_service = notification_service
        self.now = now
        self.concurrency = concurrency or settings.BILLING_BATCH_CONCURRENCY
        self.batch_size = batch_size

    def _service(self, session: AsyncSession) -> DunningService:
        return DunningService(
            session,
            router=self.router,
            notification_service=self.notification_service,
            now=self.now,
        )

    async def process_dunning_events(self) -> BatchResult:
        """
        Process every due pending dunning event.

        Returns:
            BatchResult counters for the run
        """
        async with self.session_factory() as session:
            event_ids = await DunningEventDAO(session).get_due_ids(self.now(), self.batch_size)

        if not event_ids:
            return BatchResult()

        logger.info(f"Processing {len(event_ids)} due dunning events")
        result = await run_isolated(event_ids, self._process_one, self.concurrency)
        logger.info(
            f"Dunning batch finished: {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.skipped} skipped",
            extra=result.to_dict(),
        )
        return result

    async def _process_one(self, event_id: int) -> ItemOutcome:
        async with self.session_factory() as session:
            try:
                outcome = await self._service(session).process_event(event_id)
                await session.commit()
                return outcome
            except Exception:
                await session.rollback()
                logger.exception(
                    f"Dunning event {event_id} processing failed",
                    extra={"event_id": event_id},
                )

        await self._mark_failed(event_id)
        return ItemOutcome.FAILED

    async def _mark_failed(self, event_id: int) -> None:
        async with self.session_factory() as session:
            try:
                await self._service(session).mark_failed(event_id)
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception(
                    f"Could not mark dunning event {event_id} failed",
                    extra={"event_id": event_id},
                )
