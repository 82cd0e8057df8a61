"""
Billing schedule service and batch processor.

WHAT: Turns due billing schedules into invoices and charges, and keeps
each subscription's chain of schedules moving forward.

WHY: Recurring billing must be safe to run from several engine instances
at once and must survive individual failures:
1. A schedule is claimed (scheduled -> processing) before any work, so two
   workers never charge the same cycle
2. A successful charge completes the schedule and creates the successor
   exactly one billing cycle later
3. A failed charge hands the subscription to the Dunning Manager
4. One broken schedule never stops the rest of the batch

HOW: BillingScheduleService holds the per-schedule logic on one session.
BillingScheduleProcessor finds due schedule ids and runs each in its own
session through run_isolated.
"""

import calendar
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.core.config import settings
from billing_engine.core.exceptions import (
    BillingScheduleNotFoundError,
    ResourceAlreadyExistsError,
    ValidationError,
)
from billing_engine.dao.billing_schedule import BillingScheduleDAO
from billing_engine.models.base import normalize_metadata, utcnow
from billing_engine.models.billing_schedule import BillingSchedule, BillingScheduleStatus
from billing_engine.models.subscription import CYCLE_MONTHS, BillingCycle
from billing_engine.services.batch import BatchResult, ItemOutcome, run_isolated
from billing_engine.services.dunning_service import DunningService
from billing_engine.services.invoice_service import (
    InvoiceService,
    build_invoice_payment_request,
)
from billing_engine.services.notification_service import NotificationService
from billing_engine.services.payment_gateways import PaymentRouter, get_payment_router
from billing_engine.services.subscription_service import SubscriptionService
from billing_engine.services.tax_service import quantize_money, to_decimal

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    """
    Add calendar months, clamping the day to the end of the target month.

    Jan 31 + 1 month is Feb 28 (or 29), never Mar 3.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_next_billing_date(current: datetime, billing_cycle: BillingCycle) -> datetime:
    """
    Next billing date one cycle after `current`.

    Raises:
        ValidationError: Unknown billing cycle
    """
    months = CYCLE_MONTHS.get(billing_cycle)
    if months is None:
        raise ValidationError(
            message=f"Unsupported billing cycle: {billing_cycle}",
            field="billing_cycle",
        )
    return add_months(current, months)


class BillingScheduleService:
    """
    Per-schedule billing operations on one database session.
    """

    def __init__(
        self,
        db: AsyncSession,
        router: Optional[PaymentRouter] = None,
        notification_service: Optional[NotificationService] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.dao = BillingScheduleDAO(db)
        self.router = router or get_payment_router()
        self.subscriptions = SubscriptionService(db)
        self.invoices = InvoiceService(db, notification_service=notification_service, now=now)
        self.dunning = DunningService(
            db,
            router=self.router,
            notification_service=notification_service,
            now=now,
        )
        self.now = now

    calculate_next_billing_date = staticmethod(calculate_next_billing_date)

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_schedule(self, schedule_id: int) -> BillingSchedule:
        """
        Load a schedule.

        Raises:
            BillingScheduleNotFoundError: If it does not exist
        """
        schedule = await self.dao.get_by_id(schedule_id)
        if schedule is None:
            raise BillingScheduleNotFoundError(
                message=f"Billing schedule {schedule_id} not found",
                schedule_id=schedule_id,
            )
        return schedule

    async def list_schedules(
        self,
        subscription_id: Optional[int] = None,
        status: Optional[BillingScheduleStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[BillingSchedule]:
        return await self.dao.list_schedules(subscription_id, status, skip, limit)

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_billing_schedule(
        self,
        subscription_id: int,
        next_billing_date: datetime,
        amount: Optional[Any] = None,
        currency: Optional[str] = None,
        max_retries: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BillingSchedule:
        """
        Schedule a charge for a subscription.

        Amount and currency default to the subscription's plan.

        Raises:
            SubscriptionNotFoundError: Unknown subscription
            ValidationError: Bad amount, currency, retries or metadata
            ResourceAlreadyExistsError: Subscription already has an active schedule
        """
        subscription = await self.subscriptions.get_subscription(subscription_id)

        amount = quantize_money(to_decimal(subscription.amount if amount is None else amount))
        if amount <= 0:
            raise ValidationError(message="Amount must be positive", field="amount")

        currency = (currency or subscription.currency or "").upper()
        if currency not in settings.SUPPORTED_CURRENCIES:
            raise ValidationError(message=f"Unsupported currency: {currency}", field="currency")

        if max_retries is None:
            max_retries = settings.BILLING_SCHEDULE_MAX_RETRIES
        if max_retries < 0:
            raise ValidationError(message="max_retries cannot be negative", field="max_retries")

        metadata = normalize_metadata(metadata)

        existing = await self.dao.get_active_for_subscription(subscription_id)
        if existing is not None:
            raise ResourceAlreadyExistsError(
                message=f"Subscription {subscription_id} already has an active billing schedule",
                subscription_id=subscription_id,
                schedule_id=existing.id,
            )

        try:
            async with self.db.begin_nested():
                schedule = await self.dao.create(
                    subscription_id=subscription_id,
                    next_billing_date=next_billing_date,
                    amount=amount,
                    currency=currency,
                    status=BillingScheduleStatus.SCHEDULED,
                    retry_count=0,
                    max_retries=max_retries,
                    metadata_=metadata,
                )
        except IntegrityError:
            # Lost the race against another writer on the partial unique index
            raise ResourceAlreadyExistsError(
                message=f"Subscription {subscription_id} already has an active billing schedule",
                subscription_id=subscription_id,
            )

        logger.info(
            f"Created billing schedule {schedule.id} for subscription {subscription_id}",
            extra={
                "schedule_id": schedule.id,
                "subscription_id": subscription_id,
                "next_billing_date": next_billing_date.isoformat(),
            },
        )
        return schedule

    # ========================================================================
    # Processing
    # ========================================================================

    async def claim_schedule(self, schedule_id: int) -> bool:
        """
        Claim a due schedule for processing.

        Returns:
            False if the schedule is not due or another worker claimed it
        """
        schedule = await self.dao.get_by_id(schedule_id)
        if schedule is None or not schedule.is_due(self.now()):
            return False
        return await self.dao.claim(schedule_id)

    async def charge_schedule(self, schedule_id: int) -> ItemOutcome:
        """
        Invoice and collect a claimed (processing) schedule.

        A response that still needs the payer (hosted checkout, approval
        link) has collected nothing. It counts as a failed collection: the
        invoice stays open for the provider webhook and dunning starts.

        Returns:
            SUCCEEDED when paid, FAILED when the charge was declined, is
            awaiting payer action, or no gateway could take it
        """
        schedule = await self.get_schedule(schedule_id)
        subscription = await self.subscriptions.get_subscription(schedule.subscription_id)

        description = f"{subscription.plan_name} subscription ({subscription.billing_cycle.value})"
        invoice = await self.invoices.create_invoice(
            subscription_id=subscription.id,
            amount=schedule.amount,
            currency=schedule.currency,
            description=description,
            due_date=self.now(),
            items=[{
                "description": f"Subscription - {subscription.plan_name}",
                "quantity": 1,
                "unit_price": schedule.amount,
            }],
        )
        await self.dao.update_if(
            schedule_id,
            {"status": BillingScheduleStatus.PROCESSING},
            last_invoice_id=invoice.id,
        )

        request = build_invoice_payment_request(invoice, subscription, schedule_id=schedule_id)
        response = await self.router.process_payment(request, subscription.preferred_gateway)

        if response.collected:
            await self.invoices.mark_invoice_as_paid(
                invoice.id, response.transaction_id or f"{response.gateway}:{invoice.invoice_number}"
            )
            await self._complete(schedule, subscription.billing_cycle)
            logger.info(
                f"Billing schedule {schedule_id} collected",
                extra={
                    "schedule_id": schedule_id,
                    "invoice_id": invoice.id,
                    "gateway": response.gateway,
                },
            )
            return ItemOutcome.SUCCEEDED

        await self._fail(schedule)
        await self.dunning.start_dunning(subscription.id, invoice.id)
        if response.requires_action:
            logger.warning(
                f"Billing schedule {schedule_id} needs payer action; invoice left open",
                extra={
                    "schedule_id": schedule_id,
                    "invoice_id": invoice.id,
                    "gateway": response.gateway,
                    "transaction_id": response.transaction_id,
                },
            )
            return ItemOutcome.FAILED

        logger.warning(
            f"Billing schedule {schedule_id} payment failed: {response.error}",
            extra={
                "schedule_id": schedule_id,
                "invoice_id": invoice.id,
                "gateway": response.gateway,
                "error_code": response.error_code,
            },
        )
        return ItemOutcome.FAILED

    async def process_schedule(self, schedule_id: int) -> ItemOutcome:
        """Claim and charge one schedule on this session."""
        if not await self.claim_schedule(schedule_id):
            return ItemOutcome.SKIPPED
        return await self.charge_schedule(schedule_id)

    async def _complete(self, schedule: BillingSchedule, billing_cycle: BillingCycle) -> BillingSchedule:
        await self.dao.update_if(
            schedule.id,
            {"status": BillingScheduleStatus.PROCESSING},
            status=BillingScheduleStatus.COMPLETED,
        )
        return await self.dao.create(
            subscription_id=schedule.subscription_id,
            next_billing_date=calculate_next_billing_date(schedule.next_billing_date, billing_cycle),
            amount=schedule.amount,
            currency=schedule.currency,
            status=BillingScheduleStatus.SCHEDULED,
            retry_count=0,
            max_retries=schedule.max_retries,
            metadata_=dict(schedule.metadata_ or {}),
        )

    async def _fail(self, schedule: BillingSchedule) -> None:
        await self.dao.update_if(
            schedule.id,
            {"status": BillingScheduleStatus.PROCESSING},
            status=BillingScheduleStatus.FAILED,
            retry_count=min(schedule.retry_count + 1, schedule.max_retries),
        )

    async def mark_failed(self, schedule_id: int) -> bool:
        """
        Mark a processing schedule failed after an unexpected error.

        Only the status changes; the retry counter is left alone.
        """
        return await self.dao.update_if(
            schedule_id,
            {"status": BillingScheduleStatus.PROCESSING},
            status=BillingScheduleStatus.FAILED,
        )

    async def resume_after_recovery(self, subscription_id: int) -> Optional[BillingSchedule]:
        """
        Roll billing forward once dunning has recovered payment.

        The most recent failed schedule is closed as completed (its cycle
        was paid by the retry) and its successor is created one cycle
        later.

        Returns:
            The active schedule, or None if there was nothing to resume
        """
        active = await self.dao.get_active_for_subscription(subscription_id)
        if active is not None:
            return active

        failed = await self.dao.get_latest_failed(subscription_id)
        if failed is None:
            return None

        closed = await self.dao.update_if(
            failed.id,
            {"status": BillingScheduleStatus.FAILED},
            status=BillingScheduleStatus.COMPLETED,
        )
        if not closed:
            return await self.dao.get_active_for_subscription(subscription_id)

        subscription = await self.subscriptions.get_subscription(subscription_id)
        successor = await self.dao.create(
            subscription_id=subscription_id,
            next_billing_date=calculate_next_billing_date(
                failed.next_billing_date, subscription.billing_cycle
            ),
            amount=failed.amount,
            currency=failed.currency,
            status=BillingScheduleStatus.SCHEDULED,
            retry_count=0,
            max_retries=failed.max_retries,
            metadata_=dict(failed.metadata_ or {}),
        )

        logger.info(
            f"Resumed billing for subscription {subscription_id}",
            extra={"subscription_id": subscription_id, "schedule_id": successor.id},
        )
        return successor


class BillingScheduleProcessor:
    """
    Batch driver for due billing schedules.

    Example:
        processor = BillingScheduleProcessor(get_session_factory())
        result = await processor.process_billing_schedules()
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

    def _service(self, session: AsyncSession) -> BillingScheduleService:
        return BillingScheduleService(
            session,
            router=self.router,
            notification_service=self.notification_service,
            now=self.now,
        )

    async def process_billing_schedules(self) -> BatchResult:
        """
        Process every due schedule.

        Returns:
            BatchResult counters for the run
        """
        async with self.session_factory() as session:
            schedule_ids = await BillingScheduleDAO(session).get_due_ids(self.now(), self.batch_size)

        if not schedule_ids:
            return BatchResult()

        logger.info(f"Processing {len(schedule_ids)} due billing schedules")
        result = await run_isolated(schedule_ids, self._process_one, self.concurrency)
        logger.info(
            f"Billing batch finished: {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.skipped} skipped",
            extra=result.to_dict(),
        )
        return result

    async def _process_one(self, schedule_id: int) -> ItemOutcome:
        async with self.session_factory() as session:
            service = self._service(session)
            try:
                if not await service.claim_schedule(schedule_id):
                    await session.rollback()
                    return ItemOutcome.SKIPPED
                # Publish the claim before talking to payment providers
                await session.commit()

                outcome = await service.charge_schedule(schedule_id)
                await session.commit()
                return outcome
            except Exception:
                await session.rollback()
                logger.exception(
                    f"Billing schedule {schedule_id} processing failed",
                    extra={"schedule_id": schedule_id},
                )

        await self._mark_failed(schedule_id)
        return ItemOutcome.FAILED

    async def _mark_failed(self, schedule_id: int) -> None:
        async with self.session_factory() as session:
            try:
                await self._service(session).mark_failed(schedule_id)
                await session.commit()
            except Exception:
                await session.rollback()
                logger.exception(
                    f"Could not mark billing schedule {schedule_id} failed",
                    extra={"schedule_id": schedule_id},
                )
