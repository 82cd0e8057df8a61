"""
Billing operations API endpoints.

WHAT: Billing schedules, dunning events, manual reactivation and
on-demand batch runs.

WHY: Operators need to:
1. Schedule the first charge of a subscription
2. Inspect and requeue dunning steps
3. Reactivate a subscription after an offline payment
4. Run the billing, dunning and overdue jobs without waiting for the
   scheduler

HOW: FastAPI router over BillingScheduleService and DunningService. Batch
runs use the session factory dependency so each item gets its own
transaction, exactly as the scheduler runs them.
"""

from typing import Optional
from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.api.deps import get_billing_schedule_service, get_dunning_service
from billing_engine.db.session import get_session_factory
from billing_engine.models.billing_schedule import BillingScheduleStatus
from billing_engine.models.dunning_event import DunningEventStatus
from billing_engine.schemas.billing import (
    BatchResultResponse,
    BillingScheduleCreate,
    BillingScheduleResponse,
    DunningEventListResponse,
    DunningEventResponse,
    ReactivateRequest,
    ScheduleListResponse,
)
from billing_engine.services.billing_schedule_service import BillingScheduleService
from billing_engine.services.dunning_service import DunningService
from billing_engine.services.notification_service import (
    NotificationService,
    get_notification_service,
)
from billing_engine.services.payment_gateways import PaymentRouter, get_payment_router
from billing_engine.services.scheduler import JOBS, run_billing_jobs_now


router = APIRouter(prefix="/billing", tags=["billing"])


# ============================================================================
# Billing schedules
# ============================================================================


@router.post(
    "/schedules",
    response_model=BillingScheduleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create billing schedule",
)
async def create_billing_schedule(
    data: BillingScheduleCreate,
    service: BillingScheduleService = Depends(get_billing_schedule_service),
) -> BillingScheduleResponse:
    """
    Schedule a subscription charge.

    Raises:
        ResourceAlreadyExistsError (409): Subscription already has an active schedule
    """
    schedule = await service.create_billing_schedule(
        subscription_id=data.subscription_id,
        next_billing_date=data.next_billing_date,
        amount=data.amount,
        currency=data.currency,
        max_retries=data.max_retries,
        metadata=data.metadata,
    )
    return BillingScheduleResponse.model_validate(schedule)


@router.get(
    "/schedules",
    response_model=ScheduleListResponse,
    summary="List billing schedules",
)
async def list_billing_schedules(
    subscription_id: Optional[int] = Query(default=None),
    status_filter: Optional[BillingScheduleStatus] = Query(default=None, alias="status"),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    service: BillingScheduleService = Depends(get_billing_schedule_service),
) -> ScheduleListResponse:
    schedules = await service.list_schedules(subscription_id, status_filter, skip, limit)
    return ScheduleListResponse(
        items=[BillingScheduleResponse.model_validate(s) for s in schedules]
    )


# ============================================================================
# Dunning
# ============================================================================


@router.get(
    "/dunning-events",
    response_model=DunningEventListResponse,
    summary="List dunning events",
)
async def list_dunning_events(
    subscription_id: Optional[int] = Query(default=None),
    status_filter: Optional[DunningEventStatus] = Query(default=None, alias="status"),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    service: DunningService = Depends(get_dunning_service),
) -> DunningEventListResponse:
    events = await service.list_events(subscription_id, status_filter, skip, limit)
    return DunningEventListResponse(
        items=[DunningEventResponse.model_validate(e) for e in events]
    )


@router.post(
    "/dunning-events/{event_id}/requeue",
    response_model=DunningEventResponse,
    summary="Requeue failed dunning event",
)
async def requeue_dunning_event(
    event_id: int,
    service: DunningService = Depends(get_dunning_service),
) -> DunningEventResponse:
    """
    Put a failed dunning event back in the queue, due now.

    Raises:
        InvalidStateTransitionError (400): Event is not failed
        ResourceAlreadyExistsError (409): Subscription already has a pending event
    """
    event = await service.requeue_failed_event(event_id)
    return DunningEventResponse.model_validate(event)


@router.post(
    "/subscriptions/{subscription_id}/reactivate",
    response_model=DunningEventResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reactivate subscription",
)
async def reactivate_subscription(
    subscription_id: int,
    data: Optional[ReactivateRequest] = Body(default=None),
    service: DunningService = Depends(get_dunning_service),
) -> DunningEventResponse:
    """
    Reactivate a subscription out of band.

    Resolves the pending dunning step and queues an immediate
    reactivation, processed by the next dunning run.
    """
    event = await service.reactivate_subscription(
        subscription_id, reason=data.reason if data else None
    )
    return DunningEventResponse.model_validate(event)


# ============================================================================
# Batch jobs
# ============================================================================


@router.post(
    "/jobs/{job}",
    response_model=BatchResultResponse,
    summary="Run billing job",
    description=f"Run one of: {', '.join(JOBS)}",
)
async def run_job(
    job: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    payment_router: PaymentRouter = Depends(get_payment_router),
    notifications: NotificationService = Depends(get_notification_service),
) -> BatchResultResponse:
    """
    Run a billing batch job immediately.

    Raises:
        ValidationError (400): Unknown job
    """
    result = await run_billing_jobs_now(job, session_factory, payment_router, notifications)
    return BatchResultResponse(job=job, result=result)
