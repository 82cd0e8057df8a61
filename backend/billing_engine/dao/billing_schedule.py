"""
Billing Schedule Data Access Object (DAO).

WHAT: Queries and conditional transitions for billing schedules.

WHY: The billing batch must:
1. Find due schedules without loading every row
2. Claim a schedule so only one worker processes it
3. Look up the single active schedule of a subscription

HOW: Claims are conditional UPDATEs (scheduled -> processing). The partial
unique index on (subscription_id) for active statuses is the final guard
against duplicates.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.base import BaseDAO
from billing_engine.models.billing_schedule import (
    BillingSchedule,
    BillingScheduleStatus,
    ACTIVE_SCHEDULE_STATUSES,
)


class BillingScheduleDAO(BaseDAO[BillingSchedule]):
    """
    Data Access Object for BillingSchedule model.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(BillingSchedule, session)

    async def get_due_ids(self, now: datetime, limit: int = 500) -> List[int]:
        """
        Get ids of schedules due for processing.

        WHY: Only ids are returned. Each worker re-reads its schedule in its
        own session, so a stale snapshot from the batch query never drives
        a charge.

        Args:
            now: Reference time
            limit: Maximum number of schedules per batch

        Returns:
            Schedule ids, earliest billing date first
        """
        result = await self.session.execute(
            select(BillingSchedule.id)
            .where(
                BillingSchedule.status == BillingScheduleStatus.SCHEDULED,
                BillingSchedule.next_billing_date <= now,
            )
            .order_by(BillingSchedule.next_billing_date.asc(), BillingSchedule.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(self, schedule_id: int) -> bool:
        """
        Claim a schedule for processing (scheduled -> processing).

        Returns:
            True if this caller won the claim
        """
        return await self.update_if(
            schedule_id,
            {"status": BillingScheduleStatus.SCHEDULED},
            status=BillingScheduleStatus.PROCESSING,
        )

    async def get_active_for_subscription(self, subscription_id: int) -> Optional[BillingSchedule]:
        """Get the scheduled/processing schedule of a subscription, if any."""
        result = await self.session.execute(
            select(BillingSchedule).where(
                BillingSchedule.subscription_id == subscription_id,
                BillingSchedule.status.in_(ACTIVE_SCHEDULE_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    async def get_latest_failed(self, subscription_id: int) -> Optional[BillingSchedule]:
        """Get the most recent failed schedule of a subscription."""
        result = await self.session.execute(
            select(BillingSchedule)
            .where(
                BillingSchedule.subscription_id == subscription_id,
                BillingSchedule.status == BillingScheduleStatus.FAILED,
            )
            .order_by(BillingSchedule.next_billing_date.desc(), BillingSchedule.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_schedules(
        self,
        subscription_id: Optional[int] = None,
        status: Optional[BillingScheduleStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[BillingSchedule]:
        """List schedules, most recent billing date first."""
        query = select(BillingSchedule)
        if subscription_id is not None:
            query = query.where(BillingSchedule.subscription_id == subscription_id)
        if status is not None:
            query = query.where(BillingSchedule.status == status)
        result = await self.session.execute(
            query.order_by(BillingSchedule.next_billing_date.desc(), BillingSchedule.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())
