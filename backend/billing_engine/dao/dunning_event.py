"""
Dunning Event Data Access Object (DAO).

WHAT: Queries and conditional transitions for dunning events.

WHY: The dunning chain is a queue of pending events. The DAO provides:
1. Due event lookup for the batch driver
2. The pending -> sent finalisation that detects pre-emption
3. Chain-wide resolution when a subscription recovers
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.base import BaseDAO
from billing_engine.models.dunning_event import DunningEvent, DunningEventStatus


class DunningEventDAO(BaseDAO[DunningEvent]):
    """
    Data Access Object for DunningEvent model.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(DunningEvent, session)

    async def get_due_ids(self, now: datetime, limit: int = 500) -> List[int]:
        """
        Get ids of pending events whose scheduled time has passed.

        Args:
            now: Reference time
            limit: Maximum events per batch

        Returns:
            Event ids, earliest first
        """
        result = await self.session.execute(
            select(DunningEvent.id)
            .where(
                DunningEvent.status == DunningEventStatus.PENDING,
                DunningEvent.scheduled_for <= now,
            )
            .order_by(DunningEvent.scheduled_for.asc(), DunningEvent.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_pending_for_subscription(self, subscription_id: int) -> Optional[DunningEvent]:
        """Get the single pending event of a subscription, if any."""
        result = await self.session.execute(
            select(DunningEvent).where(
                DunningEvent.subscription_id == subscription_id,
                DunningEvent.status == DunningEventStatus.PENDING,
            )
        )
        return result.scalar_one_or_none()

    async def has_unresolved(self, subscription_id: int) -> bool:
        """
        Check whether the subscription has an open dunning chain.

        WHY: A chain is open while any of its events is not RESOLVED.
        A new chain may only start once the previous one is closed.
        """
        result = await self.session.execute(
            select(DunningEvent.id)
            .where(
                DunningEvent.subscription_id == subscription_id,
                DunningEvent.status != DunningEventStatus.RESOLVED,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def get_latest_invoice_id(self, subscription_id: int) -> Optional[int]:
        """Get the invoice the open chain is recovering."""
        result = await self.session.execute(
            select(DunningEvent.invoice_id)
            .where(
                DunningEvent.subscription_id == subscription_id,
                DunningEvent.status != DunningEventStatus.RESOLVED,
                DunningEvent.invoice_id.is_not(None),
            )
            .order_by(DunningEvent.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def mark_sent(self, event_id: int, now: datetime) -> bool:
        """
        Finalise a processed event (pending -> sent).

        Returns:
            False if the event was no longer pending (pre-empted)
        """
        return await self.update_if(
            event_id,
            {"status": DunningEventStatus.PENDING},
            status=DunningEventStatus.SENT,
            sent_at=now,
        )

    async def resolve_for_subscription(
        self,
        subscription_id: int,
        statuses: tuple,
        now: datetime,
    ) -> int:
        """
        Resolve every event of a subscription in one of `statuses`.

        Returns:
            Number of events resolved
        """
        result = await self.session.execute(
            update(DunningEvent)
            .where(
                DunningEvent.subscription_id == subscription_id,
                DunningEvent.status.in_(list(statuses)),
            )
            .values(status=DunningEventStatus.RESOLVED, resolved_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def list_events(
        self,
        subscription_id: Optional[int] = None,
        status: Optional[DunningEventStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[DunningEvent]:
        """List events in creation order."""
        query = select(DunningEvent)
        if subscription_id is not None:
            query = query.where(DunningEvent.subscription_id == subscription_id)
        if status is not None:
            query = query.where(DunningEvent.status == status)
        result = await self.session.execute(
            query.order_by(DunningEvent.id.asc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all())
