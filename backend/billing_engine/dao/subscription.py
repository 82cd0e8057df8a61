"""
Subscription Data Access Object (DAO).

WHAT: DAO for the subscription records the billing engine reads.

WHY: The billing engine reads plan, price and saved payment method, and
writes only the status (active / past_due).
"""

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.dao.base import BaseDAO
from billing_engine.models.subscription import Subscription, SubscriptionStatus


class SubscriptionDAO(BaseDAO[Subscription]):
    """
    Data Access Object for Subscription model.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize SubscriptionDAO.

        Args:
            session: Async database session
        """
        super().__init__(Subscription, session)

    async def set_status(self, subscription_id: int, status: SubscriptionStatus) -> bool:
        """
        Set subscription status.

        Args:
            subscription_id: Subscription ID
            status: New status

        Returns:
            True if the subscription exists
        """
        return await self.update_if(subscription_id, {}, status=status)
