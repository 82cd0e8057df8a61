"""
Subscription service: the billing engine's gateway to subscription records.

WHAT: Reads subscriptions and updates their status.

WHY: Subscriptions are owned by the subscription domain. The billing
engine goes through this narrow interface so that:
1. Only the status field is ever written by billing code
2. Missing subscriptions fail loudly with a 404-mapped error
3. Status changes are logged in one place

HOW: Thin layer over SubscriptionDAO, one instance per session.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.exceptions import SubscriptionNotFoundError
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Subscription collaborator used by invoices, billing and dunning.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.dao = SubscriptionDAO(db)

    async def get_subscription(self, subscription_id: int) -> Subscription:
        """
        Load a subscription.

        Raises:
            SubscriptionNotFoundError: If it does not exist
        """
        subscription = await self.dao.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                message=f"Subscription {subscription_id} not found",
                subscription_id=subscription_id,
            )
        return subscription

    async def set_subscription_status(
        self,
        subscription_id: int,
        status: SubscriptionStatus,
    ) -> None:
        """
        Set subscription status (active or past_due).

        Raises:
            SubscriptionNotFoundError: If it does not exist
        """
        updated = await self.dao.set_status(subscription_id, status)
        if not updated:
            raise SubscriptionNotFoundError(
                message=f"Subscription {subscription_id} not found",
                subscription_id=subscription_id,
            )

        logger.info(
            f"Subscription {subscription_id} status set to {status.value}",
            extra={"subscription_id": subscription_id, "status": status.value},
        )
