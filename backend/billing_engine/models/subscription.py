"""
Subscription model: the billing engine's view of a subscriber.

WHY: The subscription record belongs to the subscription domain. The
billing engine reads plan, amount, saved payment method and tax profile
from it, and only ever writes its status:
1. ACTIVE while payments succeed
2. PAST_DUE once dunning suspends the account
3. Back to ACTIVE when a retry or manual reactivation recovers payment
"""

import enum
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    Enum,
    Boolean,
    Numeric,
)

from billing_engine.models.base import Base, TimestampMixin, PrimaryKeyMixin


class BillingCycle(str, enum.Enum):
    """
    Billing cycle units.

    WHY: The cycle decides how far the successor billing schedule is
    placed after a successful charge.
    """

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


# Calendar months per cycle unit
CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


class SubscriptionStatus(str, enum.Enum):
    """
    Subscription status values written by the billing engine.

    - ACTIVE: Payment successful, full access
    - PAST_DUE: Payment recovery failed, account suspended
    """

    ACTIVE = "active"
    PAST_DUE = "past_due"


class Subscription(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Subscription record consumed by the billing engine.

    Saved payment method:
    - payment_method: PaymentMethod value (CREDIT_CARD, PAYPAL, ...)
    - payment_customer_id: Provider customer reference
    - payment_method_id: Provider saved instrument for off-session charges
    - preferred_gateway: Gateway tried first by the payment router

    Tax profile:
    - country: ISO country code for the tax table
    - tax_exempt: Skip tax entirely
    """

    __tablename__ = "subscriptions"

    email = Column(String(255), nullable=False, index=True)
    customer_name = Column(String(255), nullable=True)
    plan_name = Column(String(100), nullable=False)

    billing_cycle = Column(
        Enum(BillingCycle, name="billingcycle", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=BillingCycle.MONTHLY,
    )
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    payment_method = Column(String(30), nullable=False, default="CREDIT_CARD")
    payment_customer_id = Column(String(255), nullable=True)
    payment_method_id = Column(String(255), nullable=True)
    preferred_gateway = Column(String(30), nullable=True)

    country = Column(String(2), nullable=True)
    tax_exempt = Column(Boolean, nullable=False, default=False)

    status = Column(
        Enum(
            SubscriptionStatus,
            name="subscriptionstatus",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, plan={self.plan_name}, "
            f"status={self.status})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def cycle_months(self) -> Optional[int]:
        return CYCLE_MONTHS.get(self.billing_cycle)
