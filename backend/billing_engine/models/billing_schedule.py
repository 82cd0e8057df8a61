"""
Billing schedule model.

WHAT: One scheduled charge for a subscription.

WHY: Recurring billing is driven by schedule rows rather than by the
subscription itself, so each cycle has its own status, retry counter and
audit trail. A completed schedule spawns its successor one cycle later.

HOW: A partial unique index guarantees at most one SCHEDULED/PROCESSING
schedule per subscription, even with several engine instances running.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
    Numeric,
    JSON,
    Index,
    CheckConstraint,
    Enum as SQLEnum,
    text,
)
from sqlalchemy.orm import Mapped

from billing_engine.models.base import Base, TimestampMixin


class BillingScheduleStatus(str, Enum):
    """
    Billing schedule lifecycle.

    - SCHEDULED: Waiting for next_billing_date
    - PROCESSING: Claimed by a batch worker
    - COMPLETED: Charged successfully, successor created
    - FAILED: Charge failed or processing raised; dunning takes over
    """

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_SCHEDULE_STATUSES = (BillingScheduleStatus.SCHEDULED, BillingScheduleStatus.PROCESSING)


class BillingSchedule(Base, TimestampMixin):
    """
    Scheduled charge for one billing cycle.

    Attributes:
        id: Primary key
        subscription_id: Billed subscription
        next_billing_date: When the charge is due
        amount: Pre-tax amount to invoice
        currency: ISO currency code
        status: Lifecycle status
        retry_count: Failed attempts so far (never above max_retries)
        max_retries: Retry ceiling
        metadata_: Primitive metadata bag (column "metadata")
    """

    __tablename__ = "billing_schedules"

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)

    subscription_id: Mapped[int] = Column(
        Integer,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    next_billing_date: Mapped[datetime] = Column(DateTime, nullable=False, index=True)
    amount: Mapped[Decimal] = Column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = Column(String(3), nullable=False)

    status: Mapped[BillingScheduleStatus] = Column(
        SQLEnum(
            BillingScheduleStatus,
            name="billingschedulestatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        nullable=False,
        default=BillingScheduleStatus.SCHEDULED,
        index=True,
    )
    retry_count: Mapped[int] = Column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = Column(Integer, nullable=False, default=3)

    # WHY: "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = Column("metadata", JSON, nullable=False, default=dict)

    # Invoice produced by the most recent processing attempt
    last_invoice_id: Mapped[Optional[int]] = Column(
        Integer,
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        Index(
            "uq_billing_schedules_active_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text("status IN ('scheduled', 'processing')"),
            sqlite_where=text("status IN ('scheduled', 'processing')"),
        ),
        CheckConstraint("retry_count <= max_retries", name="ck_billing_schedules_retry_count"),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingSchedule(id={self.id}, subscription_id={self.subscription_id}, "
            f"status={self.status}, next_billing_date={self.next_billing_date})>"
        )

    def is_due(self, now: datetime) -> bool:
        """Check whether the schedule should be processed at `now`."""
        return self.status == BillingScheduleStatus.SCHEDULED and self.next_billing_date <= now
