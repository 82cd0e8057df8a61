"""
Dunning event model.

WHAT: One step of the payment-recovery chain that follows a failed charge.

WHY: Dunning is a per-subscription state machine advanced by a batch
driver. Persisting each step as its own row gives:
1. A durable queue (pending events with scheduled_for)
2. An audit trail of notices sent and retries attempted
3. A database-level guard against two concurrent chains

HOW: A partial unique index allows at most one PENDING event per
subscription. The Dunning Manager creates the successor only while
processing its predecessor.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    Enum as SQLEnum,
    text,
)
from sqlalchemy.orm import Mapped

from billing_engine.models.base import Base, TimestampMixin


class DunningEventType(str, Enum):
    """
    Kinds of dunning step.

    - PAYMENT_FAILED: Notify the subscriber and decide retry vs suspension
    - PAYMENT_RETRY: Re-attempt the charge
    - ACCOUNT_SUSPENDED: Move the subscription to past_due
    - ACCOUNT_REACTIVATED: Restore the subscription and close the chain
    """

    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RETRY = "payment_retry"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_REACTIVATED = "account_reactivated"


class DunningEventStatus(str, Enum):
    """
    Dunning event lifecycle.

    - PENDING: Waiting for scheduled_for
    - SENT: Processed
    - FAILED: Processing raised; can be requeued
    - RESOLVED: Chain closed by recovery, or pre-empted before processing
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RESOLVED = "resolved"


class DunningEvent(Base, TimestampMixin):
    """
    Scheduled dunning step for a subscription.

    Attributes:
        id: Primary key
        subscription_id: Subscription being recovered
        invoice_id: Unpaid invoice the chain is recovering (optional)
        type: DunningEventType
        status: DunningEventStatus
        attempt: 1-based payment attempt number
        scheduled_for: When the step becomes due
        sent_at: When the step was processed
        resolved_at: When the chain was closed
        metadata_: Primitive metadata bag (column "metadata")
    """

    __tablename__ = "dunning_events"

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)

    subscription_id: Mapped[int] = Column(
        Integer,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_id: Mapped[Optional[int]] = Column(
        Integer,
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    type: Mapped[DunningEventType] = Column(
        SQLEnum(
            DunningEventType,
            name="dunningeventtype",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        nullable=False,
    )
    status: Mapped[DunningEventStatus] = Column(
        SQLEnum(
            DunningEventStatus,
            name="dunningeventstatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        nullable=False,
        default=DunningEventStatus.PENDING,
        index=True,
    )
    attempt: Mapped[int] = Column(Integer, nullable=False, default=1)

    scheduled_for: Mapped[datetime] = Column(DateTime, nullable=False, index=True)
    sent_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)

    # WHY: "metadata" is reserved on declarative classes
    metadata_: Mapped[dict] = Column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        Index(
            "uq_dunning_events_pending_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<DunningEvent(id={self.id}, subscription_id={self.subscription_id}, "
            f"type={self.type}, status={self.status}, attempt={self.attempt})>"
        )

    def is_due(self, now: datetime) -> bool:
        """Check whether the event should be processed at `now`."""
        return self.status == DunningEventStatus.PENDING and self.scheduled_for <= now
