"""
Database models package.

WHY: Centralizing model imports ensures Alembic can discover all models
for migration generation and makes it easier to import models elsewhere.
"""

from billing_engine.models.base import (
    Base,
    TimestampMixin,
    PrimaryKeyMixin,
    normalize_metadata,
    utcnow,
)
from billing_engine.models.subscription import (
    Subscription,
    SubscriptionStatus,
    BillingCycle,
    CYCLE_MONTHS,
)
from billing_engine.models.invoice import (
    Invoice,
    InvoiceSequence,
    InvoiceStatus,
    INVOICE_TRANSITIONS,
)
from billing_engine.models.billing_schedule import (
    BillingSchedule,
    BillingScheduleStatus,
    ACTIVE_SCHEDULE_STATUSES,
)
from billing_engine.models.dunning_event import (
    DunningEvent,
    DunningEventStatus,
    DunningEventType,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "normalize_metadata",
    "utcnow",
    "Subscription",
    "SubscriptionStatus",
    "BillingCycle",
    "CYCLE_MONTHS",
    "Invoice",
    "InvoiceSequence",
    "InvoiceStatus",
    "INVOICE_TRANSITIONS",
    "BillingSchedule",
    "BillingScheduleStatus",
    "ACTIVE_SCHEDULE_STATUSES",
    "DunningEvent",
    "DunningEventStatus",
    "DunningEventType",
]
