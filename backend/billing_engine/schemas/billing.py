"""
Billing schedule and dunning schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict

from billing_engine.models.base import MetadataValue
from billing_engine.models.billing_schedule import BillingScheduleStatus
from billing_engine.models.dunning_event import DunningEventStatus, DunningEventType


# ============================================================================
# Billing schedules
# ============================================================================


class BillingScheduleCreate(BaseModel):
    """
    Schema for scheduling a subscription charge.

    Amount and currency default to the subscription's plan.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    subscription_id: int
    next_billing_date: datetime
    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)


class BillingScheduleResponse(BaseModel):
    """Schema for billing schedule response data."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    subscription_id: int
    next_billing_date: datetime
    amount: Decimal
    currency: str
    status: BillingScheduleStatus
    retry_count: int
    max_retries: int
    last_invoice_id: Optional[int]
    metadata: Dict[str, MetadataValue] = Field(validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Dunning
# ============================================================================


class DunningEventResponse(BaseModel):
    """Schema for dunning event response data."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: int
    invoice_id: Optional[int]
    type: DunningEventType
    status: DunningEventStatus
    attempt: int
    scheduled_for: datetime
    sent_at: Optional[datetime]
    resolved_at: Optional[datetime]
    metadata: Dict[str, MetadataValue] = Field(validation_alias="metadata_")
    created_at: datetime


class ReactivateRequest(BaseModel):
    """Manual reactivation of a subscription in dunning."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: Optional[str] = Field(default=None, max_length=500)


# ============================================================================
# Batch jobs
# ============================================================================


class BatchResultResponse(BaseModel):
    """Counters returned by an on-demand batch run."""

    job: str
    result: Dict[str, int]


class ScheduleListResponse(BaseModel):
    items: List[BillingScheduleResponse]


class DunningEventListResponse(BaseModel):
    items: List[DunningEventResponse]
