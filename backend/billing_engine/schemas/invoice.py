"""
Invoice schemas for API request/response validation.

WHAT: Pydantic schemas for invoice data validation.

WHY: Schemas provide:
1. Type-safe request/response handling
2. Automatic validation with clear error messages
3. OpenAPI documentation generation

HOW: Uses Pydantic v2 with Field constraints and model_config. Money is
Decimal end to end and serializes as a string, so no float rounding
creeps into totals.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel, Field, ConfigDict

from billing_engine.models.invoice import InvoiceStatus


# ============================================================================
# Request Schemas
# ============================================================================


class LineItemIn(BaseModel):
    """One invoice line as submitted by the client."""

    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(..., min_length=1, max_length=500)
    quantity: int = Field(default=1, gt=0)
    unit_price: Decimal = Field(..., gt=0, decimal_places=2)


class InvoiceCreate(BaseModel):
    """
    Schema for creating an invoice.

    WHY: Manual invoices cover one-time charges. Cycle invoices are
    created by the billing schedule processor.

    Tax is never supplied by the client; it is computed from the
    subscription's tax profile (or the overrides below).
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    subscription_id: int = Field(..., description="Billed subscription")
    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Pre-tax amount")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO currency code")
    description: str = Field(..., min_length=1, max_length=5000)
    due_date: Optional[datetime] = Field(
        default=None,
        description="Payment due date (defaults to now + INVOICE_DUE_DAYS)",
    )
    items: Optional[List[LineItemIn]] = Field(
        default=None,
        description="Line items; must add up to amount",
    )
    country: Optional[str] = Field(
        default=None,
        min_length=2,
        max_length=2,
        description="Tax country override",
    )
    tax_exempt: Optional[bool] = Field(default=None, description="Tax exemption override")


class InvoiceUpdate(BaseModel):
    """
    Schema for updating an invoice (draft only).

    WHY: Allows correcting a draft before it is sent. Tax and total are
    recomputed server-side.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    description: Optional[str] = Field(default=None, min_length=1, max_length=5000)
    due_date: Optional[datetime] = None
    items: Optional[List[LineItemIn]] = None


class MarkPaidRequest(BaseModel):
    """
    Schema for recording a payment against an invoice.

    WHY: Supports offline payments (bank transfer, cheque) and manual
    reconciliation of provider payments.
    """

    payment_reference: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Provider transaction id or manual reference",
    )


# ============================================================================
# Response Schemas
# ============================================================================


class LineItemOut(BaseModel):
    """Stored invoice line."""

    description: str
    quantity: int
    unit_price: Decimal
    total: Decimal


class InvoiceResponse(BaseModel):
    """
    Schema for invoice response data.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    status: InvoiceStatus
    subscription_id: int

    # Amounts
    amount: Decimal
    currency: str
    tax_amount: Decimal
    tax_rate: Decimal
    total_amount: Decimal

    description: Optional[str]
    line_items: List[LineItemOut]
    payment_reference: Optional[str]

    # Dates
    due_date: datetime
    paid_at: Optional[datetime]
    sent_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    # Computed properties
    is_editable: bool
    is_paid: bool


class InvoiceListResponse(BaseModel):
    """
    Paginated list response for invoices.

    WHY: Standard pagination structure for list endpoints.
    """

    items: List[InvoiceResponse]
    total: int
    skip: int
    limit: int
