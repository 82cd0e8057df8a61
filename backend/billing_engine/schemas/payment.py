"""
Payment schemas for the direct payment, gateway and webhook endpoints.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict

from billing_engine.models.base import MetadataValue


class PaymentCreate(BaseModel):
    """
    Schema for a direct payment through the payment router.

    WHY: Used for one-off charges and for paying an invoice through a
    hosted checkout. An invoice_id entry in metadata is echoed back in
    the gateway webhook so the invoice can be marked paid.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(..., gt=0, decimal_places=2)
    currency: str = Field(..., min_length=3, max_length=3)
    payment_method: str = Field(..., min_length=1, max_length=30)
    description: str = Field(..., min_length=1, max_length=500)
    preferred_gateway: Optional[str] = Field(default=None, max_length=30)
    customer_id: Optional[str] = Field(default=None, max_length=255)
    payment_method_id: Optional[str] = Field(default=None, max_length=255)
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    """
    Outcome of a payment operation.

    WHY: Declines are normal results (success=false with error and
    error_code), not HTTP errors. requires_action=true means the payer must
    still complete the payment at payment_url.
    """

    success: bool
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    gateway: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    requires_action: bool = False


class GatewayInfo(BaseModel):
    """Registered gateway and its capabilities."""

    name: str
    is_active: bool
    supported_currencies: List[str]
    supported_methods: List[str]


class GatewayListResponse(BaseModel):
    """Gateways, optionally filtered to those eligible for a currency/method."""

    gateways: List[GatewayInfo]


class WebhookAck(BaseModel):
    """
    Webhook acknowledgement.

    WHY: Providers retry anything that is not a 2xx. Verified events are
    always acknowledged, even when they carry nothing to act on.
    """

    received: bool = True
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    invoice_id: Optional[int] = None
