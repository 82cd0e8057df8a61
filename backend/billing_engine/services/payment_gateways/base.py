"""
Payment gateway adapter contract.

WHAT: Shared types and the abstract base every provider adapter implements.

WHY: The payment router must treat Stripe, PayPal and the crypto checkout
provider uniformly:
1. One request/response shape for every provider
2. A declared capability set (currencies, payment methods) per adapter
3. A strict split between declines and infrastructure failures

HOW: Adapters return a failed PaymentResponse for business declines
(card declined, insufficient funds) and raise PaymentGatewayError for
infrastructure failures (network, provider 5xx, unreadable responses).
Only the latter triggers failover in the router.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from billing_engine.core.exceptions import GatewayOperationNotSupportedError


class Currency(str, Enum):
    """Currencies the engine bills in."""

    USD = "USD"
    EUR = "EUR"
    AED = "AED"
    GBP = "GBP"
    CAD = "CAD"


class PaymentMethod(str, Enum):
    """Payment method kinds a subscriber can save."""

    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    CRYPTO = "CRYPTO"


class GatewayName(str, Enum):
    """Registered provider identifiers."""

    STRIPE = "stripe"
    PAYPAL = "paypal"
    CRYPTO = "crypto"


ALL_CURRENCIES: FrozenSet[str] = frozenset(c.value for c in Currency)


@dataclass
class GatewayConfig:
    """
    Static configuration of one adapter.

    is_active lets an operator disable a provider without removing it.
    """

    name: str
    is_active: bool = True
    supported_currencies: FrozenSet[str] = ALL_CURRENCIES
    supported_methods: FrozenSet[str] = frozenset()
    webhook_secret: Optional[str] = None


@dataclass
class PaymentRequest:
    """
    A single charge request.

    Amounts are in major units (e.g. 49.99), metadata holds primitives only.
    """

    amount: Decimal
    currency: str
    payment_method: str
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass
class PaymentResponse:
    """
    Outcome of a gateway operation.

    success=False with an error is a business decline or a structured
    router failure. It is never raised.

    requires_action=True means the provider accepted the request but the
    payer still has to finish it on payment_url (hosted checkout, PayPal
    approval, crypto charge). Nothing has been collected yet; the provider
    webhook reports the outcome later.
    """

    success: bool
    transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    gateway: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    requires_action: bool = False

    @property
    def collected(self) -> bool:
        """True only when the money has actually been taken."""
        return self.success and not self.requires_action

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "transaction_id": self.transaction_id,
            "payment_url": self.payment_url,
            "error": self.error,
            "error_code": self.error_code,
            "gateway": self.gateway,
            "metadata": dict(self.metadata),
            "requires_action": self.requires_action,
        }


@dataclass
class WebhookEvent:
    """A provider notification whose signature has been verified."""

    id: Optional[str]
    type: str
    data: Dict[str, Any]
    gateway: str
    timestamp: Optional[int] = None
    signature: Optional[str] = None


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to integer cents."""
    return int((Decimal(amount) * 100).to_integral_value())


class PaymentGatewayAdapter(ABC):
    """
    Abstract base class for payment provider adapters.

    WHY: Constructor-injected adapters keep the router free of provider
    specifics and let tests pass in fakes.

    Subclasses must implement initiate, check_status and verify_webhook.
    capture is optional; providers without a separate capture step inherit
    the default, which raises GatewayOperationNotSupportedError.
    """

    def __init__(self, config: GatewayConfig):
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    def supports(self, currency: str, payment_method: str) -> bool:
        """Check config activity and declared capabilities."""
        return (
            self.config.is_active
            and currency in self.config.supported_currencies
            and payment_method in self.config.supported_methods
        )

    @abstractmethod
    async def initiate(self, request: PaymentRequest) -> PaymentResponse:
        """
        Start (and where possible complete) a payment.

        Returns:
            PaymentResponse, success=False for a decline

        Raises:
            PaymentGatewayError: On infrastructure failure
        """

    async def capture(self, transaction_id: str) -> PaymentResponse:
        """
        Capture a previously authorised payment.

        Raises:
            GatewayOperationNotSupportedError: Provider has no capture step
        """
        raise GatewayOperationNotSupportedError(
            message=f"Capture not supported for gateway: {self.name}",
            gateway=self.name,
        )

    @abstractmethod
    async def check_status(self, transaction_id: str) -> PaymentResponse:
        """
        Look up the current state of a payment.

        Raises:
            PaymentGatewayError: On infrastructure failure
        """

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookEvent]:
        """
        Verify a webhook and parse it.

        Returns:
            WebhookEvent, or None if the signature is invalid. Never raises
            for a bad signature.
        """
