"""Payment gateway adapters and the failover router."""

from billing_engine.services.payment_gateways.base import (
    Currency,
    GatewayConfig,
    GatewayName,
    PaymentGatewayAdapter,
    PaymentMethod,
    PaymentRequest,
    PaymentResponse,
    WebhookEvent,
)
from billing_engine.services.payment_gateways.router import (
    GATEWAY_UNAVAILABLE,
    NO_GATEWAY_AVAILABLE,
    PaymentRouter,
    build_payment_router,
    get_payment_router,
)

__all__ = [
    "Currency",
    "GatewayConfig",
    "GatewayName",
    "PaymentGatewayAdapter",
    "PaymentMethod",
    "PaymentRequest",
    "PaymentResponse",
    "WebhookEvent",
    "GATEWAY_UNAVAILABLE",
    "NO_GATEWAY_AVAILABLE",
    "PaymentRouter",
    "build_payment_router",
    "get_payment_router",
]
