"""
Payment router.

WHAT: Selects a payment gateway for each request and fails over between
providers on infrastructure errors.

WHY: Billing must not stop because one provider is down:
1. Requests go to an eligible provider (active, supports currency+method)
2. The subscriber's preferred provider is tried first
3. Infrastructure failures move on to the next eligible provider
4. Declines are final; retrying a declined card elsewhere is dunning's job

HOW: Adapters are constructor-injected in a stable registration order.
Failover is an explicit loop over the remaining candidates. An adapter that
raises anything other than PaymentGatewayError (a parsing bug, an SDK
surprise) is treated as an outage of that provider too. No exception
leaves process_payment: callers always get a PaymentResponse.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from billing_engine.core.config import Settings, settings as default_settings
from billing_engine.core.exceptions import GatewayNotConfiguredError, PaymentGatewayError
from billing_engine.services.payment_gateways.base import (
    GatewayConfig,
    PaymentGatewayAdapter,
    PaymentRequest,
    PaymentResponse,
    WebhookEvent,
)
from billing_engine.services.payment_gateways.crypto_gateway import CryptoGateway
from billing_engine.services.payment_gateways.paypal_gateway import PayPalGateway
from billing_engine.services.payment_gateways.stripe_gateway import StripeGateway
from billing_engine.services.tax_service import quantize_money

logger = logging.getLogger(__name__)

NO_GATEWAY_AVAILABLE = "no_gateway_available"
GATEWAY_UNAVAILABLE = "gateway_unavailable"

# Advisory units per USD
EXCHANGE_RATES: Dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.85"),
    "AED": Decimal("3.67"),
    "GBP": Decimal("0.73"),
    "CAD": Decimal("1.25"),
}


class PaymentRouter:
    """
    Routes payment requests to gateway adapters with failover.
    """

    def __init__(self, adapters: Iterable[PaymentGatewayAdapter]):
        self._adapters: Dict[str, PaymentGatewayAdapter] = {}
        for adapter in adapters:
            if adapter.name in self._adapters:
                raise ValueError(f"Duplicate gateway adapter: {adapter.name}")
            self._adapters[adapter.name] = adapter

    # ========================================================================
    # Gateway lookup
    # ========================================================================

    def get_available_gateways(self, currency: str, payment_method: str) -> List[str]:
        """Names of eligible gateways in registration order."""
        return [
            name
            for name, adapter in self._adapters.items()
            if adapter.supports(currency, payment_method)
        ]

    def get_gateway_config(self, gateway: str) -> Optional[GatewayConfig]:
        adapter = self._adapters.get(gateway)
        return adapter.config if adapter else None

    def is_gateway_available(self, gateway: str) -> bool:
        adapter = self._adapters.get(gateway)
        return adapter is not None and adapter.config.is_active

    @property
    def gateway_names(self) -> List[str]:
        return list(self._adapters)

    def _get_adapter(self, gateway: str) -> PaymentGatewayAdapter:
        adapter = self._adapters.get(gateway)
        if adapter is None:
            raise GatewayNotConfiguredError(
                message=f"Payment gateway not configured: {gateway}",
                gateway=gateway,
            )
        return adapter

    # ========================================================================
    # Payments
    # ========================================================================

    async def process_payment(
        self,
        request: PaymentRequest,
        preferred_gateway: Optional[str] = None,
    ) -> PaymentResponse:
        """
        Process a payment through the best eligible gateway.

        Args:
            request: Payment request
            preferred_gateway: Gateway to try first if eligible

        Returns:
            PaymentResponse annotated with gateway, currency and method.
            Structured failures use error_code "no_gateway_available"
            (nothing eligible) or "gateway_unavailable" (all failed).
        """
        candidates = self.get_available_gateways(request.currency, request.payment_method)
        if not candidates:
            logger.warning(
                "No payment gateway available",
                extra={"currency": request.currency, "payment_method": request.payment_method},
            )
            return self._annotate(
                PaymentResponse(
                    success=False,
                    error="No available payment gateways for the specified currency and payment method",
                    error_code=NO_GATEWAY_AVAILABLE,
                ),
                request,
            )

        preferred = preferred_gateway if preferred_gateway in candidates else None
        last_error: Optional[PaymentGatewayError] = None

        while candidates:
            gateway = preferred or candidates[0]
            preferred = None
            candidates.remove(gateway)

            try:
                response = await self._adapters[gateway].initiate(request)
            except PaymentGatewayError as e:
                last_error = e
                logger.warning(
                    f"Gateway {gateway} failed, trying fallback: {candidates[0] if candidates else 'none'}",
                    extra={"gateway": gateway, "error": e.message},
                )
                continue
            except Exception:
                logger.exception(
                    f"Gateway {gateway} raised unexpectedly, trying fallback: "
                    f"{candidates[0] if candidates else 'none'}",
                    extra={"gateway": gateway},
                )
                last_error = PaymentGatewayError(
                    message=f"Gateway {gateway} failed unexpectedly",
                    gateway=gateway,
                )
                continue

            response.gateway = gateway
            return self._annotate(response, request)

        logger.error(
            "All payment gateways failed",
            extra={"currency": request.currency, "payment_method": request.payment_method},
        )
        return self._annotate(
            PaymentResponse(
                success=False,
                error=last_error.message if last_error else "Payment gateways unavailable",
                error_code=GATEWAY_UNAVAILABLE,
            ),
            request,
        )

    @staticmethod
    def _annotate(response: PaymentResponse, request: PaymentRequest) -> PaymentResponse:
        response.metadata = {
            **response.metadata,
            "gateway": response.gateway,
            "currency": request.currency,
            "payment_method": request.payment_method,
        }
        return response

    async def capture_payment(self, gateway: str, transaction_id: str) -> PaymentResponse:
        """
        Capture an authorised payment on a specific gateway.

        Raises:
            GatewayNotConfiguredError: Unknown gateway
            GatewayOperationNotSupportedError: Gateway has no capture step
            PaymentGatewayError: Infrastructure failure
        """
        response = await self._get_adapter(gateway).capture(transaction_id)
        response.gateway = gateway
        return response

    async def check_payment_status(self, gateway: str, transaction_id: str) -> PaymentResponse:
        """Look up a payment on a specific gateway."""
        response = await self._get_adapter(gateway).check_status(transaction_id)
        response.gateway = gateway
        return response

    async def verify_webhook(
        self,
        gateway: str,
        payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookEvent]:
        """Verify a webhook for a gateway; None for unknown gateways or bad signatures."""
        adapter = self._adapters.get(gateway)
        if adapter is None:
            return None
        return await adapter.verify_webhook(payload, signature, headers)

    @staticmethod
    def convert_currency(amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        """
        Convert between billing currencies using the static advisory table.

        Unknown currencies are treated as USD.
        """
        amount = Decimal(str(amount))
        if from_currency == to_currency:
            return amount
        from_rate = EXCHANGE_RATES.get(from_currency, Decimal("1"))
        to_rate = EXCHANGE_RATES.get(to_currency, Decimal("1"))
        return quantize_money(amount / from_rate * to_rate)


def build_payment_router(config: Optional[Settings] = None) -> PaymentRouter:
    """
    Build a router with every gateway whose credentials are configured.

    Registration order (Stripe, PayPal, Crypto) is the fallback order.
    """
    config = config or default_settings
    success_url = f"{config.FRONTEND_URL}/billing/payment/success"
    cancel_url = f"{config.FRONTEND_URL}/billing/payment/cancel"
    adapters: List[PaymentGatewayAdapter] = []

    if config.stripe_enabled:
        adapters.append(
            StripeGateway(
                api_key=config.STRIPE_SECRET_KEY,
                webhook_secret=config.STRIPE_WEBHOOK_SECRET,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        )
    if config.paypal_enabled:
        adapters.append(
            PayPalGateway(
                client_id=config.PAYPAL_CLIENT_ID,
                client_secret=config.PAYPAL_CLIENT_SECRET,
                webhook_id=config.PAYPAL_WEBHOOK_ID,
                sandbox=config.PAYPAL_SANDBOX,
                return_url=success_url,
                cancel_url=cancel_url,
            )
        )
    if config.crypto_enabled:
        adapters.append(
            CryptoGateway(
                api_key=config.CRYPTO_API_KEY,
                webhook_secret=config.CRYPTO_WEBHOOK_SECRET,
                base_url=config.CRYPTO_API_BASE_URL,
                return_url=success_url,
                cancel_url=cancel_url,
            )
        )

    logger.info(f"Payment router configured with gateways: {[a.name for a in adapters]}")
    return PaymentRouter(adapters)


_payment_router: Optional[PaymentRouter] = None


def get_payment_router() -> PaymentRouter:
    """
    Get or create the global payment router.

    WHY: Adapters hold cached OAuth tokens; sharing one router reuses them.
    """
    global _payment_router

    if _payment_router is None:
        _payment_router = build_payment_router()

    return _payment_router
