"""
Stripe payment gateway adapter.

WHAT: Card payments through the official Stripe Python SDK.

WHY: Stripe handles CREDIT_CARD and DEBIT_CARD for every billing currency:
1. Off-session charges against a saved card for recurring billing
2. Hosted Checkout Sessions when no card is on file
3. Webhook signature verification for asynchronous status updates

HOW: The SDK is synchronous, so every call runs in asyncio.to_thread.
stripe.CardError is a decline (structured failure). Every other
stripe.StripeError (connection, rate limit, API, auth) is an
infrastructure failure and raises PaymentGatewayError so the router can
fail over.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from billing_engine.core.exceptions import PaymentGatewayError
from billing_engine.services.payment_gateways.base import (
    GatewayConfig,
    GatewayName,
    PaymentGatewayAdapter,
    PaymentMethod,
    PaymentRequest,
    PaymentResponse,
    WebhookEvent,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# Pin API version for stability
STRIPE_API_VERSION = "2023-10-16"

# PaymentIntent statuses that mean the off-session charge went through
SUCCESSFUL_INTENT_STATUSES = {"succeeded", "requires_capture", "processing"}


def default_stripe_config(webhook_secret: Optional[str] = None) -> GatewayConfig:
    return GatewayConfig(
        name=GatewayName.STRIPE.value,
        supported_methods=frozenset(
            {PaymentMethod.CREDIT_CARD.value, PaymentMethod.DEBIT_CARD.value}
        ),
        webhook_secret=webhook_secret,
    )


class StripeGateway(PaymentGatewayAdapter):
    """
    Stripe adapter.

    The API key is passed per request rather than set on the stripe module,
    so several adapters (e.g. tests) never share global SDK state.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        config: Optional[GatewayConfig] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ):
        super().__init__(config or default_stripe_config(webhook_secret))
        self.api_key = api_key
        self.webhook_secret = webhook_secret or self.config.webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url

    async def _call(self, func, *args, **kwargs) -> Any:
        """Run a blocking SDK call off the event loop."""
        kwargs.setdefault("api_key", self.api_key)
        kwargs.setdefault("stripe_version", STRIPE_API_VERSION)
        return await asyncio.to_thread(func, *args, **kwargs)

    # ========================================================================
    # Payments
    # ========================================================================

    async def initiate(self, request: PaymentRequest) -> PaymentResponse:
        """
        Charge a saved card off-session, or open a hosted Checkout Session.

        Args:
            request: Payment request

        Returns:
            PaymentResponse (success=False on card decline)

        Raises:
            PaymentGatewayError: On any non-decline Stripe failure
        """
        try:
            if request.payment_method_id:
                return await self._charge_saved_card(request)
            return await self._create_checkout_session(request)
        except stripe.CardError as e:
            logger.info(
                f"Stripe declined payment: {e.code}",
                extra={"decline_code": getattr(e, "decline_code", None), "gateway": self.name},
            )
            return PaymentResponse(
                success=False,
                error=e.user_message or "Card declined",
                error_code=e.code or "card_declined",
                gateway=self.name,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe payment error: {e}", extra={"gateway": self.name})
            raise PaymentGatewayError(
                message="Stripe payment request failed",
                gateway=self.name,
                provider_error=str(e),
            )

    async def _charge_saved_card(self, request: PaymentRequest) -> PaymentResponse:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=to_minor_units(request.amount),
            currency=request.currency.lower(),
            customer=request.customer_id,
            payment_method=request.payment_method_id,
            description=request.description,
            metadata={k: str(v) for k, v in request.metadata.items() if v is not None},
            off_session=True,
            confirm=True,
        )

        succeeded = intent.status in SUCCESSFUL_INTENT_STATUSES
        return PaymentResponse(
            success=succeeded,
            transaction_id=intent.id,
            error=None if succeeded else f"Payment not completed (status: {intent.status})",
            error_code=None if succeeded else intent.status,
            gateway=self.name,
            metadata={"status": intent.status},
        )

    async def _create_checkout_session(self, request: PaymentRequest) -> PaymentResponse:
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            customer=request.customer_id,
            line_items=[
                {
                    "price_data": {
                        "currency": request.currency.lower(),
                        "product_data": {"name": request.description},
                        "unit_amount": to_minor_units(request.amount),
                    },
                    "quantity": 1,
                }
            ],
            success_url=request.return_url or self.success_url,
            cancel_url=request.cancel_url or self.cancel_url,
            metadata={k: str(v) for k, v in request.metadata.items() if v is not None},
        )

        # Nothing is collected until the payer completes the hosted page
        return PaymentResponse(
            success=True,
            transaction_id=session["id"],
            payment_url=session.get("url"),
            gateway=self.name,
            metadata={"session_id": session["id"], "status": "requires_action"},
            requires_action=True,
        )

    async def capture(self, transaction_id: str) -> PaymentResponse:
        """Capture an authorised PaymentIntent."""
        try:
            intent = await self._call(stripe.PaymentIntent.capture, transaction_id)
        except stripe.CardError as e:
            return PaymentResponse(
                success=False,
                transaction_id=transaction_id,
                error=e.user_message or "Capture declined",
                error_code=e.code,
                gateway=self.name,
            )
        except stripe.StripeError as e:
            raise PaymentGatewayError(
                message="Stripe capture failed",
                gateway=self.name,
                provider_error=str(e),
            )

        return PaymentResponse(
            success=intent.status == "succeeded",
            transaction_id=intent.id,
            gateway=self.name,
            metadata={"status": intent.status},
        )

    async def check_status(self, transaction_id: str) -> PaymentResponse:
        """
        Retrieve a PaymentIntent (pi_...) or Checkout Session (cs_...).
        """
        try:
            if transaction_id.startswith("cs_"):
                session = await self._call(stripe.checkout.Session.retrieve, transaction_id)
                return PaymentResponse(
                    success=session.payment_status == "paid",
                    transaction_id=session.id,
                    payment_url=session.url,
                    gateway=self.name,
                    metadata={"status": session.status, "payment_status": session.payment_status},
                )

            intent = await self._call(stripe.PaymentIntent.retrieve, transaction_id)
        except stripe.StripeError as e:
            raise PaymentGatewayError(
                message="Stripe status lookup failed",
                gateway=self.name,
                provider_error=str(e),
            )

        return PaymentResponse(
            success=intent.status == "succeeded",
            transaction_id=intent.id,
            gateway=self.name,
            metadata={"status": intent.status},
        )

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookEvent]:
        """
        Verify the Stripe-Signature header and parse the event.

        Returns:
            WebhookEvent, or None if the signature is missing or invalid
        """
        if not self.webhook_secret or not signature:
            logger.warning("Stripe webhook rejected: missing secret or signature")
            return None

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning(f"Stripe webhook signature verification failed: {e}")
            return None

        # Read fields from the verified raw body rather than the SDK object
        body: Dict[str, Any] = json.loads(payload)
        return WebhookEvent(
            id=event.id,
            type=event.type,
            data=body.get("data", {}).get("object", {}),
            gateway=self.name,
            timestamp=body.get("created"),
            signature=signature,
        )
