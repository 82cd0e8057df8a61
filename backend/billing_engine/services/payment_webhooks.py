"""
Provider webhook interpretation.

WHAT: Maps verified provider notifications to "invoice X was paid with
reference Y".

WHY: Hosted checkouts (Stripe Checkout, PayPal approval, crypto charges)
complete outside the billing request. The provider's webhook is the only
signal that the invoice can be marked paid. Every provider shapes its
payload differently, so the mapping lives in one place.

HOW: Each adapter puts the invoice id in the provider's metadata slot
when the payment is initiated. Here we read it back from the verified
event for the event types that mean "money captured".
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from billing_engine.services.payment_gateways.base import GatewayName, WebhookEvent

logger = logging.getLogger(__name__)


PAID_EVENT_TYPES = {
    GatewayName.STRIPE.value: {"payment_intent.succeeded", "checkout.session.completed"},
    GatewayName.PAYPAL.value: {"PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED"},
    GatewayName.CRYPTO.value: {"charge:confirmed", "charge:resolved"},
}


@dataclass
class WebhookPayment:
    """A captured payment attributed to an invoice."""

    invoice_id: int
    payment_reference: str
    gateway: str


def _parse_invoice_id(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _stripe_payment(data: Dict[str, Any]) -> Optional[WebhookPayment]:
    invoice_id = _parse_invoice_id((data.get("metadata") or {}).get("invoice_id"))
    reference = data.get("payment_intent") or data.get("id")
    if invoice_id is None or not reference:
        return None
    return WebhookPayment(invoice_id, str(reference), GatewayName.STRIPE.value)


def _paypal_payment(data: Dict[str, Any]) -> Optional[WebhookPayment]:
    custom_id = data.get("custom_id")
    if custom_id is None:
        units = data.get("purchase_units") or [{}]
        custom_id = units[0].get("custom_id")
    invoice_id = _parse_invoice_id(custom_id)
    reference = data.get("id")
    if invoice_id is None or not reference:
        return None
    return WebhookPayment(invoice_id, str(reference), GatewayName.PAYPAL.value)


def _crypto_payment(data: Dict[str, Any]) -> Optional[WebhookPayment]:
    invoice_id = _parse_invoice_id((data.get("metadata") or {}).get("invoice_id"))
    reference = data.get("code") or data.get("id")
    if invoice_id is None or not reference:
        return None
    return WebhookPayment(invoice_id, str(reference), GatewayName.CRYPTO.value)


_EXTRACTORS = {
    GatewayName.STRIPE.value: _stripe_payment,
    GatewayName.PAYPAL.value: _paypal_payment,
    GatewayName.CRYPTO.value: _crypto_payment,
}


def extract_invoice_payment(event: WebhookEvent) -> Optional[WebhookPayment]:
    """
    Extract the paid invoice from a verified webhook event.

    Returns:
        WebhookPayment, or None when the event is not a captured payment
        or carries no invoice reference
    """
    if event.type not in PAID_EVENT_TYPES.get(event.gateway, set()):
        return None

    payment = _EXTRACTORS[event.gateway](event.data or {})
    if payment is None:
        logger.info(
            f"{event.gateway} event {event.type} has no invoice reference",
            extra={"gateway": event.gateway, "event_id": event.id},
        )
    return payment
