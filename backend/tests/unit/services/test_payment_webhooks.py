"""
Unit tests for webhook payment extraction.

WHY: Each provider reports a captured payment in its own shape. The
invoice reference must be found in all of them, and nothing else may be
mistaken for a payment.
"""

import pytest

from billing_engine.services.payment_gateways.base import WebhookEvent
from billing_engine.services.payment_webhooks import extract_invoice_payment


def make_event(gateway, event_type, data):
    return WebhookEvent(id="evt_1", type=event_type, data=data, gateway=gateway)


class TestExtractInvoicePayment:
    def test_stripe_payment_intent(self):
        payment = extract_invoice_payment(make_event(
            "stripe", "payment_intent.succeeded", {"id": "pi_1", "metadata": {"invoice_id": "42"}}
        ))

        assert payment.invoice_id == 42
        assert payment.payment_reference == "pi_1"

    def test_stripe_checkout_session_uses_payment_intent(self):
        payment = extract_invoice_payment(make_event(
            "stripe",
            "checkout.session.completed",
            {"id": "cs_1", "payment_intent": "pi_9", "metadata": {"invoice_id": "42"}},
        ))

        assert payment.payment_reference == "pi_9"

    def test_paypal_capture(self):
        payment = extract_invoice_payment(make_event(
            "paypal", "PAYMENT.CAPTURE.COMPLETED", {"id": "CAP-1", "custom_id": "7"}
        ))

        assert payment.invoice_id == 7
        assert payment.gateway == "paypal"

    def test_paypal_order_purchase_units(self):
        payment = extract_invoice_payment(make_event(
            "paypal",
            "CHECKOUT.ORDER.COMPLETED",
            {"id": "ORDER-1", "purchase_units": [{"custom_id": "8"}]},
        ))

        assert payment.invoice_id == 8

    def test_crypto_charge_uses_code(self):
        payment = extract_invoice_payment(make_event(
            "crypto", "charge:confirmed", {"id": "ch_1", "code": "ABC", "metadata": {"invoice_id": 3}}
        ))

        assert payment.invoice_id == 3
        assert payment.payment_reference == "ABC"

    @pytest.mark.parametrize(
        "gateway,event_type,data",
        [
            ("stripe", "payment_intent.payment_failed", {"id": "pi_1", "metadata": {"invoice_id": "1"}}),
            ("stripe", "payment_intent.succeeded", {"id": "pi_1", "metadata": {}}),
            ("stripe", "payment_intent.succeeded", {"id": "pi_1", "metadata": {"invoice_id": "abc"}}),
            ("crypto", "charge:created", {"id": "ch_1", "metadata": {"invoice_id": 1}}),
            ("unknown", "payment_intent.succeeded", {"id": "pi_1", "metadata": {"invoice_id": "1"}}),
        ],
    )
    def test_not_a_payment(self, gateway, event_type, data):
        assert extract_invoice_payment(make_event(gateway, event_type, data)) is None
