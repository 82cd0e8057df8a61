"""
Unit tests for the payment router.

WHAT: Gateway selection, failover and structured failures.

WHY: A provider outage must move payments to the next eligible provider,
but a declined card must never be charged again somewhere else.
"""

import httpx
import pytest
from decimal import Decimal

from billing_engine.core.exceptions import (
    GatewayNotConfiguredError,
    GatewayOperationNotSupportedError,
)
from billing_engine.services.payment_gateways import PaymentRouter
from billing_engine.services.payment_gateways.base import PaymentRequest
from billing_engine.services.payment_gateways.paypal_gateway import PayPalGateway
from billing_engine.services.payment_gateways.router import (
    GATEWAY_UNAVAILABLE,
    NO_GATEWAY_AVAILABLE,
)
from tests.fakes import CRASH, DECLINE, ERROR, FakeGateway


def make_request(currency="USD", payment_method="CREDIT_CARD") -> PaymentRequest:
    return PaymentRequest(
        amount=Decimal("54.00"),
        currency=currency,
        payment_method=payment_method,
        description="Pro subscription (monthly)",
        metadata={"invoice_id": 1},
    )


class TestGatewaySelection:
    """Tests for eligibility and ordering."""

    def test_available_gateways_in_registration_order(self):
        router = PaymentRouter([
            FakeGateway("stripe"),
            FakeGateway("paypal", methods=("PAYPAL", "CREDIT_CARD")),
            FakeGateway("crypto", methods=("CRYPTO",)),
        ])

        assert router.get_available_gateways("USD", "CREDIT_CARD") == ["stripe", "paypal"]
        assert router.get_available_gateways("USD", "CRYPTO") == ["crypto"]

    def test_inactive_and_unsupported_currency_are_skipped(self):
        router = PaymentRouter([
            FakeGateway("stripe", is_active=False),
            FakeGateway("paypal", methods=("CREDIT_CARD",), currencies=("USD",)),
        ])

        assert router.get_available_gateways("USD", "CREDIT_CARD") == ["paypal"]
        assert router.get_available_gateways("AED", "CREDIT_CARD") == []
        assert router.is_gateway_available("stripe") is False
        assert router.is_gateway_available("missing") is False

    def test_duplicate_adapter_names_rejected(self):
        with pytest.raises(ValueError):
            PaymentRouter([FakeGateway("stripe"), FakeGateway("stripe")])

    @pytest.mark.asyncio
    async def test_preferred_gateway_tried_first(self):
        stripe = FakeGateway("stripe")
        paypal = FakeGateway("paypal")
        router = PaymentRouter([stripe, paypal])

        response = await router.process_payment(make_request(), preferred_gateway="paypal")

        assert response.success is True
        assert response.gateway == "paypal"
        assert stripe.requests == []

    @pytest.mark.asyncio
    async def test_ineligible_preference_is_ignored(self):
        stripe = FakeGateway("stripe")
        crypto = FakeGateway("crypto", methods=("CRYPTO",))
        router = PaymentRouter([stripe, crypto])

        response = await router.process_payment(make_request(), preferred_gateway="crypto")

        assert response.gateway == "stripe"
        assert crypto.requests == []


class TestFailover:
    """Tests for failover between providers."""

    @pytest.mark.asyncio
    async def test_infrastructure_error_moves_to_next(self):
        """
        Test failover on a provider outage.

        WHY: An unreachable provider says nothing about the card.
        """
        stripe = FakeGateway("stripe", outcomes=[ERROR])
        paypal = FakeGateway("paypal")
        router = PaymentRouter([stripe, paypal])

        response = await router.process_payment(make_request())

        assert response.success is True
        assert response.gateway == "paypal"
        assert len(stripe.requests) == 1
        assert len(paypal.requests) == 1

    @pytest.mark.asyncio
    async def test_failover_walks_candidates_in_order(self):
        call_log = []
        router = PaymentRouter([
            FakeGateway("stripe", outcomes=[ERROR], call_log=call_log),
            FakeGateway("paypal", methods=("CREDIT_CARD",), outcomes=[ERROR], call_log=call_log),
            FakeGateway("crypto", methods=("CREDIT_CARD",), call_log=call_log),
        ])

        response = await router.process_payment(make_request())

        assert call_log == ["stripe", "paypal", "crypto"]
        assert response.success is True
        assert response.gateway == "crypto"
        assert response.transaction_id == "crypto_txn_1"

    @pytest.mark.asyncio
    async def test_preferred_gateway_outage_falls_back_in_order(self):
        call_log = []
        router = PaymentRouter([
            FakeGateway("stripe", outcomes=[ERROR], call_log=call_log),
            FakeGateway("paypal", methods=("CREDIT_CARD",), call_log=call_log),
            FakeGateway("crypto", methods=("CREDIT_CARD",), outcomes=[ERROR], call_log=call_log),
        ])

        response = await router.process_payment(make_request(), preferred_gateway="crypto")

        assert call_log == ["crypto", "stripe", "paypal"]
        assert response.gateway == "paypal"

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_moves_to_next(self):
        """
        Test failover when an adapter raises a plain exception.

        WHY: process_payment must always return a PaymentResponse. A bug
        in one adapter takes that provider out of the run, not the batch.
        """
        stripe = FakeGateway("stripe", outcomes=[CRASH])
        paypal = FakeGateway("paypal")
        router = PaymentRouter([stripe, paypal])

        response = await router.process_payment(make_request())

        assert response.success is True
        assert response.gateway == "paypal"
        assert len(stripe.requests) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_on_last_gateway_is_structured(self):
        router = PaymentRouter([FakeGateway("stripe", default=CRASH)])

        response = await router.process_payment(make_request())

        assert response.success is False
        assert response.error_code == GATEWAY_UNAVAILABLE
        assert response.error == "Gateway stripe failed unexpectedly"

    @pytest.mark.asyncio
    async def test_unreadable_paypal_decline_fails_over(self):
        """
        Test a PayPal 422 whose details are plain strings.

        WHY: The adapter cannot tell what happened, so the backup
        provider gets the payment instead of the caller getting a crash.
        """

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
            return httpx.Response(
                422, json={"name": "UNPROCESSABLE_ENTITY", "details": ["INSTRUMENT_DECLINED"]}
            )

        paypal = PayPalGateway(
            client_id="client", client_secret="secret", transport=httpx.MockTransport(handler)
        )
        backup = FakeGateway("backup", methods=("PAYPAL",))
        router = PaymentRouter([paypal, backup])

        response = await router.process_payment(make_request(payment_method="PAYPAL"))

        assert response.success is True
        assert response.gateway == "backup"
        assert len(backup.requests) == 1

    @pytest.mark.asyncio
    async def test_decline_is_final(self):
        """
        Test that a decline does not fail over.

        WHY: Charging a declined card at another provider is a retry,
        and retries belong to dunning.
        """
        stripe = FakeGateway("stripe", outcomes=[DECLINE])
        paypal = FakeGateway("paypal")
        router = PaymentRouter([stripe, paypal])

        response = await router.process_payment(make_request())

        assert response.success is False
        assert response.error_code == "card_declined"
        assert response.gateway == "stripe"
        assert paypal.requests == []

    @pytest.mark.asyncio
    async def test_all_gateways_failing(self):
        router = PaymentRouter([
            FakeGateway("stripe", default=ERROR),
            FakeGateway("paypal", default=ERROR),
        ])

        response = await router.process_payment(make_request())

        assert response.success is False
        assert response.error_code == GATEWAY_UNAVAILABLE
        assert response.error == "paypal unavailable"

    @pytest.mark.asyncio
    async def test_no_eligible_gateway(self):
        router = PaymentRouter([FakeGateway("stripe")])

        response = await router.process_payment(make_request(payment_method="CRYPTO"))

        assert response.success is False
        assert response.error_code == NO_GATEWAY_AVAILABLE
        assert response.metadata["payment_method"] == "CRYPTO"

    @pytest.mark.asyncio
    async def test_response_annotated(self):
        router = PaymentRouter([FakeGateway("stripe")])

        response = await router.process_payment(make_request(currency="EUR"))

        assert response.metadata["gateway"] == "stripe"
        assert response.metadata["currency"] == "EUR"
        assert response.metadata["payment_method"] == "CREDIT_CARD"
        assert response.metadata["status"] == "succeeded"


class TestGatewayOperations:
    """Tests for capture, status and webhook dispatch."""

    @pytest.mark.asyncio
    async def test_capture_unknown_gateway(self):
        router = PaymentRouter([FakeGateway("stripe")])

        with pytest.raises(GatewayNotConfiguredError):
            await router.capture_payment("paypal", "txn_1")

    @pytest.mark.asyncio
    async def test_capture_not_supported(self):
        router = PaymentRouter([FakeGateway("stripe")])

        with pytest.raises(GatewayOperationNotSupportedError):
            await router.capture_payment("stripe", "txn_1")

    @pytest.mark.asyncio
    async def test_check_status(self):
        router = PaymentRouter([FakeGateway("stripe")])

        response = await router.check_payment_status("stripe", "txn_1")

        assert response.success is True
        assert response.gateway == "stripe"

    @pytest.mark.asyncio
    async def test_webhook_for_unknown_gateway(self):
        router = PaymentRouter([FakeGateway("stripe")])

        assert await router.verify_webhook("paypal", b"{}", "sig") is None


class TestConvertCurrency:
    def test_same_currency_unchanged(self):
        assert PaymentRouter.convert_currency(Decimal("10.00"), "EUR", "EUR") == Decimal("10.00")

    def test_converts_through_usd(self):
        assert PaymentRouter.convert_currency(Decimal("100"), "USD", "EUR") == Decimal("85.00")
        assert PaymentRouter.convert_currency(Decimal("85"), "EUR", "USD") == Decimal("100.00")
