"""
Crypto checkout gateway adapter.

WHAT: Stablecoin payments through a hosted crypto-checkout REST API
(Coinbase Commerce compatible).

WHY: Covers the CRYPTO payment method. Fiat invoices are priced in the
billing currency and settled in a stablecoin chosen per currency. There
is no separate capture step: the provider confirms on-chain settlement
and reports it through webhooks or the charge timeline.

HOW: Charges API over httpx, API key header auth, HMAC-SHA256 webhook
signatures over the raw body.
"""

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from billing_engine.core.exceptions import PaymentGatewayError
from billing_engine.services.payment_gateways.base import (
    GatewayConfig,
    GatewayName,
    PaymentMethod,
    PaymentRequest,
    PaymentResponse,
    WebhookEvent,
)
from billing_engine.services.payment_gateways.http_adapter import HttpGatewayAdapter

logger = logging.getLogger(__name__)

API_VERSION = "2018-03-22"
SIGNATURE_HEADER = "x-cc-webhook-signature"

# Billing currency -> settlement stablecoin
CRYPTO_CURRENCY_MAP: Dict[str, str] = {
    "USD": "USDT",
    "EUR": "USDC",
    "AED": "USDT",
    "GBP": "USDC",
    "CAD": "USDT",
}
DEFAULT_CRYPTO_CURRENCY = "USDT"

# Timeline statuses that mean the payment settled
SETTLED_STATUSES = {"COMPLETED", "RESOLVED"}


def default_crypto_config(webhook_secret: Optional[str] = None) -> GatewayConfig:
    return GatewayConfig(
        name=GatewayName.CRYPTO.value,
        supported_methods=frozenset({PaymentMethod.CRYPTO.value}),
        webhook_secret=webhook_secret,
    )


def get_crypto_currency(fiat_currency: str) -> str:
    """Settlement coin for a billing currency."""
    return CRYPTO_CURRENCY_MAP.get(fiat_currency.upper(), DEFAULT_CRYPTO_CURRENCY)


def sign_payload(payload: bytes, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature of a webhook body."""
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class CryptoGateway(HttpGatewayAdapter):
    """Hosted crypto-checkout adapter."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        base_url: str = "https://api.commerce.coinbase.com",
        config: Optional[GatewayConfig] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            config or default_crypto_config(webhook_secret),
            base_url=base_url,
            transport=transport,
        )
        self.api_key = api_key
        self.webhook_secret = webhook_secret or self.config.webhook_secret
        self.return_url = return_url
        self.cancel_url = cancel_url

    def _headers(self) -> Dict[str, str]:
        return {
            "X-CC-Api-Key": self.api_key,
            "X-CC-Version": API_VERSION,
            "Content-Type": "application/json",
        }

    async def initiate(self, request: PaymentRequest) -> PaymentResponse:
        """
        Create a hosted charge and return its payment page.

        Raises:
            PaymentGatewayError: On infrastructure failure
        """
        crypto_currency = get_crypto_currency(request.currency)
        charge = {
            "name": request.description[:100],
            "description": request.description,
            "pricing_type": "fixed_price",
            "local_price": {
                "amount": f"{Decimal(request.amount):.2f}",
                "currency": request.currency,
            },
            "metadata": {
                **{k: v for k, v in request.metadata.items() if v is not None},
                "crypto_currency": crypto_currency,
            },
            "redirect_url": request.return_url or self.return_url,
            "cancel_url": request.cancel_url or self.cancel_url,
        }

        response = await self._request("POST", "/charges", json=charge, headers=self._headers())
        if response.status_code in (401, 403):
            raise PaymentGatewayError(
                message="Crypto provider rejected credentials",
                gateway=self.name,
                provider_status=response.status_code,
            )
        if response.status_code >= 400:
            body = self._json(response)
            error = self._object(body.get("error"), "error")
            return PaymentResponse(
                success=False,
                error=error.get("message", "Crypto charge rejected"),
                error_code=error.get("type", "charge_rejected"),
                gateway=self.name,
            )

        data = self._object(self._json(response).get("data"), "data")
        if not data.get("id"):
            raise PaymentGatewayError(
                message="Crypto provider returned a charge without id",
                gateway=self.name,
            )

        return PaymentResponse(
            success=True,
            transaction_id=data["id"],
            payment_url=data.get("hosted_url"),
            gateway=self.name,
            metadata={
                "charge_code": data.get("code"),
                "crypto_currency": crypto_currency,
                "expires_at": data.get("expires_at"),
            },
            requires_action=True,
        )

    async def check_status(self, transaction_id: str) -> PaymentResponse:
        """Read the latest status from the charge timeline."""
        response = await self._request("GET", f"/charges/{transaction_id}", headers=self._headers())
        if response.status_code == 404:
            return PaymentResponse(
                success=False,
                transaction_id=transaction_id,
                error="Charge not found",
                error_code="not_found",
                gateway=self.name,
            )
        if response.status_code >= 400:
            raise PaymentGatewayError(
                message="Crypto charge lookup failed",
                gateway=self.name,
                provider_status=response.status_code,
            )

        data = self._object(self._json(response).get("data"), "data")
        timeline = self._objects(data.get("timeline"), "timeline")
        status = timeline[-1].get("status", "NEW") if timeline else "NEW"
        return PaymentResponse(
            success=status in SETTLED_STATUSES,
            transaction_id=transaction_id,
            gateway=self.name,
            metadata={"status": status},
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookEvent]:
        """
        Verify the HMAC-SHA256 signature of a webhook body.

        Returns:
            WebhookEvent, or None on a missing or wrong signature
        """
        if signature is None and headers:
            signature = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER)
        if not self.webhook_secret or not signature:
            logger.warning("Crypto webhook rejected: missing secret or signature")
            return None

        expected = sign_payload(payload, self.webhook_secret)
        if not hmac.compare_digest(signature, expected):
            logger.warning("Crypto webhook signature verification failed")
            return None

        try:
            body: Dict[str, Any] = json.loads(payload)
        except ValueError:
            logger.warning("Crypto webhook rejected: body is not JSON")
            return None

        event = body.get("event") or body
        return WebhookEvent(
            id=event.get("id"),
            type=event.get("type", "unknown"),
            data=event.get("data") or {},
            gateway=self.name,
            signature=signature,
        )
