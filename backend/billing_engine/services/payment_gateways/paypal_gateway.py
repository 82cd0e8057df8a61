"""
PayPal payment gateway adapter.

WHAT: PayPal wallet payments through the Orders v2 REST API.

WHY: PayPal covers the PAYPAL payment method:
1. Vaulted PayPal accounts are charged immediately for recurring billing
2. Without a vault id the subscriber is sent to the approval page
3. Approved orders are captured in a separate step
4. Webhooks are verified through PayPal's verification endpoint

HOW: OAuth2 client-credentials token (cached until shortly before expiry),
then JSON calls over httpx. 400/422 answers (e.g. INSTRUMENT_DECLINED)
are declines. 401/403 mean broken credentials and, like 5xx and network
errors, raise PaymentGatewayError.
"""

import json
import logging
import time
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

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"

# Headers PayPal signs webhooks with
WEBHOOK_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

# Refresh the token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN = 60


def default_paypal_config(webhook_id: Optional[str] = None) -> GatewayConfig:
    return GatewayConfig(
        name=GatewayName.PAYPAL.value,
        supported_methods=frozenset({PaymentMethod.PAYPAL.value}),
        webhook_secret=webhook_id,
    )


def format_amount(amount: Decimal) -> str:
    """PayPal expects a string with two decimals."""
    return f"{Decimal(amount):.2f}"


class PayPalGateway(HttpGatewayAdapter):
    """PayPal Orders v2 adapter."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: Optional[str] = None,
        sandbox: bool = True,
        config: Optional[GatewayConfig] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            config or default_paypal_config(webhook_id),
            base_url=SANDBOX_BASE_URL if sandbox else LIVE_BASE_URL,
            transport=transport,
        )
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id or self.config.webhook_secret
        self.return_url = return_url
        self.cancel_url = cancel_url
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    # ========================================================================
    # Authentication
    # ========================================================================

    async def _get_access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = await self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            raise PaymentGatewayError(
                message="PayPal authentication failed",
                gateway=self.name,
                provider_status=response.status_code,
            )

        body = self._json(response)
        token = body.get("access_token")
        if not token:
            raise PaymentGatewayError(
                message="PayPal token response missing access_token",
                gateway=self.name,
            )
        self._token = token
        self._token_expires_at = (
            time.monotonic() + int(body.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN
        )
        return token

    async def _api(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **kwargs.pop("headers", {}),
        }
        response = await self._request(method, path, headers=headers, **kwargs)
        if response.status_code in (401, 403):
            # Token revoked or credentials lack permission
            self._token = None
            raise PaymentGatewayError(
                message="PayPal rejected credentials",
                gateway=self.name,
                provider_status=response.status_code,
            )
        return response

    def _decline(self, response: httpx.Response, transaction_id: Optional[str] = None) -> PaymentResponse:
        body = self._json(response)
        details = self._objects(body.get("details"), "details")
        first = details[0] if details else {}
        issue = first.get("issue") or body.get("name") or "PAYMENT_DECLINED"
        message = first.get("description") or body.get("message") or "PayPal declined the payment"
        logger.info(
            f"PayPal declined payment: {issue}",
            extra={"gateway": self.name, "paypal_debug_id": body.get("debug_id")},
        )
        return PaymentResponse(
            success=False,
            transaction_id=transaction_id,
            error=message,
            error_code=issue,
            gateway=self.name,
        )

    # ========================================================================
    # Payments
    # ========================================================================

    async def initiate(self, request: PaymentRequest) -> PaymentResponse:
        """
        Create an order; vaulted accounts are captured in the same call.

        Raises:
            PaymentGatewayError: On infrastructure failure
        """
        order: Dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": request.currency,
                        "value": format_amount(request.amount),
                    },
                    "description": request.description[:127],
                }
            ],
        }
        if request.metadata.get("invoice_id") is not None:
            order["purchase_units"][0]["custom_id"] = str(request.metadata["invoice_id"])
        if request.payment_method_id:
            order["payment_source"] = {"paypal": {"vault_id": request.payment_method_id}}
        else:
            order["application_context"] = {
                "return_url": request.return_url or self.return_url,
                "cancel_url": request.cancel_url or self.cancel_url,
            }

        response = await self._api(
            "POST",
            "/v2/checkout/orders",
            json=order,
            headers={"Prefer": "return=representation"},
        )
        if response.status_code in (400, 422):
            return self._decline(response)
        if response.status_code not in (200, 201):
            raise PaymentGatewayError(
                message="PayPal order creation failed",
                gateway=self.name,
                provider_status=response.status_code,
            )

        body = self._json(response)
        status = body.get("status")
        links = self._objects(body.get("links"), "links")
        approve_url = next(
            (link.get("href") for link in links if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        metadata: Dict[str, Any] = {"order_id": body.get("id"), "status": status}

        if status == "COMPLETED":
            metadata["capture_id"] = self._capture_id(body)
            return PaymentResponse(
                success=True,
                transaction_id=body.get("id"),
                gateway=self.name,
                metadata=metadata,
            )

        # Buyer approval pending
        return PaymentResponse(
            success=True,
            transaction_id=body.get("id"),
            payment_url=approve_url,
            gateway=self.name,
            metadata=metadata,
            requires_action=True,
        )

    @staticmethod
    def _capture_id(body: Dict[str, Any]) -> Optional[str]:
        try:
            return body["purchase_units"][0]["payments"]["captures"][0]["id"]
        except (KeyError, IndexError, TypeError):
            return None

    async def capture(self, transaction_id: str) -> PaymentResponse:
        """Capture an approved order."""
        response = await self._api("POST", f"/v2/checkout/orders/{transaction_id}/capture", json={})
        if response.status_code in (400, 422):
            return self._decline(response, transaction_id)
        if response.status_code not in (200, 201):
            raise PaymentGatewayError(
                message="PayPal capture failed",
                gateway=self.name,
                provider_status=response.status_code,
            )

        body = self._json(response)
        return PaymentResponse(
            success=body.get("status") == "COMPLETED",
            transaction_id=body.get("id", transaction_id),
            gateway=self.name,
            metadata={"capture_id": self._capture_id(body), "status": body.get("status")},
        )

    async def check_status(self, transaction_id: str) -> PaymentResponse:
        """Retrieve an order."""
        response = await self._api("GET", f"/v2/checkout/orders/{transaction_id}")
        if response.status_code == 404:
            return PaymentResponse(
                success=False,
                transaction_id=transaction_id,
                error="Order not found",
                error_code="RESOURCE_NOT_FOUND",
                gateway=self.name,
            )
        if response.status_code != 200:
            raise PaymentGatewayError(
                message="PayPal order lookup failed",
                gateway=self.name,
                provider_status=response.status_code,
            )

        body = self._json(response)
        return PaymentResponse(
            success=body.get("status") == "COMPLETED",
            transaction_id=body.get("id", transaction_id),
            gateway=self.name,
            metadata={"status": body.get("status")},
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
        Verify a webhook through /v1/notifications/verify-webhook-signature.

        WHY: PayPal signs webhooks with a certificate chain. Delegating to
        PayPal's endpoint avoids fetching and validating certificates here.

        Returns:
            WebhookEvent, or None when verification fails for any reason
        """
        if not self.webhook_id:
            logger.warning("PayPal webhook rejected: no webhook id configured")
            return None

        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        if signature and "paypal-transmission-sig" not in lowered:
            lowered["paypal-transmission-sig"] = signature
        missing = [h for h in WEBHOOK_HEADERS.values() if h not in lowered]
        if missing:
            logger.warning(f"PayPal webhook rejected: missing headers {missing}")
            return None

        try:
            event = json.loads(payload)
        except ValueError:
            logger.warning("PayPal webhook rejected: body is not JSON")
            return None

        verification = {key: lowered[header] for key, header in WEBHOOK_HEADERS.items()}
        verification["webhook_id"] = self.webhook_id
        verification["webhook_event"] = event

        try:
            response = await self._api(
                "POST", "/v1/notifications/verify-webhook-signature", json=verification
            )
            result = self._json(response)
        except PaymentGatewayError as e:
            logger.warning(f"PayPal webhook verification unavailable: {e.message}")
            return None

        if result.get("verification_status") != "SUCCESS":
            logger.warning("PayPal webhook signature verification failed")
            return None

        return WebhookEvent(
            id=event.get("id"),
            type=event.get("event_type", "unknown"),
            data=event.get("resource") or {},
            gateway=self.name,
            signature=lowered["paypal-transmission-sig"],
        )
