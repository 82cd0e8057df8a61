"""
Shared HTTP plumbing for REST-based gateway adapters.

WHY: PayPal and the crypto checkout provider are plain REST APIs. Both need
the same split between provider answers (returned to the adapter, which
decides decline vs success) and infrastructure failures (timeouts,
connection errors, 5xx, 429, unreadable JSON), which always become
PaymentGatewayError.

HOW: Uses httpx.AsyncClient per call with a bounded timeout. An optional
transport can be injected (httpx.MockTransport in tests).
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from billing_engine.core.exceptions import PaymentGatewayError
from billing_engine.services.payment_gateways.base import GatewayConfig, PaymentGatewayAdapter

logger = logging.getLogger(__name__)

# Default timeout for provider API calls (seconds)
DEFAULT_TIMEOUT = 30.0


class HttpGatewayAdapter(PaymentGatewayAdapter):
    """Base class for adapters that talk to a provider REST API."""

    def __init__(
        self,
        config: GatewayConfig,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(config)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request and screen out infrastructure failures.

        Returns:
            Response with a status below 500 (and not 429)

        Raises:
            PaymentGatewayError: Timeout, connection error, 5xx or 429
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            raise PaymentGatewayError(
                message=f"{self.name} API request timed out",
                gateway=self.name,
                endpoint=path,
            )
        except httpx.RequestError as e:
            raise PaymentGatewayError(
                message=f"{self.name} API connection error: {e}",
                gateway=self.name,
                endpoint=path,
            )

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(
                f"{self.name} API returned {response.status_code}",
                extra={"gateway": self.name, "endpoint": path},
            )
            raise PaymentGatewayError(
                message=f"{self.name} API unavailable (HTTP {response.status_code})",
                gateway=self.name,
                endpoint=path,
                provider_status=response.status_code,
            )

        return response

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        """
        Parse a JSON object body.

        Raises:
            PaymentGatewayError: If the body is not a JSON object
        """
        try:
            body = response.json()
        except ValueError:
            raise PaymentGatewayError(
                message=f"{self.name} API returned malformed JSON",
                gateway=self.name,
                provider_status=response.status_code,
            )
        if not isinstance(body, dict):
            raise PaymentGatewayError(
                message=f"{self.name} API returned an unexpected payload",
                gateway=self.name,
                provider_status=response.status_code,
            )
        return body

    def _object(self, value: Any, field: str) -> Dict[str, Any]:
        """
        Check a nested payload field that must be a JSON object.

        Returns:
            The object, or {} when the field is absent

        Raises:
            PaymentGatewayError: If the field holds anything else
        """
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise PaymentGatewayError(
                message=f"{self.name} API returned an unexpected {field}",
                gateway=self.name,
                field=field,
            )
        return value

    def _objects(self, value: Any, field: str) -> List[Dict[str, Any]]:
        """
        Check a nested payload field that must be a list of JSON objects.

        Returns:
            The list, or [] when the field is absent

        Raises:
            PaymentGatewayError: If the field or any entry has another type
        """
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
            raise PaymentGatewayError(
                message=f"{self.name} API returned an unexpected {field}",
                gateway=self.name,
                field=field,
            )
        return value
