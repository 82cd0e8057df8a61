"""
Test doubles for payment providers and time.

WHY: The billing flows depend on two things tests must control exactly:
what the payment provider answers and what time it is. The fakes here
implement the real interfaces, so services under test cannot tell them
apart from production collaborators.
"""

import json
from datetime import datetime, timedelta
from typing import Iterable, List, Mapping, Optional

from billing_engine.core.exceptions import PaymentGatewayError
from billing_engine.services.payment_gateways.base import (
    ALL_CURRENCIES,
    GatewayConfig,
    PaymentGatewayAdapter,
    PaymentRequest,
    PaymentResponse,
    WebhookEvent,
)

SUCCESS = "success"
DECLINE = "decline"
ERROR = "error"
# Adapter bug: raises something other than PaymentGatewayError
CRASH = "crash"
# Hosted checkout opened, payer has not paid yet
REQUIRES_ACTION = "requires_action"

# Signature accepted by FakeGateway.verify_webhook
VALID_SIGNATURE = "valid-signature"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeGateway(PaymentGatewayAdapter):
    """
    Scriptable gateway adapter.

    Each initiate() call consumes the next scripted outcome (see the
    outcome constants above); once the script is exhausted `default`
    applies. A shared `call_log` records the order adapters were tried in.
    """

    def __init__(
        self,
        name: str = "fake",
        methods: Iterable[str] = ("CREDIT_CARD", "DEBIT_CARD"),
        currencies: Iterable[str] = ALL_CURRENCIES,
        outcomes: Optional[List[str]] = None,
        default: str = SUCCESS,
        is_active: bool = True,
        call_log: Optional[List[str]] = None,
    ):
        super().__init__(
            GatewayConfig(
                name=name,
                is_active=is_active,
                supported_currencies=frozenset(currencies),
                supported_methods=frozenset(methods),
            )
        )
        self.outcomes = list(outcomes or [])
        self.default = default
        self.requests: List[PaymentRequest] = []
        self.call_log = call_log

    def script(self, *outcomes: str) -> None:
        self.outcomes.extend(outcomes)

    async def initiate(self, request: PaymentRequest) -> PaymentResponse:
        self.requests.append(request)
        if self.call_log is not None:
            self.call_log.append(self.name)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default

        if outcome == ERROR:
            raise PaymentGatewayError(message=f"{self.name} unavailable", gateway=self.name)
        if outcome == CRASH:
            raise RuntimeError(f"{self.name} adapter crashed")
        if outcome == REQUIRES_ACTION:
            return PaymentResponse(
                success=True,
                transaction_id=f"{self.name}_session_{len(self.requests)}",
                payment_url=f"https://pay.example.com/{self.name}/{len(self.requests)}",
                gateway=self.name,
                metadata={"status": "requires_action"},
                requires_action=True,
            )
        if outcome == DECLINE:
            return PaymentResponse(
                success=False,
                error="Your card was declined",
                error_code="card_declined",
                gateway=self.name,
            )
        return PaymentResponse(
            success=True,
            transaction_id=f"{self.name}_txn_{len(self.requests)}",
            gateway=self.name,
            metadata={"status": "succeeded"},
        )

    async def check_status(self, transaction_id: str) -> PaymentResponse:
        return PaymentResponse(
            success=True,
            transaction_id=transaction_id,
            gateway=self.name,
            metadata={"status": "succeeded"},
        )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[WebhookEvent]:
        if signature != VALID_SIGNATURE:
            return None
        body = json.loads(payload)
        return WebhookEvent(
            id=body.get("id"),
            type=body["type"],
            data=body.get("data", {}).get("object", {}),
            gateway=self.name,
            signature=signature,
        )
