"""
Payment API endpoints.

WHAT: Direct payments through the payment router, gateway operations and
provider webhooks.

WHY: Besides scheduled billing, the platform needs to:
1. Charge one-off payments or start hosted checkouts
2. Capture authorised payments and look up their status
3. Receive provider webhooks that confirm hosted payments

HOW: Thin FastAPI layer over PaymentRouter. Declines come back as
success=false results with HTTP 200; only invalid input, unknown
gateways and unsupported operations are HTTP errors.

Security: Webhooks carry no authentication; each is verified with the
provider's signature scheme before anything is read from it.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from billing_engine.api.deps import get_invoice_service
from billing_engine.core.config import settings
from billing_engine.core.exceptions import ValidationError
from billing_engine.models.base import normalize_metadata
from billing_engine.schemas.payment import (
    GatewayInfo,
    GatewayListResponse,
    PaymentCreate,
    PaymentResult,
    WebhookAck,
)
from billing_engine.services.invoice_service import InvoiceService
from billing_engine.services.payment_gateways import (
    PaymentRequest,
    PaymentResponse,
    PaymentRouter,
    get_payment_router,
)


router = APIRouter(prefix="/payments", tags=["payments"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Signature header per provider
# PayPal signs with several transmission headers, passed through whole
SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "paypal": "paypal-transmission-sig",
    "crypto": "x-cc-webhook-signature",
}


def _to_result(response: PaymentResponse) -> PaymentResult:
    return PaymentResult(**response.to_dict())


@router.post(
    "",
    response_model=PaymentResult,
    summary="Process payment",
)
async def process_payment(
    data: PaymentCreate,
    payment_router: PaymentRouter = Depends(get_payment_router),
) -> PaymentResult:
    """
    Charge through the best eligible gateway with failover.

    Raises:
        ValidationError (400): Unsupported currency or non-primitive metadata
    """
    currency = data.currency.upper()
    if currency not in settings.SUPPORTED_CURRENCIES:
        raise ValidationError(message=f"Unsupported currency: {data.currency}", field="currency")

    request = PaymentRequest(
        amount=data.amount,
        currency=currency,
        payment_method=data.payment_method.upper(),
        description=data.description,
        metadata=normalize_metadata(data.metadata),
        customer_id=data.customer_id,
        payment_method_id=data.payment_method_id,
    )
    response = await payment_router.process_payment(request, data.preferred_gateway)
    return _to_result(response)


@router.get(
    "/gateways",
    response_model=GatewayListResponse,
    summary="List payment gateways",
)
async def list_gateways(
    currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    payment_method: Optional[str] = Query(default=None),
    payment_router: PaymentRouter = Depends(get_payment_router),
) -> GatewayListResponse:
    """
    List registered gateways.

    With currency and payment_method, only the gateways eligible for that
    combination are returned, in routing order.
    """
    if currency and payment_method:
        names = payment_router.get_available_gateways(currency.upper(), payment_method.upper())
    else:
        names = payment_router.gateway_names

    gateways = []
    for name in names:
        config = payment_router.get_gateway_config(name)
        gateways.append(
            GatewayInfo(
                name=name,
                is_active=config.is_active,
                supported_currencies=sorted(config.supported_currencies),
                supported_methods=sorted(config.supported_methods),
            )
        )
    return GatewayListResponse(gateways=gateways)


@router.post(
    "/{gateway}/{transaction_id}/capture",
    response_model=PaymentResult,
    summary="Capture payment",
)
async def capture_payment(
    gateway: str,
    transaction_id: str,
    payment_router: PaymentRouter = Depends(get_payment_router),
) -> PaymentResult:
    """
    Capture an authorised payment.

    Raises:
        ResourceNotFoundError (404): Gateway not configured
        GatewayOperationNotSupportedError (501): Gateway has no capture step
        PaymentGatewayError (502): Provider unreachable
    """
    response = await payment_router.capture_payment(gateway, transaction_id)
    return _to_result(response)


@router.get(
    "/{gateway}/{transaction_id}",
    response_model=PaymentResult,
    summary="Get payment status",
)
async def get_payment_status(
    gateway: str,
    transaction_id: str,
    payment_router: PaymentRouter = Depends(get_payment_router),
) -> PaymentResult:
    response = await payment_router.check_payment_status(gateway, transaction_id)
    return _to_result(response)


@webhooks_router.post(
    "/{gateway}",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Payment provider webhook",
)
async def handle_webhook(
    gateway: str,
    request: Request,
    payment_router: PaymentRouter = Depends(get_payment_router),
    service: InvoiceService = Depends(get_invoice_service),
) -> WebhookAck:
    """
    Handle a payment provider webhook.

    WHY: Hosted checkouts complete on the provider's side. The verified
    webhook is what marks the invoice paid.

    Raises:
        HTTPException (400): Unknown gateway or invalid signature
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS.get(gateway, ""), "")

    event = await payment_router.verify_webhook(
        gateway, payload, signature, dict(request.headers)
    )
    if event is None:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    invoice = await service.record_webhook_payment(event)
    return WebhookAck(
        event_id=event.id,
        event_type=event.type,
        invoice_id=invoice.id if invoice is not None else None,
    )
