"""
Invoice management API endpoints.

WHAT: RESTful API for the invoice lifecycle.

WHY: Operators and the subscriber portal need to:
1. Create one-off invoices and correct drafts
2. Send, cancel and reconcile invoices
3. Download the PDF document

HOW: FastAPI router over InvoiceService. Business errors are raised as
AppException subclasses and rendered by the global exception handlers.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, Response, status

from billing_engine.api.deps import get_invoice_service
from billing_engine.models.invoice import InvoiceStatus
from billing_engine.schemas.invoice import (
    InvoiceCreate,
    InvoiceUpdate,
    InvoiceResponse,
    InvoiceListResponse,
    MarkPaidRequest,
)
from billing_engine.services.invoice_service import InvoiceService


router = APIRouter(prefix="/invoices", tags=["invoices"])


def _invoice_to_response(invoice) -> InvoiceResponse:
    """Convert an Invoice model to its response schema."""
    return InvoiceResponse.model_validate(invoice)


@router.post(
    "",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create invoice",
)
async def create_invoice(
    data: InvoiceCreate,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    """
    Create a draft invoice.

    Tax is computed from the subscription's tax profile unless country or
    tax_exempt are given.

    Raises:
        ValidationError (400): Unsupported currency or inconsistent line items
        ResourceNotFoundError (404): Unknown subscription
    """
    invoice = await service.create_invoice(
        subscription_id=data.subscription_id,
        amount=data.amount,
        currency=data.currency,
        description=data.description,
        due_date=data.due_date,
        items=[item.model_dump() for item in data.items] if data.items else None,
        country=data.country,
        tax_exempt=data.tax_exempt,
    )
    return _invoice_to_response(invoice)


@router.get(
    "",
    response_model=InvoiceListResponse,
    summary="List invoices",
)
async def list_invoices(
    subscription_id: Optional[int] = Query(default=None),
    status_filter: Optional[InvoiceStatus] = Query(default=None, alias="status"),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceListResponse:
    """List invoices, newest first."""
    invoices = await service.list_invoices(subscription_id, status_filter, skip, limit)
    total = await service.count_invoices(subscription_id, status_filter)
    return InvoiceListResponse(
        items=[_invoice_to_response(invoice) for invoice in invoices],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get invoice",
)
async def get_invoice(
    invoice_id: int,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = await service.get_invoice(invoice_id)
    return _invoice_to_response(invoice)


@router.patch(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Update draft invoice",
)
async def update_invoice(
    invoice_id: int,
    data: InvoiceUpdate,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    """
    Edit a draft invoice.

    Raises:
        InvalidStateTransitionError (400): Invoice is no longer a draft
    """
    invoice = await service.update_invoice(
        invoice_id,
        amount=data.amount,
        description=data.description,
        due_date=data.due_date,
        items=[item.model_dump() for item in data.items] if data.items is not None else None,
    )
    return _invoice_to_response(invoice)


@router.post(
    "/{invoice_id}/send",
    response_model=InvoiceResponse,
    summary="Send invoice",
)
async def send_invoice(
    invoice_id: int,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    """Render the PDF, email it to the subscriber and mark the invoice sent."""
    invoice = await service.send_invoice(invoice_id)
    return _invoice_to_response(invoice)


@router.post(
    "/{invoice_id}/mark-paid",
    response_model=InvoiceResponse,
    summary="Mark invoice paid",
)
async def mark_invoice_paid(
    invoice_id: int,
    data: MarkPaidRequest,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    """
    Record a payment against an invoice.

    Idempotent: repeating the call returns the already-paid invoice.
    """
    invoice = await service.mark_invoice_as_paid(invoice_id, data.payment_reference)
    return _invoice_to_response(invoice)


@router.post(
    "/{invoice_id}/cancel",
    response_model=InvoiceResponse,
    summary="Cancel invoice",
)
async def cancel_invoice(
    invoice_id: int,
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceResponse:
    invoice = await service.cancel_invoice(invoice_id)
    return _invoice_to_response(invoice)


@router.get(
    "/{invoice_id}/pdf",
    summary="Download invoice PDF",
    response_class=Response,
)
async def download_invoice_pdf(
    invoice_id: int,
    service: InvoiceService = Depends(get_invoice_service),
) -> Response:
    """Return the invoice document as a PDF attachment."""
    invoice = await service.get_invoice(invoice_id)
    pdf_bytes = await service.render_document(invoice_id)

    filename = f"invoice-{invoice.invoice_number}.pdf"
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
        },
    )
