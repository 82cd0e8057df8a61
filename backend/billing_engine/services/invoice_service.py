"""
Invoice service for invoice lifecycle management.

WHAT: Business logic for creating, sending, paying, editing and
cancelling invoices.

WHY: Invoices are legal documents. The service enforces:
1. Sequential, gap-free invoice numbers per calendar year
2. Tax frozen at creation (total = amount + tax, to the cent)
3. Forward-only status transitions
4. Idempotent payment marking, safe under concurrent confirmations

HOW: One service instance per database session. Number allocation is the
first write of create_invoice so the counter row lock is held for the
shortest possible time. Status changes use conditional UPDATEs through
InvoiceDAO.transition_status.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.core.config import settings
from billing_engine.core.exceptions import (
    InvalidStateTransitionError,
    InvoiceNotFoundError,
    ValidationError,
)
from billing_engine.dao.invoice import InvoiceDAO
from billing_engine.models.base import utcnow
from billing_engine.models.invoice import Invoice, InvoiceStatus
from billing_engine.models.subscription import Subscription, SubscriptionStatus
from billing_engine.services.notification_service import (
    NotificationService,
    Recipient,
    get_notification_service,
)
from billing_engine.services.payment_gateways.base import PaymentRequest, WebhookEvent
from billing_engine.services.payment_webhooks import extract_invoice_payment
from billing_engine.services.pdf_service import PDFService, get_pdf_service
from billing_engine.services.subscription_service import SubscriptionService
from billing_engine.services.tax_service import (
    TaxCalculator,
    get_tax_calculator,
    quantize_money,
    to_decimal,
)

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


@dataclass
class LineItem:
    """One invoice line; total is always quantity * unit_price."""

    description: str
    quantity: int
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return quantize_money(self.unit_price * self.quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total": str(self.total),
        }


def parse_line_items(items: Sequence[Any]) -> List[LineItem]:
    """
    Validate raw line items (LineItem or mappings).

    Raises:
        ValidationError: Missing description, non-positive quantity or price
    """
    parsed = []
    for index, item in enumerate(items):
        if isinstance(item, LineItem):
            parsed.append(item)
            continue
        if not isinstance(item, Mapping):
            raise ValidationError(message="Line items must be objects", index=index)

        description = str(item.get("description") or "").strip()
        if not description:
            raise ValidationError(message="Line item description is required", index=index)

        quantity = item.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(message="Line item quantity must be a positive integer", index=index)

        unit_price = quantize_money(to_decimal(item.get("unit_price"), "unit_price"))
        if unit_price <= 0:
            raise ValidationError(message="Line item unit price must be positive", index=index)

        parsed.append(LineItem(description=description, quantity=quantity, unit_price=unit_price))
    return parsed


def build_invoice_payment_request(
    invoice: Invoice,
    subscription: Subscription,
    **metadata: Any,
) -> PaymentRequest:
    """
    Build a charge for an invoice's total with the subscriber's saved method.

    The invoice id travels in metadata so webhooks can attribute the
    payment back to the invoice.
    """
    return PaymentRequest(
        amount=invoice.total_amount,
        currency=invoice.currency,
        payment_method=subscription.payment_method or settings.DEFAULT_PAYMENT_METHOD,
        description=invoice.description or f"Invoice {invoice.invoice_number}",
        metadata={
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "subscription_id": subscription.id,
            **metadata,
        },
        customer_id=subscription.payment_customer_id,
        payment_method_id=subscription.payment_method_id,
    )


class InvoiceService:
    """
    Invoice Manager.

    Collaborators (tax calculator, PDF renderer, notifications) are
    injectable; defaults are the process-wide instances.
    """

    def __init__(
        self,
        db: AsyncSession,
        tax_calculator: Optional[TaxCalculator] = None,
        pdf_service: Optional[PDFService] = None,
        notification_service: Optional[NotificationService] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.dao = InvoiceDAO(db)
        self.subscriptions = SubscriptionService(db)
        self.tax_calculator = tax_calculator or get_tax_calculator()
        self.pdf_service = pdf_service or get_pdf_service()
        self.notifications = notification_service or get_notification_service()
        self.now = now

    # ========================================================================
    # Validation
    # ========================================================================

    @staticmethod
    def _validate_amount(amount: Any) -> Decimal:
        value = quantize_money(to_decimal(amount))
        if value <= 0:
            raise ValidationError(message="Amount must be positive", field="amount")
        return value

    @staticmethod
    def _validate_currency(currency: str) -> str:
        code = (currency or "").upper()
        if code not in settings.SUPPORTED_CURRENCIES:
            raise ValidationError(
                message=f"Unsupported currency: {currency}",
                field="currency",
                supported=", ".join(settings.SUPPORTED_CURRENCIES),
            )
        return code

    @staticmethod
    def _build_items(amount: Decimal, description: str, items: Optional[Sequence[Any]]) -> List[LineItem]:
        if not items:
            return [LineItem(description=description, quantity=1, unit_price=amount)]

        parsed = parse_line_items(items)
        items_total = sum((item.total for item in parsed), Decimal("0.00"))
        if items_total != amount:
            raise ValidationError(
                message="Line items must add up to the invoice amount",
                amount=str(amount),
                items_total=str(items_total),
            )
        return parsed

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_invoice(self, invoice_id: int) -> Invoice:
        """
        Load an invoice.

        Raises:
            InvoiceNotFoundError: If it does not exist
        """
        invoice = await self.dao.get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(
                message=f"Invoice {invoice_id} not found",
                invoice_id=invoice_id,
            )
        return invoice

    async def list_invoices(
        self,
        subscription_id: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Invoice]:
        return await self.dao.list_invoices(subscription_id, status, skip, limit)

    async def count_invoices(
        self,
        subscription_id: Optional[int] = None,
        status: Optional[InvoiceStatus] = None,
    ) -> int:
        return await self.dao.count_invoices(subscription_id, status)

    async def render_document(self, invoice_id: int) -> bytes:
        """Render the invoice PDF."""
        invoice = await self.get_invoice(invoice_id)
        subscription = await self.subscriptions.get_subscription(invoice.subscription_id)
        return self.pdf_service.render(invoice, subscription.customer_name or subscription.email)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def create_invoice(
        self,
        subscription_id: int,
        amount: Any,
        currency: str,
        description: str,
        due_date: Optional[datetime] = None,
        items: Optional[Sequence[Any]] = None,
        country: Optional[str] = None,
        tax_exempt: Optional[bool] = None,
    ) -> Invoice:
        """
        Create a draft invoice with tax applied.

        Args:
            subscription_id: Billed subscription
            amount: Pre-tax amount (positive)
            currency: Supported currency code
            description: Invoice description
            due_date: Due date (defaults to now + INVOICE_DUE_DAYS)
            items: Line items; must add up to amount when given
            country: Tax country (defaults to the subscription's, then settings)
            tax_exempt: Exemption (defaults to the subscription's flag)

        Returns:
            The persisted DRAFT invoice

        Raises:
            ValidationError: Bad amount, currency or line items
            SubscriptionNotFoundError: Unknown subscription
        """
        amount = self._validate_amount(amount)
        currency = self._validate_currency(currency)
        description = (description or "").strip()
        if not description:
            raise ValidationError(message="Description is required", field="description")
        line_items = self._build_items(amount, description, items)

        subscription = await self.subscriptions.get_subscription(subscription_id)
        tax_country = country or subscription.country or settings.DEFAULT_TAX_COUNTRY
        exempt = subscription.tax_exempt if tax_exempt is None else tax_exempt
        tax = self.tax_calculator.calculate_tax(amount, currency, tax_country, exempt)

        now = self.now()
        sequence = await self.dao.allocate_sequence_number(now.year)
        invoice_number = Invoice.format_invoice_number(now.year, sequence)

        invoice = await self.dao.create(
            invoice_number=invoice_number,
            sequence_year=now.year,
            sequence_number=sequence,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            description=description,
            line_items=[item.to_dict() for item in line_items],
            tax_amount=tax.tax_amount,
            tax_rate=tax.tax_rate,
            total_amount=tax.total_amount,
            due_date=due_date or now + timedelta(days=settings.INVOICE_DUE_DAYS),
            status=InvoiceStatus.DRAFT,
            created_at=now,
            updated_at=now,
        )

        logger.info(
            f"Created invoice {invoice_number}",
            extra={
                "invoice_id": invoice.id,
                "subscription_id": subscription_id,
                "total_amount": str(invoice.total_amount),
                "currency": currency,
            },
        )
        return invoice

    async def send_invoice(self, invoice_id: int) -> Invoice:
        """
        Render and deliver a draft invoice, then mark it SENT.

        Delivery is best-effort; a failed email is logged and the invoice
        still moves to SENT (the document stays downloadable).

        Raises:
            InvoiceNotFoundError: Unknown invoice
            InvalidStateTransitionError: Invoice is not a draft
        """
        invoice = await self.get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise InvalidStateTransitionError(
                message=f"Cannot send invoice in status {invoice.status.value}",
                invoice_id=invoice_id,
                status=invoice.status.value,
            )

        subscription = await self.subscriptions.get_subscription(invoice.subscription_id)
        document = self.pdf_service.render(invoice, subscription.customer_name or subscription.email)
        delivered = await self.notifications.send_invoice_document(
            Recipient.from_subscription(subscription), invoice, document
        )
        if not delivered:
            logger.warning(
                f"Invoice {invoice.invoice_number} email was not delivered",
                extra={"invoice_id": invoice_id},
            )

        moved = await self.dao.transition_status(
            invoice_id,
            (InvoiceStatus.DRAFT,),
            InvoiceStatus.SENT,
            sent_at=self.now(),
        )
        if not moved:
            raise InvalidStateTransitionError(
                message="Invoice changed status while being sent",
                invoice_id=invoice_id,
            )

        await self.db.refresh(invoice)
        return invoice

    async def mark_invoice_as_paid(self, invoice_id: int, payment_reference: str) -> Invoice:
        """
        Mark an invoice PAID and activate its subscription.

        Idempotent: an already paid invoice is returned unchanged and the
        subscription is not activated a second time.

        Raises:
            InvoiceNotFoundError: Unknown invoice
            InvalidStateTransitionError: Invoice is cancelled
        """
        invoice = await self.get_invoice(invoice_id)
        if invoice.status == InvoiceStatus.PAID:
            return invoice
        if not invoice.can_transition_to(InvoiceStatus.PAID):
            raise InvalidStateTransitionError(
                message=f"Cannot mark {invoice.status.value} invoice as paid",
                invoice_id=invoice_id,
                status=invoice.status.value,
            )

        won = await self.dao.transition_status(
            invoice_id,
            PAYABLE_STATUSES,
            InvoiceStatus.PAID,
            paid_at=self.now(),
            payment_reference=payment_reference,
        )
        await self.db.refresh(invoice)
        if not won:
            # Another writer changed the invoice first
            if invoice.status == InvoiceStatus.PAID:
                return invoice
            raise InvalidStateTransitionError(
                message=f"Cannot mark {invoice.status.value} invoice as paid",
                invoice_id=invoice_id,
                status=invoice.status.value,
            )

        await self.subscriptions.set_subscription_status(
            invoice.subscription_id, SubscriptionStatus.ACTIVE
        )

        logger.info(
            f"Invoice {invoice.invoice_number} paid",
            extra={"invoice_id": invoice_id, "payment_reference": payment_reference},
        )
        return invoice

    async def update_invoice(
        self,
        invoice_id: int,
        amount: Optional[Any] = None,
        description: Optional[str] = None,
        due_date: Optional[datetime] = None,
        items: Optional[Sequence[Any]] = None,
    ) -> Invoice:
        """
        Edit a draft invoice.

        Tax is recomputed at the invoice's frozen rate so that
        total_amount = amount + tax_amount still holds.

        Raises:
            InvalidStateTransitionError: Invoice is not a draft
            ValidationError: Bad amount or line items
        """
        invoice = await self.get_invoice(invoice_id)
        if not invoice.is_editable:
            raise InvalidStateTransitionError(
                message="Only draft invoices can be edited",
                invoice_id=invoice_id,
                status=invoice.status.value,
            )

        changes: Dict[str, Any] = {}
        if description is not None:
            description = description.strip()
            if not description:
                raise ValidationError(message="Description is required", field="description")
            changes["description"] = description
        if due_date is not None:
            changes["due_date"] = due_date

        if amount is not None or items is not None:
            new_amount = self._validate_amount(amount) if amount is not None else invoice.amount
            if items is None and amount is not None:
                # Re-derive the single default line from the new amount
                line_items = [
                    LineItem(changes.get("description", invoice.description), 1, new_amount)
                ]
            else:
                line_items = self._build_items(
                    new_amount, changes.get("description", invoice.description), items
                )
            tax_amount = quantize_money(new_amount * Decimal(invoice.tax_rate))
            changes.update(
                amount=new_amount,
                line_items=[item.to_dict() for item in line_items],
                tax_amount=tax_amount,
                total_amount=new_amount + tax_amount,
            )

        if not changes:
            return invoice

        updated = await self.dao.update_if(invoice_id, {"status": InvoiceStatus.DRAFT}, **changes)
        if not updated:
            raise InvalidStateTransitionError(
                message="Invoice changed status while being edited",
                invoice_id=invoice_id,
            )
        await self.db.refresh(invoice)
        return invoice

    async def cancel_invoice(self, invoice_id: int) -> Invoice:
        """
        Cancel an unpaid invoice. Cancelling twice is a no-op.

        Raises:
            InvalidStateTransitionError: Invoice is paid
        """
        invoice = await self.get_invoice(invoice_id)
        if invoice.status == InvoiceStatus.CANCELLED:
            return invoice

        moved = await self.dao.transition_status(
            invoice_id, PAYABLE_STATUSES, InvoiceStatus.CANCELLED
        )
        await self.db.refresh(invoice)
        if not moved and invoice.status != InvoiceStatus.CANCELLED:
            raise InvalidStateTransitionError(
                message=f"Cannot cancel {invoice.status.value} invoice",
                invoice_id=invoice_id,
                status=invoice.status.value,
            )

        logger.info(f"Invoice {invoice.invoice_number} cancelled", extra={"invoice_id": invoice_id})
        return invoice

    async def mark_overdue_invoices(self) -> int:
        """
        Move sent invoices past their due date to OVERDUE.

        Returns:
            Number of invoices marked overdue
        """
        now = self.now()
        marked = 0
        for invoice in await self.dao.get_past_due(now):
            if await self.dao.transition_status(
                invoice.id, (InvoiceStatus.SENT,), InvoiceStatus.OVERDUE
            ):
                marked += 1

        if marked:
            logger.info(f"Marked {marked} invoices overdue")
        return marked

    async def record_webhook_payment(self, event: WebhookEvent) -> Optional[Invoice]:
        """
        Mark the invoice referenced by a verified provider webhook as paid.

        Returns:
            The paid invoice, or None when the event is not a captured
            payment for a known invoice
        """
        payment = extract_invoice_payment(event)
        if payment is None:
            return None

        invoice = await self.dao.get_by_id(payment.invoice_id)
        if invoice is None:
            logger.warning(
                f"Webhook references unknown invoice {payment.invoice_id}",
                extra={"gateway": payment.gateway, "event_id": event.id},
            )
            return None

        return await self.mark_invoice_as_paid(invoice.id, payment.payment_reference)
