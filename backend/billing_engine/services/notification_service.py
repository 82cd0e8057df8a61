"""
Notification Service for billing events.

WHAT: Sends subscriber-facing billing notices: invoice documents, failed
payment notices, suspension and reactivation notices.

WHY: Separates notification content from billing logic. The invoice and
dunning services only say *what* happened; this service formats and
delivers it.

HOW: Event methods render a Jinja2 template and delegate to the email
service. Uses a fire-and-forget pattern: every method returns a bool and
never raises, so a failed notice never blocks a billing transition.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from billing_engine.core.exceptions import EmailServiceError
from billing_engine.models.invoice import Invoice
from billing_engine.models.subscription import Subscription
from billing_engine.services.email import (
    EmailAttachment,
    EmailMessage,
    EmailService,
    EmailType,
    get_email_service,
)
from billing_engine.services.email_template_service import (
    EmailTemplateService,
    RenderedEmail,
    get_email_template_service,
)

logger = logging.getLogger(__name__)


@dataclass
class Recipient:
    """Who a billing notice goes to."""

    email: str
    name: Optional[str] = None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "Recipient":
        return cls(email=subscription.email, name=subscription.customer_name)

    @property
    def display_name(self) -> str:
        return self.name or self.email


class NotificationService:
    """
    Delivers billing notices.

    Attributes:
        email_service: Email delivery
        templates: Template rendering
    """

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        templates: Optional[EmailTemplateService] = None,
    ):
        self.email_service = email_service or get_email_service()
        self.templates = templates or get_email_template_service()

    async def _deliver(
        self,
        recipient: Recipient,
        email_type: EmailType,
        render: Callable[[], RenderedEmail],
        attachments: Optional[list] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        try:
            subject, html, text = render()
        except EmailServiceError as e:
            logger.error(
                f"Failed to render {email_type.value} notice: {e.message}",
                extra={"to": recipient.email},
            )
            return False

        message = EmailMessage(
            to_email=recipient.email,
            subject=subject,
            html_content=html,
            text_content=text,
            email_type=email_type,
            attachments=attachments or [],
            metadata=metadata,
        )
        return await self.email_service.send_email_safe(message)

    async def send_invoice_document(
        self,
        recipient: Recipient,
        invoice: Invoice,
        document: bytes,
    ) -> bool:
        """
        Send an invoice with its PDF attached.

        Returns:
            True if the email was accepted
        """
        logger.info(f"Sending invoice {invoice.invoice_number} to subscriber")

        return await self._deliver(
            recipient,
            EmailType.INVOICE,
            lambda: self.templates.render_invoice_email(
                customer_name=recipient.display_name,
                invoice_number=invoice.invoice_number,
                total_amount=invoice.total_amount,
                currency=invoice.currency,
                due_date=invoice.due_date,
            ),
            attachments=[EmailAttachment(f"{invoice.invoice_number}.pdf", document)],
            metadata={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number},
        )

    async def send_payment_failed_notice(
        self,
        recipient: Recipient,
        attempt: int,
        amount: Optional[Any] = None,
        currency: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
    ) -> bool:
        """
        Tell the subscriber a payment failed and when it will be retried.

        next_retry_at is None when the next step is suspension.
        """
        return await self._deliver(
            recipient,
            EmailType.PAYMENT_FAILED,
            lambda: self.templates.render_payment_failed_email(
                customer_name=recipient.display_name,
                attempt=attempt,
                amount=amount,
                currency=currency,
                next_retry_at=next_retry_at,
            ),
            metadata={"attempt": attempt},
        )

    async def send_account_suspended_notice(self, recipient: Recipient) -> bool:
        """Tell the subscriber the account is suspended."""
        return await self._deliver(
            recipient,
            EmailType.ACCOUNT_SUSPENDED,
            lambda: self.templates.render_account_suspended_email(recipient.display_name),
        )

    async def send_account_reactivated_notice(self, recipient: Recipient) -> bool:
        """Tell the subscriber the account is active again."""
        return await self._deliver(
            recipient,
            EmailType.ACCOUNT_REACTIVATED,
            lambda: self.templates.render_account_reactivated_email(recipient.display_name),
        )


_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get or create the global notification service."""
    global _notification_service

    if _notification_service is None:
        _notification_service = NotificationService()

    return _notification_service
