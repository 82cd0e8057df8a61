"""
Email service for sending billing emails.

WHAT: This service provides a unified interface for sending emails using
an email provider (Resend) with a mock fallback for development.

WHY: Email is how subscribers learn about billing events:
1. Invoice documents (PDF attachment)
2. Failed payment notices with the next retry date
3. Suspension and reactivation notices

HOW: Uses the Resend API over httpx. The service abstracts provider
details and provides:
- Attachment support (base64 encoded for Resend)
- Async sending for non-blocking operation
- A "safe" send that never raises, for fire-and-forget notices
"""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List

import httpx

from billing_engine.core.config import settings
from billing_engine.core.exceptions import EmailServiceError
from billing_engine.models.base import utcnow

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


# ============================================================================
# Email Types
# ============================================================================


class EmailType(str, Enum):
    """Kinds of billing email, used for logging and tracking."""

    INVOICE = "invoice"
    PAYMENT_FAILED = "payment_failed"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_REACTIVATED = "account_reactivated"


@dataclass
class EmailAttachment:
    """A file attached to an email."""

    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass
class EmailMessage:
    """
    Represents an email to be sent.

    WHY: Structured email data ensures all required fields are present
    and makes messages easy to inspect in tests.
    """

    to_email: str
    """Recipient email address."""

    subject: str
    """Email subject line."""

    html_content: str
    """HTML email body."""

    text_content: Optional[str] = None
    """Plain text fallback."""

    from_email: Optional[str] = None
    """Sender (defaults to BILLING_FROM_EMAIL)."""

    email_type: EmailType = EmailType.INVOICE
    """Type of email for tracking/logging."""

    attachments: List[EmailAttachment] = field(default_factory=list)
    """Files to attach."""

    metadata: Optional[Dict[str, Any]] = None
    """Additional metadata for tracking."""


@dataclass
class EmailResult:
    """Result of an email send operation."""

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    provider: Optional[str] = None


# ============================================================================
# Email Provider Interface
# ============================================================================


class EmailProvider(ABC):
    """
    Abstract base class for email providers.

    WHY: Provider abstraction allows testing with mock providers and
    switching providers without touching the notification layer.
    """

    @abstractmethod
    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send an email message.

        Raises:
            EmailServiceError: If the provider cannot be reached
        """

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if this provider has credentials."""


class ResendProvider(EmailProvider):
    """Resend email provider implementation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key or settings.RESEND_API_KEY
        self._default_from = settings.BILLING_FROM_EMAIL
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send email via Resend API.

        Returns:
            EmailResult; success=False when Resend rejects the message

        Raises:
            EmailServiceError: On timeout or connection failure
        """
        if not self.is_configured():
            return EmailResult(
                success=False,
                error="Resend API key not configured",
                provider="resend",
            )

        payload: Dict[str, Any] = {
            "from": message.from_email or self._default_from,
            "to": [message.to_email],
            "subject": message.subject,
            "html": message.html_content,
        }
        if message.text_content:
            payload["text"] = message.text_content
        if message.attachments:
            payload["attachments"] = [
                {
                    "filename": attachment.filename,
                    "content": base64.b64encode(attachment.content).decode("ascii"),
                }
                for attachment in message.attachments
            ]

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.RequestError as e:
            raise EmailServiceError(
                message="Resend API connection error",
                provider="resend",
                error=str(e),
            )

        if response.status_code in (200, 201):
            return EmailResult(
                success=True,
                message_id=response.json().get("id"),
                provider="resend",
            )
        return EmailResult(
            success=False,
            error=f"Resend API error: {response.status_code} - {response.text}",
            provider="resend",
        )


class MockEmailProvider(EmailProvider):
    """
    Mock email provider for testing and development.

    WHY: Allows exercising billing flows without sending real emails.
    Logs emails instead of sending them.
    """

    sent_emails: List[EmailMessage] = []
    """Class-level list to track sent emails for testing."""

    def is_configured(self) -> bool:
        return True

    async def send(self, message: EmailMessage) -> EmailResult:
        logger.info(
            f"[MOCK EMAIL] To: {message.to_email}, "
            f"Subject: {message.subject}, "
            f"Type: {message.email_type.value}"
        )

        MockEmailProvider.sent_emails.append(message)

        return EmailResult(
            success=True,
            message_id=f"mock-{utcnow().timestamp()}",
            provider="mock",
        )

    @classmethod
    def clear_sent_emails(cls):
        """Clear sent emails list (for test cleanup)."""
        cls.sent_emails = []


# ============================================================================
# Email Service
# ============================================================================


class EmailService:
    """
    High-level email service.

    HOW: Picks Resend when an API key is configured, otherwise the mock
    provider, and logs every send.
    """

    def __init__(self, provider: Optional[EmailProvider] = None):
        if provider:
            self._provider = provider
        elif settings.RESEND_API_KEY:
            self._provider = ResendProvider()
        else:
            logger.warning("No email provider configured, using mock provider")
            self._provider = MockEmailProvider()

    @property
    def provider(self) -> EmailProvider:
        return self._provider

    async def send_email(self, message: EmailMessage) -> EmailResult:
        """
        Send an email message.

        Raises:
            EmailServiceError: If the provider cannot be reached
        """
        logger.info(
            f"Sending {message.email_type.value} email to {message.to_email}",
            extra={"email_type": message.email_type.value, "to": message.to_email},
        )

        result = await self._provider.send(message)

        if result.success:
            logger.info(
                f"Email sent successfully: {result.message_id}",
                extra={"message_id": result.message_id, "provider": result.provider},
            )
        else:
            logger.error(
                f"Email send failed: {result.error}",
                extra={"email_type": message.email_type.value, "error": result.error},
            )

        return result

    async def send_email_safe(self, message: EmailMessage) -> bool:
        """
        Send an email without raising exceptions.

        WHY: Billing notices are fire-and-forget. A failed email must never
        roll back an invoice or a dunning transition.

        Returns:
            True if the email was accepted by the provider
        """
        try:
            result = await self.send_email(message)
            return result.success
        except EmailServiceError as e:
            logger.error(f"Email service error: {e.message}", extra={"to": message.to_email})
            return False
        except Exception as e:
            logger.exception(f"Unexpected error sending email: {e}")
            return False


_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """
    Get or create the global email service instance.

    Returns:
        EmailService instance
    """
    global _email_service

    if _email_service is None:
        _email_service = EmailService()

    return _email_service
