"""
Email Template Service for rendering billing notices.

WHAT: Loads and renders the Jinja2 templates for billing emails.

WHY: Template-based emails keep content out of the dunning and invoice
logic, share one branded layout through template inheritance, and are
auto-escaped against markup injection through subscriber names.

HOW: Jinja2 environment with a PackageLoader over
billing_engine/templates/email. Each render_* method returns
(subject, html_content, text_content).
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from jinja2 import Environment, PackageLoader, TemplateNotFound, select_autoescape

from billing_engine.core.config import settings
from billing_engine.core.exceptions import EmailServiceError
from billing_engine.models.base import utcnow

logger = logging.getLogger(__name__)

RenderedEmail = Tuple[str, str, str]


def format_money(amount: Any, currency: str) -> str:
    """Format an amount as e.g. '1,234.50 USD'."""
    return f"{float(amount):,.2f} {currency}"


def format_datetime(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.strftime("%B %d, %Y")


class EmailTemplateService:
    """
    Renders billing email templates.
    """

    def __init__(self, environment: Optional[Environment] = None):
        self._env = environment or self._create_environment()

    @staticmethod
    def _create_environment() -> Environment:
        env = Environment(
            loader=PackageLoader("billing_engine", "templates/email"),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        env.filters["money"] = format_money
        env.filters["date"] = format_datetime
        return env

    def _get_base_context(self) -> Dict[str, Any]:
        return {
            "year": utcnow().year,
            "frontend_url": settings.FRONTEND_URL,
            "platform_name": settings.PROJECT_NAME,
        }

    def render_template(self, template_name: str, context: Dict[str, Any]) -> str:
        """
        Render a template with given context.

        Raises:
            EmailServiceError: If template not found or render fails
        """
        try:
            template = self._env.get_template(template_name)
            return template.render(**{**self._get_base_context(), **context})
        except TemplateNotFound:
            logger.error(f"Email template not found: {template_name}")
            raise EmailServiceError(
                message=f"Email template not found: {template_name}",
                template=template_name,
            )

    def render_invoice_email(
        self,
        customer_name: str,
        invoice_number: str,
        total_amount: Any,
        currency: str,
        due_date: Optional[datetime],
    ) -> RenderedEmail:
        context = {
            "customer_name": customer_name,
            "invoice_number": invoice_number,
            "total_amount": total_amount,
            "currency": currency,
            "due_date": due_date,
        }
        html = self.render_template("invoice.html", context)
        text = (
            f"Hello {customer_name},\n\n"
            f"Your invoice {invoice_number} for {format_money(total_amount, currency)} "
            f"is attached. Payment is due {format_datetime(due_date)}.\n"
        )
        return f"Invoice {invoice_number}", html, text

    def render_payment_failed_email(
        self,
        customer_name: str,
        attempt: int,
        amount: Optional[Any],
        currency: Optional[str],
        next_retry_at: Optional[datetime],
    ) -> RenderedEmail:
        context = {
            "customer_name": customer_name,
            "attempt": attempt,
            "amount": amount,
            "currency": currency,
            "next_retry_at": next_retry_at,
        }
        html = self.render_template("payment_failed.html", context)
        text = f"Hello {customer_name},\n\nWe could not process your payment (attempt {attempt}).\n"
        if next_retry_at:
            text += f"We will try again on {format_datetime(next_retry_at)}.\n"
        else:
            text += "Please update your payment method to avoid suspension.\n"
        return "Payment failed", html, text

    def render_account_suspended_email(self, customer_name: str) -> RenderedEmail:
        html = self.render_template("account_suspended.html", {"customer_name": customer_name})
        text = (
            f"Hello {customer_name},\n\n"
            "Your subscription has been suspended because we could not collect payment.\n"
        )
        return "Your subscription has been suspended", html, text

    def render_account_reactivated_email(self, customer_name: str) -> RenderedEmail:
        html = self.render_template("account_reactivated.html", {"customer_name": customer_name})
        text = f"Hello {customer_name},\n\nYour subscription is active again. Thank you!\n"
        return "Your subscription is active again", html, text


_email_template_service: Optional[EmailTemplateService] = None


def get_email_template_service() -> EmailTemplateService:
    """Get or create the global template service."""
    global _email_template_service

    if _email_template_service is None:
        _email_template_service = EmailTemplateService()

    return _email_template_service
