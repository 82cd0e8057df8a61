"""
PDF generation service for invoices.

WHAT: Generates invoice documents using ReportLab.

WHY: The invoice document is what the subscriber receives:
1. Attached to the invoice email when an invoice is sent
2. Downloadable from the API for record keeping
3. Print-ready for accounting

HOW: Uses ReportLab's platypus for document layout:
- Pure Python, no external rendering binaries
- Header with company info, bill-to block, line items, totals
- Returns bytes for direct download or email attachment

Design decisions:
- On-demand generation: PDFs are rendered when requested, not stored
- Currency-aware amounts: invoices bill in several currencies
"""

import io
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, List, Any
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.lib.enums import TA_RIGHT
from reportlab.platypus import (
    SimpleDocTemplate,
    Paragraph,
    Spacer,
    Table,
    TableStyle,
)

from billing_engine.core.config import settings
from billing_engine.core.exceptions import DocumentRenderError
from billing_engine.models.invoice import Invoice, InvoiceStatus

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration
# ============================================================================


@dataclass
class CompanyInfo:
    """
    Company branding information for PDFs.
    """

    name: str = settings.PROJECT_NAME
    address: str = "123 Business St, Suite 100"
    city_state_zip: str = "San Francisco, CA 94105"
    email: str = "billing@example.com"


DEFAULT_COMPANY_INFO = CompanyInfo()

STATUS_COLORS = {
    InvoiceStatus.SENT: "#3182ce",
    InvoiceStatus.PAID: "#38a169",
    InvoiceStatus.OVERDUE: "#e53e3e",
    InvoiceStatus.CANCELLED: "#718096",
}


def get_styles():
    """
    Get PDF document styles.

    Returns:
        StyleSheet with the invoice styles added
    """
    styles = getSampleStyleSheet()

    styles.add(ParagraphStyle(
        name='DocumentTitle',
        parent=styles['Heading1'],
        fontSize=24,
        spaceAfter=20,
        textColor=colors.HexColor('#1a365d'),
    ))

    styles.add(ParagraphStyle(
        name='InvoiceBody',
        parent=styles['Normal'],
        fontSize=10,
        spaceBefore=5,
        spaceAfter=5,
    ))

    styles.add(ParagraphStyle(
        name='SmallText',
        parent=styles['Normal'],
        fontSize=8,
        textColor=colors.HexColor('#718096'),
    ))

    styles.add(ParagraphStyle(
        name='RightAlign',
        parent=styles['Normal'],
        fontSize=10,
        alignment=TA_RIGHT,
    ))

    return styles


# ============================================================================
# Helper Functions
# ============================================================================


def format_currency(amount: Any, currency: str = "USD") -> str:
    """
    Format amount with its currency code.

    Returns:
        Formatted string (e.g., "1,234.56 EUR")
    """
    if amount is None:
        return f"0.00 {currency}"

    try:
        return f"{float(amount):,.2f} {currency}"
    except (ValueError, TypeError):
        return f"0.00 {currency}"


def format_date(d: Any) -> str:
    """
    Format date for display.

    Returns:
        Formatted date string (e.g., "January 15, 2025")
    """
    if d is None:
        return ""

    if isinstance(d, datetime):
        d = d.date()

    if isinstance(d, date):
        return d.strftime("%B %d, %Y")

    return str(d)


# ============================================================================
# PDF Service
# ============================================================================


class PDFService:
    """
    Service for rendering invoice documents.
    """

    def __init__(self, company_info: Optional[CompanyInfo] = None):
        self.company = company_info or DEFAULT_COMPANY_INFO
        self.styles = get_styles()

    def _build_header(self, invoice_number: str) -> List:
        elements = [
            Paragraph(escape(self.company.name), self.styles['DocumentTitle']),
            Paragraph(
                f"{escape(self.company.address)}<br/>"
                f"{escape(self.company.city_state_zip)}<br/>"
                f"{escape(self.company.email)}",
                self.styles['SmallText'],
            ),
            Spacer(1, 20),
        ]

        header_table = Table([["INVOICE", invoice_number]], colWidths=[3 * inch, 4 * inch])
        header_table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (0, 0), 18),
            ('TEXTCOLOR', (0, 0), (0, 0), colors.HexColor('#2563eb')),
            ('ALIGN', (1, 0), (1, 0), 'RIGHT'),
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ]))
        elements.append(header_table)
        elements.append(Spacer(1, 15))
        return elements

    def _build_client_info(self, client_name: str, dates: List[tuple]) -> List:
        left_content = [
            Paragraph("<b>Bill To:</b>", self.styles['InvoiceBody']),
            Paragraph(escape(client_name), self.styles['InvoiceBody']),
        ]
        right_content = [
            Paragraph(f"<b>{label}:</b> {value}", self.styles['RightAlign'])
            for label, value in dates
        ]

        info_table = Table([[left_content, right_content]], colWidths=[3.5 * inch, 3.5 * inch])
        info_table.setStyle(TableStyle([
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('ALIGN', (1, 0), (1, 0), 'RIGHT'),
        ]))
        return [info_table, Spacer(1, 20)]

    def _build_line_items_table(self, line_items: List[dict], currency: str) -> Table:
        data = [['Description', 'Qty', 'Unit Price', 'Amount']]
        for item in line_items:
            data.append([
                Paragraph(escape(str(item.get('description', ''))), self.styles['InvoiceBody']),
                str(item.get('quantity', 1)),
                format_currency(item.get('unit_price', 0), currency),
                format_currency(item.get('total', 0), currency),
            ])

        table = Table(data, colWidths=[3.25 * inch, 0.75 * inch, 1.5 * inch, 1.5 * inch])
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#f7fafc')),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, 0), 10),
            ('FONTSIZE', (0, 1), (-1, -1), 9),
            ('ALIGN', (1, 0), (-1, -1), 'RIGHT'),
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#e2e8f0')),
            ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, colors.HexColor('#f7fafc')]),
        ]))
        return table

    def _build_totals_table(self, invoice: Invoice) -> Table:
        rate_percent = f"{float(invoice.tax_rate or 0) * 100:g}%"
        data = [
            ['Subtotal', format_currency(invoice.amount, invoice.currency)],
            [f'Tax ({rate_percent})', format_currency(invoice.tax_amount, invoice.currency)],
            ['Total', format_currency(invoice.total_amount, invoice.currency)],
        ]

        table = Table(data, colWidths=[1.5 * inch, 1.75 * inch])
        table.setStyle(TableStyle([
            ('ALIGN', (0, 0), (-1, -1), 'RIGHT'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('FONTNAME', (0, 2), (1, 2), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 2), (1, 2), 12),
            ('TEXTCOLOR', (0, 2), (1, 2), colors.HexColor('#1a365d')),
            ('LINEABOVE', (0, 2), (1, 2), 1, colors.HexColor('#2d3748')),
        ]))
        return table

    def render(self, invoice: Invoice, client_name: Optional[str] = None) -> bytes:
        """
        Render an invoice as a PDF document.

        Args:
            invoice: Invoice model instance
            client_name: Name for the bill-to block

        Returns:
            PDF file as bytes

        Raises:
            DocumentRenderError: If ReportLab fails to lay out the document
        """
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=letter,
            rightMargin=0.75 * inch,
            leftMargin=0.75 * inch,
            topMargin=0.75 * inch,
            bottomMargin=0.75 * inch,
            title=invoice.invoice_number,
        )

        elements = self._build_header(invoice.invoice_number)

        if invoice.status != InvoiceStatus.DRAFT:
            status_color = STATUS_COLORS.get(invoice.status, '#718096')
            elements.append(Paragraph(
                f"<font color='{status_color}'><b>STATUS: {invoice.status.value.upper()}</b></font>",
                self.styles['InvoiceBody'],
            ))
            elements.append(Spacer(1, 10))

        dates = [
            ('Invoice Date', format_date(invoice.created_at)),
            ('Due Date', format_date(invoice.due_date)),
        ]
        if invoice.paid_at:
            dates.append(('Paid Date', format_date(invoice.paid_at)))
        elements.extend(self._build_client_info(client_name or "Subscriber", dates))

        line_items = invoice.line_items or [
            {
                'description': invoice.description or f'Invoice {invoice.invoice_number}',
                'quantity': 1,
                'unit_price': str(invoice.amount),
                'total': str(invoice.amount),
            }
        ]
        elements.append(self._build_line_items_table(line_items, invoice.currency))
        elements.append(Spacer(1, 20))

        totals_layout = Table([['', self._build_totals_table(invoice)]], colWidths=[3.75 * inch, 3.25 * inch])
        totals_layout.setStyle(TableStyle([('VALIGN', (0, 0), (-1, -1), 'TOP')]))
        elements.append(totals_layout)

        if invoice.description and invoice.line_items:
            elements.append(Spacer(1, 20))
            elements.append(Paragraph(escape(invoice.description), self.styles['SmallText']))

        try:
            doc.build(elements)
        except Exception as e:
            logger.exception(f"Failed to render invoice PDF {invoice.invoice_number}")
            raise DocumentRenderError(
                message="Failed to render invoice document",
                invoice_number=invoice.invoice_number,
                error=str(e),
            )

        pdf_bytes = buffer.getvalue()
        buffer.close()

        logger.info(f"Generated invoice PDF: {invoice.invoice_number}")
        return pdf_bytes


_pdf_service: Optional[PDFService] = None


def get_pdf_service() -> PDFService:
    """
    Get or create the global PDF service instance.

    Returns:
        PDFService instance
    """
    global _pdf_service

    if _pdf_service is None:
        _pdf_service = PDFService()

    return _pdf_service
