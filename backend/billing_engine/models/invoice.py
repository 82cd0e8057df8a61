"""
Invoice model for billing and payment tracking.

WHAT: SQLAlchemy models for invoices and the per-year invoice number
sequence.

WHY: Invoices are critical financial documents that:
1. Record amounts owed for a subscription billing cycle
2. Carry the tax computed at creation time
3. Track payment status through the collection workflow
4. Need human-readable, gap-free sequential numbers for accounting

HOW: Uses SQLAlchemy 2.0 with:
- Status enum for the payment workflow
- Numeric columns for money (never floats)
- JSON column for ordered line items
- A separate InvoiceSequence row per year, incremented atomically
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    Numeric,
    JSON,
    UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped

from billing_engine.models.base import Base, utcnow


class InvoiceStatus(str, Enum):
    """
    Invoice payment workflow status.

    WHY: Tracks invoice through the collection process:
    - DRAFT: Invoice created, not yet sent
    - SENT: Invoice delivered to the subscriber
    - PAID: Payment received (terminal)
    - OVERDUE: Sent invoice past its due date
    - CANCELLED: Invoice voided (terminal)

    HOW: String enum for database storage and API serialization.
    """

    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Allowed forward transitions
# WHY: Status only moves forward. DRAFT -> PAID covers cycle invoices
# collected automatically before the document is ever sent.
INVOICE_TRANSITIONS: Dict[InvoiceStatus, set] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.SENT: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}


class Invoice(Base):
    """
    Invoice model for subscription billing.

    Attributes:
        id: Primary key
        invoice_number: Unique human-readable identifier (INV-YYYY-NNNNNN)
        sequence_year: Calendar year the number was allocated in
        sequence_number: Position within that year's sequence
        subscription_id: Billed subscription

        Amounts:
        amount: Pre-tax amount
        tax_amount: Tax computed at creation
        tax_rate: Rate applied
        total_amount: amount + tax_amount

        Payment tracking:
        status: Workflow status
        paid_at: When payment was received
        payment_reference: Provider transaction id or manual reference

        Dates:
        due_date: Payment due date
        sent_at: When the invoice was sent
    """

    __tablename__ = "invoices"

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)

    # Invoice identification
    invoice_number: Mapped[str] = Column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique invoice number (e.g., INV-2025-000001)",
    )
    sequence_year: Mapped[int] = Column(Integer, nullable=False)
    sequence_number: Mapped[int] = Column(Integer, nullable=False)

    # WHY: values_callable ensures the enum value (lowercase) is used, not the name (UPPERCASE)
    status: Mapped[InvoiceStatus] = Column(
        SQLEnum(
            InvoiceStatus,
            name="invoicestatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        nullable=False,
        default=InvoiceStatus.DRAFT,
        index=True,
        comment="Current invoice status",
    )

    subscription_id: Mapped[int] = Column(
        Integer,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Amounts
    amount: Mapped[Decimal] = Column(
        Numeric(12, 2),
        nullable=False,
        comment="Pre-tax amount",
    )
    currency: Mapped[str] = Column(String(3), nullable=False)
    tax_amount: Mapped[Decimal] = Column(
        Numeric(12, 2),
        nullable=False,
        default=0,
    )
    tax_rate: Mapped[Decimal] = Column(
        Numeric(6, 4),
        nullable=False,
        default=0,
    )
    total_amount: Mapped[Decimal] = Column(
        Numeric(12, 2),
        nullable=False,
        comment="amount + tax_amount",
    )

    description: Mapped[Optional[str]] = Column(Text, nullable=True)
    # Ordered list of {description, quantity, unit_price, total}
    # Money values are stored as decimal strings to survive JSON
    line_items: Mapped[List[Dict[str, Any]]] = Column(JSON, nullable=False, default=list)

    # Payment tracking
    payment_reference: Mapped[Optional[str]] = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Provider transaction id or manual reference",
    )

    # Dates
    due_date: Mapped[datetime] = Column(DateTime, nullable=False)
    paid_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    sent_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)

    created_at: Mapped[datetime] = Column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("sequence_year", "sequence_number", name="uq_invoices_sequence"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"

    @property
    def is_editable(self) -> bool:
        """
        Check if invoice can be edited.

        WHY: Once sent, the invoice is a legal document that shouldn't change.
        """
        return self.status == InvoiceStatus.DRAFT

    @property
    def is_paid(self) -> bool:
        """Check if invoice has been paid."""
        return self.status == InvoiceStatus.PAID

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """
        Check if invoice is past due date.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            True if due_date has passed and invoice is still awaiting payment
        """
        if self.status not in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE):
            return False
        return (now or utcnow()) > self.due_date

    def can_transition_to(self, new_status: InvoiceStatus) -> bool:
        """Check whether the workflow allows moving to new_status."""
        return new_status in INVOICE_TRANSITIONS[self.status]

    @staticmethod
    def format_invoice_number(year: int, sequence: int) -> str:
        """
        Format an invoice number.

        HOW: Format: INV-YYYY-NNNNNN where YYYY is the year and NNNNNN
        is the zero-padded sequence number within that year.
        """
        return f"INV-{year}-{sequence:06d}"


class InvoiceSequence(Base):
    """
    Per-year invoice number counter.

    WHY: Deriving the next number from MAX(invoice_number) races between
    engine instances. A single counter row incremented with
    UPDATE ... RETURNING inside the invoice transaction serializes writers
    on that row, so numbers are monotonic and gap free.
    """

    __tablename__ = "invoice_sequences"

    year: Mapped[int] = Column(Integer, primary_key=True, autoincrement=False)
    last_value: Mapped[int] = Column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<InvoiceSequence(year={self.year}, last_value={self.last_value})>"
