"""Initial billing schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

WHY: Creates the five tables of the billing engine: subscriptions,
invoices with their per-year number sequence, billing schedules and
dunning events, together with the enum types and the partial unique
indexes that keep concurrent engine instances consistent.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENUMS = {
    'billingcycle': ('monthly', 'quarterly', 'yearly'),
    'subscriptionstatus': ('active', 'past_due'),
    'invoicestatus': ('draft', 'sent', 'paid', 'overdue', 'cancelled'),
    'billingschedulestatus': ('scheduled', 'processing', 'completed', 'failed'),
    'dunningeventtype': ('payment_failed', 'payment_retry', 'account_suspended', 'account_reactivated'),
    'dunningeventstatus': ('pending', 'sent', 'failed', 'resolved'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    """
    Create billing tables, enum types and indexes.
    """
    # WHY: PostgreSQL ENUMs provide type safety at the database level
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(op.get_bind(), checkfirst=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('plan_name', sa.String(length=100), nullable=False),
        sa.Column('billing_cycle', _enum('billingcycle'), nullable=False, server_default='monthly'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('payment_method', sa.String(length=30), nullable=False, server_default='CREDIT_CARD'),
        sa.Column('payment_customer_id', sa.String(length=255), nullable=True),
        sa.Column('payment_method_id', sa.String(length=255), nullable=True),
        sa.Column('preferred_gateway', sa.String(length=30), nullable=True),
        sa.Column('country', sa.String(length=2), nullable=True),
        sa.Column('tax_exempt', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('status', _enum('subscriptionstatus'), nullable=False, server_default='active'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_email', 'subscriptions', ['email'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    # WHY: One counter row per year, incremented with UPDATE ... RETURNING
    op.create_table(
        'invoice_sequences',
        sa.Column('year', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('last_value', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('year'),
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=50), nullable=False,
                  comment='Unique invoice number (e.g., INV-2025-000001)'),
        sa.Column('sequence_year', sa.Integer(), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('status', _enum('invoicestatus'), nullable=False, server_default='draft',
                  comment='Current invoice status'),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False, comment='Pre-tax amount'),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('tax_rate', sa.Numeric(6, 4), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False, comment='amount + tax_amount'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('line_items', sa.JSON(), nullable=False),
        sa.Column('payment_reference', sa.String(length=255), nullable=True,
                  comment='Provider transaction id or manual reference'),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sequence_year', 'sequence_number', name='uq_invoices_sequence'),
    )
    op.create_index('ix_invoices_id', 'invoices', ['id'])
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'], unique=True)
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_subscription_id', 'invoices', ['subscription_id'])
    op.create_index('ix_invoices_payment_reference', 'invoices', ['payment_reference'])

    op.create_table(
        'billing_schedules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('next_billing_date', sa.DateTime(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', _enum('billingschedulestatus'), nullable=False, server_default='scheduled'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('last_invoice_id', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['last_invoice_id'], ['invoices.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('retry_count <= max_retries', name='ck_billing_schedules_retry_count'),
    )
    op.create_index('ix_billing_schedules_id', 'billing_schedules', ['id'])
    op.create_index('ix_billing_schedules_subscription_id', 'billing_schedules', ['subscription_id'])
    op.create_index('ix_billing_schedules_next_billing_date', 'billing_schedules', ['next_billing_date'])
    op.create_index('ix_billing_schedules_status', 'billing_schedules', ['status'])
    # WHY: At most one scheduled/processing schedule per subscription
    op.create_index(
        'uq_billing_schedules_active_subscription',
        'billing_schedules',
        ['subscription_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('scheduled', 'processing')"),
    )

    op.create_table(
        'dunning_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('type', _enum('dunningeventtype'), nullable=False),
        sa.Column('status', _enum('dunningeventstatus'), nullable=False, server_default='pending'),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_dunning_events_id', 'dunning_events', ['id'])
    op.create_index('ix_dunning_events_subscription_id', 'dunning_events', ['subscription_id'])
    op.create_index('ix_dunning_events_invoice_id', 'dunning_events', ['invoice_id'])
    op.create_index('ix_dunning_events_status', 'dunning_events', ['status'])
    op.create_index('ix_dunning_events_scheduled_for', 'dunning_events', ['scheduled_for'])
    # WHY: One pending step per subscription, so a dunning chain never forks
    op.create_index(
        'uq_dunning_events_pending_subscription',
        'dunning_events',
        ['subscription_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    """
    Drop billing tables and enum types.
    """
    op.drop_table('dunning_events')
    op.drop_table('billing_schedules')
    op.drop_table('invoices')
    op.drop_table('invoice_sequences')
    op.drop_table('subscriptions')

    for name in reversed(list(ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
