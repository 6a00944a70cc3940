"""initial commerce schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates parties, catalog, RFQ, quote, order, invoice, payment, rating,
sequence and outbox tables for TradeFlow.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _enum(name, *values):
    # Stored as VARCHAR + CHECK, same as the ORM's non-native enums
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True)


RFQ_STATUS = _enum('rfqstatus', 'pending', 'under_review', 'quoted', 'accepted', 'rejected', 'expired', 'cancelled')
QUOTE_STATUS = _enum('quotestatus', 'draft', 'sent', 'revised', 'accepted', 'rejected', 'expired')
ORDER_STATUS = _enum(
    'orderstatus', 'pending_confirmation', 'confirmed', 'processing', 'shipped',
    'delivered', 'closed', 'cancelled', 'failed', 'refunded',
)
PAYMENT_METHOD = _enum('paymentmethod', 'bank_transfer', 'cod', 'credit')
ORDER_PAYMENT_STATUS = _enum('orderpaymentstatus', 'unpaid', 'unpaid_credit', 'paid')
INVOICE_STATUS = _enum('invoicestatus', 'draft', 'issued', 'paid', 'overdue', 'cancelled')
PAYMENT_STATUS = _enum('paymentstatus', 'pending', 'confirmed', 'failed')
OUTBOX_STATUS = _enum('outboxstatus', 'pending', 'processing', 'delivered', 'failed', 'dead')


def _event_columns(parent_column):
    return [
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        parent_column,
        sa.Column('actor_id', sa.String(64)),
        sa.Column('actor_type', sa.String(20), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('from_status', sa.String(30)),
        sa.Column('to_status', sa.String(30)),
    ]


def upgrade() -> None:
    # Parties & catalog
    op.create_table('buyer_profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('full_name', sa.String(255)),
        sa.Column('company_name', sa.String(255)),
        sa.Column('vat_number', sa.String(50)),
        sa.Column('address', sa.Text()),
        sa.Column('credit_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime()),
    )

    op.create_table('seller_profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('display_name', sa.String(255)),
        sa.Column('legal_name', sa.String(255)),
        sa.Column('vat_number', sa.String(50)),
        sa.Column('address', sa.Text()),
        sa.Column('created_at', sa.DateTime()),
    )

    op.create_table('catalog_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('seller_id', sa.String(64), index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('sku', sa.String(100), index=True),
        sa.Column('images', sa.JSON()),
        sa.Column('price', sa.Float()),
        sa.Column('stock', sa.Integer()),
        sa.Column('min_order_qty', sa.Integer()),
        sa.Column('created_at', sa.DateTime()),
    )

    # RFQs
    op.create_table('rfqs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('rfq_number', sa.String(50), unique=True, index=True),
        sa.Column('buyer_id', sa.String(64), nullable=False, index=True),
        sa.Column('seller_id', sa.String(64), index=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('catalog_items.id')),
        sa.Column('message', sa.Text()),
        sa.Column('quantity', sa.Integer()),
        sa.Column('delivery_location', sa.Text()),
        sa.Column('status', RFQ_STATUS, nullable=False, index=True),
        sa.Column('quoted_price', sa.Float()),
        sa.Column('quoted_lead_time', sa.Integer()),
        sa.Column('responded_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )

    op.create_table('rfq_line_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('rfq_id', sa.String(36), sa.ForeignKey('rfqs.id'), nullable=False, index=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('catalog_items.id')),
        sa.Column('item_name', sa.String(255), nullable=False),
        sa.Column('item_sku', sa.String(100)),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer()),
    )

    op.create_table('rfq_events',
        *_event_columns(sa.Column('rfq_id', sa.String(36), sa.ForeignKey('rfqs.id'), nullable=False, index=True)),
        sa.Column('metadata', sa.JSON()),
        sa.Column('created_at', sa.DateTime()),
    )

    # Quotes
    op.create_table('quotes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('quote_number', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('rfq_id', sa.String(36), sa.ForeignKey('rfqs.id'), nullable=False, index=True),
        sa.Column('seller_id', sa.String(64), nullable=False, index=True),
        sa.Column('buyer_id', sa.String(64), nullable=False, index=True),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('discount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('discount_percent', sa.Float()),
        sa.Column('total_price', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='SAR'),
        sa.Column('delivery_days', sa.Integer(), nullable=False),
        sa.Column('delivery_terms', sa.Text()),
        sa.Column('valid_until', sa.DateTime(), nullable=False, index=True),
        sa.Column('notes', sa.Text()),
        sa.Column('internal_notes', sa.Text()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_latest', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('status', QUOTE_STATUS, nullable=False, index=True),
        sa.Column('sent_at', sa.DateTime()),
        sa.Column('accepted_at', sa.DateTime()),
        sa.Column('accepted_by', sa.String(64)),
        sa.Column('order_id', sa.String(36)),
        sa.Column('rejected_at', sa.DateTime()),
        sa.Column('rejected_by', sa.String(64)),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('expired_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index(
        'uq_quotes_one_draft_per_rfq', 'quotes', ['rfq_id'], unique=True,
        postgresql_where=sa.text("status = 'draft'"),
        sqlite_where=sa.text("status = 'draft'"),
    )

    op.create_table('quote_line_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('quote_id', sa.String(36), sa.ForeignKey('quotes.id'), nullable=False, index=True),
        sa.Column('item_id', sa.String(36), sa.ForeignKey('catalog_items.id')),
        sa.Column('item_name', sa.String(255), nullable=False),
        sa.Column('item_sku', sa.String(100)),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('discount', sa.Float()),
        sa.Column('total_price', sa.Float(), nullable=False),
        sa.Column('position', sa.Integer()),
    )

    op.create_table('quote_versions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('quote_id', sa.String(36), sa.ForeignKey('quotes.id'), nullable=False, index=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('discount', sa.Float()),
        sa.Column('discount_percent', sa.Float()),
        sa.Column('total_price', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(3)),
        sa.Column('delivery_days', sa.Integer()),
        sa.Column('delivery_terms', sa.Text()),
        sa.Column('valid_until', sa.DateTime()),
        sa.Column('notes', sa.Text()),
        sa.Column('created_by', sa.String(64)),
        sa.Column('change_reason', sa.Text()),
        sa.Column('created_at', sa.DateTime()),
        sa.UniqueConstraint('quote_id', 'version', name='uq_quote_version'),
    )

    # No FK: events outlive deleted drafts
    op.create_table('quote_events',
        *_event_columns(sa.Column('quote_id', sa.String(36), nullable=False, index=True)),
        sa.Column('version', sa.Integer()),
        sa.Column('metadata', sa.JSON()),
        sa.Column('created_at', sa.DateTime()),
    )

    # Orders
    op.create_table('orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('buyer_id', sa.String(64), nullable=False, index=True),
        sa.Column('seller_id', sa.String(64), nullable=False, index=True),
        sa.Column('item_id', sa.String(36)),
        sa.Column('item_name', sa.String(255)),
        sa.Column('item_sku', sa.String(100)),
        sa.Column('item_image', sa.Text()),
        sa.Column('rfq_id', sa.String(36), sa.ForeignKey('rfqs.id')),
        sa.Column('rfq_number', sa.String(50)),
        sa.Column('quote_id', sa.String(36), sa.ForeignKey('quotes.id'), unique=True),
        sa.Column('quote_number', sa.String(50)),
        sa.Column('quote_version', sa.Integer()),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('total_price', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='SAR'),
        sa.Column('status', ORDER_STATUS, nullable=False, index=True),
        sa.Column('payment_method', PAYMENT_METHOD, nullable=False),
        sa.Column('payment_status', ORDER_PAYMENT_STATUS, nullable=False),
        sa.Column('source', sa.String(20)),
        sa.Column('shipping_address', sa.JSON()),
        sa.Column('buyer_notes', sa.Text()),
        sa.Column('seller_notes', sa.Text()),
        sa.Column('confirmation_deadline', sa.DateTime()),
        sa.Column('shipping_deadline', sa.DateTime()),
        sa.Column('fulfillment_status', sa.String(30)),
        sa.Column('confirmed_at', sa.DateTime()),
        sa.Column('days_to_confirm', sa.Integer()),
        sa.Column('processing_at', sa.DateTime()),
        sa.Column('shipped_at', sa.DateTime()),
        sa.Column('carrier', sa.String(100)),
        sa.Column('tracking_number', sa.String(100)),
        sa.Column('estimated_delivery', sa.DateTime()),
        sa.Column('days_to_ship', sa.Integer()),
        sa.Column('delivered_at', sa.DateTime()),
        sa.Column('days_to_deliver', sa.Integer()),
        sa.Column('delivery_confirmed_by', sa.String(20)),
        sa.Column('closed_at', sa.DateTime()),
        sa.Column('cancelled_at', sa.DateTime()),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('created_at', sa.DateTime(), index=True),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_orders_seller_status', 'orders', ['seller_id', 'status'])

    op.create_table('order_line_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('item_id', sa.String(36)),
        sa.Column('item_name', sa.String(255), nullable=False),
        sa.Column('item_sku', sa.String(100)),
        sa.Column('item_image', sa.Text()),
        sa.Column('unit_price', sa.Float(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('discount', sa.Float()),
        sa.Column('total_price', sa.Float(), nullable=False),
        sa.Column('position', sa.Integer()),
    )

    op.create_table('order_audits',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('actor', sa.String(20), nullable=False),
        sa.Column('actor_id', sa.String(64)),
        sa.Column('previous_value', sa.String(100)),
        sa.Column('new_value', sa.String(100)),
        sa.Column('metadata', sa.JSON()),
        sa.Column('created_at', sa.DateTime()),
    )

    # Invoices & payments
    op.create_table('invoices',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('invoice_number', sa.String(50), nullable=False, index=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False, unique=True),
        sa.Column('order_number', sa.String(50)),
        sa.Column('seller_id', sa.String(64), nullable=False, index=True),
        sa.Column('buyer_id', sa.String(64), nullable=False, index=True),
        sa.Column('seller_name', sa.String(255)),
        sa.Column('seller_legal_name', sa.String(255)),
        sa.Column('seller_vat_number', sa.String(50)),
        sa.Column('seller_address', sa.Text()),
        sa.Column('buyer_name', sa.String(255)),
        sa.Column('buyer_company', sa.String(255)),
        sa.Column('buyer_vat_number', sa.String(50)),
        sa.Column('buyer_address', sa.Text()),
        sa.Column('line_items', sa.Text(), nullable=False),
        sa.Column('subtotal', sa.Float(), nullable=False),
        sa.Column('vat_rate', sa.Float(), nullable=False),
        sa.Column('vat_amount', sa.Float(), nullable=False),
        sa.Column('total_amount', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='SAR'),
        sa.Column('platform_fee_rate', sa.Float(), nullable=False, server_default='0'),
        sa.Column('platform_fee_amount', sa.Float(), nullable=False, server_default='0'),
        sa.Column('net_to_seller', sa.Float(), nullable=False),
        sa.Column('payment_terms', sa.String(10), nullable=False, server_default='NET_30'),
        sa.Column('due_date', sa.DateTime(), index=True),
        sa.Column('status', INVOICE_STATUS, nullable=False, index=True),
        sa.Column('issued_at', sa.DateTime()),
        sa.Column('issued_by', sa.String(64)),
        sa.Column('paid_at', sa.DateTime()),
        sa.Column('overdue_at', sa.DateTime()),
        sa.Column('cancelled_at', sa.DateTime()),
        sa.Column('cancel_reason', sa.Text()),
        sa.Column('notes', sa.Text()),
        sa.Column('created_at', sa.DateTime(), index=True),
        sa.Column('updated_at', sa.DateTime()),
        sa.UniqueConstraint('seller_id', 'invoice_number', name='uq_invoice_seller_number'),
    )
    op.create_index('ix_invoices_status_due', 'invoices', ['status', 'due_date'])

    op.create_table('invoice_events',
        *_event_columns(sa.Column('invoice_id', sa.String(36), sa.ForeignKey('invoices.id'),
                                  nullable=False, index=True)),
        sa.Column('metadata', sa.JSON()),
        sa.Column('created_at', sa.DateTime()),
    )

    op.create_table('payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payment_number', sa.String(50), unique=True, index=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('invoice_id', sa.String(36), sa.ForeignKey('invoices.id'), index=True),
        sa.Column('buyer_id', sa.String(64), nullable=False),
        sa.Column('seller_id', sa.String(64), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(3)),
        sa.Column('status', PAYMENT_STATUS, nullable=False, index=True),
        sa.Column('bank_reference', sa.String(100)),
        sa.Column('failure_reason', sa.Text()),
        sa.Column('confirmed_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime()),
    )

    # Infrastructure
    op.create_table('sequence_counters',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('scope_key', sa.String(64), nullable=False, server_default=''),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('last_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime()),
        sa.UniqueConstraint('kind', 'scope_key', 'year', name='uq_sequence_scope_year'),
    )

    op.create_table('outbox_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.String(100), nullable=False, index=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', OUTBOX_STATUS, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=False),
        sa.Column('last_error', sa.Text()),
        sa.Column('processed_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_outbox_status_next_attempt', 'outbox_events', ['status', 'next_attempt_at'])

    op.create_table('ratings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False, index=True),
        sa.Column('rater_role', sa.String(10), nullable=False),
        sa.Column('rater_id', sa.String(64), nullable=False),
        sa.Column('target_role', sa.String(10), nullable=False),
        sa.Column('target_id', sa.String(64), nullable=False, index=True),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('tags', sa.JSON()),
        sa.Column('comment', sa.String(280)),
        sa.Column('created_at', sa.DateTime()),
        sa.UniqueConstraint('order_id', 'rater_role', name='uq_rating_order_role'),
    )


def downgrade() -> None:
    for table in (
        'ratings', 'outbox_events', 'sequence_counters', 'payments', 'invoice_events',
        'invoices', 'order_audits', 'order_line_items', 'orders', 'quote_events',
        'quote_versions', 'quote_line_items', 'quotes', 'rfq_events', 'rfq_line_items',
        'rfqs', 'catalog_items', 'seller_profiles', 'buyer_profiles',
    ):
        op.drop_table(table)
