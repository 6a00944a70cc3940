"""
SQLAlchemy ORM models for TradeFlow.
Quote -> Order -> Invoice lifecycle entities plus their append-only event logs.
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Float,
    ForeignKey, Enum, UniqueConstraint, Index, event, inspect, text
)
from sqlalchemy.orm import relationship
import enum

from tradeflow.core.errors import ConflictError
from tradeflow.db.session import Base
from tradeflow.db.types import JSONType, LineItemListType


# ============= ENUMS =============

class RFQStatus(str, enum.Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class QuoteStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    REVISED = "revised"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class OrderStatus(str, enum.Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    BANK_TRANSFER = "bank_transfer"
    COD = "cod"
    CREDIT = "credit"


class OrderPaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    UNPAID_CREDIT = "unpaid_credit"
    PAID = "paid"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD = "dead"


class ActorType(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


# Non-native enums: stored as VARCHAR with a CHECK constraint, portable across
# PostgreSQL and SQLite. Always bind ``.value``, never the enum member.
def enum_values(enum_cls):
    return [e.value for e in enum_cls]


RFQStatusType = Enum(*enum_values(RFQStatus), name='rfqstatus', native_enum=False)
QuoteStatusType = Enum(*enum_values(QuoteStatus), name='quotestatus', native_enum=False)
OrderStatusType = Enum(*enum_values(OrderStatus), name='orderstatus', native_enum=False)
PaymentMethodType = Enum(*enum_values(PaymentMethod), name='paymentmethod', native_enum=False)
OrderPaymentStatusType = Enum(
    *enum_values(OrderPaymentStatus), name='orderpaymentstatus', native_enum=False
)
InvoiceStatusType = Enum(*enum_values(InvoiceStatus), name='invoicestatus', native_enum=False)
PaymentStatusType = Enum(*enum_values(PaymentStatus), name='paymentstatus', native_enum=False)
OutboxStatusType = Enum(*enum_values(OutboxStatus), name='outboxstatus', native_enum=False)


def new_id() -> str:
    return str(uuid.uuid4())


# ============= PARTIES & CATALOG =============

class BuyerProfile(Base):
    """Buyer identity and credit eligibility."""
    __tablename__ = "buyer_profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    company_name = Column(String(255))
    vat_number = Column(String(50))
    address = Column(Text)
    credit_enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class SellerProfile(Base):
    """Seller identity. Sellers may be referenced by user id or by profile id."""
    __tablename__ = "seller_profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    display_name = Column(String(255))
    legal_name = Column(String(255))
    vat_number = Column(String(50))
    address = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


class CatalogItem(Base):
    """Marketplace catalog item, read only by the lifecycle core."""
    __tablename__ = "catalog_items"

    id = Column(String(36), primary_key=True, default=new_id)
    seller_id = Column(String(64), index=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), index=True)
    images = Column(JSONType, default=list)
    price = Column(Float)
    stock = Column(Integer, default=0)
    min_order_qty = Column(Integer, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)


# ============= RFQ =============

class RFQ(Base):
    """Buyer request for quote."""
    __tablename__ = "rfqs"

    id = Column(String(36), primary_key=True, default=new_id)
    rfq_number = Column(String(50), unique=True, index=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=True, index=True)  # null = marketplace RFQ
    item_id = Column(String(36), ForeignKey("catalog_items.id"), nullable=True)
    message = Column(Text)
    quantity = Column(Integer, default=1)
    delivery_location = Column(Text)
    status = Column(RFQStatusType, default=RFQStatus.PENDING.value, nullable=False, index=True)
    quoted_price = Column(Float)
    quoted_lead_time = Column(Integer)
    responded_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    item = relationship("CatalogItem")
    line_items = relationship(
        "RFQLineItem", back_populates="rfq", order_by="RFQLineItem.position"
    )
    quotes = relationship("Quote", back_populates="rfq")


class RFQLineItem(Base):
    __tablename__ = "rfq_line_items"

    id = Column(String(36), primary_key=True, default=new_id)
    rfq_id = Column(String(36), ForeignKey("rfqs.id"), nullable=False, index=True)
    item_id = Column(String(36), ForeignKey("catalog_items.id"), nullable=True)
    item_name = Column(String(255), nullable=False)
    item_sku = Column(String(100))
    quantity = Column(Integer, nullable=False)
    position = Column(Integer, default=0)

    rfq = relationship("RFQ", back_populates="line_items")


class RFQEvent(Base):
    """Append-only RFQ transition log."""
    __tablename__ = "rfq_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rfq_id = Column(String(36), ForeignKey("rfqs.id"), nullable=False, index=True)
    actor_id = Column(String(64))
    actor_type = Column(String(20), nullable=False)
    event_type = Column(String(50), nullable=False)
    from_status = Column(String(30))
    to_status = Column(String(30))
    metadata_json = Column("metadata", JSONType)
    created_at = Column(DateTime, default=datetime.utcnow)


# ============= QUOTES =============

class Quote(Base):
    """Seller's priced, time-bounded offer against one RFQ."""
    __tablename__ = "quotes"

    id = Column(String(36), primary_key=True, default=new_id)
    quote_number = Column(String(50), unique=True, nullable=False, index=True)
    rfq_id = Column(String(36), ForeignKey("rfqs.id"), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    buyer_id = Column(String(64), nullable=False, index=True)

    unit_price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)
    discount = Column(Float, default=0.0, nullable=False)
    discount_percent = Column(Float)
    total_price = Column(Float, nullable=False)
    currency = Column(String(3), default="SAR", nullable=False)

    delivery_days = Column(Integer, nullable=False)
    delivery_terms = Column(Text)
    valid_until = Column(DateTime, nullable=False, index=True)
    notes = Column(Text)
    internal_notes = Column(Text)

    version = Column(Integer, default=1, nullable=False)
    is_latest = Column(Boolean, default=True, nullable=False)
    status = Column(QuoteStatusType, default=QuoteStatus.DRAFT.value, nullable=False, index=True)

    sent_at = Column(DateTime)
    accepted_at = Column(DateTime)
    accepted_by = Column(String(64))
    order_id = Column(String(36))
    rejected_at = Column(DateTime)
    rejected_by = Column(String(64))
    rejection_reason = Column(Text)
    expired_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    rfq = relationship("RFQ", back_populates="quotes")
    line_items = relationship(
        "QuoteLineItem", back_populates="quote", order_by="QuoteLineItem.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index(
            'uq_quotes_one_draft_per_rfq', 'rfq_id', unique=True,
            postgresql_where=text("status = 'draft'"),
            sqlite_where=text("status = 'draft'"),
        ),
    )


class QuoteLineItem(Base):
    __tablename__ = "quote_line_items"

    id = Column(String(36), primary_key=True, default=new_id)
    quote_id = Column(String(36), ForeignKey("quotes.id"), nullable=False, index=True)
    item_id = Column(String(36), ForeignKey("catalog_items.id"), nullable=True)
    item_name = Column(String(255), nullable=False)
    item_sku = Column(String(100))
    unit_price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)
    discount = Column(Float, default=0.0)
    total_price = Column(Float, nullable=False)
    position = Column(Integer, default=0)

    quote = relationship("Quote", back_populates="line_items")


class QuoteVersion(Base):
    """Immutable snapshot of a quote's terms at each version."""
    __tablename__ = "quote_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    quote_id = Column(String(36), ForeignKey("quotes.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    status = Column(String(30), nullable=False)
    unit_price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)
    discount = Column(Float)
    discount_percent = Column(Float)
    total_price = Column(Float, nullable=False)
    currency = Column(String(3))
    delivery_days = Column(Integer)
    delivery_terms = Column(Text)
    valid_until = Column(DateTime)
    notes = Column(Text)
    created_by = Column(String(64))
    change_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('quote_id', 'version', name='uq_quote_version'),
    )


class QuoteEvent(Base):
    """Append-only quote transition log. Never updated or deleted."""
    __tablename__ = "quote_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    quote_id = Column(String(36), nullable=False, index=True)
    actor_id = Column(String(64))
    actor_type = Column(String(20), nullable=False)
    event_type = Column(String(50), nullable=False)
    from_status = Column(String(30))
    to_status = Column(String(30))
    version = Column(Integer)
    metadata_json = Column("metadata", JSONType)
    created_at = Column(DateTime, default=datetime.utcnow)


# ============= ORDERS =============

class Order(Base):
    """Binding agreement created from exactly one accepted quote."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)

    # Primary item snapshot
    item_id = Column(String(36))
    item_name = Column(String(255))
    item_sku = Column(String(100))
    item_image = Column(Text)

    rfq_id = Column(String(36), ForeignKey("rfqs.id"))
    rfq_number = Column(String(50))
    quote_id = Column(String(36), ForeignKey("quotes.id"), unique=True)
    quote_number = Column(String(50))
    quote_version = Column(Integer)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    total_price = Column(Float, nullable=False)
    currency = Column(String(3), default="SAR", nullable=False)

    status = Column(
        OrderStatusType, default=OrderStatus.PENDING_CONFIRMATION.value, nullable=False, index=True
    )
    payment_method = Column(PaymentMethodType, default=PaymentMethod.BANK_TRANSFER.value, nullable=False)
    payment_status = Column(OrderPaymentStatusType, default=OrderPaymentStatus.UNPAID.value, nullable=False)
    source = Column(String(20), default="rfq")

    shipping_address = Column(JSONType)
    buyer_notes = Column(Text)
    seller_notes = Column(Text)

    # SLA deadlines (advisory)
    confirmation_deadline = Column(DateTime)
    shipping_deadline = Column(DateTime)

    # Fulfillment
    fulfillment_status = Column(String(30))
    confirmed_at = Column(DateTime)
    days_to_confirm = Column(Integer)
    processing_at = Column(DateTime)
    shipped_at = Column(DateTime)
    carrier = Column(String(100))
    tracking_number = Column(String(100))
    estimated_delivery = Column(DateTime)
    days_to_ship = Column(Integer)
    delivered_at = Column(DateTime)
    days_to_deliver = Column(Integer)
    delivery_confirmed_by = Column(String(20))
    closed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    rejection_reason = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    line_items = relationship(
        "OrderLineItem", back_populates="order", order_by="OrderLineItem.position"
    )
    invoice = relationship("Invoice", back_populates="order", uselist=False)

    __table_args__ = (
        Index('ix_orders_seller_status', 'seller_id', 'status'),
    )


class OrderLineItem(Base):
    """Snapshotted order line. Not a live catalog reference."""
    __tablename__ = "order_line_items"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    item_id = Column(String(36))
    item_name = Column(String(255), nullable=False)
    item_sku = Column(String(100))
    item_image = Column(Text)
    unit_price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)
    discount = Column(Float, default=0.0)
    total_price = Column(Float, nullable=False)
    position = Column(Integer, default=0)

    order = relationship("Order", back_populates="line_items")


class MarketplaceOrderAudit(Base):
    """Append-only per-transition order log."""
    __tablename__ = "order_audits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    actor = Column(String(20), nullable=False)
    actor_id = Column(String(64))
    previous_value = Column(String(100))
    new_value = Column(String(100))
    metadata_json = Column("metadata", JSONType)
    created_at = Column(DateTime, default=datetime.utcnow)


# ============= INVOICES & PAYMENTS =============

class Invoice(Base):
    """Billing document derived from one order. Financials freeze once issued."""
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=new_id)
    invoice_number = Column(String(50), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), unique=True, nullable=False)
    order_number = Column(String(50))
    seller_id = Column(String(64), nullable=False, index=True)
    buyer_id = Column(String(64), nullable=False, index=True)

    # Identity snapshot at generation time
    seller_name = Column(String(255))
    seller_legal_name = Column(String(255))
    seller_vat_number = Column(String(50))
    seller_address = Column(Text)
    buyer_name = Column(String(255))
    buyer_company = Column(String(255))
    buyer_vat_number = Column(String(50))
    buyer_address = Column(Text)

    # Financials
    line_items = Column(LineItemListType, nullable=False)
    subtotal = Column(Float, nullable=False)
    vat_rate = Column(Float, nullable=False)
    vat_amount = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)
    currency = Column(String(3), default="SAR", nullable=False)
    platform_fee_rate = Column(Float, default=0.0, nullable=False)
    platform_fee_amount = Column(Float, default=0.0, nullable=False)
    net_to_seller = Column(Float, nullable=False)

    payment_terms = Column(String(10), default="NET_30", nullable=False)
    due_date = Column(DateTime, index=True)
    status = Column(InvoiceStatusType, default=InvoiceStatus.DRAFT.value, nullable=False, index=True)

    issued_at = Column(DateTime)
    issued_by = Column(String(64))
    paid_at = Column(DateTime)
    overdue_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancel_reason = Column(Text)
    notes = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="invoice")

    __table_args__ = (
        UniqueConstraint('seller_id', 'invoice_number', name='uq_invoice_seller_number'),
        Index('ix_invoices_status_due', 'status', 'due_date'),
    )


INVOICE_FINANCIAL_FIELDS = (
    "line_items", "subtotal", "vat_rate", "vat_amount", "total_amount", "currency",
    "platform_fee_rate", "platform_fee_amount", "net_to_seller",
)


class MarketplaceInvoiceEvent(Base):
    """Append-only invoice transition log."""
    __tablename__ = "invoice_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
    actor_id = Column(String(64))
    actor_type = Column(String(20), nullable=False)
    event_type = Column(String(50), nullable=False)
    from_status = Column(String(30))
    to_status = Column(String(30))
    metadata_json = Column("metadata", JSONType)
    created_at = Column(DateTime, default=datetime.utcnow)


class MarketplacePayment(Base):
    """Payment fact recorded against an order, later associated with its invoice."""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    payment_number = Column(String(50), unique=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True, index=True)
    buyer_id = Column(String(64), nullable=False)
    seller_id = Column(String(64), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), default="SAR")
    status = Column(PaymentStatusType, default=PaymentStatus.PENDING.value, nullable=False, index=True)
    bank_reference = Column(String(100))
    failure_reason = Column(Text)
    confirmed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)


# ============= INFRASTRUCTURE =============

class SequenceCounter(Base):
    """Atomic counter per (kind, scope, year) for human-readable numbers."""
    __tablename__ = "sequence_counters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False)
    scope_key = Column(String(64), nullable=False, default="")
    year = Column(Integer, nullable=False)
    last_value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('kind', 'scope_key', 'year', name='uq_sequence_scope_year'),
    )


class OutboxEvent(Base):
    """Side effect published in the same transaction as the state change."""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSONType, nullable=False)
    status = Column(OutboxStatusType, default=OutboxStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    next_attempt_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_error = Column(Text)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_outbox_status_next_attempt', 'status', 'next_attempt_at'),
    )


class Rating(Base):
    """Post-order rating left by one party about the other."""
    __tablename__ = "ratings"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    rater_role = Column(String(10), nullable=False)
    rater_id = Column(String(64), nullable=False)
    target_role = Column(String(10), nullable=False)
    target_id = Column(String(64), nullable=False, index=True)
    score = Column(Integer, nullable=False)
    tags = Column(JSONType, default=list)
    comment = Column(String(280))
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('order_id', 'rater_role', name='uq_rating_order_role'),
    )


# ============= IMMUTABILITY GUARDS =============

def _value_before_flush(target, attr_name):
    history = inspect(target).attrs[attr_name].history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None


@event.listens_for(Invoice, "before_update")
def _freeze_issued_invoice(mapper, connection, target):
    if _value_before_flush(target, "status") == InvoiceStatus.DRAFT.value:
        return
    state = inspect(target)
    changed = [name for name in INVOICE_FINANCIAL_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise ConflictError(
            f"Invoice {target.invoice_number} is {target.status}; financial fields are immutable: "
            f"{', '.join(changed)}"
        )


ORDER_PRICE_FIELDS = ("quantity", "unit_price", "total_price", "currency", "quote_id")


@event.listens_for(Order, "before_update")
def _freeze_order_pricing(mapper, connection, target):
    state = inspect(target)
    changed = [name for name in ORDER_PRICE_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise ConflictError(
            f"Order {target.order_number} pricing is immutable: {', '.join(changed)}"
        )


@event.listens_for(OrderLineItem, "before_update")
def _freeze_order_line_items(mapper, connection, target):
    raise ConflictError("Order line items are immutable once the order is created")
