"""
Shared fixtures: an in-memory SQLite database per test plus small factories
for the commerce entities.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tradeflow.db.session import Base, build_engine
from tradeflow.db import models  # noqa - register tables
from tradeflow.db.models import (
    RFQ, RFQStatus, BuyerProfile, SellerProfile, CatalogItem,
    Order, OrderStatus, OrderPaymentStatus, PaymentMethod, new_id,
)
from tradeflow.services import notifications, orders, quotes


class RecordingSink(notifications.NotificationSink):
    """Collects notifications instead of logging them."""

    def __init__(self):
        self.sent = []

    def notify(self, user_id, notification_type, entity_ref, metadata=None):
        self.sent.append((user_id, notification_type, entity_ref, metadata or {}))


# ============= DATABASE =============

@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Session bound to the per-test database."""
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def sink():
    recording = RecordingSink()
    previous = notifications.set_notification_sink(recording)
    yield recording
    notifications.set_notification_sink(previous)


# ============= FACTORIES =============

@pytest.fixture
def make_rfq(db):
    def _make(buyer_id="buyer-1", seller_id="seller-1", status=RFQStatus.UNDER_REVIEW.value, **kwargs):
        rfq = RFQ(
            rfq_number=kwargs.pop("rfq_number", None),
            buyer_id=buyer_id,
            seller_id=seller_id,
            status=status,
            quantity=kwargs.pop("quantity", 10),
            message=kwargs.pop("message", "Part Number: ACME-42\nNeed delivery to Riyadh"),
            **kwargs,
        )
        db.add(rfq)
        db.commit()
        return rfq
    return _make


def quote_terms(**overrides):
    terms = {
        "unit_price": 100,
        "quantity": 10,
        "delivery_days": 7,
        "valid_until": datetime.utcnow() + timedelta(days=7),
    }
    terms.update(overrides)
    return terms


@pytest.fixture
def make_sent_quote(db, make_rfq):
    """RFQ plus a quote already sent to the buyer."""
    def _make(seller_id="seller-1", buyer_id="buyer-1", **terms):
        rfq = make_rfq(buyer_id=buyer_id, seller_id=seller_id)
        created = quotes.create_draft(db, rfq.id, seller_id, quote_terms(**terms))
        assert created["success"], created
        sent = quotes.send_quote(db, created["quote"]["id"], seller_id)
        assert sent["success"], sent
        return sent["quote"]
    return _make


@pytest.fixture
def make_order(db, make_sent_quote):
    """Order created by accepting a freshly sent quote."""
    def _make(payment_method=None, seller_id="seller-1", buyer_id="buyer-1", **terms):
        quote = make_sent_quote(seller_id=seller_id, buyer_id=buyer_id, **terms)
        result = orders.accept_quote(db, quote["id"], buyer_id, payment_method=payment_method)
        assert result["success"], result
        return db.get(Order, result["order"]["id"])
    return _make


@pytest.fixture
def advance_order(db):
    """Walk an order forward through the fulfillment pipeline up to ``target``."""
    steps = [
        (OrderStatus.CONFIRMED.value, lambda o: orders.confirm_order(db, o.id, o.seller_id)),
        (OrderStatus.PROCESSING.value, lambda o: orders.start_processing(db, o.id, o.seller_id)),
        (OrderStatus.SHIPPED.value, lambda o: orders.ship_order(db, o.id, o.seller_id, "Aramex", "TRK-1")),
        (OrderStatus.DELIVERED.value, lambda o: orders.mark_delivered(db, o.id, o.buyer_id, "buyer")),
    ]

    def _advance(order, target):
        for status, step in steps:
            result = step(order)
            assert result["success"], result
            if status == target:
                break
        db.refresh(order)
        return order
    return _advance


@pytest.fixture
def profiles(db):
    buyer = BuyerProfile(
        user_id="buyer-1", full_name="Noura Buyer", company_name="Buyer Co",
        vat_number="300000000000003", address="Riyadh", credit_enabled=True,
    )
    seller = SellerProfile(
        user_id="seller-1", display_name="Seller Store", legal_name="Seller Trading LLC",
        vat_number="310000000000003", address="Jeddah",
    )
    db.add_all([buyer, seller])
    db.commit()
    return buyer, seller


@pytest.fixture
def catalog_item(db):
    item = CatalogItem(
        seller_id="seller-1", name="Industrial Valve", sku="VAL-100",
        images=["https://cdn.example.com/valve.png"], price=100.0, stock=50,
    )
    db.add(item)
    db.commit()
    return item


def make_bare_order(db, status=OrderStatus.DELIVERED.value,
                    payment_status=OrderPaymentStatus.UNPAID.value,
                    payment_method=PaymentMethod.BANK_TRANSFER.value,
                    total_price=1000.0, seller_id="seller-1", buyer_id="buyer-1"):
    """Order row inserted directly, bypassing the quote flow."""
    order = Order(
        order_number=f"ORD-TEST-{new_id()[:8]}",
        buyer_id=buyer_id,
        seller_id=seller_id,
        item_name="Industrial Valve",
        quantity=10,
        unit_price=total_price / 10,
        total_price=total_price,
        currency="SAR",
        status=status,
        payment_method=payment_method,
        payment_status=payment_status,
    )
    db.add(order)
    db.commit()
    return order
