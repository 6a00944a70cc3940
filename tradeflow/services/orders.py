"""
Order lifecycle: creation from an accepted quote and the fulfillment
pipeline (confirm -> process -> ship -> deliver -> close) with its
cancellation exits.

Invoice generation and notifications triggered by transitions are published
to the outbox in the same transaction and dispatched after commit, so their
failure can never undo the transition itself.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tradeflow.core.config import settings
from tradeflow.core.errors import (
    ConflictError, NotFoundError, UnauthorizedError, ValidationError,
    ok, service_operation,
)
from tradeflow.core.logging import get_logger
from tradeflow.core.rbac import Role, belongs_to, identity_set
from tradeflow.db.models import (
    RFQStatus, Quote, QuoteStatus, Order, OrderStatus, OrderLineItem,
    OrderPaymentStatus, PaymentMethod, BuyerProfile, CatalogItem,
    MarketplaceOrderAudit, ActorType, enum_values,
)
from tradeflow.db.types import as_naive_utc
from tradeflow.services import events, outbox, notifications
from tradeflow.services.order_states import (
    CANCELLABLE_STATUSES, get_allowed_transitions, validate_transition,
)
from tradeflow.services.payments import order_payment_totals
from tradeflow.services.sequences import next_number
from tradeflow.services.serializers import order_to_dict, order_audit_to_dict
from tradeflow.services.sla import enrich_order_with_sla

logger = get_logger(__name__)


ACCEPTABLE_QUOTE_STATUSES = (QuoteStatus.SENT.value, QuoteStatus.REVISED.value)

PART_PREFIX = "Part:"
PART_NUMBER_PREFIX = "Part Number:"


# ============= HELPERS =============

def _elapsed_days(start: Optional[datetime], end: datetime) -> Optional[int]:
    if not start:
        return None
    return max(math.ceil((end - start).total_seconds() / 86400), 0)


def _load_order(db: Session, order_id: str, lock: bool = False) -> Order:
    query = db.query(Order).filter(Order.id == order_id)
    if lock:
        query = query.with_for_update()
    order = query.first()
    if not order:
        raise NotFoundError("Order not found")
    return order


def _require_seller(order: Order, seller_ids: Iterable[str]) -> None:
    if not belongs_to(seller_ids, order.seller_id):
        raise UnauthorizedError("You are not the seller for this order")


def _party_role(order: Order, caller_ids: Iterable[str]) -> str:
    caller_ids = set(caller_ids)
    if belongs_to(caller_ids, order.seller_id):
        return Role.SELLER.value
    if belongs_to(caller_ids, order.buyer_id):
        return Role.BUYER.value
    raise UnauthorizedError("You are not a party to this order")


def _apply_transition(
    db: Session,
    order: Order,
    new_status: str,
    operation: str,
    action: str,
    actor: str,
    actor_id: Optional[str],
    metadata: Optional[dict] = None,
) -> str:
    validate_transition(order.status, new_status, operation)
    previous = order.status
    order.status = new_status
    events.record_order_audit(db, order, action, actor, actor_id, previous, new_status, metadata)
    return previous


def _order_result(db: Session, order: Order, with_sla: bool = False) -> Dict[str, Any]:
    confirmed, pending = order_payment_totals(db, [order.id]).get(order.id, (0.0, 0.0))
    data = order_to_dict(order, paid_amount=confirmed, pending_amount=pending)
    if with_sla:
        enrich_order_with_sla(data, order)
    return data


def _parse_request_message(message: str) -> Tuple[Optional[str], Optional[str]]:
    """
    (item name, sku) from a free-form request. ``Part:`` names the item and
    ``Part Number:`` gives the sku; without a ``Part:`` line the first line
    of the message is the name.
    """
    name, sku = None, None
    for line in message.splitlines():
        line = line.strip()
        if line.startswith(PART_PREFIX):
            name = line[len(PART_PREFIX):].strip() or name
        elif line.startswith(PART_NUMBER_PREFIX) and not sku:
            sku = line[len(PART_NUMBER_PREFIX):].strip() or None
    if not name:
        name = message.strip().split("\n")[0].strip() or None
    return name, sku


def _implicit_item(db: Session, rfq) -> Dict[str, Any]:
    """Name/sku/image for an RFQ with no line items."""
    if rfq.item_id:
        item = db.get(CatalogItem, rfq.item_id)
        if item:
            images = item.images or []
            return {
                "item_id": item.id,
                "item_name": item.name,
                "item_sku": item.sku,
                "item_image": images[0] if images else None,
            }
    if rfq.line_items:
        first = rfq.line_items[0]
        return {"item_id": first.item_id, "item_name": first.item_name,
                "item_sku": first.item_sku, "item_image": None}

    name, sku = _parse_request_message(rfq.message or "")
    name = name or f"Custom request {rfq.rfq_number or rfq.id}"
    return {"item_id": None, "item_name": name, "item_sku": sku, "item_image": None}


def _snapshot_line_items(db: Session, quote: Quote) -> List[OrderLineItem]:
    """Copy priced lines from the quote, or synthesize one from the RFQ."""
    if quote.line_items:
        lines = []
        for position, line in enumerate(quote.line_items):
            image = None
            if line.item_id:
                item = db.get(CatalogItem, line.item_id)
                image = item.images[0] if item and item.images else None
            lines.append(OrderLineItem(
                item_id=line.item_id,
                item_name=line.item_name,
                item_sku=line.item_sku,
                item_image=image,
                unit_price=line.unit_price,
                quantity=line.quantity,
                discount=line.discount or 0.0,
                total_price=line.total_price,
                position=position,
            ))
        return lines

    implicit = _implicit_item(db, quote.rfq)
    return [OrderLineItem(
        unit_price=quote.unit_price,
        quantity=quote.quantity,
        discount=quote.discount or 0.0,
        total_price=quote.total_price,
        position=0,
        **implicit,
    )]


# ============= CREATION =============

@service_operation("Failed to accept quote")
def accept_quote(
    db: Session,
    quote_id: str,
    buyer_id: str,
    shipping_address: Optional[dict] = None,
    payment_method: Optional[str] = None,
    buyer_notes: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Accept a sent or revised quote and create its order.

    Quote, RFQ, order, line items and events are written in one transaction.
    The quote row is locked before validation, the quote flip is conditional
    on its status, and orders.quote_id is unique, so two concurrent accepts
    of the same quote produce exactly one order.
    """
    quote = db.query(Quote).filter(Quote.id == quote_id).with_for_update().first()
    if not quote:
        raise NotFoundError("Quote not found")

    rfq = quote.rfq
    if not belongs_to({buyer_id}, rfq.buyer_id):
        raise UnauthorizedError("You are not the buyer for this quote")

    existing = db.query(Order.id).filter(Order.quote_id == quote.id).first()
    if existing or quote.order_id:
        raise ConflictError("An order already exists for this quote")

    if quote.status not in ACCEPTABLE_QUOTE_STATUSES:
        raise ConflictError(f'Cannot accept quote in "{quote.status}" status')

    now = datetime.utcnow()
    if quote.valid_until < now:
        raise ConflictError("Cannot accept expired quote")

    if rfq.status != RFQStatus.QUOTED.value:
        raise ConflictError(f'Cannot accept quote: RFQ is in "{rfq.status}" status')

    payment_method = payment_method or PaymentMethod.BANK_TRANSFER.value
    if payment_method not in enum_values(PaymentMethod):
        raise ValidationError(f"Unknown payment method: {payment_method}")

    if payment_method == PaymentMethod.CREDIT.value:
        profile = db.query(BuyerProfile).filter(BuyerProfile.user_id == buyer_id).first()
        if not profile or not profile.credit_enabled:
            raise ConflictError("Credit payment is not enabled for this buyer")

    lines = _snapshot_line_items(db, quote)
    primary = lines[0]

    order = Order(
        order_number=next_number(db, "order"),
        buyer_id=rfq.buyer_id,
        seller_id=quote.seller_id,
        item_id=primary.item_id,
        item_name=primary.item_name,
        item_sku=primary.item_sku,
        item_image=primary.item_image,
        rfq_id=rfq.id,
        rfq_number=rfq.rfq_number,
        quote_id=quote.id,
        quote_number=quote.quote_number,
        quote_version=quote.version,
        quantity=quote.quantity,
        unit_price=quote.unit_price,
        total_price=quote.total_price,
        currency=quote.currency,
        status=OrderStatus.PENDING_CONFIRMATION.value,
        payment_method=payment_method,
        payment_status=(
            OrderPaymentStatus.UNPAID_CREDIT.value
            if payment_method == PaymentMethod.CREDIT.value
            else OrderPaymentStatus.UNPAID.value
        ),
        source="rfq",
        shipping_address=shipping_address or rfq.delivery_location,
        buyer_notes=buyer_notes,
        confirmation_deadline=now + timedelta(hours=settings.CONFIRMATION_SLA_HOURS),
        shipping_deadline=now + timedelta(days=quote.delivery_days + settings.SHIPPING_SLA_BUFFER_DAYS),
        created_at=now,
    )
    order.line_items = lines
    db.add(order)

    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("An order already exists for this quote")

    previous_quote_status = quote.status
    flipped = db.query(Quote).filter(
        Quote.id == quote.id,
        Quote.status.in_(ACCEPTABLE_QUOTE_STATUSES),
        Quote.order_id.is_(None),
    ).update({
        Quote.status: QuoteStatus.ACCEPTED.value,
        Quote.accepted_at: now,
        Quote.accepted_by: buyer_id,
        Quote.order_id: order.id,
    }, synchronize_session=False)
    if flipped != 1:
        raise ConflictError("Quote is no longer open for acceptance")
    db.refresh(quote)

    previous_rfq_status = rfq.status
    rfq.status = RFQStatus.ACCEPTED.value

    order_ref = {"order_id": order.id, "order_number": order.order_number}
    events.record_quote_event(
        db, quote, events.QUOTE_ACCEPTED, buyer_id, ActorType.BUYER.value,
        previous_quote_status, quote.status, order_ref,
    )
    events.record_rfq_event(
        db, rfq, events.RFQ_ACCEPTED, buyer_id, ActorType.BUYER.value,
        previous_rfq_status, rfq.status, order_ref,
    )
    events.record_order_audit(
        db, order, "created", ActorType.BUYER.value, buyer_id, None, order.status,
        {"quote_id": quote.id, "payment_method": payment_method},
    )
    pending = [outbox.notify(
        db, order.seller_id, notifications.ORDER_CREATED, f"order:{order.id}",
        {"order_number": order.order_number, "total_price": order.total_price},
    )]
    db.commit()
    outbox.dispatch_after_commit(db, pending)

    logger.info(f"[{order.order_number}] Created from quote {quote.quote_number}")
    return ok(order=_order_result(db, order), quote_id=quote.id)


# ============= TRANSITIONS =============

@service_operation("Failed to confirm order")
def confirm_order(
    db: Session,
    order_id: str,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
    seller_notes: Optional[str] = None,
) -> Dict[str, Any]:
    order = _load_order(db, order_id, lock=True)
    _require_seller(order, identity_set(seller_id, alt_seller_ids))

    now = datetime.utcnow()
    _apply_transition(db, order, OrderStatus.CONFIRMED.value, "confirm", "confirmed",
                      ActorType.SELLER.value, seller_id)
    order.confirmed_at = now
    order.days_to_confirm = _elapsed_days(order.created_at, now)
    if seller_notes:
        order.seller_notes = seller_notes

    pending = []
    if order.payment_method == PaymentMethod.CREDIT.value:
        pending.append(outbox.publish(db, outbox.INVOICE_FOR_CREDIT_ORDER, {"order_id": order.id}))
    pending.append(outbox.notify(
        db, order.buyer_id, notifications.ORDER_CONFIRMED, f"order:{order.id}",
        {"order_number": order.order_number},
    ))
    db.commit()
    outbox.dispatch_after_commit(db, pending)

    logger.info(f"[{order.order_number}] Confirmed by {seller_id}")
    return ok(order=_order_result(db, order))


@service_operation("Failed to reject order")
def reject_order(
    db: Session,
    order_id: str,
    seller_id: str,
    reason: Optional[str] = None,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Seller declines an order that is still awaiting confirmation."""
    order = _load_order(db, order_id, lock=True)
    _require_seller(order, identity_set(seller_id, alt_seller_ids))

    if order.status != OrderStatus.PENDING_CONFIRMATION.value:
        raise ConflictError(
            f'Cannot reject order in "{order.status}" status; order must be "pending_confirmation"'
        )

    _apply_transition(db, order, OrderStatus.CANCELLED.value, "reject", "rejected",
                      ActorType.SELLER.value, seller_id, {"reason": reason})
    order.cancelled_at = datetime.utcnow()
    order.rejection_reason = reason
    db.commit()

    logger.info(f"[{order.order_number}] Rejected by {seller_id}")
    return ok(order=_order_result(db, order))


@service_operation("Failed to start processing")
def start_processing(
    db: Session,
    order_id: str,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    order = _load_order(db, order_id, lock=True)
    _require_seller(order, identity_set(seller_id, alt_seller_ids))

    _apply_transition(db, order, OrderStatus.PROCESSING.value, "start processing",
                      "processing_started", ActorType.SELLER.value, seller_id)
    order.processing_at = datetime.utcnow()
    order.fulfillment_status = "picking"
    db.commit()

    logger.info(f"[{order.order_number}] Processing started")
    return ok(order=_order_result(db, order))


@service_operation("Failed to ship order")
def ship_order(
    db: Session,
    order_id: str,
    seller_id: str,
    carrier: Optional[str],
    tracking_number: Optional[str] = None,
    estimated_delivery: Optional[datetime] = None,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    order = _load_order(db, order_id, lock=True)
    _require_seller(order, identity_set(seller_id, alt_seller_ids))

    if not carrier or not carrier.strip():
        raise ValidationError("Carrier name is required")

    now = datetime.utcnow()
    _apply_transition(db, order, OrderStatus.SHIPPED.value, "ship", "shipped",
                      ActorType.SELLER.value, seller_id,
                      {"carrier": carrier.strip(), "tracking_number": tracking_number})
    order.shipped_at = now
    order.carrier = carrier.strip()
    order.tracking_number = tracking_number
    order.estimated_delivery = as_naive_utc(estimated_delivery)
    order.days_to_ship = _elapsed_days(order.confirmed_at or order.created_at, now)
    order.fulfillment_status = "shipped"

    pending = [outbox.notify(
        db, order.buyer_id, notifications.ORDER_SHIPPED, f"order:{order.id}",
        {"order_number": order.order_number, "carrier": order.carrier,
         "tracking_number": tracking_number},
    )]
    db.commit()
    outbox.dispatch_after_commit(db, pending)

    logger.info(f"[{order.order_number}] Shipped via {order.carrier}")
    return ok(order=_order_result(db, order))


@service_operation("Failed to mark order delivered")
def mark_delivered(
    db: Session,
    order_id: str,
    user_id: Optional[str],
    user_role: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """
    Record delivery, confirmed by the buyer, the seller or the system.
    Publishes invoice generation for the delivered order.
    """
    order = _load_order(db, order_id, lock=True)

    if user_role == Role.BUYER.value:
        if not belongs_to({user_id}, order.buyer_id):
            raise UnauthorizedError("You are not the buyer for this order")
    elif user_role == Role.SELLER.value:
        _require_seller(order, identity_set(user_id, alt_ids))
    elif user_role != Role.SYSTEM.value:
        raise ValidationError(f"Unknown role: {user_role}")

    now = datetime.utcnow()
    _apply_transition(db, order, OrderStatus.DELIVERED.value, "mark delivered", "delivered",
                      user_role, user_id)
    order.delivered_at = now
    order.days_to_deliver = _elapsed_days(order.shipped_at, now)
    order.delivery_confirmed_by = user_role
    order.fulfillment_status = "delivered"

    pending = [
        outbox.publish(db, outbox.INVOICE_FOR_DELIVERED_ORDER, {"order_id": order.id}),
        outbox.notify(
            db, order.seller_id, notifications.ORDER_DELIVERED, f"order:{order.id}",
            {"order_number": order.order_number, "confirmed_by": user_role},
        ),
    ]
    db.commit()
    outbox.dispatch_after_commit(db, pending)

    logger.info(f"[{order.order_number}] Delivered (confirmed by {user_role})")
    return ok(order=_order_result(db, order))


@service_operation("Failed to close order")
def close_order(
    db: Session,
    order_id: str,
    actor_id: Optional[str] = None,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Close a delivered order. Without ``actor_id`` the system closes it."""
    order = _load_order(db, order_id, lock=True)
    actor = ActorType.SYSTEM.value
    if actor_id:
        actor = _party_role(order, identity_set(actor_id, alt_ids))

    _apply_transition(db, order, OrderStatus.CLOSED.value, "close", "closed", actor, actor_id)
    order.closed_at = datetime.utcnow()
    db.commit()

    logger.info(f"[{order.order_number}] Closed by {actor}")
    return ok(order=_order_result(db, order))


@service_operation("Failed to cancel order")
def cancel_order(
    db: Session,
    order_id: str,
    seller_id: str,
    reason: Optional[str] = None,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Seller withdraws an order before it ships."""
    order = _load_order(db, order_id, lock=True)
    _require_seller(order, identity_set(seller_id, alt_seller_ids))

    if order.status not in CANCELLABLE_STATUSES:
        allowed = ", ".join(f'"{s}"' for s in CANCELLABLE_STATUSES)
        raise ConflictError(f'Cannot cancel order in "{order.status}" status; order must be one of {allowed}')

    _apply_transition(db, order, OrderStatus.CANCELLED.value, "cancel", "cancelled",
                      ActorType.SELLER.value, seller_id, {"reason": reason})
    order.cancelled_at = datetime.utcnow()
    order.rejection_reason = reason
    db.commit()

    logger.info(f"[{order.order_number}] Cancelled by {seller_id}")
    return ok(order=_order_result(db, order))


@service_operation("Failed to update tracking")
def update_tracking(
    db: Session,
    order_id: str,
    seller_id: str,
    tracking_number: str,
    carrier: Optional[str] = None,
    estimated_delivery: Optional[datetime] = None,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Fulfillment metadata only; the status does not change."""
    order = _load_order(db, order_id, lock=True)
    _require_seller(order, identity_set(seller_id, alt_seller_ids))

    if order.status != OrderStatus.SHIPPED.value:
        raise ConflictError(f'Cannot update tracking for order in "{order.status}" status; order must be "shipped"')
    if not tracking_number or not tracking_number.strip():
        raise ValidationError("Tracking number is required")

    previous = order.tracking_number
    order.tracking_number = tracking_number.strip()
    if carrier:
        order.carrier = carrier.strip()
    if estimated_delivery:
        order.estimated_delivery = as_naive_utc(estimated_delivery)

    events.record_order_audit(
        db, order, "tracking_added", ActorType.SELLER.value, seller_id,
        previous, order.tracking_number, {"carrier": order.carrier},
    )
    db.commit()

    return ok(order=_order_result(db, order))


# ============= READS =============

@service_operation("Failed to load order")
def get_order(
    db: Session,
    order_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    order = _load_order(db, order_id)
    _party_role(order, identity_set(user_id, alt_ids))
    data = _order_result(db, order, with_sla=True)
    data["allowed_transitions"] = get_allowed_transitions(order.status)
    return ok(order=data)


def _paginate_orders(db: Session, query, page: int, limit: int, with_sla: bool) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = query.count()
    orders = query.order_by(desc(Order.created_at)).offset((page - 1) * limit).limit(limit).all()

    totals = order_payment_totals(db, [o.id for o in orders])
    now = datetime.utcnow()
    items = []
    for order in orders:
        confirmed, pending = totals.get(order.id, (0.0, 0.0))
        data = order_to_dict(order, paid_amount=confirmed, pending_amount=pending)
        if with_sla:
            enrich_order_with_sla(data, order, now=now)
        items.append(data)

    return ok(
        orders=items,
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


@service_operation("Failed to load buyer orders")
def get_buyer_orders(
    db: Session,
    buyer_id: str,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    query = db.query(Order).filter(Order.buyer_id == buyer_id)
    if status:
        query = query.filter(Order.status == status)
    return _paginate_orders(db, query, page, limit, with_sla=False)


@service_operation("Failed to load seller orders")
def get_seller_orders(
    db: Session,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    query = db.query(Order).filter(Order.seller_id.in_(identity_set(seller_id, alt_seller_ids)))
    if status:
        query = query.filter(Order.status == status)
    return _paginate_orders(db, query, page, limit, with_sla=True)


@service_operation("Failed to load order history")
def get_order_history(
    db: Session,
    order_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    order = _load_order(db, order_id)
    _party_role(order, identity_set(user_id, alt_ids))
    entries = db.query(MarketplaceOrderAudit).filter(
        MarketplaceOrderAudit.order_id == order.id
    ).order_by(MarketplaceOrderAudit.id).all()
    return ok(history=[order_audit_to_dict(e) for e in entries])


@service_operation("Failed to load order stats")
def get_order_stats(
    db: Session,
    user_id: str,
    role: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Counts per status plus order value for the caller's side of the market."""
    if role == Role.SELLER.value:
        party_filter = Order.seller_id.in_(identity_set(user_id, alt_ids))
    elif role == Role.BUYER.value:
        party_filter = Order.buyer_id == user_id
    else:
        raise ValidationError(f"Unknown role: {role}")

    rows = db.query(
        Order.status, func.count(Order.id), func.coalesce(func.sum(Order.total_price), 0.0)
    ).filter(party_filter).group_by(Order.status).all()

    by_status = {status: 0 for status in enum_values(OrderStatus)}
    total_value = 0.0
    completed_value = 0.0
    for status, count, value in rows:
        by_status[status] = count
        if status != OrderStatus.CANCELLED.value:
            total_value += value
        if status in (OrderStatus.DELIVERED.value, OrderStatus.CLOSED.value):
            completed_value += value

    return ok(stats={
        "total": sum(by_status.values()),
        "by_status": by_status,
        "active": sum(by_status[s] for s in (
            OrderStatus.PENDING_CONFIRMATION.value, OrderStatus.CONFIRMED.value,
            OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value,
        )),
        "total_value": round(total_value, 2),
        "completed_value": round(completed_value, 2),
    })
