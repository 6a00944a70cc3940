"""
Invoice lifecycle.

Invoices are derived from orders: automatically once an order is delivered,
at confirmation for credit orders, or as a seller-managed draft. Financial
fields are computed once and frozen when the invoice leaves draft; the ORM
guard in ``tradeflow.db.models`` rejects any later change.

draft  -> issued | cancelled
issued -> paid | overdue
overdue -> paid
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import desc, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tradeflow.core.config import settings, PAYMENT_TERMS_DAYS
from tradeflow.core.errors import (
    ConflictError, InfrastructureError, NotFoundError, UnauthorizedError, ValidationError,
    ok, service_operation,
)
from tradeflow.core.logging import get_logger
from tradeflow.core.rbac import belongs_to, identity_set
from tradeflow.db.models import (
    Invoice, InvoiceStatus, MarketplaceInvoiceEvent, Order, OrderStatus,
    OrderPaymentStatus, PaymentMethod, BuyerProfile, SellerProfile, ActorType,
    enum_values,
)
from tradeflow.db.types import LineItem
from tradeflow.services import events, notifications, outbox
from tradeflow.services.payments import is_fully_paid, order_payment_totals
from tradeflow.services.sequences import next_number
from tradeflow.services.serializers import event_to_dict, invoice_to_dict

logger = get_logger(__name__)


PAYABLE_STATUSES = (InvoiceStatus.ISSUED.value, InvoiceStatus.OVERDUE.value)
INVOICEABLE_ORDER_STATUSES = (OrderStatus.DELIVERED.value, OrderStatus.CLOSED.value)


# ============= HELPERS =============

def compute_financials(subtotal: float, vat_rate: Optional[float] = None,
                       platform_fee_rate: Optional[float] = None) -> Dict[str, float]:
    """VAT on the subtotal, platform fee on the gross total. Rounded to cents."""
    vat_rate = settings.VAT_RATE_PERCENT if vat_rate is None else vat_rate
    platform_fee_rate = settings.PLATFORM_FEE_RATE_PERCENT if platform_fee_rate is None else platform_fee_rate

    subtotal = round(subtotal, 2)
    vat_amount = round(subtotal * vat_rate / 100, 2)
    total_amount = round(subtotal + vat_amount, 2)
    fee_amount = round(total_amount * platform_fee_rate / 100, 2)
    return {
        "subtotal": subtotal,
        "vat_rate": vat_rate,
        "vat_amount": vat_amount,
        "total_amount": total_amount,
        "platform_fee_rate": platform_fee_rate,
        "platform_fee_amount": fee_amount,
        "net_to_seller": round(total_amount - fee_amount, 2),
    }


def due_date_for(payment_terms: str, issued_at: datetime) -> datetime:
    return issued_at + timedelta(days=PAYMENT_TERMS_DAYS[payment_terms])


def _resolve_terms(payment_terms: Optional[str]) -> str:
    terms = payment_terms or settings.DEFAULT_PAYMENT_TERMS
    if terms not in PAYMENT_TERMS_DAYS:
        raise ValidationError(f"Unknown payment terms: {terms}")
    return terms


def _line_items_from_order(order: Order) -> List[LineItem]:
    if not order.line_items:
        return [LineItem(
            name=order.item_name or order.order_number,
            quantity=order.quantity,
            unit_price=order.unit_price,
            total=order.total_price,
            item_id=order.item_id,
            sku=order.item_sku,
            image=order.item_image,
        )]
    return [
        LineItem(
            name=line.item_name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total=line.total_price,
            item_id=line.item_id,
            sku=line.item_sku,
            image=line.item_image,
            discount=line.discount or 0.0,
        )
        for line in order.line_items
    ]


def _seller_profile(db: Session, seller_id: str) -> Optional[SellerProfile]:
    return db.query(SellerProfile).filter(
        or_(SellerProfile.user_id == seller_id, SellerProfile.id == seller_id)
    ).first()


def _build_invoice(db: Session, order: Order, payment_terms: str, notes: Optional[str] = None) -> Invoice:
    """Snapshot parties, lines and financials from the order."""
    seller = _seller_profile(db, order.seller_id)
    buyer = db.query(BuyerProfile).filter(BuyerProfile.user_id == order.buyer_id).first()

    financials = compute_financials(order.total_price)
    return Invoice(
        invoice_number=next_number(db, "invoice", scope_key=order.seller_id),
        order_id=order.id,
        order_number=order.order_number,
        seller_id=order.seller_id,
        buyer_id=order.buyer_id,
        seller_name=seller.display_name if seller else None,
        seller_legal_name=seller.legal_name if seller else None,
        seller_vat_number=seller.vat_number if seller else None,
        seller_address=seller.address if seller else None,
        buyer_name=buyer.full_name if buyer else None,
        buyer_company=buyer.company_name if buyer else None,
        buyer_vat_number=buyer.vat_number if buyer else None,
        buyer_address=buyer.address if buyer else None,
        line_items=_line_items_from_order(order),
        currency=order.currency,
        payment_terms=payment_terms,
        notes=notes,
        **financials,
    )


def _load_order(db: Session, order_id: str) -> Order:
    order = db.query(Order).filter(Order.id == order_id).with_for_update().first()
    if not order:
        raise NotFoundError("Order not found")
    if db.query(Invoice.id).filter(Invoice.order_id == order.id).first():
        raise ConflictError("Invoice already exists for this order")
    return order


def _load_invoice(db: Session, invoice_id: str, lock: bool = False) -> Invoice:
    query = db.query(Invoice).filter(Invoice.id == invoice_id)
    if lock:
        query = query.with_for_update()
    invoice = query.first()
    if not invoice:
        raise NotFoundError("Invoice not found")
    return invoice


def _require_seller(invoice: Invoice, seller_ids: Iterable[str]) -> None:
    if not belongs_to(seller_ids, invoice.seller_id):
        raise UnauthorizedError("You are not the seller for this invoice")


def _require_party(invoice: Invoice, caller_ids: Iterable[str]) -> None:
    """Sellers see every invoice they own; buyers never see drafts."""
    caller_ids = set(caller_ids)
    if belongs_to(caller_ids, invoice.seller_id):
        return
    if belongs_to(caller_ids, invoice.buyer_id):
        if invoice.status == InvoiceStatus.DRAFT.value:
            raise NotFoundError("Invoice not found")
        return
    raise UnauthorizedError("You are not a party to this invoice")


def _flush_new(db: Session, invoice: Invoice) -> None:
    db.add(invoice)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("Invoice already exists for this order")


def _publish_issue_effects(db: Session, invoice: Invoice) -> List[Optional[int]]:
    return [
        outbox.publish(db, outbox.ASSOCIATE_PAYMENTS,
                       {"order_id": invoice.order_id, "invoice_id": invoice.id}),
        outbox.notify(
            db, invoice.buyer_id, notifications.INVOICE_ISSUED, f"invoice:{invoice.id}",
            {"invoice_number": invoice.invoice_number, "total_amount": invoice.total_amount,
             "due_date": invoice.due_date.isoformat() if invoice.due_date else None},
        ),
    ]


def _invoice_result(db: Session, invoice: Invoice) -> Dict[str, Any]:
    paid = order_payment_totals(db, [invoice.order_id]).get(invoice.order_id, (0.0, 0.0))[0]
    return invoice_to_dict(invoice, paid_amount=paid)


def _issue_new(db: Session, order: Order, payment_terms: Optional[str], event_type: str) -> Dict[str, Any]:
    """Create an invoice already issued by the system."""
    terms = _resolve_terms(payment_terms)
    now = datetime.utcnow()

    invoice = _build_invoice(db, order, terms)
    invoice.status = InvoiceStatus.ISSUED.value
    invoice.issued_at = now
    invoice.issued_by = ActorType.SYSTEM.value
    invoice.due_date = due_date_for(terms, now)
    _flush_new(db, invoice)

    events.record_invoice_event(
        db, invoice, event_type, None, ActorType.SYSTEM.value, None, invoice.status,
        {"order_id": order.id, "order_number": order.order_number,
         "total_amount": invoice.total_amount},
    )
    pending = _publish_issue_effects(db, invoice)
    db.commit()
    outbox.dispatch_after_commit(db, pending)

    logger.info(
        f"[{invoice.invoice_number}] Issued for order {order.order_number}: "
        f"{invoice.total_amount} {invoice.currency}, due {invoice.due_date:%Y-%m-%d}"
    )
    return ok(invoice=_invoice_result(db, invoice))


# ============= CREATION =============

@service_operation("Failed to create invoice")
def create_from_delivered_order(db: Session, order_id: str,
                                payment_terms: Optional[str] = None) -> Dict[str, Any]:
    """Generate and issue the invoice for a delivered (or closed) order."""
    order = _load_order(db, order_id)
    if order.status not in INVOICEABLE_ORDER_STATUSES:
        raise ConflictError(
            f'Cannot create invoice for order in "{order.status}" status; '
            f'order must be "delivered" or "closed"'
        )
    return _issue_new(db, order, payment_terms, events.INVOICE_CREATED)


@service_operation("Failed to create invoice")
def create_from_confirmed_order(db: Session, order_id: str,
                                payment_terms: Optional[str] = None) -> Dict[str, Any]:
    """Credit orders are invoiced at confirmation, before fulfillment."""
    order = _load_order(db, order_id)
    if order.payment_method != PaymentMethod.CREDIT.value:
        raise ConflictError("Only credit orders are invoiced at confirmation")
    if order.status != OrderStatus.CONFIRMED.value:
        raise ConflictError(
            f'Cannot create invoice for order in "{order.status}" status; order must be "confirmed"'
        )
    return _issue_new(db, order, payment_terms, events.INVOICE_CREATED_AND_ISSUED)


@service_operation("Failed to create draft invoice")
def create_draft_invoice(
    db: Session,
    order_id: str,
    seller_id: str,
    payment_terms: Optional[str] = None,
    notes: Optional[str] = None,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Seller-managed path: a draft the seller reviews before issuing."""
    order = _load_order(db, order_id)
    if not belongs_to(identity_set(seller_id, alt_seller_ids), order.seller_id):
        raise UnauthorizedError("You are not the seller for this order")

    eligible = order.status in INVOICEABLE_ORDER_STATUSES or (
        order.status == OrderStatus.CONFIRMED.value
        and order.payment_method == PaymentMethod.CREDIT.value
    )
    if not eligible:
        raise ConflictError(f'Cannot create invoice for order in "{order.status}" status')

    invoice = _build_invoice(db, order, _resolve_terms(payment_terms), notes)
    invoice.status = InvoiceStatus.DRAFT.value
    _flush_new(db, invoice)

    events.record_invoice_event(
        db, invoice, events.INVOICE_CREATED, seller_id, ActorType.SELLER.value, None, invoice.status,
        {"order_id": order.id, "order_number": order.order_number},
    )
    db.commit()

    logger.info(f"[{invoice.invoice_number}] Draft created for order {order.order_number}")
    return ok(invoice=_invoice_result(db, invoice))


# ============= TRANSITIONS =============

@service_operation("Failed to issue invoice")
def issue_invoice(
    db: Session,
    invoice_id: str,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    invoice = _load_invoice(db, invoice_id, lock=True)
    _require_seller(invoice, identity_set(seller_id, alt_seller_ids))
    if invoice.status != InvoiceStatus.DRAFT.value:
        raise ConflictError(f'Cannot issue invoice in "{invoice.status}" status')

    now = datetime.utcnow()
    invoice.status = InvoiceStatus.ISSUED.value
    invoice.issued_at = now
    invoice.issued_by = seller_id
    invoice.due_date = due_date_for(invoice.payment_terms, now)

    events.record_invoice_event(
        db, invoice, events.INVOICE_ISSUED, seller_id, ActorType.SELLER.value,
        InvoiceStatus.DRAFT.value, invoice.status,
    )
    pending = _publish_issue_effects(db, invoice)
    db.commit()
    outbox.dispatch_after_commit(db, pending)

    logger.info(f"[{invoice.invoice_number}] Issued by {seller_id}")
    return ok(invoice=_invoice_result(db, invoice))


@service_operation("Failed to cancel invoice")
def cancel_invoice(
    db: Session,
    invoice_id: str,
    seller_id: str,
    reason: Optional[str] = None,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Only drafts can be cancelled; issued invoices are settled or go overdue."""
    invoice = _load_invoice(db, invoice_id, lock=True)
    _require_seller(invoice, identity_set(seller_id, alt_seller_ids))
    if invoice.status != InvoiceStatus.DRAFT.value:
        raise ConflictError(f'Cannot cancel invoice in "{invoice.status}" status; invoice must be "draft"')

    invoice.status = InvoiceStatus.CANCELLED.value
    invoice.cancelled_at = datetime.utcnow()
    invoice.cancel_reason = reason
    events.record_invoice_event(
        db, invoice, events.INVOICE_CANCELLED, seller_id, ActorType.SELLER.value,
        InvoiceStatus.DRAFT.value, invoice.status, {"reason": reason},
    )
    db.commit()

    logger.info(f"[{invoice.invoice_number}] Cancelled by {seller_id}")
    return ok(invoice=_invoice_result(db, invoice))


def settle(db: Session, invoice: Invoice, actor_id: Optional[str]) -> None:
    """Mark a payable invoice paid inside the caller's transaction."""
    previous = invoice.status
    now = datetime.utcnow()
    invoice.status = InvoiceStatus.PAID.value
    invoice.paid_at = now
    if invoice.order is not None:
        invoice.order.payment_status = OrderPaymentStatus.PAID.value

    actor_type = ActorType.SYSTEM.value if actor_id in (None, ActorType.SYSTEM.value) else ActorType.SELLER.value
    events.record_invoice_event(
        db, invoice, events.INVOICE_PAID, actor_id, actor_type, previous, invoice.status,
        {"total_amount": invoice.total_amount},
    )
    logger.info(f"[{invoice.invoice_number}] Paid")


@service_operation("Failed to mark invoice paid")
def mark_paid(db: Session, invoice_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """Settle an issued or overdue invoice once confirmed payments cover it."""
    invoice = _load_invoice(db, invoice_id, lock=True)
    if invoice.status in (InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value):
        raise ConflictError("Invoice is already paid or cancelled")
    if invoice.status == InvoiceStatus.DRAFT.value:
        raise ConflictError("Cannot mark a draft invoice as paid; issue it first")
    if not is_fully_paid(db, invoice):
        raise ConflictError("Payments do not cover full invoice amount")

    settle(db, invoice, actor_id or ActorType.SYSTEM.value)
    db.commit()
    return ok(invoice=_invoice_result(db, invoice))


@service_operation("Failed to mark invoice overdue")
def mark_overdue(db: Session, invoice_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    invoice = _load_invoice(db, invoice_id)
    if invoice.status != InvoiceStatus.ISSUED.value:
        raise ConflictError("Can only mark issued invoices as overdue")

    now = now or datetime.utcnow()
    # Conditional flip: a concurrent payment wins over the sweep
    flipped = db.query(Invoice).filter(
        Invoice.id == invoice.id,
        Invoice.status == InvoiceStatus.ISSUED.value,
    ).update({
        Invoice.status: InvoiceStatus.OVERDUE.value,
        Invoice.overdue_at: now,
    }, synchronize_session=False)
    if flipped != 1:
        raise ConflictError("Can only mark issued invoices as overdue")
    db.refresh(invoice)

    events.record_invoice_event(
        db, invoice, events.INVOICE_OVERDUE, None, ActorType.SYSTEM.value,
        InvoiceStatus.ISSUED.value, invoice.status,
        {"due_date": invoice.due_date.isoformat() if invoice.due_date else None},
    )
    db.commit()

    logger.info(f"[{invoice.invoice_number}] Overdue (due {invoice.due_date})")
    return ok(invoice=_invoice_result(db, invoice))


def process_overdue_invoices(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Flip every issued invoice past its due date to overdue.

    Each invoice commits on its own; one failure does not stop the batch
    and a second run over the same data marks nothing.
    """
    now = now or datetime.utcnow()
    due_ids = [
        row.id for row in db.query(Invoice.id).filter(
            Invoice.status == InvoiceStatus.ISSUED.value,
            Invoice.due_date.isnot(None),
            Invoice.due_date < now,
        ).order_by(Invoice.due_date).all()
    ]

    marked = 0
    errors = 0
    for invoice_id in due_ids:
        try:
            result = mark_overdue(db, invoice_id, now=now)
        except InfrastructureError as e:
            errors += 1
            logger.error(f"Overdue sweep failed for invoice {invoice_id}: {e}")
            continue
        if result["success"]:
            marked += 1

    if due_ids:
        logger.info(f"Overdue sweep: {marked}/{len(due_ids)} invoices marked")
    return ok(processed=len(due_ids), marked=marked, errors=errors)


# ============= READS =============

@service_operation("Failed to load invoice")
def get_invoice(
    db: Session,
    invoice_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    invoice = _load_invoice(db, invoice_id)
    _require_party(invoice, identity_set(user_id, alt_ids))
    return ok(invoice=_invoice_result(db, invoice))


@service_operation("Failed to load invoice")
def get_invoice_by_order(
    db: Session,
    order_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    invoice = db.query(Invoice).filter(Invoice.order_id == order_id).first()
    if not invoice:
        raise NotFoundError("Invoice not found")
    _require_party(invoice, identity_set(user_id, alt_ids))
    return ok(invoice=_invoice_result(db, invoice))


def _paginate_invoices(db: Session, query, page: int, limit: int) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = query.count()
    invoices = query.order_by(desc(Invoice.created_at)).offset((page - 1) * limit).limit(limit).all()

    totals = order_payment_totals(db, [i.order_id for i in invoices])
    items = [
        invoice_to_dict(i, paid_amount=totals.get(i.order_id, (0.0, 0.0))[0])
        for i in invoices
    ]
    return ok(
        invoices=items,
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


def _check_status_filter(status: Optional[str]) -> None:
    if status and status not in enum_values(InvoiceStatus):
        raise ValidationError(f"Unknown invoice status: {status}")


@service_operation("Failed to load seller invoices")
def get_seller_invoices(
    db: Session,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    _check_status_filter(status)
    query = db.query(Invoice).filter(Invoice.seller_id.in_(identity_set(seller_id, alt_seller_ids)))
    if status:
        query = query.filter(Invoice.status == status)
    return _paginate_invoices(db, query, page, limit)


@service_operation("Failed to load buyer invoices")
def get_buyer_invoices(
    db: Session,
    buyer_id: str,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    _check_status_filter(status)
    query = db.query(Invoice).filter(
        Invoice.buyer_id == buyer_id,
        Invoice.status != InvoiceStatus.DRAFT.value,
    )
    if status:
        query = query.filter(Invoice.status == status)
    return _paginate_invoices(db, query, page, limit)


@service_operation("Failed to load invoice history")
def get_invoice_history(
    db: Session,
    invoice_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    invoice = _load_invoice(db, invoice_id)
    _require_party(invoice, identity_set(user_id, alt_ids))
    entries = db.query(MarketplaceInvoiceEvent).filter(
        MarketplaceInvoiceEvent.invoice_id == invoice.id
    ).order_by(MarketplaceInvoiceEvent.id).all()
    return ok(events=[event_to_dict(e) for e in entries])


def _status_totals(db: Session, party_filter) -> Dict[str, Dict[str, float]]:
    rows = db.query(
        Invoice.status,
        func.count(Invoice.id),
        func.coalesce(func.sum(Invoice.total_amount), 0.0),
        func.coalesce(func.sum(Invoice.net_to_seller), 0.0),
    ).filter(party_filter).group_by(Invoice.status).all()

    totals = {s: {"count": 0, "amount": 0.0, "net": 0.0} for s in enum_values(InvoiceStatus)}
    for status, count, amount, net in rows:
        totals[status] = {"count": count, "amount": float(amount), "net": float(net)}
    return totals


@service_operation("Failed to load invoice stats")
def get_seller_invoice_stats(
    db: Session,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    totals = _status_totals(db, Invoice.seller_id.in_(identity_set(seller_id, alt_seller_ids)))
    issued, overdue, paid = (totals[s.value] for s in (
        InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE, InvoiceStatus.PAID
    ))
    return ok(stats={
        "by_status": {s: t["count"] for s, t in totals.items()},
        "total_invoiced": round(issued["amount"] + overdue["amount"] + paid["amount"], 2),
        "total_paid": round(paid["amount"], 2),
        "total_outstanding": round(issued["amount"] + overdue["amount"], 2),
        "total_overdue": round(overdue["amount"], 2),
        "net_received": round(paid["net"], 2),
    })


@service_operation("Failed to load invoice stats")
def get_buyer_invoice_stats(db: Session, buyer_id: str) -> Dict[str, Any]:
    totals = _status_totals(db, Invoice.buyer_id == buyer_id)
    totals.pop(InvoiceStatus.DRAFT.value)
    issued, overdue, paid = (totals[s.value] for s in (
        InvoiceStatus.ISSUED, InvoiceStatus.OVERDUE, InvoiceStatus.PAID
    ))
    return ok(stats={
        "by_status": {s: t["count"] for s, t in totals.items()},
        "total_due": round(issued["amount"] + overdue["amount"], 2),
        "total_paid": round(paid["amount"], 2),
        "total_overdue": round(overdue["amount"], 2),
    })
