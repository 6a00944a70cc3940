"""
Payment facts recorded against orders.

Payment confirmation comes from outside (bank reconciliation, finance
staff). This module records those facts and computes paid/outstanding
amounts for orders and invoices; an invoice is settled once confirmed
payments cover its total.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from tradeflow.core.errors import (
    ConflictError, NotFoundError, UnauthorizedError, ValidationError,
    ok, service_operation,
)
from tradeflow.core.logging import get_logger
from tradeflow.core.rbac import belongs_to
from tradeflow.db.models import (
    Invoice, InvoiceStatus, MarketplacePayment, Order, OrderStatus, PaymentStatus
)
from tradeflow.services.sequences import next_number
from tradeflow.services.serializers import payment_to_dict

logger = get_logger(__name__)


def order_payment_totals(db: Session, order_ids: Iterable[str]) -> Dict[str, Tuple[float, float]]:
    """{order_id: (confirmed_amount, pending_amount)} in one grouped query."""
    order_ids = list(order_ids)
    if not order_ids:
        return {}

    confirmed = func.coalesce(func.sum(case(
        (MarketplacePayment.status == PaymentStatus.CONFIRMED.value, MarketplacePayment.amount),
        else_=0.0,
    )), 0.0)
    pending = func.coalesce(func.sum(case(
        (MarketplacePayment.status == PaymentStatus.PENDING.value, MarketplacePayment.amount),
        else_=0.0,
    )), 0.0)

    rows = db.query(MarketplacePayment.order_id, confirmed, pending).filter(
        MarketplacePayment.order_id.in_(order_ids)
    ).group_by(MarketplacePayment.order_id).all()
    return {order_id: (float(c), float(p)) for order_id, c, p in rows}


def confirmed_amount(db: Session, order_id: str) -> float:
    return order_payment_totals(db, [order_id]).get(order_id, (0.0, 0.0))[0]


def is_fully_paid(db: Session, invoice: Invoice) -> bool:
    return round(confirmed_amount(db, invoice.order_id), 2) >= round(invoice.total_amount, 2)


@service_operation("Failed to record payment")
def record_payment(
    db: Session,
    order_id: str,
    buyer_id: str,
    amount: float,
    bank_reference: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Record a pending payment. It may arrive before the invoice exists; once
    an invoice is out, the amount may not exceed what is still owed on it.
    """
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    if not belongs_to({buyer_id}, order.buyer_id):
        raise UnauthorizedError("You are not the buyer for this order")
    if amount is None or amount <= 0:
        raise ValidationError("Payment amount must be positive")
    if order.status == OrderStatus.CANCELLED.value:
        raise ConflictError("Cannot record payment for a cancelled order")

    if bank_reference:
        duplicate = db.query(MarketplacePayment.id).filter(
            MarketplacePayment.order_id == order.id,
            MarketplacePayment.bank_reference == bank_reference,
        ).first()
        if duplicate:
            raise ConflictError("A payment with this bank reference already exists for this order")

    invoice = db.query(Invoice).filter(Invoice.order_id == order.id).first()
    if invoice and invoice.status != InvoiceStatus.CANCELLED.value:
        remaining = round(invoice.total_amount - confirmed_amount(db, order.id), 2)
        if round(amount, 2) > remaining:
            raise ValidationError(f"Payment amount exceeds remaining balance of {remaining:.2f}")

    payment = MarketplacePayment(
        payment_number=next_number(db, "payment"),
        order_id=order.id,
        invoice_id=invoice.id if invoice else None,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        amount=round(amount, 2),
        currency=order.currency,
        status=PaymentStatus.PENDING.value,
        bank_reference=bank_reference,
    )
    db.add(payment)
    db.commit()

    logger.info(f"[{payment.payment_number}] Recorded {payment.amount} for order {order.order_number}")
    return ok(payment=payment_to_dict(payment))


@service_operation("Failed to confirm payment")
def confirm_payment(db: Session, payment_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """Confirm a pending payment and settle the invoice if it is now covered."""
    from tradeflow.services import invoices

    payment = db.get(MarketplacePayment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    if payment.status != PaymentStatus.PENDING.value:
        raise ConflictError(f'Cannot confirm payment in "{payment.status}" status')

    payment.status = PaymentStatus.CONFIRMED.value
    payment.confirmed_at = datetime.utcnow()
    db.flush()

    settled = False
    invoice = db.query(Invoice).filter(Invoice.order_id == payment.order_id).first()
    if invoice and invoice.status in invoices.PAYABLE_STATUSES and is_fully_paid(db, invoice):
        invoices.settle(db, invoice, actor_id or "system")
        settled = True

    db.commit()
    logger.info(f"[{payment.payment_number}] Confirmed (invoice settled: {settled})")
    return ok(payment=payment_to_dict(payment), invoice_settled=settled)


@service_operation("Failed to fail payment")
def fail_payment(db: Session, payment_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    payment = db.get(MarketplacePayment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    if payment.status != PaymentStatus.PENDING.value:
        raise ConflictError(f'Cannot fail payment in "{payment.status}" status')

    payment.status = PaymentStatus.FAILED.value
    payment.failure_reason = reason
    db.commit()
    return ok(payment=payment_to_dict(payment))


@service_operation("Failed to associate payments")
def associate_payments_with_invoice(db: Session, order_id: str, invoice_id: str) -> Dict[str, Any]:
    """
    Attach payments recorded before the invoice existed, then settle the
    invoice if those payments already cover it.
    """
    from tradeflow.services import invoices

    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice not found")
    if invoice.order_id != order_id:
        raise ConflictError("Invoice does not belong to this order")

    associated = db.query(MarketplacePayment).filter(
        MarketplacePayment.order_id == order_id,
        MarketplacePayment.invoice_id.is_(None),
    ).update({MarketplacePayment.invoice_id: invoice_id}, synchronize_session=False)

    settled = False
    if invoice.status in invoices.PAYABLE_STATUSES and is_fully_paid(db, invoice):
        invoices.settle(db, invoice, "system")
        settled = True

    db.commit()
    if associated:
        logger.info(f"[{invoice.invoice_number}] Associated {associated} earlier payments")
    return ok(associated=associated, invoice_settled=settled)
