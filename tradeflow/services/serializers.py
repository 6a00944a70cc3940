"""
Plain-dict views of lifecycle entities returned by the services.
"""
from typing import Any, Dict, List, Optional

from tradeflow.db.types import LineItem


def _round(value: Optional[float]) -> float:
    return round(value or 0.0, 2)


def rfq_to_dict(rfq) -> Dict[str, Any]:
    return {
        "id": rfq.id,
        "rfq_number": rfq.rfq_number,
        "buyer_id": rfq.buyer_id,
        "seller_id": rfq.seller_id,
        "item_id": rfq.item_id,
        "quantity": rfq.quantity,
        "delivery_location": rfq.delivery_location,
        "status": rfq.status,
        "quoted_price": rfq.quoted_price,
        "quoted_lead_time": rfq.quoted_lead_time,
        "responded_at": rfq.responded_at,
        "created_at": rfq.created_at,
    }


def quote_line_to_dict(line) -> Dict[str, Any]:
    return {
        "id": line.id,
        "item_id": line.item_id,
        "item_name": line.item_name,
        "item_sku": line.item_sku,
        "unit_price": line.unit_price,
        "quantity": line.quantity,
        "discount": line.discount,
        "total_price": line.total_price,
    }


def quote_to_dict(quote, include_internal: bool = False) -> Dict[str, Any]:
    data = {
        "id": quote.id,
        "quote_number": quote.quote_number,
        "rfq_id": quote.rfq_id,
        "seller_id": quote.seller_id,
        "buyer_id": quote.buyer_id,
        "unit_price": quote.unit_price,
        "quantity": quote.quantity,
        "discount": quote.discount,
        "discount_percent": quote.discount_percent,
        "total_price": quote.total_price,
        "currency": quote.currency,
        "delivery_days": quote.delivery_days,
        "delivery_terms": quote.delivery_terms,
        "valid_until": quote.valid_until,
        "notes": quote.notes,
        "version": quote.version,
        "is_latest": quote.is_latest,
        "status": quote.status,
        "sent_at": quote.sent_at,
        "accepted_at": quote.accepted_at,
        "order_id": quote.order_id,
        "rejected_at": quote.rejected_at,
        "rejection_reason": quote.rejection_reason,
        "expired_at": quote.expired_at,
        "created_at": quote.created_at,
        "updated_at": quote.updated_at,
        "line_items": [quote_line_to_dict(line) for line in quote.line_items],
    }
    if include_internal:
        data["internal_notes"] = quote.internal_notes
    return data


def quote_version_to_dict(version) -> Dict[str, Any]:
    return {
        "version": version.version,
        "status": version.status,
        "unit_price": version.unit_price,
        "quantity": version.quantity,
        "discount": version.discount,
        "discount_percent": version.discount_percent,
        "total_price": version.total_price,
        "currency": version.currency,
        "delivery_days": version.delivery_days,
        "delivery_terms": version.delivery_terms,
        "valid_until": version.valid_until,
        "notes": version.notes,
        "created_by": version.created_by,
        "change_reason": version.change_reason,
        "created_at": version.created_at,
    }


def event_to_dict(event) -> Dict[str, Any]:
    """Quote, RFQ and invoice events share one shape."""
    data = {
        "id": event.id,
        "event_type": event.event_type,
        "actor_id": event.actor_id,
        "actor_type": event.actor_type,
        "from_status": event.from_status,
        "to_status": event.to_status,
        "metadata": event.metadata_json or {},
        "created_at": event.created_at,
    }
    if hasattr(event, "version"):
        data["version"] = event.version
    return data


def order_audit_to_dict(entry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "actor": entry.actor,
        "actor_id": entry.actor_id,
        "previous_value": entry.previous_value,
        "new_value": entry.new_value,
        "metadata": entry.metadata_json or {},
        "created_at": entry.created_at,
    }


def order_line_to_dict(line) -> Dict[str, Any]:
    return {
        "id": line.id,
        "item_id": line.item_id,
        "item_name": line.item_name,
        "item_sku": line.item_sku,
        "item_image": line.item_image,
        "unit_price": line.unit_price,
        "quantity": line.quantity,
        "discount": line.discount,
        "total_price": line.total_price,
    }


def order_to_dict(order, paid_amount: float = 0.0, pending_amount: float = 0.0) -> Dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "item_id": order.item_id,
        "item_name": order.item_name,
        "item_sku": order.item_sku,
        "item_image": order.item_image,
        "rfq_id": order.rfq_id,
        "rfq_number": order.rfq_number,
        "quote_id": order.quote_id,
        "quote_number": order.quote_number,
        "quote_version": order.quote_version,
        "quantity": order.quantity,
        "unit_price": order.unit_price,
        "total_price": order.total_price,
        "currency": order.currency,
        "status": order.status,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "shipping_address": order.shipping_address,
        "buyer_notes": order.buyer_notes,
        "seller_notes": order.seller_notes,
        "confirmation_deadline": order.confirmation_deadline,
        "shipping_deadline": order.shipping_deadline,
        "fulfillment_status": order.fulfillment_status,
        "confirmed_at": order.confirmed_at,
        "days_to_confirm": order.days_to_confirm,
        "processing_at": order.processing_at,
        "shipped_at": order.shipped_at,
        "carrier": order.carrier,
        "tracking_number": order.tracking_number,
        "estimated_delivery": order.estimated_delivery,
        "days_to_ship": order.days_to_ship,
        "delivered_at": order.delivered_at,
        "days_to_deliver": order.days_to_deliver,
        "delivery_confirmed_by": order.delivery_confirmed_by,
        "closed_at": order.closed_at,
        "cancelled_at": order.cancelled_at,
        "rejection_reason": order.rejection_reason,
        "created_at": order.created_at,
        "line_items": [order_line_to_dict(line) for line in order.line_items],
        "paid_amount": _round(paid_amount),
        "pending_amount": _round(pending_amount),
        "remaining_amount": _round(max(order.total_price - paid_amount, 0.0)),
    }


def line_items_to_dicts(items: Optional[List[LineItem]]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in (items or [])]


def invoice_to_dict(invoice, paid_amount: float = 0.0) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "order_id": invoice.order_id,
        "order_number": invoice.order_number,
        "seller_id": invoice.seller_id,
        "buyer_id": invoice.buyer_id,
        "seller_name": invoice.seller_name,
        "seller_legal_name": invoice.seller_legal_name,
        "seller_vat_number": invoice.seller_vat_number,
        "seller_address": invoice.seller_address,
        "buyer_name": invoice.buyer_name,
        "buyer_company": invoice.buyer_company,
        "buyer_vat_number": invoice.buyer_vat_number,
        "buyer_address": invoice.buyer_address,
        "line_items": line_items_to_dicts(invoice.line_items),
        "subtotal": invoice.subtotal,
        "vat_rate": invoice.vat_rate,
        "vat_amount": invoice.vat_amount,
        "total_amount": invoice.total_amount,
        "currency": invoice.currency,
        "platform_fee_rate": invoice.platform_fee_rate,
        "platform_fee_amount": invoice.platform_fee_amount,
        "net_to_seller": invoice.net_to_seller,
        "payment_terms": invoice.payment_terms,
        "due_date": invoice.due_date,
        "status": invoice.status,
        "issued_at": invoice.issued_at,
        "issued_by": invoice.issued_by,
        "paid_at": invoice.paid_at,
        "overdue_at": invoice.overdue_at,
        "cancelled_at": invoice.cancelled_at,
        "cancel_reason": invoice.cancel_reason,
        "notes": invoice.notes,
        "created_at": invoice.created_at,
        "paid_amount": _round(paid_amount),
        "balance_due": _round(max(invoice.total_amount - paid_amount, 0.0)),
    }


def payment_to_dict(payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "payment_number": payment.payment_number,
        "order_id": payment.order_id,
        "invoice_id": payment.invoice_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "confirmed_at": payment.confirmed_at,
        "created_at": payment.created_at,
    }


def rating_to_dict(rating) -> Dict[str, Any]:
    return {
        "id": rating.id,
        "order_id": rating.order_id,
        "rater_role": rating.rater_role,
        "rater_id": rating.rater_id,
        "target_role": rating.target_role,
        "target_id": rating.target_id,
        "score": rating.score,
        "tags": rating.tags or [],
        "comment": rating.comment,
        "created_at": rating.created_at,
    }
