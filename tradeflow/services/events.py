"""
Append-only event and audit writers.

Every writer adds its row to the caller's session so the event commits (or
rolls back) together with the state change it describes.
"""
from typing import Optional

from sqlalchemy.orm import Session

from tradeflow.core.logging import audit_logger
from tradeflow.db.models import (
    QuoteEvent, RFQEvent, MarketplaceOrderAudit, MarketplaceInvoiceEvent
)


# Quote events
QUOTE_CREATED = "QUOTE_CREATED"
QUOTE_UPDATED = "QUOTE_UPDATED"
QUOTE_REVISED = "QUOTE_REVISED"
QUOTE_SENT = "QUOTE_SENT"
QUOTE_ACCEPTED = "QUOTE_ACCEPTED"
QUOTE_REJECTED = "QUOTE_REJECTED"
QUOTE_EXPIRED = "QUOTE_EXPIRED"

# RFQ events
RFQ_QUOTED = "RFQ_QUOTED"
RFQ_ACCEPTED = "RFQ_ACCEPTED"
RFQ_REJECTED = "RFQ_REJECTED"

# Invoice events
INVOICE_CREATED = "INVOICE_CREATED"
INVOICE_CREATED_AND_ISSUED = "INVOICE_CREATED_AND_ISSUED"
INVOICE_ISSUED = "INVOICE_ISSUED"
INVOICE_CANCELLED = "INVOICE_CANCELLED"
INVOICE_PAID = "INVOICE_PAID"
INVOICE_OVERDUE = "INVOICE_OVERDUE"


def record_quote_event(
    db: Session,
    quote,
    event_type: str,
    actor_id: Optional[str],
    actor_type: str,
    from_status: Optional[str],
    to_status: Optional[str],
    metadata: Optional[dict] = None,
) -> QuoteEvent:
    event = QuoteEvent(
        quote_id=quote.id,
        actor_id=actor_id,
        actor_type=actor_type,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        version=quote.version,
        metadata_json=metadata,
    )
    db.add(event)
    audit_logger.log(event_type, user_id=actor_id, entity_type="quote", entity_id=quote.id,
                     details={"from": from_status, "to": to_status, "version": quote.version})
    return event


def record_rfq_event(
    db: Session,
    rfq,
    event_type: str,
    actor_id: Optional[str],
    actor_type: str,
    from_status: Optional[str],
    to_status: Optional[str],
    metadata: Optional[dict] = None,
) -> RFQEvent:
    event = RFQEvent(
        rfq_id=rfq.id,
        actor_id=actor_id,
        actor_type=actor_type,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        metadata_json=metadata,
    )
    db.add(event)
    return event


def record_order_audit(
    db: Session,
    order,
    action: str,
    actor: str,
    actor_id: Optional[str],
    previous_value: Optional[str],
    new_value: Optional[str],
    metadata: Optional[dict] = None,
) -> MarketplaceOrderAudit:
    entry = MarketplaceOrderAudit(
        order_id=order.id,
        action=action,
        actor=actor,
        actor_id=actor_id,
        previous_value=previous_value,
        new_value=new_value,
        metadata_json=metadata,
    )
    db.add(entry)
    audit_logger.log(f"order.{action}", user_id=actor_id, entity_type="order", entity_id=order.id,
                     details={"from": previous_value, "to": new_value})
    return entry


def record_invoice_event(
    db: Session,
    invoice,
    event_type: str,
    actor_id: Optional[str],
    actor_type: str,
    from_status: Optional[str],
    to_status: Optional[str],
    metadata: Optional[dict] = None,
) -> MarketplaceInvoiceEvent:
    event = MarketplaceInvoiceEvent(
        invoice_id=invoice.id,
        actor_id=actor_id,
        actor_type=actor_type,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        metadata_json=metadata,
    )
    db.add(event)
    audit_logger.log(event_type, user_id=actor_id, entity_type="invoice", entity_id=invoice.id,
                     details={"from": from_status, "to": to_status})
    return event
