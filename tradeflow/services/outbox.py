"""
Transactional outbox for best-effort side effects.

Lifecycle operations publish outbox rows in the same transaction as their
state change. After commit the rows are dispatched (inline when
OUTBOX_INLINE_DISPATCH is on, otherwise by the worker job). A failing
handler marks its row for retry with exponential backoff and never reaches
the operation that published it.

Handles:
- Invoice generation for delivered and credit-confirmed orders
- Re-associating prepayments with a new invoice
- Notifications
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from tradeflow.core.config import settings
from tradeflow.core.errors import ErrorKind
from tradeflow.core.logging import get_logger
from tradeflow.db.models import OutboxEvent, OutboxStatus

logger = get_logger(__name__)


INVOICE_FOR_DELIVERED_ORDER = "invoice.create_from_delivered_order"
INVOICE_FOR_CREDIT_ORDER = "invoice.create_from_confirmed_order"
ASSOCIATE_PAYMENTS = "payments.associate_with_invoice"
NOTIFY = "notification.send"

RETRYABLE_STATUSES = (OutboxStatus.PENDING.value, OutboxStatus.FAILED.value)

Handler = Callable[[Session, Dict[str, Any]], None]

HANDLERS: Dict[str, Handler] = {}


class OutboxHandlerError(Exception):
    """Handler could not complete; the event will be retried."""


def handler(event_type: str) -> Callable[[Handler], Handler]:
    """Register a handler for an outbox event type."""
    def register(func: Handler) -> Handler:
        HANDLERS[event_type] = func
        return func
    return register


def publish(db: Session, event_type: str, payload: Dict[str, Any]) -> int:
    """Add an outbox row to the current transaction and return its id."""
    event = OutboxEvent(
        event_type=event_type,
        payload=payload,
        status=OutboxStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
        next_attempt_at=datetime.utcnow(),
    )
    db.add(event)
    db.flush()
    return event.id


def notify(db: Session, user_id: Optional[str], notification_type: str, entity_ref: str,
           metadata: Optional[dict] = None) -> Optional[int]:
    """Publish a notification for ``user_id``; no-op without a recipient."""
    if not user_id:
        return None
    return publish(db, NOTIFY, {
        "user_id": user_id,
        "type": notification_type,
        "entity_ref": entity_ref,
        "metadata": metadata or {},
    })


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff: base * 2^(attempts-1), capped."""
    seconds = settings.OUTBOX_BASE_RETRY_SECONDS * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, settings.OUTBOX_MAX_RETRY_SECONDS))


def _claim(db: Session, event_id: int, now: datetime) -> bool:
    """
    Mark the event processing under a lease. A processing row whose lease
    ran out belongs to a dispatcher that died and may be claimed again.
    """
    lease_expired = and_(
        OutboxEvent.status == OutboxStatus.PROCESSING.value,
        OutboxEvent.next_attempt_at <= now,
    )
    claimed = db.query(OutboxEvent).filter(
        OutboxEvent.id == event_id,
        or_(OutboxEvent.status.in_(RETRYABLE_STATUSES), lease_expired),
    ).update({
        OutboxEvent.status: OutboxStatus.PROCESSING.value,
        OutboxEvent.next_attempt_at: now + timedelta(seconds=settings.OUTBOX_LEASE_SECONDS),
    }, synchronize_session=False)
    db.commit()
    return claimed == 1


def dispatch_event(db: Session, event_id: int, now: Optional[datetime] = None) -> bool:
    """
    Claim and run one outbox event.

    Returns True when the handler completed. Handler exceptions are recorded
    on the row, never re-raised.
    """
    now = now or datetime.utcnow()
    if not _claim(db, event_id, now):
        return False

    event = db.get(OutboxEvent, event_id)
    event_type = event.event_type
    payload = dict(event.payload or {})
    func = HANDLERS.get(event_type)

    try:
        if func is None:
            raise OutboxHandlerError(f"No handler registered for {event_type}")
        func(db, payload)
    except Exception as e:
        db.rollback()
        _record_failure(db, event_id, str(e), now)
        logger.error(f"[outbox:{event_id}] {event_type} failed: {e}", exc_info=True)
        return False

    event = db.get(OutboxEvent, event_id)
    event.status = OutboxStatus.DELIVERED.value
    event.attempts += 1
    event.processed_at = datetime.utcnow()
    event.last_error = None
    db.commit()
    logger.debug(f"[outbox:{event_id}] {event_type} delivered")
    return True


def _record_failure(db: Session, event_id: int, error: str, now: datetime) -> None:
    event = db.get(OutboxEvent, event_id)
    event.attempts += 1
    event.last_error = error[:2000]
    if event.attempts >= event.max_attempts:
        event.status = OutboxStatus.DEAD.value
        logger.warning(f"[outbox:{event_id}] {event.event_type} dead-lettered after {event.attempts} attempts")
    else:
        event.status = OutboxStatus.FAILED.value
        event.next_attempt_at = now + retry_delay(event.attempts)
    db.commit()


def dispatch_after_commit(db: Session, event_ids: Iterable[Optional[int]]) -> None:
    """Run freshly committed events inline. Never raises."""
    if not settings.OUTBOX_INLINE_DISPATCH:
        return
    for event_id in event_ids:
        if event_id is None:
            continue
        try:
            dispatch_event(db, event_id)
        except Exception as e:
            db.rollback()
            logger.error(f"[outbox:{event_id}] inline dispatch failed: {e}", exc_info=True)


def dispatch_pending(db: Session, now: Optional[datetime] = None,
                     batch_size: Optional[int] = None) -> Dict[str, int]:
    """
    Process due pending and failed events, plus processing events whose
    lease expired. Used by the worker job.
    """
    now = now or datetime.utcnow()
    batch_size = batch_size or settings.OUTBOX_BATCH_SIZE

    due_ids = [
        row.id for row in db.query(OutboxEvent.id).filter(
            OutboxEvent.status.in_(RETRYABLE_STATUSES + (OutboxStatus.PROCESSING.value,)),
            OutboxEvent.next_attempt_at <= now,
        ).order_by(OutboxEvent.id).limit(batch_size).all()
    ]

    result = {"processed": 0, "delivered": 0, "failed": 0}
    for event_id in due_ids:
        result["processed"] += 1
        if dispatch_event(db, event_id, now=now):
            result["delivered"] += 1
        else:
            result["failed"] += 1

    if due_ids:
        logger.info(f"Outbox batch: {result}")
    return result


# ============= HANDLERS =============

def _require_success(result: Dict[str, Any], what: str) -> None:
    """
    Conflicts mean there is nothing left to do (already invoiced, order not
    eligible); anything else is retried.
    """
    if result.get("success"):
        return
    if result.get("error_kind") == ErrorKind.CONFLICT.value:
        logger.warning(f"{what} skipped: {result.get('error')}")
        return
    raise OutboxHandlerError(f"{what} failed: {result.get('error')}")


@handler(INVOICE_FOR_DELIVERED_ORDER)
def _create_invoice_for_delivered_order(db: Session, payload: Dict[str, Any]) -> None:
    from tradeflow.services import invoices
    result = invoices.create_from_delivered_order(db, payload["order_id"])
    _require_success(result, f"Invoice for delivered order {payload['order_id']}")


@handler(INVOICE_FOR_CREDIT_ORDER)
def _create_invoice_for_credit_order(db: Session, payload: Dict[str, Any]) -> None:
    from tradeflow.services import invoices
    result = invoices.create_from_confirmed_order(db, payload["order_id"])
    _require_success(result, f"Invoice for credit order {payload['order_id']}")


@handler(ASSOCIATE_PAYMENTS)
def _associate_payments(db: Session, payload: Dict[str, Any]) -> None:
    from tradeflow.services import payments
    result = payments.associate_payments_with_invoice(db, payload["order_id"], payload["invoice_id"])
    _require_success(result, f"Payment association for invoice {payload['invoice_id']}")


@handler(NOTIFY)
def _send_notification(db: Session, payload: Dict[str, Any]) -> None:
    from tradeflow.services.notifications import get_notification_sink
    get_notification_sink().notify(
        payload["user_id"], payload["type"], payload["entity_ref"], payload.get("metadata"),
    )
