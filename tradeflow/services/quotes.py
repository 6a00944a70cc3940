"""
Quote lifecycle: draft creation, versioned updates, sending, rejection,
deletion of drafts, expiry and read access.

States: draft -> sent -> {accepted, rejected, expired}
        sent -> revised -> {sent, accepted, rejected, expired}

Acceptance creates an order and lives in services.orders.
"""
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tradeflow.core.config import settings
from tradeflow.core.errors import (
    ConflictError, NotFoundError, UnauthorizedError, ValidationError,
    ok, parse_input, service_operation,
)
from tradeflow.core.logging import get_logger
from tradeflow.core.rbac import belongs_to, identity_set
from tradeflow.db.models import (
    RFQ, RFQStatus, Quote, QuoteStatus, QuoteLineItem, QuoteVersion, QuoteEvent, ActorType
)
from tradeflow.db.types import as_naive_utc
from tradeflow.services import events, outbox
from tradeflow.services.notifications import QUOTE_SENT
from tradeflow.services.sequences import next_number
from tradeflow.services.serializers import (
    quote_to_dict, quote_version_to_dict, event_to_dict
)

logger = get_logger(__name__)


RFQ_CLOSED_FOR_QUOTING = (
    RFQStatus.ACCEPTED.value,
    RFQStatus.REJECTED.value,
    RFQStatus.EXPIRED.value,
    RFQStatus.CANCELLED.value,
)
LOCKED_QUOTE_STATUSES = (
    QuoteStatus.EXPIRED.value,
    QuoteStatus.ACCEPTED.value,
    QuoteStatus.REJECTED.value,
)
SENDABLE_STATUSES = (QuoteStatus.DRAFT.value, QuoteStatus.REVISED.value)
OPEN_STATUSES = (QuoteStatus.SENT.value, QuoteStatus.REVISED.value)
EXPIRABLE_STATUSES = (QuoteStatus.DRAFT.value, QuoteStatus.SENT.value, QuoteStatus.REVISED.value)


# ============= SCHEMAS =============

class QuoteLineInput(BaseModel):
    item_id: Optional[str] = None
    item_name: str = Field(min_length=1)
    item_sku: Optional[str] = None
    unit_price: float = Field(gt=0)
    quantity: int = Field(gt=0)
    discount: float = Field(default=0.0, ge=0)


class QuoteTerms(BaseModel):
    unit_price: float = Field(gt=0)
    quantity: int = Field(gt=0)
    discount: Optional[float] = Field(default=None, ge=0)
    discount_percent: Optional[float] = Field(default=None, ge=0, le=100)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    delivery_days: int = Field(ge=0)
    delivery_terms: Optional[str] = None
    valid_until: datetime
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    line_items: Optional[List[QuoteLineInput]] = None

    @field_validator("valid_until")
    @classmethod
    def normalize_valid_until(cls, v: datetime) -> datetime:
        return as_naive_utc(v)


class QuotePatch(BaseModel):
    unit_price: Optional[float] = Field(default=None, gt=0)
    quantity: Optional[int] = Field(default=None, gt=0)
    discount: Optional[float] = Field(default=None, ge=0)
    discount_percent: Optional[float] = Field(default=None, ge=0, le=100)
    delivery_days: Optional[int] = Field(default=None, ge=0)
    delivery_terms: Optional[str] = None
    valid_until: Optional[datetime] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    line_items: Optional[List[QuoteLineInput]] = None
    change_reason: Optional[str] = None

    @field_validator("unit_price", "quantity", "delivery_days", "valid_until")
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("may be omitted but not set to null")
        return v

    @field_validator("valid_until")
    @classmethod
    def normalize_valid_until(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(v)


# ============= HELPERS =============

def compute_total(
    unit_price: float,
    quantity: int,
    discount: Optional[float] = None,
    discount_percent: Optional[float] = None,
) -> Tuple[float, float]:
    """
    Return (discount_amount, total). A flat discount wins over a percentage.
    """
    gross = unit_price * quantity
    if discount:
        discount_amount = discount
    elif discount_percent:
        discount_amount = gross * discount_percent / 100
    else:
        discount_amount = 0.0

    discount_amount = round(discount_amount, 2)
    if discount_amount > gross:
        raise ValidationError("Discount cannot exceed the quote amount")
    return discount_amount, round(gross - discount_amount, 2)


def _replace_line_items(db: Session, quote: Quote, lines: Optional[List[QuoteLineInput]]) -> None:
    if lines is None:
        return
    for existing in list(quote.line_items):
        db.delete(existing)
    quote.line_items = [
        QuoteLineItem(
            item_id=line.item_id,
            item_name=line.item_name,
            item_sku=line.item_sku,
            unit_price=line.unit_price,
            quantity=line.quantity,
            discount=line.discount,
            total_price=round(line.unit_price * line.quantity - line.discount, 2),
            position=position,
        )
        for position, line in enumerate(lines)
    ]


def _snapshot(db: Session, quote: Quote, actor_id: str, change_reason: Optional[str] = None) -> QuoteVersion:
    version = QuoteVersion(
        quote_id=quote.id,
        version=quote.version,
        status=quote.status,
        unit_price=quote.unit_price,
        quantity=quote.quantity,
        discount=quote.discount,
        discount_percent=quote.discount_percent,
        total_price=quote.total_price,
        currency=quote.currency,
        delivery_days=quote.delivery_days,
        delivery_terms=quote.delivery_terms,
        valid_until=quote.valid_until,
        notes=quote.notes,
        created_by=actor_id,
        change_reason=change_reason,
    )
    db.add(version)
    return version


def _get_quote(db: Session, quote_id: str) -> Quote:
    quote = db.get(Quote, quote_id)
    if not quote:
        raise NotFoundError("Quote not found")
    return quote


def _require_seller(quote: Quote, seller_ids: Iterable[str]) -> None:
    if not belongs_to(seller_ids, quote.seller_id):
        raise UnauthorizedError("You are not the seller for this quote")


def _require_rfq_open(quote: Quote, action: str) -> None:
    if quote.rfq.status in RFQ_CLOSED_FOR_QUOTING:
        raise ConflictError(f'Cannot {action} quote: RFQ is in "{quote.rfq.status}" status')


def _require_party(quote: Quote, caller_ids: Iterable[str]) -> bool:
    """Returns True when the caller is the seller, False when the buyer."""
    caller_ids = set(caller_ids)
    if belongs_to(caller_ids, quote.seller_id):
        return True
    if belongs_to(caller_ids, quote.buyer_id):
        if quote.status == QuoteStatus.DRAFT.value:
            raise NotFoundError("Quote not found")
        return False
    raise UnauthorizedError("You are not a party to this quote")


# ============= MUTATIONS =============

@service_operation("Failed to create quote")
def create_draft(
    db: Session,
    rfq_id: str,
    seller_id: str,
    terms: Any,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Create a version 1 draft quote against an RFQ."""
    rfq = db.get(RFQ, rfq_id)
    if not rfq:
        raise NotFoundError("RFQ not found")

    if rfq.status == RFQStatus.REJECTED.value:
        raise ConflictError("Cannot create quote: RFQ was rejected")
    if rfq.status in RFQ_CLOSED_FOR_QUOTING:
        raise ConflictError(f'Cannot create quote for RFQ in "{rfq.status}" status')

    seller_ids = identity_set(seller_id, alt_seller_ids)
    if rfq.seller_id and not belongs_to(seller_ids, rfq.seller_id):
        raise UnauthorizedError("You are not the seller for this RFQ")

    existing = db.query(Quote.id).filter(
        Quote.rfq_id == rfq_id,
        Quote.status == QuoteStatus.DRAFT.value,
    ).first()
    if existing:
        raise ConflictError("A draft quote already exists for this RFQ")

    terms = parse_input(QuoteTerms, terms)
    discount, total = compute_total(terms.unit_price, terms.quantity, terms.discount, terms.discount_percent)

    quote = Quote(
        quote_number=next_number(db, "quote"),
        rfq_id=rfq.id,
        seller_id=seller_id,
        buyer_id=rfq.buyer_id,
        unit_price=terms.unit_price,
        quantity=terms.quantity,
        discount=discount,
        discount_percent=None if terms.discount else terms.discount_percent,
        total_price=total,
        currency=terms.currency or settings.DEFAULT_CURRENCY,
        delivery_days=terms.delivery_days,
        delivery_terms=terms.delivery_terms,
        valid_until=terms.valid_until,
        notes=terms.notes,
        internal_notes=terms.internal_notes,
        version=1,
        is_latest=True,
        status=QuoteStatus.DRAFT.value,
    )
    db.add(quote)
    _replace_line_items(db, quote, terms.line_items)

    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("A draft quote already exists for this RFQ")

    _snapshot(db, quote, seller_id, "Initial draft")
    events.record_quote_event(
        db, quote, events.QUOTE_CREATED, seller_id, ActorType.SELLER.value,
        None, QuoteStatus.DRAFT.value, {"total_price": total},
    )
    db.commit()

    logger.info(f"[{quote.quote_number}] Draft created for RFQ {rfq.id}")
    return ok(quote=quote_to_dict(quote, include_internal=True))


@service_operation("Failed to update quote")
def update_quote(
    db: Session,
    quote_id: str,
    seller_id: str,
    patch: Any,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """
    Edit a quote. Drafts stay drafts; sent or revised quotes become a
    re-quote in ``revised``. Every edit bumps the version and snapshots it.
    """
    quote = _get_quote(db, quote_id)
    _require_seller(quote, identity_set(seller_id, alt_seller_ids))

    if quote.status in LOCKED_QUOTE_STATUSES:
        raise ConflictError(f'Cannot update quote in "{quote.status}" status')
    _require_rfq_open(quote, "update")

    patch = parse_input(QuotePatch, patch)
    changes = patch.model_dump(exclude_unset=True, exclude={"line_items", "change_reason"})

    for field in ("delivery_days", "delivery_terms", "valid_until", "notes", "internal_notes"):
        if field in changes:
            setattr(quote, field, changes[field])

    unit_price = changes.get("unit_price") or quote.unit_price
    quantity = changes.get("quantity") or quote.quantity
    if "discount" in changes:
        flat, percent = changes["discount"], None
    elif "discount_percent" in changes:
        flat, percent = None, changes["discount_percent"]
    elif quote.discount_percent is not None:
        flat, percent = None, quote.discount_percent
    else:
        flat, percent = quote.discount, None

    discount, total = compute_total(unit_price, quantity, flat, percent)
    quote.unit_price = unit_price
    quote.quantity = quantity
    quote.discount = discount
    quote.discount_percent = percent
    quote.total_price = total
    _replace_line_items(db, quote, patch.line_items)

    previous_status = quote.status
    if previous_status in OPEN_STATUSES:
        quote.status = QuoteStatus.REVISED.value
        event_type = events.QUOTE_REVISED
    else:
        event_type = events.QUOTE_UPDATED
    quote.version += 1
    quote.is_latest = True

    _snapshot(db, quote, seller_id, patch.change_reason)
    events.record_quote_event(
        db, quote, event_type, seller_id, ActorType.SELLER.value,
        previous_status, quote.status,
        {"changes": sorted(changes), "total_price": total},
    )
    db.commit()

    logger.info(f"[{quote.quote_number}] Updated to version {quote.version} ({quote.status})")
    return ok(quote=quote_to_dict(quote, include_internal=True))


@service_operation("Failed to send quote")
def send_quote(
    db: Session,
    quote_id: str,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Send a draft or revised quote to the buyer and mark the RFQ quoted."""
    quote = _get_quote(db, quote_id)
    _require_seller(quote, identity_set(seller_id, alt_seller_ids))

    if quote.status not in SENDABLE_STATUSES:
        raise ConflictError(f'Cannot send quote in "{quote.status}" status')
    _require_rfq_open(quote, "send")

    now = datetime.utcnow()
    if quote.valid_until < now:
        raise ConflictError("Cannot send expired quote. Please update the validity date.")

    previous_status = quote.status
    claimed = db.query(Quote).filter(
        Quote.id == quote.id,
        Quote.status.in_(SENDABLE_STATUSES),
    ).update({Quote.status: QuoteStatus.SENT.value, Quote.sent_at: now}, synchronize_session=False)
    if claimed != 1:
        raise ConflictError("Cannot send quote: it was changed by another request")
    db.refresh(quote)

    rfq = quote.rfq
    previous_rfq_status = rfq.status
    rfq.status = RFQStatus.QUOTED.value
    rfq.quoted_price = quote.total_price
    rfq.quoted_lead_time = quote.delivery_days
    rfq.responded_at = now

    events.record_rfq_event(
        db, rfq, events.RFQ_QUOTED, seller_id, ActorType.SELLER.value,
        previous_rfq_status, rfq.status, {"quote_id": quote.id, "quote_number": quote.quote_number},
    )
    events.record_quote_event(
        db, quote, events.QUOTE_SENT, seller_id, ActorType.SELLER.value,
        previous_status, quote.status,
    )
    pending = [outbox.notify(
        db, quote.buyer_id, QUOTE_SENT, f"quote:{quote.id}",
        {"quote_number": quote.quote_number, "total_price": quote.total_price},
    )]
    db.commit()
    outbox.dispatch_after_commit(db, pending)

    logger.info(f"[{quote.quote_number}] Sent to buyer {quote.buyer_id}")
    return ok(quote=quote_to_dict(quote, include_internal=True))


@service_operation("Failed to reject quote")
def reject_quote(db: Session, quote_id: str, buyer_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """Buyer rejects a sent or revised quote. The RFQ becomes terminally rejected."""
    quote = _get_quote(db, quote_id)
    rfq = quote.rfq
    if not belongs_to({buyer_id}, rfq.buyer_id):
        raise UnauthorizedError("You are not the buyer for this quote")

    if quote.status not in OPEN_STATUSES:
        raise ConflictError(f'Cannot reject quote in "{quote.status}" status')

    now = datetime.utcnow()
    previous_status = quote.status
    quote.status = QuoteStatus.REJECTED.value
    quote.rejected_at = now
    quote.rejected_by = buyer_id
    quote.rejection_reason = reason

    previous_rfq_status = rfq.status
    rfq.status = RFQStatus.REJECTED.value

    events.record_quote_event(
        db, quote, events.QUOTE_REJECTED, buyer_id, ActorType.BUYER.value,
        previous_status, quote.status, {"reason": reason},
    )
    events.record_rfq_event(
        db, rfq, events.RFQ_REJECTED, buyer_id, ActorType.BUYER.value,
        previous_rfq_status, rfq.status, {"quote_id": quote.id, "reason": reason},
    )
    db.commit()

    logger.info(f"[{quote.quote_number}] Rejected by buyer {buyer_id}")
    return ok(quote=quote_to_dict(quote))


@service_operation("Failed to delete quote")
def delete_draft(
    db: Session,
    quote_id: str,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Hard-delete a draft. Anything that left draft is kept forever."""
    quote = _get_quote(db, quote_id)
    _require_seller(quote, identity_set(seller_id, alt_seller_ids))

    if quote.status != QuoteStatus.DRAFT.value:
        raise ConflictError(f'Cannot delete quote in "{quote.status}" status; only drafts can be deleted')

    quote_number = quote.quote_number
    db.query(QuoteVersion).filter(QuoteVersion.quote_id == quote.id).delete(synchronize_session=False)
    db.delete(quote)
    db.commit()

    logger.info(f"[{quote_number}] Draft deleted by {seller_id}")
    return ok(quote_id=quote_id)


@service_operation("Failed to expire quotes")
def expire_quotes(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Expire every draft, sent or revised quote whose validity has passed.

    Safe to re-run: each row is flipped with a conditional update, so rows
    already expired (or accepted concurrently) are skipped.
    """
    now = now or datetime.utcnow()
    candidates = db.query(Quote).filter(
        Quote.valid_until < now,
        Quote.status.in_(EXPIRABLE_STATUSES),
    ).all()

    expired_count = 0
    for quote in candidates:
        previous_status = quote.status
        flipped = db.query(Quote).filter(
            Quote.id == quote.id,
            Quote.status.in_(EXPIRABLE_STATUSES),
        ).update({Quote.status: QuoteStatus.EXPIRED.value, Quote.expired_at: now}, synchronize_session=False)
        if not flipped:
            continue
        db.refresh(quote)
        events.record_quote_event(
            db, quote, events.QUOTE_EXPIRED, None, ActorType.SYSTEM.value,
            previous_status, QuoteStatus.EXPIRED.value, {"valid_until": quote.valid_until.isoformat()},
        )
        expired_count += 1

    db.commit()
    if expired_count:
        logger.info(f"Expired {expired_count} quotes")
    return ok(processed=len(candidates), expired_count=expired_count)


# ============= READS =============

@service_operation("Failed to load quote")
def get_quote(
    db: Session,
    quote_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    quote = _get_quote(db, quote_id)
    is_seller = _require_party(quote, identity_set(user_id, alt_ids))
    return ok(quote=quote_to_dict(quote, include_internal=is_seller))


@service_operation("Failed to load quotes")
def get_quotes_by_rfq(
    db: Session,
    rfq_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Buyers see every non-draft quote on their RFQ; sellers see their own."""
    rfq = db.get(RFQ, rfq_id)
    if not rfq:
        raise NotFoundError("RFQ not found")

    caller_ids = identity_set(user_id, alt_ids)
    query = db.query(Quote).filter(Quote.rfq_id == rfq_id)

    if belongs_to(caller_ids, rfq.buyer_id):
        quotes = query.filter(Quote.status != QuoteStatus.DRAFT.value).order_by(desc(Quote.created_at)).all()
        return ok(quotes=[quote_to_dict(q) for q in quotes])

    own = query.filter(Quote.seller_id.in_(caller_ids)).order_by(desc(Quote.created_at)).all()
    if not own and not belongs_to(caller_ids, rfq.seller_id):
        raise UnauthorizedError("You are not a party to this RFQ")
    return ok(quotes=[quote_to_dict(q, include_internal=True) for q in own])


@service_operation("Failed to load seller quotes")
def get_seller_quotes(
    db: Session,
    seller_id: str,
    alt_seller_ids: Optional[Iterable[str]] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    seller_ids = identity_set(seller_id, alt_seller_ids)
    query = db.query(Quote).filter(Quote.seller_id.in_(seller_ids))
    if status:
        query = query.filter(Quote.status == status)

    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = query.count()
    quotes = query.order_by(desc(Quote.created_at)).offset((page - 1) * limit).limit(limit).all()

    return ok(
        quotes=[quote_to_dict(q, include_internal=True) for q in quotes],
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
    )


@service_operation("Failed to load quote versions")
def get_quote_versions(
    db: Session,
    quote_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    quote = _get_quote(db, quote_id)
    _require_party(quote, identity_set(user_id, alt_ids))
    versions = db.query(QuoteVersion).filter(
        QuoteVersion.quote_id == quote.id
    ).order_by(QuoteVersion.version).all()
    return ok(versions=[quote_version_to_dict(v) for v in versions])


@service_operation("Failed to load quote history")
def get_quote_history(
    db: Session,
    quote_id: str,
    user_id: str,
    alt_ids: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    """Quote events in the order they were written."""
    quote = _get_quote(db, quote_id)
    _require_party(quote, identity_set(user_id, alt_ids))
    history = db.query(QuoteEvent).filter(
        QuoteEvent.quote_id == quote.id
    ).order_by(QuoteEvent.id).all()
    return ok(events=[event_to_dict(e) for e in history])
