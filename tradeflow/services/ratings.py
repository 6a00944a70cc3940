"""
Post-order ratings.

Once an order is delivered (or closed) and paid, each side may rate the
other exactly once. Summaries are read per target (a seller or a buyer).
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tradeflow.core.errors import (
    ConflictError, NotFoundError, UnauthorizedError, ValidationError,
    ok, service_operation,
)
from tradeflow.core.logging import get_logger
from tradeflow.core.rbac import Role, belongs_to, identity_set
from tradeflow.db.models import Order, OrderStatus, OrderPaymentStatus, Rating
from tradeflow.services.serializers import rating_to_dict

logger = get_logger(__name__)


MAX_COMMENT_LENGTH = 280
RECENT_LIMIT = 10
COMPLETED_STATUSES = (OrderStatus.DELIVERED.value, OrderStatus.CLOSED.value)

COUNTERPARTY = {
    Role.BUYER.value: Role.SELLER.value,
    Role.SELLER.value: Role.BUYER.value,
}


def is_completed(order: Order) -> bool:
    return (
        order.status in COMPLETED_STATUSES
        and order.payment_status == OrderPaymentStatus.PAID.value
    )


def _validate(score: Any, comment: Optional[str]) -> None:
    if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
        raise ValidationError("Score must be an integer between 1 and 5")
    if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
        raise ValidationError(f"Comment must be {MAX_COMMENT_LENGTH} characters or less")


@service_operation("Failed to check rating eligibility")
def check_eligibility(db: Session, order_id: str) -> Dict[str, Any]:
    """Who may still rate this order, and why not if nobody can."""
    order = db.get(Order, order_id)
    if not order:
        return ok(eligibility={
            "can_buyer_rate": False,
            "can_seller_rate": False,
            "buyer_already_rated": False,
            "seller_already_rated": False,
            "reason_if_blocked": "Order not found",
        })

    rated_roles = {
        row.rater_role for row in db.query(Rating.rater_role).filter(Rating.order_id == order.id)
    }
    buyer_rated = Role.BUYER.value in rated_roles
    seller_rated = Role.SELLER.value in rated_roles
    completed = is_completed(order)

    return ok(eligibility={
        "can_buyer_rate": completed and not buyer_rated,
        "can_seller_rate": completed and not seller_rated,
        "buyer_already_rated": buyer_rated,
        "seller_already_rated": seller_rated,
        "reason_if_blocked": None if completed else "Order is not yet completed (delivered and paid)",
    })


@service_operation("Failed to create rating")
def create_rating(
    db: Session,
    order_id: str,
    rater_id: str,
    rater_role: str,
    score: int,
    tags: Optional[List[str]] = None,
    comment: Optional[str] = None,
    alt_rater_ids: Optional[List[str]] = None,
) -> Dict[str, Any]:
    _validate(score, comment)
    if rater_role not in COUNTERPARTY:
        raise ValidationError(f"Unknown role: {rater_role}")

    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    if not is_completed(order):
        raise ConflictError("Order must be delivered and paid before rating")

    caller_ids = identity_set(rater_id, alt_rater_ids)
    if rater_role == Role.BUYER.value:
        if not belongs_to(caller_ids, order.buyer_id):
            raise UnauthorizedError("You are not the buyer for this order")
        target_id = order.seller_id
    else:
        if not belongs_to(caller_ids, order.seller_id):
            raise UnauthorizedError("You are not the seller for this order")
        target_id = order.buyer_id

    rating = Rating(
        order_id=order.id,
        rater_role=rater_role,
        rater_id=rater_id,
        target_role=COUNTERPARTY[rater_role],
        target_id=target_id,
        score=score,
        tags=tags or None,
        comment=comment,
    )
    db.add(rating)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("You have already rated this order")
    db.commit()

    logger.info(f"[{order.order_number}] Rated {score}/5 by {rater_role}")
    return ok(rating=rating_to_dict(rating))


@service_operation("Failed to load ratings")
def get_order_ratings(db: Session, order_id: str) -> Dict[str, Any]:
    by_role = {r.rater_role: r for r in db.query(Rating).filter(Rating.order_id == order_id)}
    buyer = by_role.get(Role.BUYER.value)
    seller = by_role.get(Role.SELLER.value)
    return ok(
        buyer_rating=rating_to_dict(buyer) if buyer else None,
        seller_rating=rating_to_dict(seller) if seller else None,
    )


@service_operation("Failed to load rating summary")
def get_target_summary(db: Session, target_role: str, target_id: str) -> Dict[str, Any]:
    """Average score (one decimal), 1-5 distribution and the most recent reviews."""
    ratings = db.query(Rating).filter(
        Rating.target_role == target_role,
        Rating.target_id == target_id,
    ).order_by(desc(Rating.created_at), desc(Rating.id)).all()

    distribution = {score: 0 for score in range(1, 6)}
    for rating in ratings:
        distribution[rating.score] += 1

    count = len(ratings)
    avg_score = 0
    if count:
        avg = Decimal(sum(r.score for r in ratings)) / Decimal(count)
        avg_score = float(avg.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))

    recent = ratings[:RECENT_LIMIT]
    order_numbers = dict(
        db.query(Order.id, Order.order_number).filter(
            Order.id.in_([r.order_id for r in recent])
        ).all()
    ) if recent else {}

    return ok(summary={
        "avg_score": avg_score,
        "count": count,
        "distribution": distribution,
        "recent": [
            {**rating_to_dict(r), "order_number": order_numbers.get(r.order_id)}
            for r in recent
        ],
    })
