"""
Order API routes - fulfillment transitions, tracking, history and stats.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tradeflow.api.deps import get_caller, raise_for_result, require_role
from tradeflow.core.rbac import Role
from tradeflow.db.session import get_db
from tradeflow.services import invoices, orders, payments, ratings

router = APIRouter(prefix="/api/orders", tags=["Orders"])


# ============= SCHEMAS =============

class OrderConfirm(BaseModel):
    seller_notes: Optional[str] = None


class OrderReason(BaseModel):
    reason: Optional[str] = None


class OrderShip(BaseModel):
    carrier: str
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class TrackingUpdate(BaseModel):
    tracking_number: str
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class PaymentCreate(BaseModel):
    amount: float = Field(gt=0)
    bank_reference: Optional[str] = None


class RatingCreate(BaseModel):
    score: int
    tags: Optional[List[str]] = None
    comment: Optional[str] = None


def _require_party_role(caller: dict) -> str:
    if caller.get("role") not in (Role.BUYER.value, Role.SELLER.value):
        raise HTTPException(
            status_code=http_status.HTTP_403_FORBIDDEN,
            detail="This action requires the buyer or seller role",
        )
    return caller["role"]


# ============= LISTS =============

@router.get("")
async def list_orders(
    status: Optional[str] = Query(None, description="Filter by status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """Orders on the caller's side of the market."""
    role = _require_party_role(caller)
    if role == Role.SELLER.value:
        result = orders.get_seller_orders(
            db, caller["user_id"], alt_seller_ids=caller["aliases"], status=status, page=page, limit=limit,
        )
    else:
        result = orders.get_buyer_orders(db, caller["user_id"], status=status, page=page, limit=limit)
    return raise_for_result(result)


@router.get("/stats")
async def order_stats(
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    role = _require_party_role(caller)
    return raise_for_result(orders.get_order_stats(db, caller["user_id"], role, caller["aliases"]))


# ============= SINGLE ORDER =============

@router.get("/{order_id}")
async def get_order(
    order_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(orders.get_order(db, order_id, caller["user_id"], caller["aliases"]))


@router.get("/{order_id}/history")
async def get_order_history(
    order_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(orders.get_order_history(db, order_id, caller["user_id"], caller["aliases"]))


@router.post("/{order_id}/confirm")
async def confirm_order(
    order_id: str,
    body: OrderConfirm,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(orders.confirm_order(
        db, order_id, caller["user_id"], alt_seller_ids=caller["aliases"], seller_notes=body.seller_notes,
    ))


@router.post("/{order_id}/reject")
async def reject_order(
    order_id: str,
    body: OrderReason,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(orders.reject_order(
        db, order_id, caller["user_id"], reason=body.reason, alt_seller_ids=caller["aliases"],
    ))


@router.post("/{order_id}/process")
async def start_processing(
    order_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(
        orders.start_processing(db, order_id, caller["user_id"], alt_seller_ids=caller["aliases"])
    )


@router.post("/{order_id}/ship")
async def ship_order(
    order_id: str,
    body: OrderShip,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(orders.ship_order(
        db, order_id, caller["user_id"], body.carrier,
        tracking_number=body.tracking_number,
        estimated_delivery=body.estimated_delivery,
        alt_seller_ids=caller["aliases"],
    ))


@router.put("/{order_id}/tracking")
async def update_tracking(
    order_id: str,
    body: TrackingUpdate,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(orders.update_tracking(
        db, order_id, caller["user_id"], body.tracking_number,
        carrier=body.carrier,
        estimated_delivery=body.estimated_delivery,
        alt_seller_ids=caller["aliases"],
    ))


@router.post("/{order_id}/deliver")
async def mark_delivered(
    order_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    role = _require_party_role(caller)
    return raise_for_result(
        orders.mark_delivered(db, order_id, caller["user_id"], role, alt_ids=caller["aliases"])
    )


@router.post("/{order_id}/close")
async def close_order(
    order_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(orders.close_order(db, order_id, caller["user_id"], caller["aliases"]))


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: OrderReason,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(orders.cancel_order(
        db, order_id, caller["user_id"], reason=body.reason, alt_seller_ids=caller["aliases"],
    ))


# ============= PAYMENTS, INVOICE & RATINGS =============

@router.post("/{order_id}/payments")
async def record_payment(
    order_id: str,
    body: PaymentCreate,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.BUYER.value)
    return raise_for_result(payments.record_payment(
        db, order_id, caller["user_id"], body.amount, bank_reference=body.bank_reference,
    ))


@router.get("/{order_id}/invoice")
async def get_order_invoice(
    order_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(invoices.get_invoice_by_order(db, order_id, caller["user_id"], caller["aliases"]))


@router.get("/{order_id}/ratings")
async def get_order_ratings(
    order_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    raise_for_result(orders.get_order(db, order_id, caller["user_id"], caller["aliases"]))
    eligibility = raise_for_result(ratings.check_eligibility(db, order_id))["eligibility"]
    return {**raise_for_result(ratings.get_order_ratings(db, order_id)), "eligibility": eligibility}


@router.post("/{order_id}/ratings")
async def rate_order(
    order_id: str,
    body: RatingCreate,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    role = _require_party_role(caller)
    return raise_for_result(ratings.create_rating(
        db, order_id, caller["user_id"], role, body.score,
        tags=body.tags, comment=body.comment, alt_rater_ids=caller["aliases"],
    ))


@router.get("/ratings/{target_role}/{target_id}")
async def rating_summary(
    target_role: str,
    target_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """Public rating summary for a seller or buyer."""
    if target_role not in (Role.BUYER.value, Role.SELLER.value):
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="Unknown rating target")
    return raise_for_result(ratings.get_target_summary(db, target_role, target_id))
