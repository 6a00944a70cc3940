"""
Quote API routes - drafting, sending, re-quoting and buyer decisions.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tradeflow.api.deps import get_caller, raise_for_result, require_role
from tradeflow.core.rbac import Role
from tradeflow.db.session import get_db
from tradeflow.services import orders, quotes
from tradeflow.services.quotes import QuotePatch, QuoteTerms

router = APIRouter(prefix="/api/quotes", tags=["Quotes"])


# ============= SCHEMAS =============

class QuoteCreate(QuoteTerms):
    rfq_id: str


class QuoteReject(BaseModel):
    reason: Optional[str] = None


class QuoteAccept(BaseModel):
    shipping_address: Optional[dict] = None
    payment_method: Optional[str] = None
    buyer_notes: Optional[str] = None


# ============= ROUTES =============

@router.post("")
async def create_quote(
    body: QuoteCreate,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """Create a draft quote against an RFQ."""
    require_role(caller, Role.SELLER.value)
    terms = body.model_dump(exclude={"rfq_id"}, exclude_unset=True)
    return raise_for_result(
        quotes.create_draft(db, body.rfq_id, caller["user_id"], terms, alt_seller_ids=caller["aliases"])
    )


@router.get("/seller")
async def list_seller_quotes(
    status: Optional[str] = Query(None, description="Filter by status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(quotes.get_seller_quotes(
        db, caller["user_id"], alt_seller_ids=caller["aliases"], status=status, page=page, limit=limit,
    ))


@router.get("/rfq/{rfq_id}")
async def list_rfq_quotes(
    rfq_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(quotes.get_quotes_by_rfq(db, rfq_id, caller["user_id"], caller["aliases"]))


@router.get("/{quote_id}")
async def get_quote(
    quote_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(quotes.get_quote(db, quote_id, caller["user_id"], caller["aliases"]))


@router.patch("/{quote_id}")
async def update_quote(
    quote_id: str,
    body: QuotePatch,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """Edit a draft, or re-quote a sent quote."""
    require_role(caller, Role.SELLER.value)
    return raise_for_result(
        quotes.update_quote(db, quote_id, caller["user_id"], body, alt_seller_ids=caller["aliases"])
    )


@router.delete("/{quote_id}")
async def delete_quote(
    quote_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(
        quotes.delete_draft(db, quote_id, caller["user_id"], alt_seller_ids=caller["aliases"])
    )


@router.post("/{quote_id}/send")
async def send_quote(
    quote_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(
        quotes.send_quote(db, quote_id, caller["user_id"], alt_seller_ids=caller["aliases"])
    )


@router.post("/{quote_id}/reject")
async def reject_quote(
    quote_id: str,
    body: QuoteReject,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.BUYER.value)
    return raise_for_result(quotes.reject_quote(db, quote_id, caller["user_id"], reason=body.reason))


@router.post("/{quote_id}/accept")
async def accept_quote(
    quote_id: str,
    body: QuoteAccept,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """Accept a quote and create its order."""
    require_role(caller, Role.BUYER.value)
    return raise_for_result(orders.accept_quote(
        db, quote_id, caller["user_id"],
        shipping_address=body.shipping_address,
        payment_method=body.payment_method,
        buyer_notes=body.buyer_notes,
    ))


@router.get("/{quote_id}/versions")
async def get_quote_versions(
    quote_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(quotes.get_quote_versions(db, quote_id, caller["user_id"], caller["aliases"]))


@router.get("/{quote_id}/history")
async def get_quote_history(
    quote_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(quotes.get_quote_history(db, quote_id, caller["user_id"], caller["aliases"]))
