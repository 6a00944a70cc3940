"""
Invoice API routes.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tradeflow.api.deps import get_caller, raise_for_result, require_role
from tradeflow.core.rbac import Role
from tradeflow.db.session import get_db
from tradeflow.services import invoices

router = APIRouter(prefix="/api/invoices", tags=["Invoices"])


class DraftInvoiceCreate(BaseModel):
    order_id: str
    payment_terms: Optional[str] = None
    notes: Optional[str] = None


class InvoiceCancel(BaseModel):
    reason: Optional[str] = None


@router.get("")
async def list_invoices(
    status: Optional[str] = Query(None, description="Filter by status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    if caller.get("role") == Role.SELLER.value:
        result = invoices.get_seller_invoices(
            db, caller["user_id"], alt_seller_ids=caller["aliases"], status=status, page=page, limit=limit,
        )
    else:
        result = invoices.get_buyer_invoices(db, caller["user_id"], status=status, page=page, limit=limit)
    return raise_for_result(result)


@router.get("/stats")
async def invoice_stats(
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    if caller.get("role") == Role.SELLER.value:
        return raise_for_result(invoices.get_seller_invoice_stats(db, caller["user_id"], caller["aliases"]))
    return raise_for_result(invoices.get_buyer_invoice_stats(db, caller["user_id"]))


@router.post("")
async def create_draft_invoice(
    body: DraftInvoiceCreate,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """Create a draft invoice for the seller to review before issuing."""
    require_role(caller, Role.SELLER.value)
    return raise_for_result(invoices.create_draft_invoice(
        db, body.order_id, caller["user_id"],
        payment_terms=body.payment_terms, notes=body.notes, alt_seller_ids=caller["aliases"],
    ))


@router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(invoices.get_invoice(db, invoice_id, caller["user_id"], caller["aliases"]))


@router.get("/{invoice_id}/history")
async def get_invoice_history(
    invoice_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    return raise_for_result(invoices.get_invoice_history(db, invoice_id, caller["user_id"], caller["aliases"]))


@router.post("/{invoice_id}/issue")
async def issue_invoice(
    invoice_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(
        invoices.issue_invoice(db, invoice_id, caller["user_id"], alt_seller_ids=caller["aliases"])
    )


@router.post("/{invoice_id}/cancel")
async def cancel_invoice(
    invoice_id: str,
    body: InvoiceCancel,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SELLER.value)
    return raise_for_result(invoices.cancel_invoice(
        db, invoice_id, caller["user_id"], reason=body.reason, alt_seller_ids=caller["aliases"],
    ))


@router.post("/{invoice_id}/mark-paid")
async def mark_paid(
    invoice_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """Settle an invoice whose confirmed payments cover the total."""
    require_role(caller, Role.SELLER.value)
    raise_for_result(invoices.get_invoice(db, invoice_id, caller["user_id"], caller["aliases"]))
    return raise_for_result(invoices.mark_paid(db, invoice_id, actor_id=caller["user_id"]))
