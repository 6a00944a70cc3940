"""
Operational job routes.

Sweeps run inline by default; ``?enqueue=true`` hands them to the RQ
worker instead. Only the system role may trigger them.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tradeflow.api.deps import get_caller, get_permission_cache, raise_for_result, require_role
from tradeflow.core.logging import get_logger
from tradeflow.core.rbac import PermissionCache, Role
from tradeflow.db.session import get_db
from tradeflow.services import invoices, outbox, payments, quotes
from tradeflow.workers import jobs

logger = get_logger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


@router.post("/expire-quotes")
async def run_quote_expiry(
    enqueue: bool = Query(False),
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SYSTEM.value)
    if enqueue:
        job = jobs.enqueue_quote_expiry()
        return {"success": True, "job_id": job.id}
    return raise_for_result(quotes.expire_quotes(db))


@router.post("/overdue-invoices")
async def run_overdue_sweep(
    enqueue: bool = Query(False),
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SYSTEM.value)
    if enqueue:
        job = jobs.enqueue_overdue_sweep()
        return {"success": True, "job_id": job.id}
    return raise_for_result(invoices.process_overdue_invoices(db))


@router.post("/dispatch-outbox")
async def run_outbox_dispatch(
    enqueue: bool = Query(False),
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SYSTEM.value)
    if enqueue:
        job = jobs.enqueue_outbox_dispatch()
        return {"success": True, "job_id": job.id}
    return {"success": True, **outbox.dispatch_pending(db)}


@router.post("/payments/{payment_id}/confirm")
async def confirm_payment(
    payment_id: str,
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    """Bank reconciliation confirms a recorded payment."""
    require_role(caller, Role.SYSTEM.value)
    logger.info(f"Payment {payment_id} confirmed by reconciliation ({caller['user_id']})")
    return raise_for_result(payments.confirm_payment(db, payment_id, actor_id=Role.SYSTEM.value))


@router.post("/payments/{payment_id}/fail")
async def fail_payment(
    payment_id: str,
    reason: str = Query(None),
    caller: dict = Depends(get_caller),
    db: Session = Depends(get_db)
):
    require_role(caller, Role.SYSTEM.value)
    return raise_for_result(payments.fail_payment(db, payment_id, reason=reason))


@router.post("/identities/{user_id}/invalidate")
async def invalidate_identity(
    user_id: str,
    caller: dict = Depends(get_caller),
    cache: PermissionCache = Depends(get_permission_cache),
):
    """Drop cached aliases after a user's seller profile changes."""
    require_role(caller, Role.SYSTEM.value)
    cache.invalidate(user_id)
    logger.info(f"Identity cache invalidated for {user_id} ({caller['user_id']})")
    return {"success": True, "user_id": user_id}
