"""
Order SLA evaluation.

Deadlines recorded on an order are advisory: this module only reports how
far along the current fulfillment step is, it never transitions the order.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from tradeflow.core.config import settings
from tradeflow.db.models import OrderStatus

ON_TRACK = "on_track"
AT_RISK = "at_risk"
BREACHED = "breached"

# Fallback windows for orders created without recorded deadlines
DEFAULT_SHIPPING_DAYS = 3

STATUS_TEXT = {
    ON_TRACK: "On track",
    AT_RISK: "Needs attention",
    BREACHED: "SLA breached",
}


def _current_step(order):
    """(step name, started_at, deadline) for the step the order is waiting on."""
    status = order.status
    if status == OrderStatus.PENDING_CONFIRMATION.value:
        deadline = order.confirmation_deadline or (
            order.created_at + timedelta(hours=settings.CONFIRMATION_SLA_HOURS)
        )
        return "confirmation", order.created_at, deadline

    if status in (OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value):
        started = order.confirmed_at or order.created_at
        deadline = order.shipping_deadline or (
            started + timedelta(days=DEFAULT_SHIPPING_DAYS)
        )
        return "shipping", started, deadline

    if status == OrderStatus.SHIPPED.value:
        started = order.shipped_at or order.created_at
        deadline = order.estimated_delivery or (started + timedelta(days=settings.DELIVERY_SLA_DAYS))
        return "delivery", started, deadline

    return None, None, None


def evaluate_sla(order, now: Optional[datetime] = None,
                 at_risk_percent: Optional[float] = None) -> Dict[str, Any]:
    """
    Evaluate the order's current step against its deadline.

    Returns step, deadline, remaining_hours, percent_used, status and text.
    Orders that are not waiting on a step report ``status=None``.
    """
    now = now or datetime.utcnow()
    at_risk_percent = settings.SLA_AT_RISK_PERCENT if at_risk_percent is None else at_risk_percent

    step, started, deadline = _current_step(order)
    if step is None:
        return {
            "step": None,
            "deadline": None,
            "remaining_hours": None,
            "percent_used": None,
            "status": None,
            "text": None,
        }

    window = (deadline - started).total_seconds()
    elapsed = (now - started).total_seconds()
    percent_used = 100.0 if window <= 0 else round(elapsed / window * 100, 1)

    if now > deadline:
        sla_status = BREACHED
    elif percent_used >= at_risk_percent:
        sla_status = AT_RISK
    else:
        sla_status = ON_TRACK

    return {
        "step": step,
        "deadline": deadline,
        "remaining_hours": round((deadline - now).total_seconds() / 3600, 1),
        "percent_used": percent_used,
        "status": sla_status,
        "text": STATUS_TEXT[sla_status],
    }


def enrich_order_with_sla(order_data: Dict[str, Any], order, now: Optional[datetime] = None) -> Dict[str, Any]:
    order_data["sla"] = evaluate_sla(order, now=now)
    return order_data
