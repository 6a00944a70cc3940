"""
Order State Machine

Every order status change is validated here.

pending_confirmation -> confirmed | cancelled
confirmed            -> processing | cancelled
processing           -> shipped | cancelled
shipped              -> delivered
delivered            -> closed
closed, cancelled, failed, refunded are terminal
"""
from typing import Dict, List

from tradeflow.core.errors import ConflictError
from tradeflow.db.models import OrderStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

ORDER_TRANSITIONS: Dict[str, List[str]] = {
    OrderStatus.PENDING_CONFIRMATION.value: [
        OrderStatus.CONFIRMED.value,      # Seller confirms
        OrderStatus.CANCELLED.value,      # Seller rejects or cancels
    ],
    OrderStatus.CONFIRMED.value: [
        OrderStatus.PROCESSING.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.PROCESSING.value: [
        OrderStatus.SHIPPED.value,
        OrderStatus.CANCELLED.value,
    ],
    OrderStatus.SHIPPED.value: [
        OrderStatus.DELIVERED.value,
    ],
    OrderStatus.DELIVERED.value: [
        OrderStatus.CLOSED.value,
    ],
    OrderStatus.CLOSED.value: [],
    OrderStatus.CANCELLED.value: [],
    OrderStatus.FAILED.value: [],
    OrderStatus.REFUNDED.value: [],
}

TERMINAL_STATUSES = frozenset(s for s, targets in ORDER_TRANSITIONS.items() if not targets)

CANCELLABLE_STATUSES = tuple(
    s for s, targets in ORDER_TRANSITIONS.items() if OrderStatus.CANCELLED.value in targets
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in ORDER_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    """Statuses reachable from ``current_status``."""
    return list(ORDER_TRANSITIONS.get(current_status, []))


def required_statuses(new_status: str) -> List[str]:
    """Statuses from which ``new_status`` can be reached."""
    return [s for s, targets in ORDER_TRANSITIONS.items() if new_status in targets]


def validate_transition(current_status: str, new_status: str, operation: str) -> None:
    """Raise ConflictError naming the current and required status."""
    if can_transition(current_status, new_status):
        return
    required = required_statuses(new_status)
    if not required:
        raise ConflictError(f'Cannot {operation} order: "{new_status}" is not reachable')
    expected = " or ".join(f'"{s}"' for s in required)
    raise ConflictError(
        f'Cannot {operation} order in "{current_status}" status; order must be {expected}'
    )
