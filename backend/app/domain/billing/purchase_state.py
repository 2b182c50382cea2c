"""
Purchase state machine.

Every purchase status change in the system is validated here. Cancelled and
completed purchases are terminal: nothing moves them again, whatever order
processor events arrive in.
"""

from typing import Any, Dict, FrozenSet

from backend.app.core.exceptions import InvalidTransitionError, TerminalStateError
from backend.app.models.purchase_enums import PurchaseStatus

TERMINAL_STATES: FrozenSet[PurchaseStatus] = frozenset({
    PurchaseStatus.CANCELLED,
    PurchaseStatus.COMPLETED,
})

ALLOWED_TRANSITIONS: Dict[PurchaseStatus, FrozenSet[PurchaseStatus]] = {
    PurchaseStatus.PENDING: frozenset({
        PurchaseStatus.ACTIVE,
        PurchaseStatus.COMPLETED,  # one-time checkout paid
        PurchaseStatus.CANCELLED,  # stale link swept
    }),
    PurchaseStatus.ACTIVE: frozenset({
        PurchaseStatus.FAILED,
        PurchaseStatus.PAUSED,
        PurchaseStatus.CANCELLED,
        PurchaseStatus.COMPLETED,
    }),
    PurchaseStatus.FAILED: frozenset({PurchaseStatus.ACTIVE, PurchaseStatus.CANCELLED}),
    PurchaseStatus.PAUSED: frozenset({PurchaseStatus.ACTIVE, PurchaseStatus.CANCELLED}),
    PurchaseStatus.CANCELLED: frozenset(),
    PurchaseStatus.COMPLETED: frozenset(),
}


def is_terminal(status: PurchaseStatus) -> bool:
    return PurchaseStatus(status) in TERMINAL_STATES


def can_transition(current: PurchaseStatus, target: PurchaseStatus) -> bool:
    return PurchaseStatus(target) in ALLOWED_TRANSITIONS[PurchaseStatus(current)]


def plan_transition(purchase_id: Any, current: PurchaseStatus, target: PurchaseStatus) -> bool:
    """
    Validate current -> target.

    Returns:
        True if the status must change, False for a same-state no-op

    Raises:
        TerminalStateError: current is cancelled or completed
        InvalidTransitionError: the pair is not in ALLOWED_TRANSITIONS
    """
    current = PurchaseStatus(current)
    target = PurchaseStatus(target)

    if current == target:
        return False
    if current in TERMINAL_STATES:
        raise TerminalStateError(purchase_id, current.value, target.value)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(purchase_id, current.value, target.value)
    return True
