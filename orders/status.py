"""Order status state machine.

Every status write goes through :func:`orders.services.set_status`, which
consults this table before touching the row.
"""

from .models import OrderStatus


_ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    # Administrative overrides once money has been received.
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in _ALLOWED_TRANSITIONS.items() if not targets)

# The only statuses a gateway callback may write, and only from PROCESSING.
RECONCILER_TARGETS = frozenset({OrderStatus.PAID, OrderStatus.CANCELLED})


def allowed_next(current: str) -> set[str]:
    return set(_ALLOWED_TRANSITIONS.get(current, set()))


def can_transition(current: str, new: str) -> bool:
    """Return True when ``current -> new`` is an edge of the state machine.

    Same-state writes are not transitions and are rejected.
    """
    if current == new:
        return False
    return new in _ALLOWED_TRANSITIONS.get(current, set())
