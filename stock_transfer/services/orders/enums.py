"""Order, item and actor enums for the stock transfer lifecycle.

This module defines the order status state machine table, the per-item
fulfillment statuses and the actor roles, together with the helpers used
to validate transitions and to detect status regressions.
"""

from enum import Enum
from typing import Dict, Set


class OrderStatus(str, Enum):
    """Order lifecycle status with state machine transitions.

    Valid transitions:
    - DRAFT -> SENT, CANCELLED
    - SENT -> ASSEMBLING, CANCELLED
    - ASSEMBLING -> IN_TRANSIT, CANCELLED
    - IN_TRANSIT -> RECEIVED
    - RECEIVED -> (terminal state)
    - CANCELLED -> (terminal state)
    """

    DRAFT = "draft"
    SENT = "sent"
    ASSEMBLING = "assembling"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if status is a terminal state."""
        return self in {OrderStatus.RECEIVED, OrderStatus.CANCELLED}

    def can_cancel(self) -> bool:
        """Check if order can be cancelled from current status."""
        return OrderStatus.CANCELLED in ORDER_STATUS_TRANSITIONS[self]

    def is_editable(self) -> bool:
        """Check if the requester may still change the order's items."""
        return self in {OrderStatus.DRAFT, OrderStatus.SENT}


class ItemStatus(str, Enum):
    """Fulfillment status of a single order line.

    Assembly sets AVAILABLE or NOT_AVAILABLE; reception sets DELIVERED,
    NOT_RECEIVED or RETURNED.
    """

    PENDING = "pending"
    AVAILABLE = "available"
    NOT_AVAILABLE = "not_available"
    DELIVERED = "delivered"
    NOT_RECEIVED = "not_received"
    RETURNED = "returned"


class ActorRole(str, Enum):
    """Role of the identity performing an action."""

    BRANCH = "branch"
    FACTORY = "factory"
    DELIVERY = "delivery"
    ADMIN = "admin"

    @property
    def is_site_staff(self) -> bool:
        """Staff roles may sign on behalf of their site; couriers may not."""
        return self != ActorRole.DELIVERY


# State machine transition rules
ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.DRAFT: {
        OrderStatus.SENT,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SENT: {
        OrderStatus.ASSEMBLING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.ASSEMBLING: {
        OrderStatus.IN_TRANSIT,
        OrderStatus.CANCELLED,
    },
    OrderStatus.IN_TRANSIT: {
        OrderStatus.RECEIVED,
    },
    OrderStatus.RECEIVED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
}

# Stages that carry a signature in the remit audit, in lifecycle order
SIGNED_STAGES: tuple[OrderStatus, ...] = (
    OrderStatus.SENT,
    OrderStatus.ASSEMBLING,
    OrderStatus.IN_TRANSIT,
    OrderStatus.RECEIVED,
)


def validate_order_status_transition(
    current: OrderStatus,
    new: OrderStatus
) -> bool:
    """Validate if order status transition is allowed.

    Args:
        current: Current order status
        new: Desired new status

    Returns:
        True if transition is valid
    """
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(
    current: OrderStatus
) -> Set[OrderStatus]:
    """Get all allowed transitions from current order status.

    Args:
        current: Current order status

    Returns:
        Set of allowed next statuses
    """
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()


def get_reachable_statuses(current: OrderStatus) -> Set[OrderStatus]:
    """Get every status reachable from ``current`` through one or more edges."""
    reachable: Set[OrderStatus] = set()
    frontier = list(ORDER_STATUS_TRANSITIONS.get(current, set()))
    while frontier:
        status = frontier.pop()
        if status in reachable:
            continue
        reachable.add(status)
        frontier.extend(ORDER_STATUS_TRANSITIONS.get(status, set()))
    return reachable


def is_status_regression(
    stored: OrderStatus,
    incoming: OrderStatus
) -> bool:
    """Check whether writing ``incoming`` over ``stored`` would move backwards.

    A write regresses when it targets a different status that can no longer
    be reached from the stored one, e.g. ``assembling`` over ``in_transit``
    or anything over a terminal status.

    Args:
        stored: Status currently persisted
        incoming: Status the write wants to set

    Returns:
        True if the write must be dropped
    """
    if stored == incoming:
        return False
    return incoming not in get_reachable_statuses(stored)
