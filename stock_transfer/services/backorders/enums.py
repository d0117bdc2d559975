"""Backorder queue and item enums."""

from enum import Enum


class BackorderPriority(str, Enum):
    """Priority tier of a queued item. URGENT items are never auto-merged."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class BackorderItemStatus(str, Enum):
    """Lifecycle of a queued item.

    Valid transitions:
    - PENDING, IN_QUEUE -> MERGED, COMPLETED, CANCELLED
    - MERGED, COMPLETED, CANCELLED -> (terminal state)
    """

    PENDING = "pending"
    IN_QUEUE = "in_queue"
    MERGED = "merged"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def is_open(self) -> bool:
        """Check if the item still waits to be replenished."""
        return self in {BackorderItemStatus.PENDING, BackorderItemStatus.IN_QUEUE}


class BackorderQueueStatus(str, Enum):
    """Status of a site's queue; PENDING and IN_QUEUE queues are active."""

    PENDING = "pending"
    IN_QUEUE = "in_queue"
    COMPLETED = "completed"

    def is_active(self) -> bool:
        return self != BackorderQueueStatus.COMPLETED
