"""
Backorder queue schemas.

A site accumulates the quantities it asked for but did not get in a single
active queue. Items leave the queue by being merged into a draft order,
promoted into a new urgent order, completed or cancelled.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from stock_transfer.schemas.orders import utc_now
from stock_transfer.services.backorders.enums import (
    BackorderItemStatus,
    BackorderPriority,
    BackorderQueueStatus,
)


class BackorderItem(BaseModel):
    """Outstanding quantity of a product reported on a received order."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    product_id: str
    product_name: str
    quantity: Decimal = Field(..., gt=0)
    unit: str = "unit"
    reason: str

    origin_order_id: str
    origin_order_number: Optional[str] = None
    origin_item_id: Optional[str] = None

    reported_by: str
    reported_by_name: Optional[str] = None
    reported_at: datetime = Field(default_factory=utc_now)

    priority: BackorderPriority = BackorderPriority.NORMAL
    status: BackorderItemStatus = BackorderItemStatus.PENDING

    merged_into_order_id: Optional[str] = None
    merged_at: Optional[datetime] = None

    resolved_by: Optional[str] = None
    resolved_by_name: Optional[str] = None
    resolved_at: Optional[datetime] = None


class BackorderQueue(BaseModel):
    """Queue of outstanding items for one requesting site."""

    id: str
    site_id: str
    site_name: Optional[str] = None
    status: BackorderQueueStatus = BackorderQueueStatus.PENDING
    auto_merge_enabled: bool = True
    items: list[BackorderItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    def open_items(self) -> list[BackorderItem]:
        return [item for item in self.items if item.status.is_open()]

    def find_item(self, item_id: str) -> Optional[BackorderItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def refresh_status(self) -> None:
        """Recompute the queue status from its items."""
        if not self.open_items():
            self.status = (
                BackorderQueueStatus.COMPLETED
                if self.items
                else BackorderQueueStatus.PENDING
            )
        elif len(self.open_items()) < len(self.items):
            self.status = BackorderQueueStatus.IN_QUEUE
        else:
            self.status = BackorderQueueStatus.PENDING


class MergeOutcome(BaseModel):
    """Result of merging queued items into an order."""

    queue_id: Optional[str] = None
    target_order_id: Optional[str] = None
    merged_item_ids: list[str] = Field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def merged(self) -> bool:
        return bool(self.merged_item_ids)


class EnqueueRequest(BaseModel):
    """Payload for manually queueing an outstanding quantity."""

    origin_order_id: str
    item_id: str
    quantity: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=500)
    priority: Optional[BackorderPriority] = None


class MergeRequest(BaseModel):
    target_order_id: str
    item_ids: Optional[list[str]] = None


class PriorityUpdateRequest(BaseModel):
    priority: BackorderPriority


class AutoMergeToggleRequest(BaseModel):
    enabled: bool
