"""
Remit audit projection schemas.

The audit is a derived view of an order's lifecycle: an ordered status
history plus one signature slot per signed stage and an out-of-band ready
signature. It can always be rebuilt from the order document.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from stock_transfer.schemas.signatures import Signature
from stock_transfer.services.orders.enums import OrderStatus

SIGNATURE_SLOTS: dict[OrderStatus, str] = {
    OrderStatus.SENT: "sent_signature",
    OrderStatus.ASSEMBLING: "assembling_signature",
    OrderStatus.IN_TRANSIT: "in_transit_signature",
    OrderStatus.RECEIVED: "received_signature",
}


class StatusHistoryEntry(BaseModel):
    """One recorded lifecycle step."""

    status: OrderStatus
    timestamp: datetime
    actor_id: str
    actor_name: str


class RemitAudit(BaseModel):
    """Audit trail of a single order, keyed by the order id."""

    order_id: str
    order_number: str
    created_at: datetime
    current_status: OrderStatus
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    sent_signature: Optional[Signature] = None
    assembling_signature: Optional[Signature] = None
    ready_signature: Optional[Signature] = None
    in_transit_signature: Optional[Signature] = None
    received_signature: Optional[Signature] = None

    def signature_for(self, status: OrderStatus) -> Optional[Signature]:
        slot = SIGNATURE_SLOTS.get(status)
        return getattr(self, slot) if slot else None

    def set_signature(self, status: OrderStatus, signature: Signature) -> None:
        slot = SIGNATURE_SLOTS.get(status)
        if slot is not None:
            setattr(self, slot, signature)

    def history_statuses(self) -> list[OrderStatus]:
        return [entry.status for entry in self.status_history]
