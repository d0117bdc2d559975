"""
Order document schemas and action request payloads.

``Order`` and ``OrderItem`` are the persisted document shapes. Every
lifecycle edge stamps its own actor/time triple directly on the order so
that the remit audit can always be rebuilt from the order alone.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from stock_transfer.schemas.signatures import Actor
from stock_transfer.services.orders.enums import ItemStatus, OrderStatus

# Field prefix of the actor/time triple written by the edge into each status
STAGE_STAMP_PREFIXES: dict[OrderStatus, str] = {
    OrderStatus.SENT: "sent",
    OrderStatus.ASSEMBLING: "accepted",
    OrderStatus.IN_TRANSIT: "delivered",
    OrderStatus.RECEIVED: "received",
    OrderStatus.CANCELLED: "cancelled",
}

READY_STAMP_PREFIX = "prepared"

# Fields filled in by the preparer, stripped from the requested view
ASSEMBLY_FIELDS: frozenset[str] = frozenset(
    {
        "assembled_quantity",
        "not_available_reason",
        "assembly_notes",
        "assembled_by",
        "assembled_at",
    }
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_order_number(prefix: str = "ORD") -> str:
    """Generate a human readable, practically unique order number."""
    timestamp = utc_now().strftime("%Y%m%d%H%M%S")
    random_suffix = uuid.uuid4().hex[:6].upper()
    return f"{prefix}-{timestamp}-{random_suffix}"


class OrderItem(BaseModel):
    """A requested product line and its progressive fulfillment data."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    product_id: str = Field(..., min_length=1)
    product_name: str = Field(..., min_length=1)
    quantity: Decimal = Field(..., gt=0)
    unit: str = Field(default="unit", min_length=1)
    status: ItemStatus = ItemStatus.PENDING

    # Assembly
    assembled_quantity: Optional[Decimal] = Field(None, ge=0)
    not_available_reason: Optional[str] = None
    assembly_notes: Optional[str] = None
    assembled_by: Optional[str] = None
    assembled_at: Optional[datetime] = None

    # Reception
    received_quantity: Optional[Decimal] = Field(None, ge=0)
    not_received_reason: Optional[str] = None
    return_reason: Optional[str] = None

    @model_validator(mode="after")
    def validate_quantities(self) -> "OrderItem":
        """Fulfilled quantities can never exceed the requested quantity."""
        if self.assembled_quantity is not None and self.assembled_quantity > self.quantity:
            raise ValueError(
                f"Assembled quantity {self.assembled_quantity} exceeds "
                f"requested quantity {self.quantity}"
            )
        if self.received_quantity is not None and self.received_quantity > self.quantity:
            raise ValueError(
                f"Received quantity {self.received_quantity} exceeds "
                f"requested quantity {self.quantity}"
            )
        return self

    def requested_view(self) -> dict:
        """Serialized item with every assembly field removed."""
        return self.model_dump(mode="json", exclude=set(ASSEMBLY_FIELDS))


class Order(BaseModel):
    """Stock transfer order between a requesting and a preparing site."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_number: str = Field(default_factory=generate_order_number)
    status: OrderStatus = OrderStatus.DRAFT

    from_site_id: str = Field(..., min_length=1, description="Requesting site")
    from_site_name: Optional[str] = None
    to_site_id: str = Field(..., min_length=1, description="Preparing site")
    to_site_name: Optional[str] = None

    items: list[OrderItem] = Field(default_factory=list)

    created_by: str
    created_by_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    sent_by: Optional[str] = None
    sent_by_name: Optional[str] = None
    sent_at: Optional[datetime] = None

    accepted_by: Optional[str] = None
    accepted_by_name: Optional[str] = None
    accepted_at: Optional[datetime] = None

    prepared_by: Optional[str] = None
    prepared_by_name: Optional[str] = None
    prepared_at: Optional[datetime] = None

    delivered_by: Optional[str] = None
    delivered_by_name: Optional[str] = None
    delivered_at: Optional[datetime] = None

    received_by: Optional[str] = None
    received_by_name: Optional[str] = None
    received_at: Optional[datetime] = None

    cancelled_by: Optional[str] = None
    cancelled_by_name: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    courier_id: Optional[str] = Field(
        None, description="Assigned courier; any courier of the preparer site if unset"
    )
    parent_order_id: Optional[str] = None

    notes: Optional[str] = None
    assembly_notes: Optional[str] = None
    reception_notes: Optional[str] = None

    def stamp_for(
        self, status: OrderStatus
    ) -> tuple[Optional[str], Optional[str], Optional[datetime]]:
        """Actor id, actor name and time recorded for the edge into ``status``."""
        prefix = STAGE_STAMP_PREFIXES.get(status)
        if prefix is None:
            return None, None, None
        return self._read_stamp(prefix)

    def ready_stamp(self) -> tuple[Optional[str], Optional[str], Optional[datetime]]:
        return self._read_stamp(READY_STAMP_PREFIX)

    def apply_stamp(self, status: OrderStatus, actor: Actor, at: datetime) -> None:
        """Record ``actor`` and ``at`` as the signer of the edge into ``status``."""
        self._write_stamp(STAGE_STAMP_PREFIXES[status], actor, at)

    def apply_ready_stamp(self, actor: Actor, at: datetime) -> None:
        self._write_stamp(READY_STAMP_PREFIX, actor, at)

    def find_item(self, item_id: str) -> Optional[OrderItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def _read_stamp(self, prefix: str):
        return (
            getattr(self, f"{prefix}_by"),
            getattr(self, f"{prefix}_by_name"),
            getattr(self, f"{prefix}_at"),
        )

    def _write_stamp(self, prefix: str, actor: Actor, at: datetime) -> None:
        setattr(self, f"{prefix}_by", actor.actor_id)
        setattr(self, f"{prefix}_by_name", actor.name)
        setattr(self, f"{prefix}_at", at)
        self.updated_at = at


# Request payloads


class OrderItemInput(BaseModel):
    """Item line supplied by the requester."""

    model_config = ConfigDict(str_strip_whitespace=True)

    product_id: str = Field(..., min_length=1)
    product_name: str = Field(..., min_length=1)
    quantity: Decimal = Field(..., ge=0)
    unit: str = Field(default="unit", min_length=1)


class OrderCreateRequest(BaseModel):
    """Payload for creating a draft order."""

    to_site_id: str = Field(..., min_length=1)
    to_site_name: Optional[str] = None
    from_site_name: Optional[str] = None
    items: list[OrderItemInput] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)
    courier_id: Optional[str] = None


class OrderItemsUpdateRequest(BaseModel):
    """Payload for replacing a draft order's items."""

    items: list[OrderItemInput] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)


class AssemblyLine(BaseModel):
    """Preparer's result for one order line."""

    item_id: str
    assembled_quantity: Decimal = Field(..., ge=0)
    not_available_reason: Optional[str] = None
    notes: Optional[str] = None


class AssemblyRequest(BaseModel):
    lines: list[AssemblyLine] = Field(..., min_length=1)
    assembly_notes: Optional[str] = Field(None, max_length=2000)


class ReceiptLine(BaseModel):
    """Receiver's result for one order line.

    ``received_quantity`` defaults to the assembled quantity when omitted.
    """

    item_id: str
    received_quantity: Optional[Decimal] = Field(None, ge=0)
    not_received_reason: Optional[str] = None
    return_reason: Optional[str] = None

    @field_validator("not_received_reason", "return_reason")
    @classmethod
    def blank_reason_is_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty reasons as absent."""
        if v is not None and not v.strip():
            return None
        return v


class ReceiveRequest(BaseModel):
    lines: list[ReceiptLine] = Field(default_factory=list)
    reception_notes: Optional[str] = Field(None, max_length=2000)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# Responses


class TransitionResponse(BaseModel):
    """Stored order after a lifecycle action and what the action did."""

    order: Order
    outcome: str = Field(..., description="applied, resigned or stale_dropped")
    previous_status: Optional[OrderStatus] = None


class ReceiveResponse(TransitionResponse):
    reconciliation_document_id: Optional[str] = None
    backorder_item_ids: list[str] = Field(default_factory=list)
