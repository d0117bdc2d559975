"""
Reconciliation document schemas.

A reconciliation document (delivery note) is produced exactly once when an
order is received. It compares what was requested with what was assembled
and sorts every line into a single received-side outcome bucket.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from stock_transfer.schemas.signatures import Signature


class ReceiptBucket(str, Enum):
    """Received-side outcome of an order line."""

    DELIVERED = "delivered"
    PARTIAL = "partial"
    RETURNED = "returned"
    NOT_RECEIVED = "not_received"


class ReceiptBuckets(BaseModel):
    """Order lines sorted into exclusive outcome buckets."""

    delivered: list[dict[str, Any]] = Field(default_factory=list)
    partial: list[dict[str, Any]] = Field(default_factory=list)
    returned: list[dict[str, Any]] = Field(default_factory=list)
    not_received: list[dict[str, Any]] = Field(default_factory=list)

    def bucket(self, name: ReceiptBucket) -> list[dict[str, Any]]:
        return getattr(self, name.value)


class ReconciliationDocument(BaseModel):
    """Immutable delivery note for a received order."""

    model_config = ConfigDict(frozen=True)

    id: str
    order_id: str
    order_number: str

    requester_site_id: str
    requester_site_name: Optional[str] = None
    preparer_site_id: str
    preparer_site_name: Optional[str] = None

    items_requested: list[dict[str, Any]] = Field(default_factory=list)
    items_assembled: list[dict[str, Any]] = Field(default_factory=list)
    items_delivered: list[dict[str, Any]] = Field(default_factory=list)
    items_partial: list[dict[str, Any]] = Field(default_factory=list)
    items_returned: list[dict[str, Any]] = Field(default_factory=list)
    items_not_received: list[dict[str, Any]] = Field(default_factory=list)

    requested_by_signature: Optional[Signature] = None
    assembled_by_signature: Optional[Signature] = None
    courier_signature: Optional[Signature] = None
    receiver_signature: Optional[Signature] = None

    request_notes: Optional[str] = None
    assembly_notes: Optional[str] = None
    reception_notes: Optional[str] = None

    created_at: datetime
