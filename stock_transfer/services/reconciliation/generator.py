"""
Reconciliation document generator.

When an order is received, every line is compared across what was requested,
what was assembled and what the receiver reported, and sorted into exactly
one outcome bucket. The resulting delivery note is created once per order:
its id is derived from the order id, so repeated or concurrent generation
converges on the same document.
"""

import uuid
from decimal import Decimal
from typing import Iterable, Optional

from stock_transfer.core.exceptions import MissingPrerequisite, NotFound
from stock_transfer.core.logging import get_logger, log_performance
from stock_transfer.database.store import Collection, DocumentStore
from stock_transfer.schemas.audit import RemitAudit
from stock_transfer.schemas.orders import Order, OrderItem, utc_now
from stock_transfer.schemas.reconciliation import (
    ReceiptBucket,
    ReceiptBuckets,
    ReconciliationDocument,
)
from stock_transfer.schemas.signatures import Actor, Signature
from stock_transfer.services.audit.synchronizer import RemitAuditSynchronizer
from stock_transfer.services.orders.enums import ItemStatus, OrderStatus

logger = get_logger(__name__)

RECONCILIATION_NAMESPACE = uuid.UUID("6f1c2b1e-7d4a-4c53-9a55-0d3f8e2b9c41")


def reconciliation_document_id(order_id: str) -> str:
    """Deterministic reconciliation document id for an order."""
    return str(uuid.uuid5(RECONCILIATION_NAMESPACE, f"reconciliation:{order_id}"))


def classify_item(item: OrderItem) -> ReceiptBucket:
    """
    Sort an order line into its received-side outcome.

    Rules are evaluated in order and the first match wins:

    1. a return reason makes the line ``returned``;
    2. a not-received reason or a ``not_received`` status makes it
       ``not_received``;
    3. nothing assembled makes it ``not_received``;
    4. less assembled than requested makes it ``partial``;
    5. otherwise it was ``delivered``.
    """
    if item.return_reason:
        return ReceiptBucket.RETURNED
    if item.not_received_reason or item.status == ItemStatus.NOT_RECEIVED:
        return ReceiptBucket.NOT_RECEIVED
    if not item.assembled_quantity:
        return ReceiptBucket.NOT_RECEIVED
    if item.assembled_quantity < item.quantity:
        return ReceiptBucket.PARTIAL
    return ReceiptBucket.DELIVERED


def classify_items(items: Iterable[OrderItem]) -> ReceiptBuckets:
    """Classify every line into exactly one bucket, keeping item order."""
    buckets = ReceiptBuckets()
    for item in items:
        buckets.bucket(classify_item(item)).append(item.model_dump(mode="json"))
    return buckets


def outstanding_quantity(item: OrderItem, bucket: Optional[ReceiptBucket] = None) -> Decimal:
    """
    Quantity the requesting site still needs for a line.

    Delivered and partial lines owe the difference between requested and
    what actually arrived, which is the smaller of assembled and received.
    Lines that did not arrive or were sent back owe everything that was not
    kept.
    """
    bucket = bucket or classify_item(item)
    if bucket in (ReceiptBucket.DELIVERED, ReceiptBucket.PARTIAL):
        return max(item.quantity - arrived_quantity(item), Decimal(0))
    kept = item.received_quantity or Decimal(0)
    if bucket == ReceiptBucket.RETURNED:
        kept = Decimal(0)
    return max(item.quantity - kept, Decimal(0))


def arrived_quantity(item: OrderItem) -> Decimal:
    """Units that reached the requesting site: assembled, capped by received."""
    arrived = item.assembled_quantity or Decimal(0)
    if item.received_quantity is not None:
        arrived = min(arrived, item.received_quantity)
    return arrived


def lost_in_transit(item: OrderItem) -> bool:
    """Whether fewer units were received than the preparing site assembled."""
    return (
        item.received_quantity is not None
        and item.assembled_quantity is not None
        and item.received_quantity < item.assembled_quantity
    )


def shortfall_reason(item: OrderItem, default: str) -> str:
    """Explanation recorded for an outstanding line."""
    explicit = item.return_reason or item.not_received_reason or item.not_available_reason
    if explicit:
        return explicit
    if lost_in_transit(item):
        return (
            f"Partial reception: received {item.received_quantity:f} "
            f"of {item.quantity:f}"
        )
    return default


def resolve_assembler_signature(order: Order, audit: RemitAudit) -> Optional[Signature]:
    """Ready signature, else assembling signature, else the order's own stamps."""
    return (
        audit.ready_signature
        or audit.assembling_signature
        or Signature.from_stamp(*order.ready_stamp())
        or Signature.from_stamp(*order.stamp_for(OrderStatus.ASSEMBLING))
    )


def resolve_courier_signature(order: Order, audit: RemitAudit) -> Optional[Signature]:
    """In-transit signature, else the order's pick-up stamp."""
    return audit.in_transit_signature or Signature.from_stamp(
        *order.stamp_for(OrderStatus.IN_TRANSIT)
    )


class ReconciliationGenerator:
    """
    Produces and reads reconciliation documents.

    Attributes:
        store: Document store holding ``reconciliation_documents``
        synchronizer: Audit synchronizer used to read (and heal) audits
    """

    def __init__(self, store: DocumentStore, synchronizer: RemitAuditSynchronizer):
        self.store = store
        self.synchronizer = synchronizer

    async def generate(
        self,
        order: Order,
        receiver: Actor,
        reception_notes: Optional[str] = None,
    ) -> str:
        """
        Create the reconciliation document of a received order.

        Args:
            order: Order in ``received`` status
            receiver: Identity that received the order
            reception_notes: Receiver's notes (defaults to the order's)

        Returns:
            Id of the (possibly pre-existing) document

        Raises:
            MissingPrerequisite: If the order has not been received yet
        """
        if order.status != OrderStatus.RECEIVED:
            raise MissingPrerequisite(
                f"Order {order.order_number} has not been received "
                f"(status {order.status.value})",
                order_id=order.id,
                status=order.status.value,
            )

        document_id = reconciliation_document_id(order.id)
        if await self.store.get(Collection.RECONCILIATION_DOCUMENTS, document_id) is not None:
            logger.info(
                "Reconciliation document already exists",
                order_id=order.id,
                document_id=document_id,
            )
            return document_id

        with log_performance(logger, "generate_reconciliation", order_id=order.id):
            document = self._build_document(
                document_id,
                order,
                await self.synchronizer.get_or_rebuild(order),
                receiver,
                reception_notes,
            )
            created = await self.store.create(
                Collection.RECONCILIATION_DOCUMENTS,
                document_id,
                document.model_dump(mode="json"),
            )

        logger.info(
            "Reconciliation document created" if created else "Reconciliation document already exists",
            order_id=order.id,
            order_number=order.order_number,
            document_id=document_id,
            delivered=len(document.items_delivered),
            partial=len(document.items_partial),
            returned=len(document.items_returned),
            not_received=len(document.items_not_received),
        )
        return document_id

    def _build_document(
        self,
        document_id: str,
        order: Order,
        audit: RemitAudit,
        receiver: Actor,
        reception_notes: Optional[str],
    ) -> ReconciliationDocument:
        buckets = classify_items(order.items)
        return ReconciliationDocument(
            id=document_id,
            order_id=order.id,
            order_number=order.order_number,
            requester_site_id=order.from_site_id,
            requester_site_name=order.from_site_name,
            preparer_site_id=order.to_site_id,
            preparer_site_name=order.to_site_name,
            items_requested=[item.requested_view() for item in order.items],
            items_assembled=[item.model_dump(mode="json") for item in order.items],
            items_delivered=buckets.delivered,
            items_partial=buckets.partial,
            items_returned=buckets.returned,
            items_not_received=buckets.not_received,
            requested_by_signature=Signature.from_stamp(
                order.created_by, order.created_by_name, order.created_at
            ),
            assembled_by_signature=resolve_assembler_signature(order, audit),
            courier_signature=resolve_courier_signature(order, audit),
            receiver_signature=Signature.from_actor(
                receiver, order.received_at or utc_now()
            ),
            request_notes=order.notes,
            assembly_notes=order.assembly_notes,
            reception_notes=reception_notes if reception_notes is not None else order.reception_notes,
            created_at=utc_now(),
        )

    async def get(self, document_id: str) -> ReconciliationDocument:
        """
        Get a reconciliation document by id.

        Raises:
            NotFound: If the document does not exist
        """
        document = await self.store.get(Collection.RECONCILIATION_DOCUMENTS, document_id)
        if document is None:
            raise NotFound(
                f"Reconciliation document {document_id} not found",
                collection=Collection.RECONCILIATION_DOCUMENTS.value,
                document_id=document_id,
            )
        return ReconciliationDocument.model_validate(document)

    async def get_for_order(self, order_id: str) -> Optional[ReconciliationDocument]:
        document = await self.store.get(
            Collection.RECONCILIATION_DOCUMENTS, reconciliation_document_id(order_id)
        )
        return ReconciliationDocument.model_validate(document) if document else None

    async def list_for_site(self, site_id: str) -> list[ReconciliationDocument]:
        """Documents where ``site_id`` was the requester or the preparer."""
        documents = {
            doc["id"]: doc
            for doc in await self.store.query(
                Collection.RECONCILIATION_DOCUMENTS, requester_site_id=site_id
            )
        }
        for doc in await self.store.query(
            Collection.RECONCILIATION_DOCUMENTS, preparer_site_id=site_id
        ):
            documents.setdefault(doc["id"], doc)
        return sorted(
            (ReconciliationDocument.model_validate(doc) for doc in documents.values()),
            key=lambda d: d.created_at,
        )
