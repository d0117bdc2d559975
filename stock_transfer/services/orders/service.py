"""
Order service orchestrating the actor actions on stock transfer orders.

This module implements the OrderService class, the single entry point for
creating orders and moving them through their lifecycle. Every action is
committed through the state machine, then recorded in the remit audit.
Receiving an order additionally generates its reconciliation document and
queues whatever did not arrive. Change events are published after each
committed write.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from stock_transfer.core.config import Settings, get_settings
from stock_transfer.core.exceptions import (
    InvalidTransition,
    NotAuthorized,
    NotFound,
    OrderValidationError,
)
from stock_transfer.core.logging import get_logger
from stock_transfer.database.store import Collection, DocumentStore
from stock_transfer.schemas.audit import RemitAudit
from stock_transfer.schemas.backorders import BackorderItem, EnqueueRequest
from stock_transfer.schemas.orders import (
    AssemblyRequest,
    Order,
    OrderCreateRequest,
    OrderItem,
    OrderItemInput,
    OrderItemsUpdateRequest,
    ReceiptLine,
    ReceiveRequest,
    utc_now,
)
from stock_transfer.schemas.reconciliation import ReconciliationDocument
from stock_transfer.schemas.signatures import Actor
from stock_transfer.services.audit.synchronizer import RemitAuditSynchronizer
from stock_transfer.services.backorders.service import BackorderQueueManager
from stock_transfer.services.notifications.publisher import (
    ChangeEvent,
    ChangePublisher,
    publish_quietly,
)
from stock_transfer.services.orders.enums import ItemStatus, OrderStatus
from stock_transfer.services.orders.repository import OrderRepository
from stock_transfer.services.orders.state_machine import (
    TransitionOutcome,
    TransitionResult,
    get_order_state_machine,
)
from stock_transfer.services.reconciliation.generator import ReconciliationGenerator

logger = get_logger(__name__)


@dataclass
class ReceiveResult:
    """Outcome of receiving an order."""

    order: Order
    outcome: TransitionOutcome
    reconciliation_document_id: Optional[str] = None
    backorder_items: list[BackorderItem] = field(default_factory=list)


class OrderService:
    """
    Order service orchestrating the lifecycle of stock transfer orders.

    Attributes:
        repository: Order repository for data access
        state_machine: State machine committing status transitions
        audit: Remit audit synchronizer
        reconciliation: Reconciliation document generator
        backorders: Backorder queue manager
        publisher: Optional change publisher
    """

    def __init__(
        self,
        store: DocumentStore,
        publisher: Optional[ChangePublisher] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize order service.

        Args:
            store: Document store shared by every collaborator
            publisher: Optional change publisher
            settings: Application settings (defaults to the cached settings)
        """
        self.settings = settings or get_settings()
        self.publisher = publisher
        self.repository = OrderRepository(store)
        self.state_machine = get_order_state_machine(self.repository)
        self.audit = RemitAuditSynchronizer(store)
        self.reconciliation = ReconciliationGenerator(store, self.audit)
        self.backorders = BackorderQueueManager(
            store, self.repository, self.settings, publisher
        )

    # Creation and editing

    async def create_order(self, request: OrderCreateRequest, actor: Actor) -> Order:
        """
        Create a draft order requested by the actor's site.

        Lines with a zero quantity are dropped.

        Raises:
            NotAuthorized: If the actor is not site staff
            OrderValidationError: If the actor has no site, the order targets
                the actor's own site or no line has a quantity
        """
        if not actor.site_id:
            raise OrderValidationError(
                "Actor is not attached to a site", actor_id=actor.actor_id
            )
        if not actor.role.is_site_staff:
            raise NotAuthorized(
                f"Actor {actor.actor_id} may not request orders",
                actor_id=actor.actor_id,
                actor_role=actor.role.value,
            )
        if request.to_site_id == actor.site_id:
            raise OrderValidationError(
                "An order cannot be requested from the requesting site itself",
                site_id=actor.site_id,
            )

        order = Order(
            from_site_id=actor.site_id,
            from_site_name=request.from_site_name,
            to_site_id=request.to_site_id,
            to_site_name=request.to_site_name,
            items=self._build_items(request.items),
            created_by=actor.actor_id,
            created_by_name=actor.name,
            notes=request.notes,
            courier_id=request.courier_id,
        )
        await self.repository.create(order)

        logger.info(
            "Order created",
            order_id=order.id,
            order_number=order.order_number,
            from_site_id=order.from_site_id,
            to_site_id=order.to_site_id,
            item_count=len(order.items),
        )
        await self._announce(order, "order.created")
        return order

    async def update_items(
        self, order_id: str, request: OrderItemsUpdateRequest, actor: Actor
    ) -> Order:
        """
        Replace the lines of an order that the preparer has not accepted yet.

        Lines keep their id when their product was already on the order.

        Raises:
            NotAuthorized: If the actor is not staff of the requesting site
            InvalidTransition: If the order is past ``sent``
            OrderValidationError: If no line has a quantity
        """
        order = await self.repository.get(order_id)
        self._ensure_requester(order, actor)
        self._ensure_editable(order)
        items = self._build_items(request.items)

        def replace(stored: Order) -> Order:
            self._ensure_editable(stored)
            previous = {}
            for item in stored.items:
                previous.setdefault(item.product_id, []).append(item.id)
            for item in items:
                ids = previous.get(item.product_id)
                if ids:
                    item.id = ids.pop(0)
            stored.items = items
            if request.notes is not None:
                stored.notes = request.notes
            stored.updated_at = utc_now()
            return stored

        updated = await self.repository.mutate(order_id, replace)
        logger.info(
            "Order items updated",
            order_id=order_id,
            item_count=len(updated.items),
            actor_id=actor.actor_id,
        )
        await self._announce(updated, "order.items_updated")
        return updated

    # Lifecycle actions

    async def send(self, order_id: str, actor: Actor) -> TransitionResult:
        """Send a draft order to the preparing site."""
        return await self._transition(order_id, OrderStatus.SENT, actor, "order.sent")

    async def accept(self, order_id: str, actor: Actor) -> TransitionResult:
        """Accept a sent order at the preparing site and start assembling."""
        return await self._transition(
            order_id, OrderStatus.ASSEMBLING, actor, "order.accepted"
        )

    async def record_assembly(
        self, order_id: str, request: AssemblyRequest, actor: Actor
    ) -> Order:
        """
        Record assembled quantities while the order is assembling.

        Raises:
            InvalidTransition: If the order is not assembling
            NotAuthorized: If the actor is not staff of the preparing site
            OrderValidationError: If a line id is unknown or a quantity
                exceeds the requested quantity
        """
        order = await self.repository.get(order_id)
        self._ensure_assembling(order)
        if not (actor.role.is_site_staff and actor.belongs_to(order.to_site_id)):
            raise NotAuthorized(
                f"Actor {actor.actor_id} may not assemble order {order.order_number}",
                order_id=order.id,
                actor_id=actor.actor_id,
            )
        now = utc_now()

        def assemble(stored: Order) -> Order:
            self._ensure_assembling(stored)
            for line in request.lines:
                item = self._require_item(stored, line.item_id)
                item.assembled_quantity = line.assembled_quantity
                item.not_available_reason = line.not_available_reason or None
                item.status = (
                    ItemStatus.AVAILABLE
                    if line.assembled_quantity > 0
                    else ItemStatus.NOT_AVAILABLE
                )
                if line.notes is not None:
                    item.assembly_notes = line.notes
                item.assembled_by = actor.actor_id
                item.assembled_at = now
            if request.assembly_notes is not None:
                stored.assembly_notes = request.assembly_notes
            stored.updated_at = now
            return stored

        updated = await self.repository.mutate(order_id, assemble)
        logger.info(
            "Assembly recorded",
            order_id=order_id,
            lines=len(request.lines),
            actor_id=actor.actor_id,
        )
        await self._announce(updated, "order.assembly_recorded")
        return updated

    async def mark_ready(self, order_id: str, actor: Actor) -> TransitionResult:
        """Record that assembly is finished and the order awaits pick-up."""
        order = await self.repository.get(order_id)
        result = await self.state_machine.mark_ready(order, actor)
        if result.outcome != TransitionOutcome.STALE_DROPPED:
            await self.audit.record_ready_signature(result.order, actor)
            await self._announce(result.order, "order.ready")
        return result

    async def pick_up(self, order_id: str, actor: Actor) -> TransitionResult:
        """Courier picks the assembled order up."""
        return await self._transition(
            order_id, OrderStatus.IN_TRANSIT, actor, "order.picked_up"
        )

    async def receive(
        self,
        order_id: str,
        actor: Actor,
        request: Optional[ReceiveRequest] = None,
    ) -> ReceiveResult:
        """
        Receive an in-transit order at the requesting site.

        Receipt lines are written in the same update as the status change.
        Lines without a receipt entry are taken as received in their
        assembled quantity. The reconciliation document is generated (or
        found) for every non-stale receipt; outstanding quantities are queued
        only by the request that actually moved the order to ``received``.

        Args:
            order_id: Order to receive
            actor: Receiving identity
            request: Receipt lines and reception notes

        Returns:
            The stored order, the reconciliation document id and the queued
            backorder items

        Raises:
            InvalidTransition: If the order is not in transit
            NotAuthorized: If the actor is not staff of the requesting site
            OrderValidationError: If a receipt line names an unknown item
        """
        request = request or ReceiveRequest()
        order = await self.repository.get(order_id)
        lines = {line.item_id: line for line in request.lines}
        for item_id in lines:
            self._require_item(order, item_id)

        def apply_receipt(stored: Order) -> None:
            for item in stored.items:
                self._apply_receipt_line(item, lines.get(item.id))
            if request.reception_notes is not None:
                stored.reception_notes = request.reception_notes

        result = await self.state_machine.request_transition(
            order, OrderStatus.RECEIVED, actor, changes=apply_receipt
        )
        if result.outcome == TransitionOutcome.STALE_DROPPED:
            return ReceiveResult(order=result.order, outcome=result.outcome)

        await self.audit.record_transition(result.order, OrderStatus.RECEIVED, actor)
        document_id = await self.reconciliation.generate(
            result.order, actor, request.reception_notes
        )
        backorder_items: list[BackorderItem] = []
        if result.applied:
            backorder_items = await self.backorders.enqueue_outstanding(
                result.order, actor
            )

        logger.info(
            "Order received",
            order_id=order_id,
            order_number=result.order.order_number,
            outcome=result.outcome.value,
            reconciliation_document_id=document_id,
            backorder_items=len(backorder_items),
        )
        await self._announce(result.order, "order.received")
        return ReceiveResult(
            order=result.order,
            outcome=result.outcome,
            reconciliation_document_id=document_id,
            backorder_items=backorder_items,
        )

    async def cancel(
        self, order_id: str, actor: Actor, reason: Optional[str] = None
    ) -> TransitionResult:
        """Cancel an order that has not left the preparing site."""
        return await self._transition(
            order_id, OrderStatus.CANCELLED, actor, "order.cancelled", reason=reason
        )

    async def generate_reconciliation(self, order_id: str, actor: Actor) -> str:
        """
        Generate (or find) the reconciliation document of a received order.

        Raises:
            NotAuthorized: If the actor belongs to neither site
            MissingPrerequisite: If the order has not been received
        """
        order = await self.repository.get(order_id)
        if not (actor.belongs_to(order.from_site_id) or actor.belongs_to(order.to_site_id)):
            raise NotAuthorized(
                f"Actor {actor.actor_id} is not part of order {order.order_number}",
                order_id=order.id,
                actor_id=actor.actor_id,
            )
        return await self.reconciliation.generate(order, actor)

    async def report_shortfall(self, request: EnqueueRequest, actor: Actor) -> BackorderItem:
        """
        Manually queue an outstanding quantity of an order line.

        Raises:
            NotAuthorized: If the actor is not staff of the requesting site
            OrderValidationError: If the line is unknown or nothing is
                outstanding and no quantity was given
        """
        order = await self.repository.get(request.origin_order_id)
        self._ensure_requester(order, actor)
        item = self._require_item(order, request.item_id)
        return await self.backorders.enqueue(
            item,
            order,
            actor,
            reason=request.reason,
            quantity=request.quantity,
            priority=request.priority,
        )

    # Reads

    async def get_order(self, order_id: str) -> Order:
        return await self.repository.get(order_id)

    async def list_orders(
        self,
        site_id: Optional[str] = None,
        side: str = "any",
        status: Optional[OrderStatus] = None,
    ) -> list[Order]:
        return await self.repository.list_orders(site_id=site_id, side=side, status=status)

    async def get_audit(self, order_id: str) -> RemitAudit:
        """Remit audit of an order, healed from the order when missing or stale."""
        order = await self.repository.get(order_id)
        return await self.audit.get_or_rebuild(order)

    async def get_reconciliation(self, order_id: str) -> ReconciliationDocument:
        """
        Reconciliation document of an order.

        Raises:
            NotFound: If the order or its document does not exist
        """
        order = await self.repository.get(order_id)
        document = await self.reconciliation.get_for_order(order.id)
        if document is None:
            raise NotFound(
                f"Order {order.order_number} has no reconciliation document",
                collection=Collection.RECONCILIATION_DOCUMENTS.value,
                document_id=order.id,
                status=order.status.value,
            )
        return document

    # Helpers

    async def _transition(
        self,
        order_id: str,
        target_status: OrderStatus,
        actor: Actor,
        event: str,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        order = await self.repository.get(order_id)
        result = await self.state_machine.request_transition(
            order, target_status, actor, reason=reason
        )
        if result.outcome != TransitionOutcome.STALE_DROPPED:
            await self.audit.record_transition(result.order, target_status, actor)
            await self._announce(result.order, event)
        return result

    async def _announce(self, order: Order, event: str) -> None:
        await publish_quietly(
            self.publisher,
            ChangeEvent(
                collection=Collection.ORDERS.value,
                document_id=order.id,
                event=event,
                status=order.status.value,
                site_ids=[order.from_site_id, order.to_site_id],
            ),
        )

    @staticmethod
    def _build_items(lines: list[OrderItemInput]) -> list[OrderItem]:
        items = [
            OrderItem(
                product_id=line.product_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit=line.unit,
            )
            for line in lines
            if line.quantity > 0
        ]
        if not items:
            raise OrderValidationError("An order needs at least one item with a quantity")
        return items

    @staticmethod
    def _apply_receipt_line(item: OrderItem, line: Optional[ReceiptLine]) -> None:
        assembled = item.assembled_quantity or Decimal(0)
        received = line.received_quantity if line is not None else None

        if line is not None and line.return_reason:
            item.return_reason = line.return_reason
            item.received_quantity = received if received is not None else Decimal(0)
            item.status = ItemStatus.RETURNED
        elif line is not None and line.not_received_reason:
            item.not_received_reason = line.not_received_reason
            item.received_quantity = received if received is not None else Decimal(0)
            item.status = ItemStatus.NOT_RECEIVED
        else:
            item.received_quantity = received if received is not None else assembled
            item.status = (
                ItemStatus.DELIVERED if item.received_quantity > 0 else ItemStatus.NOT_RECEIVED
            )

    @staticmethod
    def _require_item(order: Order, item_id: str) -> OrderItem:
        item = order.find_item(item_id)
        if item is None:
            raise OrderValidationError(
                f"Item {item_id} is not part of order {order.order_number}",
                order_id=order.id,
                item_id=item_id,
            )
        return item

    @staticmethod
    def _ensure_requester(order: Order, actor: Actor) -> None:
        if not (actor.role.is_site_staff and actor.belongs_to(order.from_site_id)):
            raise NotAuthorized(
                f"Actor {actor.actor_id} does not belong to the requesting site",
                order_id=order.id,
                actor_id=actor.actor_id,
            )

    @staticmethod
    def _ensure_editable(order: Order) -> None:
        if not order.status.is_editable():
            raise InvalidTransition(
                f"Items of order {order.order_number} can no longer be changed "
                f"(status {order.status.value})",
                current_status=order.status,
                target_status="edit_items",
                allowed=[OrderStatus.DRAFT, OrderStatus.SENT],
                order_id=order.id,
            )

    @staticmethod
    def _ensure_assembling(order: Order) -> None:
        if order.status != OrderStatus.ASSEMBLING:
            raise InvalidTransition(
                f"Assembly of order {order.order_number} can only be recorded "
                f"while assembling (currently {order.status.value})",
                current_status=order.status,
                target_status="assembly",
                allowed=[OrderStatus.ASSEMBLING],
                order_id=order.id,
            )
