"""
Backorder queue manager.

Each requesting site has at most one active queue collecting the quantities
it asked for but did not receive. Queued items are later merged into one of
the site's draft orders, promoted into a new urgent order, completed or
cancelled.

Every write is a single-document atomic update. Identifiers that several
writers could create at the same time (the site's next queue, order lines
created from queued items, the order created by an urgent promotion) are
derived deterministically so that concurrent or repeated calls converge on
the same documents instead of duplicating them.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from stock_transfer.core.config import Settings, get_settings
from stock_transfer.core.exceptions import (
    InvalidTransition,
    MissingPrerequisite,
    NotAuthorized,
    NotFound,
    OrderValidationError,
)
from stock_transfer.core.logging import get_logger
from stock_transfer.database.store import Collection, DocumentStore
from stock_transfer.schemas.backorders import BackorderItem, BackorderQueue, MergeOutcome
from stock_transfer.schemas.orders import (
    Order,
    OrderItem,
    generate_order_number,
    utc_now,
)
from stock_transfer.schemas.signatures import Actor
from stock_transfer.services.backorders.enums import (
    BackorderItemStatus,
    BackorderPriority,
)
from stock_transfer.services.notifications.publisher import (
    ChangeEvent,
    ChangePublisher,
    publish_quietly,
)
from stock_transfer.services.orders.enums import OrderStatus
from stock_transfer.services.orders.repository import OrderRepository
from stock_transfer.services.reconciliation.generator import (
    outstanding_quantity,
    shortfall_reason,
)

logger = get_logger(__name__)

BACKORDER_NAMESPACE = uuid.UUID("0b8c3f5e-2a41-4f0d-8f7e-5c9a1d6e3b27")

MERGE_NOTE_PREFIX = "[BACKORDER]"


def queue_id_for(site_id: str, generation: int) -> str:
    """Id of the ``generation``-th queue opened for a site."""
    return str(uuid.uuid5(BACKORDER_NAMESPACE, f"queue:{site_id}:{generation}"))


def order_line_id_for(backorder_item_id: str) -> str:
    """Id of the order line created when a queued item is merged."""
    return str(uuid.uuid5(BACKORDER_NAMESPACE, f"order-line:{backorder_item_id}"))


def shortfall_item_id_for(order_id: str, order_item_id: str) -> str:
    """Id of the queued item created for a line of a received order."""
    return str(uuid.uuid5(BACKORDER_NAMESPACE, f"shortfall:{order_id}:{order_item_id}"))


def promotion_order_id_for(item_ids: Iterable[str]) -> str:
    """Id of the draft order created by promoting a set of urgent items."""
    key = ",".join(sorted(item_ids))
    return str(uuid.uuid5(BACKORDER_NAMESPACE, f"urgent-promotion:{key}"))


class _QueueClosed(Exception):
    """The queue completed between lookup and write."""


class BackorderQueueManager:
    """
    Manages backorder queues and their merge into orders.

    Attributes:
        store: Document store holding ``backorder_queues``
        orders: Order repository used for merge targets and promotions
        settings: Application settings with the backorder defaults
        publisher: Optional change publisher
    """

    def __init__(
        self,
        store: DocumentStore,
        orders: OrderRepository,
        settings: Optional[Settings] = None,
        publisher: Optional[ChangePublisher] = None,
    ):
        self.store = store
        self.orders = orders
        self.settings = settings or get_settings()
        self.publisher = publisher

    # Reads

    async def list_queues(
        self, site_id: Optional[str] = None, active_only: bool = False
    ) -> list[BackorderQueue]:
        """Queues of a site (or of every site), oldest first."""
        filters = {"site_id": site_id} if site_id is not None else {}
        queues = [
            BackorderQueue.model_validate(doc)
            for doc in await self.store.query(Collection.BACKORDER_QUEUES, **filters)
        ]
        if active_only:
            queues = [q for q in queues if q.status.is_active()]
        return sorted(queues, key=lambda q: (q.created_at, q.id))

    async def get_queue(self, queue_id: str) -> BackorderQueue:
        """
        Get a queue by id.

        Raises:
            NotFound: If the queue does not exist
        """
        document = await self.store.get(Collection.BACKORDER_QUEUES, queue_id)
        if document is None:
            raise NotFound(
                f"Backorder queue {queue_id} not found",
                collection=Collection.BACKORDER_QUEUES.value,
                document_id=queue_id,
            )
        return BackorderQueue.model_validate(document)

    async def get_active_queue(self, site_id: str) -> Optional[BackorderQueue]:
        active = await self.list_queues(site_id, active_only=True)
        return active[0] if active else None

    async def sites_with_active_queues(self) -> list[str]:
        return sorted({q.site_id for q in await self.list_queues(active_only=True)})

    async def pending_quantities(self, site_id: str) -> dict[str, Decimal]:
        """Open quantity per product in the site's active queue."""
        queue = await self.get_active_queue(site_id)
        totals: dict[str, Decimal] = {}
        if queue is None:
            return totals
        for item in queue.open_items():
            totals[item.product_id] = totals.get(item.product_id, Decimal(0)) + item.quantity
        return totals

    # Enqueue

    async def enqueue(
        self,
        item: OrderItem,
        origin_order: Order,
        reporting_actor: Actor,
        reason: Optional[str] = None,
        quantity: Optional[Decimal] = None,
        priority: Optional[BackorderPriority] = None,
        item_id: Optional[str] = None,
    ) -> BackorderItem:
        """
        Queue an outstanding quantity of an order line for the requesting site.

        Args:
            item: Order line the quantity belongs to
            origin_order: Order the line was requested on
            reporting_actor: Identity reporting the shortfall
            reason: Explanation (defaults to the line's own reason or the
                configured default)
            quantity: Quantity to queue (defaults to the line's outstanding
                quantity)
            priority: Priority tier (defaults to the configured priority)
            item_id: Explicit id, used to make repeated enqueues idempotent

        Returns:
            The queued item

        Raises:
            OrderValidationError: If there is nothing to queue
        """
        quantity = quantity if quantity is not None else outstanding_quantity(item)
        if quantity <= 0:
            raise OrderValidationError(
                f"Nothing outstanding for {item.product_name} on order "
                f"{origin_order.order_number}",
                order_id=origin_order.id,
                item_id=item.id,
            )

        backorder_item = self._new_item(
            item,
            origin_order,
            reporting_actor,
            quantity=quantity,
            reason=reason or shortfall_reason(item, self.settings.backorder_default_reason),
            priority=priority,
            item_id=item_id,
        )
        await self._append(origin_order.from_site_id, origin_order.from_site_name, [backorder_item])
        return backorder_item

    async def enqueue_outstanding(
        self, order: Order, reporting_actor: Actor
    ) -> list[BackorderItem]:
        """
        Queue every line of a received order that was not fully delivered.

        Item ids derive from the order and line ids, so calling this again
        for the same order queues nothing new.
        """
        items: list[BackorderItem] = []
        for line in order.items:
            quantity = outstanding_quantity(line)
            if quantity <= 0:
                continue
            items.append(
                self._new_item(
                    line,
                    order,
                    reporting_actor,
                    quantity=quantity,
                    reason=shortfall_reason(line, self.settings.backorder_default_reason),
                    item_id=shortfall_item_id_for(order.id, line.id),
                )
            )

        if items:
            await self._append(order.from_site_id, order.from_site_name, items)
        return items

    def _new_item(
        self,
        line: OrderItem,
        order: Order,
        actor: Actor,
        quantity: Decimal,
        reason: str,
        priority: Optional[BackorderPriority] = None,
        item_id: Optional[str] = None,
    ) -> BackorderItem:
        fields = {"id": item_id} if item_id else {}
        return BackorderItem(
            product_id=line.product_id,
            product_name=line.product_name,
            quantity=quantity,
            unit=line.unit,
            reason=reason,
            origin_order_id=order.id,
            origin_order_number=order.order_number,
            origin_item_id=line.id,
            reported_by=actor.actor_id,
            reported_by_name=actor.name,
            priority=priority or BackorderPriority(self.settings.backorder_default_priority),
            **fields,
        )

    async def _append(
        self,
        site_id: str,
        site_name: Optional[str],
        new_items: list[BackorderItem],
    ) -> BackorderQueue:
        """Add items to the site's active queue, opening a queue if needed."""
        queues = await self.list_queues(site_id)
        known = {item.id for queue in queues for item in queue.items}
        fresh = [item for item in new_items if item.id not in known]
        if not fresh:
            logger.debug("Backorder items already queued", site_id=site_id)
            active = [q for q in queues if q.status.is_active()]
            return active[0] if active else queues[-1]

        now = utc_now()

        def add(document: dict) -> Optional[dict]:
            queue = BackorderQueue.model_validate(document)
            if not queue.status.is_active():
                raise _QueueClosed(queue.id)
            present = {item.id for item in queue.items}
            additions = [item for item in fresh if item.id not in present]
            if not additions:
                return None
            queue.items.extend(additions)
            queue.refresh_status()
            queue.updated_at = now
            return queue.model_dump(mode="json")

        active = next((q for q in queues if q.status.is_active()), None)
        if active is not None:
            try:
                stored = await self.store.update(Collection.BACKORDER_QUEUES, active.id, add)
                return await self._appended(BackorderQueue.model_validate(stored), fresh)
            except _QueueClosed:
                logger.info("Backorder queue closed during enqueue", queue_id=active.id)

        queue = BackorderQueue(
            id=queue_id_for(site_id, len(queues)),
            site_id=site_id,
            site_name=site_name,
            auto_merge_enabled=self.settings.backorder_auto_merge_enabled,
            items=fresh,
            created_at=now,
            updated_at=now,
        )
        if await self.store.create(
            Collection.BACKORDER_QUEUES, queue.id, queue.model_dump(mode="json")
        ):
            logger.info("Backorder queue opened", queue_id=queue.id, site_id=site_id)
            return await self._appended(queue, fresh)

        stored = await self.store.update(Collection.BACKORDER_QUEUES, queue.id, add)
        return await self._appended(BackorderQueue.model_validate(stored), fresh)

    async def _appended(
        self, queue: BackorderQueue, items: list[BackorderItem]
    ) -> BackorderQueue:
        logger.info(
            "Backorder items queued",
            queue_id=queue.id,
            site_id=queue.site_id,
            item_ids=[item.id for item in items],
        )
        await self._announce(queue, "backorder.enqueued")
        return queue

    # Merge

    async def auto_merge(self, site_id: str, actor: Optional[Actor] = None) -> MergeOutcome:
        """
        Merge every eligible queued item into the site's oldest draft order.

        Eligible items are open, not urgent and older than the configured
        number of days. Missing prerequisites (no queue, auto-merge off, no
        draft, nothing eligible) are reported in ``skipped_reason``.
        """
        if actor is not None:
            self._ensure_site_staff(actor, site_id)
        queue = await self.get_active_queue(site_id)
        if queue is None:
            return MergeOutcome(skipped_reason="No active backorder queue")
        if not queue.auto_merge_enabled:
            return MergeOutcome(queue_id=queue.id, skipped_reason="Auto-merge is disabled")

        drafts = await self.orders.find_drafts(site_id)
        if not drafts:
            logger.info("Auto-merge skipped, no draft order", site_id=site_id, queue_id=queue.id)
            return MergeOutcome(
                queue_id=queue.id, skipped_reason="No draft order to merge into"
            )

        cutoff = utc_now() - timedelta(days=self.settings.backorder_merge_after_days)
        eligible = [
            item
            for item in queue.open_items()
            if item.priority != BackorderPriority.URGENT and item.reported_at <= cutoff
        ]
        if not eligible:
            return MergeOutcome(
                queue_id=queue.id,
                target_order_id=drafts[0].id,
                skipped_reason="No eligible items",
            )

        try:
            return await self._merge(queue, drafts[0], eligible)
        except MissingPrerequisite as e:
            return MergeOutcome(
                queue_id=queue.id, target_order_id=drafts[0].id, skipped_reason=e.message
            )

    async def run_auto_merge_sweep(self) -> list[MergeOutcome]:
        """Run ``auto_merge`` for every site with an active queue."""
        outcomes = [
            await self.auto_merge(site_id)
            for site_id in await self.sites_with_active_queues()
        ]
        logger.info(
            "Auto-merge sweep finished",
            sites=len(outcomes),
            merged=sum(len(o.merged_item_ids) for o in outcomes),
        )
        return outcomes

    async def merge_items(
        self,
        queue_id: str,
        target_order_id: str,
        actor: Actor,
        item_ids: Optional[list[str]] = None,
    ) -> MergeOutcome:
        """
        Merge selected (default: all open) queued items into a draft order.

        Raises:
            NotFound: If the queue or the order does not exist
            NotAuthorized: If the actor does not belong to the queue's site
            MissingPrerequisite: If the order is not a draft
            OrderValidationError: If the order belongs to another site or an
                item id is unknown or no longer open
        """
        queue = await self.get_queue(queue_id)
        self._ensure_site_staff(actor, queue.site_id)
        order = await self.orders.get(target_order_id)

        if order.from_site_id != queue.site_id:
            raise OrderValidationError(
                f"Order {order.order_number} was not requested by site {queue.site_id}",
                order_id=order.id,
                queue_id=queue.id,
            )
        if order.status != OrderStatus.DRAFT:
            raise MissingPrerequisite(
                f"Order {order.order_number} is not a draft (status {order.status.value})",
                order_id=order.id,
                status=order.status.value,
            )

        if item_ids is None:
            selected = queue.open_items()
        else:
            selected = []
            for item_id in item_ids:
                item = queue.find_item(item_id)
                if item is None or not item.status.is_open():
                    raise OrderValidationError(
                        f"Backorder item {item_id} is not open in queue {queue.id}",
                        queue_id=queue.id,
                        item_id=item_id,
                    )
                selected.append(item)

        if not selected:
            return MergeOutcome(
                queue_id=queue.id, target_order_id=order.id, skipped_reason="No open items"
            )
        return await self._merge(queue, order, selected)

    async def _merge(
        self, queue: BackorderQueue, order: Order, items: list[BackorderItem]
    ) -> MergeOutcome:
        """
        Add queued items to a draft order, then mark them merged.

        The order is written first; its lines carry ids derived from the
        queued items, so a repeated merge never adds a line twice.
        """
        now = utc_now()

        def add_lines(stored: Order) -> Optional[Order]:
            if stored.status != OrderStatus.DRAFT:
                raise MissingPrerequisite(
                    f"Order {stored.order_number} is no longer a draft",
                    order_id=stored.id,
                    status=stored.status.value,
                )
            present = {line.id for line in stored.items}
            added = [
                self._order_line(item)
                for item in items
                if order_line_id_for(item.id) not in present
            ]
            if not added:
                return None
            stored.items.extend(added)
            stored.notes = self._merge_note(stored.notes, len(added))
            stored.updated_at = now
            return stored

        await self.orders.mutate(order.id, add_lines)
        merged_ids = await self._mark_merged(queue.id, [item.id for item in items], order.id, now)

        logger.info(
            "Backorder items merged",
            queue_id=queue.id,
            order_id=order.id,
            merged=len(merged_ids),
        )
        await publish_quietly(
            self.publisher,
            ChangeEvent(
                collection=Collection.ORDERS.value,
                document_id=order.id,
                event="order.backorders_merged",
                status=OrderStatus.DRAFT.value,
                site_ids=[order.from_site_id, order.to_site_id],
            ),
        )
        return MergeOutcome(
            queue_id=queue.id, target_order_id=order.id, merged_item_ids=merged_ids
        )

    async def _mark_merged(
        self, queue_id: str, item_ids: list[str], order_id: str, at: datetime
    ) -> list[str]:
        merged: list[str] = []

        def mark(queue: BackorderQueue) -> bool:
            for item in queue.items:
                if item.id in item_ids and item.status.is_open():
                    item.status = BackorderItemStatus.MERGED
                    item.merged_into_order_id = order_id
                    item.merged_at = at
                    merged.append(item.id)
            return bool(merged)

        await self._update_queue(queue_id, mark, "backorder.merged")
        return merged

    @staticmethod
    def _order_line(item: BackorderItem) -> OrderItem:
        return OrderItem(
            id=order_line_id_for(item.id),
            product_id=item.product_id,
            product_name=item.product_name,
            quantity=item.quantity,
            unit=item.unit,
        )

    @staticmethod
    def _merge_note(notes: Optional[str], count: int) -> str:
        line = f"{MERGE_NOTE_PREFIX} Added {count} item(s) from the backorder queue"
        return f"{notes}\n{line}" if notes else line

    async def promote_urgent(self, site_id: str, actor: Actor) -> Order:
        """
        Create a draft order holding the site's urgent queued items.

        Only urgent items whose origin order was prepared by the same site as
        the first urgent item are promoted together; the rest stay queued.

        Raises:
            NotAuthorized: If the actor does not belong to the site
            MissingPrerequisite: If there are no urgent items or their origin
                order cannot be found
        """
        self._ensure_site_staff(actor, site_id)
        queue = await self.get_active_queue(site_id)
        urgent = [
            item
            for item in (queue.open_items() if queue else [])
            if item.priority == BackorderPriority.URGENT
        ]
        if not urgent:
            raise MissingPrerequisite(
                f"No urgent backorder items for site {site_id}",
                site_id=site_id,
            )

        origins: dict[str, Order] = {}
        for item in urgent:
            if item.origin_order_id not in origins:
                origin = await self.orders.find(item.origin_order_id)
                if origin is not None:
                    origins[item.origin_order_id] = origin
        first_origin = origins.get(urgent[0].origin_order_id)
        if first_origin is None:
            raise MissingPrerequisite(
                f"Origin order {urgent[0].origin_order_id} not found",
                site_id=site_id,
                order_id=urgent[0].origin_order_id,
            )
        promoted = [
            item
            for item in urgent
            if item.origin_order_id in origins
            and origins[item.origin_order_id].to_site_id == first_origin.to_site_id
        ]

        order = Order(
            id=promotion_order_id_for(item.id for item in promoted),
            order_number=generate_order_number("REP"),
            from_site_id=site_id,
            from_site_name=queue.site_name or first_origin.from_site_name,
            to_site_id=first_origin.to_site_id,
            to_site_name=first_origin.to_site_name,
            items=[self._order_line(item) for item in promoted],
            created_by=actor.actor_id,
            created_by_name=actor.name,
            parent_order_id=first_origin.id,
            notes=f"{MERGE_NOTE_PREFIX} Urgent replenishment of order {first_origin.order_number}",
        )
        if not await self.orders.create(order):
            order = await self.orders.get(order.id)

        await self._mark_merged(queue.id, [item.id for item in promoted], order.id, utc_now())
        logger.info(
            "Urgent backorder items promoted",
            site_id=site_id,
            order_id=order.id,
            order_number=order.order_number,
            items=len(promoted),
        )
        await publish_quietly(
            self.publisher,
            ChangeEvent(
                collection=Collection.ORDERS.value,
                document_id=order.id,
                event="order.created",
                status=order.status.value,
                site_ids=[order.from_site_id, order.to_site_id],
            ),
        )
        return order

    # Item maintenance

    async def set_priority(
        self, queue_id: str, item_id: str, priority: BackorderPriority, actor: Actor
    ) -> BackorderQueue:
        queue = await self.get_queue(queue_id)
        self._ensure_site_staff(actor, queue.site_id)

        def change(queue: BackorderQueue) -> bool:
            item = self._open_item(queue, item_id, target="reprioritized")
            if item.priority == priority:
                return False
            item.priority = priority
            return True

        return await self._update_queue(queue_id, change, "backorder.reprioritized")

    async def complete_item(self, queue_id: str, item_id: str, actor: Actor) -> BackorderQueue:
        """Mark a queued item as replenished outside of any order."""
        return await self._resolve_item(queue_id, item_id, actor, BackorderItemStatus.COMPLETED)

    async def cancel_item(self, queue_id: str, item_id: str, actor: Actor) -> BackorderQueue:
        """Drop a queued item that is no longer needed."""
        return await self._resolve_item(queue_id, item_id, actor, BackorderItemStatus.CANCELLED)

    async def set_auto_merge(self, queue_id: str, enabled: bool, actor: Actor) -> BackorderQueue:
        queue = await self.get_queue(queue_id)
        self._ensure_site_staff(actor, queue.site_id)

        def toggle(queue: BackorderQueue) -> bool:
            if queue.auto_merge_enabled == enabled:
                return False
            queue.auto_merge_enabled = enabled
            return True

        return await self._update_queue(queue_id, toggle, "backorder.auto_merge_changed")

    async def _resolve_item(
        self,
        queue_id: str,
        item_id: str,
        actor: Actor,
        status: BackorderItemStatus,
    ) -> BackorderQueue:
        queue = await self.get_queue(queue_id)
        self._ensure_site_staff(actor, queue.site_id)
        now = utc_now()

        def resolve(queue: BackorderQueue) -> bool:
            item = self._open_item(queue, item_id, target=status.value)
            item.status = status
            item.resolved_by = actor.actor_id
            item.resolved_by_name = actor.name
            item.resolved_at = now
            return True

        return await self._update_queue(queue_id, resolve, f"backorder.{status.value}")

    @staticmethod
    def _open_item(queue: BackorderQueue, item_id: str, target: str) -> BackorderItem:
        item = queue.find_item(item_id)
        if item is None:
            raise NotFound(
                f"Backorder item {item_id} not found in queue {queue.id}",
                collection=Collection.BACKORDER_QUEUES.value,
                document_id=queue.id,
                item_id=item_id,
            )
        if not item.status.is_open():
            raise InvalidTransition(
                f"Backorder item {item_id} is already {item.status.value}",
                current_status=item.status,
                target_status=target,
                allowed=[],
                queue_id=queue.id,
            )
        return item

    async def _update_queue(
        self,
        queue_id: str,
        change: Callable[[BackorderQueue], bool],
        event: str,
    ) -> BackorderQueue:
        """Apply ``change`` atomically; it returns False when nothing changed."""
        now = utc_now()

        def apply(document: dict) -> Optional[dict]:
            queue = BackorderQueue.model_validate(document)
            if not change(queue):
                return None
            queue.refresh_status()
            queue.updated_at = now
            return queue.model_dump(mode="json")

        stored = BackorderQueue.model_validate(
            await self.store.update(Collection.BACKORDER_QUEUES, queue_id, apply)
        )
        logger.info(
            "Backorder queue updated",
            queue_id=queue_id,
            change=event,
            status=stored.status.value,
        )
        await self._announce(stored, event)
        return stored

    async def _announce(self, queue: BackorderQueue, event: str) -> None:
        await publish_quietly(
            self.publisher,
            ChangeEvent(
                collection=Collection.BACKORDER_QUEUES.value,
                document_id=queue.id,
                event=event,
                status=queue.status.value,
                site_ids=[queue.site_id],
            ),
        )

    @staticmethod
    def _ensure_site_staff(actor: Actor, site_id: str) -> None:
        if not (actor.role.is_site_staff and actor.belongs_to(site_id)):
            raise NotAuthorized(
                f"Actor {actor.actor_id} does not belong to site {site_id}",
                actor_id=actor.actor_id,
                site_id=site_id,
            )
