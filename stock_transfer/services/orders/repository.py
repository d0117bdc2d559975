"""
Order repository over the document store.

Converts between ``Order`` models and stored JSON documents and funnels
every write through the store's atomic update so that callers only ever
mutate the freshest stored copy.
"""

from typing import Callable, Optional

from pydantic import ValidationError

from stock_transfer.core.exceptions import NotFound, OrderValidationError
from stock_transfer.core.logging import get_logger
from stock_transfer.database.store import Collection, DocumentStore
from stock_transfer.schemas.orders import Order
from stock_transfer.services.orders.enums import OrderStatus

logger = get_logger(__name__)

OrderMutator = Callable[[Order], Optional[Order]]


class OrderRepository:
    """Data access for order documents."""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _load(document: dict) -> Order:
        return Order.model_validate(document)

    @staticmethod
    def _dump(order: Order) -> dict:
        return order.model_dump(mode="json")

    async def find(self, order_id: str) -> Optional[Order]:
        document = await self.store.get(Collection.ORDERS, order_id)
        return self._load(document) if document is not None else None

    async def get(self, order_id: str) -> Order:
        """
        Get order by id.

        Raises:
            NotFound: If the order does not exist
        """
        order = await self.find(order_id)
        if order is None:
            logger.warning("Order not found", order_id=order_id)
            raise NotFound(
                f"Order {order_id} not found",
                collection=Collection.ORDERS.value,
                document_id=order_id,
            )
        return order

    async def create(self, order: Order) -> bool:
        """
        Persist a new order.

        Returns:
            True if stored, False if an order with the same id already exists
        """
        created = await self.store.create(Collection.ORDERS, order.id, self._dump(order))
        logger.info(
            "Order stored" if created else "Order already exists",
            order_id=order.id,
            order_number=order.order_number,
            status=order.status.value,
        )
        return created

    async def mutate(self, order_id: str, mutator: OrderMutator) -> Order:
        """
        Atomically apply ``mutator`` to the stored order.

        The mutator receives the freshly stored order and returns the
        replacement, or None to leave the document untouched. Exceptions it
        raises abort the write.

        Returns:
            The order as stored after the update

        Raises:
            NotFound: If the order does not exist
            OrderValidationError: If the mutated order is invalid
        """

        def apply(document: dict) -> Optional[dict]:
            try:
                updated = mutator(self._load(document))
                if updated is None:
                    return None
                return self._dump(Order.model_validate(updated.model_dump()))
            except ValidationError as e:
                raise OrderValidationError(
                    "Order update produced an invalid order",
                    order_id=order_id,
                    errors=e.errors(include_url=False, include_context=False),
                ) from e

        stored = await self.store.update(Collection.ORDERS, order_id, apply)
        return self._load(stored)

    async def list_orders(
        self,
        site_id: Optional[str] = None,
        side: str = "any",
        status: Optional[OrderStatus] = None,
    ) -> list[Order]:
        """
        List orders, oldest first.

        Args:
            site_id: Restrict to orders involving this site
            side: ``requester``, ``preparer`` or ``any`` (either side)
            status: Restrict to a status
        """
        filters = {"status": status} if status is not None else {}
        if site_id is None:
            documents = await self.store.query(Collection.ORDERS, **filters)
        elif side == "requester":
            documents = await self.store.query(
                Collection.ORDERS, from_site_id=site_id, **filters
            )
        elif side == "preparer":
            documents = await self.store.query(
                Collection.ORDERS, to_site_id=site_id, **filters
            )
        else:
            by_id = {
                doc["id"]: doc
                for doc in await self.store.query(
                    Collection.ORDERS, from_site_id=site_id, **filters
                )
            }
            for doc in await self.store.query(
                Collection.ORDERS, to_site_id=site_id, **filters
            ):
                by_id.setdefault(doc["id"], doc)
            documents = list(by_id.values())

        orders = [self._load(doc) for doc in documents]
        return sorted(orders, key=lambda o: (o.created_at, o.id))

    async def find_drafts(self, site_id: str) -> list[Order]:
        """Draft orders requested by ``site_id``, oldest first."""
        return await self.list_orders(
            site_id=site_id, side="requester", status=OrderStatus.DRAFT
        )
