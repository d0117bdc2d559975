"""
Pytest configuration and shared test fixtures.

Provides an in-memory document store, a recording change publisher, test
settings, the actors of a typical transfer (requester, preparer, courier)
and order service helpers that walk an order through its lifecycle.
"""

from decimal import Decimal
from typing import Callable

import pytest

from stock_transfer.core.config import Settings
from stock_transfer.database.store import InMemoryDocumentStore
from stock_transfer.schemas.orders import (
    AssemblyLine,
    AssemblyRequest,
    Order,
    OrderCreateRequest,
    OrderItemInput,
)
from stock_transfer.schemas.signatures import Actor
from stock_transfer.services.notifications.publisher import InMemoryChangePublisher
from stock_transfer.services.orders.enums import ActorRole
from stock_transfer.services.orders.service import OrderService

REQUESTER_SITE = "branch-north"
PREPARER_SITE = "factory-central"


@pytest.fixture
def settings() -> Settings:
    """
    Settings for the test environment.

    Uses the in-memory backend and disables the background auto-merge loop.
    """
    return Settings(
        environment="test",
        storage_backend="memory",
        backorder_auto_merge_interval_seconds=0,
        backorder_merge_after_days=0,
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Fresh in-memory document store."""
    return InMemoryDocumentStore()


@pytest.fixture
def publisher() -> InMemoryChangePublisher:
    """Change publisher that records every event."""
    return InMemoryChangePublisher()


@pytest.fixture
def service(
    store: InMemoryDocumentStore,
    publisher: InMemoryChangePublisher,
    settings: Settings,
) -> OrderService:
    """Order service wired to the in-memory store."""
    return OrderService(store, publisher, settings)


@pytest.fixture
def requester() -> Actor:
    """Staff member of the requesting branch."""
    return Actor(
        actor_id="user-branch-1",
        name="Ana Branch",
        role=ActorRole.BRANCH,
        site_id=REQUESTER_SITE,
        position_title="Store manager",
    )


@pytest.fixture
def second_requester() -> Actor:
    return Actor(
        actor_id="user-branch-2",
        name="Bruno Branch",
        role=ActorRole.BRANCH,
        site_id=REQUESTER_SITE,
    )


@pytest.fixture
def preparer() -> Actor:
    """Staff member of the preparing factory."""
    return Actor(
        actor_id="user-factory-1",
        name="Carla Factory",
        role=ActorRole.FACTORY,
        site_id=PREPARER_SITE,
        position_title="Warehouse lead",
        signature_image="data:image/png;base64,AAAA",
    )


@pytest.fixture
def second_preparer() -> Actor:
    return Actor(
        actor_id="user-factory-2",
        name="Dario Factory",
        role=ActorRole.FACTORY,
        site_id=PREPARER_SITE,
    )


@pytest.fixture
def courier() -> Actor:
    """Delivery agent attached to the preparing site."""
    return Actor(
        actor_id="user-courier-1",
        name="Eva Courier",
        role=ActorRole.DELIVERY,
        site_id=PREPARER_SITE,
    )


@pytest.fixture
def outsider() -> Actor:
    """Staff member of an unrelated site."""
    return Actor(
        actor_id="user-other-1",
        name="Fede Other",
        role=ActorRole.BRANCH,
        site_id="branch-south",
    )


@pytest.fixture
def create_request() -> OrderCreateRequest:
    """Order for 10 widgets and 5 gadgets."""
    return OrderCreateRequest(
        to_site_id=PREPARER_SITE,
        to_site_name="Central Factory",
        from_site_name="North Branch",
        items=[
            OrderItemInput(product_id="widget", product_name="Widget", quantity=Decimal("10")),
            OrderItemInput(product_id="gadget", product_name="Gadget", quantity=Decimal("5")),
        ],
        notes="Weekly replenishment",
    )


@pytest.fixture
def draft_order(service: OrderService, create_request: OrderCreateRequest, requester: Actor):
    """Factory creating a draft order through the service."""

    async def _create() -> Order:
        return await service.create_order(create_request, requester)

    return _create


@pytest.fixture
def in_transit_order(
    service: OrderService,
    draft_order: Callable,
    requester: Actor,
    preparer: Actor,
    courier: Actor,
):
    """
    Factory walking an order to ``in_transit``.

    Widgets are fully assembled (10 of 10) and gadgets partially (3 of 5).
    """

    async def _create() -> Order:
        order = await draft_order()
        await service.send(order.id, requester)
        await service.accept(order.id, preparer)
        widget, gadget = order.items
        await service.record_assembly(
            order.id,
            AssemblyRequest(
                lines=[
                    AssemblyLine(item_id=widget.id, assembled_quantity=Decimal("10")),
                    AssemblyLine(item_id=gadget.id, assembled_quantity=Decimal("3")),
                ],
                assembly_notes="Gadgets short on stock",
            ),
            preparer,
        )
        await service.mark_ready(order.id, preparer)
        result = await service.pick_up(order.id, courier)
        return result.order

    return _create
