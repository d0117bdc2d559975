"""
Backorder queue API endpoints.

Exposes the backorder queues of the requesting sites: reading queues and
pending quantities, reporting shortfalls by hand, merging queued items into
draft orders, promoting urgent items and maintaining single items.
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Query, status

from stock_transfer.api.deps import BackorderManagerDep, CurrentActor, OrderServiceDep
from stock_transfer.core.exceptions import OrderValidationError
from stock_transfer.core.logging import get_logger
from stock_transfer.schemas.backorders import (
    AutoMergeToggleRequest,
    BackorderItem,
    BackorderQueue,
    EnqueueRequest,
    MergeOutcome,
    MergeRequest,
    PriorityUpdateRequest,
)
from stock_transfer.schemas.orders import Order

logger = get_logger(__name__)

router = APIRouter(prefix="/backorders", tags=["Backorders"])


def _site_or_actor(site_id: Optional[str], actor_site_id: Optional[str]) -> str:
    resolved = site_id or actor_site_id
    if not resolved:
        raise OrderValidationError("A site id is required")
    return resolved


@router.get("/queues", response_model=list[BackorderQueue], summary="List backorder queues")
async def list_queues(
    actor: CurrentActor,
    manager: BackorderManagerDep,
    site_id: Optional[str] = Query(None, description="Requesting site (defaults to the actor's site)"),
    active_only: bool = Query(False, description="Only pending or in-queue queues"),
) -> list[BackorderQueue]:
    return await manager.list_queues(
        _site_or_actor(site_id, actor.site_id), active_only=active_only
    )


@router.get(
    "/queues/active",
    response_model=Optional[BackorderQueue],
    summary="Get the active queue of a site",
)
async def get_active_queue(
    actor: CurrentActor,
    manager: BackorderManagerDep,
    site_id: Optional[str] = Query(None),
) -> Optional[BackorderQueue]:
    return await manager.get_active_queue(_site_or_actor(site_id, actor.site_id))


@router.get("/queues/{queue_id}", response_model=BackorderQueue, summary="Get backorder queue")
async def get_queue(
    queue_id: str, actor: CurrentActor, manager: BackorderManagerDep
) -> BackorderQueue:
    return await manager.get_queue(queue_id)


@router.get(
    "/pending",
    response_model=dict[str, Decimal],
    summary="Open quantity per product",
)
async def pending_quantities(
    actor: CurrentActor,
    manager: BackorderManagerDep,
    site_id: Optional[str] = Query(None),
) -> dict[str, Decimal]:
    """Open backorder quantity per product, used to pre-fill new orders."""
    return await manager.pending_quantities(_site_or_actor(site_id, actor.site_id))


@router.post(
    "/items",
    response_model=BackorderItem,
    status_code=status.HTTP_201_CREATED,
    summary="Report a shortfall",
)
async def report_shortfall(
    request: EnqueueRequest,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> BackorderItem:
    logger.info(
        "Reporting shortfall",
        actor_id=actor.actor_id,
        order_id=request.origin_order_id,
        item_id=request.item_id,
    )
    return await service.report_shortfall(request, actor)


@router.post(
    "/queues/{queue_id}/merge",
    response_model=MergeOutcome,
    summary="Merge queued items into a draft order",
)
async def merge_items(
    queue_id: str,
    request: MergeRequest,
    actor: CurrentActor,
    manager: BackorderManagerDep,
) -> MergeOutcome:
    return await manager.merge_items(
        queue_id, request.target_order_id, actor, item_ids=request.item_ids
    )


@router.post(
    "/sites/{site_id}/auto-merge",
    response_model=MergeOutcome,
    summary="Run auto-merge for a site",
)
async def auto_merge(
    site_id: str, actor: CurrentActor, manager: BackorderManagerDep
) -> MergeOutcome:
    """Merge eligible items into the site's oldest draft; skips are reported, not raised."""
    return await manager.auto_merge(site_id, actor=actor)


@router.post(
    "/sites/{site_id}/promote-urgent",
    response_model=Order,
    status_code=status.HTTP_201_CREATED,
    summary="Promote urgent items to a new draft order",
)
async def promote_urgent(
    site_id: str, actor: CurrentActor, manager: BackorderManagerDep
) -> Order:
    return await manager.promote_urgent(site_id, actor)


@router.put(
    "/queues/{queue_id}/items/{item_id}/priority",
    response_model=BackorderQueue,
    summary="Change item priority",
)
async def set_priority(
    queue_id: str,
    item_id: str,
    request: PriorityUpdateRequest,
    actor: CurrentActor,
    manager: BackorderManagerDep,
) -> BackorderQueue:
    return await manager.set_priority(queue_id, item_id, request.priority, actor)


@router.post(
    "/queues/{queue_id}/items/{item_id}/complete",
    response_model=BackorderQueue,
    summary="Complete a queued item",
)
async def complete_item(
    queue_id: str, item_id: str, actor: CurrentActor, manager: BackorderManagerDep
) -> BackorderQueue:
    return await manager.complete_item(queue_id, item_id, actor)


@router.post(
    "/queues/{queue_id}/items/{item_id}/cancel",
    response_model=BackorderQueue,
    summary="Cancel a queued item",
)
async def cancel_item(
    queue_id: str, item_id: str, actor: CurrentActor, manager: BackorderManagerDep
) -> BackorderQueue:
    return await manager.cancel_item(queue_id, item_id, actor)


@router.put(
    "/queues/{queue_id}/auto-merge",
    response_model=BackorderQueue,
    summary="Enable or disable auto-merge",
)
async def set_auto_merge(
    queue_id: str,
    request: AutoMergeToggleRequest,
    actor: CurrentActor,
    manager: BackorderManagerDep,
) -> BackorderQueue:
    return await manager.set_auto_merge(queue_id, request.enabled, actor)
