"""
Order management API endpoints.

This module implements the FastAPI router for the stock transfer order
lifecycle: creation, item edits, every stage action, cancellation and the
audit and reconciliation reads. Domain errors are translated to HTTP
responses by the application's exception handlers.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Query, status

from stock_transfer.api.deps import CurrentActor, OrderServiceDep
from stock_transfer.core.logging import get_logger
from stock_transfer.schemas.audit import RemitAudit
from stock_transfer.schemas.orders import (
    AssemblyRequest,
    CancelRequest,
    Order,
    OrderCreateRequest,
    OrderItemsUpdateRequest,
    ReceiveRequest,
    ReceiveResponse,
    TransitionResponse,
)
from stock_transfer.schemas.reconciliation import ReconciliationDocument
from stock_transfer.services.orders.enums import OrderStatus
from stock_transfer.services.orders.state_machine import TransitionResult

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        order=result.order,
        outcome=result.outcome.value,
        previous_status=result.previous_status,
    )


@router.post(
    "",
    response_model=Order,
    status_code=status.HTTP_201_CREATED,
    summary="Create draft order",
)
async def create_order(
    request: OrderCreateRequest,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> Order:
    """
    Create a draft order requested by the actor's site.

    Args:
        request: Preparing site, item lines and notes
        actor: Identity placing the order
        service: Order service

    Returns:
        Order: Created draft order
    """
    logger.info(
        "Creating order",
        actor_id=actor.actor_id,
        to_site_id=request.to_site_id,
        item_count=len(request.items),
    )
    return await service.create_order(request, actor)


@router.get(
    "",
    response_model=list[Order],
    summary="List orders",
)
async def list_orders(
    actor: CurrentActor,
    service: OrderServiceDep,
    site_id: Optional[str] = Query(None, description="Site involved in the order (defaults to the actor's site)"),
    side: Literal["any", "requester", "preparer"] = Query("any", description="Which side the site is on"),
    status_filter: Optional[OrderStatus] = Query(None, alias="status", description="Filter by order status"),
) -> list[Order]:
    """List orders of a site, oldest first."""
    return await service.list_orders(
        site_id=site_id or actor.site_id,
        side=side,
        status=status_filter,
    )


@router.get("/{order_id}", response_model=Order, summary="Get order")
async def get_order(order_id: str, actor: CurrentActor, service: OrderServiceDep) -> Order:
    return await service.get_order(order_id)


@router.put("/{order_id}/items", response_model=Order, summary="Replace order items")
async def update_items(
    order_id: str,
    request: OrderItemsUpdateRequest,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> Order:
    """Replace the lines of an order not yet accepted by the preparer."""
    return await service.update_items(order_id, request, actor)


@router.post("/{order_id}/send", response_model=TransitionResponse, summary="Send order")
async def send_order(
    order_id: str, actor: CurrentActor, service: OrderServiceDep
) -> TransitionResponse:
    return _transition_response(await service.send(order_id, actor))


@router.post(
    "/{order_id}/accept",
    response_model=TransitionResponse,
    summary="Accept order and start assembling",
)
async def accept_order(
    order_id: str, actor: CurrentActor, service: OrderServiceDep
) -> TransitionResponse:
    return _transition_response(await service.accept(order_id, actor))


@router.put("/{order_id}/assembly", response_model=Order, summary="Record assembly")
async def record_assembly(
    order_id: str,
    request: AssemblyRequest,
    actor: CurrentActor,
    service: OrderServiceDep,
) -> Order:
    """Record assembled quantities and not-available reasons."""
    return await service.record_assembly(order_id, request, actor)


@router.post(
    "/{order_id}/ready",
    response_model=TransitionResponse,
    summary="Mark order ready for pick-up",
)
async def mark_ready(
    order_id: str, actor: CurrentActor, service: OrderServiceDep
) -> TransitionResponse:
    return _transition_response(await service.mark_ready(order_id, actor))


@router.post(
    "/{order_id}/pickup",
    response_model=TransitionResponse,
    summary="Pick up order for delivery",
)
async def pick_up_order(
    order_id: str, actor: CurrentActor, service: OrderServiceDep
) -> TransitionResponse:
    return _transition_response(await service.pick_up(order_id, actor))


@router.post(
    "/{order_id}/receive",
    response_model=ReceiveResponse,
    summary="Receive order",
)
async def receive_order(
    order_id: str,
    actor: CurrentActor,
    service: OrderServiceDep,
    request: Optional[ReceiveRequest] = None,
) -> ReceiveResponse:
    """
    Receive an in-transit order.

    Generates the reconciliation document and queues outstanding quantities
    for the requesting site.
    """
    result = await service.receive(order_id, actor, request)
    return ReceiveResponse(
        order=result.order,
        outcome=result.outcome.value,
        reconciliation_document_id=result.reconciliation_document_id,
        backorder_item_ids=[item.id for item in result.backorder_items],
    )


@router.post(
    "/{order_id}/cancel",
    response_model=TransitionResponse,
    summary="Cancel order",
)
async def cancel_order(
    order_id: str,
    actor: CurrentActor,
    service: OrderServiceDep,
    request: Optional[CancelRequest] = None,
) -> TransitionResponse:
    reason = request.reason if request is not None else None
    return _transition_response(await service.cancel(order_id, actor, reason))


@router.get("/{order_id}/audit", response_model=RemitAudit, summary="Get remit audit")
async def get_audit(
    order_id: str, actor: CurrentActor, service: OrderServiceDep
) -> RemitAudit:
    """Remit audit of the order, rebuilt from the order when missing or stale."""
    return await service.get_audit(order_id)


@router.get(
    "/{order_id}/reconciliation",
    response_model=ReconciliationDocument,
    summary="Get reconciliation document",
)
async def get_reconciliation(
    order_id: str, actor: CurrentActor, service: OrderServiceDep
) -> ReconciliationDocument:
    return await service.get_reconciliation(order_id)


@router.post(
    "/{order_id}/reconciliation",
    status_code=status.HTTP_201_CREATED,
    summary="Generate reconciliation document",
)
async def generate_reconciliation(
    order_id: str, actor: CurrentActor, service: OrderServiceDep
) -> dict[str, str]:
    """Generate the reconciliation document of a received order if missing."""
    document_id = await service.generate_reconciliation(order_id, actor)
    return {"document_id": document_id}
