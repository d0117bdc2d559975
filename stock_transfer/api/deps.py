"""
FastAPI dependencies for the acting identity and the shared services.

Authentication is handled upstream: the gateway forwards the identity it
resolved in ``X-Actor-*`` headers and the core trusts it as given. Services
are built once in the application lifespan and read from ``app.state``.
"""

from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from stock_transfer.core.logging import get_logger, set_actor_id
from stock_transfer.schemas.signatures import Actor
from stock_transfer.services.backorders.service import BackorderQueueManager
from stock_transfer.services.orders.service import OrderService

logger = get_logger(__name__)


async def get_current_actor(
    x_actor_id: Annotated[Optional[str], Header()] = None,
    x_actor_name: Annotated[Optional[str], Header()] = None,
    x_actor_role: Annotated[Optional[str], Header()] = None,
    x_site_id: Annotated[Optional[str], Header()] = None,
    x_actor_position: Annotated[Optional[str], Header()] = None,
) -> Actor:
    """
    Build the acting identity from the forwarded headers.

    Returns:
        Actor: Identity performing the request

    Raises:
        HTTPException: 401 if the identity headers are missing or invalid
    """
    if not x_actor_id or not x_actor_role:
        logger.warning("Request without actor identity")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing actor identity headers",
        )

    try:
        actor = Actor(
            actor_id=x_actor_id,
            name=x_actor_name or x_actor_id,
            role=x_actor_role.lower(),
            site_id=x_site_id or None,
            position_title=x_actor_position,
        )
    except ValidationError as e:
        logger.warning(
            "Invalid actor identity headers",
            actor_id=x_actor_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid actor identity headers",
        ) from e

    set_actor_id(actor.actor_id)
    return actor


def get_order_service(request: Request) -> OrderService:
    """Order service built in the application lifespan."""
    return request.app.state.order_service


def get_backorder_manager(
    service: Annotated[OrderService, Depends(get_order_service)],
) -> BackorderQueueManager:
    return service.backorders


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
BackorderManagerDep = Annotated[BackorderQueueManager, Depends(get_backorder_manager)]
