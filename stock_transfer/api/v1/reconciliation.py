"""
Reconciliation document API endpoints.

Read-only access to the delivery notes produced when orders are received.
The rendering service consumes these documents as they are stored.
"""

from typing import Optional

from fastapi import APIRouter, Query

from stock_transfer.api.deps import CurrentActor, OrderServiceDep
from stock_transfer.core.exceptions import OrderValidationError
from stock_transfer.schemas.reconciliation import ReconciliationDocument

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


@router.get(
    "",
    response_model=list[ReconciliationDocument],
    summary="List reconciliation documents of a site",
)
async def list_documents(
    actor: CurrentActor,
    service: OrderServiceDep,
    site_id: Optional[str] = Query(None, description="Requester or preparer site (defaults to the actor's site)"),
) -> list[ReconciliationDocument]:
    site = site_id or actor.site_id
    if not site:
        raise OrderValidationError("A site id is required")
    return await service.reconciliation.list_for_site(site)


@router.get(
    "/{document_id}",
    response_model=ReconciliationDocument,
    summary="Get reconciliation document",
)
async def get_document(
    document_id: str, actor: CurrentActor, service: OrderServiceDep
) -> ReconciliationDocument:
    return await service.reconciliation.get(document_id)
