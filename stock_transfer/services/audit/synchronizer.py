"""
Remit audit synchronizer.

The remit audit is a projection of an order's lifecycle. It is updated
incrementally after every committed transition, but it is never the source
of truth: ``build_audit_from_order`` derives an equivalent audit from the
order document alone, and every read path heals a missing or stale audit by
rebuilding it.
"""

from typing import Optional

from stock_transfer.core.logging import get_logger
from stock_transfer.database.store import Collection, DocumentStore
from stock_transfer.schemas.audit import (
    SIGNATURE_SLOTS,
    RemitAudit,
    StatusHistoryEntry,
)
from stock_transfer.schemas.orders import Order
from stock_transfer.schemas.signatures import Actor, Signature
from stock_transfer.services.orders.enums import (
    OrderStatus,
    SIGNED_STAGES,
    is_status_regression,
    validate_order_status_transition,
)

logger = get_logger(__name__)


def build_audit_from_order(order: Order) -> RemitAudit:
    """
    Derive the remit audit of ``order`` from its actor/time fields.

    Stages are walked in lifecycle order (sent, assembling, in transit,
    received) and any stage whose actor/time pair is empty is skipped. A
    cancellation is appended last. The result depends only on the order, so
    rebuilding twice yields identical audits.

    Args:
        order: Order document

    Returns:
        Rebuilt audit whose current status equals the order's status
    """
    history: list[StatusHistoryEntry] = []
    signatures: dict[str, Signature] = {}

    for stage in (*SIGNED_STAGES, OrderStatus.CANCELLED):
        signature = Signature.from_stamp(*order.stamp_for(stage))
        if signature is None:
            continue
        history.append(
            StatusHistoryEntry(
                status=stage,
                timestamp=signature.timestamp,
                actor_id=signature.actor_id,
                actor_name=signature.actor_name,
            )
        )
        slot = SIGNATURE_SLOTS.get(stage)
        if slot is not None:
            signatures[slot] = signature

    ready = Signature.from_stamp(*order.ready_stamp())
    if ready is not None:
        signatures["ready_signature"] = ready

    return RemitAudit(
        order_id=order.id,
        order_number=order.order_number,
        created_at=order.sent_at or order.created_at,
        current_status=order.status,
        status_history=history,
        **signatures,
    )


def _keep_richer_signatures(rebuilt: RemitAudit, existing: Optional[RemitAudit]) -> RemitAudit:
    """
    Carry full signatures (position, image) from an existing audit into a rebuild.

    A stored signature is kept only when the rebuild attributes the same
    stage to the same actor.
    """
    if existing is None:
        return rebuilt
    for slot in (*SIGNATURE_SLOTS.values(), "ready_signature"):
        current = getattr(existing, slot)
        derived = getattr(rebuilt, slot)
        if current is not None and derived is not None and current.actor_id == derived.actor_id:
            setattr(rebuilt, slot, current)
    return rebuilt


class RemitAuditSynchronizer:
    """
    Maintains the remit audit projection of each order.

    Attributes:
        store: Document store holding the ``remit_audits`` collection
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def find(self, order_id: str) -> Optional[RemitAudit]:
        document = await self.store.get(Collection.REMIT_AUDITS, order_id)
        return RemitAudit.model_validate(document) if document is not None else None

    async def record_transition(
        self,
        order: Order,
        new_status: OrderStatus,
        actor: Actor,
    ) -> RemitAudit:
        """
        Record a committed transition in the audit.

        The same status twice replaces only the stage signature; a status
        behind the recorded one is ignored; an audit that is missing or more
        than one step behind is rebuilt from ``order`` first.

        Args:
            order: Order as stored after the transition
            new_status: Status the order moved to
            actor: Identity that signed the transition

        Returns:
            The stored audit
        """
        _, _, stamped_at = order.stamp_for(new_status)
        signature = Signature.from_actor(actor, stamped_at or order.updated_at or order.created_at)

        if await self.find(order.id) is None:
            rebuilt = build_audit_from_order(order)
            rebuilt.set_signature(new_status, signature)
            if await self.store.create(Collection.REMIT_AUDITS, order.id, rebuilt.model_dump(mode="json")):
                logger.info(
                    "Remit audit created",
                    order_id=order.id,
                    status=new_status.value,
                    entries=len(rebuilt.status_history),
                )
                return rebuilt

        def apply(document: dict) -> Optional[dict]:
            audit = RemitAudit.model_validate(document)

            if audit.current_status == new_status:
                audit.set_signature(new_status, signature)
            elif is_status_regression(audit.current_status, new_status):
                logger.warning(
                    "Stale audit transition dropped",
                    order_id=order.id,
                    recorded_status=audit.current_status.value,
                    incoming_status=new_status.value,
                )
                return None
            elif validate_order_status_transition(audit.current_status, new_status):
                audit.status_history.append(
                    StatusHistoryEntry(
                        status=new_status,
                        timestamp=signature.timestamp,
                        actor_id=signature.actor_id,
                        actor_name=signature.actor_name,
                    )
                )
                audit.current_status = new_status
                audit.set_signature(new_status, signature)
            else:
                logger.warning(
                    "Remit audit behind order, rebuilding",
                    order_id=order.id,
                    recorded_status=audit.current_status.value,
                    incoming_status=new_status.value,
                )
                audit = _keep_richer_signatures(build_audit_from_order(order), audit)
                audit.set_signature(new_status, signature)

            return audit.model_dump(mode="json")

        stored = await self.store.update(Collection.REMIT_AUDITS, order.id, apply)
        logger.info("Remit audit updated", order_id=order.id, status=new_status.value)
        return RemitAudit.model_validate(stored)

    async def record_ready_signature(self, order: Order, actor: Actor) -> RemitAudit:
        """Set the out-of-band ready signature without adding a history entry."""
        _, _, prepared_at = order.ready_stamp()
        signature = Signature.from_actor(actor, prepared_at or order.updated_at or order.created_at)

        if await self.find(order.id) is None:
            await self.get_or_rebuild(order)

        def apply(document: dict) -> dict:
            audit = RemitAudit.model_validate(document)
            audit.ready_signature = signature
            return audit.model_dump(mode="json")

        stored = await self.store.update(Collection.REMIT_AUDITS, order.id, apply)
        logger.info("Ready signature recorded", order_id=order.id, actor_id=actor.actor_id)
        return RemitAudit.model_validate(stored)

    async def get_or_rebuild(self, order: Order) -> RemitAudit:
        """
        Return the stored audit, healing it first when it is missing or stale.

        Never fails because derived data is missing: whatever the state of
        the stored projection, the order alone is enough to produce it.
        """
        existing = await self.find(order.id)
        if existing is not None and existing.current_status == order.status:
            return existing

        rebuilt = _keep_richer_signatures(build_audit_from_order(order), existing)
        await self.store.set(Collection.REMIT_AUDITS, order.id, rebuilt.model_dump(mode="json"))
        logger.info(
            "Remit audit rebuilt",
            order_id=order.id,
            reason="missing" if existing is None else "stale",
            recorded_status=existing.current_status.value if existing else None,
            order_status=order.status.value,
        )
        return rebuilt

    async def verify(self, order: Order) -> bool:
        """Check that the stored audit agrees with a rebuild from the order."""
        existing = await self.find(order.id)
        if existing is None:
            return False
        rebuilt = build_audit_from_order(order)
        consistent = (
            existing.current_status == rebuilt.current_status
            and existing.history_statuses() == rebuilt.history_statuses()
        )
        if not consistent:
            logger.warning(
                "Remit audit inconsistent with order",
                order_id=order.id,
                recorded=[s.value for s in existing.history_statuses()],
                expected=[s.value for s in rebuilt.history_statuses()],
            )
        return consistent
