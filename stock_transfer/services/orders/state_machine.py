"""Order state machine implementation with transition validation.

This module implements the OrderStateMachine class for moving stock transfer
orders through their lifecycle. Each edge has a guard that checks whether
the acting identity may sign it and a side effect that stamps the edge's
actor/time pair on the order. Transitions are validated against the
caller's snapshot and committed with a single atomic update against the
stored order, where a monotonic guard drops writes that would move the
status backwards.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional, Set

from stock_transfer.core.exceptions import (
    InvalidTransition,
    NotAuthorized,
    StaleWrite,
)
from stock_transfer.core.logging import get_logger
from stock_transfer.schemas.orders import Order, utc_now
from stock_transfer.schemas.signatures import Actor
from stock_transfer.services.orders.enums import (
    ActorRole,
    OrderStatus,
    SIGNED_STAGES,
    get_allowed_order_transitions,
    is_status_regression,
    validate_order_status_transition,
)
from stock_transfer.services.orders.repository import OrderRepository

logger = get_logger(__name__)

Guard = Callable[[Order, Actor], bool]
SideEffect = Callable[[Order, OrderStatus, Actor, datetime, Optional[str]], None]
OrderChanges = Callable[[Order], None]


class TransitionOutcome(str, Enum):
    """What a committed transition request did to the stored order."""

    APPLIED = "applied"
    RESIGNED = "resigned"
    STALE_DROPPED = "stale_dropped"


@dataclass
class TransitionResult:
    """Stored order after a transition request and what happened to it."""

    order: Order
    outcome: TransitionOutcome
    target_status: OrderStatus
    previous_status: Optional[OrderStatus] = None

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


class OrderStateMachine:
    """State machine for managing stock transfer order lifecycle transitions.

    Handles status transitions with validation, authorization guards and
    side effects.
    """

    def __init__(self, repository: OrderRepository):
        """Initialize state machine.

        Args:
            repository: Order repository used to commit transitions
        """
        self.repository = repository
        self._transition_guards: Dict[
            tuple[OrderStatus, OrderStatus], Guard
        ] = self._initialize_guards()
        self._side_effects: Dict[OrderStatus, SideEffect] = (
            self._initialize_side_effects()
        )

    def _initialize_guards(self) -> Dict[tuple[OrderStatus, OrderStatus], Guard]:
        """Initialize transition guard functions.

        Returns:
            Dictionary mapping state transitions to authorization guards
        """
        return {
            (OrderStatus.DRAFT, OrderStatus.SENT): self._guard_requester,
            (OrderStatus.SENT, OrderStatus.ASSEMBLING): self._guard_preparer,
            (OrderStatus.ASSEMBLING, OrderStatus.IN_TRANSIT): self._guard_courier,
            (OrderStatus.IN_TRANSIT, OrderStatus.RECEIVED): self._guard_requester,
            (OrderStatus.DRAFT, OrderStatus.CANCELLED): self._guard_requester,
            (OrderStatus.SENT, OrderStatus.CANCELLED): self._guard_either_site,
            (OrderStatus.ASSEMBLING, OrderStatus.CANCELLED): self._guard_either_site,
        }

    def _initialize_side_effects(self) -> Dict[OrderStatus, SideEffect]:
        """Initialize side effect handlers for state transitions.

        Returns:
            Dictionary mapping target states to side effect functions
        """
        return {
            OrderStatus.SENT: self._effect_stamp,
            OrderStatus.ASSEMBLING: self._effect_stamp,
            OrderStatus.IN_TRANSIT: self._effect_stamp,
            OrderStatus.RECEIVED: self._effect_stamp,
            OrderStatus.CANCELLED: self._effect_cancelled,
        }

    def validate_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        actor: Actor,
    ) -> bool:
        """Validate a transition against the caller's snapshot of the order.

        A request for the snapshot's own status on a signed, non-terminal
        stage is a re-signature of that stage.

        Args:
            order: Caller's snapshot of the order
            target_status: Desired target status
            actor: Identity requesting the transition

        Returns:
            True if the request is a same-stage re-signature

        Raises:
            InvalidTransition: If the target is not a successor
            NotAuthorized: If the actor may not sign the edge
        """
        current_status = order.status
        is_resign = (
            target_status == current_status
            and current_status in SIGNED_STAGES
            and not current_status.is_terminal()
        )

        if not is_resign and not validate_order_status_transition(
            current_status, target_status
        ):
            allowed = get_allowed_order_transitions(current_status)
            raise InvalidTransition(
                f"Invalid transition from {current_status.value} to "
                f"{target_status.value}",
                current_status=current_status,
                target_status=target_status,
                allowed=allowed,
                order_id=order.id,
            )

        guard = (
            self._guard_into(target_status)
            if is_resign
            else self._transition_guards[(current_status, target_status)]
        )
        if not guard(order, actor):
            logger.warning(
                "Transition not authorized",
                order_id=order.id,
                transition=f"{current_status.value}->{target_status.value}",
                actor_id=actor.actor_id,
                actor_role=actor.role.value,
                actor_site_id=actor.site_id,
            )
            raise NotAuthorized(
                f"Actor {actor.actor_id} may not move order {order.order_number} "
                f"from {current_status.value} to {target_status.value}",
                order_id=order.id,
                actor_id=actor.actor_id,
                target_status=target_status.value,
            )

        logger.debug(
            "State transition validated",
            order_id=order.id,
            transition=f"{current_status.value}->{target_status.value}",
            resign=is_resign,
        )
        return is_resign

    async def request_transition(
        self,
        order: Order,
        target_status: OrderStatus,
        actor: Actor,
        reason: Optional[str] = None,
        changes: Optional[OrderChanges] = None,
    ) -> TransitionResult:
        """Move an order to ``target_status`` on behalf of ``actor``.

        Args:
            order: Caller's snapshot of the order
            target_status: Desired target status
            actor: Identity performing the transition
            reason: Optional reason (recorded on cancellation)
            changes: Extra in-document changes committed in the same write,
                only when the transition is actually applied

        Returns:
            The stored order and the outcome of the request

        Raises:
            InvalidTransition: If the target is not a successor
            NotAuthorized: If the actor may not sign the edge
        """
        self.validate_transition(order, target_status, actor)

        now = utc_now()
        observed: dict[str, object] = {}

        def commit(stored: Order) -> Optional[Order]:
            observed["previous"] = stored.status

            if stored.status == target_status:
                # Re-signature: only the edge's actor/time pair changes.
                stored.apply_stamp(target_status, actor, now)
                observed["outcome"] = TransitionOutcome.RESIGNED
                return stored

            if is_status_regression(stored.status, target_status):
                raise StaleWrite(
                    f"Order already at {stored.status.value}",
                    order_id=stored.id,
                    stored_status=stored.status.value,
                    target_status=target_status.value,
                )

            if not validate_order_status_transition(stored.status, target_status):
                raise InvalidTransition(
                    f"Invalid transition from {stored.status.value} to "
                    f"{target_status.value}",
                    current_status=stored.status,
                    target_status=target_status,
                    allowed=get_allowed_order_transitions(stored.status),
                    order_id=stored.id,
                )

            stored.status = target_status
            self._side_effects[target_status](stored, target_status, actor, now, reason)
            if changes is not None:
                changes(stored)
            observed["outcome"] = TransitionOutcome.APPLIED
            return stored

        try:
            updated = await self.repository.mutate(order.id, commit)
        except StaleWrite as e:
            logger.warning(
                "Stale status write dropped",
                actor_id=actor.actor_id,
                **e.context,
            )
            return TransitionResult(
                order=await self.repository.get(order.id),
                outcome=TransitionOutcome.STALE_DROPPED,
                target_status=target_status,
                previous_status=observed.get("previous"),
            )

        outcome = observed["outcome"]
        logger.info(
            "State transition applied"
            if outcome == TransitionOutcome.APPLIED
            else "Stage re-signed",
            order_id=updated.id,
            order_number=updated.order_number,
            transition=f"{observed['previous'].value}->{target_status.value}",
            actor_id=actor.actor_id,
        )
        return TransitionResult(
            order=updated,
            outcome=outcome,
            target_status=target_status,
            previous_status=observed["previous"],
        )

    async def mark_ready(self, order: Order, actor: Actor) -> TransitionResult:
        """Record the preparer's "ready" milestone without moving status.

        Raises:
            InvalidTransition: If the snapshot is not assembling
            NotAuthorized: If the actor is not staff of the preparer site
        """
        if order.status != OrderStatus.ASSEMBLING:
            raise InvalidTransition(
                f"Order {order.order_number} can only be marked ready while "
                f"assembling (currently {order.status.value})",
                current_status=order.status,
                target_status="ready",
                allowed=[OrderStatus.ASSEMBLING],
                order_id=order.id,
            )
        if not self._guard_preparer(order, actor):
            raise NotAuthorized(
                f"Actor {actor.actor_id} may not mark order "
                f"{order.order_number} ready",
                order_id=order.id,
                actor_id=actor.actor_id,
            )

        now = utc_now()

        def commit(stored: Order) -> Optional[Order]:
            if stored.status != OrderStatus.ASSEMBLING:
                raise StaleWrite(
                    f"Order already at {stored.status.value}",
                    order_id=stored.id,
                    stored_status=stored.status.value,
                    target_status="ready",
                )
            stored.apply_ready_stamp(actor, now)
            return stored

        try:
            updated = await self.repository.mutate(order.id, commit)
        except StaleWrite as e:
            logger.warning("Stale ready mark dropped", actor_id=actor.actor_id, **e.context)
            return TransitionResult(
                order=await self.repository.get(order.id),
                outcome=TransitionOutcome.STALE_DROPPED,
                target_status=OrderStatus.ASSEMBLING,
            )

        logger.info(
            "Order marked ready",
            order_id=updated.id,
            order_number=updated.order_number,
            actor_id=actor.actor_id,
        )
        return TransitionResult(
            order=updated,
            outcome=TransitionOutcome.APPLIED,
            target_status=OrderStatus.ASSEMBLING,
            previous_status=OrderStatus.ASSEMBLING,
        )

    def get_allowed_transitions(self, order: Order) -> Set[OrderStatus]:
        """Get allowed transitions from current order status."""
        return get_allowed_order_transitions(order.status)

    def can_cancel(self, order: Order) -> bool:
        """Check if order can be cancelled from current status."""
        return order.status.can_cancel()

    def can_sign(self, order: Order, target_status: OrderStatus, actor: Actor) -> bool:
        """Check whether ``actor`` may move ``order`` to ``target_status`` now."""
        guard = self._transition_guards.get((order.status, target_status))
        return guard is not None and guard(order, actor)

    def _guard_into(self, target_status: OrderStatus) -> Guard:
        for (_, target), guard in self._transition_guards.items():
            if target == target_status:
                return guard
        raise KeyError(target_status)

    # Transition Guards

    def _guard_requester(self, order: Order, actor: Actor) -> bool:
        """Staff of the requesting site."""
        return actor.role.is_site_staff and actor.belongs_to(order.from_site_id)

    def _guard_preparer(self, order: Order, actor: Actor) -> bool:
        """Staff of the preparing site."""
        return actor.role.is_site_staff and actor.belongs_to(order.to_site_id)

    def _guard_courier(self, order: Order, actor: Actor) -> bool:
        """The assigned courier, or any courier of the preparing site."""
        if order.courier_id:
            return actor.actor_id == order.courier_id
        return actor.role == ActorRole.DELIVERY and actor.belongs_to(order.to_site_id)

    def _guard_either_site(self, order: Order, actor: Actor) -> bool:
        return self._guard_requester(order, actor) or self._guard_preparer(order, actor)

    # Side Effects

    def _effect_stamp(
        self,
        order: Order,
        target_status: OrderStatus,
        actor: Actor,
        at: datetime,
        reason: Optional[str],
    ) -> None:
        order.apply_stamp(target_status, actor, at)

    def _effect_cancelled(
        self,
        order: Order,
        target_status: OrderStatus,
        actor: Actor,
        at: datetime,
        reason: Optional[str],
    ) -> None:
        order.apply_stamp(target_status, actor, at)
        order.cancel_reason = reason


def get_order_state_machine(repository: OrderRepository) -> OrderStateMachine:
    """Factory function to create state machine instance.

    Args:
        repository: Order repository used to commit transitions

    Returns:
        Configured OrderStateMachine instance
    """
    return OrderStateMachine(repository)
