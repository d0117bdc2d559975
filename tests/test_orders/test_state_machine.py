"""
Test suite for OrderStateMachine.

Tests cover guard and side effect registration, authorized and rejected
transitions, re-signatures, stale writes against the stored order and the
out-of-band ready milestone.
"""

from decimal import Decimal

import pytest

from stock_transfer.core.exceptions import InvalidTransition, NotAuthorized
from stock_transfer.database.store import InMemoryDocumentStore
from stock_transfer.schemas.orders import Order, OrderItem
from stock_transfer.schemas.signatures import Actor
from stock_transfer.services.orders.enums import (
    OrderStatus,
    get_reachable_statuses,
    is_status_regression,
    validate_order_status_transition,
)
from stock_transfer.services.orders.repository import OrderRepository
from stock_transfer.services.orders.state_machine import (
    OrderStateMachine,
    TransitionOutcome,
    get_order_state_machine,
)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def repository(store: InMemoryDocumentStore) -> OrderRepository:
    """Order repository over the in-memory store."""
    return OrderRepository(store)


@pytest.fixture
def state_machine(repository: OrderRepository) -> OrderStateMachine:
    """State machine committing through the repository."""
    return OrderStateMachine(repository)


@pytest.fixture
def stored_order(repository: OrderRepository, requester: Actor, preparer: Actor):
    """Factory storing a draft order and returning the caller's snapshot."""

    async def _create(**fields) -> Order:
        order = Order(
            from_site_id=requester.site_id,
            to_site_id=preparer.site_id,
            items=[
                OrderItem(product_id="widget", product_name="Widget", quantity=Decimal("4"))
            ],
            created_by=requester.actor_id,
            created_by_name=requester.name,
            **fields,
        )
        await repository.create(order)
        return order

    return _create


# ============================================================================
# Initialization Tests
# ============================================================================


class TestOrderStateMachineInitialization:
    """Test guard and side effect registration."""

    def test_guards_cover_every_edge(self, state_machine: OrderStateMachine) -> None:
        expected_edges = [
            (OrderStatus.DRAFT, OrderStatus.SENT),
            (OrderStatus.SENT, OrderStatus.ASSEMBLING),
            (OrderStatus.ASSEMBLING, OrderStatus.IN_TRANSIT),
            (OrderStatus.IN_TRANSIT, OrderStatus.RECEIVED),
            (OrderStatus.DRAFT, OrderStatus.CANCELLED),
            (OrderStatus.SENT, OrderStatus.CANCELLED),
            (OrderStatus.ASSEMBLING, OrderStatus.CANCELLED),
        ]

        assert set(state_machine._transition_guards) == set(expected_edges)
        for edge in expected_edges:
            assert callable(state_machine._transition_guards[edge])

    def test_side_effects_cover_every_target(self, state_machine: OrderStateMachine) -> None:
        for status in (
            OrderStatus.SENT,
            OrderStatus.ASSEMBLING,
            OrderStatus.IN_TRANSIT,
            OrderStatus.RECEIVED,
            OrderStatus.CANCELLED,
        ):
            assert callable(state_machine._side_effects[status])

    def test_factory_function(self, repository: OrderRepository) -> None:
        machine = get_order_state_machine(repository)

        assert isinstance(machine, OrderStateMachine)
        assert machine.repository is repository


# ============================================================================
# Transition Table Tests
# ============================================================================


class TestTransitionTable:
    """Test the status table helpers."""

    def test_no_skips_or_back_edges(self) -> None:
        assert not validate_order_status_transition(OrderStatus.DRAFT, OrderStatus.IN_TRANSIT)
        assert not validate_order_status_transition(OrderStatus.ASSEMBLING, OrderStatus.SENT)
        assert not validate_order_status_transition(OrderStatus.IN_TRANSIT, OrderStatus.CANCELLED)

    def test_terminal_statuses_reach_nothing(self) -> None:
        assert get_reachable_statuses(OrderStatus.RECEIVED) == set()
        assert get_reachable_statuses(OrderStatus.CANCELLED) == set()

    @pytest.mark.parametrize(
        "stored,incoming,expected",
        [
            (OrderStatus.IN_TRANSIT, OrderStatus.ASSEMBLING, True),
            (OrderStatus.RECEIVED, OrderStatus.CANCELLED, True),
            (OrderStatus.SENT, OrderStatus.IN_TRANSIT, False),
            (OrderStatus.ASSEMBLING, OrderStatus.ASSEMBLING, False),
        ],
    )
    def test_is_status_regression(
        self, stored: OrderStatus, incoming: OrderStatus, expected: bool
    ) -> None:
        assert is_status_regression(stored, incoming) is expected


# ============================================================================
# Transition Tests
# ============================================================================


class TestRequestTransition:
    """Test committed transitions."""

    async def test_send_stamps_actor_and_time(
        self, state_machine: OrderStateMachine, stored_order, requester: Actor
    ) -> None:
        order = await stored_order()

        result = await state_machine.request_transition(order, OrderStatus.SENT, requester)

        assert result.outcome == TransitionOutcome.APPLIED
        assert result.applied
        assert result.previous_status == OrderStatus.DRAFT
        assert result.order.status == OrderStatus.SENT
        assert result.order.sent_by == requester.actor_id
        assert result.order.sent_by_name == requester.name
        assert result.order.sent_at is not None
        assert result.order.updated_at == result.order.sent_at

    async def test_skip_is_rejected_and_order_unchanged(
        self,
        state_machine: OrderStateMachine,
        repository: OrderRepository,
        stored_order,
        courier: Actor,
    ) -> None:
        order = await stored_order()

        with pytest.raises(InvalidTransition) as exc_info:
            await state_machine.request_transition(order, OrderStatus.IN_TRANSIT, courier)

        assert exc_info.value.current_status == OrderStatus.DRAFT
        assert exc_info.value.allowed == ["cancelled", "sent"]
        assert (await repository.get(order.id)).status == OrderStatus.DRAFT

    async def test_outsider_cannot_send(
        self, state_machine: OrderStateMachine, stored_order, outsider: Actor
    ) -> None:
        order = await stored_order()

        with pytest.raises(NotAuthorized):
            await state_machine.request_transition(order, OrderStatus.SENT, outsider)

    async def test_courier_cannot_accept(
        self,
        state_machine: OrderStateMachine,
        stored_order,
        requester: Actor,
        courier: Actor,
    ) -> None:
        order = await stored_order()
        sent = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order

        with pytest.raises(NotAuthorized):
            await state_machine.request_transition(sent, OrderStatus.ASSEMBLING, courier)

    async def test_assigned_courier_is_the_only_courier(
        self,
        state_machine: OrderStateMachine,
        stored_order,
        requester: Actor,
        preparer: Actor,
        courier: Actor,
    ) -> None:
        order = await stored_order(courier_id="user-courier-9")
        order = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order
        order = (await state_machine.request_transition(order, OrderStatus.ASSEMBLING, preparer)).order

        assert not state_machine.can_sign(order, OrderStatus.IN_TRANSIT, courier)
        with pytest.raises(NotAuthorized):
            await state_machine.request_transition(order, OrderStatus.IN_TRANSIT, courier)

        assigned = courier.model_copy(update={"actor_id": "user-courier-9"})
        result = await state_machine.request_transition(order, OrderStatus.IN_TRANSIT, assigned)
        assert result.order.delivered_by == "user-courier-9"

    async def test_cancel_records_reason(
        self, state_machine: OrderStateMachine, stored_order, requester: Actor, preparer: Actor
    ) -> None:
        order = await stored_order()
        sent = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order

        result = await state_machine.request_transition(
            sent, OrderStatus.CANCELLED, preparer, reason="Out of stock"
        )

        assert result.order.status == OrderStatus.CANCELLED
        assert result.order.cancelled_by == preparer.actor_id
        assert result.order.cancel_reason == "Out of stock"

    async def test_changes_committed_with_transition(
        self, state_machine: OrderStateMachine, stored_order, requester: Actor
    ) -> None:
        order = await stored_order()

        def annotate(stored: Order) -> None:
            stored.notes = "sent with changes"

        result = await state_machine.request_transition(
            order, OrderStatus.SENT, requester, changes=annotate
        )

        assert result.order.notes == "sent with changes"


# ============================================================================
# Concurrency Tests
# ============================================================================


class TestMonotonicGuard:
    """Test writes evaluated against the stored order."""

    async def test_second_accept_resigns_stage(
        self,
        state_machine: OrderStateMachine,
        repository: OrderRepository,
        stored_order,
        requester: Actor,
        preparer: Actor,
        second_preparer: Actor,
    ) -> None:
        order = await stored_order()
        sent = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order

        first = await state_machine.request_transition(sent, OrderStatus.ASSEMBLING, preparer)
        second = await state_machine.request_transition(sent, OrderStatus.ASSEMBLING, second_preparer)

        assert first.outcome == TransitionOutcome.APPLIED
        assert second.outcome == TransitionOutcome.RESIGNED
        stored = await repository.get(order.id)
        assert stored.status == OrderStatus.ASSEMBLING
        assert stored.accepted_by == second_preparer.actor_id

    async def test_changes_skipped_on_resign(
        self,
        state_machine: OrderStateMachine,
        stored_order,
        requester: Actor,
        second_requester: Actor,
    ) -> None:
        order = await stored_order()
        await state_machine.request_transition(order, OrderStatus.SENT, requester)

        def annotate(stored: Order) -> None:
            stored.notes = "late change"

        result = await state_machine.request_transition(
            order, OrderStatus.SENT, second_requester, changes=annotate
        )

        assert result.outcome == TransitionOutcome.RESIGNED
        assert result.order.notes is None
        assert result.order.sent_by == second_requester.actor_id

    async def test_stale_write_is_dropped(
        self,
        state_machine: OrderStateMachine,
        repository: OrderRepository,
        stored_order,
        requester: Actor,
        preparer: Actor,
        courier: Actor,
        second_preparer: Actor,
    ) -> None:
        order = await stored_order()
        sent = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order
        assembling = (
            await state_machine.request_transition(sent, OrderStatus.ASSEMBLING, preparer)
        ).order
        await state_machine.request_transition(assembling, OrderStatus.IN_TRANSIT, courier)

        result = await state_machine.request_transition(
            sent, OrderStatus.ASSEMBLING, second_preparer
        )

        assert result.outcome == TransitionOutcome.STALE_DROPPED
        stored = await repository.get(order.id)
        assert stored.status == OrderStatus.IN_TRANSIT
        assert stored.accepted_by == preparer.actor_id

    async def test_racing_cancel_keeps_applied_reason(
        self,
        state_machine: OrderStateMachine,
        repository: OrderRepository,
        stored_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await stored_order()
        sent = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order
        await state_machine.request_transition(
            sent, OrderStatus.CANCELLED, preparer, reason="Out of stock"
        )

        result = await state_machine.request_transition(
            sent, OrderStatus.CANCELLED, requester, reason="No longer needed"
        )

        assert result.outcome == TransitionOutcome.RESIGNED
        stored = await repository.get(order.id)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.cancelled_by == requester.actor_id
        assert stored.cancel_reason == "Out of stock"

    async def test_terminal_status_cannot_be_resigned(
        self, state_machine: OrderStateMachine, stored_order, requester: Actor
    ) -> None:
        order = await stored_order()
        cancelled = (
            await state_machine.request_transition(order, OrderStatus.CANCELLED, requester)
        ).order

        with pytest.raises(InvalidTransition):
            await state_machine.request_transition(cancelled, OrderStatus.CANCELLED, requester)

    async def test_draft_is_not_a_signed_stage(
        self, state_machine: OrderStateMachine, stored_order, requester: Actor
    ) -> None:
        order = await stored_order()

        with pytest.raises(InvalidTransition):
            await state_machine.request_transition(order, OrderStatus.DRAFT, requester)


# ============================================================================
# Ready Milestone Tests
# ============================================================================


class TestMarkReady:
    """Test the ready milestone."""

    async def test_mark_ready_keeps_status(
        self,
        state_machine: OrderStateMachine,
        stored_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await stored_order()
        order = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order
        order = (await state_machine.request_transition(order, OrderStatus.ASSEMBLING, preparer)).order

        result = await state_machine.mark_ready(order, preparer)

        assert result.applied
        assert result.order.status == OrderStatus.ASSEMBLING
        assert result.order.prepared_by == preparer.actor_id
        assert result.order.prepared_at is not None

    async def test_mark_ready_requires_assembling(
        self, state_machine: OrderStateMachine, stored_order, preparer: Actor
    ) -> None:
        order = await stored_order()

        with pytest.raises(InvalidTransition):
            await state_machine.mark_ready(order, preparer)

    async def test_mark_ready_requires_preparer(
        self,
        state_machine: OrderStateMachine,
        stored_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await stored_order()
        order = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order
        order = (await state_machine.request_transition(order, OrderStatus.ASSEMBLING, preparer)).order

        with pytest.raises(NotAuthorized):
            await state_machine.mark_ready(order, requester)

    async def test_stale_ready_mark_is_dropped(
        self,
        state_machine: OrderStateMachine,
        repository: OrderRepository,
        stored_order,
        requester: Actor,
        preparer: Actor,
        courier: Actor,
    ) -> None:
        order = await stored_order()
        order = (await state_machine.request_transition(order, OrderStatus.SENT, requester)).order
        assembling = (
            await state_machine.request_transition(order, OrderStatus.ASSEMBLING, preparer)
        ).order
        await state_machine.request_transition(assembling, OrderStatus.IN_TRANSIT, courier)

        result = await state_machine.mark_ready(assembling, preparer)

        assert result.outcome == TransitionOutcome.STALE_DROPPED
        assert (await repository.get(order.id)).prepared_by is None

    async def test_allowed_transitions_and_cancel(
        self, state_machine: OrderStateMachine, stored_order
    ) -> None:
        order = await stored_order()

        assert state_machine.get_allowed_transitions(order) == {
            OrderStatus.SENT,
            OrderStatus.CANCELLED,
        }
        assert state_machine.can_cancel(order)
