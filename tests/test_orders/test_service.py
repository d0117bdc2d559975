"""
Test suite for OrderService.

Tests cover order creation and editing, the lifecycle actions with their
audit records and change events, assembly recording, reception with the
reconciliation document and backorder queueing it triggers, and manual
shortfall reports.
"""

from decimal import Decimal

import pytest

from stock_transfer.core.exceptions import (
    InvalidTransition,
    NotAuthorized,
    NotFound,
    OrderValidationError,
)
from stock_transfer.schemas.backorders import EnqueueRequest
from stock_transfer.schemas.orders import (
    AssemblyLine,
    AssemblyRequest,
    OrderCreateRequest,
    OrderItemInput,
    OrderItemsUpdateRequest,
    ReceiptLine,
    ReceiveRequest,
)
from stock_transfer.schemas.signatures import Actor
from stock_transfer.services.backorders.service import shortfall_item_id_for
from stock_transfer.services.notifications.publisher import InMemoryChangePublisher
from stock_transfer.services.orders.enums import ItemStatus, OrderStatus
from stock_transfer.services.orders.service import OrderService
from stock_transfer.services.orders.state_machine import TransitionOutcome
from stock_transfer.services.reconciliation.generator import reconciliation_document_id


def _item(order, product_id: str):
    return next(item for item in order.items if item.product_id == product_id)


# ============================================================================
# Creation Tests
# ============================================================================


class TestCreateOrder:
    """Test draft order creation."""

    async def test_create_order_success(
        self,
        service: OrderService,
        create_request: OrderCreateRequest,
        requester: Actor,
        publisher: InMemoryChangePublisher,
    ) -> None:
        order = await service.create_order(create_request, requester)

        assert order.status == OrderStatus.DRAFT
        assert order.from_site_id == requester.site_id
        assert order.to_site_id == create_request.to_site_id
        assert order.created_by == requester.actor_id
        assert [item.product_id for item in order.items] == ["widget", "gadget"]
        assert all(item.status == ItemStatus.PENDING for item in order.items)
        assert (await service.get_order(order.id)).id == order.id
        assert publisher.events[-1].event == "order.created"

    async def test_zero_quantity_lines_dropped(
        self, service: OrderService, create_request: OrderCreateRequest, requester: Actor
    ) -> None:
        create_request.items.append(
            OrderItemInput(product_id="bolt", product_name="Bolt", quantity=Decimal("0"))
        )

        order = await service.create_order(create_request, requester)

        assert "bolt" not in [item.product_id for item in order.items]

    async def test_all_zero_quantities_rejected(
        self, service: OrderService, create_request: OrderCreateRequest, requester: Actor
    ) -> None:
        request = create_request.model_copy(
            update={
                "items": [
                    OrderItemInput(product_id="bolt", product_name="Bolt", quantity=Decimal("0"))
                ]
            }
        )

        with pytest.raises(OrderValidationError):
            await service.create_order(request, requester)

    async def test_order_to_own_site_rejected(
        self, service: OrderService, create_request: OrderCreateRequest, preparer: Actor
    ) -> None:
        with pytest.raises(OrderValidationError):
            await service.create_order(create_request, preparer)

    async def test_courier_cannot_create_order(
        self, service: OrderService, create_request: OrderCreateRequest, courier: Actor
    ) -> None:
        with pytest.raises(NotAuthorized):
            await service.create_order(create_request, courier)


# ============================================================================
# Item Editing Tests
# ============================================================================


class TestUpdateItems:
    """Test replacing order lines before acceptance."""

    async def test_update_keeps_line_ids_by_product(
        self, service: OrderService, draft_order, requester: Actor
    ) -> None:
        order = await draft_order()
        widget_id = _item(order, "widget").id

        updated = await service.update_items(
            order.id,
            OrderItemsUpdateRequest(
                items=[
                    OrderItemInput(product_id="widget", product_name="Widget", quantity=Decimal("12")),
                    OrderItemInput(product_id="bolt", product_name="Bolt", quantity=Decimal("100")),
                ],
                notes="Added bolts",
            ),
            requester,
        )

        assert _item(updated, "widget").id == widget_id
        assert _item(updated, "widget").quantity == Decimal("12")
        assert [item.product_id for item in updated.items] == ["widget", "bolt"]
        assert updated.notes == "Added bolts"

    async def test_update_after_acceptance_rejected(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await draft_order()
        await service.send(order.id, requester)
        await service.accept(order.id, preparer)

        with pytest.raises(InvalidTransition):
            await service.update_items(
                order.id,
                OrderItemsUpdateRequest(
                    items=[
                        OrderItemInput(product_id="widget", product_name="Widget", quantity=Decimal("1"))
                    ]
                ),
                requester,
            )

    async def test_preparer_cannot_edit_items(
        self, service: OrderService, draft_order, preparer: Actor
    ) -> None:
        order = await draft_order()

        with pytest.raises(NotAuthorized):
            await service.update_items(
                order.id,
                OrderItemsUpdateRequest(
                    items=[
                        OrderItemInput(product_id="widget", product_name="Widget", quantity=Decimal("1"))
                    ]
                ),
                preparer,
            )


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestLifecycleActions:
    """Test the signed lifecycle actions and their audit records."""

    async def test_send_records_audit_and_event(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        publisher: InMemoryChangePublisher,
    ) -> None:
        order = await draft_order()

        result = await service.send(order.id, requester)

        assert result.outcome == TransitionOutcome.APPLIED
        audit = await service.get_audit(order.id)
        assert audit.current_status == OrderStatus.SENT
        assert audit.history_statuses() == [OrderStatus.SENT]
        assert audit.sent_signature.actor_id == requester.actor_id
        assert audit.sent_signature.position_title == "Store manager"
        assert publisher.events[-1].event == "order.sent"
        assert publisher.events[-1].site_ids == [order.from_site_id, order.to_site_id]

    async def test_concurrent_accept_resigns_stage(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        preparer: Actor,
        second_preparer: Actor,
    ) -> None:
        order = await draft_order()
        await service.send(order.id, requester)

        first = await service.accept(order.id, preparer)
        second = await service.accept(order.id, second_preparer)

        assert first.outcome == TransitionOutcome.APPLIED
        assert second.outcome == TransitionOutcome.RESIGNED
        audit = await service.get_audit(order.id)
        assert audit.history_statuses() == [OrderStatus.SENT, OrderStatus.ASSEMBLING]
        assert audit.assembling_signature.actor_id == second_preparer.actor_id

    async def test_mark_ready_sets_ready_signature(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await draft_order()
        await service.send(order.id, requester)
        await service.accept(order.id, preparer)

        result = await service.mark_ready(order.id, preparer)

        assert result.order.status == OrderStatus.ASSEMBLING
        audit = await service.get_audit(order.id)
        assert audit.ready_signature.actor_id == preparer.actor_id
        assert audit.ready_signature.image_blob == preparer.signature_image
        assert audit.history_statuses() == [OrderStatus.SENT, OrderStatus.ASSEMBLING]

    async def test_cancel_with_reason(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await draft_order()
        await service.send(order.id, requester)

        result = await service.cancel(order.id, preparer, reason="Discontinued")

        assert result.order.status == OrderStatus.CANCELLED
        assert result.order.cancel_reason == "Discontinued"
        audit = await service.get_audit(order.id)
        assert audit.history_statuses() == [OrderStatus.SENT, OrderStatus.CANCELLED]

    async def test_cancel_in_transit_rejected(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()

        with pytest.raises(InvalidTransition) as exc_info:
            await service.cancel(order.id, requester)

        assert exc_info.value.allowed == ["received"]

    async def test_unknown_order(self, service: OrderService, requester: Actor) -> None:
        with pytest.raises(NotFound):
            await service.send("missing-order", requester)


# ============================================================================
# Assembly Tests
# ============================================================================


class TestRecordAssembly:
    """Test assembled quantity recording."""

    async def test_assembly_before_acceptance_rejected(
        self, service: OrderService, draft_order, preparer: Actor
    ) -> None:
        order = await draft_order()

        with pytest.raises(InvalidTransition):
            await service.record_assembly(
                order.id,
                AssemblyRequest(
                    lines=[AssemblyLine(item_id=order.items[0].id, assembled_quantity=Decimal("1"))]
                ),
                preparer,
            )

    async def test_assembly_statuses(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await draft_order()
        await service.send(order.id, requester)
        await service.accept(order.id, preparer)
        widget, gadget = order.items

        updated = await service.record_assembly(
            order.id,
            AssemblyRequest(
                lines=[
                    AssemblyLine(item_id=widget.id, assembled_quantity=Decimal("10")),
                    AssemblyLine(
                        item_id=gadget.id,
                        assembled_quantity=Decimal("0"),
                        not_available_reason="Out of stock",
                    ),
                ]
            ),
            preparer,
        )

        assert _item(updated, "widget").status == ItemStatus.AVAILABLE
        assert _item(updated, "widget").assembled_by == preparer.actor_id
        assert _item(updated, "gadget").status == ItemStatus.NOT_AVAILABLE
        assert _item(updated, "gadget").not_available_reason == "Out of stock"

    async def test_requester_cannot_assemble(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await draft_order()
        await service.send(order.id, requester)
        await service.accept(order.id, preparer)

        with pytest.raises(NotAuthorized):
            await service.record_assembly(
                order.id,
                AssemblyRequest(
                    lines=[AssemblyLine(item_id=order.items[0].id, assembled_quantity=Decimal("1"))]
                ),
                requester,
            )

    async def test_unknown_line_rejected(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await draft_order()
        await service.send(order.id, requester)
        await service.accept(order.id, preparer)

        with pytest.raises(OrderValidationError):
            await service.record_assembly(
                order.id,
                AssemblyRequest(
                    lines=[AssemblyLine(item_id="not-a-line", assembled_quantity=Decimal("1"))]
                ),
                preparer,
            )

    async def test_assembled_above_requested_rejected(
        self,
        service: OrderService,
        draft_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await draft_order()
        await service.send(order.id, requester)
        await service.accept(order.id, preparer)

        with pytest.raises(OrderValidationError):
            await service.record_assembly(
                order.id,
                AssemblyRequest(
                    lines=[AssemblyLine(item_id=order.items[0].id, assembled_quantity=Decimal("99"))]
                ),
                preparer,
            )
        stored = await service.get_order(order.id)
        assert stored.items[0].assembled_quantity is None


# ============================================================================
# Reception Tests
# ============================================================================


class TestReceive:
    """Test reception, reconciliation and backorder queueing."""

    async def test_receive_partial_order(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()

        result = await service.receive(order.id, requester)

        assert result.outcome == TransitionOutcome.APPLIED
        assert result.order.status == OrderStatus.RECEIVED
        assert result.order.received_by == requester.actor_id
        assert _item(result.order, "widget").received_quantity == Decimal("10")
        assert _item(result.order, "widget").status == ItemStatus.DELIVERED
        assert _item(result.order, "gadget").received_quantity == Decimal("3")

        document = await service.get_reconciliation(order.id)
        assert document.id == result.reconciliation_document_id
        assert [i["product_id"] for i in document.items_delivered] == ["widget"]
        assert [i["product_id"] for i in document.items_partial] == ["gadget"]
        assert document.items_returned == []
        assert document.items_not_received == []
        assert document.receiver_signature.actor_id == requester.actor_id
        assert document.assembled_by_signature.image_blob == "data:image/png;base64,AAAA"

        assert len(result.backorder_items) == 1
        backorder = result.backorder_items[0]
        assert backorder.product_id == "gadget"
        assert backorder.quantity == Decimal("2")
        assert backorder.reason == "Not received"
        assert backorder.origin_order_id == order.id
        assert backorder.id == shortfall_item_id_for(order.id, _item(order, "gadget").id)

        pending = await service.backorders.pending_quantities(requester.site_id)
        assert pending == {"gadget": Decimal("2")}

    async def test_receive_with_returns_and_missing_lines(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()
        widget, gadget = _item(order, "widget"), _item(order, "gadget")

        result = await service.receive(
            order.id,
            requester,
            ReceiveRequest(
                lines=[
                    ReceiptLine(item_id=widget.id, return_reason="Wrong model"),
                    ReceiptLine(item_id=gadget.id, not_received_reason="Lost in transit"),
                ],
                reception_notes="Box damaged",
            ),
        )

        assert _item(result.order, "widget").status == ItemStatus.RETURNED
        assert _item(result.order, "gadget").status == ItemStatus.NOT_RECEIVED
        document = await service.get_reconciliation(order.id)
        assert [i["product_id"] for i in document.items_returned] == ["widget"]
        assert [i["product_id"] for i in document.items_not_received] == ["gadget"]
        assert document.reception_notes == "Box damaged"

        queued = {item.product_id: item for item in result.backorder_items}
        assert queued["widget"].quantity == Decimal("10")
        assert queued["widget"].reason == "Wrong model"
        assert queued["gadget"].quantity == Decimal("5")
        assert queued["gadget"].reason == "Lost in transit"

    async def test_short_receipt_queues_missing_units(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()
        widget = _item(order, "widget")

        result = await service.receive(
            order.id,
            requester,
            ReceiveRequest(lines=[ReceiptLine(item_id=widget.id, received_quantity=Decimal("7"))]),
        )

        assert _item(result.order, "widget").status == ItemStatus.DELIVERED
        document = await service.get_reconciliation(order.id)
        assert [i["product_id"] for i in document.items_delivered] == ["widget"]

        queued = {item.product_id: item for item in result.backorder_items}
        assert queued["widget"].quantity == Decimal("3")
        assert queued["widget"].reason == "Partial reception: received 7 of 10"
        assert queued["widget"].id == shortfall_item_id_for(order.id, widget.id)
        assert queued["gadget"].quantity == Decimal("2")
        assert queued["gadget"].reason == "Not received"

        pending = await service.backorders.pending_quantities(requester.site_id)
        assert pending == {"widget": Decimal("3"), "gadget": Decimal("2")}

    async def test_receive_unknown_line_rejected(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()

        with pytest.raises(OrderValidationError):
            await service.receive(
                order.id,
                requester,
                ReceiveRequest(lines=[ReceiptLine(item_id="not-a-line")]),
            )
        assert (await service.get_order(order.id)).status == OrderStatus.IN_TRANSIT

    async def test_preparer_cannot_receive(
        self, service: OrderService, in_transit_order, preparer: Actor
    ) -> None:
        order = await in_transit_order()

        with pytest.raises(NotAuthorized):
            await service.receive(order.id, preparer)

    async def test_second_receive_rejected_without_duplicates(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()
        await service.receive(order.id, requester)

        with pytest.raises(InvalidTransition):
            await service.receive(order.id, requester)

        queue = await service.backorders.get_active_queue(requester.site_id)
        assert len(queue.items) == 1

    async def test_audit_after_reception(
        self, service: OrderService, in_transit_order, requester: Actor, courier: Actor
    ) -> None:
        order = await in_transit_order()
        await service.receive(order.id, requester)

        audit = await service.get_audit(order.id)

        assert audit.current_status == OrderStatus.RECEIVED
        assert audit.history_statuses() == [
            OrderStatus.SENT,
            OrderStatus.ASSEMBLING,
            OrderStatus.IN_TRANSIT,
            OrderStatus.RECEIVED,
        ]
        assert audit.in_transit_signature.actor_id == courier.actor_id


# ============================================================================
# Reconciliation Access Tests
# ============================================================================


class TestReconciliationAccess:
    """Test reading and regenerating reconciliation documents."""

    async def test_generation_is_idempotent(
        self,
        service: OrderService,
        in_transit_order,
        requester: Actor,
        preparer: Actor,
    ) -> None:
        order = await in_transit_order()
        result = await service.receive(order.id, requester)

        first = await service.generate_reconciliation(order.id, requester)
        second = await service.generate_reconciliation(order.id, preparer)

        assert first == second == result.reconciliation_document_id
        assert first == reconciliation_document_id(order.id)
        documents = await service.reconciliation.list_for_site(requester.site_id)
        assert [d.id for d in documents] == [first]

    async def test_outsider_cannot_generate(
        self, service: OrderService, in_transit_order, requester: Actor, outsider: Actor
    ) -> None:
        order = await in_transit_order()
        await service.receive(order.id, requester)

        with pytest.raises(NotAuthorized):
            await service.generate_reconciliation(order.id, outsider)

    async def test_missing_document(
        self, service: OrderService, in_transit_order
    ) -> None:
        order = await in_transit_order()

        with pytest.raises(NotFound):
            await service.get_reconciliation(order.id)


# ============================================================================
# Shortfall Report Tests
# ============================================================================


class TestReportShortfall:
    """Test manual backorder reports."""

    async def test_report_with_quantity(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()
        await service.receive(order.id, requester)

        item = await service.report_shortfall(
            EnqueueRequest(
                origin_order_id=order.id,
                item_id=_item(order, "widget").id,
                quantity=Decimal("1"),
                reason="Damaged unit",
            ),
            requester,
        )

        assert item.quantity == Decimal("1")
        assert item.reason == "Damaged unit"
        pending = await service.backorders.pending_quantities(requester.site_id)
        assert pending == {"gadget": Decimal("2"), "widget": Decimal("1")}

    async def test_report_without_outstanding_quantity(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()
        await service.receive(order.id, requester)

        with pytest.raises(OrderValidationError):
            await service.report_shortfall(
                EnqueueRequest(origin_order_id=order.id, item_id=_item(order, "widget").id),
                requester,
            )

    async def test_report_defaults_to_units_lost_in_transit(
        self, service: OrderService, in_transit_order, requester: Actor
    ) -> None:
        order = await in_transit_order()
        widget = _item(order, "widget")
        await service.receive(
            order.id,
            requester,
            ReceiveRequest(lines=[ReceiptLine(item_id=widget.id, received_quantity=Decimal("9"))]),
        )

        item = await service.report_shortfall(
            EnqueueRequest(origin_order_id=order.id, item_id=widget.id), requester
        )

        assert item.quantity == Decimal("1")
        assert item.reason == "Partial reception: received 9 of 10"

    async def test_preparer_cannot_report(
        self, service: OrderService, in_transit_order, requester: Actor, preparer: Actor
    ) -> None:
        order = await in_transit_order()
        await service.receive(order.id, requester)

        with pytest.raises(NotAuthorized):
            await service.report_shortfall(
                EnqueueRequest(
                    origin_order_id=order.id,
                    item_id=_item(order, "gadget").id,
                    quantity=Decimal("1"),
                ),
                preparer,
            )
