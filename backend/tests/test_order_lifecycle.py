"""
Tests for the order lifecycle state machine.

Covers the full transition table (every from/to pair), side effects of
each transition and the stale from_status guard.
"""

import pytest
from sqlalchemy.exc import OperationalError

from fulfillment.extensions import db
from fulfillment.models import StockMovement
from fulfillment.services import checkout_service, order_lifecycle, packing_service, stock_ledger
from fulfillment.services.order_lifecycle import (
    LEGAL_TRANSITIONS,
    ORDER_STATUSES,
    InvalidTransition,
    TransitionPreconditionError,
)
from fulfillment.validation import ValidationError


def _satisfying_payload(order, to_status):
    if to_status == "packed":
        return {
            "confirm": True,
            "scan_progress": {item.item_key: item.quantity for item in order.items},
        }
    if to_status == "shipped":
        return {"shipping_company": "Blue Dart", "tracking_id": "BD123456789IN"}
    if to_status == "cancelled":
        return {"reason": "Customer request"}
    return {}


@pytest.fixture
def lines(make_product):
    saree = make_product(name="Kanjeevaram Saree", barcode="A1")
    stole = make_product(name="Block Print Stole", barcode="B1")
    return [(saree, 2), (stole, 1)]


@pytest.mark.parametrize("from_status", ORDER_STATUSES)
@pytest.mark.parametrize("to_status", ORDER_STATUSES)
def test_transition_table_is_closed(make_order, lines, from_status, to_status):
    order = make_order(lines, status=from_status)
    legal = (from_status, to_status) in LEGAL_TRANSITIONS
    idempotent = from_status == to_status == "in_packing"

    if legal or idempotent:
        moved = order_lifecycle.transition(
            order.id, from_status, to_status, _satisfying_payload(order, to_status)
        )
        assert moved.status == to_status
    else:
        with pytest.raises(InvalidTransition):
            order_lifecycle.transition(
                order.id, from_status, to_status, _satisfying_payload(order, to_status)
            )
        db.session.refresh(order)
        assert order.status == from_status


def test_pending_cannot_move_to_paid(make_order, lines):
    order = make_order(lines, status="pending")
    assert not order_lifecycle.can_transition("pending", "paid")
    with pytest.raises(InvalidTransition):
        order_lifecycle.transition(order.id, "pending", "paid")


def test_terminal_statuses_have_no_exits():
    assert order_lifecycle.allowed_transitions("delivered") == []
    assert order_lifecycle.allowed_transitions("cancelled") == []
    assert order_lifecycle.allowed_transitions("paid") == ["in_packing", "cancelled"]


def test_stale_from_status_is_rejected(make_order, lines):
    order = make_order(lines, status="packed")

    with pytest.raises(InvalidTransition) as exc_info:
        order_lifecycle.transition(order.id, "paid", "in_packing")

    assert exc_info.value.current == "packed"
    assert exc_info.value.details["expected_status"] == "paid"


def test_unknown_status_is_a_validation_error(make_order, lines):
    order = make_order(lines, status="paid")
    with pytest.raises(ValueError):
        order_lifecycle.transition(order.id, "paid", "teleported")


def test_non_object_payload_is_a_validation_error(make_order, lines):
    order = make_order(lines, status="paid")

    with pytest.raises(ValidationError):
        order_lifecycle.transition(order.id, "paid", "cancelled", ["Customer request"])

    db.session.refresh(order)
    assert order.status == "paid"


class TestPacking:
    def test_enter_packing_opens_session(self, make_order, lines):
        order = make_order(lines, status="paid")

        moved, session = order_lifecycle.enter_packing(order.id, admin_email="admin@example.com")

        assert moved.status == "in_packing"
        assert session is not None
        assert session.is_active

    def test_enter_packing_twice_resumes(self, make_order, lines):
        order = make_order(lines, status="paid")
        _, first = order_lifecycle.enter_packing(order.id)
        moved, second = order_lifecycle.enter_packing(order.id)

        assert moved.status == "in_packing"
        assert first.id == second.id

    def test_packed_requires_confirmation(self, make_order, lines):
        order = make_order(lines, status="in_packing")
        payload = _satisfying_payload(order, "packed")
        payload["confirm"] = False

        with pytest.raises(TransitionPreconditionError):
            order_lifecycle.transition(order.id, "in_packing", "packed", payload)

    def test_packed_requires_full_scan(self, make_order, lines):
        order = make_order(lines, status="in_packing")
        short = {order.items[0].item_key: 2}

        with pytest.raises(TransitionPreconditionError):
            order_lifecycle.transition(
                order.id, "in_packing", "packed", {"confirm": True, "scan_progress": short}
            )
        db.session.refresh(order)
        assert order.status == "in_packing"
        assert order.packed_at is None

    def test_packed_uses_saved_session_progress(self, make_order, lines):
        order = make_order(lines, status="paid")
        _, session = order_lifecycle.enter_packing(order.id)
        for code in ("A1", "A1", "B1"):
            packing_service.record_scan(session.id, code)

        packed = order_lifecycle.complete_packing(order.id)

        assert packed.status == "packed"
        assert packed.packed_at is not None
        db.session.refresh(session)
        assert session.status == "completed"
        assert session.packing_duration_minutes is not None

    def test_packed_rejects_non_object_scan_progress(self, make_order, lines):
        order = make_order(lines, status="in_packing")

        with pytest.raises(ValidationError):
            order_lifecycle.transition(
                order.id, "in_packing", "packed", {"confirm": True, "scan_progress": [2, 1]}
            )
        db.session.refresh(order)
        assert order.status == "in_packing"

    def test_packed_counts_progress_whose_save_failed(self, make_order, lines, monkeypatch):
        order = make_order(lines, status="paid")
        _, session = order_lifecycle.enter_packing(order.id)
        packing_service.record_scan(session.id, "A1")
        packing_service.record_scan(session.id, "B1")

        def failing_commit(self):
            raise OperationalError("UPDATE packing_sessions", {}, Exception("database is locked"))

        monkeypatch.setattr(type(db.session()), "commit", failing_commit)
        _result, _engine, saved = packing_service.record_scan(session.id, "A1")
        monkeypatch.undo()
        assert saved is False

        packed = order_lifecycle.complete_packing(order.id)

        assert packed.status == "packed"
        assert packing_service.unsaved_progress(session.id) is None
        db.session.refresh(session)
        assert session.scan_progress[order.items[0].item_key] == 2


class TestShipping:
    def test_courier_needs_company_and_tracking(self, make_order, lines):
        order = make_order(lines, status="packed")
        with pytest.raises(TransitionPreconditionError):
            order_lifecycle.ship_order(order.id, shipping_company="Blue Dart")

    def test_courier_shipment(self, make_order, lines):
        order = make_order(lines, status="packed")
        shipped = order_lifecycle.ship_order(
            order.id, shipping_company="Blue Dart", tracking_id="BD1"
        )
        assert shipped.shipping_mode == "courier"
        assert shipped.tracking_id == "BD1"
        assert shipped.shipped_at is not None

    def test_manual_shipment(self, make_order, lines):
        order = make_order(lines, status="packed")
        shipped = order_lifecycle.ship_order(order.id, manual=True)
        assert shipped.shipping_mode == "manual"
        assert shipped.shipping_company

    def test_deliver(self, make_order, lines):
        order = make_order(lines, status="shipped")
        delivered = order_lifecycle.deliver_order(order.id)
        assert delivered.status == "delivered"
        assert delivered.delivered_at is not None


class TestCancellation:
    def test_reason_required(self, make_order, lines):
        order = make_order(lines, status="paid")
        with pytest.raises(TransitionPreconditionError):
            order_lifecycle.cancel_order(order.id, "   ")

    def test_cancel_closes_packing_session(self, make_order, lines):
        order = make_order(lines, status="paid")
        _, session = order_lifecycle.enter_packing(order.id)

        cancelled = order_lifecycle.cancel_order(order.id, "Fabric flaw found")

        assert cancelled.status == "cancelled"
        assert cancelled.cancellation_reason == "Fabric flaw found"
        assert packing_service.get_active_session(order.id) is None

    def _placed_order(self, lines, customer, cart_line):
        cart = [cart_line(product, qty) for product, qty in lines]
        return checkout_service.place_order(cart, customer, "pay_cancel_test").order

    def test_cancel_does_not_restock_by_default(self, lines, customer, cart_line):
        order = self._placed_order(lines, customer, cart_line)
        saree = lines[0][0]

        order_lifecycle.cancel_order(order.id, "Customer request")

        assert stock_ledger.get_quantity(saree.id) == 3

    def test_cancel_restocks_when_enabled(self, app, lines, customer, cart_line, monkeypatch):
        monkeypatch.setitem(app.config, "RESTOCK_ON_CANCEL", True)
        order = self._placed_order(lines, customer, cart_line)
        saree, stole = lines[0][0], lines[1][0]

        order_lifecycle.cancel_order(order.id, "Customer request")

        assert stock_ledger.get_quantity(saree.id) == 5
        assert stock_ledger.get_quantity(stole.id) == 5
        restocks = db.session.query(StockMovement).filter_by(
            order_id=order.id, movement_type="CANCEL_RESTOCK"
        ).count()
        assert restocks == 2
