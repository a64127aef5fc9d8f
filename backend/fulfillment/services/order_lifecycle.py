# Overview: Order status state machine; the single writer of Order.status.

"""
Order Lifecycle Service

================================================================================
STATE MACHINE
================================================================================

    pending -> (payment) -> paid -> in_packing -> packed -> shipped -> delivered
                             |          |           |         |
                             +----------+-----------+---------+--> cancelled

    pending:    awaiting payment confirmation. Checkout creates orders
                directly at 'paid' because payment is captured first.
    delivered, cancelled: terminal.

TRANSITIONS AND SIDE EFFECTS:
    paid       -> in_packing  status only; the packing session is opened
                              separately and may fail without undoing this
    in_packing -> packed      every line item fully scanned and the admin
                              confirmed; stamps packed_at, completes the
                              packing session
    packed     -> shipped     shipping_company + tracking_id, or manual mode;
                              stamps shipped_at
    shipped    -> delivered   stamps delivered_at
    paid/in_packing/packed/shipped -> cancelled
                              non-empty reason; stamps cancelled_at, cancels
                              any open packing session. Stock is restored
                              only when RESTOCK_ON_CANCEL is enabled.

RULES:
1. Anything not listed above raises InvalidTransition. Nothing is coerced.
2. in_packing -> in_packing is an idempotent resume, not an error.
3. from_status is a compare-and-set guard: if the order moved on since the
   caller read it, the request is rejected.
4. Collaborators never assign Order.status themselves.
================================================================================
"""

from __future__ import annotations

from typing import Mapping

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Order, PackingSession, StockMovement
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError, optional_text
from . import packing_service, stock_ledger
from .concurrency import lock_for_update, run_with_retry


ORDER_STATUSES = ("pending", "paid", "in_packing", "packed", "shipped", "delivered", "cancelled")
VALID_STATUSES = set(ORDER_STATUSES)
TERMINAL_STATUSES = {"delivered", "cancelled"}
CANCELLABLE_STATUSES = {"paid", "in_packing", "packed", "shipped"}

SHIPPING_MODE_COURIER = "courier"
SHIPPING_MODE_MANUAL = "manual"
MANUAL_SHIPPING_COMPANY = "In-store / hand delivery"

LEGAL_TRANSITIONS = {
    ("paid", "in_packing"),
    ("in_packing", "packed"),
    ("packed", "shipped"),
    ("shipped", "delivered"),
} | {(status, "cancelled") for status in CANCELLABLE_STATUSES}


class LifecycleError(Exception):
    """Raised for order lifecycle errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InvalidTransition(LifecycleError):
    """A status change outside the legal transition table."""
    def __init__(self, order_id: int, current: str, requested: str, expected: str | None = None):
        self.order_id = order_id
        self.current = current
        self.requested = requested
        self.expected = expected
        if expected is not None and expected != current:
            message = (
                f"Order {order_id} is '{current}', not '{expected}'; "
                f"cannot move it to '{requested}'"
            )
        else:
            message = f"Cannot move order {order_id} from '{current}' to '{requested}'"
        super().__init__(
            message,
            details={
                "order_id": order_id,
                "current_status": current,
                "requested_status": requested,
                "expected_status": expected,
            },
        )


class TransitionPreconditionError(ValidationError):
    """The transition is legal but its required input is missing."""


def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Must be one of: {', '.join(ORDER_STATUSES)}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    validate_status(from_status)
    validate_status(to_status)
    if from_status == to_status == "in_packing":
        return True
    return (from_status, to_status) in LEGAL_TRANSITIONS


def allowed_transitions(status: str) -> list[str]:
    validate_status(status)
    return [to for to in ORDER_STATUSES if (status, to) in LEGAL_TRANSITIONS]


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _apply_packed(order: Order, payload: Mapping) -> int | None:
    if not payload.get("confirm"):
        raise TransitionPreconditionError("Packing must be confirmed (confirm=true)")

    progress = payload.get("scan_progress")
    if progress is not None:
        progress = packing_service.validate_progress(order, progress)

    session = packing_service.get_active_session(order.id)
    engine = packing_service.build_engine(order, session, progress=progress)
    if not engine.is_fully_scanned:
        raise TransitionPreconditionError(
            f"Order {order.id} is not fully scanned "
            f"({engine.total_scanned}/{engine.total_required})"
        )

    order.packed_at = utcnow()
    if session is not None:
        packing_service.complete(session.id, scan_progress=engine.progress(), commit=False)
        return session.id
    return None


def _apply_shipped(order: Order, payload: Mapping) -> int | None:
    if payload.get("manual"):
        order.shipping_mode = SHIPPING_MODE_MANUAL
        order.shipping_company = optional_text(payload.get("shipping_company")) or MANUAL_SHIPPING_COMPANY
        order.tracking_id = optional_text(payload.get("tracking_id"))
    else:
        company = optional_text(payload.get("shipping_company"))
        tracking_id = optional_text(payload.get("tracking_id"))
        if not company or not tracking_id:
            raise TransitionPreconditionError(
                "shipping_company and tracking_id are required (or set manual=true)"
            )
        order.shipping_mode = SHIPPING_MODE_COURIER
        order.shipping_company = company
        order.tracking_id = tracking_id
    order.shipped_at = utcnow()
    return None


def _apply_delivered(order: Order, payload: Mapping) -> int | None:
    order.delivered_at = utcnow()
    return None


def _restock_cancelled_order(order: Order) -> None:
    """Give back exactly what this order's checkout took from stock."""
    for item in order.items:
        deducted = (
            db.session.query(StockMovement.id)
            .filter_by(order_id=order.id, product_id=item.product_id, movement_type="SALE")
            .first()
        )
        if deducted is None:
            continue
        stock_ledger.increment(
            item.product_id,
            item.quantity,
            movement_type="CANCEL_RESTOCK",
            order_id=order.id,
            note=f"Order #{order.id} cancelled",
            commit=False,
        )


def _apply_cancelled(order: Order, payload: Mapping) -> int | None:
    reason = optional_text(payload.get("reason"))
    if not reason:
        raise TransitionPreconditionError("A cancellation reason is required")

    order.cancellation_reason = reason
    order.cancelled_at = utcnow()

    session = packing_service.get_active_session(order.id)
    if session is not None:
        packing_service.cancel(session.id, commit=False)

    if current_app.config.get("RESTOCK_ON_CANCEL"):
        _restock_cancelled_order(order)
    return session.id if session is not None else None


# Each side effect returns the id of the packing session it closed, if any.
# in_packing has none: the status change is the whole transition.
_SIDE_EFFECTS = {
    "packed": _apply_packed,
    "shipped": _apply_shipped,
    "delivered": _apply_delivered,
    "cancelled": _apply_cancelled,
}


def transition(
    order_id: int,
    from_status: str | None,
    to_status: str,
    payload: Mapping | None = None,
) -> Order:
    """
    Move an order to to_status, applying that transition's side effect.

    from_status=None means "whatever the order is now". Raises
    InvalidTransition for illegal moves (or a stale from_status) and
    TransitionPreconditionError when the payload does not satisfy the
    transition.
    """
    validate_status(to_status)
    if from_status is not None:
        validate_status(from_status)
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValidationError("payload must be an object")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        current = order.status
        if from_status is not None and from_status != current:
            raise InvalidTransition(order.id, current, to_status, expected=from_status)

        if current == to_status == "in_packing":
            return order

        if not can_transition(current, to_status):
            raise InvalidTransition(order.id, current, to_status, expected=from_status)

        side_effect = _SIDE_EFFECTS.get(to_status)
        closed_session_id = side_effect(order, payload) if side_effect else None
        order.status = to_status
        db.session.commit()
        if closed_session_id is not None:
            packing_service.forget_unsaved(closed_session_id)

        current_app.logger.info("Order %s moved %s -> %s", order.id, current, to_status)
        return order

    return run_with_retry(_op)


def enter_packing(order_id: int, *, admin_email: str | None = None) -> tuple[Order, PackingSession | None]:
    """
    paid -> in_packing (or resume an order already in_packing), then open
    or resume its packing session.

    The status change stands even if the session cannot be stored; packing
    then runs on in-memory state only and the session is None.
    """
    order = transition(order_id, None, "in_packing")
    try:
        session = packing_service.resume_or_create(order.id, admin_email=admin_email)
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.warning(
            "Order %s is in_packing but its packing session could not be stored", order_id, exc_info=True
        )
        session = None
    return order, session


def complete_packing(order_id: int, scan_progress: Mapping | None = None) -> Order:
    return transition(order_id, "in_packing", "packed", {"confirm": True, "scan_progress": scan_progress})


def ship_order(
    order_id: int,
    *,
    shipping_company: str | None = None,
    tracking_id: str | None = None,
    manual: bool = False,
) -> Order:
    return transition(
        order_id,
        "packed",
        "shipped",
        {"shipping_company": shipping_company, "tracking_id": tracking_id, "manual": manual},
    )


def deliver_order(order_id: int) -> Order:
    return transition(order_id, "shipped", "delivered")


def cancel_order(order_id: int, reason: str) -> Order:
    return transition(order_id, None, "cancelled", {"reason": reason})
