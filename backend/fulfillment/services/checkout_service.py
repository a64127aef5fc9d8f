"""
Checkout Service - cart validation and order placement

WHY: The only place where orders and stock are created/changed together.
Steps:
    1. re-fetch every product in the cart
    2. verify stock for every line (all-or-nothing; no writes yet)
    3. snapshot line items (live name/barcode, the price the customer saw)
    4. create the order at 'paid'
    5. decrement stock through the ledger guard

Steps 4-5 share one DB transaction. If a decrement still fails at step 5
(stock taken by a concurrent checkout after step 2) the payment has already
been captured, so the order is kept, flagged stock_reconciliation_required
and logged for an operator. The caller can tell this apart from a
pre-creation failure via PlacedOrder.shortfalls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, OrderItem, Product
from ..validation import (
    ValidationError,
    coerce_non_negative_int,
    coerce_positive_int,
    optional_text,
    require_text,
)
from . import stock_ledger
from .concurrency import lock_for_update, run_with_retry
from .stock_ledger import InsufficientStock


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    price_at_add_time_cents: int


@dataclass(frozen=True)
class CartQuote:
    items: list[dict]
    total_amount_cents: int

    def to_dict(self) -> dict:
        return {"items": self.items, "total_amount_cents": self.total_amount_cents}


@dataclass
class PlacedOrder:
    order: Order
    created: bool = True
    shortfalls: list[dict] = field(default_factory=list)

    @property
    def reconciliation_required(self) -> bool:
        return bool(self.shortfalls)

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "created": self.created,
            "reconciliation_required": self.reconciliation_required,
            "shortfalls": list(self.shortfalls),
        }


def parse_cart(cart: Iterable) -> list[CartLine]:
    if cart is None or isinstance(cart, (str, bytes, Mapping)):
        raise ValidationError("cart must be a list of lines")

    lines: list[CartLine] = []
    seen: set[int] = set()
    for i, raw in enumerate(cart):
        if isinstance(raw, CartLine):
            line = raw
        elif isinstance(raw, Mapping):
            line = CartLine(
                product_id=coerce_positive_int(raw.get("product_id"), f"cart[{i}].product_id"),
                quantity=coerce_positive_int(raw.get("quantity"), f"cart[{i}].quantity"),
                price_at_add_time_cents=coerce_non_negative_int(
                    raw.get("price_at_add_time_cents"), f"cart[{i}].price_at_add_time_cents"
                ),
            )
        else:
            raise ValidationError(f"cart[{i}] must be an object")

        if line.product_id in seen:
            raise ValidationError(f"Product {line.product_id} appears more than once in the cart")
        seen.add(line.product_id)
        lines.append(line)

    if not lines:
        raise ValidationError("Cart is empty")
    return lines


def parse_customer(customer: Mapping | None) -> dict:
    if not isinstance(customer, Mapping):
        raise ValidationError("customer details are required")
    return {
        "customer_name": require_text(customer.get("name"), "customer.name"),
        "customer_phone": require_text(customer.get("phone"), "customer.phone"),
        "customer_email": optional_text(customer.get("email")),
        "shipping_address": optional_text(customer.get("address")),
    }


def _load_products(lines: list[CartLine], *, lock: bool = False) -> dict[int, Product]:
    ids = [line.product_id for line in lines]
    query = db.session.query(Product).filter(Product.id.in_(ids)).order_by(Product.id)
    if lock:
        query = lock_for_update(query)
    products = {p.id: p for p in query.all()}

    missing = [pid for pid in ids if pid not in products]
    if missing:
        raise ValidationError(f"Unknown product(s) in cart: {', '.join(str(m) for m in missing)}")
    return products


def _check_stock(lines: list[CartLine], products: dict[int, Product]) -> None:
    for line in lines:
        available = products[line.product_id].quantity
        if available < line.quantity:
            raise InsufficientStock(line.product_id, available, line.quantity)


def _snapshot(lines: list[CartLine], products: dict[int, Product]) -> list[dict]:
    return [
        {
            "product_id": line.product_id,
            "position": position,
            "name": products[line.product_id].name,
            "price_cents": line.price_at_add_time_cents,
            "quantity": line.quantity,
            "barcode": products[line.product_id].barcode,
        }
        for position, line in enumerate(lines)
    ]


def validate_cart(cart) -> CartQuote:
    """
    Steps 1-3 without writing anything. Run this before charging the
    customer so a short cart is refused before payment.
    """
    lines = parse_cart(cart)
    products = _load_products(lines)
    _check_stock(lines, products)
    items = _snapshot(lines, products)
    return CartQuote(
        items=items,
        total_amount_cents=sum(i["price_cents"] * i["quantity"] for i in items),
    )


def _find_by_payment_reference(payment_reference: str) -> Order | None:
    return db.session.query(Order).filter_by(payment_reference=payment_reference).first()


def place_order(cart, customer, payment_reference) -> PlacedOrder:
    """
    Create a paid order from a cart and take its stock.

    Raises ValidationError or InsufficientStock before anything is written.
    A payment_reference that already has an order returns that order
    (created=False) and touches nothing.
    """
    lines = parse_cart(cart)
    customer_fields = parse_customer(customer)
    payment_reference = require_text(payment_reference, "payment_reference")

    def _op():
        existing = _find_by_payment_reference(payment_reference)
        if existing is not None:
            return PlacedOrder(order=existing, created=False)

        products = _load_products(lines, lock=True)
        _check_stock(lines, products)
        snapshot = _snapshot(lines, products)

        order = Order(
            status="paid",
            payment_reference=payment_reference,
            total_amount_cents=sum(i["price_cents"] * i["quantity"] for i in snapshot),
            **customer_fields,
        )
        order.items = [OrderItem(**item) for item in snapshot]
        db.session.add(order)
        db.session.flush()

        shortfalls = []
        for line in lines:
            try:
                stock_ledger.decrement(
                    line.product_id,
                    line.quantity,
                    order_id=order.id,
                    note=f"Order #{order.id}",
                    commit=False,
                )
            except InsufficientStock as exc:
                shortfalls.append(exc.to_dict())

        if shortfalls:
            order.stock_reconciliation_required = True

        db.session.commit()

        if shortfalls:
            current_app.logger.error(
                "Order %s was created but stock could not be deducted for %s; "
                "manual reconciliation required",
                order.id,
                shortfalls,
            )
        return PlacedOrder(order=order, created=True, shortfalls=shortfalls)

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # Concurrent delivery of the same payment confirmation
        existing = _find_by_payment_reference(payment_reference)
        if existing is None:
            raise
        return PlacedOrder(order=existing, created=False)
