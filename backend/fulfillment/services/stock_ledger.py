# Overview: Stock ledger; the only code path allowed to change Product.quantity.

"""
Stock Ledger Invariants (authoritative)

- Product.quantity is never negative.
- Every mutation is a single conditional UPDATE; decrement re-checks the
  available quantity at write time (WHERE quantity >= :amount), so two
  checkouts racing for the same stock cannot oversell. Earlier
  pre-validation in checkout is advisory only.
- A rejected decrement has no effect at all.
- Each successful mutation appends a StockMovement row in the same DB
  transaction.
- Duplicate detection: case-insensitive exact name match first, then exact
  barcode match. The match type is reported so callers can offer
  "merge stock" vs "edit existing".
"""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, StockMovement
from ..validation import (
    ConflictError,
    NotFoundError,
    coerce_non_negative_int,
    coerce_positive_int,
    enforce_rules_product,
    require_text,
    optional_text,
)
from .concurrency import run_with_retry


DUPLICATE_BY_NAME = "name"
DUPLICATE_BY_BARCODE = "barcode"

_BASE36 = string.digits + string.ascii_uppercase


class StockLedgerError(Exception):
    """Raised for stock ledger operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientStock(StockLedgerError):
    """Requested quantity exceeds what is available at write time."""
    def __init__(self, product_id: int, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for product {product_id}: available {available}, requested {requested}",
            details=self.to_dict(),
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "available": self.available,
            "requested": self.requested,
        }


@dataclass(frozen=True)
class DuplicateMatch:
    product: Product
    duplicate_type: str

    def to_dict(self) -> dict:
        return {
            "duplicate_type": self.duplicate_type,
            "product": self.product.to_dict(),
        }


class DuplicateProductError(ConflictError):
    """
    A product with the same name or barcode already exists.

    Not a failure so much as a decision point: the caller either merges
    stock into the existing product (merge_stock) or edits it instead.
    """
    def __init__(self, match: DuplicateMatch):
        self.match = match
        super().__init__(
            f"Product already exists with the same {match.duplicate_type}: "
            f"{match.product.name!r} (id {match.product.id})"
        )


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def generate_barcode(prefix: str | None = None) -> str:
    """
    Barcode for a new product: prefix + base36 millisecond timestamp + 4
    random base36 characters, e.g. KKMF3QZ1K2A7B3.
    """
    if prefix is None:
        prefix = current_app.config.get("BARCODE_PREFIX", "KK")
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{prefix}{stamp}{suffix}"


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def get_quantity(product_id: int) -> int:
    quantity = db.session.execute(
        select(Product.quantity).where(Product.id == product_id)
    ).scalar()
    if quantity is None:
        raise NotFoundError(f"Product {product_id} not found")
    return int(quantity)


def _expire_cached_quantity(product_id: int) -> None:
    """Drop the stale in-session copy of quantity after a bulk UPDATE."""
    cached = db.session.identity_map.get(db.session.identity_key(Product, product_id))
    if cached is not None:
        db.session.expire(cached, ["quantity", "updated_at"])


def _record_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity_delta: int,
    quantity_after: int,
    order_id: int | None = None,
    note: str | None = None,
) -> StockMovement:
    movement = StockMovement(
        product_id=product_id,
        order_id=order_id,
        movement_type=movement_type,
        quantity_delta=quantity_delta,
        quantity_after=quantity_after,
        note=note,
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def _decrement_inner(
    product_id: int,
    amount: int,
    *,
    order_id: int | None,
    note: str | None,
) -> int:
    """Guarded check-and-decrement without commit or retry."""
    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.quantity >= amount)
        .values(quantity=Product.quantity - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        available = get_quantity(product_id)
        raise InsufficientStock(product_id, available, amount)

    _expire_cached_quantity(product_id)

    new_quantity = get_quantity(product_id)
    _record_movement(
        product_id=product_id,
        movement_type="SALE",
        quantity_delta=-amount,
        quantity_after=new_quantity,
        order_id=order_id,
        note=note,
    )
    return new_quantity


def decrement(
    product_id: int,
    amount,
    *,
    order_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> int:
    """
    Atomically subtract amount from a product's stock.

    Returns the new quantity. Raises InsufficientStock (no effect) when
    amount exceeds the quantity at the moment of the write.

    commit=False joins the caller's transaction (checkout); the caller owns
    commit/rollback and no retry is attempted here.
    """
    amount = coerce_positive_int(amount, "amount")

    if not commit:
        return _decrement_inner(product_id, amount, order_id=order_id, note=note)

    def _op():
        new_quantity = _decrement_inner(product_id, amount, order_id=order_id, note=note)
        db.session.commit()
        return new_quantity

    return run_with_retry(_op)


def _increment_inner(
    product_id: int,
    amount: int,
    *,
    movement_type: str,
    order_id: int | None,
    note: str | None,
) -> int:
    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(quantity=Product.quantity + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Product {product_id} not found")

    _expire_cached_quantity(product_id)

    new_quantity = get_quantity(product_id)
    _record_movement(
        product_id=product_id,
        movement_type=movement_type,
        quantity_delta=amount,
        quantity_after=new_quantity,
        order_id=order_id,
        note=note,
    )
    return new_quantity


def increment(
    product_id: int,
    amount,
    *,
    movement_type: str = "RESTOCK",
    order_id: int | None = None,
    note: str | None = None,
    commit: bool = True,
) -> int:
    """Unconditionally add amount to a product's stock. Returns the new quantity."""
    amount = coerce_positive_int(amount, "amount")

    if not commit:
        return _increment_inner(
            product_id, amount, movement_type=movement_type, order_id=order_id, note=note
        )

    def _op():
        new_quantity = _increment_inner(
            product_id, amount, movement_type=movement_type, order_id=order_id, note=note
        )
        db.session.commit()
        return new_quantity

    return run_with_retry(_op)


def merge_stock(product_id: int, amount) -> int:
    """Restock an existing product instead of creating a duplicate."""
    new_quantity = increment(
        product_id,
        amount,
        movement_type="RESTOCK",
        note="Merged from duplicate product entry",
    )
    current_app.logger.info(
        "Merged duplicate entry into product %s; quantity now %s", product_id, new_quantity
    )
    return new_quantity


def find_duplicate(
    name: str | None,
    barcode: str | None = None,
    *,
    exclude_id: int | None = None,
) -> DuplicateMatch | None:
    """
    Look for an existing product with the same name (case-insensitive,
    trimmed) or, failing that, the same barcode (exact, trimmed).
    """
    trimmed_name = (name or "").strip().lower()
    if trimmed_name:
        q = db.session.query(Product).filter(func.lower(func.trim(Product.name)) == trimmed_name)
        if exclude_id is not None:
            q = q.filter(Product.id != exclude_id)
        product = q.order_by(Product.id.asc()).first()
        if product is not None:
            return DuplicateMatch(product=product, duplicate_type=DUPLICATE_BY_NAME)

    trimmed_barcode = (barcode or "").strip()
    if trimmed_barcode:
        q = db.session.query(Product).filter(Product.barcode == trimmed_barcode)
        if exclude_id is not None:
            q = q.filter(Product.id != exclude_id)
        product = q.first()
        if product is not None:
            return DuplicateMatch(product=product, duplicate_type=DUPLICATE_BY_BARCODE)

    return None


def create_product(
    *,
    name,
    price_cents,
    quantity=0,
    barcode=None,
) -> Product:
    """
    Create a product after the duplicate check.

    Raises DuplicateProductError when a product with the same name or
    barcode exists; nothing is written in that case.
    """
    name = require_text(name, "name")
    price_cents = coerce_non_negative_int(price_cents, "price_cents")
    quantity = coerce_non_negative_int(quantity, "quantity")
    enforce_rules_product({"price_cents": price_cents, "quantity": quantity})
    barcode = optional_text(barcode)

    match = find_duplicate(name, barcode)
    if match is not None:
        raise DuplicateProductError(match)

    if barcode is None:
        barcode = generate_barcode()
        while db.session.query(Product.id).filter_by(barcode=barcode).first() is not None:
            barcode = generate_barcode()

    product = Product(name=name, barcode=barcode, price_cents=price_cents, quantity=quantity)
    db.session.add(product)
    try:
        db.session.flush()
        if quantity > 0:
            _record_movement(
                product_id=product.id,
                movement_type="INITIAL",
                quantity_delta=quantity,
                quantity_after=quantity,
                note="Opening stock",
            )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"Barcode {barcode!r} is already assigned to another product")

    return product


def list_products(page: int | None = None, per_page: int | None = None) -> dict:
    """Product listing ordered by name, with optional pagination."""
    base_query = db.session.query(Product).order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = base_query.all()
        return {"items": [p.to_dict() for p in products], "count": len(products)}

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def list_movements(product_id: int, limit: int = 200) -> list[StockMovement]:
    get_product(product_id)
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.desc())
        .limit(limit)
        .all()
    )
