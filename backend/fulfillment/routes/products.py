# Overview: Flask API routes for products and stock; parses input and returns JSON responses.

"""
Product and stock routes.

Stock is only ever changed through the ledger endpoints; there is no
route that writes Product.quantity directly.
"""
from flask import Blueprint, request, current_app

from ..models import Product
from ..services import stock_ledger
from ..services.stock_ledger import DuplicateProductError, InsufficientStock
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    ValidationError,
    ConflictError,
    NotFoundError,
)

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "barcode", "price_cents", "quantity"},
    required_on_create={"name", "price_cents"},
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products():
    """
    List products with optional pagination.

    Query params:
    - page: int (optional) - page number (1-indexed). If omitted, returns all items.
    - per_page: int (optional) - items per page (default 20, max 100)
    """
    page = request.args.get("page", type=int)
    per_page = request.args.get("per_page", type=int)
    return stock_ledger.list_products(page=page, per_page=per_page)


@products_bp.post("")
def create_product_route():
    """
    Create a product.

    A name or barcode collision returns 409 with the existing product and
    duplicate_type ("name" or "barcode") so the admin can choose between
    merging stock and editing the existing product.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY)
        product = stock_ledger.create_product(**patch)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except DuplicateProductError as e:
        return {"error": str(e), "duplicate": e.match.to_dict()}, 409
    except ConflictError as e:
        return {"error": str(e)}, 409

    return {"product": product.to_dict()}, 201


@products_bp.get("/duplicates")
def find_duplicate_route():
    """Check a prospective name/barcode against existing products."""
    name = request.args.get("name")
    barcode = request.args.get("barcode")
    exclude_id = request.args.get("exclude_id", type=int)

    match = stock_ledger.find_duplicate(name, barcode, exclude_id=exclude_id)
    return {"duplicate": match.to_dict() if match else None}


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    try:
        product = stock_ledger.get_product(product_id)
    except NotFoundError:
        return {"error": "Product not found"}, 404
    return {"product": product.to_dict()}


@products_bp.get("/<int:product_id>/movements")
def list_movements_route(product_id: int):
    limit = request.args.get("limit", default=200, type=int)
    try:
        movements = stock_ledger.list_movements(product_id, limit=min(max(limit, 1), 1000))
    except NotFoundError:
        return {"error": "Product not found"}, 404
    return {"items": [m.to_dict() for m in movements], "count": len(movements)}


@products_bp.post("/<int:product_id>/stock/increment")
def increment_stock_route(product_id: int):
    """
    Restock a product. merge=true records it as a duplicate-entry merge.
    """
    data = request.get_json(silent=True) or {}

    try:
        if data.get("merge"):
            quantity = stock_ledger.merge_stock(product_id, data.get("amount"))
        else:
            quantity = stock_ledger.increment(product_id, data.get("amount"), note=data.get("note"))
    except ValidationError as e:
        return {"error": str(e)}, 400
    except NotFoundError:
        return {"error": "Product not found"}, 404
    except Exception:
        current_app.logger.exception("Failed to increment stock")
        return {"error": "Internal server error"}, 500

    return {"product_id": product_id, "quantity": quantity}


@products_bp.post("/<int:product_id>/stock/decrement")
def decrement_stock_route(product_id: int):
    data = request.get_json(silent=True) or {}

    try:
        quantity = stock_ledger.decrement(product_id, data.get("amount"), note=data.get("note"))
    except ValidationError as e:
        return {"error": str(e)}, 400
    except NotFoundError:
        return {"error": "Product not found"}, 404
    except InsufficientStock as e:
        return {"error": str(e), "details": e.details}, 409
    except Exception:
        current_app.logger.exception("Failed to decrement stock")
        return {"error": "Internal server error"}, 500

    return {"product_id": product_id, "quantity": quantity}
