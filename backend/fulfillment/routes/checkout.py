# Overview: Flask API routes for checkout; cart validation and order placement.

from flask import Blueprint, request, jsonify, current_app

from ..services import checkout_service
from ..services.stock_ledger import InsufficientStock
from ..validation import ValidationError


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("/validate")
def validate_cart_route():
    """
    Check a cart against live stock before the payment is started.

    Body: {"cart": [{"product_id", "quantity", "price_at_add_time_cents"}, ...]}
    """
    data = request.get_json(silent=True) or {}

    try:
        quote = checkout_service.validate_cart(data.get("cart"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except InsufficientStock as e:
        return jsonify({"error": str(e), "details": e.details}), 409

    return jsonify({"quote": quote.to_dict()}), 200


@checkout_bp.post("/orders")
def place_order_route():
    """
    Place an order after payment capture.

    Body: {"cart": [...], "customer": {"name", "phone", "email", "address"},
           "payment_reference": "..."}

    201: order created (check reconciliation_required)
    200: payment_reference already had an order; that order is returned
    409: stock short; nothing was created
    """
    data = request.get_json(silent=True) or {}

    try:
        placed = checkout_service.place_order(
            data.get("cart"),
            data.get("customer"),
            data.get("payment_reference"),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except InsufficientStock as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to place order")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(placed.to_dict()), 201 if placed.created else 200
