# Overview: Flask API routes for orders; status transitions, listing and dashboard stats.

from flask import Blueprint, request, jsonify, current_app

from ..services import order_lifecycle, packing_service, reporting_service
from ..services.order_lifecycle import LifecycleError
from ..services.packing_service import PackingError
from ..validation import ValidationError, NotFoundError


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("")
def list_orders_route():
    """
    List orders newest first.

    Query params: status, page, per_page
    """
    status = request.args.get("status") or None
    if status == "all":
        status = None
    page = request.args.get("page", type=int)
    per_page = request.args.get("per_page", type=int)

    try:
        result = reporting_service.list_orders(status=status, page=page, per_page=per_page)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(result), 200


@orders_bp.get("/stats")
def order_stats_route():
    return jsonify({"stats": reporting_service.get_order_statistics()}), 200


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_lifecycle.get_order(order_id)
    except NotFoundError:
        return jsonify({"error": "Order not found"}), 404

    return jsonify({
        "order": order.to_dict(),
        "allowed_transitions": order_lifecycle.allowed_transitions(order.status),
    }), 200


@orders_bp.post("/<int:order_id>/transition")
def transition_route(order_id: int):
    """
    Move an order to a new status.

    Body: {"from_status": "...", "to_status": "...", "payload": {...}}
    from_status is optional; when given it must match the current status.
    """
    data = request.get_json(silent=True) or {}
    to_status = data.get("to_status")
    if not to_status:
        return jsonify({"error": "to_status required"}), 400

    try:
        order = order_lifecycle.transition(
            order_id,
            data.get("from_status"),
            to_status,
            data.get("payload"),
        )
    except NotFoundError:
        return jsonify({"error": "Order not found"}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except (LifecycleError, PackingError) as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to transition order")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/packing")
def enter_packing_route(order_id: int):
    """
    Open packing mode: paid -> in_packing, then resume or start the
    packing session. session is null if it could not be stored.
    """
    data = request.get_json(silent=True) or {}

    try:
        order, session = order_lifecycle.enter_packing(order_id, admin_email=data.get("admin_email"))
    except NotFoundError:
        return jsonify({"error": "Order not found"}), 404
    except LifecycleError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to enter packing mode")
        return jsonify({"error": "Internal server error"}), 500

    engine = packing_service.build_engine(order, session)
    return jsonify({
        "order": order.to_dict(),
        "session": session.to_dict() if session else None,
        "progress": engine.summary(),
    }), 200
