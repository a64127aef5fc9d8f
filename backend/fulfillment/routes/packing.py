# Overview: Flask API routes for packing sessions; scanning, progress saves and cancellation.

from flask import Blueprint, request, jsonify, current_app

from ..services import packing_service
from ..services.packing_service import PackingError
from ..validation import ValidationError, NotFoundError, coerce_int


packing_bp = Blueprint("packing", __name__, url_prefix="/api/packing")


@packing_bp.get("/sessions/<int:session_id>")
def get_session_route(session_id: int):
    try:
        session = packing_service.get_session(session_id)
    except NotFoundError:
        return jsonify({"error": "Packing session not found"}), 404

    engine = packing_service.build_engine(session.order, session)
    return jsonify({"session": session.to_dict(), "progress": engine.summary()}), 200


@packing_bp.post("/sessions/<int:session_id>/scans")
def record_scan_route(session_id: int):
    """
    Apply one barcode scan.

    Unknown and already-complete scans are normal results (200), not
    errors; the UI renders them with their own tone. result is null for a
    blank scan.

    Body: {"barcode": "...", "scan_progress": {...}, "expected_version": n}
    scan_progress and expected_version are optional and echo what the
    previous response returned, so a count whose save failed is not lost.
    """
    data = request.get_json(silent=True) or {}

    try:
        expected_version = data.get("expected_version")
        if expected_version is not None:
            expected_version = coerce_int(expected_version, "expected_version")
        result, engine, saved = packing_service.record_scan(
            session_id,
            data.get("barcode"),
            client_progress=data.get("scan_progress"),
            expected_version=expected_version,
        )
    except NotFoundError:
        return jsonify({"error": "Packing session not found"}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PackingError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to record scan")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({
        "result": result.to_dict() if result else None,
        "saved": saved,
        "scan_progress": engine.progress(),
        "version_id": packing_service.get_session(session_id).version_id,
        "progress": engine.summary(),
    }), 200


@packing_bp.put("/sessions/<int:session_id>/progress")
def persist_progress_route(session_id: int):
    """
    Save progress tracked by a client-side engine.

    Body: {"scan_progress": {"<item_key>": count, ...}, "expected_version": n}
    """
    data = request.get_json(silent=True) or {}

    try:
        expected_version = data.get("expected_version")
        if expected_version is not None:
            expected_version = coerce_int(expected_version, "expected_version")
        saved = packing_service.persist_scan(
            session_id,
            data.get("scan_progress"),
            expected_version=expected_version,
        )
    except NotFoundError:
        return jsonify({"error": "Packing session not found"}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except PackingError as e:
        return jsonify({"error": str(e), "details": e.details}), 409

    session = packing_service.get_session(session_id)
    return jsonify({"saved": saved, "session": session.to_dict()}), 200


@packing_bp.post("/sessions/<int:session_id>/cancel")
def cancel_session_route(session_id: int):
    try:
        session = packing_service.cancel(session_id)
    except NotFoundError:
        return jsonify({"error": "Packing session not found"}), 404
    except PackingError as e:
        return jsonify({"error": str(e), "details": e.details}), 409

    return jsonify({"session": session.to_dict()}), 200
