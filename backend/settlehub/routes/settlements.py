# Overview: Flask API routes for settlement search, derivation, lifecycle and adjustments (ADMIN only).

from datetime import timedelta

from flask import Blueprint, request, jsonify, current_app

from ..services import settlement_service
from ..services.settlement_service import SettlementError
from ..validation import ValidationError, ConflictError, NotFoundError
from ..decorators import require_auth, require_admin
from settlehub.time_utils import parse_iso_date, utcnow

settlements_bp = Blueprint("settlements", __name__, url_prefix="/api/settlements")


def _error_response(e: Exception):
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ConflictError):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, (ValidationError, SettlementError)):
        return jsonify({"error": str(e)}), 400
    current_app.logger.exception("Settlement operation failed")
    return jsonify({"error": "Internal server error"}), 500


def _search(source: dict):
    try:
        params = settlement_service.parse_search_params(source)
        return jsonify(settlement_service.search_settlements(params)), 200
    except Exception as e:
        return _error_response(e)


@settlements_bp.get("/search")
@require_auth
@require_admin
def search_settlements_get():
    """
    Query params: ordererName, productName, status, isRefunded, startDate,
    endDate, page (0-based), size, sortBy, sortDirection.
    """
    return _search(request.args.to_dict())


@settlements_bp.post("/search")
@require_auth
@require_admin
def search_settlements_post():
    """Same filters as GET, sent as a JSON body."""
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid JSON payload"}), 400
    return _search(payload)


@settlements_bp.get("/<int:settlement_id>")
@require_auth
@require_admin
def get_settlement_route(settlement_id: int):
    try:
        return jsonify(settlement_service.get_settlement(settlement_id).to_dict()), 200
    except Exception as e:
        return _error_response(e)


@settlements_bp.post("/daily")
@require_auth
@require_admin
def create_daily_settlements_route():
    """
    Derive PENDING settlements for one capture day.

    Body: {"date": "YYYY-MM-DD"}; defaults to yesterday (UTC). Re-running a
    day creates nothing new.
    """
    payload = request.get_json(silent=True) or {}
    try:
        target = parse_iso_date(payload.get("date"))
    except ValueError:
        return jsonify({"error": "date must be YYYY-MM-DD"}), 400
    if target is None:
        target = utcnow().date() - timedelta(days=1)

    try:
        result = settlement_service.create_daily_settlements(target)
    except Exception as e:
        return _error_response(e)

    return jsonify(result), 201 if result["created"] else 200


@settlements_bp.post("/<int:settlement_id>/confirm")
@require_auth
@require_admin
def confirm_settlement_route(settlement_id: int):
    try:
        return jsonify(settlement_service.confirm_settlement(settlement_id).to_dict()), 200
    except Exception as e:
        return _error_response(e)


@settlements_bp.post("/<int:settlement_id>/complete")
@require_auth
@require_admin
def complete_settlement_route(settlement_id: int):
    try:
        return jsonify(settlement_service.complete_settlement(settlement_id).to_dict()), 200
    except Exception as e:
        return _error_response(e)


@settlements_bp.post("/<int:settlement_id>/cancel")
@require_auth
@require_admin
def cancel_settlement_route(settlement_id: int):
    try:
        return jsonify(settlement_service.cancel_settlement(settlement_id).to_dict()), 200
    except Exception as e:
        return _error_response(e)


@settlements_bp.get("/<int:settlement_id>/adjustments")
@require_auth
@require_admin
def list_adjustments_route(settlement_id: int):
    try:
        adjustments = settlement_service.list_adjustments(settlement_id)
    except Exception as e:
        return _error_response(e)
    return jsonify({"items": [a.to_dict() for a in adjustments], "count": len(adjustments)}), 200


@settlements_bp.post("/adjustments/confirm")
@require_auth
@require_admin
def confirm_adjustments_route():
    """
    Confirm the PENDING adjustments booked on one day.

    Body: {"date": "YYYY-MM-DD"}; defaults to yesterday (UTC).
    """
    payload = request.get_json(silent=True) or {}
    try:
        target = parse_iso_date(payload.get("date"))
    except ValueError:
        return jsonify({"error": "date must be YYYY-MM-DD"}), 400
    if target is None:
        target = utcnow().date() - timedelta(days=1)

    try:
        return jsonify(settlement_service.confirm_daily_adjustments(target)), 200
    except Exception as e:
        return _error_response(e)
