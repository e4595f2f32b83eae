# Overview: Flask API routes for refunds; parses input and returns JSON responses.

# backend/settlehub/routes/refunds.py
"""
Refund routes.

Refund creation is idempotent per (payment, Idempotency-Key header):
the first request answers 201, a retry with the same key answers 200 with
the original refund and moves no money.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import payment_service
from ..services import refund_service
from ..services import order_service
from ..services.refund_service import RefundError
from ..validation import ValidationError, ConflictError, NotFoundError, coerce_int, require_int
from ..decorators import require_auth, is_self_or_admin

refunds_bp = Blueprint("refunds", __name__, url_prefix="/refunds")

IDEMPOTENCY_HEADER = "Idempotency-Key"


def _error_response(e: Exception):
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ConflictError):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, (ValidationError, RefundError)):
        return jsonify({"error": str(e)}), 400
    current_app.logger.exception("Refund operation failed")
    return jsonify({"error": "Internal server error"}), 500


def _can_access_payment(payment_id: int) -> bool:
    payment = payment_service.get_payment(payment_id)
    return is_self_or_admin(order_service.get_order(payment.order_id).user_id)


def _forbidden():
    current_app.logger.warning(
        "Forbidden: user_id=%s path=%s method=%s",
        g.session_context.user_id,
        request.path,
        request.method,
    )
    return jsonify({"error": "Permission denied"}), 403


def _refund_response(refund, created: bool):
    return jsonify(refund.to_dict(include_payment=True)), 201 if created else 200


@refunds_bp.post("/<int:payment_id>")
@require_auth
def create_refund_route(payment_id: int):
    """
    Refund an amount of a captured payment.

    Header: Idempotency-Key (required)
    Body: {"amount": int > 0, "reason"?: str}
    """
    payload = request.get_json(silent=True) or {}
    key = request.headers.get(IDEMPOTENCY_HEADER)
    if not key:
        return jsonify({"error": f"{IDEMPOTENCY_HEADER} header is required"}), 400

    try:
        if not _can_access_payment(payment_id):
            return _forbidden()
        refund, created = refund_service.create_refund(
            payment_id=payment_id,
            idempotency_key=key,
            amount=require_int(payload, "amount", minimum=1),
            reason=payload.get("reason"),
            user_id=g.current_user.id,
        )
    except Exception as e:
        return _error_response(e)

    return _refund_response(refund, created)


@refunds_bp.post("/full/<int:payment_id>")
@require_auth
def full_refund_route(payment_id: int):
    """
    Refund whatever is left on the payment.

    Without an Idempotency-Key header the key defaults to one per payment,
    so a repeated full refund is a replay.
    """
    payload = request.get_json(silent=True) or {}
    key = request.headers.get(IDEMPOTENCY_HEADER) or f"full-{payment_id}"

    try:
        if not _can_access_payment(payment_id):
            return _forbidden()
        refund, created = refund_service.process_full_refund(
            payment_id=payment_id,
            idempotency_key=key,
            reason=payload.get("reason"),
            user_id=g.current_user.id,
        )
    except Exception as e:
        return _error_response(e)

    return _refund_response(refund, created)


@refunds_bp.post("/partial/<int:payment_id>")
@require_auth
def partial_refund_route(payment_id: int):
    """
    Header: Idempotency-Key (required)
    Query: refundAmount=int > 0
    """
    payload = request.get_json(silent=True) or {}
    key = request.headers.get(IDEMPOTENCY_HEADER)
    if not key:
        return jsonify({"error": f"{IDEMPOTENCY_HEADER} header is required"}), 400

    raw_amount = request.args.get("refundAmount")
    if raw_amount is None:
        return jsonify({"error": "refundAmount is required"}), 400

    try:
        if not _can_access_payment(payment_id):
            return _forbidden()
        refund, created = refund_service.process_partial_refund(
            payment_id=payment_id,
            refund_amount=coerce_int(raw_amount, "refundAmount"),
            idempotency_key=key,
            reason=payload.get("reason"),
            user_id=g.current_user.id,
        )
    except Exception as e:
        return _error_response(e)

    return _refund_response(refund, created)


@refunds_bp.post("/failed/<int:payment_id>")
@require_auth
def cancel_failed_payment_route(payment_id: int):
    """Void a payment that never captured; no refund row is written."""
    try:
        if not _can_access_payment(payment_id):
            return _forbidden()
        payment = refund_service.cancel_failed_payment(payment_id)
    except Exception as e:
        return _error_response(e)

    return jsonify(payment.to_dict()), 200


@refunds_bp.get("/payment/<int:payment_id>")
@require_auth
def list_payment_refunds_route(payment_id: int):
    try:
        if not _can_access_payment(payment_id):
            return _forbidden()
        refunds = refund_service.list_payment_refunds(payment_id)
    except Exception as e:
        return _error_response(e)

    return jsonify({"items": [r.to_dict() for r in refunds], "count": len(refunds)}), 200


@refunds_bp.get("/<int:refund_id>")
@require_auth
def get_refund_route(refund_id: int):
    try:
        refund = refund_service.get_refund(refund_id)
        if not _can_access_payment(refund.payment_id):
            return _forbidden()
    except Exception as e:
        return _error_response(e)

    return jsonify(refund.to_dict(include_payment=True)), 200
