# Overview: Flask API routes for payments operations; parses input and returns JSON responses.

# backend/settlehub/routes/payments.py
"""
Payment routes.

Explicit flow (back office / PG callbacks, ADMIN):
    POST  /payments                      open a payment for an order
    PATCH /payments/<id>/authorize       CREATED -> AUTHORIZED
    PATCH /payments/<id>/capture         AUTHORIZED -> CAPTURED, order PAID

Hosted checkout (buyer, after the Toss redirect):
    POST /payments/toss/confirm          one order
    POST /payments/toss/cart/confirm     several orders, one charge

Duplicate confirm/capture requests never apply twice: a replay of a
captured confirm returns 200 with the stored payment, a racing capture
gets 409.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..services import payment_service
from ..services import order_service
from ..services.payment_service import AmountMismatchError, PaymentError
from ..services.toss_client import GatewayError
from ..validation import ValidationError, ConflictError, NotFoundError, require_int
from ..decorators import require_auth, require_admin, is_self_or_admin

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _error_response(e: Exception):
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ConflictError):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, GatewayError):
        return jsonify({"error": str(e), "code": e.code}), 502
    if isinstance(e, (ValidationError, PaymentError)):
        return jsonify({"error": str(e)}), 400
    current_app.logger.exception("Payment operation failed")
    return jsonify({"error": "Internal server error"}), 500


def _forbidden():
    current_app.logger.warning(
        "Forbidden: user_id=%s path=%s method=%s",
        g.session_context.user_id,
        request.path,
        request.method,
    )
    return jsonify({"error": "Permission denied"}), 403


def _owns_order(order_id: int) -> bool:
    return is_self_or_admin(order_service.get_order(order_id).user_id)


# =============================================================================
# EXPLICIT FLOW
# =============================================================================

@payments_bp.post("")
@require_auth
def create_payment_route():
    """Body: {"orderId": int, "paymentMethod": "CARD" | "BANK_TRANSFER" | ...}"""
    payload = request.get_json(silent=True) or {}

    try:
        order_id = require_int(payload, "orderId", alias="order_id")
        if not _owns_order(order_id):
            return _forbidden()
        payment = payment_service.create_payment(
            order_id=order_id,
            payment_method=payload.get("paymentMethod") or payload.get("payment_method"),
        )
    except Exception as e:
        return _error_response(e)

    return jsonify(payment.to_dict()), 201


@payments_bp.get("/<int:payment_id>")
@require_auth
def get_payment_route(payment_id: int):
    try:
        payment = payment_service.get_payment(payment_id)
        if not _owns_order(payment.order_id):
            return _forbidden()
    except Exception as e:
        return _error_response(e)

    return jsonify(payment.to_dict()), 200


@payments_bp.get("/order/<int:order_id>")
@require_auth
def list_order_payments_route(order_id: int):
    try:
        if not _owns_order(order_id):
            return _forbidden()
        payments = payment_service.get_order_payments(order_id, status=request.args.get("status"))
    except Exception as e:
        return _error_response(e)

    return jsonify({"items": [p.to_dict() for p in payments], "count": len(payments)}), 200


@payments_bp.patch("/<int:payment_id>/authorize")
@require_auth
@require_admin
def authorize_payment_route(payment_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        payment = payment_service.authorize_payment(
            payment_id,
            pg_transaction_id=payload.get("pgTransactionId") or payload.get("pg_transaction_id"),
        )
    except Exception as e:
        return _error_response(e)

    return jsonify(payment.to_dict()), 200


@payments_bp.patch("/<int:payment_id>/capture")
@require_auth
@require_admin
def capture_payment_route(payment_id: int):
    try:
        payment = payment_service.capture_payment(payment_id)
    except Exception as e:
        return _error_response(e)

    current_app.logger.info("Payment captured: payment_id=%s order_id=%s", payment.id, payment.order_id)
    return jsonify(payment.to_dict()), 200


@payments_bp.patch("/<int:payment_id>/fail")
@require_auth
@require_admin
def fail_payment_route(payment_id: int):
    try:
        payment = payment_service.fail_payment(payment_id)
    except Exception as e:
        return _error_response(e)

    return jsonify(payment.to_dict()), 200


# =============================================================================
# HOSTED CHECKOUT (TOSS)
# =============================================================================

@payments_bp.post("/toss/confirm")
@require_auth
def toss_confirm_route():
    """
    Confirm a single-order Toss checkout.

    Body: {"dbOrderId": int, "paymentKey": str, "tossOrderId": str, "amount": int}

    Returns 201 with the captured payment, or 200 with the stored payment
    when this paymentKey was already confirmed for the order.
    """
    payload = request.get_json(silent=True) or {}

    try:
        order_id = require_int(payload, "dbOrderId")
        if not _owns_order(order_id):
            return _forbidden()
        payment, created = payment_service.confirm_gateway_payment(
            order_id=order_id,
            payment_key=payload.get("paymentKey"),
            gateway_order_id=payload.get("tossOrderId"),
            amount=require_int(payload, "amount", minimum=1),
        )
    except AmountMismatchError as e:
        current_app.logger.warning("Toss confirm rejected: %s", e)
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return _error_response(e)

    return jsonify(payment.to_dict()), 201 if created else 200


@payments_bp.post("/toss/cart/confirm")
@require_auth
def toss_cart_confirm_route():
    """
    Confirm one Toss checkout paying several orders.

    Body: {"orderIds": [int], "paymentKey": str, "tossOrderId": str, "totalAmount": int}

    Orders that could not be marked paid after the charge went through are
    listed under "failed" and need reconciliation.
    """
    payload = request.get_json(silent=True) or {}
    order_ids = payload.get("orderIds")

    if not isinstance(order_ids, list) or not all(isinstance(i, int) and not isinstance(i, bool) for i in order_ids):
        return jsonify({"error": "orderIds must be a list of integers"}), 400

    try:
        for order_id in order_ids:
            if not _owns_order(order_id):
                return _forbidden()
        result = payment_service.confirm_gateway_cart_payment(
            order_ids=order_ids,
            payment_key=payload.get("paymentKey"),
            gateway_order_id=payload.get("tossOrderId"),
            total_amount=require_int(payload, "totalAmount", minimum=1),
        )
    except AmountMismatchError as e:
        current_app.logger.warning("Toss cart confirm rejected: %s", e)
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return _error_response(e)

    body = {
        "payments": [p.to_dict() for p in result["payments"]],
        "failed": result["failed"],
    }
    if result["replayed"]:
        return jsonify(body), 200
    return jsonify(body), 207 if result["failed"] else 201
