# Overview: Flask API routes for orders; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app, g

from ..services import order_service
from ..services.order_service import OrderError
from ..services.products_service import InsufficientStockError
from ..validation import ValidationError, ConflictError, NotFoundError, optional_int
from ..decorators import require_auth, is_self_or_admin

orders_bp = Blueprint("orders", __name__, url_prefix="/orders")


def _forbidden():
    current_app.logger.warning(
        "Forbidden: user_id=%s path=%s method=%s",
        g.session_context.user_id,
        request.path,
        request.method,
    )
    return jsonify({"error": "Permission denied"}), 403


@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Place an order.

    Body: {"productId"?, "quantity"?, "amount"?, "userId"?}
    With productId the amount is price x quantity computed here; a client
    amount is only a cross-check. userId defaults to the caller; ordering
    for someone else requires ADMIN.
    """
    payload = request.get_json(silent=True) or {}

    try:
        user_id = optional_int(payload, "userId", alias="user_id") or g.current_user.id
        if not is_self_or_admin(user_id):
            return _forbidden()

        order = order_service.create_order(
            user_id=user_id,
            product_id=optional_int(payload, "productId", alias="product_id"),
            quantity=optional_int(payload, "quantity"),
            amount=optional_int(payload, "amount"),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InsufficientStockError as e:
        return jsonify({"error": str(e)}), 409
    except OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(order.to_dict()), 201


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    if not is_self_or_admin(order.user_id):
        return _forbidden()

    return jsonify(order.to_dict()), 200


@orders_bp.get("/user/<int:user_id>")
@require_auth
def list_user_orders_route(user_id: int):
    if not is_self_or_admin(user_id):
        return _forbidden()

    orders = order_service.list_user_orders(user_id)
    return jsonify({"items": [o.to_dict() for o in orders], "count": len(orders)}), 200


@orders_bp.patch("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """Cancel a CREATED order; reserved stock is released."""
    try:
        order = order_service.get_order(order_id)
        if not is_self_or_admin(order.user_id):
            return _forbidden()
        order = order_service.cancel_order(order_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(order.to_dict()), 200
