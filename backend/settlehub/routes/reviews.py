# Overview: Flask API routes for product reviews.

from flask import Blueprint, request, jsonify, current_app, g

from ..services import review_service
from ..services.review_service import ReviewPermissionError
from ..validation import ValidationError, ConflictError, NotFoundError, require_int
from ..decorators import require_auth, is_self_or_admin

reviews_bp = Blueprint("reviews", __name__, url_prefix="/reviews")


def _error_response(e: Exception):
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ConflictError):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, ReviewPermissionError):
        current_app.logger.warning(
            "Forbidden: user_id=%s path=%s method=%s",
            g.session_context.user_id,
            request.path,
            request.method,
        )
        return jsonify({"error": str(e)}), 403
    if isinstance(e, ValidationError):
        return jsonify({"error": str(e)}), 400
    current_app.logger.exception("Review operation failed")
    return jsonify({"error": "Internal server error"}), 500


@reviews_bp.post("")
@require_auth
def create_review_route():
    """Body: {"productId": int, "rating": 1..5, "content"?: str}; author is the caller."""
    payload = request.get_json(silent=True) or {}
    try:
        review = review_service.create_review(
            product_id=require_int(payload, "productId", alias="product_id"),
            user_id=g.current_user.id,
            rating=payload.get("rating"),
            content=payload.get("content"),
        )
    except Exception as e:
        return _error_response(e)

    return jsonify(review.to_dict()), 201


@reviews_bp.get("/product/<int:product_id>")
def list_product_reviews_route(product_id: int):
    try:
        result = review_service.list_product_reviews(product_id)
    except Exception as e:
        return _error_response(e)

    return jsonify({
        "items": [r.to_dict() for r in result["reviews"]],
        "count": result["count"],
        "average_rating": result["average_rating"],
    }), 200


@reviews_bp.get("/user/<int:user_id>")
@require_auth
def list_user_reviews_route(user_id: int):
    if not is_self_or_admin(user_id):
        return jsonify({"error": "Permission denied"}), 403
    reviews = review_service.list_user_reviews(user_id)
    return jsonify({"items": [r.to_dict() for r in reviews], "count": len(reviews)}), 200


@reviews_bp.get("/<int:review_id>")
def get_review_route(review_id: int):
    try:
        return jsonify(review_service.get_review(review_id).to_dict()), 200
    except Exception as e:
        return _error_response(e)


@reviews_bp.put("/<int:review_id>")
@require_auth
def update_review_route(review_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        review = review_service.update_review(
            review_id,
            user=g.current_user,
            rating=payload.get("rating"),
            content=payload.get("content"),
        )
    except Exception as e:
        return _error_response(e)

    return jsonify(review.to_dict()), 200


@reviews_bp.delete("/<int:review_id>")
@require_auth
def delete_review_route(review_id: int):
    try:
        review_service.delete_review(review_id, user=g.current_user)
    except Exception as e:
        return _error_response(e)

    return {"ok": True}, 200
