# Overview: Flask API routes for product image metadata (admin only).

from flask import Blueprint, request, jsonify, current_app

from ..services import products_service
from ..validation import ValidationError, NotFoundError, optional_int, require_int
from ..decorators import require_auth, require_admin

product_images_bp = Blueprint("product_images", __name__, url_prefix="/admin/products")


@product_images_bp.get("/<int:product_id>/images")
@require_auth
@require_admin
def list_images_route(product_id: int):
    try:
        images = products_service.list_images(product_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"items": images, "count": len(images)}), 200


@product_images_bp.post("/<int:product_id>/images")
@require_auth
@require_admin
def add_image_route(product_id: int):
    """
    Attach an uploaded image.

    Body: {"url", "contentType", "sizeBytes", "originalFileName"?, "width"?, "height"?}
    """
    payload = request.get_json(silent=True) or {}

    try:
        image = products_service.add_image(
            product_id,
            url=payload.get("url"),
            content_type=(payload.get("contentType") or payload.get("content_type") or "").lower(),
            size_bytes=require_int(payload, "sizeBytes", alias="size_bytes"),
            original_file_name=payload.get("originalFileName") or payload.get("original_file_name"),
            width=optional_int(payload, "width", minimum=1),
            height=optional_int(payload, "height", minimum=1),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to add product image")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(image), 201


@product_images_bp.patch("/<int:product_id>/images/<int:image_id>/primary")
@require_auth
@require_admin
def set_primary_image_route(product_id: int, image_id: int):
    try:
        return products_service.set_primary_image(product_id, image_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@product_images_bp.put("/<int:product_id>/images/order")
@require_auth
@require_admin
def reorder_images_route(product_id: int):
    """Body: {"imageIds": [id, ...]} in the new gallery order."""
    payload = request.get_json(silent=True) or {}
    image_ids = payload.get("imageIds", payload.get("image_ids"))

    if not isinstance(image_ids, list) or not all(isinstance(i, int) and not isinstance(i, bool) for i in image_ids):
        return jsonify({"error": "imageIds must be a list of integers"}), 400

    try:
        images = products_service.reorder_images(product_id, image_ids)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify({"items": images, "count": len(images)}), 200


@product_images_bp.delete("/<int:product_id>/images/<int:image_id>")
@require_auth
@require_admin
def delete_image_route(product_id: int, image_id: int):
    try:
        products_service.delete_image(product_id, image_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    return {"ok": True}, 200
