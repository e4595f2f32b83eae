# Overview: Flask API routes for tags and product tagging.

from flask import Blueprint, request, jsonify

from ..services import tag_service
from ..validation import ValidationError, ConflictError, NotFoundError
from ..decorators import require_auth, require_admin

tags_bp = Blueprint("tags", __name__, url_prefix="/api/tags")


@tags_bp.get("")
def list_tags():
    tags = tag_service.list_tags()
    return jsonify({"items": [t.to_dict() for t in tags], "count": len(tags)}), 200


@tags_bp.get("/<int:tag_id>")
def get_tag(tag_id: int):
    try:
        return tag_service.get_tag(tag_id).to_dict()
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@tags_bp.post("")
@require_auth
@require_admin
def create_tag_route():
    """Body: {"name", "color"?}; color defaults to #6B7280."""
    payload = request.get_json(silent=True) or {}
    try:
        tag = tag_service.create_tag(name=payload.get("name"), color=payload.get("color"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    return tag.to_dict(), 201


@tags_bp.put("/<int:tag_id>")
@require_auth
@require_admin
def update_tag_route(tag_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        return tag_service.update_tag(tag_id, name=payload.get("name"), color=payload.get("color")).to_dict()
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409


@tags_bp.delete("/<int:tag_id>")
@require_auth
@require_admin
def delete_tag_route(tag_id: int):
    try:
        tag_service.delete_tag(tag_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return {"ok": True}, 200


@tags_bp.get("/product/<int:product_id>")
def list_product_tags(product_id: int):
    try:
        tags = tag_service.tags_for_product(product_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"items": [t.to_dict() for t in tags], "count": len(tags)}), 200


@tags_bp.post("/<int:tag_id>/products/<int:product_id>")
@require_auth
@require_admin
def add_tag_to_product_route(tag_id: int, product_id: int):
    try:
        tag_service.add_tag_to_product(product_id, tag_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return {"ok": True}, 200


@tags_bp.delete("/<int:tag_id>/products/<int:product_id>")
@require_auth
@require_admin
def remove_tag_from_product_route(tag_id: int, product_id: int):
    try:
        tag_service.remove_tag_from_product(product_id, tag_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return {"ok": True}, 200
