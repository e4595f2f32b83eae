# Overview: Flask API routes for categories; flat public API plus the admin tree API.

# backend/settlehub/routes/categories.py
"""
Two blueprints over the same category_service:

- /api/categories    flat listing and CRUD
- /admin/categories  tree view, move and sort order (ADMIN only)

Reads on /api/categories are public; every write requires an ADMIN token.
"""
from flask import Blueprint, request, jsonify, current_app

from ..services import category_service
from ..services.category_service import CategoryError, CategoryInUseError
from ..validation import ValidationError, ConflictError, NotFoundError, optional_int
from ..decorators import require_auth, require_admin

categories_bp = Blueprint("categories", __name__, url_prefix="/api/categories")
admin_categories_bp = Blueprint("admin_categories", __name__, url_prefix="/admin/categories")


def _error_response(e: Exception):
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, (ConflictError, CategoryInUseError)):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, (ValidationError, CategoryError)):
        return jsonify({"error": str(e)}), 400
    current_app.logger.exception("Category operation failed")
    return jsonify({"error": "Internal server error"}), 500


def _create(payload: dict):
    return category_service.create_category(
        name=payload.get("name"),
        slug=payload.get("slug"),
        parent_id=optional_int(payload, "parentId", alias="parent_id"),
        display_order=optional_int(payload, "displayOrder", alias="display_order"),
        description=payload.get("description"),
    )


def _update(category_id: int, payload: dict):
    return category_service.update_category(
        category_id,
        name=payload.get("name"),
        slug=payload.get("slug"),
        description=payload.get("description"),
        display_order=optional_int(payload, "displayOrder", alias="display_order"),
    )


# =============================================================================
# FLAT API
# =============================================================================

@categories_bp.get("")
def list_categories():
    items = category_service.list_categories()
    return jsonify({"items": items, "count": len(items)}), 200


@categories_bp.get("/active")
def list_active_categories():
    items = category_service.list_categories(active_only=True)
    return jsonify({"items": items, "count": len(items)}), 200


@categories_bp.get("/roots")
def list_root_categories():
    items = category_service.list_categories(roots_only=True)
    return jsonify({"items": items, "count": len(items)}), 200


@categories_bp.get("/<int:category_id>/children")
def list_child_categories(category_id: int):
    try:
        items = category_service.list_categories(parent_id=category_id)
    except Exception as e:
        return _error_response(e)
    return jsonify({"items": items, "count": len(items)}), 200


@categories_bp.get("/<int:category_id>")
def get_category(category_id: int):
    try:
        return category_service.get_category(category_id).to_dict()
    except Exception as e:
        return _error_response(e)


@categories_bp.get("/slug/<string:slug>")
def get_category_by_slug(slug: str):
    try:
        return category_service.get_category_by_slug(slug).to_dict()
    except Exception as e:
        return _error_response(e)


@categories_bp.post("")
@require_auth
@require_admin
def create_category_route():
    """Body: {"name", "slug"?, "parentId"?, "displayOrder"?, "description"?}"""
    try:
        category = _create(request.get_json(silent=True) or {})
    except Exception as e:
        return _error_response(e)
    return category.to_dict(), 201


@categories_bp.put("/<int:category_id>")
@require_auth
@require_admin
def update_category_route(category_id: int):
    try:
        return _update(category_id, request.get_json(silent=True) or {}).to_dict()
    except Exception as e:
        return _error_response(e)


@categories_bp.patch("/<int:category_id>/activate")
@require_auth
@require_admin
def activate_category_route(category_id: int):
    try:
        return category_service.set_active(category_id, True).to_dict()
    except Exception as e:
        return _error_response(e)


@categories_bp.patch("/<int:category_id>/deactivate")
@require_auth
@require_admin
def deactivate_category_route(category_id: int):
    try:
        return category_service.set_active(category_id, False).to_dict()
    except Exception as e:
        return _error_response(e)


@categories_bp.delete("/<int:category_id>")
@require_auth
@require_admin
def delete_category_route(category_id: int):
    try:
        category_service.delete_category(category_id)
    except Exception as e:
        return _error_response(e)
    return {"ok": True}, 200


# =============================================================================
# ADMIN TREE API
# =============================================================================

@admin_categories_bp.get("/tree")
@require_auth
@require_admin
def get_tree():
    """Nested tree; ?active_only=true hides inactive branches."""
    active_only = (request.args.get("active_only") or "").lower() == "true"
    return jsonify({"items": category_service.build_tree(active_only=active_only)}), 200


@admin_categories_bp.post("")
@require_auth
@require_admin
def admin_create_category():
    try:
        category = _create(request.get_json(silent=True) or {})
    except Exception as e:
        return _error_response(e)
    return category.to_dict(), 201


@admin_categories_bp.put("/<int:category_id>")
@require_auth
@require_admin
def admin_update_category(category_id: int):
    try:
        return _update(category_id, request.get_json(silent=True) or {}).to_dict()
    except Exception as e:
        return _error_response(e)


@admin_categories_bp.patch("/<int:category_id>/move")
@require_auth
@require_admin
def admin_move_category(category_id: int):
    """Body: {"parentId": int | null}; null moves the category to the root level."""
    payload = request.get_json(silent=True) or {}
    try:
        new_parent_id = optional_int(payload, "parentId", alias="parent_id")
        return category_service.move_category(category_id, new_parent_id).to_dict()
    except Exception as e:
        return _error_response(e)


@admin_categories_bp.patch("/<int:category_id>/sort-order")
@require_auth
@require_admin
def admin_change_sort_order(category_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        display_order = optional_int(payload, "displayOrder", alias="display_order")
        return category_service.change_sort_order(category_id, display_order).to_dict()
    except Exception as e:
        return _error_response(e)


@admin_categories_bp.patch("/<int:category_id>/activate")
@require_auth
@require_admin
def admin_activate_category(category_id: int):
    try:
        return category_service.set_active(category_id, True).to_dict()
    except Exception as e:
        return _error_response(e)


@admin_categories_bp.patch("/<int:category_id>/deactivate")
@require_auth
@require_admin
def admin_deactivate_category(category_id: int):
    try:
        return category_service.set_active(category_id, False).to_dict()
    except Exception as e:
        return _error_response(e)


@admin_categories_bp.delete("/<int:category_id>")
@require_auth
@require_admin
def admin_delete_category(category_id: int):
    try:
        category_service.delete_category(category_id)
    except Exception as e:
        return _error_response(e)
    return {"ok": True}, 200
