# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/settlehub/routes/products.py
"""
Product catalog routes.

Reads are public. Writes (create, edit, stock, status, category) require
an ADMIN token.
"""
from flask import Blueprint, request, jsonify, current_app

from ..services import products_service
from ..services.products_service import InsufficientStockError, ProductError
from ..models import Product
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_product,
    optional_int,
    require_int,
    ValidationError,
    ConflictError,
    NotFoundError,
)
from ..decorators import require_auth, require_admin

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "price", "stock_quantity", "category_id"},
    required_on_create={"name", "price"},
    aliases={"stockQuantity": "stock_quantity", "categoryId": "category_id"},
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _error_response(e: Exception):
    """Map service exceptions onto JSON error responses."""
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, (InsufficientStockError, ConflictError)):
        return jsonify({"error": str(e)}), 409
    if isinstance(e, (ValidationError, ProductError)):
        return jsonify({"error": str(e)}), 400
    current_app.logger.exception("Product operation failed")
    return jsonify({"error": "Internal server error"}), 500


@products_bp.get("")
def list_products():
    """
    List products.

    Query params:
    - status: ACTIVE | INACTIVE | OUT_OF_STOCK | DISCONTINUED (optional)
    - category_id: int (optional)
    - page: int (optional) - page number (1-indexed). If omitted, returns all items.
    - per_page: int (optional) - items per page (default 20, max 100)
    """
    status = request.args.get("status")
    try:
        return products_service.list_products(
            status=status.upper() if status else None,
            category_id=request.args.get("category_id", type=int),
            page=request.args.get("page", type=int),
            per_page=request.args.get("per_page", type=int),
        )
    except Exception as e:
        return _error_response(e)


@products_bp.get("/available")
def list_available_products():
    """ACTIVE products with stock left."""
    return products_service.list_products(
        available_only=True,
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@products_bp.get("/status/<string:status>")
def list_products_by_status(status: str):
    try:
        return products_service.list_products(status=status.upper())
    except Exception as e:
        return _error_response(e)


@products_bp.get("/category/<int:category_id>")
def list_products_by_category(category_id: int):
    return products_service.list_products(category_id=category_id)


@products_bp.get("/<int:product_id>")
def get_product(product_id: int):
    try:
        return products_service.get_product(product_id).to_dict()
    except Exception as e:
        return _error_response(e)


@products_bp.post("")
@require_auth
@require_admin
def create_product_route():
    """
    Create a new product (status ACTIVE).

    Body: {"name", "price", "description"?, "stockQuantity"?, "categoryId"?}
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_product(patch)
        created = products_service.create_product(patch=patch)
    except Exception as e:
        return _error_response(e)

    return created, 201


@products_bp.put("/<int:product_id>")
@require_auth
@require_admin
def update_product_route(product_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        enforce_rules_product(patch)
        return products_service.update_product(product_id=product_id, patch=patch)
    except Exception as e:
        return _error_response(e)


@products_bp.delete("/<int:product_id>")
@require_auth
@require_admin
def delete_product_route(product_id: int):
    try:
        deleted = products_service.delete_product(product_id=product_id)
    except Exception as e:
        return _error_response(e)

    if not deleted:
        return {"error": "Product not found"}, 404

    return {"ok": True}, 200


@products_bp.patch("/<int:product_id>/info")
@require_auth
@require_admin
def update_product_info_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        return products_service.update_product_info(
            product_id,
            name=payload.get("name"),
            description=payload.get("description"),
        )
    except Exception as e:
        return _error_response(e)


@products_bp.patch("/<int:product_id>/price")
@require_auth
@require_admin
def update_product_price_route(product_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        price = require_int(payload, "price", minimum=0, alias="newPrice")
        enforce_rules_product({"price": price})
        return products_service.update_product_price(product_id, price=price)
    except Exception as e:
        return _error_response(e)


@products_bp.patch("/<int:product_id>/stock")
@require_auth
@require_admin
def update_product_stock_route(product_id: int):
    """
    Body: {"quantity": int > 0, "operation": "INCREASE" | "DECREASE"}

    409 when a DECREASE asks for more than is in stock; stock is unchanged.
    """
    payload = request.get_json(silent=True) or {}
    try:
        quantity = require_int(payload, "quantity", minimum=1)
        return products_service.update_product_stock(
            product_id,
            quantity=quantity,
            operation=payload.get("operation"),
        )
    except Exception as e:
        return _error_response(e)


@products_bp.patch("/<int:product_id>/activate")
@require_auth
@require_admin
def activate_product_route(product_id: int):
    try:
        return products_service.activate_product(product_id)
    except Exception as e:
        return _error_response(e)


@products_bp.patch("/<int:product_id>/deactivate")
@require_auth
@require_admin
def deactivate_product_route(product_id: int):
    try:
        return products_service.deactivate_product(product_id)
    except Exception as e:
        return _error_response(e)


@products_bp.patch("/<int:product_id>/discontinue")
@require_auth
@require_admin
def discontinue_product_route(product_id: int):
    try:
        return products_service.discontinue_product(product_id)
    except Exception as e:
        return _error_response(e)


@products_bp.patch("/<int:product_id>/category")
@require_auth
@require_admin
def assign_category_route(product_id: int):
    """Body: {"categoryId": int | null}"""
    payload = request.get_json(silent=True) or {}
    try:
        category_id = optional_int(payload, "category_id", alias="categoryId")
        return products_service.assign_category(product_id, category_id)
    except Exception as e:
        return _error_response(e)
