# backend/settlehub/services/products_service.py
"""
Products Service

Catalog CRUD, stock adjustment, status lifecycle and image metadata.

Stock changes never read-modify-write in Python: increments and decrements
are single UPDATE statements, and decrements carry `stock_quantity >= q`
in the WHERE clause so two concurrent checkouts cannot drive stock negative.
"""
from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import Category, Order, Product, ProductImage
from ..validation import ConflictError, NotFoundError, ValidationError
from .concurrency import guarded_update, run_with_retry
from settlehub.time_utils import utcnow


class ProductError(Exception):
    """Raised for product rule violations (invalid status change, bad quantity)."""


class InsufficientStockError(ProductError):
    """Raised when a decrease would drive stock below zero."""


# =============================================================================
# PRODUCT STATUS (CONSTANTS)
# =============================================================================

STATUS_ACTIVE = "ACTIVE"
STATUS_INACTIVE = "INACTIVE"
STATUS_OUT_OF_STOCK = "OUT_OF_STOCK"
STATUS_DISCONTINUED = "DISCONTINUED"

VALID_STATUSES = [STATUS_ACTIVE, STATUS_INACTIVE, STATUS_OUT_OF_STOCK, STATUS_DISCONTINUED]

STOCK_INCREASE = "INCREASE"
STOCK_DECREASE = "DECREASE"

PRODUCT_MUTABLE_FIELDS = {"name", "description", "price", "stock_quantity", "category_id"}

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
MAX_IMAGE_BYTES = 5 * 1024 * 1024


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def _require_category(category_id: int | None) -> None:
    if category_id is None:
        return
    category = db.session.get(Category, category_id)
    if not category or category.deleted_at is not None:
        raise ValidationError(f"Category {category_id} not found")


# =============================================================================
# QUERIES
# =============================================================================

def list_products(
    *,
    status: str | None = None,
    category_id: int | None = None,
    available_only: bool = False,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Product listing with optional filters and pagination.

    Args:
        status: Filter by exact status
        category_id: Filter by category
        available_only: Only ACTIVE products with stock > 0
        page: Page number (1-indexed). If None, returns all items.
        per_page: Items per page (default 20, max 100)

    Returns:
        Dict with 'items', 'count', and pagination metadata if paginated.
    """
    base_query = db.session.query(Product)

    if status is not None:
        if status not in VALID_STATUSES:
            raise ValidationError(f"Invalid status: {status}. Must be one of {VALID_STATUSES}")
        base_query = base_query.filter(Product.status == status)
    if category_id is not None:
        base_query = base_query.filter(Product.category_id == category_id)
    if available_only:
        base_query = base_query.filter(Product.status == STATUS_ACTIVE, Product.stock_quantity > 0)

    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())

    # If no pagination requested, return all items
    if page is None:
        products = base_query.all()
        return {
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)  # Default 20, max 100
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


# =============================================================================
# CRUD
# =============================================================================

def create_product(*, patch: dict) -> dict:
    """
    Create product using a validated patch dict.

    New products always start ACTIVE; price and stock default to 0.
    """
    _require_category(patch.get("category_id"))

    p = Product(status=STATUS_ACTIVE, price=0, stock_quantity=0)
    apply_product_patch(p, patch)

    db.session.add(p)
    db.session.commit()
    return p.to_dict()


def update_product(*, product_id: int, patch: dict) -> dict:
    """Apply a validated partial patch (info, price, stock level, category)."""
    p = get_product(product_id)
    if "category_id" in patch:
        _require_category(patch["category_id"])

    apply_product_patch(p, patch)

    # A direct stock write follows the same automatic status rules as adjustments
    if "stock_quantity" in patch:
        if p.stock_quantity == 0 and p.status == STATUS_ACTIVE:
            p.status = STATUS_OUT_OF_STOCK
        elif p.stock_quantity > 0 and p.status == STATUS_OUT_OF_STOCK:
            p.status = STATUS_ACTIVE

    db.session.commit()
    return p.to_dict()


def update_product_info(product_id: int, *, name: str | None = None, description: str | None = None) -> dict:
    patch = {}
    if name is not None:
        name = name.strip()
        if not name:
            raise ValidationError("name cannot be blank")
        if len(name) > 200:
            raise ValidationError("name exceeds max length 200")
        patch["name"] = name
    if description is not None:
        patch["description"] = description
    return update_product(product_id=product_id, patch=patch)


def update_product_price(product_id: int, *, price: int) -> dict:
    if price < 0:
        raise ValidationError("price must be >= 0")
    return update_product(product_id=product_id, patch={"price": price})


def delete_product(*, product_id: int) -> bool:
    """
    Hard-delete a product that was never ordered.

    Ordered products must be discontinued instead so order history keeps
    its product reference.
    """
    p = db.session.get(Product, product_id)
    if not p:
        return False

    if db.session.query(Order.id).filter(Order.product_id == product_id).first():
        raise ConflictError("Product has orders; discontinue it instead")

    db.session.query(ProductImage).filter_by(product_id=product_id).delete()
    p.tags = []
    db.session.delete(p)
    db.session.commit()
    return True


def assign_category(product_id: int, category_id: int | None) -> dict:
    return update_product(product_id=product_id, patch={"category_id": category_id})


# =============================================================================
# STOCK
# =============================================================================

def increase_stock_locked(product_id: int, quantity: int) -> None:
    """
    Add stock inside the caller's transaction (no commit).

    An OUT_OF_STOCK product becomes ACTIVE again once it has stock.
    """
    if quantity <= 0:
        raise ProductError("Quantity must be positive")

    affected = guarded_update(
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=Product.stock_quantity + quantity, updated_at=utcnow())
    )
    if affected == 0:
        raise NotFoundError(f"Product {product_id} not found")

    guarded_update(
        update(Product)
        .where(
            Product.id == product_id,
            Product.status == STATUS_OUT_OF_STOCK,
            Product.stock_quantity > 0,
        )
        .values(status=STATUS_ACTIVE)
    )


def decrease_stock_locked(product_id: int, quantity: int) -> None:
    """
    Remove stock inside the caller's transaction (no commit).

    Conditional UPDATE ... WHERE stock_quantity >= quantity; zero affected
    rows means not enough stock (or no such product) and nothing changed.
    An ACTIVE product that reaches zero becomes OUT_OF_STOCK.
    """
    if quantity <= 0:
        raise ProductError("Quantity must be positive")

    affected = guarded_update(
        update(Product)
        .where(Product.id == product_id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity, updated_at=utcnow())
    )
    if affected == 0:
        product = get_product(product_id)
        raise InsufficientStockError(
            f"Insufficient stock: requested={quantity}, available={product.stock_quantity}"
        )

    guarded_update(
        update(Product)
        .where(
            Product.id == product_id,
            Product.status == STATUS_ACTIVE,
            Product.stock_quantity == 0,
        )
        .values(status=STATUS_OUT_OF_STOCK)
    )


def update_product_stock(product_id: int, *, quantity: int, operation: str) -> dict:
    """
    Adjust stock by quantity in the given direction.

    Args:
        product_id: Product to adjust
        quantity: Positive amount
        operation: INCREASE or DECREASE

    Raises:
        ProductError: Bad quantity or operation
        InsufficientStockError: DECREASE larger than current stock
        NotFoundError: Unknown product
    """
    operation = (operation or "").upper()
    if operation not in (STOCK_INCREASE, STOCK_DECREASE):
        raise ProductError("operation must be INCREASE or DECREASE")

    def _op():
        if operation == STOCK_INCREASE:
            increase_stock_locked(product_id, quantity)
        else:
            decrease_stock_locked(product_id, quantity)
        db.session.commit()
        return get_product(product_id).to_dict()

    return run_with_retry(_op)


# =============================================================================
# STATUS LIFECYCLE
# =============================================================================

def activate_product(product_id: int) -> dict:
    """
    Put a product (back) on sale.

    Works from INACTIVE and DISCONTINUED (re-listing). The product lands in
    OUT_OF_STOCK instead of ACTIVE when it has no stock.
    """
    p = get_product(product_id)
    p.status = STATUS_OUT_OF_STOCK if p.stock_quantity == 0 else STATUS_ACTIVE
    db.session.commit()
    return p.to_dict()


def deactivate_product(product_id: int) -> dict:
    p = get_product(product_id)
    if p.status == STATUS_DISCONTINUED:
        raise ProductError("Cannot deactivate a discontinued product")
    p.status = STATUS_INACTIVE
    db.session.commit()
    return p.to_dict()


def discontinue_product(product_id: int) -> dict:
    p = get_product(product_id)
    p.status = STATUS_DISCONTINUED
    db.session.commit()
    return p.to_dict()


# =============================================================================
# IMAGES
# =============================================================================

def _live_images(product_id: int):
    return (
        db.session.query(ProductImage)
        .filter(ProductImage.product_id == product_id, ProductImage.deleted_at.is_(None))
        .order_by(ProductImage.order_index.asc(), ProductImage.id.asc())
    )


def list_images(product_id: int) -> list[dict]:
    get_product(product_id)
    return [img.to_dict() for img in _live_images(product_id).all()]


def add_image(
    product_id: int,
    *,
    url: str,
    content_type: str,
    size_bytes: int,
    original_file_name: str | None = None,
    width: int | None = None,
    height: int | None = None,
) -> dict:
    """
    Attach image metadata to a product.

    Only jpeg/png/webp up to 5 MiB. The first image becomes primary and
    new images are appended to the end of the gallery.
    """
    get_product(product_id)

    if not url or not str(url).strip():
        raise ValidationError("url is required")
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Invalid image type. Only jpg, jpeg, png, webp are allowed")
    if size_bytes is None or size_bytes <= 0:
        raise ValidationError("File size must be greater than 0")
    if size_bytes > MAX_IMAGE_BYTES:
        raise ValidationError("File size exceeds maximum limit of 5MB")

    existing = _live_images(product_id).all()
    image = ProductImage(
        product_id=product_id,
        url=str(url).strip(),
        content_type=content_type,
        size_bytes=size_bytes,
        original_file_name=original_file_name,
        width=width,
        height=height,
        is_primary=not existing,
        order_index=(max(i.order_index for i in existing) + 1) if existing else 0,
    )
    db.session.add(image)
    db.session.commit()
    return image.to_dict()


def set_primary_image(product_id: int, image_id: int) -> dict:
    images = _live_images(product_id).all()
    target = next((i for i in images if i.id == image_id), None)
    if target is None:
        raise NotFoundError(f"Image {image_id} not found")

    for img in images:
        img.is_primary = img.id == image_id
    db.session.commit()
    return target.to_dict()


def reorder_images(product_id: int, image_ids: list[int]) -> list[dict]:
    """Rewrite order_index to follow image_ids, which must list every live image exactly once."""
    images = {i.id: i for i in _live_images(product_id).all()}
    if sorted(image_ids) != sorted(images.keys()):
        raise ValidationError("image_ids must list every image of the product exactly once")

    for index, image_id in enumerate(image_ids):
        images[image_id].order_index = index
    db.session.commit()
    return list_images(product_id)


def delete_image(product_id: int, image_id: int) -> None:
    """Soft-delete an image; the next image in gallery order becomes primary if needed."""
    images = _live_images(product_id).all()
    target = next((i for i in images if i.id == image_id), None)
    if target is None:
        raise NotFoundError(f"Image {image_id} not found")

    target.deleted_at = utcnow()
    if target.is_primary:
        target.is_primary = False
        remaining = [i for i in images if i.id != image_id]
        if remaining:
            remaining[0].is_primary = True
    db.session.commit()
