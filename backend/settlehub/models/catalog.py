from __future__ import annotations

from ..extensions import db
from settlehub.time_utils import to_utc_z


product_tags = db.Table(
    "product_tags",
    db.Column("product_id", db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
    db.Column("tag_id", db.Integer, db.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Product(db.Model):
    """
    Product master data.

    Price is stored in whole KRW. Stock never goes negative: every decrement
    runs as a conditional UPDATE (see catalog_service.decrease_stock).

    Status lifecycle: ACTIVE <-> INACTIVE, any -> DISCONTINUED,
    ACTIVE <-> OUT_OF_STOCK driven by stock reaching / leaving zero.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        db.Index("ix_products_status", "status"),
        db.Index("ix_products_category", "category_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    price = db.Column(db.BigInteger, nullable=False, default=0)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="ACTIVE")

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy="dynamic"))
    tags = db.relationship(
        "Tag",
        secondary=product_tags,
        lazy="selectin",
        order_by="Tag.name",
        backref=db.backref("products", lazy="dynamic"),
    )

    @property
    def available_for_sale(self) -> bool:
        return self.status == "ACTIVE" and (self.stock_quantity or 0) > 0

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} status={self.status} stock={self.stock_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "stock_quantity": self.stock_quantity,
            "status": self.status,
            "available_for_sale": self.available_for_sale,
            "category_id": self.category_id,
            "tag_ids": [t.id for t in self.tags],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductImage(db.Model):
    """Image metadata attached to a product (gallery order + one primary image)."""
    __tablename__ = "product_images"
    __table_args__ = (
        db.Index("ix_product_images_product_order", "product_id", "order_index"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    url = db.Column(db.String(500), nullable=False)
    original_file_name = db.Column(db.String(255), nullable=True)
    content_type = db.Column(db.String(32), nullable=False)
    size_bytes = db.Column(db.Integer, nullable=False)
    width = db.Column(db.Integer, nullable=True)
    height = db.Column(db.Integer, nullable=True)

    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    order_index = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    product = db.relationship("Product", backref=db.backref("images", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "url": self.url,
            "original_file_name": self.original_file_name,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "width": self.width,
            "height": self.height,
            "is_primary": self.is_primary,
            "order_index": self.order_index,
            "created_at": to_utc_z(self.created_at),
        }


class Category(db.Model):
    """
    Product category, at most three levels deep (depth 0, 1, 2).

    parent_id is a plain self-reference; tree assembly happens in
    category_service from a flat id -> node map, never through ORM
    parent/children back-references.
    """
    __tablename__ = "categories"
    __table_args__ = (
        db.UniqueConstraint("slug", name="uq_categories_slug"),
        db.Index("ix_categories_parent_order", "parent_id", "display_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    slug = db.Column(db.String(300), nullable=False)

    parent_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    depth = db.Column(db.Integer, nullable=False, default=0)
    display_order = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Category id={self.id} slug={self.slug!r} depth={self.depth}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "slug": self.slug,
            "parent_id": self.parent_id,
            "depth": self.depth,
            "display_order": self.display_order,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Tag(db.Model):
    __tablename__ = "tags"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_tags_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False)
    color = db.Column(db.String(7), nullable=False, default="#6B7280")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "created_at": to_utc_z(self.created_at),
        }
