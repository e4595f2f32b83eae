# Overview: Service-layer operations for product tags.

from __future__ import annotations

import re

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Product, Tag
from ..validation import ConflictError, NotFoundError, ValidationError


DEFAULT_COLOR = "#6B7280"
MAX_NAME_LENGTH = 50
COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


def _validate_name(name) -> str:
    if name is None or not str(name).strip():
        raise ValidationError("Tag name cannot be empty")
    name = str(name).strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Tag name cannot exceed {MAX_NAME_LENGTH} characters")
    return name


def _validate_color(color) -> str:
    if color is None or not str(color).strip():
        return DEFAULT_COLOR
    color = str(color).strip()
    if not COLOR_PATTERN.match(color):
        raise ValidationError("Color must be a hex code like #1A2B3C")
    return color


def get_tag(tag_id: int) -> Tag:
    tag = db.session.get(Tag, tag_id)
    if not tag:
        raise NotFoundError(f"Tag {tag_id} not found")
    return tag


def list_tags() -> list[Tag]:
    return db.session.query(Tag).order_by(Tag.name.asc()).all()


def create_tag(*, name: str, color: str | None = None) -> Tag:
    name = _validate_name(name)
    color = _validate_color(color)

    if db.session.query(Tag.id).filter(Tag.name == name).first():
        raise ConflictError(f"Tag already exists: {name}")

    tag = Tag(name=name, color=color)
    db.session.add(tag)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(f"Tag already exists: {name}")
    return tag


def update_tag(tag_id: int, *, name: str | None = None, color: str | None = None) -> Tag:
    tag = get_tag(tag_id)
    if name is not None:
        name = _validate_name(name)
        if name != tag.name and db.session.query(Tag.id).filter(Tag.name == name).first():
            raise ConflictError(f"Tag already exists: {name}")
        tag.name = name
    if color is not None:
        tag.color = _validate_color(color)
    db.session.commit()
    return tag


def delete_tag(tag_id: int) -> None:
    """Delete a tag; its product associations go with it."""
    tag = get_tag(tag_id)
    for product in tag.products.all():
        product.tags.remove(tag)
    db.session.delete(tag)
    db.session.commit()


def tags_for_product(product_id: int) -> list[Tag]:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    return list(product.tags)


def add_tag_to_product(product_id: int, tag_id: int) -> None:
    """Idempotent: attaching an already attached tag is a no-op."""
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    tag = get_tag(tag_id)
    if tag not in product.tags:
        product.tags.append(tag)
        db.session.commit()


def remove_tag_from_product(product_id: int, tag_id: int) -> None:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    tag = get_tag(tag_id)
    if tag in product.tags:
        product.tags.remove(tag)
        db.session.commit()
