# Overview: Service-layer operations for the category tree; encapsulates business logic and database work.

"""
Category Service

Categories form a forest at most three levels deep (depth 0..2). Rows only
store parent_id; every tree operation loads the live rows once and works on
an arena:

    nodes:    {category_id: Category}
    children: {parent_id or None: [child ids ordered by display_order, id]}

Deleted categories (deleted_at set) are invisible to every query here.
"""

from __future__ import annotations

import re
import unicodedata
from collections import defaultdict, deque

from ..extensions import db
from ..models import Category, Product
from ..validation import ConflictError, NotFoundError, ValidationError
from settlehub.time_utils import utcnow


class CategoryError(Exception):
    """Raised for category rule violations."""


class CategoryDepthExceededError(CategoryError):
    """Raised when a create/move would put a category below MAX_DEPTH."""


class CircularReferenceError(CategoryError):
    """Raised when a move would make a category its own ancestor."""


class CategoryInUseError(CategoryError):
    """Raised when deleting a category that still has children or products."""


class DuplicateSlugError(ConflictError):
    """Raised when a slug is already taken."""


MAX_DEPTH = 2
MAX_NAME_LENGTH = 200
MAX_SLUG_LENGTH = 300
SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


# =============================================================================
# SLUGS
# =============================================================================

_INITIALS = ["g", "kk", "n", "d", "tt", "r", "m", "b", "pp", "s", "ss", "", "j", "jj", "ch", "k", "t", "p", "h"]
_MEDIALS = ["a", "ae", "ya", "yae", "eo", "e", "yeo", "ye", "o", "wa", "wae", "oe", "yo", "u", "wo", "we", "wi",
            "yu", "eu", "ui", "i"]
_FINALS = ["", "g", "kk", "gs", "n", "nj", "nh", "d", "l", "lg", "lm", "lb", "ls", "lt", "lp", "lh", "m", "b", "bs",
           "s", "ss", "ng", "j", "ch", "k", "t", "p", "h"]


def _romanize_hangul(text: str) -> str:
    """Simplified syllable-by-syllable romanization of Hangul (가..힣)."""
    out = []
    for ch in text:
        code = ord(ch) - 0xAC00
        if 0 <= code <= 11171:
            out.append(_INITIALS[code // (21 * 28)])
            out.append(_MEDIALS[(code % (21 * 28)) // 28])
            out.append(_FINALS[code % 28])
        else:
            out.append(ch)
    return "".join(out)


def slugify(value: str) -> str:
    """
    Build a URL slug: lowercase, accents stripped, Hangul romanized,
    whitespace/underscores to hyphens, only [a-z0-9-], hyphens collapsed.

    >>> slugify("  Summer_Sale 2024! ")
    'summer-sale-2024'
    """
    slug = (value or "").strip().lower()
    # NFC first so Hangul stays as precomposed syllables for romanization
    slug = _romanize_hangul(unicodedata.normalize("NFC", slug))
    slug = unicodedata.normalize("NFD", slug)
    slug = "".join(ch for ch in slug if not unicodedata.combining(ch))
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    if not slug:
        raise ValidationError("Generated slug is empty. Name may contain only special characters.")
    return slug


def _validate_slug(slug: str) -> str:
    slug = slug.strip()
    if len(slug) > MAX_SLUG_LENGTH:
        raise ValidationError(f"slug exceeds max length {MAX_SLUG_LENGTH}")
    if not SLUG_PATTERN.match(slug):
        raise ValidationError("slug may only contain lowercase letters, digits and single hyphens")
    return slug


def _ensure_slug_free(slug: str, exclude_id: int | None = None) -> None:
    query = db.session.query(Category.id).filter(Category.slug == slug)
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first():
        raise DuplicateSlugError(f"Slug already exists: {slug}")


def _validate_name(name) -> str:
    if name is None or not str(name).strip():
        raise ValidationError("name is required")
    name = str(name).strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"name exceeds max length {MAX_NAME_LENGTH}")
    return name


# =============================================================================
# ARENA
# =============================================================================

def _live_query():
    return db.session.query(Category).filter(Category.deleted_at.is_(None))


def _load_arena(*, active_only: bool = False) -> tuple[dict[int, Category], dict[int | None, list[int]]]:
    query = _live_query()
    if active_only:
        query = query.filter(Category.is_active.is_(True))
    rows = query.order_by(Category.display_order.asc(), Category.id.asc()).all()

    nodes = {c.id: c for c in rows}
    children: dict[int | None, list[int]] = defaultdict(list)
    for c in rows:
        if c.parent_id is None:
            children[None].append(c.id)
        elif c.parent_id in nodes:
            children[c.parent_id].append(c.id)
        # A child whose parent is filtered out (inactive) is left out of the tree
    return nodes, children


def _descendant_ids(category_id: int, children: dict[int | None, list[int]]) -> list[int]:
    found = []
    queue = deque(children.get(category_id, []))
    while queue:
        cid = queue.popleft()
        found.append(cid)
        queue.extend(children.get(cid, []))
    return found


def _subtree_height(category_id: int, children: dict[int | None, list[int]]) -> int:
    kids = children.get(category_id, [])
    if not kids:
        return 0
    return 1 + max(_subtree_height(k, children) for k in kids)


def build_tree(*, active_only: bool = False) -> list[dict]:
    """Category forest as nested dicts; each node carries a 'children' list."""
    nodes, children = _load_arena(active_only=active_only)

    def render(cid: int) -> dict:
        data = nodes[cid].to_dict()
        data["children"] = [render(k) for k in children.get(cid, [])]
        return data

    return [render(root_id) for root_id in children.get(None, [])]


# =============================================================================
# QUERIES
# =============================================================================

def get_category(category_id: int) -> Category:
    category = _live_query().filter(Category.id == category_id).first()
    if not category:
        raise NotFoundError(f"Category {category_id} not found")
    return category


def get_category_by_slug(slug: str) -> Category:
    category = _live_query().filter(Category.slug == slug).first()
    if not category:
        raise NotFoundError(f"Category not found: {slug}")
    return category


def list_categories(*, active_only: bool = False, roots_only: bool = False, parent_id: int | None = None) -> list[dict]:
    query = _live_query()
    if active_only:
        query = query.filter(Category.is_active.is_(True))
    if roots_only:
        query = query.filter(Category.parent_id.is_(None))
    if parent_id is not None:
        get_category(parent_id)
        query = query.filter(Category.parent_id == parent_id)
    rows = query.order_by(Category.depth.asc(), Category.display_order.asc(), Category.id.asc()).all()
    return [c.to_dict() for c in rows]


# =============================================================================
# MUTATIONS
# =============================================================================

def create_category(
    *,
    name: str,
    slug: str | None = None,
    parent_id: int | None = None,
    display_order: int | None = None,
    description: str | None = None,
) -> Category:
    """
    Create a root (parent_id None) or child category.

    When slug is omitted it is generated from the name; a child's generated
    slug is prefixed with its parent's slug.

    Raises:
        ValidationError: Bad name/slug/order
        NotFoundError: Unknown parent
        CategoryDepthExceededError: Parent already at MAX_DEPTH
        DuplicateSlugError: Slug taken
    """
    name = _validate_name(name)

    parent = get_category(parent_id) if parent_id is not None else None
    depth = parent.depth + 1 if parent else 0
    if depth > MAX_DEPTH:
        raise CategoryDepthExceededError(f"Category depth cannot exceed {MAX_DEPTH}")

    if slug and slug.strip():
        slug = _validate_slug(slug)
    else:
        slug = slugify(name)
        if parent:
            slug = f"{parent.slug}-{slug}"
        slug = _validate_slug(slug)

    _ensure_slug_free(slug)

    order = display_order if display_order is not None else 0
    if order < 0:
        raise ValidationError("display_order must be >= 0")

    category = Category(
        name=name,
        slug=slug,
        description=description,
        parent_id=parent.id if parent else None,
        depth=depth,
        display_order=order,
        is_active=True,
    )
    db.session.add(category)
    db.session.commit()
    return category


def update_category(
    category_id: int,
    *,
    name: str | None = None,
    slug: str | None = None,
    description: str | None = None,
    display_order: int | None = None,
) -> Category:
    category = get_category(category_id)

    if name is not None:
        category.name = _validate_name(name)
    if slug is not None and slug.strip() and slug.strip() != category.slug:
        slug = _validate_slug(slug)
        _ensure_slug_free(slug, exclude_id=category.id)
        category.slug = slug
    if description is not None:
        category.description = description
    if display_order is not None:
        if display_order < 0:
            raise ValidationError("display_order must be >= 0")
        category.display_order = display_order

    db.session.commit()
    return category


def move_category(category_id: int, new_parent_id: int | None) -> Category:
    """
    Re-parent a category together with its subtree.

    Rejects moves under itself or one of its descendants, and moves that
    would push any node of the subtree below MAX_DEPTH. Depths of the whole
    subtree are recomputed.
    """
    category = get_category(category_id)
    nodes, children = _load_arena()

    if new_parent_id is not None:
        if new_parent_id == category_id:
            raise CircularReferenceError(f"Category {category_id} cannot be its own parent")
        descendants = _descendant_ids(category_id, children)
        if new_parent_id in descendants:
            raise CircularReferenceError(
                f"Cannot move category {category_id} to parent {new_parent_id}: would create circular reference"
            )
        new_parent = get_category(new_parent_id)
        new_depth = new_parent.depth + 1
    else:
        new_depth = 0

    if new_depth + _subtree_height(category_id, children) > MAX_DEPTH:
        raise CategoryDepthExceededError(f"Category depth cannot exceed {MAX_DEPTH}")

    category.parent_id = new_parent_id
    category.depth = new_depth

    # Breadth-first depth fix-up over the arena
    queue = deque((kid, new_depth + 1) for kid in children.get(category_id, []))
    while queue:
        cid, depth = queue.popleft()
        nodes[cid].depth = depth
        queue.extend((k, depth + 1) for k in children.get(cid, []))

    db.session.commit()
    return category


def change_sort_order(category_id: int, display_order: int) -> Category:
    if display_order is None or display_order < 0:
        raise ValidationError("display_order must be >= 0")
    category = get_category(category_id)
    category.display_order = display_order
    db.session.commit()
    return category


def set_active(category_id: int, active: bool) -> Category:
    category = get_category(category_id)
    category.is_active = active
    db.session.commit()
    return category


def delete_category(category_id: int) -> None:
    """
    Soft-delete a category.

    Blocked while it still has live children or products assigned.
    """
    category = get_category(category_id)

    if _live_query().filter(Category.parent_id == category_id).first():
        raise CategoryInUseError("Cannot delete category with child categories")

    if db.session.query(Product.id).filter(Product.category_id == category_id).first():
        raise CategoryInUseError("Cannot delete category with products")

    category.deleted_at = utcnow()
    category.is_active = False
    db.session.commit()
