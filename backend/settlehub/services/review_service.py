# Overview: Service-layer operations for product reviews.

from __future__ import annotations

from sqlalchemy import func

from ..extensions import db
from ..models import Product, Review, User
from ..validation import ConflictError, NotFoundError, ValidationError, coerce_int
from .concurrency import run_with_retry


class ReviewError(Exception):
    """Raised for review operation errors."""


class ReviewPermissionError(ReviewError):
    """Raised when a user edits or deletes someone else's review."""


MAX_CONTENT_LENGTH = 2000


def _validate_rating(value) -> int:
    rating = coerce_int(value, "rating")
    if rating < 1 or rating > 5:
        raise ValidationError("rating must be between 1 and 5")
    return rating


def _validate_content(value) -> str | None:
    if value is None:
        return None
    content = str(value).strip()
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"content exceeds max length {MAX_CONTENT_LENGTH}")
    return content or None


def get_review(review_id: int) -> Review:
    review = db.session.get(Review, review_id)
    if not review:
        raise NotFoundError(f"Review {review_id} not found")
    return review


def _check_owner(review: Review, user: User) -> None:
    if review.user_id != user.id and not user.is_admin:
        raise ReviewPermissionError("Only the author or an admin can change this review")


def create_review(*, product_id: int, user_id: int, rating, content=None) -> Review:
    """
    Write a review. One review per user per product.

    Raises:
        ValidationError: rating outside 1..5 / content too long
        NotFoundError: Unknown product
        ConflictError: User already reviewed this product
    """
    rating = _validate_rating(rating)
    content = _validate_content(content)

    def _op():
        if not db.session.get(Product, product_id):
            raise NotFoundError(f"Product {product_id} not found")

        exists = (
            db.session.query(Review.id)
            .filter(Review.product_id == product_id, Review.user_id == user_id)
            .first()
        )
        if exists:
            raise ConflictError(f"User {user_id} already reviewed product {product_id}")

        review = Review(product_id=product_id, user_id=user_id, rating=rating, content=content)
        db.session.add(review)
        db.session.commit()
        return review

    return run_with_retry(_op)


def update_review(review_id: int, *, user: User, rating=None, content=None) -> Review:
    if rating is None and content is None:
        raise ValidationError("Nothing to update: provide rating and/or content")

    def _op():
        review = get_review(review_id)
        _check_owner(review, user)
        if rating is not None:
            review.rating = _validate_rating(rating)
        if content is not None:
            review.content = _validate_content(content)
        db.session.commit()
        return review

    return run_with_retry(_op)


def delete_review(review_id: int, *, user: User) -> None:
    def _op():
        review = get_review(review_id)
        _check_owner(review, user)
        db.session.delete(review)
        db.session.commit()

    run_with_retry(_op)


def list_product_reviews(product_id: int) -> dict:
    """
    Reviews of one product, newest first, with count and average rating.

    Returns:
        {"reviews": [Review...], "count": n, "average_rating": float | None}
    """
    if not db.session.get(Product, product_id):
        raise NotFoundError(f"Product {product_id} not found")

    reviews = (
        db.session.query(Review)
        .filter(Review.product_id == product_id)
        .order_by(Review.created_at.desc(), Review.id.desc())
        .all()
    )
    avg = db.session.query(func.avg(Review.rating)).filter(Review.product_id == product_id).scalar()
    return {
        "reviews": reviews,
        "count": len(reviews),
        "average_rating": round(float(avg), 2) if avg is not None else None,
    }


def list_user_reviews(user_id: int) -> list[Review]:
    return (
        db.session.query(Review)
        .filter(Review.user_id == user_id)
        .order_by(Review.created_at.desc(), Review.id.desc())
        .all()
    )
