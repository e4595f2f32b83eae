# Overview: Service-layer operations for orders; encapsulates business logic and database work.

"""
Order Service

Orders referencing a product are priced on the server: amount is
product.price * quantity at the moment of ordering, and the quantity is
reserved from stock in the same transaction with the guarded decrement.
A client-sent amount is only accepted as a cross-check.

Orders without a product (legacy single-amount checkout) keep the client
amount, which must be positive.

Status: CREATED -> PAID (payment capture), CREATED -> CANCELED,
PAID -> REFUNDED (full refund).
"""

from __future__ import annotations

from ..extensions import db
from ..models import Order, Product, User
from ..validation import NotFoundError, ValidationError
from .concurrency import run_with_retry
from .products_service import decrease_stock_locked, increase_stock_locked, STATUS_ACTIVE
from .state_machine import apply_transition


class OrderError(Exception):
    """Raised for order operation errors."""


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

ORDER_CREATED = "CREATED"
ORDER_PAID = "PAID"
ORDER_CANCELED = "CANCELED"
ORDER_REFUNDED = "REFUNDED"

ORDER_TRANSITIONS = {
    (ORDER_CREATED, "pay"): ORDER_PAID,
    (ORDER_CREATED, "cancel"): ORDER_CANCELED,
    (ORDER_PAID, "refund"): ORDER_REFUNDED,
}

MAX_ORDER_QUANTITY = 10_000


def transition_order(order_id: int, event: str) -> str:
    """Apply an order event inside the caller's transaction (no commit)."""
    return apply_transition(Order, order_id, transitions=ORDER_TRANSITIONS, event=event)


# =============================================================================
# CREATION
# =============================================================================

def create_order(
    *,
    user_id: int,
    product_id: int | None = None,
    quantity: int | None = None,
    amount: int | None = None,
) -> Order:
    """
    Create an order in CREATED status.

    Args:
        user_id: Ordering user (must exist)
        product_id: Product being bought (optional)
        quantity: Units (default 1 when product_id is given)
        amount: Client total; required without product_id, cross-checked with it

    Returns:
        Order record

    Raises:
        NotFoundError: Unknown user or product
        ValidationError: Bad quantity / amount, or amount mismatch
        OrderError: Product not on sale
        InsufficientStockError: Not enough stock for the quantity
    """
    def _op():
        if not db.session.get(User, user_id):
            raise NotFoundError(f"User {user_id} not found")

        if product_id is None:
            if quantity is not None:
                raise ValidationError("quantity requires product_id")
            if amount is None or amount <= 0:
                raise ValidationError("amount must be > 0")
            order = Order(user_id=user_id, amount=amount, status=ORDER_CREATED)
            db.session.add(order)
            db.session.commit()
            return order

        qty = 1 if quantity is None else quantity
        if qty <= 0 or qty > MAX_ORDER_QUANTITY:
            raise ValidationError(f"quantity must be between 1 and {MAX_ORDER_QUANTITY}")

        product = db.session.get(Product, product_id)
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        if product.status != STATUS_ACTIVE:
            raise OrderError(f"Product {product_id} is not available for sale (status {product.status})")

        server_amount = product.price * qty
        if server_amount <= 0:
            raise OrderError("Order amount must be > 0")
        if amount is not None and amount != server_amount:
            raise ValidationError(
                f"amount {amount} does not match price {product.price} x quantity {qty} = {server_amount}"
            )

        decrease_stock_locked(product_id, qty)

        order = Order(
            user_id=user_id,
            product_id=product_id,
            quantity=qty,
            amount=server_amount,
            status=ORDER_CREATED,
        )
        db.session.add(order)
        db.session.commit()
        return order

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def list_user_orders(user_id: int) -> list[Order]:
    """Order history for a user, newest first."""
    return (
        db.session.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_order(order_id: int) -> Order:
    """
    Cancel a CREATED order.

    Reserved stock goes back to the product and any open payment
    (CREATED/AUTHORIZED) is canceled with it.

    Raises:
        NotFoundError: Unknown order
        InvalidStateTransition: Order is not CREATED
    """
    from .payment_service import cancel_open_payments_locked

    def _op():
        order = get_order(order_id)
        transition_order(order_id, "cancel")

        if order.product_id is not None and order.quantity:
            increase_stock_locked(order.product_id, order.quantity)

        cancel_open_payments_locked(order_id)

        db.session.commit()
        return get_order(order_id)

    return run_with_retry(_op)
