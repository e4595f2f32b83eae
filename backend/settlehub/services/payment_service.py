# Overview: Service-layer operations for payment; encapsulates business logic and database work.

"""
Payment Processing Service

Two ways into CAPTURED share one transition table:

- explicit: CREATED --authorize--> AUTHORIZED --capture--> CAPTURED
- hosted checkout: CREATED --gateway_confirm--> CAPTURED, only after Toss
  confirmed the charge and the confirmed amount equals the order amount

Capturing a payment moves its order CREATED -> PAID in the same
transaction. Every status write is a guarded UPDATE (see state_machine),
so a duplicated confirm/capture request fails instead of applying twice.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Payment
from ..validation import ConflictError, NotFoundError, ValidationError
from settlehub.time_utils import utcnow
from . import toss_client
from .concurrency import run_with_retry
from .order_service import ORDER_CREATED, get_order, transition_order
from .state_machine import InvalidStateTransition, apply_transition
from .toss_client import GatewayError

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Raised for payment operation errors."""


class AmountMismatchError(PaymentError):
    """Raised when client, order and gateway amounts disagree."""


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CARD = "CARD"
METHOD_BANK_TRANSFER = "BANK_TRANSFER"
METHOD_VIRTUAL_ACCOUNT = "VIRTUAL_ACCOUNT"
METHOD_MOBILE = "MOBILE"
METHOD_TOSS = "TOSS"

VALID_PAYMENT_METHODS = [
    METHOD_CARD,
    METHOD_BANK_TRANSFER,
    METHOD_VIRTUAL_ACCOUNT,
    METHOD_MOBILE,
    METHOD_TOSS,
]


# =============================================================================
# PAYMENT STATUS (CONSTANTS)
# =============================================================================

PAYMENT_CREATED = "CREATED"
PAYMENT_AUTHORIZED = "AUTHORIZED"
PAYMENT_CAPTURED = "CAPTURED"
PAYMENT_FAILED = "FAILED"
PAYMENT_CANCELED = "CANCELED"
PAYMENT_REFUNDED = "REFUNDED"

VALID_PAYMENT_STATUSES = [
    PAYMENT_CREATED,
    PAYMENT_AUTHORIZED,
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    PAYMENT_CANCELED,
    PAYMENT_REFUNDED,
]

# Older clients still send READY for a payment that has not been authorized
STATUS_ALIASES = {"READY": PAYMENT_CREATED}

OPEN_STATUSES = (PAYMENT_CREATED, PAYMENT_AUTHORIZED)

PAYMENT_TRANSITIONS = {
    (PAYMENT_CREATED, "authorize"): PAYMENT_AUTHORIZED,
    (PAYMENT_AUTHORIZED, "capture"): PAYMENT_CAPTURED,
    (PAYMENT_CREATED, "gateway_confirm"): PAYMENT_CAPTURED,
    (PAYMENT_CREATED, "fail"): PAYMENT_FAILED,
    (PAYMENT_AUTHORIZED, "fail"): PAYMENT_FAILED,
    (PAYMENT_CREATED, "cancel"): PAYMENT_CANCELED,
    (PAYMENT_AUTHORIZED, "cancel"): PAYMENT_CANCELED,
    (PAYMENT_FAILED, "cancel"): PAYMENT_CANCELED,
    (PAYMENT_CAPTURED, "refund"): PAYMENT_REFUNDED,
}


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    status = str(value).strip().upper()
    status = STATUS_ALIASES.get(status, status)
    if status not in VALID_PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status: {value}. Must be one of {VALID_PAYMENT_STATUSES}")
    return status


def transition_payment(payment_id: int, event: str, **values) -> str:
    """Apply a payment event inside the caller's transaction (no commit)."""
    return apply_transition(Payment, payment_id, transitions=PAYMENT_TRANSITIONS, event=event, values=values)


# =============================================================================
# QUERIES
# =============================================================================

def get_payment(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


def get_order_payments(order_id: int, *, status: str | None = None) -> list[Payment]:
    """Payments of an order, oldest first; status accepts the READY alias."""
    get_order(order_id)
    query = db.session.query(Payment).filter(Payment.order_id == order_id)
    status = normalize_status(status)
    if status is not None:
        query = query.filter(Payment.status == status)
    return query.order_by(Payment.id.asc()).all()


def _open_payment(order_id: int) -> Payment | None:
    return (
        db.session.query(Payment)
        .filter(Payment.order_id == order_id, Payment.status.in_(OPEN_STATUSES))
        .order_by(Payment.id.desc())
        .first()
    )


def _captured_payment(order_id: int, pg_transaction_id: str) -> Payment | None:
    return (
        db.session.query(Payment)
        .filter(
            Payment.order_id == order_id,
            Payment.pg_transaction_id == pg_transaction_id,
            Payment.status.in_((PAYMENT_CAPTURED, PAYMENT_REFUNDED)),
        )
        .first()
    )


# =============================================================================
# EXPLICIT AUTHORIZE / CAPTURE
# =============================================================================

def create_payment(*, order_id: int, payment_method: str) -> Payment:
    """
    Open a payment for a CREATED order.

    The amount is copied from the order; clients never set it.

    Raises:
        ValidationError: Unknown payment method
        NotFoundError: Unknown order
        InvalidStateTransition: Order is not CREATED
        ConflictError: Order already has an open payment
    """
    method = (payment_method or "").strip().upper()
    if method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {payment_method}. Must be one of {VALID_PAYMENT_METHODS}")

    def _op():
        order = get_order(order_id)
        if order.status != ORDER_CREATED:
            raise InvalidStateTransition(f"Order {order_id} is not awaiting payment (status {order.status})")
        if _open_payment(order_id):
            raise ConflictError(f"Order {order_id} already has an open payment")

        payment = Payment(
            order_id=order_id,
            amount=order.amount,
            refunded_amount=0,
            payment_method=method,
            status=PAYMENT_CREATED,
        )
        db.session.add(payment)
        db.session.commit()
        return payment

    return run_with_retry(_op)


def authorize_payment(payment_id: int, *, pg_transaction_id: str | None = None) -> Payment:
    """CREATED -> AUTHORIZED, optionally recording the gateway reference."""
    def _op():
        values = {}
        if pg_transaction_id:
            values["pg_transaction_id"] = pg_transaction_id
        transition_payment(payment_id, "authorize", **values)
        db.session.commit()
        return get_payment(payment_id)

    return run_with_retry(_op)


def capture_payment(payment_id: int) -> Payment:
    """
    AUTHORIZED -> CAPTURED; the order moves to PAID in the same transaction.

    Raises:
        InvalidStateTransition: Payment not AUTHORIZED or order not CREATED
        StateConflictError: A concurrent capture won
    """
    def _op():
        payment = get_payment(payment_id)
        order_id = payment.order_id
        transition_payment(payment_id, "capture", captured_at=utcnow())
        transition_order(order_id, "pay")
        db.session.commit()
        return get_payment(payment_id)

    return run_with_retry(_op)


def fail_payment(payment_id: int) -> Payment:
    def _op():
        transition_payment(payment_id, "fail")
        db.session.commit()
        return get_payment(payment_id)

    return run_with_retry(_op)


def cancel_open_payments_locked(order_id: int) -> int:
    """Cancel CREATED/AUTHORIZED payments of an order (no commit). Returns count."""
    ids = [
        pid for (pid,) in db.session.query(Payment.id)
        .filter(Payment.order_id == order_id, Payment.status.in_(OPEN_STATUSES))
        .all()
    ]
    for pid in ids:
        transition_payment(pid, "cancel")
    return len(ids)


# =============================================================================
# HOSTED CHECKOUT (TOSS) CONFIRMATION
# =============================================================================

def _validate_confirm_input(payment_key: str, gateway_order_id: str, amount: int) -> None:
    if not payment_key or not str(payment_key).strip():
        raise ValidationError("paymentKey is required")
    if not gateway_order_id or not str(gateway_order_id).strip():
        raise ValidationError("orderId is required")
    if amount is None or amount <= 0:
        raise ValidationError("amount must be > 0")


def _call_gateway(*, payment_key: str, gateway_order_id: str, amount: int) -> dict:
    """Confirm with Toss and prove the confirmed amount equals the expected one."""
    result = toss_client.get_client().confirm_payment(
        payment_key=payment_key,
        order_id=gateway_order_id,
        amount=amount,
    )

    reported = result.get("totalAmount")
    if reported != amount:
        logger.error(
            "Gateway amount mismatch: payment_key=%s expected=%s reported=%s",
            payment_key,
            amount,
            reported,
        )
        raise AmountMismatchError(f"Gateway confirmed amount {reported} does not match expected amount {amount}")

    reported_order = result.get("orderId")
    if reported_order is not None and reported_order != gateway_order_id:
        logger.error(
            "Gateway order mismatch: payment_key=%s expected=%s reported=%s",
            payment_key,
            gateway_order_id,
            reported_order,
        )
        raise PaymentError("Gateway confirmed a different order")

    return result


def _capture_confirmed(order_id: int, payment_key: str) -> Payment:
    """
    Record a gateway-confirmed charge against one order and commit.

    Reuses the order's CREATED payment if one is open, otherwise opens one.
    """
    def _op():
        order = get_order(order_id)
        payment = _open_payment(order_id)
        if payment is None:
            payment = Payment(
                order_id=order_id,
                amount=order.amount,
                refunded_amount=0,
                payment_method=METHOD_TOSS,
                status=PAYMENT_CREATED,
            )
            db.session.add(payment)
            db.session.flush()
        payment_id = payment.id
        now = utcnow()

        if payment.status == PAYMENT_AUTHORIZED:
            transition_payment(payment_id, "capture", captured_at=now, pg_transaction_id=payment_key)
        else:
            transition_payment(payment_id, "gateway_confirm", captured_at=now, pg_transaction_id=payment_key)
        transition_order(order_id, "pay")

        db.session.commit()
        return get_payment(payment_id)

    return run_with_retry(_op)


def confirm_gateway_payment(
    *,
    order_id: int,
    payment_key: str,
    gateway_order_id: str,
    amount: int,
) -> tuple[Payment, bool]:
    """
    Confirm a single-order hosted checkout.

    Fails closed: the client amount must equal the order amount before the
    gateway is called, and the gateway-confirmed amount must equal it after.

    Args:
        order_id: Our order id
        payment_key: Toss paymentKey (stored as pg_transaction_id)
        gateway_order_id: orderId the checkout was opened with
        amount: Amount the client says was charged

    Returns:
        (payment, created) where created is False for a repeated confirm
        of an already captured payment

    Raises:
        ValidationError, NotFoundError, InvalidStateTransition,
        AmountMismatchError, GatewayError, StateConflictError
    """
    _validate_confirm_input(payment_key, gateway_order_id, amount)

    order = get_order(order_id)
    existing = _captured_payment(order_id, payment_key)
    if existing:
        return existing, False

    if order.status != ORDER_CREATED:
        raise InvalidStateTransition(f"Order {order_id} is not awaiting payment (status {order.status})")
    if amount != order.amount:
        raise AmountMismatchError(f"Amount {amount} does not match order amount {order.amount}")

    _call_gateway(payment_key=payment_key, gateway_order_id=gateway_order_id, amount=amount)

    return _capture_confirmed(order_id, payment_key), True


def confirm_gateway_cart_payment(
    *,
    order_ids: list[int],
    payment_key: str,
    gateway_order_id: str,
    total_amount: int,
) -> dict:
    """
    Confirm one hosted checkout that pays several orders.

    Before the gateway call every order must exist and be CREATED and the
    order amounts must add up to total_amount. After the single gateway
    confirmation each order is captured in its own transaction; an order
    that fails at that point is reported in 'failed' and logged for
    reconciliation while the others stay captured.

    Returns:
        {"payments": [Payment...], "failed": [{"orderId": id, "error": msg}],
         "replayed": bool}
    """
    _validate_confirm_input(payment_key, gateway_order_id, total_amount)

    if not order_ids or not isinstance(order_ids, list):
        raise ValidationError("orderIds must be a non-empty list")
    if len(set(order_ids)) != len(order_ids):
        raise ValidationError("orderIds must not contain duplicates")

    orders = [get_order(oid) for oid in order_ids]

    already = [_captured_payment(o.id, payment_key) for o in orders]
    if all(already):
        return {"payments": already, "failed": [], "replayed": True}

    not_payable = [o.id for o in orders if o.status != ORDER_CREATED]
    if not_payable:
        raise InvalidStateTransition(f"Orders not awaiting payment: {not_payable}")

    expected_total = sum(o.amount for o in orders)
    if expected_total != total_amount:
        raise AmountMismatchError(f"totalAmount {total_amount} does not match sum of order amounts {expected_total}")

    _call_gateway(payment_key=payment_key, gateway_order_id=gateway_order_id, amount=total_amount)

    payments = []
    failed = []
    for oid in order_ids:
        try:
            payments.append(_capture_confirmed(oid, payment_key))
        except (ConflictError, NotFoundError, PaymentError) as e:
            logger.error(
                "Cart confirm partial failure: payment_key=%s order_id=%s error=%s",
                payment_key,
                oid,
                e,
            )
            failed.append({"orderId": oid, "error": str(e)})

    return {"payments": payments, "failed": failed, "replayed": False}


