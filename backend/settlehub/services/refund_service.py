# Overview: Service-layer operations for refunds; encapsulates business logic and database work.

"""
Refund Service

Every refund request carries a client idempotency key. The contract:

- same (payment, key) again -> the original Refund comes back unchanged,
  no balance moves a second time
- new key -> a new refund, limited to amount - refunded_amount

The key lookup alone would race under concurrent retries. The unique
constraint on (payment_id, idempotency_key) decides the winner; a loser whose
insert collides, or whose balance and status checks fail because the winner
committed after its lookup, rolls back and re-reads the winner's row. The
balance itself moves with a guarded UPDATE (refunded_amount + x <= amount).

Side effects on the fully refunded payment: payment REFUNDED, order
REFUNDED, PENDING or CONFIRMED settlement CANCELED. Partial refunds shrink
the settlement base instead. Refunds against a CONFIRMED or COMPLETED
settlement are also booked as a SettlementAdjustment.
"""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Payment, Refund
from ..validation import NotFoundError, ValidationError
from .concurrency import guarded_update, run_with_retry
from .order_service import ORDER_PAID, get_order, transition_order
from .payment_service import PAYMENT_CAPTURED, get_payment, transition_payment
from .settlement_service import apply_refund_to_settlement_locked
from settlehub.time_utils import utcnow

logger = logging.getLogger(__name__)


class RefundError(Exception):
    """Raised for refund operation errors."""


class RefundExceedsPayment(RefundError):
    """Raised when a refund is larger than the remaining refundable balance."""


REFUND_COMPLETED = "COMPLETED"
MAX_IDEMPOTENCY_KEY_LENGTH = 128
MAX_REASON_LENGTH = 255


def _find_by_key(payment_id: int, idempotency_key: str) -> Refund | None:
    return (
        db.session.query(Refund)
        .filter(Refund.payment_id == payment_id, Refund.idempotency_key == idempotency_key)
        .first()
    )


def _validate_key(idempotency_key: str | None) -> str:
    key = (idempotency_key or "").strip()
    if not key:
        raise ValidationError("Idempotency-Key is required")
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(f"Idempotency-Key exceeds max length {MAX_IDEMPOTENCY_KEY_LENGTH}")
    return key


def create_refund(
    *,
    payment_id: int,
    idempotency_key: str,
    amount: int | None = None,
    reason: str | None = None,
    user_id: int | None = None,
) -> tuple[Refund, bool]:
    """
    Refund part or all of a captured payment, idempotently.

    Args:
        payment_id: Payment to refund
        idempotency_key: Client key identifying this logical request
        amount: Amount to refund; None refunds the whole remaining balance
        reason: Free text
        user_id: Acting user (attribution)

    Returns:
        (refund, created): created is False when the key was seen before

    Raises:
        ValidationError: Missing key / non-positive amount
        NotFoundError: Unknown payment
        RefundError: Payment not in a refundable status
        RefundExceedsPayment: amount > amount - refunded_amount
    """
    key = _validate_key(idempotency_key)
    if amount is not None and amount <= 0:
        raise ValidationError("Refund amount must be > 0")
    if reason is not None:
        reason = str(reason).strip()[:MAX_REASON_LENGTH] or None

    def _op():
        existing = _find_by_key(payment_id, key)
        if existing:
            return existing, False

        payment = get_payment(payment_id)
        if payment.status != PAYMENT_CAPTURED:
            raise RefundError(f"Payment {payment_id} is not refundable (status {payment.status})")

        remaining = payment.refundable_amount
        refund_amount = remaining if amount is None else amount
        if refund_amount <= 0 or refund_amount > remaining:
            raise RefundExceedsPayment(
                f"Refund amount {refund_amount} exceeds refundable balance {remaining} "
                f"(paid {payment.amount}, already refunded {payment.refunded_amount})"
            )
        order_id = payment.order_id

        refund = Refund(
            payment_id=payment_id,
            amount=refund_amount,
            reason=reason,
            status=REFUND_COMPLETED,
            idempotency_key=key,
            created_by_user_id=user_id,
            created_at=utcnow(),
        )
        db.session.add(refund)
        db.session.flush()

        affected = guarded_update(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PAYMENT_CAPTURED,
                Payment.refunded_amount + refund_amount <= Payment.amount,
            )
            .values(refunded_amount=Payment.refunded_amount + refund_amount, updated_at=utcnow())
        )
        if affected == 0:
            raise RefundExceedsPayment(f"Refund amount {refund_amount} exceeds refundable balance")

        payment = get_payment(payment_id)
        fully_refunded = payment.refunded_amount == payment.amount
        if fully_refunded:
            transition_payment(payment_id, "refund")
            if get_order(order_id).status == ORDER_PAID:
                transition_order(order_id, "refund")

        apply_refund_to_settlement_locked(
            payment_id=payment_id,
            refund_id=refund.id,
            refund_amount=refund_amount,
            refunded_amount=payment.refunded_amount,
            fully_refunded=fully_refunded,
        )

        db.session.commit()
        logger.info(
            "Refund %s created: payment_id=%s amount=%s full=%s",
            refund.id,
            payment_id,
            refund_amount,
            fully_refunded,
        )
        return db.session.get(Refund, refund.id), True

    try:
        return run_with_retry(_op)
    except (IntegrityError, RefundError):
        # A same-key request committed after our lookup; resolve to its row
        winner = _find_by_key(payment_id, key)
        if winner is None:
            raise
        logger.info("Refund key %r on payment %s resolved to concurrent refund %s", key, payment_id, winner.id)
        return winner, False


def process_full_refund(*, payment_id: int, idempotency_key: str, reason: str | None = None,
                        user_id: int | None = None) -> tuple[Refund, bool]:
    """Refund whatever is left on the payment."""
    return create_refund(
        payment_id=payment_id,
        idempotency_key=idempotency_key,
        amount=None,
        reason=reason or "Full refund",
        user_id=user_id,
    )


def process_partial_refund(*, payment_id: int, refund_amount: int, idempotency_key: str,
                           reason: str | None = None, user_id: int | None = None) -> tuple[Refund, bool]:
    if refund_amount is None or refund_amount <= 0:
        raise ValidationError("refundAmount must be > 0")
    return create_refund(
        payment_id=payment_id,
        idempotency_key=idempotency_key,
        amount=refund_amount,
        reason=reason or "Partial refund",
        user_id=user_id,
    )


def cancel_failed_payment(payment_id: int) -> Payment:
    """
    Void a payment that never captured (CREATED, AUTHORIZED or FAILED).

    No money moved, so no Refund row is written.
    """
    def _op():
        transition_payment(payment_id, "cancel")
        db.session.commit()
        return get_payment(payment_id)

    return run_with_retry(_op)


def get_refund(refund_id: int) -> Refund:
    refund = db.session.get(Refund, refund_id)
    if not refund:
        raise NotFoundError(f"Refund {refund_id} not found")
    return refund


def list_payment_refunds(payment_id: int) -> list[Refund]:
    get_payment(payment_id)
    return (
        db.session.query(Refund)
        .filter(Refund.payment_id == payment_id)
        .order_by(Refund.created_at.asc(), Refund.id.asc())
        .all()
    )
