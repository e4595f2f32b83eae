# Overview: Service-layer operations for settlements; derivation, lifecycle, search and aggregation.

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Order, Payment, Product, Settlement, SettlementAdjustment, User
from ..validation import NotFoundError, ValidationError, coerce_int
from settlehub.time_utils import day_bounds, parse_iso_date, to_utc_z, utcnow
from .concurrency import guarded_update, run_with_retry
from .state_machine import apply_transition

logger = logging.getLogger(__name__)


class SettlementError(Exception):
    """Raised when settlement derivation or search fails."""


# =============================================================================
# SETTLEMENT STATUS (CONSTANTS)
# =============================================================================

SETTLEMENT_PENDING = "PENDING"
SETTLEMENT_CONFIRMED = "CONFIRMED"
SETTLEMENT_COMPLETED = "COMPLETED"
SETTLEMENT_CANCELED = "CANCELED"

VALID_STATUSES = [SETTLEMENT_PENDING, SETTLEMENT_CONFIRMED, SETTLEMENT_COMPLETED, SETTLEMENT_CANCELED]

SETTLEMENT_TRANSITIONS = {
    (SETTLEMENT_PENDING, "confirm"): SETTLEMENT_CONFIRMED,
    (SETTLEMENT_CONFIRMED, "complete"): SETTLEMENT_COMPLETED,
    (SETTLEMENT_PENDING, "cancel"): SETTLEMENT_CANCELED,
    # Full refund: nothing left to pay out
    (SETTLEMENT_PENDING, "refund"): SETTLEMENT_CANCELED,
    (SETTLEMENT_CONFIRMED, "refund"): SETTLEMENT_CANCELED,
}

ADJUSTMENT_PENDING = "PENDING"
ADJUSTMENT_CONFIRMED = "CONFIRMED"

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def compute_commission(base_amount: int, commission_bps: int | None = None) -> int:
    """
    Platform commission in whole won, rounded half-up.

    >>> compute_commission(10_050, 300)
    302
    """
    if commission_bps is None:
        commission_bps = current_app.config.get("SETTLEMENT_COMMISSION_BPS", 300)
    if base_amount <= 0:
        return 0
    return (base_amount * commission_bps + 5_000) // 10_000


def _recompute(settlement: Settlement) -> None:
    base = settlement.payment_amount - settlement.refunded_amount
    settlement.commission = compute_commission(base)
    settlement.net_amount = base - settlement.commission


# =============================================================================
# DERIVATION
# =============================================================================

def _unsettled_payments(start, end) -> list[Payment]:
    """CAPTURED payments captured in [start, end) that have no settlement yet."""
    return (
        db.session.query(Payment)
        .outerjoin(Settlement, Settlement.payment_id == Payment.id)
        .filter(
            Payment.status == "CAPTURED",
            Payment.captured_at >= start,
            Payment.captured_at < end,
            Settlement.id.is_(None),
        )
        .order_by(Payment.id.asc())
        .all()
    )


def create_daily_settlements(target_date: date) -> dict:
    """
    Create PENDING settlements for payments captured on target_date.

    Only CAPTURED payments without a settlement are picked up, so running
    the job twice for the same day creates nothing the second time.
    Partially refunded payments are settled on what is left.

    Returns:
        {"settlement_date": "YYYY-MM-DD", "created": n, "settlement_ids": [...]}

    Raises:
        SettlementError: target_date is in the future
    """
    if target_date > utcnow().date():
        raise SettlementError(f"Cannot settle a future date: {target_date.isoformat()}")

    start, end = day_bounds(target_date)

    def _op():
        payments = _unsettled_payments(start, end)

        created = []
        for payment in payments:
            settlement = Settlement(
                payment_id=payment.id,
                order_id=payment.order_id,
                payment_amount=payment.amount,
                refunded_amount=payment.refunded_amount or 0,
                status=SETTLEMENT_PENDING,
                settlement_date=target_date,
            )
            _recompute(settlement)
            db.session.add(settlement)
            created.append(settlement)

        db.session.commit()
        return created

    try:
        created = run_with_retry(_op)
    except IntegrityError:
        # A concurrent run settled some of these payments first; pick up the rest
        logger.warning("Daily settlements for %s collided with another run; re-querying", target_date.isoformat())
        created = run_with_retry(_op)
    logger.info("Daily settlements for %s: created=%d", target_date.isoformat(), len(created))
    return {
        "settlement_date": target_date.isoformat(),
        "created": len(created),
        "settlement_ids": [s.id for s in created],
    }


def apply_refund_to_settlement_locked(
    *,
    payment_id: int,
    refund_id: int,
    refund_amount: int,
    refunded_amount: int,
    fully_refunded: bool,
) -> SettlementAdjustment | None:
    """
    Mirror a payment's refunded total onto its settlement (no commit).

    A full refund cancels a PENDING or CONFIRMED settlement. A refund against
    a CONFIRMED or COMPLETED settlement is also booked as a PENDING
    SettlementAdjustment, since that money was already scheduled for payout.

    Returns:
        The adjustment written, or None
    """
    settlement = db.session.query(Settlement).filter_by(payment_id=payment_id).first()
    if settlement is None or settlement.status == SETTLEMENT_CANCELED:
        return None

    status = settlement.status
    settlement_id = settlement.id
    settlement.refunded_amount = refunded_amount
    _recompute(settlement)

    adjustment = None
    if status in (SETTLEMENT_CONFIRMED, SETTLEMENT_COMPLETED):
        adjustment = SettlementAdjustment(
            settlement_id=settlement_id,
            refund_id=refund_id,
            amount=refund_amount,
            status=ADJUSTMENT_PENDING,
            adjustment_date=utcnow().date(),
        )
        db.session.add(adjustment)
        logger.warning(
            "Refund %s on %s settlement %s booked as adjustment: amount=%s",
            refund_id,
            status,
            settlement_id,
            refund_amount,
        )
    db.session.flush()

    if fully_refunded and (status, "refund") in SETTLEMENT_TRANSITIONS:
        apply_transition(Settlement, settlement_id, transitions=SETTLEMENT_TRANSITIONS, event="refund")
    return adjustment


# =============================================================================
# LIFECYCLE
# =============================================================================

def get_settlement(settlement_id: int) -> Settlement:
    settlement = db.session.get(Settlement, settlement_id)
    if not settlement:
        raise NotFoundError(f"Settlement {settlement_id} not found")
    return settlement


def _transition(settlement_id: int, event: str, **values) -> Settlement:
    def _op():
        apply_transition(Settlement, settlement_id, transitions=SETTLEMENT_TRANSITIONS, event=event, values=values)
        db.session.commit()
        return get_settlement(settlement_id)

    return run_with_retry(_op)


def confirm_settlement(settlement_id: int) -> Settlement:
    return _transition(settlement_id, "confirm", confirmed_at=utcnow())


def complete_settlement(settlement_id: int) -> Settlement:
    return _transition(settlement_id, "complete")


def cancel_settlement(settlement_id: int) -> Settlement:
    return _transition(settlement_id, "cancel")


# =============================================================================
# ADJUSTMENTS
# =============================================================================

def list_adjustments(settlement_id: int) -> list[SettlementAdjustment]:
    get_settlement(settlement_id)
    return (
        db.session.query(SettlementAdjustment)
        .filter(SettlementAdjustment.settlement_id == settlement_id)
        .order_by(SettlementAdjustment.id.asc())
        .all()
    )


def confirm_daily_adjustments(target_date: date) -> dict:
    """
    Confirm the PENDING adjustments booked on target_date.

    Already confirmed adjustments are left alone, so re-running a day
    confirms nothing new.

    Returns:
        {"adjustment_date": "YYYY-MM-DD", "confirmed": n}
    """
    def _op():
        affected = guarded_update(
            update(SettlementAdjustment)
            .where(
                SettlementAdjustment.adjustment_date == target_date,
                SettlementAdjustment.status == ADJUSTMENT_PENDING,
            )
            .values(status=ADJUSTMENT_CONFIRMED, confirmed_at=utcnow(), updated_at=utcnow())
        )
        db.session.commit()
        return affected

    confirmed = run_with_retry(_op)
    logger.info("Settlement adjustments for %s: confirmed=%d", target_date.isoformat(), confirmed)
    return {"adjustment_date": target_date.isoformat(), "confirmed": confirmed}


# =============================================================================
# SEARCH
# =============================================================================

SORT_FIELDS = {
    "settlementDate": Settlement.settlement_date,
    "createdAt": Settlement.created_at,
    "amount": Settlement.payment_amount,
    "refundedAmount": Settlement.refunded_amount,
    "finalAmount": Settlement.payment_amount - Settlement.refunded_amount,
    "status": Settlement.status,
    "id": Settlement.id,
}


@dataclass(frozen=True)
class SettlementSearchParams:
    orderer_name: str | None = None
    product_name: str | None = None
    status: str | None = None
    is_refunded: bool | None = None
    start_date: date | None = None
    end_date: date | None = None
    page: int = 0
    size: int = DEFAULT_PAGE_SIZE
    sort_by: str = "settlementDate"
    sort_direction: str = "DESC"


def _text(value) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _bool(value, field: str) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValidationError(f"{field} must be true or false")


def _date(value, field: str) -> date | None:
    try:
        return parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD)")


def parse_search_params(source: dict) -> SettlementSearchParams:
    """
    Build search params from query args or a JSON body (same keys either way).

    Keys: ordererName, productName, status, isRefunded, startDate, endDate,
    page (0-based), size, sortBy, sortDirection.
    """
    source = source or {}

    status = _text(source.get("status"))
    if status is not None:
        status = status.upper()
        if status not in VALID_STATUSES:
            raise ValidationError(f"Invalid status: {status}. Must be one of {VALID_STATUSES}")

    start_date = _date(source.get("startDate"), "startDate")
    end_date = _date(source.get("endDate"), "endDate")
    if start_date and end_date and start_date > end_date:
        raise ValidationError("startDate must be on or before endDate")

    page = source.get("page")
    page = 0 if page in (None, "") else coerce_int(page, "page")
    if page < 0:
        raise ValidationError("page must be >= 0")

    size = source.get("size")
    size = DEFAULT_PAGE_SIZE if size in (None, "") else coerce_int(size, "size")
    if size < 1 or size > MAX_PAGE_SIZE:
        raise ValidationError(f"size must be between 1 and {MAX_PAGE_SIZE}")

    sort_by = _text(source.get("sortBy")) or "settlementDate"
    if sort_by not in SORT_FIELDS:
        raise ValidationError(f"sortBy must be one of {sorted(SORT_FIELDS)}")

    sort_direction = (_text(source.get("sortDirection")) or "DESC").upper()
    if sort_direction not in ("ASC", "DESC"):
        raise ValidationError("sortDirection must be ASC or DESC")

    return SettlementSearchParams(
        orderer_name=_text(source.get("ordererName")),
        product_name=_text(source.get("productName")),
        status=status,
        is_refunded=_bool(source.get("isRefunded"), "isRefunded"),
        start_date=start_date,
        end_date=end_date,
        page=page,
        size=size,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )


def _orderer_name_expr():
    return func.coalesce(User.name, User.email)


def _joined(query):
    return (
        query.join(Order, Order.id == Settlement.order_id)
        .join(User, User.id == Order.user_id)
        .outerjoin(Product, Product.id == Order.product_id)
    )


def _filtered(query, params: SettlementSearchParams):
    if params.orderer_name:
        query = query.filter(
            User.name.icontains(params.orderer_name, autoescape=True)
            | User.email.icontains(params.orderer_name, autoescape=True)
        )
    if params.product_name:
        query = query.filter(Product.name.icontains(params.product_name, autoescape=True))
    if params.status:
        query = query.filter(Settlement.status == params.status)
    if params.is_refunded is True:
        query = query.filter(Settlement.refunded_amount > 0)
    elif params.is_refunded is False:
        query = query.filter(Settlement.refunded_amount == 0)
    if params.start_date:
        query = query.filter(Settlement.settlement_date >= params.start_date)
    if params.end_date:
        query = query.filter(Settlement.settlement_date <= params.end_date)
    return query


def _item(settlement: Settlement, orderer_name: str | None, product_name: str | None) -> dict:
    return {
        "settlementId": settlement.id,
        "orderId": settlement.order_id,
        "paymentId": settlement.payment_id,
        "ordererName": orderer_name,
        "productName": product_name,
        "amount": settlement.payment_amount,
        "refundedAmount": settlement.refunded_amount,
        "finalAmount": settlement.final_amount,
        "commission": settlement.commission,
        "netAmount": settlement.net_amount,
        "status": settlement.status,
        "isRefunded": settlement.refunded_amount > 0,
        "settlementDate": settlement.settlement_date.isoformat() if settlement.settlement_date else None,
        "createdAt": to_utc_z(settlement.created_at),
    }


def search_settlements(params: SettlementSearchParams) -> dict:
    """
    Paged settlement search plus aggregations over the whole filtered set.

    The page and the aggregations come from separate queries sharing the
    same joins and filters, so totals do not depend on page/size.
    """
    sort_column = SORT_FIELDS[params.sort_by]
    if params.sort_direction == "ASC":
        order_by = (sort_column.asc(), Settlement.id.asc())
    else:
        order_by = (sort_column.desc(), Settlement.id.desc())

    page_query = _filtered(
        _joined(
            db.session.query(
                Settlement,
                _orderer_name_expr().label("orderer_name"),
                Product.name.label("product_name"),
            ).select_from(Settlement)
        ),
        params,
    )
    rows = (
        page_query.order_by(*order_by)
        .offset(params.page * params.size)
        .limit(params.size)
        .all()
    )

    totals = _filtered(
        _joined(
            db.session.query(
                func.count(Settlement.id).label("total_elements"),
                func.coalesce(func.sum(Settlement.payment_amount), 0).label("total_amount"),
                func.coalesce(func.sum(Settlement.refunded_amount), 0).label("total_refunded"),
            ).select_from(Settlement)
        ),
        params,
    ).one()

    status_rows = (
        _filtered(
            _joined(
                db.session.query(Settlement.status, func.count(Settlement.id)).select_from(Settlement)
            ),
            params,
        )
        .group_by(Settlement.status)
        .all()
    )

    total_elements = int(totals.total_elements or 0)
    total_amount = int(totals.total_amount or 0)
    total_refunded = int(totals.total_refunded or 0)
    total_pages = (total_elements + params.size - 1) // params.size

    return {
        "settlements": [_item(s, orderer, product) for s, orderer, product in rows],
        "totalElements": total_elements,
        "totalPages": total_pages,
        "currentPage": params.page,
        "pageSize": params.size,
        "aggregations": {
            "totalAmount": total_amount,
            "totalRefundedAmount": total_refunded,
            "totalFinalAmount": total_amount - total_refunded,
            "statusCounts": {status: int(count) for status, count in status_rows},
        },
    }
