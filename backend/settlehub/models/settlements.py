from __future__ import annotations

from ..extensions import db
from settlehub.time_utils import to_utc_z


class Settlement(db.Model):
    """
    Merchant settlement derived from one captured payment.

    payment_amount is the captured amount; refunded_amount mirrors
    payment.refunded_amount. commission and net_amount are computed on
    (payment_amount - refunded_amount).

    Status: PENDING -> CONFIRMED -> COMPLETED. PENDING can be canceled by
    hand; a full refund cancels PENDING or CONFIRMED.
    """
    __tablename__ = "settlements"
    __table_args__ = (
        db.UniqueConstraint("payment_id", name="uq_settlements_payment"),
        db.Index("ix_settlements_date_status", "settlement_date", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    payment_amount = db.Column(db.BigInteger, nullable=False)
    refunded_amount = db.Column(db.BigInteger, nullable=False, default=0)
    commission = db.Column(db.BigInteger, nullable=False, default=0)
    net_amount = db.Column(db.BigInteger, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="PENDING")
    settlement_date = db.Column(db.Date, nullable=False)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    payment = db.relationship("Payment", backref=db.backref("settlement", uselist=False))
    order = db.relationship("Order")

    @property
    def final_amount(self) -> int:
        return (self.payment_amount or 0) - (self.refunded_amount or 0)

    def __repr__(self) -> str:
        return f"<Settlement id={self.id} payment_id={self.payment_id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "payment_amount": self.payment_amount,
            "refunded_amount": self.refunded_amount,
            "final_amount": self.final_amount,
            "commission": self.commission,
            "net_amount": self.net_amount,
            "status": self.status,
            "settlement_date": self.settlement_date.isoformat() if self.settlement_date else None,
            "confirmed_at": to_utc_z(self.confirmed_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class SettlementAdjustment(db.Model):
    """
    Refund recorded against a settlement that was already CONFIRMED or
    COMPLETED.

    amount is the refunded amount (positive) to deduct from the merchant's
    next payout. Adjustments start PENDING and are confirmed per
    adjustment_date by the daily adjustment job.
    """
    __tablename__ = "settlement_adjustments"
    __table_args__ = (
        db.UniqueConstraint("refund_id", name="uq_settlement_adjustments_refund"),
        db.CheckConstraint("amount > 0", name="ck_settlement_adjustments_amount_positive"),
        db.Index("ix_settlement_adjustments_date_status", "adjustment_date", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    settlement_id = db.Column(db.Integer, db.ForeignKey("settlements.id"), nullable=False, index=True)
    refund_id = db.Column(db.Integer, db.ForeignKey("refunds.id"), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)

    # PENDING, CONFIRMED
    status = db.Column(db.String(16), nullable=False, default="PENDING")
    adjustment_date = db.Column(db.Date, nullable=False)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    settlement = db.relationship("Settlement", backref=db.backref("adjustments", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "settlement_id": self.settlement_id,
            "refund_id": self.refund_id,
            "amount": self.amount,
            "status": self.status,
            "adjustment_date": self.adjustment_date.isoformat() if self.adjustment_date else None,
            "confirmed_at": to_utc_z(self.confirmed_at),
            "created_at": to_utc_z(self.created_at),
        }
