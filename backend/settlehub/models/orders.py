from __future__ import annotations

from ..extensions import db
from settlehub.time_utils import to_utc_z


class Order(db.Model):
    """
    Checkout order.

    product_id/quantity are NULL for legacy amount-only orders.
    When a product is referenced, amount = product.price * quantity at
    creation time (price snapshot) and the stock was reserved.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_orders_amount_positive"),
        db.Index("ix_orders_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    quantity = db.Column(db.Integer, nullable=True)

    amount = db.Column(db.BigInteger, nullable=False)

    # CREATED, PAID, CANCELED, REFUNDED
    status = db.Column(db.String(16), nullable=False, default="CREATED", index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    user = db.relationship("User", backref=db.backref("orders", lazy="dynamic"))
    product = db.relationship("Product")

    def __repr__(self) -> str:
        return f"<Order id={self.id} user_id={self.user_id} amount={self.amount} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "amount": self.amount,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Payment(db.Model):
    """
    Payment against an order.

    Status changes only through payment_service.PAYMENT_TRANSITIONS.
    refunded_amount is a running total and never exceeds amount.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("refunded_amount >= 0", name="ck_payments_refunded_non_negative"),
        db.CheckConstraint("refunded_amount <= amount", name="ck_payments_refunded_le_amount"),
        db.Index("ix_payments_order_status", "order_id", "status"),
        db.Index("ix_payments_status_captured", "status", "captured_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    amount = db.Column(db.BigInteger, nullable=False)
    refunded_amount = db.Column(db.BigInteger, nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=False)

    # CREATED, AUTHORIZED, CAPTURED, FAILED, CANCELED, REFUNDED
    status = db.Column(db.String(16), nullable=False, default="CREATED")

    # External gateway reference (Toss paymentKey)
    pg_transaction_id = db.Column(db.String(200), nullable=True, index=True)

    captured_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    order = db.relationship("Order", backref=db.backref("payments", lazy="dynamic"))

    @property
    def refundable_amount(self) -> int:
        return (self.amount or 0) - (self.refunded_amount or 0)

    def __repr__(self) -> str:
        return f"<Payment id={self.id} order_id={self.order_id} amount={self.amount} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount": self.amount,
            "refunded_amount": self.refunded_amount,
            "refundable_amount": self.refundable_amount,
            "payment_method": self.payment_method,
            "status": self.status,
            "pg_transaction_id": self.pg_transaction_id,
            "captured_at": to_utc_z(self.captured_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Refund(db.Model):
    """
    One logical refund request.

    (payment_id, idempotency_key) is unique: a retried request with the same
    key resolves to this row instead of refunding twice.
    """
    __tablename__ = "refunds"
    __table_args__ = (
        db.UniqueConstraint("payment_id", "idempotency_key", name="uq_refunds_payment_idempotency_key"),
        db.CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    amount = db.Column(db.BigInteger, nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="COMPLETED")
    idempotency_key = db.Column(db.String(128), nullable=False)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment = db.relationship("Payment", backref=db.backref("refunds", lazy="dynamic"))

    def to_dict(self, include_payment: bool = False) -> dict:
        data = {
            "id": self.id,
            "payment_id": self.payment_id,
            "amount": self.amount,
            "reason": self.reason,
            "status": self.status,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
        }
        if include_payment and self.payment is not None:
            data["payment"] = self.payment.to_dict()
        return data
