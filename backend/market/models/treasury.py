from __future__ import annotations

from ..extensions import db
from market.time_utils import to_utc_z

TREASURY_SINGLETON_ID = 1

PAYOUT_TYPE_ORDER_PAYMENT = "order_payment"
PAYOUT_TYPE_MANUAL = "manual"
VALID_PAYOUT_TYPES = {PAYOUT_TYPE_ORDER_PAYMENT, PAYOUT_TYPE_MANUAL}

PAYOUT_STATUS_PENDING = "pending"
PAYOUT_STATUS_COMPLETED = "completed"
PAYOUT_STATUS_FAILED = "failed"
VALID_PAYOUT_STATUSES = {PAYOUT_STATUS_PENDING, PAYOUT_STATUS_COMPLETED, PAYOUT_STATUS_FAILED}


class Treasury(db.Model):
    """
    Platform treasury: one row, many writers.

    WHY: Every settlement credits the same row, so columns are only
    changed with "col = col + :x" statements (treasury_service).
    Loading the row, adding in Python and saving it back loses updates.

    RUNNING BALANCES (withdrawable):
    - admin_fee_balance, shipping_balance: only increase (settlement)
    - seller_pending_balance: increases on settlement, decreases on payout completion

    CUMULATIVE COUNTERS (monotonic):
    - total_admin_fee_earned, total_shipping_collected,
      total_seller_payouts, total_orders_processed
    """
    __tablename__ = "treasury"
    __table_args__ = (
        db.CheckConstraint("id = 1", name="ck_treasury_singleton"),
        db.CheckConstraint("seller_pending_balance >= 0", name="ck_treasury_seller_pending_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=False, default=TREASURY_SINGLETON_ID)

    admin_fee_balance = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")
    shipping_balance = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")
    seller_pending_balance = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")

    total_admin_fee_earned = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")
    total_shipping_collected = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")
    total_seller_payouts = db.Column(db.BigInteger, nullable=False, default=0, server_default="0")
    total_orders_processed = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "admin_fee_balance": self.admin_fee_balance,
            "shipping_balance": self.shipping_balance,
            "seller_pending_balance": self.seller_pending_balance,
            "total_admin_fee_earned": self.total_admin_fee_earned,
            "total_shipping_collected": self.total_shipping_collected,
            "total_seller_payouts": self.total_seller_payouts,
            "total_orders_processed": self.total_orders_processed,
            "updated_at": to_utc_z(self.updated_at),
        }


class Payout(db.Model):
    """
    Money owed to a store.

    TYPES:
    - order_payment: created by settlement, exactly one per order
    - manual: created by an admin for ad-hoc disbursements

    STATUS: pending -> completed | failed (both terminal)

    DESIGN: The one-per-order rule is a partial unique index on order_id
    restricted to type = 'order_payment', so settlement can insert with
    ON CONFLICT DO NOTHING instead of check-then-insert.
    """
    __tablename__ = "payouts"
    __table_args__ = (
        db.Index(
            "uq_payouts_order_payment",
            "order_id",
            unique=True,
            sqlite_where=db.text("type = 'order_payment'"),
            postgresql_where=db.text("type = 'order_payment'"),
        ),
        db.Index("ix_payouts_store_created", "store_id", "created_at"),
        db.CheckConstraint("amount >= 0", name="ck_payouts_amount_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    amount = db.Column(db.BigInteger, nullable=False)
    type = db.Column(db.String(24), nullable=False, default=PAYOUT_TYPE_ORDER_PAYMENT)
    status = db.Column(db.String(16), nullable=False, default=PAYOUT_STATUS_PENDING, index=True)

    # Breakdown of the order this payout came from
    product_total = db.Column(db.BigInteger, nullable=False, default=0)
    shipping_cost = db.Column(db.BigInteger, nullable=False, default=0)
    admin_fee = db.Column(db.BigInteger, nullable=False, default=0)

    notes = db.Column(db.String(255), nullable=False, default="")

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)  # manual payouts only
    processed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("payouts", lazy=True))
    order = db.relationship("Order")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_id": self.order_id,
            "amount": self.amount,
            "type": self.type,
            "status": self.status,
            "breakdown": {
                "product_total": self.product_total,
                "shipping_cost": self.shipping_cost,
                "admin_fee": self.admin_fee,
            },
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "processed_by_user_id": self.processed_by_user_id,
            "processed_at": to_utc_z(self.processed_at),
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
        }
