from __future__ import annotations

import uuid

from ..extensions import db
from market.time_utils import to_utc_z

ORDER_STATUS_AWAITING_PAYMENT = "awaiting_payment"
ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_SHIPPED = "shipped"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_CANCELED = "canceled"

VALID_ORDER_STATUSES = {
    ORDER_STATUS_AWAITING_PAYMENT,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELED,
}


def _new_reference() -> str:
    return uuid.uuid4().hex


class Order(db.Model):
    """
    Checkout order.

    WHY: The order is the record every settlement trigger races on.
    Payment fields are written only by settlement_service; status and
    tracking only by order_lifecycle_service.

    INVARIANTS:
    - is_paid goes False -> True at most once (compare-and-set update)
    - paid_at is set iff is_paid
    - tracking_events is append-only
    - status never moves backwards except to "canceled"
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_store_status_created", "store_id", "status", "created_at"),
        db.CheckConstraint(
            "(NOT is_paid AND paid_at IS NULL) OR (is_paid AND paid_at IS NOT NULL)",
            name="ck_orders_paid_at_iff_paid",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(32), nullable=False, unique=True, default=_new_reference)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    # NULL store means the item was sold by the platform itself (no payout)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)

    shipping_address = db.Column(db.JSON, nullable=True)

    # External payment result (gateway order id is shared by split orders)
    payment_id = db.Column(db.String(64), nullable=True, index=True)
    payment_status = db.Column(db.String(32), nullable=True)
    payment_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Amounts in whole Rupiah
    total_price = db.Column(db.Integer, nullable=False, default=0)
    seller_earnings = db.Column(db.Integer, nullable=True)
    shipping_cost = db.Column(db.Integer, nullable=True)
    admin_fee = db.Column(db.Integer, nullable=True)

    is_paid = db.Column(db.Boolean, nullable=False, default=False, index=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(24), nullable=False, default=ORDER_STATUS_AWAITING_PAYMENT, index=True)
    shipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    buyer = db.relationship("User", foreign_keys=[user_id])
    store = db.relationship("Store", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    tracking_events = db.relationship(
        "OrderTrackingEvent",
        backref="order",
        lazy=True,
        order_by="OrderTrackingEvent.id",
    )

    @property
    def short_code(self) -> str:
        """Last 8 characters of the reference, upper-cased (shown to humans)."""
        return (self.reference or "")[-8:].upper()

    def items_total(self) -> int:
        return sum(item.price * item.quantity for item in self.items)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "reference": self.reference,
            "short_code": self.short_code,
            "user_id": self.user_id,
            "store_id": self.store_id,
            "shipping_address": self.shipping_address,
            "payment_result": {
                "id": self.payment_id,
                "status": self.payment_status,
                "update_time": to_utc_z(self.payment_updated_at),
            },
            "total_price": self.total_price,
            "seller_earnings": self.seller_earnings,
            "shipping_cost": self.shipping_cost,
            "admin_fee": self.admin_fee,
            "is_paid": self.is_paid,
            "paid_at": to_utc_z(self.paid_at),
            "status": self.status,
            "shipped_at": to_utc_z(self.shipped_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["tracking_history"] = [ev.to_dict() for ev in self.tracking_events]
        return data


class OrderItem(db.Model):
    """Line item snapshot taken at checkout (price and name are frozen)."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)

    name = db.Column(db.String(255), nullable=False)
    price = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    image = db.Column(db.String(512), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "image": self.image,
        }


class OrderTrackingEvent(db.Model):
    """
    Append-only tracking history entry.

    Rows are inserted, never updated or deleted.
    """
    __tablename__ = "order_tracking_events"
    __table_args__ = (
        db.Index("ix_order_tracking_order_occurred", "order_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    status = db.Column(db.String(24), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "timestamp": to_utc_z(self.occurred_at),
        }
