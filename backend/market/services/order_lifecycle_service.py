# Overview: Post-payment order logistics: pending -> shipped -> delivered, or canceled.

"""
Order Lifecycle Service

================================================================================
PURPOSE: Move paid orders through fulfilment, gated by role
================================================================================

STATE MACHINE:
    pending -> shipped -> delivered
    any (except canceled) -> canceled

    awaiting_payment is owned by settlement; this service never sets it.

ROLE GATES:
    admin:  pending, shipped, delivered, canceled
    seller: pending, shipped (own store's orders only)

RULES:
1. Status never moves backwards; re-affirming the current status is
   allowed and only appends a tracking entry
2. Unpaid orders cannot be shipped or delivered
3. delivered and canceled end the normal flow; canceled is final
4. shipped_at / delivered_at are stamped once and never overwritten
5. Every transition appends a tracking history entry
================================================================================
"""

from __future__ import annotations

from ..extensions import db
from ..models import Order, OrderTrackingEvent, Store, User
from ..models.auth import ROLE_ADMIN, ROLE_SELLER
from ..models.orders import (
    ORDER_STATUS_AWAITING_PAYMENT,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELED,
)
from market.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry


ALLOWED_STATUSES_BY_ROLE = {
    ROLE_ADMIN: (ORDER_STATUS_PENDING, ORDER_STATUS_SHIPPED, ORDER_STATUS_DELIVERED, ORDER_STATUS_CANCELED),
    ROLE_SELLER: (ORDER_STATUS_PENDING, ORDER_STATUS_SHIPPED),
}

# Forward-only ordering for the normal flow
_FLOW_RANK = {
    ORDER_STATUS_AWAITING_PAYMENT: 0,
    ORDER_STATUS_PENDING: 1,
    ORDER_STATUS_SHIPPED: 2,
    ORDER_STATUS_DELIVERED: 3,
}


class OrderTransitionError(ValueError):
    """
    Raised when a status value is not allowed for the caller (400).
    """
    pass


class OrderStateConflictError(OrderTransitionError):
    """Transition is well-formed but illegal from the current state (409)."""
    pass


class OrderPermissionError(Exception):
    """Caller may not touch this order at all (403)."""
    pass


class OrderNotFoundError(LookupError):
    pass


def allowed_statuses_for(user: User) -> tuple[str, ...]:
    return ALLOWED_STATUSES_BY_ROLE.get(user.role, ())


def seller_store_ids(user: User) -> set[int]:
    return {
        store_id
        for (store_id,) in db.session.query(Store.id).filter(Store.owner_user_id == user.id).all()
    }


def can_view_order(user: User, order: Order) -> bool:
    if user.role == ROLE_ADMIN or order.user_id == user.id:
        return True
    return user.role == ROLE_SELLER and order.store_id in seller_store_ids(user)


def _tracking_text(status: str, *, actor_role: str, tracking_number: str | None) -> tuple[str, str]:
    if status == ORDER_STATUS_SHIPPED:
        if tracking_number:
            return "Order shipped", f"Tracking number: {tracking_number}"
        return "Order shipped", "Your order is on its way to the delivery address"
    if status == ORDER_STATUS_DELIVERED:
        return "Order delivered", "The order has arrived at the delivery address. Thank you for shopping!"
    if status == ORDER_STATUS_CANCELED:
        return "Order canceled", f"Order was canceled by {actor_role}"
    if actor_role == ROLE_SELLER:
        return "Order processing", "The seller is processing your order"
    return "Status updated", f"Order status changed to {status}"


def _check_transition(order: Order, new_status: str) -> None:
    current = order.status

    if current == ORDER_STATUS_CANCELED:
        raise OrderStateConflictError("Order is canceled")

    if new_status == ORDER_STATUS_CANCELED:
        return

    if not order.is_paid:
        raise OrderStateConflictError("Order has not been paid yet")

    if _FLOW_RANK[new_status] < _FLOW_RANK.get(current, 0):
        raise OrderStateConflictError(f"Cannot move order from {current} back to {new_status}")


def update_order_status(
    order_id: int,
    new_status: str,
    *,
    actor: User,
    description: str | None = None,
    tracking_number: str | None = None,
) -> Order:
    """
    Apply a role-gated status transition.

    Raises:
        OrderTransitionError: status not in the caller's allowed set (400)
        OrderPermissionError: caller is not admin/seller, or seller of another store (403)
        OrderNotFoundError: unknown order (404)
        OrderStateConflictError: illegal from the current state (409)
    """
    allowed = allowed_statuses_for(actor)
    if not allowed:
        raise OrderPermissionError("Only admins and sellers can update order status")
    if new_status not in allowed:
        raise OrderTransitionError(f"Invalid status '{new_status}'. Must be one of: {', '.join(allowed)}")

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")

        if actor.role == ROLE_SELLER and order.store_id not in seller_store_ids(actor):
            raise OrderPermissionError("Order does not belong to your store")

        _check_transition(order, new_status)

        now = utcnow()
        order.status = new_status
        if new_status == ORDER_STATUS_SHIPPED and not order.shipped_at:
            order.shipped_at = now
        if new_status == ORDER_STATUS_DELIVERED and not order.delivered_at:
            order.delivered_at = now

        title, default_description = _tracking_text(
            new_status, actor_role=actor.role, tracking_number=tracking_number
        )
        db.session.add(
            OrderTrackingEvent(
                order_id=order.id,
                status=new_status,
                title=title,
                description=description or default_description,
                occurred_at=now,
            )
        )
        db.session.commit()
        return order

    try:
        return run_with_retry(_op)
    except (OrderTransitionError, OrderPermissionError, OrderNotFoundError):
        db.session.rollback()
        raise


def get_order_for(user: User, order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise OrderNotFoundError(f"Order {order_id} not found")
    if not can_view_order(user, order):
        raise OrderPermissionError("You do not have access to this order")
    return order
