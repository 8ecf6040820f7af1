# Overview: Payment trigger adapters; each resolves orders and hands them to the settlement engine.

"""
Payment Trigger Adapters

WHY: A payment can be confirmed three ways and all three must converge on
the same single settlement:

- handle_gateway_notification: signed webhook from the payment gateway
  (at-least-once delivery, untrusted until the signature checks out)
- manual_verify_payment: trusted admin override when webhooks are down
- check_payment_status: client-initiated poll that asks the gateway

DESIGN PRINCIPLES:
- Adapters authenticate and locate orders; settlement_service does the rest
- Signature verification happens before any database read
- A duplicate trigger is a no-op, never an error
- Split checkouts share one gateway payment id; every matching order is
  handled, each settled at most once
"""

from __future__ import annotations

import httpx
from flask import current_app
from sqlalchemy import case, update

from ..extensions import db
from ..models import Order, OrderTrackingEvent, User
from ..models.orders import (
    ORDER_STATUS_AWAITING_PAYMENT,
    ORDER_STATUS_CANCELED,
)
from market.time_utils import utcnow
from . import payment_gateway, settlement_service
from .payment_gateway import GatewayUnavailableError
from .settlement_service import (
    AlreadySettledError,
    NotFoundError,
    SettlementResult,
    SOURCE_MANUAL_VERIFY,
    SOURCE_STATUS_POLL,
    SOURCE_WEBHOOK,
)


class PaymentError(Exception):
    """400-level problem with a payment request."""
    pass


class AuthenticationError(PaymentError):
    """Notification signature did not verify. Nothing was read or written."""
    pass


class PaymentAccessDeniedError(PaymentError):
    """Requester may not look at these orders."""
    pass


REQUIRED_NOTIFICATION_FIELDS = ("order_id", "status_code", "gross_amount", "signature_key")

ACTION_SETTLED = "settled"
ACTION_ALREADY_PAID = "already_paid"
ACTION_CANCELED = "canceled"
ACTION_FAILED_HIDDEN = "payment_failed"
ACTION_STATUS_RECORDED = "status_recorded"
ACTION_IGNORED = "ignored"

MANUAL_VERIFY_TRACKING_TITLE = "Payment verified manually"
MANUAL_VERIFY_TRACKING_DESCRIPTION = "Payment has been verified by an admin"


# =============================================================================
# LOOKUPS
# =============================================================================

def _orders_for_payment(payment_id: str) -> list[Order]:
    return db.session.query(Order).filter(Order.payment_id == payment_id).order_by(Order.id).all()


def _order_summary(order: Order) -> dict:
    return {
        "id": order.id,
        "is_paid": order.is_paid,
        "status": order.status,
        "payment_status": order.payment_status,
    }


def _settle_quietly(order_id: int, source: str, **kwargs) -> dict:
    """Settle, mapping AlreadySettledError to a successful no-op."""
    try:
        result = settlement_service.settle_order(order_id, source=source, **kwargs)
    except AlreadySettledError:
        current_app.logger.info("Order %s already paid, skipping (source=%s)", order_id, source)
        return {"order_id": order_id, "action": ACTION_ALREADY_PAID}
    return {"order_id": order_id, "action": ACTION_SETTLED, "settlement": result.to_dict()}


# =============================================================================
# WEBHOOK
# =============================================================================

def handle_gateway_notification(payload: dict) -> dict:
    """
    Process a payment gateway notification.

    Args:
        payload: Decoded JSON body {order_id, transaction_status,
            fraud_status, status_code, gross_amount, signature_key}

    Returns:
        {"payment_id", "transaction_status", "fraud_status", "orders": [...]}

    Raises:
        PaymentError: malformed payload (nothing read)
        AuthenticationError: bad signature (nothing read)
        NotFoundError: no order carries this payment id
        TransactionAbortError: settlement failed, safe to redeliver
    """
    if not isinstance(payload, dict):
        raise PaymentError("Notification body must be a JSON object")

    missing = [name for name in REQUIRED_NOTIFICATION_FIELDS if payload.get(name) in (None, "")]
    if missing:
        raise PaymentError(f"Missing notification fields: {', '.join(missing)}")

    if not payment_gateway.verify_signature(
        order_id=payload["order_id"],
        status_code=payload["status_code"],
        gross_amount=payload["gross_amount"],
        signature_key=payload["signature_key"],
    ):
        current_app.logger.warning("Rejected gateway notification with invalid signature for %s", payload["order_id"])
        raise AuthenticationError("Invalid signature")

    payment_id = str(payload["order_id"])
    transaction_status = payload.get("transaction_status")
    fraud_status = payload.get("fraud_status")

    current_app.logger.info(
        "Gateway notification received: payment=%s transaction_status=%s fraud_status=%s",
        payment_id, transaction_status, fraud_status,
    )

    order_ids = [order.id for order in _orders_for_payment(payment_id)]
    if not order_ids:
        current_app.logger.warning("Order not found for payment %s", payment_id)
        raise NotFoundError(f"No order found for payment {payment_id}")

    if payment_gateway.is_settled(transaction_status, fraud_status):
        results = [_settle_quietly(order_id, SOURCE_WEBHOOK) for order_id in order_ids]
    elif transaction_status in payment_gateway.FAILED_TRANSACTION_STATUSES:
        results = [_record_payment_failure(order_id, transaction_status) for order_id in order_ids]
    elif transaction_status in (payment_gateway.TRANSACTION_PENDING, payment_gateway.TRANSACTION_CAPTURE):
        # capture without fraud acceptance is held, like pending
        results = [_record_payment_status(order_id, transaction_status) for order_id in order_ids]
    else:
        current_app.logger.info("Ignoring transaction_status %r for payment %s", transaction_status, payment_id)
        results = [{"order_id": order_id, "action": ACTION_IGNORED} for order_id in order_ids]

    return {
        "payment_id": payment_id,
        "transaction_status": transaction_status,
        "fraud_status": fraud_status,
        "orders": results,
    }


def _record_payment_status(order_id: int, transaction_status: str) -> dict:
    """Record the gateway status on an unpaid order; no other side effects."""
    result = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.is_paid.is_(False))
        .values(payment_status=transaction_status, payment_updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if not result.rowcount:
        return {"order_id": order_id, "action": ACTION_ALREADY_PAID}
    current_app.logger.info("Payment still %s for order %s", transaction_status, order_id)
    return {"order_id": order_id, "action": ACTION_STATUS_RECORDED}


def _record_payment_failure(order_id: int, transaction_status: str) -> dict:
    """
    cancel / deny / expire.

    Orders still awaiting payment stay hidden (status untouched); visible
    orders become canceled. A paid order is never canceled by a late
    failure notification.
    """
    order = db.session.get(Order, order_id)
    prior_status = order.status
    now = utcnow()

    result = db.session.execute(
        update(Order)
        .where(Order.id == order_id, Order.is_paid.is_(False))
        .values(
            payment_status=transaction_status,
            payment_updated_at=now,
            status=case(
                (Order.status.in_([ORDER_STATUS_AWAITING_PAYMENT, ORDER_STATUS_CANCELED]), Order.status),
                else_=ORDER_STATUS_CANCELED,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.session.rollback()
        current_app.logger.warning(
            "Ignoring %s notification for already paid order %s", transaction_status, order_id
        )
        return {"order_id": order_id, "action": ACTION_ALREADY_PAID}

    action = ACTION_FAILED_HIDDEN
    if prior_status not in (ORDER_STATUS_AWAITING_PAYMENT, ORDER_STATUS_CANCELED):
        action = ACTION_CANCELED
        db.session.add(
            OrderTrackingEvent(
                order_id=order_id,
                status=ORDER_STATUS_CANCELED,
                title="Order canceled",
                description=f"Payment {transaction_status}",
                occurred_at=now,
            )
        )
    db.session.commit()
    current_app.logger.info("Payment %s for order %s", transaction_status, order_id)
    return {"order_id": order_id, "action": action}


# =============================================================================
# MANUAL VERIFY
# =============================================================================

def manual_verify_payment(order_id: int, *, actor: User | None) -> SettlementResult:
    """
    Admin override: settle an order without a gateway confirmation.

    actor is None when an operator runs it from the CLI.

    Raises:
        NotFoundError: order does not exist
        AlreadySettledError: order already paid (also when another trigger
            wins a concurrent race)
    """
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    if order.is_paid:
        raise AlreadySettledError("Order already paid")

    current_app.logger.info(
        "Manual payment verification for order %s by %s",
        order_id, f"user {actor.id}" if actor else "operator (CLI)",
    )
    return settlement_service.settle_order(
        order_id,
        source=SOURCE_MANUAL_VERIFY,
        tracking_title=MANUAL_VERIFY_TRACKING_TITLE,
        tracking_description=MANUAL_VERIFY_TRACKING_DESCRIPTION,
    )


# =============================================================================
# STATUS POLL
# =============================================================================

def check_payment_status(ref: str, *, requester: User, client: httpx.Client | None = None) -> dict:
    """
    Reconcile local orders with the gateway's view of their payment.

    Args:
        ref: External payment id, or a local order id
        requester: Authenticated user; non-admins may only poll own orders
        client: Optional preconfigured httpx client for the gateway

    Returns:
        Normalized status dict. When the gateway is unreachable the local
        status is returned with "gateway_error" and nothing is mutated.
    """
    orders = _orders_for_payment(ref)
    if not orders and str(ref).isdigit():
        order = db.session.get(Order, int(ref))
        if order:
            orders = [order]
    if not orders:
        raise NotFoundError("Order not found")

    payment_id = orders[0].payment_id
    if not payment_id:
        raise PaymentError("Order has no payment ID")
    if len(orders) == 1:
        # Found by local id: pull in split orders sharing the payment
        orders = _orders_for_payment(payment_id)

    if not requester.is_admin and any(order.user_id != requester.id for order in orders):
        raise PaymentAccessDeniedError("You do not have access to this order")

    order_ids = [order.id for order in orders]

    try:
        gateway_status = payment_gateway.fetch_transaction_status(payment_id, client=client)
    except GatewayUnavailableError as exc:
        current_app.logger.warning("Payment gateway error for %s: %s", payment_id, exc)
        return {
            "payment_id": payment_id,
            "is_settled": False,
            "settled_order_ids": [],
            "orders": [_order_summary(order) for order in orders],
            "gateway_error": str(exc),
            "message": "Could not verify with payment gateway - status from local database",
        }

    transaction_status = gateway_status.get("transaction_status")
    fraud_status = gateway_status.get("fraud_status")
    settled = payment_gateway.is_settled(transaction_status, fraud_status)

    settled_order_ids = []
    if settled:
        for order_id in order_ids:
            outcome = _settle_quietly(order_id, SOURCE_STATUS_POLL)
            if outcome["action"] == ACTION_SETTLED:
                settled_order_ids.append(order_id)

    orders = [db.session.get(Order, order_id) for order_id in order_ids]
    return {
        "payment_id": payment_id,
        "gateway_status": {
            "transaction_status": transaction_status,
            "fraud_status": fraud_status,
            "gross_amount": gateway_status.get("gross_amount"),
            "payment_type": gateway_status.get("payment_type"),
        },
        "is_settled": settled,
        "settled_order_ids": settled_order_ids,
        "orders": [_order_summary(order) for order in orders],
        "message": "Payment confirmed and processed" if settled else f"Payment status: {transaction_status}",
    }
