# Overview: Settlement engine shared by every payment trigger (webhook, manual verify, status poll).

"""
Settlement Engine

================================================================================
PURPOSE: Apply the financial effect of a paid order exactly once
================================================================================

Three independent triggers can report the same payment: the gateway
webhook (at-least-once delivery), an admin manual verify, and a client
status poll. All of them call settle_order(); none of them duplicates
any of its logic.

STEPS (one unit of work):
    1. mark_paid        compare-and-set is_paid False -> True, tracking entry
    2. reduce_stock     stock = max(0, stock - qty) per line, in SQL
    3. credit_treasury  single UPDATE with column arithmetic
    4. create_payout    INSERT ... ON CONFLICT DO NOTHING (stores only)
    then, outside the unit of work:
    5. clear_cart       best effort, failures logged and swallowed

IDEMPOTENCY KEYS:
- The compare-and-set in step 1. A losing concurrent trigger updates zero
  rows and gets AlreadySettledError before touching stock or the ledger.
- The partial unique index on payouts (order_id, type=order_payment).

FAILURE SEMANTICS:
- ATOMIC mode: any failure in 1-4 rolls everything back; the order stays
  unpaid and any trigger may retry.
- SEQUENTIAL mode (no transactions available): a failure after step 1 has
  committed leaves partial effects. FallbackPartialFailureError is raised
  and logged at ERROR level; this needs manual reconciliation.
================================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import case, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Order, OrderTrackingEvent, Product
from ..models.orders import ORDER_STATUS_AWAITING_PAYMENT, ORDER_STATUS_CANCELED, ORDER_STATUS_PENDING
from market.time_utils import utcnow, format_rupiah
from . import cart_service, payout_service, treasury_service
from .cart_service import NonFatalSideEffectError
from .concurrency import run_with_retry
from .unit_of_work import UnitOfWork, UnitOfWorkError

SOURCE_WEBHOOK = "webhook"
SOURCE_MANUAL_VERIFY = "manual_verify"
SOURCE_STATUS_POLL = "status_poll"

PAYMENT_STATUS_SETTLEMENT = "settlement"

DEFAULT_TRACKING_TITLE = "Payment confirmed"
DEFAULT_TRACKING_DESCRIPTION = "Payment has been confirmed, the order will be processed shortly"


# =============================================================================
# ERRORS
# =============================================================================

class SettlementError(Exception):
    """Base class for settlement failures."""
    pass


class NotFoundError(SettlementError):
    """Unknown order or payment id. Nothing was mutated."""
    pass


class AlreadySettledError(SettlementError):
    """
    The order is already paid.

    Not a failure: triggers treat it as a successful no-op.
    """
    pass


class TransactionAbortError(SettlementError):
    """
    Settlement failed and was rolled back. Safe to retry.
    """

    def __init__(self, message: str, *, mode: str | None = None, failed_step: str | None = None):
        super().__init__(message)
        self.mode = mode
        self.failed_step = failed_step


class FallbackPartialFailureError(TransactionAbortError):
    """
    Settlement failed in SEQUENTIAL mode after some steps were committed.

    NOT safe to blindly retry: the order may already be marked paid while
    the ledger or payout is missing. Requires manual reconciliation.
    """

    def __init__(self, message: str, *, mode: str, failed_step: str, committed_steps: list[str]):
        super().__init__(message, mode=mode, failed_step=failed_step)
        self.committed_steps = committed_steps


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class SettlementBreakdown:
    seller_amount: int
    shipping_cost: int
    admin_fee: int

    @property
    def total(self) -> int:
        return self.seller_amount + self.shipping_cost + self.admin_fee

    def to_dict(self) -> dict:
        return {
            "seller_amount": self.seller_amount,
            "shipping_cost": self.shipping_cost,
            "admin_fee": self.admin_fee,
            "total": self.total,
        }


@dataclass
class SettlementResult:
    order_id: int
    source: str
    mode: str
    breakdown: SettlementBreakdown
    payout_id: int | None = None
    payout_created: bool = False
    cart_cleared: bool = False
    skipped_products: list[int] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.mode != "atomic"

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "source": self.source,
            "mode": self.mode,
            "degraded": self.degraded,
            "breakdown": self.breakdown.to_dict(),
            "payout_id": self.payout_id,
            "payout_created": self.payout_created,
            "cart_cleared": self.cart_cleared,
            "skipped_products": self.skipped_products,
        }


def compute_breakdown(order: Order) -> SettlementBreakdown:
    """
    Split an order's money into seller / shipping / admin fee.

    seller_earnings frozen at checkout wins; the item total is only a
    fallback for orders created before seller_earnings existed.
    """
    seller_amount = order.seller_earnings if order.seller_earnings is not None else order.items_total()
    return SettlementBreakdown(
        seller_amount=int(seller_amount),
        shipping_cost=int(order.shipping_cost or 0),
        admin_fee=int(order.admin_fee or 0),
    )


# =============================================================================
# SETTLEMENT
# =============================================================================

def settle_order(
    order_id: int,
    *,
    source: str,
    tracking_title: str | None = None,
    tracking_description: str | None = None,
) -> SettlementResult:
    """
    Settle a paid order exactly once.

    Args:
        order_id: Local order id
        source: Which trigger is calling (SOURCE_* constant), for logs
        tracking_title / tracking_description: Tracking history text

    Returns:
        SettlementResult (mode tells whether the run was atomic)

    Raises:
        NotFoundError: order does not exist
        AlreadySettledError: order already paid (including losing a race)
        TransactionAbortError: rolled back, safe to retry
        FallbackPartialFailureError: sequential mode, partially applied
    """
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError(f"Order {order_id} not found")
    if order.is_paid:
        raise AlreadySettledError(f"Order {order_id} already paid")

    # Snapshot everything the steps need; the order row itself is only
    # written through the compare-and-set below.
    lines = [(item.product_id, item.quantity, item.name) for item in order.items]
    breakdown = compute_breakdown(order)
    store_id = order.store_id
    buyer_id = order.user_id
    short_code = order.short_code
    prior_status = order.status

    if prior_status == ORDER_STATUS_CANCELED:
        current_app.logger.warning(
            "Order %s is canceled but payment arrived via %s; settling anyway, refund may be required",
            order_id, source,
        )

    current_app.logger.info("Processing successful payment for order %s (source=%s)", order_id, source)

    # Lazily create the treasury row in its own short transaction
    treasury_service.ensure_treasury()
    db.session.commit()

    skipped_products: list[int] = []

    def _mark_paid(run):
        now = utcnow()
        result = db.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.is_paid.is_(False))
            .values(
                is_paid=True,
                paid_at=now,
                payment_status=PAYMENT_STATUS_SETTLEMENT,
                payment_updated_at=now,
                status=case(
                    (Order.status == ORDER_STATUS_AWAITING_PAYMENT, ORDER_STATUS_PENDING),
                    else_=Order.status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadySettledError(f"Order {order_id} already paid")

        tracking_status = ORDER_STATUS_PENDING if prior_status == ORDER_STATUS_AWAITING_PAYMENT else prior_status
        db.session.add(
            OrderTrackingEvent(
                order_id=order_id,
                status=tracking_status,
                title=tracking_title or DEFAULT_TRACKING_TITLE,
                description=tracking_description or DEFAULT_TRACKING_DESCRIPTION,
                occurred_at=now,
            )
        )
        db.session.flush()

    def _reduce_stock(run):
        skipped_products.clear()
        for product_id, quantity, name in lines:
            if product_id is None or quantity is None or quantity <= 0:
                continue
            result = db.session.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(
                    stock=case(
                        (Product.stock > quantity, Product.stock - quantity),
                        else_=0,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                current_app.logger.info("Reduced stock for %s: -%s", name, quantity)
            else:
                skipped_products.append(product_id)
                current_app.logger.warning(
                    "Product %s (%s) no longer exists; stock not reduced for order %s", product_id, name, order_id
                )

    def _credit_treasury(run):
        treasury_service.credit_settlement(
            admin_fee=breakdown.admin_fee,
            shipping_cost=breakdown.shipping_cost,
            seller_amount=breakdown.seller_amount,
        )
        current_app.logger.info(
            "Treasury updated: admin fee +%s, shipping +%s, seller pending +%s",
            format_rupiah(breakdown.admin_fee),
            format_rupiah(breakdown.shipping_cost),
            format_rupiah(breakdown.seller_amount),
        )

    def _create_payout(run):
        if store_id is None:
            current_app.logger.info("No store for order %s (admin product) - no payout record", order_id)
            return None
        return payout_service.create_order_payout(
            order_id=order_id,
            store_id=store_id,
            amount=breakdown.seller_amount,
            product_total=breakdown.seller_amount,
            shipping_cost=breakdown.shipping_cost,
            admin_fee=breakdown.admin_fee,
            notes=f"Order #{short_code}",
        )

    uow = UnitOfWork(label=f"Settlement order={order_id} source={source}")
    steps = [
        ("mark_paid", _mark_paid),
        ("reduce_stock", _reduce_stock),
        ("credit_treasury", _credit_treasury),
        ("create_payout", _create_payout),
    ]

    try:
        run = run_with_retry(lambda: uow.execute(steps))
    except UnitOfWorkError as exc:
        cause = exc.__cause__
        if isinstance(cause, AlreadySettledError) and not exc.committed_steps:
            raise AlreadySettledError(str(cause)) from None
        if exc.committed_steps:
            current_app.logger.error(
                "SETTLEMENT PARTIALLY APPLIED for order %s (mode=%s): committed %s, failed at %s. "
                "Manual reconciliation required.",
                order_id, exc.mode, exc.committed_steps, exc.failed_step,
            )
            raise FallbackPartialFailureError(
                str(exc), mode=exc.mode, failed_step=exc.failed_step, committed_steps=exc.committed_steps
            ) from cause
        current_app.logger.error("Settlement aborted for order %s at step %s: %s", order_id, exc.failed_step, cause)
        raise TransactionAbortError(str(exc), mode=exc.mode, failed_step=exc.failed_step) from cause
    except (OperationalError, StaleDataError) as exc:
        current_app.logger.error("Settlement for order %s gave up after retries: %s", order_id, exc)
        raise TransactionAbortError(str(exc), mode=uow.mode) from exc

    payout_outcome = run.results.get("create_payout")
    current_app.logger.info("Order %s marked as paid (mode=%s)", order_id, run.mode)

    return SettlementResult(
        order_id=order_id,
        source=source,
        mode=run.mode,
        breakdown=breakdown,
        payout_id=payout_outcome.payout_id if payout_outcome else None,
        payout_created=payout_outcome.created if payout_outcome else False,
        cart_cleared=_clear_cart_best_effort(buyer_id),
        skipped_products=list(skipped_products),
    )


def _clear_cart_best_effort(user_id: int) -> bool:
    try:
        cart_service.clear_cart(user_id)
    except NonFatalSideEffectError as exc:
        current_app.logger.warning("Failed to clear cart (non-critical): %s", exc)
        return False
    current_app.logger.info("Cart cleared for user %s", user_id)
    return True
