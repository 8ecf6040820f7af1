# Overview: Service-layer operations for store payouts; encapsulates business logic and database work.

"""
Payout Service

WHY: Sellers are paid out of the treasury's seller pending pool. A payout
row is the obligation; completing it is the disbursement.

DESIGN PRINCIPLES:
- One order_payment payout per order, enforced by the partial unique
  index uq_payouts_order_payment (never by check-then-insert)
- Status moves pending -> completed | failed exactly once
  (compare-and-set on status)
- Completing a payout is the only way seller_pending_balance decreases
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func, update

from ..extensions import db
from ..models import Payout, Store
from ..models.treasury import (
    PAYOUT_TYPE_ORDER_PAYMENT,
    PAYOUT_TYPE_MANUAL,
    PAYOUT_STATUS_PENDING,
    PAYOUT_STATUS_COMPLETED,
    PAYOUT_STATUS_FAILED,
    VALID_PAYOUT_STATUSES,
    VALID_PAYOUT_TYPES,
)
from market.time_utils import utcnow, format_rupiah
from . import treasury_service
from .concurrency import insert_or_ignore, run_with_retry
from .treasury_service import TreasuryError


class PayoutError(Exception):
    """Raised for payout operation errors."""
    pass


class PayoutNotFoundError(PayoutError):
    pass


@dataclass
class OrderPayoutOutcome:
    payout_id: int
    created: bool


# =============================================================================
# ORDER PAYOUTS (called from settlement)
# =============================================================================

def create_order_payout(
    *,
    order_id: int,
    store_id: int,
    amount: int,
    product_total: int,
    shipping_cost: int,
    admin_fee: int,
    notes: str,
) -> OrderPayoutOutcome:
    """
    Record that `amount` is owed to `store_id` for `order_id`.

    Idempotent: a second call for the same order inserts nothing and
    returns the existing payout with created=False. Flushes, never commits;
    the caller owns the transaction.
    """
    created = insert_or_ignore(
        Payout,
        {
            "store_id": store_id,
            "order_id": order_id,
            "amount": amount,
            "type": PAYOUT_TYPE_ORDER_PAYMENT,
            "status": PAYOUT_STATUS_PENDING,
            "product_total": product_total,
            "shipping_cost": shipping_cost,
            "admin_fee": admin_fee,
            "notes": notes,
        },
    )

    payout = (
        db.session.query(Payout)
        .filter_by(order_id=order_id, type=PAYOUT_TYPE_ORDER_PAYMENT)
        .one()
    )
    if created:
        current_app.logger.info(
            "Payout %s created for store %s: %s", payout.id, store_id, format_rupiah(amount)
        )
    else:
        current_app.logger.info("Payout already exists for order %s (payout %s), skipping", order_id, payout.id)
    return OrderPayoutOutcome(payout_id=payout.id, created=created)


# =============================================================================
# MANUAL PAYOUTS
# =============================================================================

def create_manual_payout(*, store_id: int, amount: int, actor_user_id: int, notes: str = "") -> Payout:
    """
    Create an ad-hoc pending payout for a store.

    No ledger effect until the payout is completed; the amount is checked
    against the current pool so obviously unpayable requests are refused
    early (completion re-checks atomically).
    """
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise PayoutError("amount must be a positive integer")

    store = db.session.get(Store, store_id)
    if not store:
        raise PayoutNotFoundError(f"Store {store_id} not found")

    treasury = treasury_service.get_treasury()
    if amount > treasury.seller_pending_balance:
        raise PayoutError("Amount exceeds seller pending balance")

    payout = Payout(
        store_id=store_id,
        order_id=None,
        amount=amount,
        type=PAYOUT_TYPE_MANUAL,
        status=PAYOUT_STATUS_PENDING,
        product_total=amount,
        notes=notes or "",
        created_by_user_id=actor_user_id,
    )
    db.session.add(payout)
    db.session.commit()
    current_app.logger.info(
        "Manual payout %s created for store %s by user %s: %s",
        payout.id, store_id, actor_user_id, format_rupiah(amount),
    )
    return payout


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def _claim_pending(payout_id: int, new_status: str, **values) -> Payout:
    """
    Compare-and-set a pending payout into a terminal status.

    Raises PayoutError if the payout is no longer pending (terminal states
    are never re-entered).
    """
    payout = db.session.get(Payout, payout_id)
    if not payout:
        raise PayoutNotFoundError(f"Payout {payout_id} not found")

    result = db.session.execute(
        update(Payout)
        .where(Payout.id == payout_id, Payout.status == PAYOUT_STATUS_PENDING)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        db.session.refresh(payout)
        raise PayoutError(f"Payout {payout_id} is already {payout.status}")
    return payout


def complete_payout(payout_id: int, *, actor_user_id: int | None) -> Payout:
    """
    Mark a payout as disbursed and debit the treasury seller pool.

    Both changes commit together; an insufficient pool rolls back the
    status change as well.
    """
    def _op():
        payout = _claim_pending(
            payout_id,
            PAYOUT_STATUS_COMPLETED,
            processed_by_user_id=actor_user_id,
            processed_at=utcnow(),
        )
        try:
            treasury_service.ensure_treasury()
            treasury_service.debit_seller_payout(payout.amount)
        except TreasuryError as exc:
            db.session.rollback()
            raise PayoutError(str(exc))
        db.session.commit()
        db.session.refresh(payout)
        return payout

    payout = run_with_retry(_op)
    current_app.logger.info(
        "Payout %s completed for store %s: %s", payout.id, payout.store_id, format_rupiah(payout.amount)
    )
    return payout


def fail_payout(payout_id: int, *, actor_user_id: int | None, reason: str) -> Payout:
    """Mark a payout as failed. No ledger effect."""
    if not reason:
        raise PayoutError("reason required")

    def _op():
        payout = _claim_pending(
            payout_id,
            PAYOUT_STATUS_FAILED,
            processed_by_user_id=actor_user_id,
            processed_at=utcnow(),
            failure_reason=reason[:255],
        )
        db.session.commit()
        db.session.refresh(payout)
        return payout

    payout = run_with_retry(_op)
    current_app.logger.warning("Payout %s marked failed: %s", payout.id, reason)
    return payout


# =============================================================================
# QUERIES
# =============================================================================

def list_payouts(
    *,
    status: str | None = None,
    store_id: int | None = None,
    payout_type: str | None = None,
    limit: int | None = 100,
) -> list[Payout]:
    """limit=None returns every matching payout."""
    if status and status not in VALID_PAYOUT_STATUSES:
        raise PayoutError(f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_PAYOUT_STATUSES))}")
    if payout_type and payout_type not in VALID_PAYOUT_TYPES:
        raise PayoutError(f"Invalid type '{payout_type}'. Must be one of: {', '.join(sorted(VALID_PAYOUT_TYPES))}")

    query = db.session.query(Payout)
    if status:
        query = query.filter(Payout.status == status)
    if store_id:
        query = query.filter(Payout.store_id == store_id)
    if payout_type:
        query = query.filter(Payout.type == payout_type)
    query = query.order_by(Payout.created_at.desc(), Payout.id.desc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def pending_payouts_by_store() -> list[dict]:
    """
    Pending payouts grouped per store, largest total first.

    Totals and counts are aggregated by the database (GROUP BY store_id),
    so they always cover every pending payout.

    Shape used by the admin treasury screen:
    [{"store": {...}, "total_amount": 95000, "count": 2, "payouts": [...]}]
    """
    totals = (
        db.session.query(Payout.store_id, func.count(Payout.id), func.sum(Payout.amount))
        .filter(Payout.status == PAYOUT_STATUS_PENDING)
        .group_by(Payout.store_id)
        .all()
    )

    groups: dict[int, dict] = {}
    for store_id, count, total_amount in totals:
        store = db.session.get(Store, store_id)
        groups[store_id] = {
            "store": store.to_dict() if store else {"id": store_id},
            "total_amount": int(total_amount or 0),
            "count": int(count),
            "payouts": [],
        }

    for payout in list_payouts(status=PAYOUT_STATUS_PENDING, limit=None):
        group = groups.get(payout.store_id)
        if group is not None:
            group["payouts"].append(payout.to_dict())

    return sorted(groups.values(), key=lambda g: g["total_amount"], reverse=True)
