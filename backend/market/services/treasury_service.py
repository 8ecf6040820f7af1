# Overview: Service-layer operations for the platform treasury ledger.

from __future__ import annotations

from sqlalchemy import func, update

from ..extensions import db
from ..models import Treasury, Payout
from ..models.treasury import TREASURY_SINGLETON_ID, PAYOUT_STATUS_PENDING
from .concurrency import insert_or_ignore
"""
Treasury Ledger Invariants (authoritative)

- Exactly one row (id = 1), created lazily and race-safely.
- Every mutation is a single UPDATE with column arithmetic; the row is
  never read, changed in Python and written back.
- Running balances grow only through credit_settlement().
- seller_pending_balance shrinks only through debit_seller_payout(),
  which refuses to go below zero.
- Cumulative counters never decrease.
"""


class TreasuryError(Exception):
    """Raised when a ledger adjustment cannot be applied."""
    pass


def ensure_treasury() -> Treasury:
    """
    Return the treasury row, creating it if missing.

    Safe to call repeatedly and concurrently (insert-or-ignore on the
    primary key). Flushes but does not commit.
    """
    treasury = db.session.get(Treasury, TREASURY_SINGLETON_ID)
    if treasury:
        return treasury

    if insert_or_ignore(Treasury, {"id": TREASURY_SINGLETON_ID}):
        db.session.flush()
    return db.session.get(Treasury, TREASURY_SINGLETON_ID, populate_existing=True)


def credit_settlement(*, admin_fee: int, shipping_cost: int, seller_amount: int) -> None:
    """
    Credit one settled order to the ledger.

    Single UPDATE statement: concurrent settlements of different orders
    serialize on the row inside the database, not in Python.
    """
    if min(admin_fee, shipping_cost, seller_amount) < 0:
        raise TreasuryError("Settlement amounts must not be negative")

    stmt = (
        update(Treasury)
        .where(Treasury.id == TREASURY_SINGLETON_ID)
        .values(
            admin_fee_balance=Treasury.admin_fee_balance + admin_fee,
            shipping_balance=Treasury.shipping_balance + shipping_cost,
            seller_pending_balance=Treasury.seller_pending_balance + seller_amount,
            total_admin_fee_earned=Treasury.total_admin_fee_earned + admin_fee,
            total_shipping_collected=Treasury.total_shipping_collected + shipping_cost,
            total_orders_processed=Treasury.total_orders_processed + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise TreasuryError("Treasury not found - initialize it before settling orders")


def debit_seller_payout(amount: int) -> None:
    """
    Move `amount` out of seller_pending_balance into total_seller_payouts.

    The balance guard is part of the WHERE clause, so two concurrent
    payouts cannot overdraw the pool between them.
    """
    if amount <= 0:
        raise TreasuryError("Payout amount must be positive")

    stmt = (
        update(Treasury)
        .where(
            Treasury.id == TREASURY_SINGLETON_ID,
            Treasury.seller_pending_balance >= amount,
        )
        .values(
            seller_pending_balance=Treasury.seller_pending_balance - amount,
            total_seller_payouts=Treasury.total_seller_payouts + amount,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount != 1:
        raise TreasuryError("Insufficient seller pending balance")


def get_treasury() -> Treasury:
    """Fresh read of the treasury row (creates it on first use)."""
    treasury = ensure_treasury()
    db.session.refresh(treasury)
    return treasury


def get_treasury_summary() -> dict:
    """
    Treasury balances plus pending payout totals for the admin console.

    pending_payouts_total can legitimately differ from
    seller_pending_balance: admin-sold orders credit the pool without a
    payout row.
    """
    treasury = get_treasury()
    pending_count, pending_total = (
        db.session.query(func.count(Payout.id), func.coalesce(func.sum(Payout.amount), 0))
        .filter(Payout.status == PAYOUT_STATUS_PENDING)
        .one()
    )
    data = treasury.to_dict()
    data["pending_payouts_count"] = int(pending_count)
    data["pending_payouts_total"] = int(pending_total)
    return data
