# Overview: Cart collaborator used by settlement (clear-after-payment only).

from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import CartItem


class NonFatalSideEffectError(Exception):
    """A follow-up action failed after the money movement was committed."""
    pass


def clear_cart(user_id: int) -> int:
    """
    Remove every cart line of a user in its own transaction.

    Returns the number of lines removed. Raises NonFatalSideEffectError on
    database failure; callers decide whether to swallow it.
    """
    try:
        removed = db.session.query(CartItem).filter_by(user_id=user_id).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise NonFatalSideEffectError(f"Failed to clear cart for user {user_id}: {exc}") from exc
    return removed
