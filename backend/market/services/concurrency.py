# Overview: Concurrency primitives shared by the settlement and payout services.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def dialect_name() -> str:
    return db.session.get_bind().dialect.name


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). `func` must be safe to re-run after a
    rollback, i.e. all of its writes happen inside the rolled-back transaction.
    """
    if attempts is None:
        attempts = current_app.config.get("SETTLEMENT_RETRY_ATTEMPTS", 3)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Retrying after concurrency failure (attempt %s/%s): %s", attempt + 1, attempts, exc
            )
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def insert_or_ignore(model, values: dict) -> bool:
    """
    INSERT a row unless it collides with a unique constraint or index.

    Returns True when the row was inserted. The collision check is done by
    the database in the same statement, so two concurrent callers cannot
    both insert.
    """
    table = model.__table__
    dialect = dialect_name()

    if dialect == "sqlite":
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing()
    elif dialect == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing()
    elif dialect in ("mysql", "mariadb"):
        stmt = insert(table).values(**values).prefix_with("IGNORE")
    else:
        try:
            with db.session.begin_nested():
                db.session.execute(insert(table).values(**values))
        except IntegrityError:
            return False
        return True

    result = db.session.execute(stmt)
    return bool(result.rowcount)
