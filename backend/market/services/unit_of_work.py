# Overview: Transactional envelope for multi-step money movements.

"""
Unit of Work

Runs an ordered list of named steps either:

- ATOMIC: one database transaction, committed after the last step and
  rolled back entirely on any failure.
- SEQUENTIAL: each step committed on its own. Used only when the database
  cannot do multi-statement transactions. A failure after the first
  committed step leaves earlier steps applied; the caller receives
  the list of committed steps so operators can reconcile by hand.

The mode used is always reported back to the caller and logged, so
degraded runs can be alerted on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

MODE_AUTO = "auto"
MODE_ATOMIC = "atomic"
MODE_SEQUENTIAL = "sequential"
VALID_MODES = {MODE_AUTO, MODE_ATOMIC, MODE_SEQUENTIAL}

# Storage engines that can roll back a multi-statement transaction
_TRANSACTIONAL_MYSQL_ENGINES = {"innodb", "ndbcluster", "rocksdb"}


class UnitOfWorkError(Exception):
    """
    Raised when a step fails.

    committed_steps lists what was already made durable (always empty in
    atomic mode).
    """

    def __init__(self, message: str, *, mode: str, failed_step: str, committed_steps: list[str]):
        super().__init__(message)
        self.mode = mode
        self.failed_step = failed_step
        self.committed_steps = committed_steps


@dataclass
class UnitOfWorkRun:
    mode: str
    completed_steps: list[str] = field(default_factory=list)
    results: dict = field(default_factory=dict)


def detect_transaction_support() -> bool:
    """
    Best-effort check of whether the bound database can roll back
    multi-statement transactions.

    Only MySQL/MariaDB can be non-transactional in practice (MyISAM and
    friends); every other supported dialect is assumed transactional.
    """
    bind = db.session.get_bind()
    if bind.dialect.name not in ("mysql", "mariadb"):
        return True

    with bind.connect() as conn:
        engines = conn.execute(
            text(
                "SELECT LOWER(ENGINE) FROM information_schema.TABLES "
                "WHERE TABLE_SCHEMA = DATABASE() AND TABLE_NAME IN "
                "('orders', 'products', 'treasury', 'payouts')"
            )
        ).scalars().all()
    return all(engine in _TRANSACTIONAL_MYSQL_ENGINES for engine in engines)


def resolve_mode() -> str:
    """
    Resolve SETTLEMENT_TRANSACTION_MODE to atomic or sequential.

    "auto" is detected once per application and cached.
    """
    configured = (current_app.config.get("SETTLEMENT_TRANSACTION_MODE") or MODE_AUTO).lower()
    if configured not in VALID_MODES:
        raise ValueError(
            f"Invalid SETTLEMENT_TRANSACTION_MODE '{configured}'. Must be one of: {', '.join(sorted(VALID_MODES))}"
        )
    if configured != MODE_AUTO:
        return configured

    cache = current_app.extensions.setdefault("market.unit_of_work", {})
    if "detected_mode" not in cache:
        supported = detect_transaction_support()
        cache["detected_mode"] = MODE_ATOMIC if supported else MODE_SEQUENTIAL
        if not supported:
            current_app.logger.warning(
                "Database does not support multi-statement transactions; "
                "settlement will run in SEQUENTIAL (non-atomic) mode"
            )
    return cache["detected_mode"]


class UnitOfWork:
    """
    Usage:

        uow = UnitOfWork(label="settlement order=42")
        run = uow.execute([("mark_paid", fn1), ("reduce_stock", fn2)])

    Each step callable receives the UnitOfWorkRun and may stash values in
    run.results for later steps.
    """

    def __init__(self, *, label: str, mode: str | None = None):
        self.label = label
        self.mode = mode or resolve_mode()

    @property
    def is_atomic(self) -> bool:
        return self.mode == MODE_ATOMIC

    def execute(self, steps: list[tuple[str, Callable[[UnitOfWorkRun], object]]]) -> UnitOfWorkRun:
        run = UnitOfWorkRun(mode=self.mode)
        if self.is_atomic:
            return self._execute_atomic(steps, run)

        current_app.logger.warning(
            "%s running in SEQUENTIAL mode: steps are not atomic, a crash mid-sequence "
            "requires manual reconciliation",
            self.label,
        )
        return self._execute_sequential(steps, run)

    def _execute_atomic(self, steps, run: UnitOfWorkRun) -> UnitOfWorkRun:
        current = None
        try:
            for name, step in steps:
                current = name
                run.results[name] = step(run)
                run.completed_steps.append(name)
            db.session.commit()
        except (OperationalError, StaleDataError):
            # Left unwrapped so run_with_retry can replay the whole transaction
            db.session.rollback()
            raise
        except Exception as exc:
            db.session.rollback()
            raise UnitOfWorkError(
                f"{self.label}: step '{current}' failed, transaction rolled back: {exc}",
                mode=self.mode,
                failed_step=current,
                committed_steps=[],
            ) from exc
        return run

    def _execute_sequential(self, steps, run: UnitOfWorkRun) -> UnitOfWorkRun:
        for name, step in steps:
            try:
                run.results[name] = step(run)
                db.session.commit()
            except Exception as exc:
                db.session.rollback()
                raise UnitOfWorkError(
                    f"{self.label}: step '{name}' failed after committing {run.completed_steps or 'nothing'}: {exc}",
                    mode=self.mode,
                    failed_step=name,
                    committed_steps=list(run.completed_steps),
                ) from exc
            run.completed_steps.append(name)
        return run
