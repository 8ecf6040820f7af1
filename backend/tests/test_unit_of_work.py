"""
Unit of work and system health tests.
"""

import pytest
from sqlalchemy.exc import OperationalError

from market.extensions import db
from market.models import Store
from market.services import unit_of_work
from market.services.concurrency import run_with_retry
from market.services.unit_of_work import UnitOfWork, UnitOfWorkError


class TestModeResolution:

    def test_sqlite_resolves_to_atomic(self, app):
        assert unit_of_work.resolve_mode() == "atomic"

    def test_explicit_mode_wins(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "SETTLEMENT_TRANSACTION_MODE", "sequential")

        assert unit_of_work.resolve_mode() == "sequential"

    def test_invalid_mode(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "SETTLEMENT_TRANSACTION_MODE", "eventually")

        with pytest.raises(ValueError):
            unit_of_work.resolve_mode()


class TestExecute:

    def test_atomic_failure_rolls_back_earlier_steps(self, db_session, seller):
        def add_store(run):
            db.session.add(Store(name="Ghost Store", owner_user_id=seller.id))
            db.session.flush()

        def explode(run):
            raise RuntimeError("step two failed")

        with pytest.raises(UnitOfWorkError) as excinfo:
            UnitOfWork(label="test", mode="atomic").execute([("add_store", add_store), ("explode", explode)])

        assert excinfo.value.failed_step == "explode"
        assert excinfo.value.committed_steps == []
        assert db_session.query(Store).filter_by(name="Ghost Store").count() == 0

    def test_sequential_failure_keeps_committed_steps(self, db_session, seller):
        def add_store(run):
            db.session.add(Store(name="Half Store", owner_user_id=seller.id))

        def explode(run):
            raise RuntimeError("step two failed")

        with pytest.raises(UnitOfWorkError) as excinfo:
            UnitOfWork(label="test", mode="sequential").execute([("add_store", add_store), ("explode", explode)])

        assert excinfo.value.committed_steps == ["add_store"]
        assert db_session.query(Store).filter_by(name="Half Store").count() == 1

    def test_results_are_shared_between_steps(self, db_session):
        def first(run):
            return 21

        def second(run):
            return run.results["first"] * 2

        run = UnitOfWork(label="test", mode="atomic").execute([("first", first), ("second", second)])

        assert run.results["second"] == 42
        assert run.completed_steps == ["first", "second"]

    def test_operational_error_is_retried(self, app, db_session):
        calls = {"n": 0}

        def flaky(run):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("UPDATE treasury", {}, Exception("database is locked"))
            return "ok"

        uow = UnitOfWork(label="test", mode="atomic")
        run = run_with_retry(lambda: uow.execute([("flaky", flaky)]), backoff_base=0)

        assert run.results["flaky"] == "ok"
        assert calls["n"] == 2


class TestHealth:

    def test_health_reports_atomic_settlement(self, client, db_session):
        resp = client.get("/health")

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["settlement"]["mode"] == "atomic"

    def test_health_degraded_in_sequential_mode(self, app, client, db_session, monkeypatch):
        monkeypatch.setitem(app.config, "SETTLEMENT_TRANSACTION_MODE", "sequential")

        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.get_json()["status"] == "degraded"


class TestAuthentication:

    def test_missing_token_is_401(self, client, db_session):
        assert client.get("/api/admin/treasury").status_code == 401

    def test_unknown_token_is_401(self, client, db_session):
        resp = client.get("/api/admin/treasury", headers={"Authorization": "Bearer not-a-real-token"})

        assert resp.status_code == 401

    def test_deactivated_user_is_401(self, client, db_session, admin, admin_headers):
        admin.is_active = False
        db_session.commit()

        resp = client.get("/api/admin/treasury", headers=admin_headers)

        assert resp.status_code == 401
