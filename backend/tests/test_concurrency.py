"""
Concurrent settlement tests.

Runs real threads against a file-backed SQLite database so every worker
has its own connection. Verifies that racing triggers settle each order
exactly once and that concurrent credits to the treasury singleton are
never lost.
"""

import threading

import pytest

from market import create_app
from market.extensions import db
from market.models import Order, OrderItem, Payout, Product, Store, Treasury, User
from market.models.auth import ROLE_BUYER, ROLE_SELLER
from market.models.treasury import TREASURY_SINGLETON_ID
from market.services import settlement_service, treasury_service
from market.services.settlement_service import AlreadySettledError, SOURCE_STATUS_POLL, SOURCE_WEBHOOK

ORDER_COUNT = 12
TRIGGERS_PER_ORDER = 2
QTY_PER_ORDER = 1
SELLER_AMOUNT = 40000
SHIPPING_COST = 15000
ADMIN_FEE = 5000
INITIAL_STOCK = 1000


@pytest.fixture
def race_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'race.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'SETTLEMENT_TRANSACTION_MODE': 'auto',
        'SETTLEMENT_RETRY_ATTEMPTS': 8,
    })
    with app.app_context():
        db.create_all()
        treasury_service.ensure_treasury()
        db.session.commit()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def seeded_orders(race_app):
    with race_app.app_context():
        seller = User(name="Seller", email="race-seller@market.test", role=ROLE_SELLER)
        buyer = User(name="Buyer", email="race-buyer@market.test", role=ROLE_BUYER)
        db.session.add_all([seller, buyer])
        db.session.flush()
        store = Store(name="Race Store", owner_user_id=seller.id, is_verified=True)
        db.session.add(store)
        db.session.flush()
        product = Product(store_id=store.id, name="Kopi Susu", price=SELLER_AMOUNT, stock=INITIAL_STOCK)
        db.session.add(product)
        db.session.flush()

        order_ids = []
        for i in range(ORDER_COUNT):
            order = Order(
                user_id=buyer.id,
                store_id=store.id,
                payment_id=f"ORDER-RACE-{i}",
                total_price=SELLER_AMOUNT + SHIPPING_COST + ADMIN_FEE,
                seller_earnings=SELLER_AMOUNT,
                shipping_cost=SHIPPING_COST,
                admin_fee=ADMIN_FEE,
            )
            order.items.append(
                OrderItem(product_id=product.id, name=product.name, price=product.price, quantity=QTY_PER_ORDER)
            )
            db.session.add(order)
            db.session.flush()
            order_ids.append(order.id)
        db.session.commit()
        return order_ids, product.id


class TestConcurrentSettlement:
    """Racing triggers on one order, and many orders on one treasury row."""

    def test_racing_triggers_settle_each_order_once(self, race_app, seeded_orders):
        order_ids, product_id = seeded_orders
        settled = []
        duplicates = []
        errors = []
        lock = threading.Lock()
        start = threading.Barrier(ORDER_COUNT * TRIGGERS_PER_ORDER)

        def worker(order_id, source):
            with race_app.app_context():
                try:
                    start.wait()
                    settlement_service.settle_order(order_id, source=source)
                    with lock:
                        settled.append(order_id)
                except AlreadySettledError:
                    with lock:
                        duplicates.append(order_id)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        sources = [SOURCE_WEBHOOK, SOURCE_STATUS_POLL]
        threads = [
            threading.Thread(target=worker, args=(order_id, sources[n % len(sources)]))
            for order_id in order_ids
            for n in range(TRIGGERS_PER_ORDER)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(settled) == sorted(order_ids)
        assert len(duplicates) == ORDER_COUNT * (TRIGGERS_PER_ORDER - 1)

        with race_app.app_context():
            paid = db.session.query(Order).filter(Order.is_paid.is_(True)).count()
            treasury = db.session.get(Treasury, TREASURY_SINGLETON_ID)
            payouts_per_order = [
                db.session.query(Payout).filter_by(order_id=order_id).count() for order_id in order_ids
            ]
            stock = db.session.get(Product, product_id).stock

            assert paid == ORDER_COUNT
            assert treasury.total_orders_processed == paid
            assert treasury.seller_pending_balance == SELLER_AMOUNT * paid
            assert treasury.shipping_balance == SHIPPING_COST * paid
            assert treasury.admin_fee_balance == ADMIN_FEE * paid
            assert payouts_per_order == [1] * ORDER_COUNT
            assert stock == INITIAL_STOCK - QTY_PER_ORDER * paid
