"""
Pytest fixtures for market settlement backend tests.

Provides test database setup, principals with API tokens, order factories
and the Flask test client.
"""

import pytest
from market import create_app
from market.extensions import db
from market.models import User, Store, Product, CartItem, Order, OrderItem, Treasury, Payout
from market.models.auth import ROLE_ADMIN, ROLE_BUYER, ROLE_SELLER
from market.models.treasury import TREASURY_SINGLETON_ID
from market.services import auth_service, payment_gateway

SERVER_KEY = "test-server-key"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'MIDTRANS_SERVER_KEY': SERVER_KEY,
        'SETTLEMENT_TRANSACTION_MODE': 'auto',
        'SETTLEMENT_RETRY_ATTEMPTS': 2,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# PRINCIPALS
# =============================================================================


@pytest.fixture(scope='function')
def admin(db_session):
    user = User(name="Admin", email="admin@market.test", role=ROLE_ADMIN)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def buyer(db_session):
    user = User(name="Budi", email="budi@market.test", role=ROLE_BUYER)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_buyer(db_session):
    user = User(name="Sari", email="sari@market.test", role=ROLE_BUYER)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def seller(db_session):
    user = User(name="Toko Owner", email="seller@market.test", role=ROLE_SELLER)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def store(db_session, seller):
    """Store S1, owned by `seller`."""
    store = Store(name="Toko Satu", owner_user_id=seller.id, is_verified=True)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    owner = User(name="Other Owner", email="other-seller@market.test", role=ROLE_SELLER)
    db_session.add(owner)
    db_session.flush()
    store = Store(name="Toko Dua", owner_user_id=owner.id, is_verified=True)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def product(db_session, store):
    product = Product(store_id=store.id, name="Kopi Gayo 250g", price=40000, stock=10)
    db_session.add(product)
    db_session.commit()
    return product


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(admin):
    return auth_headers(auth_service.issue_api_token(admin))


@pytest.fixture(scope='function')
def buyer_headers(buyer):
    return auth_headers(auth_service.issue_api_token(buyer))


@pytest.fixture(scope='function')
def other_buyer_headers(other_buyer):
    return auth_headers(auth_service.issue_api_token(other_buyer))


@pytest.fixture(scope='function')
def seller_headers(seller):
    return auth_headers(auth_service.issue_api_token(seller))


# =============================================================================
# ORDERS
# =============================================================================


@pytest.fixture(scope='function')
def make_order(db_session, buyer):
    """
    Factory for checkout orders.

    lines: list of (product, quantity); price is taken from the product.
    """
    def _make(
        *,
        store=None,
        lines=(),
        user=None,
        payment_id=None,
        seller_earnings=None,
        shipping_cost=15000,
        admin_fee=5000,
        status="awaiting_payment",
    ):
        items_total = sum(p.price * qty for p, qty in lines)
        order = Order(
            user_id=(user or buyer).id,
            store_id=store.id if store else None,
            payment_id=payment_id,
            payment_status="pending",
            total_price=items_total + shipping_cost + admin_fee,
            seller_earnings=seller_earnings,
            shipping_cost=shipping_cost,
            admin_fee=admin_fee,
            status=status,
            shipping_address={"address": "Jl. Merdeka 1", "city": "Bandung", "postal_code": "40111"},
        )
        for p, qty in lines:
            order.items.append(OrderItem(product_id=p.id, name=p.name, price=p.price, quantity=qty))
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture(scope='function')
def scenario_order(make_order, store, product):
    """seller_earnings 80000, shipping 15000, admin fee 5000, 2 x product."""
    return make_order(
        store=store,
        lines=[(product, 2)],
        payment_id="ORDER-1700000000-1",
        seller_earnings=80000,
    )


@pytest.fixture(scope='function')
def cart_for(db_session):
    def _fill(user, product, quantity=1):
        db_session.add(CartItem(user_id=user.id, product_id=product.id, quantity=quantity))
        db_session.commit()
    return _fill


# =============================================================================
# HELPERS
# =============================================================================


def treasury_row():
    treasury = db.session.get(Treasury, TREASURY_SINGLETON_ID, populate_existing=True)
    assert treasury is not None
    return treasury


def payouts_for(order_id):
    return db.session.query(Payout).filter_by(order_id=order_id).all()


def signed_notification(payment_id, transaction_status, *, fraud_status=None,
                        status_code="200", gross_amount="100000.00", server_key=SERVER_KEY):
    payload = {
        "order_id": payment_id,
        "transaction_status": transaction_status,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "signature_key": payment_gateway.compute_signature(payment_id, status_code, gross_amount, server_key),
    }
    if fraud_status is not None:
        payload["fraud_status"] = fraud_status
    return payload
