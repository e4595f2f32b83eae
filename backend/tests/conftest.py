"""
Pytest fixtures for SettleHub backend tests.

Provides the app on an in-memory database, a per-test clean schema, users
with tokens, catalog fixtures and a fake Toss gateway.
"""

import pytest

from settlehub import create_app
from settlehub.extensions import db
from settlehub.models.auth import ROLE_ADMIN, ROLE_USER
from settlehub.services import auth_service
from settlehub.services import order_service
from settlehub.services import payment_service
from settlehub.services import products_service
from settlehub.services import toss_client

PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'JWT_SECRET_KEY': 'test-jwt-secret',
        'TOSS_SECRET_KEY': 'test_sk_123',
        'TOSS_API_BASE_URL': 'https://toss.test',
        'SETTLEMENT_COMMISSION_BPS': 300,
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


@pytest.fixture(scope='function')
def admin_user(db_session):
    return auth_service.create_user("admin@settlehub.test", PASSWORD, name="Admin", role=ROLE_ADMIN)


@pytest.fixture(scope='function')
def buyer(db_session):
    return auth_service.create_user("kim@settlehub.test", PASSWORD, name="Kim Minsu", role=ROLE_USER)


@pytest.fixture(scope='function')
def other_buyer(db_session):
    return auth_service.create_user("lee@settlehub.test", PASSWORD, name="Lee Jiwon", role=ROLE_USER)


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.email, PASSWORD))


@pytest.fixture(scope='function')
def buyer_headers(client, buyer):
    return auth_headers(get_auth_token(client, buyer.email, PASSWORD))


@pytest.fixture(scope='function')
def other_headers(client, other_buyer):
    return auth_headers(get_auth_token(client, other_buyer.email, PASSWORD))


@pytest.fixture(scope='function')
def product(db_session):
    """Product priced 10,000 with 100 units in stock."""
    data = products_service.create_product(patch={
        "name": "Wireless Mouse",
        "description": "2.4GHz",
        "price": 10_000,
        "stock_quantity": 100,
    })
    return products_service.get_product(data["id"])


@pytest.fixture(scope='function')
def fake_toss(monkeypatch):
    """Replace the Toss client with an in-memory fake."""
    fake = FakeTossClient()
    monkeypatch.setattr(toss_client, "get_client", lambda: fake)
    return fake


class FakeTossClient:
    """
    Records confirm calls and echoes the request back as the gateway reply.

    Set reported_amount to make the gateway report a different total, or
    error to make every confirm raise it.
    """

    def __init__(self):
        self.calls = []
        self.reported_amount = None
        self.error = None

    def confirm_payment(self, *, payment_key, order_id, amount):
        self.calls.append({"payment_key": payment_key, "order_id": order_id, "amount": amount})
        if self.error is not None:
            raise self.error
        return {
            "paymentKey": payment_key,
            "orderId": order_id,
            "totalAmount": amount if self.reported_amount is None else self.reported_amount,
            "status": "DONE",
            "method": "카드",
        }


def captured_payment(user, product, quantity: int = 1):
    """Order + CARD payment taken through authorize and capture."""
    order = order_service.create_order(user_id=user.id, product_id=product.id, quantity=quantity)
    payment = payment_service.create_payment(order_id=order.id, payment_method="CARD")
    payment_service.authorize_payment(payment.id, pg_transaction_id=f"pg-{payment.id}")
    return payment_service.capture_payment(payment.id)


def fresh(model, row_id):
    """Re-read a row, bypassing whatever the test session has cached."""
    db.session.expire_all()
    return db.session.get(model, row_id)


def get_auth_token(client, email: str, password: str) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/auth/login', json={
        'email': email,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
