"""
Pytest fixtures for CRM backend tests.

Provides test database setup, store/staff/customer/product fixtures, a
recording notification channel and test client helpers.
"""

import pytest
from crm import create_app
from crm.config import TestingConfig
from crm.extensions import db
from crm.models import Store, User, Customer
from crm.services.auth_service import hash_password
from crm.services import products_service
from crm.services.notification_channels import NotificationChannel, DeliveryResult


PASSWORD = "Password123!"


class RecordingChannel(NotificationChannel):
    """Stands in for WhatsApp/email; records every send."""

    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent = []

    def send(self, recipient, message):
        self.sent.append((recipient, message))
        if self.fail:
            return DeliveryResult(success=False, error=f"{self.name} provider unavailable")
        return DeliveryResult(success=True, provider_message_id=f"{self.name}-{len(self.sent)}")


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

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
def channels(app):
    """Swap in recording channels for the duration of a test."""
    original = app.extensions.get("notification_channels")
    recording = {
        "whatsapp": RecordingChannel("whatsapp"),
        "email": RecordingChannel("email"),
    }
    app.extensions["notification_channels"] = recording
    yield recording
    app.extensions["notification_channels"] = original


@pytest.fixture(scope='function')
def store(db_session):
    store = Store(name="Main Store", code="MAIN", phone="+919800000000", is_active=True)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(name="Branch Store", code="BR2", is_active=True)
    db_session.add(store)
    db_session.commit()
    return store


def make_user(db_session, *, name, email, phone, role, store_id):
    user = User(
        name=name,
        email=email,
        phone=phone,
        password_hash=hash_password(PASSWORD),
        role=role,
        store_id=store_id,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session):
    return make_user(db_session, name="Admin", email="admin@crm.test", phone="9000000001", role="admin", store_id=None)


@pytest.fixture(scope='function')
def manager_user(db_session, store):
    return make_user(db_session, name="Manager", email="manager@crm.test", phone="9000000002", role="store manager", store_id=store.id)


@pytest.fixture(scope='function')
def sales_user(db_session, store):
    return make_user(db_session, name="Seller", email="sales@crm.test", phone="9000000003", role="sales", store_id=store.id)


@pytest.fixture(scope='function')
def engineer_user(db_session, store):
    return make_user(db_session, name="Engineer", email="engineer@crm.test", phone="9000000004", role="engineer", store_id=store.id)


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(
        name="Ravi Kumar",
        email="ravi@example.com",
        phone="9876543210",
        notifications_opt_in=True,
        is_active=True,
    )
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def product(db_session, store):
    """Laptop priced 50,000.00 with 10 units at the main store."""
    return products_service.create_product(
        patch={
            "name": "ThinkPad E14",
            "brand": "Lenovo",
            "model": "E14 Gen 5",
            "category": "laptop",
            "price_cents": 5_000_000,
            "sku": "LEN-E14",
            "barcode": "8901234567890",
        },
        store_id=store.id,
        stock=10,
        low_stock_threshold=2,
    )


@pytest.fixture(scope='function')
def accessory(db_session, store):
    """Mouse priced 500.00 with 3 units at the main store."""
    return products_service.create_product(
        patch={
            "name": "Wireless Mouse",
            "brand": "Logitech",
            "category": "accessory",
            "price_cents": 50_000,
            "sku": "LOG-M185",
        },
        store_id=store.id,
        stock=3,
        low_stock_threshold=1,
    )


def get_auth_token(client, identifier: str, password: str = PASSWORD, store_id: int | None = None) -> str:
    """Helper to get auth token for a user."""
    payload = {'identifier': identifier, 'password': password}
    if store_id is not None:
        payload['store_id'] = store_id
    response = client.post('/api/auth/login', json=payload)
    if response.status_code == 200:
        return response.json['data']['token']
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.email))


@pytest.fixture(scope='function')
def manager_headers(client, manager_user, store):
    return auth_headers(get_auth_token(client, manager_user.email, store_id=store.id))


@pytest.fixture(scope='function')
def sales_headers(client, sales_user, store):
    return auth_headers(get_auth_token(client, sales_user.email, store_id=store.id))


@pytest.fixture(scope='function')
def engineer_headers(client, engineer_user, store):
    return auth_headers(get_auth_token(client, engineer_user.email, store_id=store.id))


@pytest.fixture(scope='function')
def login(client):
    """Return a helper that logs in and returns Authorization headers."""
    def _login(identifier: str, password: str = PASSWORD, store_id: int | None = None) -> dict:
        return auth_headers(get_auth_token(client, identifier, password=password, store_id=store_id))
    return _login


@pytest.fixture(scope='function')
def user_factory(db_session):
    """Return a helper that creates staff users with the shared test password."""
    def _make(**kwargs):
        return make_user(db_session, **kwargs)
    return _make
