"""
Pytest fixtures for stockaudit backend tests.

Provides test database setup, store/user/product fixtures, in-memory
snapshot repositories, and a recording notification sink.
"""

from datetime import date

import pytest
from stockaudit import create_app
from stockaudit.extensions import db
from stockaudit.models import Store, User, UserStoreAccess, Product
from stockaudit.services.notification_service import NotificationSink, set_notification_sink
from stockaudit.services.snapshot_service import SnapshotError, SnapshotRepository, parse_snapshot


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'NOTIFICATIONS_ASYNC': False,
        'SNAPSHOT_ARCHIVE_DIR': '/nonexistent-archive',
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
        for key in ("notification_sink", "snapshot_repository", "reconciliation_signal", "product_catalog"):
            app.extensions.pop(key, None)


class RecordingSink(NotificationSink):
    """Captures notify() calls instead of writing rows."""

    def __init__(self):
        self.calls = []

    def notify(self, user_ids, payload):
        self.calls.append((list(user_ids), dict(payload)))
        return len(user_ids)

    def types(self):
        return [payload["type"] for _, payload in self.calls]


class FailingSink(NotificationSink):
    def notify(self, user_ids, payload):
        raise RuntimeError("notification backend down")


@pytest.fixture(scope='function')
def recording_sink(app, db_session):
    sink = RecordingSink()
    set_notification_sink(app, sink)
    return sink


@pytest.fixture(scope='function')
def store_bee(db_session):
    store = Store(code="BEE", name="Bee Store")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def store_ant(db_session):
    store = Store(code="ANT", name="Ant Store")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def manager(db_session, store_bee):
    """Head-office operator (creates and approves tickets)."""
    user = User(username="manager", email="manager@stockaudit.local", store_id=None)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def employees(db_session, store_bee, store_ant):
    """Two BEE employees, one ANT employee with granted BEE access, one inactive BEE employee."""
    alice = User(username="alice", store_id=store_bee.id)
    bob = User(username="bob", store_id=store_bee.id)
    carol = User(username="carol", store_id=store_ant.id)
    dave = User(username="dave", store_id=store_bee.id, is_active=False)
    db_session.add_all([alice, bob, carol, dave])
    db_session.flush()
    db_session.add(UserStoreAccess(user_id=carol.id, store_id=store_bee.id))
    db_session.commit()
    return {"alice": alice, "bob": bob, "carol": carol, "dave": dave}


@pytest.fixture(scope='function')
def product_x(db_session):
    product = Product(name="Product X", barcode="X", price=1000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_y(db_session):
    product = Product(name="Product Y", barcode="Y", price=1000)
    db_session.add(product)
    db_session.commit()
    return product


def line(barcode, system_stock, actual_stock, *, name=None, reason=None):
    """Archive-format line item; diff follows actual - system."""
    diff = (actual_stock - system_stock) if actual_stock is not None else 0
    return {
        "product_name": name or f"Product {barcode}",
        "barcode": barcode,
        "system_stock": system_stock,
        "actual_stock": actual_stock,
        "diff": diff,
        "diff_reason": reason,
    }


def snapshot_doc(day, stores):
    """stores: {store_code: {shift_key: [line, ...]}}"""
    return {"date": day, "exported_at": f"{day}T23:00:00Z", "stores": stores}


class InMemorySnapshotRepository(SnapshotRepository):
    """
    Handles are "YYYY-MM-DD" strings. `failing` handles raise SnapshotError;
    `listing_order` lets a test list handles out of chronological order.
    """

    def __init__(self, documents, *, failing=(), listing_order=None):
        self.documents = {d["date"]: d for d in documents}
        self.failing = set(failing)
        self.listing_order = listing_order
        self.fetched = []

    def list_snapshot_ids(self, year, month):
        prefix = f"{year}-{month:02d}-"
        handles = sorted([h for h in self.documents if h.startswith(prefix)] + [h for h in self.failing if h.startswith(prefix)])
        if self.listing_order is not None:
            return [h for h in self.listing_order if h in handles]
        return handles

    def fetch_snapshot(self, handle):
        self.fetched.append(handle)
        if handle in self.failing:
            raise SnapshotError(f"corrupt file {handle}")
        return parse_snapshot(self.documents[handle], source=handle)


def snapshot(day, stores):
    return parse_snapshot(snapshot_doc(day, stores))


def d(iso):
    return date.fromisoformat(iso)
