import os
# Ensure the app factory picks the Testing config & SQLite memory DBs
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("TEST_PAYMENTS_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SERVICE_ROLE", "all")

import pytest
from subflow import create_app
from subflow.extensions import db
from subflow.models import User


class ManualScheduler:
    """Collects delayed calls; tests decide when they run."""

    def __init__(self, app):
        self.app = app
        self.calls = []

    def call_later(self, delay, fn, *args, **kwargs):
        self.calls.append((delay, fn, args, kwargs))

    def run_all(self, limit=50):
        ran = 0
        while self.calls and ran < limit:
            _delay, fn, args, kwargs = self.calls.pop(0)
            with self.app.app_context():
                fn(*args, **kwargs)
            ran += 1
        return ran

    def clear(self):
        self.calls.clear()


def _wipe():
    db.session.rollback()
    for metadata in db.metadatas.values():
        for tbl in reversed(metadata.sorted_tables):
            db.session.execute(tbl.delete())
    db.session.commit()


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SERVICE_ROLE="all",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture()
def services(app):
    return app.extensions["subflow"]

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        _wipe()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        _wipe()

@pytest.fixture(autouse=True)
def scheduler(app, monkeypatch):
    """Delayed settlement and webhook retries run only when a test says so."""
    manual = ManualScheduler(app)
    svc = app.extensions["subflow"]
    monkeypatch.setattr(svc.payments, "scheduler", manual)
    monkeypatch.setattr(svc.reconciler, "scheduler", manual)
    svc.cache.clear()
    return manual

@pytest.fixture()
def make_user(app):
    def _make(user_id="u1", email=None, is_active=True):
        with app.app_context():
            db.session.add(User(id=user_id, email=email or f"{user_id}@example.test", is_active=is_active))
            db.session.commit()
        return user_id
    return _make

@pytest.fixture()
def make_plan(app, services):
    """Create a plan through the registry (so it is replicated) and return its id."""
    def _make(name="Pro", price=2999, interval="MONTHLY", **extra):
        data = {"name": name, "price": price, "currency": "USD", "billingInterval": interval}
        data.update(extra)
        with app.app_context():
            plan = services.plans.create_plan(data)
            return plan.id
    return _make
