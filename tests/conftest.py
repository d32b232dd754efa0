"""
Test suite configuration.

The app runs against an in-memory SQLite database shared through a StaticPool
and a fakeredis client. Tables are created and dropped around every test.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EMAIL_SERVICE_URL"] = ""
os.environ["WEBHOOK_URLS"] = ""

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.fulfillment.app import cache, database, models
from services.fulfillment.app.main import app
from tests import factories

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_database(monkeypatch):
    """Fresh schema per test; background tasks open sessions on the test engine."""
    models.Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(database, "SessionLocal", TestingSessionLocal)
    yield
    models.Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = fakeredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(cache, "redis_client", client)
    return client


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[database.get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def merchant(db):
    return factories.create_merchant(db)


@pytest.fixture
def other_merchant(db):
    return factories.create_merchant(db, business_name="Other Store")


@pytest.fixture
def merchant_admin(db, merchant):
    return factories.create_user(db, models.Role.MERCHANT_ADMIN, merchant=merchant)


@pytest.fixture
def admin_user(db):
    return factories.create_user(db, models.Role.SJFS_ADMIN)


@pytest.fixture
def warehouse_user(db):
    return factories.create_user(db, models.Role.WAREHOUSE_STAFF)


@pytest.fixture
def warehouse_a(db):
    return factories.create_warehouse(db, name="Warehouse A", code="WH-LA-01", city="Lagos")


@pytest.fixture
def warehouse_b(db):
    return factories.create_warehouse(db, name="Warehouse B", code="WH-AB-01", city="Abuja")


@pytest.fixture
def product(db, merchant):
    return factories.create_product(db, merchant, unit_price="1000.00")


@pytest.fixture
def split_stock(db, product, warehouse_a, warehouse_b):
    """The product with 3 units at warehouse A and 5 at warehouse B."""
    item_a = factories.add_stock(db, product, warehouse_a, 3)
    item_b = factories.add_stock(db, product, warehouse_b, 5)
    return item_a, item_b
