"""Integration tests for the API-key order endpoints."""
import pytest
from sqlalchemy.exc import SQLAlchemyError

from services.fulfillment.app import cache, crud, models
from tests.factories import add_stock, create_api_key, create_merchant, create_product, order_payload

pytestmark = pytest.mark.integration


def key_headers(api_key):
    return {"Authorization": f"Bearer {api_key.public_key}"}


@pytest.fixture
def api_key(db, merchant):
    return create_api_key(db, merchant)


class TestKeyAuthentication:
    def test_missing_key(self, client):
        assert client.get("/external/orders").status_code == 401

    def test_unknown_key(self, client):
        response = client.get("/external/orders", headers={"Authorization": "Bearer pk_test_nope"})
        assert response.status_code == 401

    def test_inactive_key(self, client, db, merchant):
        api_key = create_api_key(db, merchant, is_active=False)
        assert client.get("/external/orders", headers=key_headers(api_key)).status_code == 401

    @pytest.mark.parametrize("overrides", [{"is_active": False}, {"onboarding_status": "PENDING"}])
    def test_merchant_must_be_active_and_approved(self, client, db, overrides):
        api_key = create_api_key(db, create_merchant(db, **overrides))
        assert client.get("/external/orders", headers=key_headers(api_key)).status_code == 403

    def test_usage_is_counted(self, client, db, api_key):
        client.get("/external/orders", headers=key_headers(api_key))
        client.get("/external/orders", headers=key_headers(api_key))

        db.expire_all()
        assert api_key.usage_count == 2
        assert api_key.last_used is not None

    def test_rate_limit(self, client, db, merchant):
        api_key = create_api_key(db, merchant, rate_limit=2)
        headers = key_headers(api_key)

        assert client.get("/external/orders", headers=headers).status_code == 200
        assert client.get("/external/orders", headers=headers).status_code == 200
        response = client.get("/external/orders", headers=headers)

        assert response.status_code == 429
        db.expire_all()
        assert api_key.usage_count == 2

    def test_rate_limit_window_is_per_hour(self, client, db, api_key, fake_redis):
        fake_redis.set(cache.rate_limit_key(api_key.id), api_key.rate_limit)
        response = client.get("/external/orders", headers=key_headers(api_key))
        assert response.status_code == 429


class TestCreateExternalOrder:
    def test_creates_external_order(self, client, db, api_key, product, split_stock):
        response = client.post(
            "/external/orders",
            json=order_payload((product, 2), external_order_id="shop-991"),
            headers=key_headers(api_key),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["order_number"].startswith("EXT-")
        assert data["source"] == "EXTERNAL"
        assert data["merchant_id"] == api_key.merchant_id

        db.expire_all()
        audit = db.query(models.AuditLog).filter_by(action="CREATE_ORDER").one()
        assert audit.api_key_id == api_key.id
        assert audit.user_id is None
        assert db.query(models.Notification).filter_by(type="ORDER_CREATED").count() >= 2

    def test_payload_merchant_is_ignored(self, client, db, api_key, other_merchant, product, split_stock):
        response = client.post(
            "/external/orders",
            json=order_payload((product, 1), merchant_id=other_merchant.id),
            headers=key_headers(api_key),
        )
        assert response.status_code == 201
        assert response.json()["merchant_id"] == api_key.merchant_id

    def test_needs_write_permission(self, client, db, merchant, product, split_stock):
        api_key = create_api_key(db, merchant, permissions={"orders:read": True})
        response = client.post("/external/orders", json=order_payload((product, 1)), headers=key_headers(api_key))
        assert response.status_code == 403
        assert db.query(models.Order).count() == 0

    def test_insufficient_stock(self, client, db, api_key, product, split_stock):
        response = client.post("/external/orders", json=order_payload((product, 50)), headers=key_headers(api_key))

        assert response.status_code == 400
        db.expire_all()
        log = db.query(models.ApiRequestLog).one()
        assert (log.status_code, log.error) == (400, "Insufficient stock for some items")

    def test_malformed_json(self, client, api_key):
        response = client.post(
            "/external/orders",
            content=b"{not json",
            headers={**key_headers(api_key), "Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_body_that_is_not_utf8(self, client, db, api_key):
        response = client.post(
            "/external/orders",
            content=b'{"customer_name": "\xff\xfe"}',
            headers={**key_headers(api_key), "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        db.expire_all()
        log = db.query(models.ApiRequestLog).one()
        assert (log.status_code, log.error) == (400, "Request body must be valid UTF-8 JSON")

    def test_validation_errors_are_logged(self, client, db, api_key, product, split_stock):
        payload = order_payload((product, 0), customer_name="x" * 3000)

        response = client.post("/external/orders", json=payload, headers=key_headers(api_key))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid input data"
        db.expire_all()
        log = db.query(models.ApiRequestLog).one()
        assert log.status_code == 400
        assert log.method == "POST"
        assert log.endpoint == "/external/orders"
        assert len(log.request_body) == 2000


class TestReadExternalOrders:
    def test_lists_only_own_orders(self, client, db, api_key, other_merchant, product, warehouse_a, split_stock):
        mine = client.post("/external/orders", json=order_payload((product, 1)), headers=key_headers(api_key))

        foreign_product = create_product(db, other_merchant)
        add_stock(db, foreign_product, warehouse_a, 5)
        foreign_key = create_api_key(db, other_merchant)
        theirs = client.post(
            "/external/orders", json=order_payload((foreign_product, 1)), headers=key_headers(foreign_key)
        )

        listing = client.get("/external/orders", headers=key_headers(api_key)).json()
        assert [o["id"] for o in listing["orders"]] == [mine.json()["id"]]

        response = client.get(f"/external/orders/{theirs.json()['id']}", headers=key_headers(api_key))
        assert response.status_code == 404

        response = client.get(f"/external/orders/{mine.json()['id']}", headers=key_headers(api_key))
        assert response.status_code == 200
        assert response.json()["order_number"] == mine.json()["order_number"]

    def test_limit_is_capped(self, client, api_key):
        response = client.get("/external/orders", params={"limit": 500}, headers=key_headers(api_key))
        assert response.json()["pagination"]["limit"] == 100

    def test_status_filter(self, client, api_key, product, split_stock):
        client.post("/external/orders", json=order_payload((product, 1)), headers=key_headers(api_key))

        pending = client.get("/external/orders", params={"status": "PENDING"}, headers=key_headers(api_key))
        shipped = client.get("/external/orders", params={"status": "SHIPPED"}, headers=key_headers(api_key))

        assert pending.json()["pagination"]["total"] == 1
        assert shipped.json()["pagination"]["total"] == 0

    @pytest.mark.parametrize("path", ["/external/orders", "/external/orders/1"])
    def test_storage_failure_is_logged(self, client, db, api_key, monkeypatch, path):
        def broken(*args, **kwargs):
            raise SQLAlchemyError("connection lost")

        monkeypatch.setattr(crud, "get_orders", broken)
        monkeypatch.setattr(crud, "get_order", broken)

        response = client.get(path, headers=key_headers(api_key))

        assert response.status_code == 500
        assert response.json()["detail"].startswith("Failed to retrieve order")
        db.expire_all()
        log = db.query(models.ApiRequestLog).one()
        assert log.status_code == 500
        assert "connection lost" in log.error

    def test_needs_read_permission(self, client, db, merchant):
        api_key = create_api_key(db, merchant, permissions={"orders:write": True})
        response = client.get("/external/orders", headers=key_headers(api_key))

        assert response.status_code == 403
        db.expire_all()
        assert db.query(models.ApiRequestLog).one().status_code == 403
