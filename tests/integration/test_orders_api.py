"""Integration tests for the order endpoints."""
from decimal import Decimal

import pytest

from services.fulfillment.app import models
from services.fulfillment.app.clients import email_client
from tests.factories import add_stock, auth_headers, create_product, create_user, order_payload

pytestmark = pytest.mark.integration


def _stock(db, product):
    db.expire_all()
    return {i.warehouse_id: (i.available_quantity, i.reserved_quantity) for i in product.stock_items}


class TestCreateOrder:
    def test_merchant_creates_order(self, client, db, merchant_admin, product, split_stock, warehouse_a):
        response = client.post(
            "/orders", json=order_payload((product, 2)), headers=auth_headers(merchant_admin)
        )

        assert response.status_code == 201
        data = response.json()
        assert data["order_number"].startswith("ORD-")
        assert data["status"] == "PENDING"
        assert data["source"] == "INTERNAL"
        assert Decimal(data["order_value"]) == Decimal("2000.00")
        assert Decimal(data["total_amount"]) == Decimal("2500.00")
        assert data["merchant"]["id"] == merchant_admin.merchant_id
        assert data["warehouse"]["id"] == warehouse_a.id
        assert [(i["product_id"], i["quantity"]) for i in data["items"]] == [(product.id, 2)]
        assert Decimal(data["items"][0]["total_price"]) == Decimal("2000.00")

    def test_reservation_spans_warehouses(self, client, db, merchant_admin, product, split_stock,
                                          warehouse_a, warehouse_b):
        response = client.post(
            "/orders", json=order_payload((product, 6)), headers=auth_headers(merchant_admin)
        )

        assert response.status_code == 201
        assert _stock(db, product) == {warehouse_a.id: (0, 3), warehouse_b.id: (2, 3)}
        movements = db.query(models.StockMovement).filter_by(movement_type="STOCK_OUT").all()
        assert sorted(m.quantity for m in movements) == [3, 3]

    def test_insufficient_stock(self, client, db, merchant_admin, product, split_stock):
        response = client.post(
            "/orders", json=order_payload((product, 9)), headers=auth_headers(merchant_admin)
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Insufficient stock for some items"
        assert db.query(models.Order).count() == 0
        assert db.query(models.StockMovement).count() == 0

    def test_other_merchants_product(self, client, db, other_merchant, product, split_stock):
        outsider = create_user(db, models.Role.MERCHANT_STAFF, merchant=other_merchant)
        response = client.post("/orders", json=order_payload((product, 1)), headers=auth_headers(outsider))

        assert response.status_code == 400
        assert response.json()["detail"] == "Some products not found or inactive"

    def test_merchant_cannot_order_for_another_merchant(self, client, db, other_merchant, merchant_admin):
        foreign = create_product(db, other_merchant)
        response = client.post(
            "/orders",
            json=order_payload((foreign, 1), merchant_id=other_merchant.id),
            headers=auth_headers(merchant_admin),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Some products not found or inactive"

    @pytest.mark.parametrize("mutate", [
        lambda p: p["items"][0].update(quantity=0),
        lambda p: p["items"][0].update(unit_price="-1"),
        lambda p: p.update(items=[]),
        lambda p: p.pop("customer_phone"),
        lambda p: p.update(customer_email="not-an-email"),
        lambda p: p.update(delivery_fee="-5"),
        lambda p: p.update(payment_method="BARTER"),
        lambda p: p["items"][0].update(unit_price="0.005"),
        lambda p: p.update(delivery_fee="1.999"),
    ])
    def test_validation_errors_are_400(self, client, merchant_admin, product, split_stock, mutate):
        payload = order_payload((product, 1))
        mutate(payload)

        response = client.post("/orders", json=payload, headers=auth_headers(merchant_admin))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid input data"
        assert response.json()["errors"]

    def test_total_is_sum_of_stored_lines(self, client, db, merchant_admin, product, split_stock):
        payload = order_payload((product, 1, "0.01"), (product, 2, "333.33"), (product, 1, "19.99"),
                                delivery_fee="0.05")

        response = client.post("/orders", json=payload, headers=auth_headers(merchant_admin))

        assert response.status_code == 201
        data = response.json()
        line_totals = [Decimal(i["total_price"]) for i in data["items"]]
        assert line_totals == [Decimal("0.01"), Decimal("666.66"), Decimal("19.99")]
        assert Decimal(data["order_value"]) == sum(line_totals)
        assert Decimal(data["total_amount"]) == sum(line_totals) + Decimal("0.05")

    def test_sub_cent_prices_are_rejected(self, client, db, merchant_admin, product, split_stock):
        payload = order_payload((product, 1, "0.005"), (product, 1, "0.005"), (product, 1, "0.005"),
                                delivery_fee="0")

        response = client.post("/orders", json=payload, headers=auth_headers(merchant_admin))

        assert response.status_code == 400
        assert db.query(models.Order).count() == 0

    def test_admin_must_name_merchant(self, client, admin_user, merchant, product, split_stock):
        response = client.post("/orders", json=order_payload((product, 1)), headers=auth_headers(admin_user))
        assert response.status_code == 400

        response = client.post(
            "/orders",
            json=order_payload((product, 1), merchant_id=merchant.id),
            headers=auth_headers(admin_user),
        )
        assert response.status_code == 201
        assert response.json()["merchant_id"] == merchant.id

    def test_warehouse_staff_cannot_create(self, client, warehouse_user, product, split_stock):
        response = client.post("/orders", json=order_payload((product, 1)), headers=auth_headers(warehouse_user))
        assert response.status_code == 403

    def test_requires_token(self, client, product):
        response = client.post("/orders", json=order_payload((product, 1)))
        assert response.status_code == 401

    def test_notifications_follow_the_order(self, client, db, merchant_admin, product, split_stock):
        response = client.post("/orders", json=order_payload((product, 1)), headers=auth_headers(merchant_admin))
        assert response.status_code == 201

        db.expire_all()
        notifications = db.query(models.Notification).filter_by(type="ORDER_CREATED").all()
        assert {n.recipient_role for n in notifications if n.recipient_role} == {"WAREHOUSE_STAFF", "SJFS_ADMIN"}
        assert [n.recipient_id for n in notifications if n.recipient_id] == [merchant_admin.id]
        assert notifications[0].extra["order_number"] == response.json()["order_number"]

    def test_failing_email_does_not_fail_the_order(self, client, db, merchant_admin, product, split_stock,
                                                   monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("smtp down")

        monkeypatch.setattr(email_client, "send_order_confirmation_email", broken)
        monkeypatch.setattr(email_client, "send_merchant_order_notification_email", broken)

        response = client.post("/orders", json=order_payload((product, 1)), headers=auth_headers(merchant_admin))

        assert response.status_code == 201
        db.expire_all()
        assert db.query(models.Order).count() == 1
        assert db.query(models.Notification).count() == 3


class TestReadOrders:
    def _create(self, client, user, product, **overrides):
        response = client.post("/orders", json=order_payload((product, 1), **overrides), headers=auth_headers(user))
        assert response.status_code == 201
        return response.json()

    def test_merchant_sees_only_own_orders(self, client, db, merchant_admin, other_merchant, product,
                                           warehouse_a, split_stock):
        mine = self._create(client, merchant_admin, product)
        foreign_product = create_product(db, other_merchant)
        add_stock(db, foreign_product, warehouse_a, 5)
        outsider = create_user(db, models.Role.MERCHANT_ADMIN, merchant=other_merchant)
        theirs = self._create(client, outsider, foreign_product)

        response = client.get("/orders", headers=auth_headers(merchant_admin))
        assert response.status_code == 200
        assert [o["id"] for o in response.json()["orders"]] == [mine["id"]]
        assert response.json()["pagination"] == {"page": 1, "limit": 10, "total": 1, "pages": 1}

        assert client.get(f"/orders/{theirs['id']}", headers=auth_headers(merchant_admin)).status_code == 403
        assert client.get("/orders/9999", headers=auth_headers(merchant_admin)).status_code == 404

    def test_warehouse_staff_sees_everything(self, client, merchant_admin, warehouse_user, product, split_stock):
        self._create(client, merchant_admin, product)
        response = client.get("/orders", headers=auth_headers(warehouse_user))
        assert response.json()["pagination"]["total"] == 1

    def test_filters_and_pagination(self, client, merchant_admin, product, split_stock):
        self._create(client, merchant_admin, product, customer_name="Bola Ade")
        self._create(client, merchant_admin, product, customer_name="Chidi Eze", payment_method="PREPAID")
        self._create(client, merchant_admin, product, customer_name="Chinwe Okafor")
        headers = auth_headers(merchant_admin)

        search = client.get("/orders", params={"search": "chidi"}, headers=headers).json()
        assert [o["customer_name"] for o in search["orders"]] == ["Chidi Eze"]

        prepaid = client.get("/orders", params={"payment_method": "PREPAID"}, headers=headers).json()
        assert [o["customer_name"] for o in prepaid["orders"]] == ["Chidi Eze"]

        page = client.get("/orders", params={"page": 2, "limit": 2}, headers=headers).json()
        assert len(page["orders"]) == 1
        assert page["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}


class TestStatusUpdates:
    def _create(self, client, merchant_admin, product, quantity=4):
        response = client.post(
            "/orders", json=order_payload((product, quantity)), headers=auth_headers(merchant_admin)
        )
        return response.json()["id"]

    def test_forward_transition_records_history(self, client, merchant_admin, warehouse_user, product, split_stock):
        order_id = self._create(client, merchant_admin, product)
        headers = auth_headers(warehouse_user)

        response = client.put(f"/orders/{order_id}", json={"status": "CONFIRMED", "notes": "Paid"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "CONFIRMED"

        history = client.get(f"/orders/{order_id}/history", headers=headers).json()
        assert [(h["status"], h["notes"]) for h in history] == [
            ("PENDING", "Order created"),
            ("CONFIRMED", "Paid"),
        ]
        assert history[1]["updated_by"] == warehouse_user.id

    def test_illegal_transition_is_rejected(self, client, merchant_admin, warehouse_user, product, split_stock):
        order_id = self._create(client, merchant_admin, product)
        headers = auth_headers(warehouse_user)
        client.put(f"/orders/{order_id}", json={"status": "SHIPPED"}, headers=headers)

        response = client.put(f"/orders/{order_id}", json={"status": "CANCELLED"}, headers=headers)

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid status transition: SHIPPED -> CANCELLED"

    def test_resubmitting_status_adds_note(self, client, merchant_admin, warehouse_user, product, split_stock):
        order_id = self._create(client, merchant_admin, product)
        headers = auth_headers(warehouse_user)

        response = client.put(f"/orders/{order_id}", json={"status": "PENDING", "notes": "Called customer"},
                              headers=headers)

        assert response.status_code == 200
        history = client.get(f"/orders/{order_id}/history", headers=headers).json()
        assert [h["notes"] for h in history] == ["Order created", "Called customer"]

    def test_cancel_releases_stock(self, client, db, merchant_admin, warehouse_user, product, split_stock,
                                   warehouse_a, warehouse_b):
        order_id = self._create(client, merchant_admin, product, quantity=6)

        response = client.put(f"/orders/{order_id}", json={"status": "CANCELLED"}, headers=auth_headers(warehouse_user))

        assert response.status_code == 200
        assert _stock(db, product) == {warehouse_a.id: (3, 0), warehouse_b.id: (5, 0)}
        db.expire_all()
        notification = db.query(models.Notification).filter_by(type="ORDER_CANCELLED").first()
        assert notification is not None

    def test_merchant_cannot_transition(self, client, merchant_admin, product, split_stock):
        order_id = self._create(client, merchant_admin, product)
        response = client.put(f"/orders/{order_id}", json={"status": "CONFIRMED"}, headers=auth_headers(merchant_admin))
        assert response.status_code == 403

    def test_unknown_status_is_400(self, client, merchant_admin, warehouse_user, product, split_stock):
        order_id = self._create(client, merchant_admin, product)
        response = client.put(f"/orders/{order_id}", json={"status": "LOST"}, headers=auth_headers(warehouse_user))
        assert response.status_code == 400

    def test_next_statuses(self, client, merchant_admin, product, split_stock):
        order_id = self._create(client, merchant_admin, product)
        response = client.get(f"/orders/{order_id}/next-statuses", headers=auth_headers(merchant_admin))
        assert response.json()["status"] == "PENDING"
        assert response.json()["next"][0] == "CONFIRMED"
        assert "RETURNED" not in response.json()["next"]
