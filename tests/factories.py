"""
Model factories for creating valid test data.

Every factory inserts and commits a valid row. Override any field via kwargs.

Usage:
    merchant = create_merchant(db, business_name="Acme")
    headers = auth_headers(create_user(db, Role.MERCHANT_ADMIN, merchant=merchant))
"""
import uuid
from decimal import Decimal

from services.fulfillment.app import auth, models


def _suffix() -> str:
    return uuid.uuid4().hex[:8]


def _save(db, instance):
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance


def create_merchant(db, **overrides) -> models.Merchant:
    defaults = {
        "business_name": "Test Store",
        "business_email": f"store-{_suffix()}@test.com",
        "business_phone": "+2348000000000",
        "is_active": True,
        "onboarding_status": "APPROVED",
    }
    defaults.update(overrides)
    return _save(db, models.Merchant(**defaults))


def create_user(db, role: models.Role, merchant=None, **overrides) -> models.User:
    defaults = {
        "email": f"user-{_suffix()}@test.com",
        "first_name": "Test",
        "last_name": "User",
        "role": models.Role(role).value,
        "merchant_id": merchant.id if merchant else None,
        "is_active": True,
    }
    defaults.update(overrides)
    return _save(db, models.User(**defaults))


def create_warehouse(db, **overrides) -> models.Warehouse:
    defaults = {
        "name": "Warehouse",
        "code": f"WH-TS-{_suffix()}",
        "address": "1 Depot Road",
        "city": "Lagos",
        "state": "Lagos",
        "country": "Nigeria",
        "capacity": 1000,
        "is_active": True,
    }
    defaults.update(overrides)
    return _save(db, models.Warehouse(**defaults))


def create_product(db, merchant, **overrides) -> models.Product:
    defaults = {
        "merchant_id": merchant.id,
        "sku": f"SKU-{_suffix()}",
        "name": "Test Product",
        "unit_price": Decimal("1000.00"),
        "is_active": True,
    }
    defaults.update(overrides)
    if isinstance(defaults["unit_price"], str):
        defaults["unit_price"] = Decimal(defaults["unit_price"])
    return _save(db, models.Product(**defaults))


def add_stock(db, product, warehouse, quantity: int, reserved: int = 0, **overrides) -> models.StockItem:
    defaults = {
        "product_id": product.id,
        "warehouse_id": warehouse.id,
        "quantity": quantity,
        "reserved_quantity": reserved,
        "available_quantity": quantity - reserved,
        "reorder_level": 10,
    }
    defaults.update(overrides)
    return _save(db, models.StockItem(**defaults))


def create_api_key(db, merchant, permissions=None, **overrides) -> models.ApiKey:
    defaults = {
        "merchant_id": merchant.id,
        "name": "Storefront",
        "public_key": f"pk_test_{uuid.uuid4().hex}",
        "permissions": {"orders:read": True, "orders:write": True} if permissions is None else permissions,
        "rate_limit": 1000,
        "is_active": True,
    }
    defaults.update(overrides)
    return _save(db, models.ApiKey(**defaults))


def token_for(user: models.User) -> str:
    return auth.create_access_token({
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "merchant_id": user.merchant_id,
    })


def auth_headers(user: models.User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


def order_payload(*lines, **overrides) -> dict:
    """Order body; each line is (product, quantity) or (product, quantity, unit_price)."""
    items = []
    for line in lines:
        product, quantity = line[0], line[1]
        unit_price = line[2] if len(line) > 2 else str(product.unit_price)
        items.append({"product_id": product.id, "quantity": quantity, "unit_price": unit_price})

    payload = {
        "customer_name": "Ada Obi",
        "customer_email": "ada@example.com",
        "customer_phone": "+2348012345678",
        "shipping_address": {"street": "12 Marina", "city": "Lagos", "state": "Lagos"},
        "items": items,
        "delivery_fee": "500.00",
        "payment_method": "COD",
    }
    payload.update(overrides)
    return payload
