"""
SQLAlchemy ORM models for the Fulfillment service.

Defines the database schema for merchants, catalog, warehouse stock, orders and
the secondary return/refund aggregates, plus the collaborator tables the order
flow writes to (audit log, notifications, API keys and their request log).
"""
import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .database import Base

# JSONB on PostgreSQL, plain JSON everywhere else (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Role(str, enum.Enum):
    SJFS_ADMIN = "SJFS_ADMIN"
    MERCHANT_ADMIN = "MERCHANT_ADMIN"
    MERCHANT_STAFF = "MERCHANT_STAFF"
    WAREHOUSE_STAFF = "WAREHOUSE_STAFF"
    LOGISTICS_PARTNER = "LOGISTICS_PARTNER"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    PICKED = "PICKED"
    PACKED = "PACKED"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class PaymentMethod(str, enum.Enum):
    COD = "COD"
    PREPAID = "PREPAID"
    WALLET = "WALLET"


class OrderSource(str, enum.Enum):
    INTERNAL = "INTERNAL"
    EXTERNAL = "EXTERNAL"


class MovementType(str, enum.Enum):
    STOCK_IN = "STOCK_IN"
    STOCK_OUT = "STOCK_OUT"


class RequestStatus(str, enum.Enum):
    """Status machine shared by return and refund requests."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSED = "PROCESSED"


class Merchant(Base):
    """
    Merchant account that owns products and receives orders.

    Attributes:
        id (int): Primary key
        business_name (str): Trading name shown on orders and e-mails
        business_email (str): Address that receives new-order notifications
        is_active (bool): Inactive merchants cannot use the external API
        onboarding_status (str): PENDING, APPROVED or REJECTED
    """
    __tablename__ = "merchants"

    id = Column(Integer, primary_key=True, index=True)
    business_name = Column(String, nullable=False)
    business_email = Column(String, nullable=True)
    business_phone = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    onboarding_status = Column(String, nullable=False, default="APPROVED")
    created_at = Column(DateTime, default=datetime.utcnow)


class User(Base):
    """Platform user; session tokens are issued elsewhere and only reference this row."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    role = Column(String, nullable=False)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Warehouse(Base):
    """
    Physical warehouse location.

    Attributes:
        code (str): Unique code derived from the city, e.g. "WH-LA-01"
        is_active (bool): Only active warehouses are drawn from for orders
        merchant_visible (bool): Whether merchant-facing views may show the address
    """
    __tablename__ = "warehouses"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    code = Column(String, unique=True, index=True, nullable=False)
    address = Column(Text, nullable=True)
    city = Column(String, nullable=False)
    state = Column(String, nullable=True)
    country = Column(String, nullable=False, default="Nigeria")
    capacity = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    merchant_visible = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """Merchant-owned catalog entry. SKUs are unique platform-wide."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False, index=True)
    sku = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merchant = relationship("Merchant")
    stock_items = relationship(
        "StockItem",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="StockItem.warehouse_id",
    )


class StockItem(Base):
    """
    Quantity record for one product at one warehouse.

    The CHECK constraints restate the ledger invariant so that a bad write
    fails at the database even if it slips past stock.py.
    """
    __tablename__ = "stock_items"
    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="uq_stock_items_product_warehouse"),
        CheckConstraint("available_quantity >= 0", name="ck_stock_items_available_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_stock_items_reserved_non_negative"),
        CheckConstraint(
            "available_quantity + reserved_quantity = quantity",
            name="ck_stock_items_balanced",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    available_quantity = Column(Integer, nullable=False, default=0)
    reorder_level = Column(Integer, nullable=False, default=10)
    max_stock_level = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("Product", back_populates="stock_items")
    warehouse = relationship("Warehouse")
    movements = relationship(
        "StockMovement",
        back_populates="stock_item",
        cascade="all, delete-orphan",
        order_by="StockMovement.id",
    )


class StockMovement(Base):
    """
    Immutable record of one quantity change on a StockItem.

    Attributes:
        movement_type (str): STOCK_IN or STOCK_OUT
        reference_type (str): What caused it (ORDER, ORDER_CANCELLED, PRODUCT_UPDATE, ADJUSTMENT, INITIAL_STOCK)
        reference_id (str): Identifier of the causing entity (e.g. the order id)
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    stock_item_id = Column(Integer, ForeignKey("stock_items.id", ondelete="CASCADE"), nullable=False, index=True)
    movement_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    performed_by = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    stock_item = relationship("StockItem", back_populates="movements")


class Order(Base):
    """
    Order header. ``total_amount`` is always ``order_value + delivery_fee``.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("order_number", name="uq_orders_order_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, nullable=False, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False, index=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=True)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=False)
    shipping_address = Column(JSONType, nullable=False, default=dict)
    order_value = Column(Numeric(12, 2), nullable=False, default=0)
    delivery_fee = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_method = Column(String, nullable=False, default=PaymentMethod.COD.value)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value, index=True)
    notes = Column(Text, nullable=True)
    external_order_id = Column(String, nullable=True)
    expected_delivery = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    source = Column(String, nullable=False, default=OrderSource.INTERNAL.value)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merchant = relationship("Merchant")
    warehouse = relationship("Warehouse")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id")
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id",
    )


class OrderItem(Base):
    """Order line; ``unit_price`` is captured at order time, not read from the product."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class OrderStatusHistory(Base):
    """Append-only transition log for an order."""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="status_history")


class ReturnRequest(Base):
    __tablename__ = "return_requests"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reason = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=RequestStatus.PENDING.value)
    approved_amount = Column(Numeric(12, 2), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order")


class RefundRequest(Base):
    __tablename__ = "refund_requests"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reason = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    requested_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String, nullable=False, default=RequestStatus.PENDING.value)
    approved_amount = Column(Numeric(12, 2), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order")


class AuditLog(Base):
    """
    Who changed what. Written in the same transaction as the change it describes.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)
    api_key_id = Column(Integer, nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    old_values = Column(JSONType, nullable=True)
    new_values = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Notification(Base):
    """In-platform notification addressed to a user or to every holder of a role."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(Integer, nullable=True, index=True)
    recipient_role = Column(String, nullable=True, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String, nullable=False)
    priority = Column(String, nullable=False, default="MEDIUM")
    is_read = Column(Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    public_key = Column(String, unique=True, index=True, nullable=False)
    permissions = Column(JSONType, nullable=False, default=dict)
    rate_limit = Column(Integer, nullable=False, default=1000)
    usage_count = Column(Integer, nullable=False, default=0)
    last_used = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    merchant = relationship("Merchant")


class ApiRequestLog(Base):
    """One row per external API call, including rejected ones."""
    __tablename__ = "api_request_logs"

    id = Column(Integer, primary_key=True, index=True)
    api_key_id = Column(Integer, ForeignKey("api_keys.id"), nullable=False, index=True)
    endpoint = Column(String, nullable=False)
    method = Column(String, nullable=False)
    status_code = Column(Integer, nullable=False)
    response_time_ms = Column(Integer, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    request_body = Column(Text, nullable=True)
    response_body = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
