"""
Pydantic schemas for request/response validation in the Fulfillment service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .models import MovementType, OrderStatus, PaymentMethod, RequestStatus


class ShippingAddress(BaseModel):
    """Delivery address captured on the order."""
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = "Nigeria"
    postal_code: Optional[str] = None
    landmark: Optional[str] = None


class OrderItemCreate(BaseModel):
    """Schema for an order line in a create request."""
    product_id: int = Field(..., description="Product being ordered")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    unit_price: Decimal = Field(..., gt=0, decimal_places=2, description="Price per unit, captured on the order")


class OrderCreate(BaseModel):
    """
    Schema for creating a new order.

    ``merchant_id`` is only honoured for platform admins; every other caller is
    bound to their own merchant.
    """
    customer_name: str = Field(..., min_length=1)
    customer_email: Optional[EmailStr] = None
    customer_phone: str = Field(..., min_length=1)
    shipping_address: ShippingAddress
    items: List[OrderItemCreate] = Field(..., min_length=1)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    payment_method: PaymentMethod = PaymentMethod.COD
    notes: Optional[str] = None
    merchant_id: Optional[int] = None


class ExternalOrderCreate(OrderCreate):
    """Order payload accepted from API-key integrations."""
    external_order_id: Optional[str] = Field(None, description="Order id on the calling platform")
    expected_delivery: Optional[datetime] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class ProductSummary(BaseModel):
    id: int
    sku: str
    name: str

    class Config:
        from_attributes = True


class MerchantSummary(BaseModel):
    id: int
    business_name: str

    class Config:
        from_attributes = True


class WarehouseSummary(BaseModel):
    id: int
    name: str
    code: str
    city: str
    state: Optional[str] = None

    class Config:
        from_attributes = True


class OrderItem(BaseModel):
    id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    product: ProductSummary

    class Config:
        from_attributes = True


class OrderStatusHistory(BaseModel):
    """
    Schema for one entry of an order's status trail.

    Attributes:
        status (str): Status the order moved to
        notes (str): Free-text note supplied with the transition
        updated_by (int): User who made the change (None for API-key callers)
        created_at (datetime): When the transition was recorded
    """
    id: int
    order_id: int
    status: str
    notes: Optional[str] = None
    updated_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class Order(BaseModel):
    """
    Schema for order responses, includes nested items, merchant and warehouse.
    """
    id: int
    order_number: str
    merchant_id: int
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: str
    shipping_address: Dict[str, Any]
    order_value: Decimal
    delivery_fee: Decimal
    total_amount: Decimal
    payment_method: str
    status: str
    notes: Optional[str] = None
    external_order_id: Optional[str] = None
    expected_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    source: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    items: List[OrderItem] = Field(default_factory=list)
    merchant: MerchantSummary
    warehouse: Optional[WarehouseSummary] = None

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderPage(BaseModel):
    orders: List[Order]
    pagination: Pagination


class ReturnCreate(BaseModel):
    order_id: int
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None


class RefundCreate(BaseModel):
    order_id: int
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None
    requested_amount: Decimal = Field(..., gt=0, decimal_places=2)


class RequestDecision(BaseModel):
    """Transition payload shared by return and refund requests."""
    status: RequestStatus
    approved_amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    rejection_reason: Optional[str] = None

    @field_validator("rejection_reason")
    @classmethod
    def blank_reason_is_missing(cls, value):
        if value is not None and not value.strip():
            return None
        return value


class ReturnRequest(BaseModel):
    id: int
    order_id: int
    requested_by: Optional[int] = None
    reason: str
    description: Optional[str] = None
    status: str
    approved_amount: Optional[Decimal] = None
    rejection_reason: Optional[str] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RefundRequest(ReturnRequest):
    requested_amount: Decimal


class ReturnPage(BaseModel):
    returns: List[ReturnRequest]
    pagination: Pagination


class RefundPage(BaseModel):
    refund_requests: List[RefundRequest]
    pagination: Pagination


class ProductCreate(BaseModel):
    sku: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    unit_price: Decimal = Field(..., gt=0, decimal_places=2)
    quantity: Optional[int] = Field(None, ge=0, description="Initial on-hand stock")
    merchant_id: Optional[int] = None


class ProductUpdate(BaseModel):
    """
    Schema for updating a product. All fields are optional, but the required
    columns may not be sent as null.
    """
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    unit_price: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    is_active: Optional[bool] = None
    quantity: Optional[int] = Field(None, ge=0, description="New on-hand stock at the primary warehouse")

    @field_validator("name", "unit_price", "is_active", "quantity")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class StockItem(BaseModel):
    id: int
    product_id: int
    warehouse_id: int
    quantity: int
    reserved_quantity: int
    available_quantity: int
    reorder_level: int
    max_stock_level: Optional[int] = None
    warehouse: WarehouseSummary

    class Config:
        from_attributes = True


class Product(BaseModel):
    id: int
    merchant_id: int
    sku: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    unit_price: Decimal
    is_active: bool
    created_at: datetime
    stock_items: List[StockItem] = Field(default_factory=list)

    class Config:
        from_attributes = True


class StockMovement(BaseModel):
    id: int
    stock_item_id: int
    movement_type: str
    quantity: int
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    performed_by: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StockAdjustment(BaseModel):
    product_id: int
    warehouse_id: int
    movement_type: MovementType
    quantity: int = Field(..., gt=0)
    notes: Optional[str] = None


class WarehouseCreate(BaseModel):
    name: str = Field(..., min_length=1)
    code: Optional[str] = None
    address: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    country: str = "Nigeria"
    capacity: Optional[int] = Field(None, ge=0)
    is_active: bool = True
    merchant_visible: bool = False


class Warehouse(BaseModel):
    id: int
    name: str
    code: str
    address: Optional[str] = None
    city: str
    state: Optional[str] = None
    country: str
    capacity: Optional[int] = None
    is_active: bool
    merchant_visible: bool

    class Config:
        from_attributes = True
