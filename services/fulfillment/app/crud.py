"""
CRUD (Create, Read, Update, Delete) operations for the Fulfillment service.

This module contains the database operations for orders, products and
warehouses, plus the audit and API request logs. ``create_order`` is the one
implementation of order creation; the session-authenticated and API-key routes
both call it.
"""
import json
import logging
import math
import secrets
import string
import time
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, models, schemas, stock, validators
from .exceptions import InvalidTransition, NotFound, OrderNumberUnavailable, ValidationFailed

# Set up logging
logger = logging.getLogger(__name__)

ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
ORDER_NUMBER_SUFFIX_LENGTH = 9


def generate_order_number(prefix: str = "ORD") -> str:
    """
    Build an order number from the current time and a random suffix.

    Uniqueness is enforced by the database; see ``create_order`` for the retry.
    """
    suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(ORDER_NUMBER_SUFFIX_LENGTH))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def write_audit_log(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Any,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
    user_id: Optional[int] = None,
    api_key_id: Optional[int] = None,
) -> models.AuditLog:
    """
    Stage an audit log entry in the caller's transaction.
    """
    entry = models.AuditLog(
        user_id=user_id,
        api_key_id=api_key_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        old_values=old_values,
        new_values=new_values,
    )
    db.add(entry)
    return entry


def _truncate(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text[:config.API_LOG_MAX_BODY_CHARS]


def record_api_request(
    db: Session,
    api_key_id: int,
    endpoint: str,
    method: str,
    status_code: int,
    response_time_ms: int,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    request_body: Any = None,
    response_body: Any = None,
    error: Optional[str] = None,
) -> None:
    """
    Persist one external API call. Failures here are logged, never raised.
    """
    try:
        db.add(models.ApiRequestLog(
            api_key_id=api_key_id,
            endpoint=endpoint,
            method=method,
            status_code=status_code,
            response_time_ms=response_time_ms,
            ip_address=ip_address,
            user_agent=user_agent,
            request_body=_truncate(request_body),
            response_body=_truncate(response_body),
            error=error,
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Failed to log API request {method} {endpoint}")


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_orders(
    db: Session,
    merchant_id: Optional[int] = None,
    status: Optional[str] = None,
    payment_method: Optional[str] = None,
    warehouse_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[models.Order], int]:
    """
    Retrieve a filtered page of orders, newest first.

    Returns:
        Tuple of (orders on the page, total matching orders)
    """
    query = db.query(models.Order)

    if merchant_id is not None:
        query = query.filter(models.Order.merchant_id == merchant_id)
    if status:
        query = query.filter(models.Order.status == status)
    if payment_method:
        query = query.filter(models.Order.payment_method == payment_method)
    if warehouse_id is not None:
        query = query.filter(models.Order.warehouse_id == warehouse_id)
    if date_from:
        query = query.filter(models.Order.created_at >= date_from)
    if date_to:
        query = query.filter(models.Order.created_at <= date_to)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            models.Order.order_number.ilike(pattern),
            models.Order.customer_name.ilike(pattern),
            models.Order.customer_email.ilike(pattern),
            models.Order.customer_phone.ilike(pattern),
        ))

    total = query.count()
    orders = (
        query.order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return orders, total


def get_status_history(db: Session, order_id: int) -> List[models.OrderStatusHistory]:
    return (
        db.query(models.OrderStatusHistory)
        .filter(models.OrderStatusHistory.order_id == order_id)
        .order_by(models.OrderStatusHistory.created_at.asc(), models.OrderStatusHistory.id.asc())
        .all()
    )


def add_status_history(
    db: Session,
    order_id: int,
    status: str,
    notes: Optional[str] = None,
    updated_by: Optional[int] = None,
) -> models.OrderStatusHistory:
    entry = models.OrderStatusHistory(order_id=order_id, status=status, notes=notes, updated_by=updated_by)
    db.add(entry)
    return entry


def _is_order_number_conflict(error: IntegrityError) -> bool:
    return "order_number" in str(error.orig)


def _create_order_unit(
    db: Session,
    order: schemas.OrderCreate,
    merchant_id: int,
    order_number: str,
    user_id: Optional[int],
    api_key_id: Optional[int],
    source: models.OrderSource,
) -> models.Order:
    product_ids = {item.product_id for item in order.items}
    products = (
        db.query(models.Product.id)
        .filter(
            models.Product.id.in_(product_ids),
            models.Product.merchant_id == merchant_id,
            models.Product.is_active.is_(True),
        )
        .all()
    )
    if len(products) != len(product_ids):
        raise ValidationFailed("Some products not found or inactive")

    candidates = stock.check_availability(db, validators.summarize_demand(order.items))

    order_value, total_amount = validators.calculate_order_totals(order.items, order.delivery_fee)
    db_order = models.Order(
        order_number=order_number,
        merchant_id=merchant_id,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        customer_phone=order.customer_phone,
        shipping_address=order.shipping_address.model_dump(),
        order_value=order_value,
        delivery_fee=order.delivery_fee,
        total_amount=total_amount,
        payment_method=order.payment_method.value,
        status=models.OrderStatus.PENDING.value,
        notes=order.notes,
        external_order_id=getattr(order, "external_order_id", None),
        expected_delivery=getattr(order, "expected_delivery", None),
        source=source.value,
        created_by=user_id,
        items=[
            models.OrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.unit_price * item.quantity,
            )
            for item in order.items
        ],
    )
    db.add(db_order)
    db.flush()

    add_status_history(db, db_order.id, models.OrderStatus.PENDING.value, "Order created", user_id)
    stock.reserve_order_lines(db, db_order, order.items, candidates, performed_by=user_id)
    write_audit_log(
        db,
        "CREATE_ORDER",
        "orders",
        db_order.id,
        new_values=order.model_dump(mode="json"),
        user_id=user_id,
        api_key_id=api_key_id,
    )
    return db_order


def create_order(
    db: Session,
    order: schemas.OrderCreate,
    merchant_id: int,
    user_id: Optional[int] = None,
    api_key_id: Optional[int] = None,
    source: models.OrderSource = models.OrderSource.INTERNAL,
) -> models.Order:
    """
    Validate, price and persist an order, reserving its stock.

    Product checks, the availability check, the order rows, the initial
    PENDING history entry, the stock reservations and the audit entry are one
    transaction. If the generated order number is already taken the whole
    unit is rolled back and retried with a new number.

    Args:
        db: Database session
        order: Validated order payload
        merchant_id: Merchant the order is placed for
        user_id: Session user placing the order, if any
        api_key_id: API key placing the order, if any
        source: Which surface the order came through

    Returns:
        Created Order object

    Raises:
        ValidationFailed: Invalid lines, or products missing/inactive/not the merchant's
        InsufficientStock: Not enough available stock for some line
        OrderNumberUnavailable: No free order number after the configured attempts
    """
    is_valid, error_message = validators.validate_order_items(order.items)
    if not is_valid:
        raise ValidationFailed(error_message)

    prefix = "EXT" if source == models.OrderSource.EXTERNAL else "ORD"

    for attempt in range(1, config.ORDER_NUMBER_MAX_ATTEMPTS + 1):
        order_number = generate_order_number(prefix)
        try:
            db_order = _create_order_unit(db, order, merchant_id, order_number, user_id, api_key_id, source)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            if not _is_order_number_conflict(e):
                raise
            logger.warning(f"Order number {order_number} already taken (attempt {attempt})")
            continue
        except Exception:
            db.rollback()
            raise

        db.refresh(db_order)
        logger.info(f"Created order {db_order.order_number} for merchant {merchant_id} ({source.value})")
        return db_order

    raise OrderNumberUnavailable()


def apply_order_status(
    db: Session,
    order: models.Order,
    new_status: models.OrderStatus,
    notes: Optional[str] = None,
    user_id: Optional[int] = None,
) -> str:
    """
    Move an order to ``new_status`` inside the caller's transaction.

    Cancelling an unshipped order releases its reservations; the first move
    into a shipped status consumes them. Every accepted call appends a
    history row.

    Returns:
        The previous status

    Raises:
        InvalidTransition: If the move is not allowed from the current status
    """
    new_status = models.OrderStatus(new_status)
    old_status = models.OrderStatus(order.status)

    is_valid, error_message = validators.validate_order_status_transition(old_status.value, new_status.value)
    if not is_valid:
        raise InvalidTransition(error_message)

    if new_status != old_status:
        if new_status == models.OrderStatus.CANCELLED:
            stock.release_order_reservations(db, order, performed_by=user_id)
        elif new_status in validators.SHIPPED_STATUSES and old_status not in validators.SHIPPED_STATUSES:
            stock.consume_order_reservations(db, order)

        order.status = new_status.value
        if new_status == models.OrderStatus.DELIVERED:
            order.delivered_at = datetime.utcnow()

    add_status_history(db, order.id, new_status.value, notes or f"Status updated to {new_status.value}", user_id)
    return old_status.value


def update_order_status(
    db: Session,
    order: models.Order,
    update: schemas.OrderStatusUpdate,
    user_id: Optional[int] = None,
) -> Tuple[models.Order, str]:
    """
    Transition an order and commit.

    Returns:
        Tuple of (updated order, previous status)
    """
    try:
        old_status = apply_order_status(db, order, update.status, update.notes, user_id)
        write_audit_log(
            db,
            "UPDATE_ORDER_STATUS",
            "orders",
            order.id,
            old_values={"status": old_status},
            new_values=update.model_dump(mode="json"),
            user_id=user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info(f"Order {order.order_number} moved from {old_status} to {order.status}")
    return order, old_status


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_product_by_sku(db: Session, sku: str) -> Optional[models.Product]:
    return db.query(models.Product).filter(models.Product.sku == sku).first()


def get_products(
    db: Session,
    merchant_id: Optional[int] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[models.Product], int]:
    query = db.query(models.Product)
    if merchant_id is not None:
        query = query.filter(models.Product.merchant_id == merchant_id)
    total = query.count()
    products = query.order_by(models.Product.id).offset((page - 1) * limit).limit(limit).all()
    return products, total


def create_product(
    db: Session,
    product: schemas.ProductCreate,
    merchant_id: int,
    user_id: Optional[int] = None,
) -> models.Product:
    """
    Create a catalog entry, optionally with opening stock in the default warehouse.

    Raises:
        ValidationFailed: If the SKU is already in use
    """
    if get_product_by_sku(db, product.sku):
        raise ValidationFailed("SKU already exists")

    try:
        db_product = models.Product(
            merchant_id=merchant_id,
            sku=product.sku,
            name=product.name,
            description=product.description,
            category=product.category,
            unit_price=product.unit_price,
        )
        db.add(db_product)
        db.flush()

        if product.quantity is not None:
            stock.ensure_product_stock_item(db, db_product.id, product.quantity, performed_by=user_id)

        write_audit_log(
            db, "CREATE_PRODUCT", "products", db_product.id,
            new_values=product.model_dump(mode="json"), user_id=user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_product)
    return db_product


def update_product(
    db: Session,
    db_product: models.Product,
    product: schemas.ProductUpdate,
    user_id: Optional[int] = None,
) -> models.Product:
    """
    Update product fields; a supplied ``quantity`` goes through the stock ledger.
    """
    update_data = product.model_dump(exclude_unset=True)
    quantity = update_data.pop("quantity", None)

    try:
        for key, value in update_data.items():
            setattr(db_product, key, value)

        if quantity is not None:
            stock.set_product_quantity(db, db_product, quantity, performed_by=user_id)

        write_audit_log(
            db, "UPDATE_PRODUCT", "products", db_product.id,
            new_values=product.model_dump(mode="json", exclude_unset=True), user_id=user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_product)
    return db_product


def delete_product(db: Session, db_product: models.Product, user_id: Optional[int] = None) -> None:
    """
    Delete a product together with its stock records and movements.

    Raises:
        ValidationFailed: If order lines still reference the product
    """
    has_orders = (
        db.query(models.OrderItem.id)
        .filter(models.OrderItem.product_id == db_product.id)
        .first()
    )
    if has_orders:
        raise ValidationFailed("Product has orders and cannot be deleted; deactivate it instead")

    try:
        product_id = db_product.id
        db.delete(db_product)
        write_audit_log(db, "DELETE_PRODUCT", "products", product_id, user_id=user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise


def adjust_stock(db: Session, adjustment: schemas.StockAdjustment, user_id: Optional[int] = None) -> models.StockItem:
    """
    Apply a manual STOCK_IN or STOCK_OUT and commit.

    Raises:
        NotFound: If the product or warehouse does not exist
        InsufficientStock: If a STOCK_OUT exceeds the available units
    """
    if get_product(db, adjustment.product_id) is None:
        raise NotFound("Product not found")

    try:
        stock_item = stock.adjust_stock(
            db,
            adjustment.product_id,
            adjustment.warehouse_id,
            adjustment.movement_type,
            adjustment.quantity,
            performed_by=user_id,
            notes=adjustment.notes,
        )
        write_audit_log(
            db, "ADJUST_STOCK", "stock_items", stock_item.id,
            new_values=adjustment.model_dump(mode="json"), user_id=user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(stock_item)
    logger.info(
        f"{adjustment.movement_type.value} of {adjustment.quantity} units for product "
        f"{adjustment.product_id} at warehouse {adjustment.warehouse_id}"
    )
    return stock_item


# ---------------------------------------------------------------------------
# Warehouses
# ---------------------------------------------------------------------------


def get_warehouses(db: Session, active_only: bool = False, city: Optional[str] = None) -> List[models.Warehouse]:
    query = db.query(models.Warehouse)
    if active_only:
        query = query.filter(models.Warehouse.is_active.is_(True))
    if city:
        query = query.filter(models.Warehouse.city == city)
    return query.order_by(models.Warehouse.id).all()


def create_warehouse(db: Session, warehouse: schemas.WarehouseCreate, user_id: Optional[int] = None) -> models.Warehouse:
    """
    Create a warehouse; the code is generated from the city when not given.

    Raises:
        ValidationFailed: If the code is already in use
    """
    code = warehouse.code or stock.generate_warehouse_code(db, warehouse.city)
    if db.query(models.Warehouse).filter(models.Warehouse.code == code).first():
        raise ValidationFailed("Warehouse with this code already exists")

    try:
        db_warehouse = models.Warehouse(**warehouse.model_dump(exclude={"code"}), code=code)
        db.add(db_warehouse)
        db.flush()
        write_audit_log(
            db, "CREATE_WAREHOUSE", "warehouses", db_warehouse.id,
            new_values={**warehouse.model_dump(mode="json"), "code": code}, user_id=user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_warehouse)
    return db_warehouse
