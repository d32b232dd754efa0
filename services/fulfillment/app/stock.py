"""
Warehouse stock ledger.

Every change to a StockItem goes through this module. Each mutation is a
single conditional UPDATE that moves units between ``quantity``,
``available_quantity`` and ``reserved_quantity`` in one statement, so
``available + reserved == quantity`` holds after every write and neither side
can go negative. A guard that matches no row is reported as a failure instead
of being applied.

Functions here flush but never commit: callers own the transaction, so an
order's availability check, reservation and movements commit or roll back
together.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from . import config, models
from .exceptions import Conflict, InsufficientStock, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

REF_ORDER = "ORDER"
REF_ORDER_CANCELLED = "ORDER_CANCELLED"
REF_PRODUCT_UPDATE = "PRODUCT_UPDATE"
REF_ADJUSTMENT = "ADJUSTMENT"
REF_INITIAL_STOCK = "INITIAL_STOCK"

WAREHOUSE_CITY_CODES = {
    "Lagos": "LA",
    "Abuja": "AB",
    "Kano": "KN",
    "Port Harcourt": "PH",
    "Ibadan": "IB",
    "Kaduna": "KD",
    "Maiduguri": "MD",
    "Enugu": "EN",
    "Abeokuta": "ABK",
    "Jos": "JS",
}

DEFAULT_WAREHOUSE_CITY = "Lagos"


def _apply_delta(
    db: Session,
    stock_item_id: int,
    quantity: int = 0,
    available: int = 0,
    reserved: int = 0,
) -> bool:
    """
    Atomically shift units on one StockItem.

    Decrements are guarded in the WHERE clause, so the update only lands if
    the row still holds enough units at write time.

    Returns:
        True if the row was updated, False if a guard rejected it
    """
    if quantity != available + reserved:
        raise ValueError("Stock delta would unbalance available + reserved = quantity")

    stmt = update(models.StockItem).where(models.StockItem.id == stock_item_id)
    if available < 0:
        stmt = stmt.where(models.StockItem.available_quantity >= -available)
    if reserved < 0:
        stmt = stmt.where(models.StockItem.reserved_quantity >= -reserved)
    stmt = stmt.values(
        quantity=models.StockItem.quantity + quantity,
        available_quantity=models.StockItem.available_quantity + available,
        reserved_quantity=models.StockItem.reserved_quantity + reserved,
        updated_at=datetime.utcnow(),
    ).execution_options(synchronize_session=False)

    result = db.execute(stmt)
    return result.rowcount == 1


def record_movement(
    db: Session,
    stock_item_id: int,
    movement_type: models.MovementType,
    quantity: int,
    reference_type: str,
    reference_id: Optional[str] = None,
    performed_by: Optional[int] = None,
    notes: Optional[str] = None,
) -> models.StockMovement:
    """Append one immutable movement row."""
    movement = models.StockMovement(
        stock_item_id=stock_item_id,
        movement_type=models.MovementType(movement_type).value,
        quantity=quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes,
    )
    db.add(movement)
    return movement


def generate_warehouse_code(db: Session, city: Optional[str]) -> str:
    """
    Build the next free warehouse code for a city, e.g. "WH-LA-03".

    Known cities map to a fixed code; anything else uses its first two letters.
    """
    city = city or DEFAULT_WAREHOUSE_CITY
    city_code = WAREHOUSE_CITY_CODES.get(city, city[:2].upper())
    prefix = f"WH-{city_code}"

    existing = db.query(models.Warehouse.code).filter(models.Warehouse.code.like(f"{prefix}-%")).all()
    sequence = 0
    for (code,) in existing:
        suffix = code.rsplit("-", 1)[-1]
        if suffix.isdigit():
            sequence = max(sequence, int(suffix))

    return f"{prefix}-{sequence + 1:02d}"


def ensure_default_warehouse(db: Session) -> models.Warehouse:
    """
    Return the first active warehouse, creating a default one if none exists.
    """
    warehouse = (
        db.query(models.Warehouse)
        .filter(models.Warehouse.is_active.is_(True))
        .order_by(models.Warehouse.id)
        .first()
    )
    if warehouse is not None:
        return warehouse

    logger.info("No active warehouse found, creating default warehouse")
    warehouse = models.Warehouse(
        name="Main Warehouse",
        code=generate_warehouse_code(db, DEFAULT_WAREHOUSE_CITY),
        address="Default Address",
        city=DEFAULT_WAREHOUSE_CITY,
        state=DEFAULT_WAREHOUSE_CITY,
        country="Nigeria",
        capacity=10000,
        is_active=True,
    )
    db.add(warehouse)
    db.flush()
    logger.info(f"Created default warehouse {warehouse.code}")
    return warehouse


def ensure_product_stock_item(
    db: Session,
    product_id: int,
    quantity: int = 0,
    performed_by: Optional[int] = None,
    reference_type: str = REF_INITIAL_STOCK,
    notes: str = "Initial stock quantity",
) -> models.StockItem:
    """
    Return the product's primary StockItem, creating one in the default
    warehouse if the product has no stock records yet.

    Args:
        db: Database session
        product_id: Product to stock
        quantity: Opening on-hand quantity for a newly created record
        performed_by: User recorded on the opening movement

    Returns:
        The existing or newly created StockItem
    """
    existing = (
        db.query(models.StockItem)
        .filter(models.StockItem.product_id == product_id)
        .order_by(models.StockItem.warehouse_id, models.StockItem.id)
        .first()
    )
    if existing is not None:
        return existing

    warehouse = ensure_default_warehouse(db)
    stock_item = models.StockItem(
        product_id=product_id,
        warehouse_id=warehouse.id,
        quantity=quantity,
        available_quantity=quantity,
        reserved_quantity=0,
        reorder_level=config.DEFAULT_REORDER_LEVEL,
        max_stock_level=config.DEFAULT_MAX_STOCK_LEVEL,
    )
    db.add(stock_item)
    db.flush()

    if quantity > 0:
        record_movement(
            db,
            stock_item.id,
            models.MovementType.STOCK_IN,
            quantity,
            reference_type,
            reference_id=str(product_id),
            performed_by=performed_by,
            notes=notes,
        )

    logger.info(f"Created stock item for product {product_id} in warehouse {warehouse.code}")
    return stock_item


def get_candidate_stock(db: Session, product_id: int) -> List[models.StockItem]:
    """
    Stock records an order for ``product_id`` may draw from, in draw order.

    Only records with available units in active warehouses qualify. Rows are
    locked FOR UPDATE where the database supports it.
    """
    return (
        db.query(models.StockItem)
        .join(models.Warehouse, models.StockItem.warehouse_id == models.Warehouse.id)
        .filter(
            models.StockItem.product_id == product_id,
            models.StockItem.available_quantity > 0,
            models.Warehouse.is_active.is_(True),
        )
        .order_by(models.StockItem.warehouse_id, models.StockItem.id)
        .with_for_update(of=models.StockItem)
        .populate_existing()
        .all()
    )


def check_availability(db: Session, demand: Dict[int, int]) -> Dict[int, List[models.StockItem]]:
    """
    Verify every product has enough available stock across warehouses.

    Args:
        db: Database session
        demand: Requested quantity per product id

    Returns:
        Candidate stock records per product id, in draw order

    Raises:
        InsufficientStock: If any product is short
    """
    candidates = {}
    # Lock products in a fixed order so concurrent orders cannot deadlock
    for product_id in sorted(demand):
        stock_items = get_candidate_stock(db, product_id)
        available = sum(item.available_quantity for item in stock_items)
        if available < demand[product_id]:
            logger.info(
                f"Insufficient stock for product {product_id}. "
                f"Available: {available}, Required: {demand[product_id]}"
            )
            raise InsufficientStock()
        candidates[product_id] = stock_items
    return candidates


def reserve_order_lines(
    db: Session,
    order: models.Order,
    lines: Iterable,
    candidates: Dict[int, List[models.StockItem]],
    performed_by: Optional[int] = None,
) -> List[models.StockMovement]:
    """
    Reserve stock for each order line, greedily draining warehouses in order.

    Each draw moves ``min(remaining, available)`` units from available to
    reserved with a guarded update and records one STOCK_OUT movement. The
    first warehouse drawn from becomes the order's fulfilling warehouse.

    Raises:
        InsufficientStock: If a guarded draw finds the stock already taken
    """
    movements = []
    available = {
        stock_item.id: stock_item.available_quantity
        for stock_items in candidates.values()
        for stock_item in stock_items
    }

    for line in lines:
        remaining = line.quantity
        for stock_item in candidates.get(line.product_id, []):
            if remaining <= 0:
                break

            reserve = min(remaining, available[stock_item.id])
            if reserve <= 0:
                continue

            if not _apply_delta(db, stock_item.id, available=-reserve, reserved=reserve):
                logger.warning(
                    f"Stock item {stock_item.id} changed during reservation for order {order.order_number}"
                )
                raise InsufficientStock()

            available[stock_item.id] -= reserve
            movements.append(record_movement(
                db,
                stock_item.id,
                models.MovementType.STOCK_OUT,
                reserve,
                REF_ORDER,
                reference_id=str(order.id),
                performed_by=performed_by,
                notes=f"Reserved for order {order.order_number}",
            ))
            if order.warehouse_id is None:
                order.warehouse_id = stock_item.warehouse_id
            remaining -= reserve

        if remaining > 0:
            raise InsufficientStock()

    for stock_items in candidates.values():
        for stock_item in stock_items:
            db.expire(stock_item)

    db.flush()
    return movements


def order_allocations(db: Session, order_id: int) -> Dict[int, int]:
    """Units reserved for an order, per stock item id."""
    rows = (
        db.query(models.StockMovement.stock_item_id, func.sum(models.StockMovement.quantity))
        .filter(
            models.StockMovement.reference_type == REF_ORDER,
            models.StockMovement.reference_id == str(order_id),
            models.StockMovement.movement_type == models.MovementType.STOCK_OUT.value,
        )
        .group_by(models.StockMovement.stock_item_id)
        .order_by(models.StockMovement.stock_item_id)
        .all()
    )
    return {stock_item_id: int(quantity) for stock_item_id, quantity in rows}


def release_order_reservations(db: Session, order: models.Order, performed_by: Optional[int] = None) -> int:
    """
    Return an unshipped order's reserved units to available stock.

    Returns:
        Total units released
    """
    released = 0
    for stock_item_id, quantity in order_allocations(db, order.id).items():
        if not _apply_delta(db, stock_item_id, available=quantity, reserved=-quantity):
            raise Conflict(f"Reserved stock for order {order.order_number} is out of balance")
        record_movement(
            db,
            stock_item_id,
            models.MovementType.STOCK_IN,
            quantity,
            REF_ORDER_CANCELLED,
            reference_id=str(order.id),
            performed_by=performed_by,
            notes=f"Released from cancelled order {order.order_number}",
        )
        released += quantity

    db.flush()
    logger.info(f"Released {released} reserved units for order {order.order_number}")
    return released


def consume_order_reservations(db: Session, order: models.Order) -> int:
    """
    Take a shipped order's reserved units off the books.

    The STOCK_OUT movement was written at reservation time, so only the
    counters change here.

    Returns:
        Total units consumed
    """
    consumed = 0
    for stock_item_id, quantity in order_allocations(db, order.id).items():
        if not _apply_delta(db, stock_item_id, quantity=-quantity, reserved=-quantity):
            raise Conflict(f"Reserved stock for order {order.order_number} is out of balance")
        consumed += quantity

    db.flush()
    logger.info(f"Consumed {consumed} reserved units for shipped order {order.order_number}")
    return consumed


def adjust_stock(
    db: Session,
    product_id: int,
    warehouse_id: int,
    movement_type: models.MovementType,
    quantity: int,
    performed_by: Optional[int] = None,
    notes: Optional[str] = None,
    reference_type: str = REF_ADJUSTMENT,
    reference_id: Optional[str] = None,
) -> models.StockItem:
    """
    Receive or remove on-hand stock at one warehouse.

    STOCK_IN creates the StockItem if needed. STOCK_OUT may only take units
    that are not reserved for an order.

    Raises:
        NotFound: If the warehouse does not exist
        InsufficientStock: If a STOCK_OUT exceeds the available units
    """
    movement_type = models.MovementType(movement_type)
    if db.get(models.Warehouse, warehouse_id) is None:
        raise NotFound("Warehouse not found")

    stock_item = (
        db.query(models.StockItem)
        .filter(
            models.StockItem.product_id == product_id,
            models.StockItem.warehouse_id == warehouse_id,
        )
        .with_for_update()
        .populate_existing()
        .first()
    )

    if stock_item is None:
        if movement_type == models.MovementType.STOCK_OUT:
            raise InsufficientStock("No stock recorded for this product at the warehouse")
        stock_item = models.StockItem(
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity=0,
            available_quantity=0,
            reserved_quantity=0,
            reorder_level=config.DEFAULT_REORDER_LEVEL,
            max_stock_level=config.DEFAULT_MAX_STOCK_LEVEL,
        )
        db.add(stock_item)
        db.flush()

    if movement_type == models.MovementType.STOCK_IN:
        applied = _apply_delta(db, stock_item.id, quantity=quantity, available=quantity)
    else:
        applied = _apply_delta(db, stock_item.id, quantity=-quantity, available=-quantity)

    if not applied:
        raise InsufficientStock(
            f"Only {stock_item.available_quantity} units available at this warehouse"
        )

    record_movement(
        db,
        stock_item.id,
        movement_type,
        quantity,
        reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes,
    )
    db.flush()
    db.refresh(stock_item)
    return stock_item


def set_product_quantity(
    db: Session,
    product: models.Product,
    quantity: int,
    performed_by: Optional[int] = None,
) -> models.StockItem:
    """
    Set the on-hand quantity of a product's primary stock record.

    Units reserved for open orders are kept: the new quantity may not be lower
    than the reserved count, and only the available side absorbs the change.
    The difference is recorded as a single STOCK_IN or STOCK_OUT movement.

    Raises:
        ValidationFailed: If ``quantity`` is below the reserved units
    """
    stock_item = (
        db.query(models.StockItem)
        .filter(models.StockItem.product_id == product.id)
        .order_by(models.StockItem.warehouse_id, models.StockItem.id)
        .with_for_update()
        .populate_existing()
        .first()
    )

    if stock_item is None:
        return ensure_product_stock_item(
            db,
            product.id,
            quantity,
            performed_by=performed_by,
            reference_type=REF_PRODUCT_UPDATE,
            notes="Initial stock quantity set via product edit",
        )

    if quantity < stock_item.reserved_quantity:
        raise ValidationFailed(
            f"Quantity cannot be lower than the {stock_item.reserved_quantity} units reserved for open orders"
        )

    delta = quantity - stock_item.quantity
    if delta == 0:
        return stock_item

    if not _apply_delta(db, stock_item.id, quantity=delta, available=delta):
        raise Conflict("Stock changed while updating the product, please retry")

    record_movement(
        db,
        stock_item.id,
        models.MovementType.STOCK_IN if delta > 0 else models.MovementType.STOCK_OUT,
        abs(delta),
        REF_PRODUCT_UPDATE,
        reference_id=str(product.id),
        performed_by=performed_by,
        notes="Stock quantity updated via product edit",
    )
    db.flush()
    db.refresh(stock_item)
    return stock_item


def list_stock_items(
    db: Session,
    merchant_id: Optional[int] = None,
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    low_stock: bool = False,
    skip: int = 0,
    limit: int = 100,
) -> List[models.StockItem]:
    """
    Retrieve stock records with optional filters.

    ``low_stock`` keeps only records at or below their reorder level.
    """
    query = db.query(models.StockItem)
    if merchant_id is not None:
        query = query.join(models.Product).filter(models.Product.merchant_id == merchant_id)
    if product_id is not None:
        query = query.filter(models.StockItem.product_id == product_id)
    if warehouse_id is not None:
        query = query.filter(models.StockItem.warehouse_id == warehouse_id)
    if low_stock:
        query = query.filter(models.StockItem.available_quantity <= models.StockItem.reorder_level)
    return query.order_by(models.StockItem.id).offset(skip).limit(limit).all()


def get_stock_movements(db: Session, stock_item_id: int) -> List[models.StockMovement]:
    return (
        db.query(models.StockMovement)
        .filter(models.StockMovement.stock_item_id == stock_item_id)
        .order_by(models.StockMovement.created_at, models.StockMovement.id)
        .all()
    )
