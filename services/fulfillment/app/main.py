"""
Fulfillment Service API

This module implements the FastAPI application for the order lifecycle: order
creation with stock reservation across warehouses, status transitions, return
and refund requests, and the product, stock and warehouse records behind them.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /orders, GET /orders, GET /orders/{order_id}: Create and read orders
    PUT /orders/{order_id}: Move an order to a new status
    GET /orders/{order_id}/history: Status trail of an order
    GET /orders/{order_id}/next-statuses: Statuses the order may move to
    /returns, /refund-requests: Return and refund requests
    /products, /stock, /stock/adjustments, /warehouses: Catalog and stock
    /external/orders: API-key surface (see external.py)

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "fulfillment-service"
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import auth, config, crud, models, notifications, returns, schemas, stock, validators
from .database import engine, get_db
from .exceptions import FulfillmentError, NotFound, PermissionDenied, ValidationFailed
from .external import router as external_router
from .models import Role

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="fulfillment-service")
app.include_router(external_router)

ORDER_CREATORS = (Role.SJFS_ADMIN, Role.MERCHANT_ADMIN, Role.MERCHANT_STAFF)
ORDER_OPERATORS = (Role.SJFS_ADMIN, Role.WAREHOUSE_STAFF, Role.LOGISTICS_PARTNER)
REQUEST_REVIEWERS = (Role.SJFS_ADMIN, Role.WAREHOUSE_STAFF)
CATALOG_EDITORS = (Role.SJFS_ADMIN, Role.MERCHANT_ADMIN, Role.MERCHANT_STAFF)
MAX_PAGE_SIZE = 100


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid input data", "errors": jsonable_encoder(exc.errors())},
    )


def _page_args(page: int, limit: int):
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)


def _resolve_merchant_id(current_user: auth.CurrentUser, requested: Optional[int]) -> int:
    """Admins act for the merchant they name; everyone else for their own."""
    if current_user.is_admin:
        if requested is None:
            raise ValidationFailed("merchant_id is required")
        return requested
    merchant_id = auth.merchant_scope(current_user)
    if merchant_id is None:
        raise PermissionDenied("Insufficient permissions")
    return merchant_id


def _get_visible_order(db: Session, order_id: int, current_user: auth.CurrentUser) -> models.Order:
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        raise NotFound("Order not found")
    scope = auth.merchant_scope(current_user)
    if scope is not None and db_order.merchant_id != scope:
        raise PermissionDenied("Not authorized to access this order")
    return db_order


def _get_visible_product(db: Session, product_id: int, current_user: auth.CurrentUser) -> models.Product:
    db_product = crud.get_product(db, product_id)
    if db_product is None:
        raise NotFound("Product not found")
    scope = auth.merchant_scope(current_user)
    if scope is not None and db_product.merchant_id != scope:
        raise PermissionDenied("Not authorized to access this product")
    return db_product


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the fulfillment service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@app.post("/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(*ORDER_CREATORS)),
):
    """
    Create an order and reserve its stock.

    Notifications, e-mails and webhooks are sent after the order is committed;
    their failure never affects the response.

    Args:
        order: Order data to create
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        Created order object

    Raises:
        HTTPException: 400 if validation fails or stock is insufficient
        HTTPException: 403 if not authorized
        HTTPException: 500 if the order could not be stored
    """
    merchant_id = _resolve_merchant_id(current_user, order.merchant_id)

    try:
        db_order = crud.create_order(db, order, merchant_id, user_id=current_user.id)
    except SQLAlchemyError:
        logger.exception("Failed to create order")
        raise HTTPException(status_code=500, detail="Failed to create order")

    background_tasks.add_task(notifications.dispatch_order_created, db_order.id)
    return db_order


@app.get("/orders", response_model=schemas.OrderPage)
def list_orders(
    page: int = 1,
    limit: int = 10,
    status: Optional[models.OrderStatus] = None,
    payment_method: Optional[models.PaymentMethod] = None,
    warehouse_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    List orders with filters and pagination (merchant roles see their own merchant's orders only).
    """
    page, limit = _page_args(page, limit)
    orders, total = crud.get_orders(
        db,
        merchant_id=auth.merchant_scope(current_user),
        status=status.value if status else None,
        payment_method=payment_method.value if payment_method else None,
        warehouse_id=warehouse_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        page=page,
        limit=limit,
    )
    return {"orders": orders, "pagination": crud.pagination(page, limit, total)}


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    Get a single order by ID.

    Raises:
        HTTPException: 403 if the order belongs to another merchant
        HTTPException: 404 if order not found
    """
    return _get_visible_order(db, order_id, current_user)


@app.put("/orders/{order_id}", response_model=schemas.Order)
def update_order_status(
    order_id: int,
    update: schemas.OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(*ORDER_OPERATORS)),
):
    """
    Move an order to a new status.

    Cancelling releases reserved stock; shipping consumes it. Re-sending the
    current status only appends a note to the history.

    Raises:
        HTTPException: 400 if the transition is not allowed
        HTTPException: 404 if order not found
    """
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        raise NotFound("Order not found")

    try:
        db_order, old_status = crud.update_order_status(db, db_order, update, user_id=current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to update order {order_id}")
        raise HTTPException(status_code=500, detail="Failed to update order")

    if old_status != db_order.status:
        background_tasks.add_task(
            notifications.dispatch_order_status_changed, db_order.id, old_status, db_order.status
        )
    return db_order


@app.get("/orders/{order_id}/history", response_model=List[schemas.OrderStatusHistory])
def get_order_history(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    _get_visible_order(db, order_id, current_user)
    return crud.get_status_history(db, order_id)


@app.get("/orders/{order_id}/next-statuses", response_model=dict)
def get_next_statuses(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    db_order = _get_visible_order(db, order_id, current_user)
    return {"status": db_order.status, "next": validators.next_order_statuses(db_order.status)}


# ---------------------------------------------------------------------------
# Returns and refunds
# ---------------------------------------------------------------------------


@app.post("/returns", response_model=schemas.ReturnRequest, status_code=status.HTTP_201_CREATED)
def create_return(
    data: schemas.ReturnCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(
        auth.require_roles(Role.SJFS_ADMIN, Role.MERCHANT_ADMIN, Role.MERCHANT_STAFF, Role.WAREHOUSE_STAFF)
    ),
):
    try:
        return returns.create_return_request(db, data, current_user.id, auth.merchant_scope(current_user))
    except SQLAlchemyError:
        logger.exception(f"Failed to create return request for order {data.order_id}")
        raise HTTPException(status_code=500, detail="Failed to create return request")


@app.get("/returns", response_model=schemas.ReturnPage)
def list_returns(
    page: int = 1,
    limit: int = 10,
    status: Optional[models.RequestStatus] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    page, limit = _page_args(page, limit)
    rows, total = returns.list_return_requests(
        db, auth.merchant_scope(current_user), status.value if status else None, page, limit
    )
    return {"returns": rows, "pagination": crud.pagination(page, limit, total)}


@app.get("/returns/{request_id}", response_model=schemas.ReturnRequest)
def get_return(
    request_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    return returns.get_return_request(db, request_id, auth.merchant_scope(current_user))


@app.put("/returns/{request_id}", response_model=schemas.ReturnRequest)
def decide_return(
    request_id: int,
    decision: schemas.RequestDecision,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(*REQUEST_REVIEWERS)),
):
    """
    Approve, reject or process a return.

    Processing a return for a delivered order marks the order RETURNED.
    """
    request = returns.get_return_request(db, request_id)
    old_order_status = request.order.status
    try:
        request = returns.decide_return_request(db, request, decision, current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to update return request {request_id}")
        raise HTTPException(status_code=500, detail="Failed to update return request")

    background_tasks.add_task(notifications.dispatch_request_decision, "RETURN", request.id)
    if request.order.status != old_order_status:
        background_tasks.add_task(
            notifications.dispatch_order_status_changed, request.order_id, old_order_status, request.order.status
        )
    return request


@app.delete("/returns/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
def cancel_return(
    request_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    request = returns.get_return_request(db, request_id, auth.merchant_scope(current_user))
    try:
        returns.cancel_request(db, request, current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to cancel return request {request_id}")
        raise HTTPException(status_code=500, detail="Failed to cancel return request")
    return None


@app.post("/refund-requests", response_model=schemas.RefundRequest, status_code=status.HTTP_201_CREATED)
def create_refund(
    data: schemas.RefundCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(Role.MERCHANT_ADMIN, Role.MERCHANT_STAFF)),
):
    try:
        return returns.create_refund_request(db, data, current_user.id, auth.merchant_scope(current_user))
    except SQLAlchemyError:
        logger.exception(f"Failed to create refund request for order {data.order_id}")
        raise HTTPException(status_code=500, detail="Failed to create refund request")


@app.get("/refund-requests", response_model=schemas.RefundPage)
def list_refunds(
    page: int = 1,
    limit: int = 10,
    status: Optional[models.RequestStatus] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    page, limit = _page_args(page, limit)
    rows, total = returns.list_refund_requests(
        db, auth.merchant_scope(current_user), status.value if status else None, page, limit
    )
    return {"refund_requests": rows, "pagination": crud.pagination(page, limit, total)}


@app.get("/refund-requests/{request_id}", response_model=schemas.RefundRequest)
def get_refund(
    request_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    return returns.get_refund_request(db, request_id, auth.merchant_scope(current_user))


@app.put("/refund-requests/{request_id}", response_model=schemas.RefundRequest)
def decide_refund(
    request_id: int,
    decision: schemas.RequestDecision,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(*REQUEST_REVIEWERS)),
):
    request = returns.get_refund_request(db, request_id)
    try:
        request = returns.decide_refund_request(db, request, decision, current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to update refund request {request_id}")
        raise HTTPException(status_code=500, detail="Failed to update refund request")
    background_tasks.add_task(notifications.dispatch_request_decision, "REFUND", request.id)
    return request


@app.delete("/refund-requests/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
def cancel_refund(
    request_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    request = returns.get_refund_request(db, request_id, auth.merchant_scope(current_user))
    try:
        returns.cancel_request(db, request, current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to cancel refund request {request_id}")
        raise HTTPException(status_code=500, detail="Failed to cancel refund request")
    return None


# ---------------------------------------------------------------------------
# Products and stock
# ---------------------------------------------------------------------------


@app.post("/products", response_model=schemas.Product, status_code=status.HTTP_201_CREATED)
def create_product(
    product: schemas.ProductCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(*CATALOG_EDITORS)),
):
    """
    Create a product. A supplied ``quantity`` becomes opening stock in the default warehouse.

    Raises:
        HTTPException: 400 if the SKU already exists
    """
    merchant_id = _resolve_merchant_id(current_user, product.merchant_id)
    try:
        return crud.create_product(db, product, merchant_id, user_id=current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to create product {product.sku}")
        raise HTTPException(status_code=500, detail="Failed to create product")


@app.get("/products", response_model=List[schemas.Product])
def list_products(
    page: int = 1,
    limit: int = 10,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    page, limit = _page_args(page, limit)
    products, _ = crud.get_products(db, auth.merchant_scope(current_user), page, limit)
    return products


@app.get("/products/{product_id}", response_model=schemas.Product)
def get_product(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    return _get_visible_product(db, product_id, current_user)


@app.put("/products/{product_id}", response_model=schemas.Product)
def update_product(
    product_id: int,
    product: schemas.ProductUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(*CATALOG_EDITORS)),
):
    """
    Update a product. ``quantity`` sets on-hand stock at the primary warehouse
    and may not drop below the units reserved for open orders.
    """
    db_product = _get_visible_product(db, product_id, current_user)
    try:
        return crud.update_product(db, db_product, product, user_id=current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to update product {product_id}")
        raise HTTPException(status_code=500, detail="Failed to update product")


@app.delete("/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(*CATALOG_EDITORS)),
):
    db_product = _get_visible_product(db, product_id, current_user)
    try:
        crud.delete_product(db, db_product, user_id=current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to delete product {product_id}")
        raise HTTPException(status_code=500, detail="Failed to delete product")
    return None


@app.get("/stock", response_model=List[schemas.StockItem])
def list_stock(
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    low_stock: bool = False,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    return stock.list_stock_items(
        db,
        merchant_id=auth.merchant_scope(current_user),
        product_id=product_id,
        warehouse_id=warehouse_id,
        low_stock=low_stock,
        skip=max(skip, 0),
        limit=min(max(limit, 1), MAX_PAGE_SIZE),
    )


@app.get("/stock/{stock_item_id}/movements", response_model=List[schemas.StockMovement])
def list_stock_movements(
    stock_item_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    stock_item = db.get(models.StockItem, stock_item_id)
    if stock_item is None:
        raise NotFound("Stock item not found")
    _get_visible_product(db, stock_item.product_id, current_user)
    return stock.get_stock_movements(db, stock_item_id)


@app.post("/stock/adjustments", response_model=schemas.StockItem, status_code=status.HTTP_201_CREATED)
def adjust_stock(
    adjustment: schemas.StockAdjustment,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(Role.SJFS_ADMIN, Role.WAREHOUSE_STAFF)),
):
    try:
        return crud.adjust_stock(db, adjustment, user_id=current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to adjust stock for product {adjustment.product_id}")
        raise HTTPException(status_code=500, detail="Failed to adjust stock")


# ---------------------------------------------------------------------------
# Warehouses
# ---------------------------------------------------------------------------


@app.post("/warehouses", response_model=schemas.Warehouse, status_code=status.HTTP_201_CREATED)
def create_warehouse(
    warehouse: schemas.WarehouseCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_roles(Role.SJFS_ADMIN)),
):
    try:
        return crud.create_warehouse(db, warehouse, user_id=current_user.id)
    except SQLAlchemyError:
        logger.exception(f"Failed to create warehouse {warehouse.name}")
        raise HTTPException(status_code=500, detail="Failed to create warehouse")


@app.get("/warehouses", response_model=List[schemas.Warehouse])
def list_warehouses(
    city: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    List warehouses. Merchant roles see active warehouses only, without the
    address unless the warehouse is marked merchant-visible.
    """
    if not current_user.is_merchant:
        return crud.get_warehouses(db, city=city)

    result = []
    for warehouse in crud.get_warehouses(db, active_only=True, city=city):
        item = schemas.Warehouse.model_validate(warehouse)
        if not warehouse.merchant_visible:
            item = item.model_copy(update={"address": None})
        result.append(item)
    return result
