"""
External (API-key) surface of the Fulfillment service.

Merchant integrations create and read their own orders here. Order creation
goes through the same ``crud.create_order`` as the dashboard route. Every call
that passes key authentication is recorded in ``api_request_logs``.

Endpoints:
    GET /external/orders: List the merchant's orders (orders:read)
    GET /external/orders/{order_id}: Get one of the merchant's orders (orders:read)
    POST /external/orders: Create an order (orders:write)
"""
import logging
import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import auth, config, crud, models, notifications, schemas
from .database import get_db
from .exceptions import FulfillmentError, NotFound, PermissionDenied, ValidationFailed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/external", tags=["external"])


def _record(
    db: Session,
    request: Request,
    api_key: auth.ApiKeyContext,
    started: float,
    status_code: int,
    request_body=None,
    response_body=None,
    error: Optional[str] = None,
) -> None:
    crud.record_api_request(
        db,
        api_key_id=api_key.api_key_id,
        endpoint=request.url.path,
        method=request.method,
        status_code=status_code,
        response_time_ms=int((time.perf_counter() - started) * 1000),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        request_body=request_body,
        response_body=response_body,
        error=error,
    )


def _require(api_key: auth.ApiKeyContext, permission: str) -> None:
    if not auth.has_api_permission(api_key.permissions, permission):
        raise PermissionDenied(f"API key lacks the {permission} permission")


@router.get("/orders", response_model=schemas.OrderPage)
def list_external_orders(
    request: Request,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    payment_method: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    api_key: auth.ApiKeyContext = Depends(auth.get_api_key),
):
    """
    List the key's merchant orders, newest first.

    ``limit`` is capped at EXTERNAL_MAX_PAGE_SIZE.
    """
    started = time.perf_counter()
    page = max(page, 1)
    limit = min(max(limit, 1), config.EXTERNAL_MAX_PAGE_SIZE)
    try:
        _require(api_key, "orders:read")
        orders, total = crud.get_orders(
            db,
            merchant_id=api_key.merchant_id,
            status=status,
            payment_method=payment_method,
            date_from=start_date,
            date_to=end_date,
            page=page,
            limit=limit,
        )
    except FulfillmentError as e:
        _record(db, request, api_key, started, e.status_code, error=e.detail)
        raise
    except SQLAlchemyError as e:
        logger.exception("Failed to list external orders")
        db.rollback()
        _record(db, request, api_key, started, 500, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to retrieve orders")

    body = schemas.OrderPage(
        orders=[schemas.Order.model_validate(order) for order in orders],
        pagination=crud.pagination(page, limit, total),
    ).model_dump(mode="json")
    _record(db, request, api_key, started, 200, response_body=body)
    return body


@router.get("/orders/{order_id}", response_model=schemas.Order)
def get_external_order(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    api_key: auth.ApiKeyContext = Depends(auth.get_api_key),
):
    started = time.perf_counter()
    try:
        _require(api_key, "orders:read")
        db_order = crud.get_order(db, order_id)
        if db_order is None or db_order.merchant_id != api_key.merchant_id:
            raise NotFound("Order not found")
    except FulfillmentError as e:
        _record(db, request, api_key, started, e.status_code, error=e.detail)
        raise
    except SQLAlchemyError as e:
        logger.exception(f"Failed to retrieve external order {order_id}")
        db.rollback()
        _record(db, request, api_key, started, 500, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to retrieve order")

    body = schemas.Order.model_validate(db_order).model_dump(mode="json")
    _record(db, request, api_key, started, 200, response_body=body)
    return body


@router.post("/orders", response_model=schemas.Order, status_code=201)
async def create_external_order(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    api_key: auth.ApiKeyContext = Depends(auth.get_api_key),
):
    """
    Create an order for the key's merchant.

    The body is parsed here rather than by FastAPI so that malformed payloads
    are recorded in the request log too.

    Raises:
        HTTPException: 400 on validation or stock errors, 403 without orders:write,
            500 if the order could not be stored
    """
    started = time.perf_counter()
    payload = None
    try:
        _require(api_key, "orders:write")
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationFailed("Request body must be valid UTF-8 JSON")
        order = schemas.ExternalOrderCreate.model_validate(payload)
        db_order = crud.create_order(
            db,
            order,
            merchant_id=api_key.merchant_id,
            api_key_id=api_key.api_key_id,
            source=models.OrderSource.EXTERNAL,
        )
    except FulfillmentError as e:
        _record(db, request, api_key, started, e.status_code, payload, error=e.detail)
        raise
    except ValidationError as e:
        _record(db, request, api_key, started, 400, payload, error=str(e))
        raise RequestValidationError(e.errors())
    except SQLAlchemyError:
        logger.exception("Failed to create external order")
        _record(db, request, api_key, started, 500, payload, error="Failed to create order")
        raise HTTPException(status_code=500, detail="Failed to create order")

    body = schemas.Order.model_validate(db_order).model_dump(mode="json")
    _record(db, request, api_key, started, 201, payload, response_body=body)
    background_tasks.add_task(notifications.dispatch_order_created, db_order.id)
    return body
