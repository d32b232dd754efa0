"""
Return and refund requests.

Both aggregates share one status machine (PENDING -> APPROVED/REJECTED ->
PROCESSED). Refunds additionally carry the amount asked for and need an
approved amount before they can be approved.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple, Type, Union

from sqlalchemy.orm import Session

from . import crud, models, schemas, validators
from .exceptions import Conflict, InvalidTransition, NotFound, PermissionDenied, ValidationFailed

logger = logging.getLogger(__name__)

AnyRequest = Union[models.ReturnRequest, models.RefundRequest]


def _get_scoped_order(db: Session, order_id: int, merchant_id: Optional[int]) -> models.Order:
    order = crud.get_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    if merchant_id is not None and order.merchant_id != merchant_id:
        raise PermissionDenied("Not authorized to access this order")
    return order


def _get_request(db: Session, model: Type[AnyRequest], request_id: int, merchant_id: Optional[int]) -> AnyRequest:
    request = db.query(model).filter(model.id == request_id).first()
    if request is None:
        raise NotFound("Request not found")
    if merchant_id is not None and request.order.merchant_id != merchant_id:
        raise PermissionDenied("Not authorized to access this request")
    return request


def _list_requests(
    db: Session,
    model: Type[AnyRequest],
    merchant_id: Optional[int],
    status: Optional[str],
    page: int,
    limit: int,
) -> Tuple[List[AnyRequest], int]:
    query = db.query(model)
    if merchant_id is not None:
        query = query.join(models.Order, model.order_id == models.Order.id).filter(
            models.Order.merchant_id == merchant_id
        )
    if status:
        query = query.filter(model.status == status)
    total = query.count()
    rows = query.order_by(model.created_at.desc(), model.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return rows, total


def get_return_request(db: Session, request_id: int, merchant_id: Optional[int] = None) -> models.ReturnRequest:
    return _get_request(db, models.ReturnRequest, request_id, merchant_id)


def get_refund_request(db: Session, request_id: int, merchant_id: Optional[int] = None) -> models.RefundRequest:
    return _get_request(db, models.RefundRequest, request_id, merchant_id)


def list_return_requests(
    db: Session,
    merchant_id: Optional[int] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[models.ReturnRequest], int]:
    return _list_requests(db, models.ReturnRequest, merchant_id, status, page, limit)


def list_refund_requests(
    db: Session,
    merchant_id: Optional[int] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[models.RefundRequest], int]:
    return _list_requests(db, models.RefundRequest, merchant_id, status, page, limit)


def create_return_request(
    db: Session,
    data: schemas.ReturnCreate,
    user_id: int,
    merchant_id: Optional[int] = None,
) -> models.ReturnRequest:
    """
    Open a return for an order. An order can have at most one return.

    Args:
        db: Database session
        data: Return payload
        user_id: Requesting user
        merchant_id: Merchant scope of the caller, None for platform roles

    Raises:
        NotFound: Order does not exist
        PermissionDenied: Order belongs to another merchant
        ValidationFailed: A return already exists for the order
    """
    order = _get_scoped_order(db, data.order_id, merchant_id)

    existing = db.query(models.ReturnRequest).filter(models.ReturnRequest.order_id == order.id).first()
    if existing:
        raise ValidationFailed("Return request already exists for this order")

    try:
        request = models.ReturnRequest(
            order_id=order.id,
            requested_by=user_id,
            reason=data.reason,
            description=data.description,
            status=models.RequestStatus.PENDING.value,
        )
        db.add(request)
        db.flush()
        crud.write_audit_log(
            db, "CREATE_RETURN_REQUEST", "return_requests", request.id,
            new_values=data.model_dump(mode="json"), user_id=user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    logger.info(f"Return request {request.id} opened for order {order.order_number}")
    return request


def create_refund_request(
    db: Session,
    data: schemas.RefundCreate,
    user_id: int,
    merchant_id: Optional[int] = None,
) -> models.RefundRequest:
    """
    Open a refund for an order. Only one refund per order may be pending.

    Raises:
        NotFound: Order does not exist
        PermissionDenied: Order belongs to another merchant
        Conflict: A pending refund already exists for the order
    """
    order = _get_scoped_order(db, data.order_id, merchant_id)

    pending = (
        db.query(models.RefundRequest)
        .filter(
            models.RefundRequest.order_id == order.id,
            models.RefundRequest.status == models.RequestStatus.PENDING.value,
        )
        .first()
    )
    if pending:
        raise Conflict("A pending refund request already exists for this order")

    try:
        request = models.RefundRequest(
            order_id=order.id,
            requested_by=user_id,
            reason=data.reason,
            description=data.description,
            requested_amount=data.requested_amount,
            status=models.RequestStatus.PENDING.value,
        )
        db.add(request)
        db.flush()
        crud.write_audit_log(
            db, "CREATE_REFUND_REQUEST", "refund_requests", request.id,
            new_values=data.model_dump(mode="json"), user_id=user_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    logger.info(f"Refund request {request.id} opened for order {order.order_number}")
    return request


def _decide(
    db: Session,
    request: AnyRequest,
    decision: schemas.RequestDecision,
    user_id: int,
    entity_type: str,
    require_amount: bool,
) -> str:
    old_status = request.status
    is_valid, error_message = validators.validate_request_transition(
        old_status,
        decision.status.value,
        approved_amount=decision.approved_amount,
        rejection_reason=decision.rejection_reason,
        require_amount=require_amount,
    )
    if not is_valid:
        raise InvalidTransition(error_message)

    request.status = decision.status.value
    if decision.status == models.RequestStatus.APPROVED:
        if decision.approved_amount is not None:
            request.approved_amount = decision.approved_amount
        request.rejection_reason = None
    elif decision.status == models.RequestStatus.REJECTED:
        request.rejection_reason = decision.rejection_reason
        request.approved_amount = None
    request.processed_by = user_id
    request.processed_at = datetime.utcnow()

    crud.write_audit_log(
        db,
        f"UPDATE_{entity_type.upper()[:-1]}",
        entity_type,
        request.id,
        old_values={"status": old_status},
        new_values=decision.model_dump(mode="json"),
        user_id=user_id,
    )
    return old_status


def decide_return_request(
    db: Session,
    request: models.ReturnRequest,
    decision: schemas.RequestDecision,
    user_id: int,
) -> models.ReturnRequest:
    """
    Move a return through its status machine.

    A return reaching PROCESSED moves a delivered order to RETURNED in the
    same transaction.
    """
    try:
        _decide(db, request, decision, user_id, "return_requests", require_amount=False)

        order = request.order
        if (
            decision.status == models.RequestStatus.PROCESSED
            and order.status == models.OrderStatus.DELIVERED.value
        ):
            crud.apply_order_status(
                db,
                order,
                models.OrderStatus.RETURNED,
                notes=f"Return request {request.id} processed",
                user_id=user_id,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    logger.info(f"Return request {request.id} moved to {request.status}")
    return request


def decide_refund_request(
    db: Session,
    request: models.RefundRequest,
    decision: schemas.RequestDecision,
    user_id: int,
) -> models.RefundRequest:
    try:
        _decide(db, request, decision, user_id, "refund_requests", require_amount=True)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(request)
    logger.info(f"Refund request {request.id} moved to {request.status}")
    return request


def cancel_request(db: Session, request: AnyRequest, user_id: int) -> None:
    """
    Withdraw a request. Only the requester may do so, and only while PENDING.

    Raises:
        PermissionDenied: Caller did not open the request
        InvalidTransition: Request has already been decided
    """
    if request.requested_by != user_id:
        raise PermissionDenied("Only the requester can cancel this request")
    if request.status != models.RequestStatus.PENDING.value:
        raise InvalidTransition("Only pending requests can be cancelled")

    try:
        entity_type = request.__tablename__
        crud.write_audit_log(
            db, f"CANCEL_{entity_type.upper()[:-1]}", entity_type, request.id, user_id=user_id,
        )
        db.delete(request)
        db.commit()
    except Exception:
        db.rollback()
        raise
