"""
In-platform notifications and the post-commit dispatchers.

The ``dispatch_*`` coroutines run as background tasks once the order (or
request) has been committed. They open their own session and wrap every step
separately: a failed e-mail, webhook or notification insert is logged and the
remaining steps still run.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from . import database, models, webhooks
from .clients import email_client

logger = logging.getLogger(__name__)

# template name -> (title, message, priority)
TEMPLATES = {
    "ORDER_CREATED": (
        "New Order Received",
        "Order {order_number} for {customer_name} ({total_amount}) is awaiting processing.",
        "HIGH",
    ),
    "ORDER_UPDATED": ("Order Updated", "Order {order_number} is now {status}.", "MEDIUM"),
    "ORDER_DELIVERED": ("Order Delivered", "Order {order_number} was delivered to {customer_name}.", "MEDIUM"),
    "ORDER_CANCELLED": ("Order Cancelled", "Order {order_number} was cancelled; reserved stock was released.", "HIGH"),
    "RETURN_APPROVED": ("Return Approved", "Your return for order {order_number} was approved.", "MEDIUM"),
    "RETURN_REJECTED": ("Return Rejected", "Your return for order {order_number} was rejected: {reason}", "MEDIUM"),
    "RETURN_PROCESSED": ("Return Processed", "Your return for order {order_number} has been processed.", "LOW"),
    "REFUND_APPROVED": (
        "Refund Approved",
        "Your refund for order {order_number} was approved for {amount}.",
        "MEDIUM",
    ),
    "REFUND_REJECTED": ("Refund Rejected", "Your refund for order {order_number} was rejected: {reason}", "MEDIUM"),
    "REFUND_PROCESSED": ("Refund Processed", "Your refund for order {order_number} has been paid out.", "LOW"),
}

STATUS_TEMPLATES = {
    models.OrderStatus.DELIVERED.value: "ORDER_DELIVERED",
    models.OrderStatus.CANCELLED.value: "ORDER_CANCELLED",
}


def render(template: str, **context) -> tuple:
    title, message, priority = TEMPLATES[template]
    return title, message.format(**context), priority


def create_notification(
    db: Session,
    recipient_id: int,
    template: str,
    metadata: Optional[dict] = None,
    **context,
) -> models.Notification:
    """
    Stage a notification for one user.

    Args:
        db: Database session
        recipient_id: User to notify
        template: Key into TEMPLATES
        metadata: Extra data stored alongside the notification
        **context: Values substituted into the template
    """
    title, message, priority = render(template, **context)
    notification = models.Notification(
        recipient_id=recipient_id,
        title=title,
        message=message,
        type=template,
        priority=priority,
        extra=metadata,
    )
    db.add(notification)
    return notification


def create_role_notification(
    db: Session,
    role: models.Role,
    template: str,
    metadata: Optional[dict] = None,
    **context,
) -> models.Notification:
    """Stage a notification addressed to every holder of ``role``."""
    title, message, priority = render(template, **context)
    notification = models.Notification(
        recipient_role=models.Role(role).value,
        title=title,
        message=message,
        type=template,
        priority=priority,
        extra=metadata,
    )
    db.add(notification)
    return notification


def get_merchant_admin(db: Session, merchant_id: int) -> Optional[models.User]:
    return (
        db.query(models.User)
        .filter(
            models.User.merchant_id == merchant_id,
            models.User.role == models.Role.MERCHANT_ADMIN.value,
            models.User.is_active.is_(True),
        )
        .order_by(models.User.id)
        .first()
    )


def order_summary(order: models.Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "merchant_id": order.merchant_id,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "total_amount": str(order.total_amount),
        "payment_method": order.payment_method,
        "status": order.status,
        "source": order.source,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


def _run_step(db: Session, name: str, step: Callable[[], Any]) -> None:
    try:
        step()
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"Notification step '{name}' failed")


async def _run_async_step(name: str, step: Callable[[], Awaitable[Any]]) -> None:
    try:
        await step()
    except Exception:
        logger.exception(f"Notification step '{name}' failed")


async def dispatch_order_created(order_id: int) -> None:
    """
    Fan out the side effects of a new order.

    Args:
        order_id: Committed order to announce
    """
    db = database.SessionLocal()
    try:
        order = db.get(models.Order, order_id)
        if order is None:
            logger.warning(f"Order {order_id} vanished before its notifications were sent")
            return

        summary = order_summary(order)
        metadata = {"order_id": order.id, "order_number": order.order_number}
        merchant = order.merchant
        merchant_admin = get_merchant_admin(db, order.merchant_id)

        for role in (models.Role.WAREHOUSE_STAFF, models.Role.SJFS_ADMIN):
            _run_step(
                db,
                f"notify {role.value}",
                lambda role=role: create_role_notification(db, role, "ORDER_CREATED", metadata, **summary),
            )

        if merchant_admin is not None:
            _run_step(
                db,
                "notify merchant admin",
                lambda: create_notification(db, merchant_admin.id, "ORDER_CREATED", metadata, **summary),
            )

        await _run_async_step(
            "customer confirmation e-mail",
            lambda: email_client.send_order_confirmation_email(summary),
        )

        merchant_email = (merchant.business_email if merchant else None) or (
            merchant_admin.email if merchant_admin else None
        )
        await _run_async_step(
            "merchant order e-mail",
            lambda: email_client.send_merchant_order_notification_email(
                merchant_email, merchant.business_name if merchant else "", summary
            ),
        )

        await _run_async_step("order.created webhook", lambda: webhooks.notify_order_created(summary))
    finally:
        db.close()


async def dispatch_order_status_changed(order_id: int, old_status: str, new_status: str) -> None:
    db = database.SessionLocal()
    try:
        order = db.get(models.Order, order_id)
        if order is None:
            logger.warning(f"Order {order_id} vanished before its notifications were sent")
            return

        summary = order_summary(order)
        metadata = {"order_id": order.id, "old_status": old_status, "new_status": new_status}
        template = STATUS_TEMPLATES.get(new_status, "ORDER_UPDATED")
        merchant_admin = get_merchant_admin(db, order.merchant_id)

        _run_step(
            db,
            "notify admins",
            lambda: create_role_notification(db, models.Role.SJFS_ADMIN, template, metadata, **summary),
        )
        if merchant_admin is not None:
            _run_step(
                db,
                "notify merchant admin",
                lambda: create_notification(db, merchant_admin.id, template, metadata, **summary),
            )

        await _run_async_step(
            "order.status_changed webhook",
            lambda: webhooks.notify_order_status_changed(order.id, order.order_number, old_status, new_status),
        )
    finally:
        db.close()


async def dispatch_request_decision(kind: str, request_id: int) -> None:
    """
    Tell the requester that their return or refund was decided.

    Args:
        kind: "RETURN" or "REFUND"
        request_id: ReturnRequest or RefundRequest id
    """
    model = models.ReturnRequest if kind == "RETURN" else models.RefundRequest
    db = database.SessionLocal()
    try:
        request = db.get(model, request_id)
        if request is None or request.requested_by is None:
            return

        amount = request.approved_amount
        _run_step(
            db,
            f"notify {kind.lower()} requester",
            lambda: create_notification(
                db,
                request.requested_by,
                f"{kind}_{request.status}",
                {"request_id": request.id, "order_id": request.order_id},
                order_number=request.order.order_number,
                reason=request.rejection_reason or "",
                amount=str(amount) if amount is not None else "",
            ),
        )
    finally:
        db.close()
