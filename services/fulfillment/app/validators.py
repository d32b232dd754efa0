"""
Business-rule validation for the Fulfillment service.

Provides checks that go beyond schema validation: line-item limits, order
totals and the status machines for orders and for return/refund requests.
"""
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from . import schemas
from .models import OrderStatus, RequestStatus

MAX_ORDER_LINES = 100
MAX_LINE_QUANTITY = 10000
MAX_UNIT_PRICE = Decimal("1000000")

# Canonical happy path, in fulfillment order
ORDER_FLOW = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PICKED,
    OrderStatus.PACKED,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]

# Statuses in which reserved stock has left the warehouse
SHIPPED_STATUSES = {OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED}


def _build_order_transitions():
    transitions = {}
    for index, current in enumerate(ORDER_FLOW):
        allowed = set(ORDER_FLOW[index + 1:])
        if current not in SHIPPED_STATUSES:
            allowed.add(OrderStatus.CANCELLED)
        else:
            allowed.add(OrderStatus.RETURNED)
        transitions[current] = allowed
    transitions[OrderStatus.CANCELLED] = set()
    transitions[OrderStatus.RETURNED] = set()
    return transitions


ORDER_TRANSITIONS = _build_order_transitions()

REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: {RequestStatus.PROCESSED},
    RequestStatus.REJECTED: set(),
    RequestStatus.PROCESSED: set(),
}


def validate_order_items(items: List[schemas.OrderItemCreate]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "At least one item is required"

    if len(items) > MAX_ORDER_LINES:
        return False, f"Order cannot contain more than {MAX_ORDER_LINES} items"

    for item in items:
        if item.quantity <= 0:
            return False, f"Product {item.product_id}: quantity must be positive"

        if item.quantity > MAX_LINE_QUANTITY:
            return False, f"Product {item.product_id}: quantity exceeds maximum ({MAX_LINE_QUANTITY})"

        if item.unit_price <= 0:
            return False, f"Product {item.product_id}: unit price must be positive"

        if item.unit_price > MAX_UNIT_PRICE:
            return False, f"Product {item.product_id}: unit price exceeds maximum (1,000,000)"

    return True, ""


def calculate_order_totals(items: Iterable[schemas.OrderItemCreate], delivery_fee: Decimal) -> Tuple[Decimal, Decimal]:
    """
    Compute the items total and the amount charged for an order.

    Args:
        items: Order lines with quantity and unit price
        delivery_fee: Fee added on top of the items

    Returns:
        Tuple of (order_value, total_amount)
    """
    order_value = sum(
        (Decimal(str(item.unit_price)) * item.quantity for item in items),
        Decimal("0"),
    )
    return order_value, order_value + Decimal(str(delivery_fee))


def summarize_demand(items: Iterable[schemas.OrderItemCreate]) -> dict:
    """Total requested quantity per product id."""
    demand = {}
    for item in items:
        demand[item.product_id] = demand.get(item.product_id, 0) + item.quantity
    return demand


def next_order_statuses(current_status: str) -> List[str]:
    """Statuses a caller may move an order to, in display order."""
    allowed = ORDER_TRANSITIONS.get(OrderStatus(current_status), set())
    return [status.value for status in OrderStatus if status in allowed]


def validate_order_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        old = OrderStatus(old_status)
    except ValueError:
        return False, f"Unknown status: {old_status}"
    try:
        new = OrderStatus(new_status)
    except ValueError:
        return False, f"Unknown status: {new_status}"

    if old == new:
        return True, ""  # Re-submitting the current status only adds a note

    if new not in ORDER_TRANSITIONS[old]:
        return False, f"Invalid status transition: {old.value} -> {new.value}"

    return True, ""


def validate_request_transition(
    old_status: str,
    new_status: str,
    approved_amount: Optional[Decimal] = None,
    rejection_reason: Optional[str] = None,
    require_amount: bool = False,
) -> Tuple[bool, str]:
    """
    Validate a return or refund request transition and its required fields.

    Args:
        old_status: Current request status
        new_status: Requested status
        approved_amount: Amount supplied with an approval
        rejection_reason: Reason supplied with a rejection
        require_amount: Whether approval needs an amount (refunds do, returns don't)

    Returns:
        Tuple of (is_valid, error_message)
    """
    old = RequestStatus(old_status)
    new = RequestStatus(new_status)

    if new not in REQUEST_TRANSITIONS[old]:
        if not REQUEST_TRANSITIONS[old]:
            return False, f"Request is already {old.value.lower()}"
        return False, f"Invalid status transition: {old.value} -> {new.value}"

    if new == RequestStatus.APPROVED and require_amount and approved_amount is None:
        return False, "Approved amount is required when approving"

    if new == RequestStatus.REJECTED and not rejection_reason:
        return False, "Rejection reason is required when rejecting"

    return True, ""
