"""
Domain errors raised by the Fulfillment service.

Each error carries the HTTP status it maps to; main.py registers a single
handler that turns them into ``{"detail": ...}`` responses.
"""


class FulfillmentError(Exception):
    """Base class for business-rule failures surfaced to API callers."""
    status_code = 400
    default_detail = "Request could not be processed"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationFailed(FulfillmentError):
    status_code = 400
    default_detail = "Invalid input data"


class InsufficientStock(FulfillmentError):
    status_code = 400
    default_detail = "Insufficient stock for some items"


class InvalidTransition(FulfillmentError):
    status_code = 400
    default_detail = "Invalid status transition"


class PermissionDenied(FulfillmentError):
    status_code = 403
    default_detail = "Forbidden"


class NotFound(FulfillmentError):
    status_code = 404
    default_detail = "Not found"


class Conflict(FulfillmentError):
    status_code = 409
    default_detail = "Conflict"


class OrderNumberUnavailable(FulfillmentError):
    status_code = 500
    default_detail = "Failed to create order"
