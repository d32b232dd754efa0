"""
HTTP client for the transactional e-mail service.

Sends order confirmations to customers and new-order notices to merchants.
With no ``EMAIL_SERVICE_URL`` configured, messages are logged and skipped.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from .. import config

logger = logging.getLogger(__name__)

TIMEOUT = 5.0  # seconds


async def send_email(to: str, subject: str, template: str, context: Dict[str, Any]) -> bool:
    """
    Post one message to the e-mail service.

    Args:
        to: Recipient address
        subject: Subject line
        template: Template name known to the e-mail service
        context: Template variables

    Returns:
        True if the e-mail service accepted the message, False if skipped

    Raises:
        httpx.HTTPError: If there's a network error or the service rejects the message
    """
    if not config.EMAIL_SERVICE_URL:
        logger.info(f"EMAIL_SERVICE_URL not set, skipping '{template}' e-mail to {to}")
        return False

    message = {
        "from": config.EMAIL_FROM,
        "to": to,
        "subject": subject,
        "template": template,
        "context": context,
    }
    async with httpx.AsyncClient(timeout=TIMEOUT) as client:
        response = await client.post(f"{config.EMAIL_SERVICE_URL}/send", json=message)
        response.raise_for_status()
    return True


async def send_order_confirmation_email(order: Dict[str, Any]) -> bool:
    """
    E-mail the customer that their order was received.

    Orders without a customer e-mail are skipped.
    """
    if not order.get("customer_email"):
        return False
    return await send_email(
        order["customer_email"],
        f"Order Confirmation - {order['order_number']}",
        "order_confirmation",
        order,
    )


async def send_merchant_order_notification_email(
    to: Optional[str],
    merchant_name: str,
    order: Dict[str, Any],
) -> bool:
    if not to:
        return False
    return await send_email(
        to,
        f"New Order Received - {order['order_number']}",
        "merchant_new_order",
        {"merchant_name": merchant_name, **order},
    )
