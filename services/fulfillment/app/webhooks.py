"""
Webhook system for sending order event notifications.

Subscribers listed in ``WEBHOOK_URLS`` receive a JSON POST per event. When a
``WEBHOOK_SECRET`` is configured each body is signed with HMAC-SHA256 and the
hex digest is sent in the ``X-Webhook-Signature`` header.
"""
import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any, Dict

import httpx

from . import config

logger = logging.getLogger(__name__)

TIMEOUT = 5.0  # seconds


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def send_webhook(event_type: str, data: Dict[str, Any]) -> None:
    """
    Send webhook notifications to all registered URLs.

    Args:
        event_type: Type of event (e.g., "order.created", "order.status_changed")
        data: Event data payload
    """
    if not config.WEBHOOK_URLS:
        return

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }
    body = json.dumps(payload, default=str).encode()
    headers = {"Content-Type": "application/json"}
    if config.WEBHOOK_SECRET:
        headers["X-Webhook-Signature"] = sign_payload(body, config.WEBHOOK_SECRET)

    async with httpx.AsyncClient(timeout=TIMEOUT) as client:
        tasks = [send_single_webhook(client, url, body, headers) for url in config.WEBHOOK_URLS]
        # Send all webhooks concurrently
        await asyncio.gather(*tasks, return_exceptions=True)


async def send_single_webhook(client: httpx.AsyncClient, url: str, body: bytes, headers: Dict[str, str]) -> bool:
    """
    Send a webhook to a single URL.

    Returns:
        True if the subscriber accepted it
    """
    try:
        response = await client.post(url, content=body, headers=headers)
    except httpx.HTTPError as e:
        logger.warning(f"Webhook error for {url}: {e}")
        return False

    if response.status_code >= 400:
        logger.warning(f"Webhook failed for {url}: HTTP {response.status_code}")
        return False
    return True


async def notify_order_created(order_data: Dict[str, Any]) -> None:
    await send_webhook("order.created", order_data)


async def notify_order_status_changed(order_id: int, order_number: str, old_status: str, new_status: str) -> None:
    """
    Notify that an order status changed.

    Args:
        order_id: Order ID
        order_number: Public order number
        old_status: Previous status
        new_status: New status
    """
    data = {
        "order_id": order_id,
        "order_number": order_number,
        "old_status": old_status,
        "new_status": new_status,
    }
    await send_webhook("order.status_changed", data)
