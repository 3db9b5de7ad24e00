"""Webhook notifications for bulk upload outcomes."""
import asyncio
import logging
import time
from typing import Any, Dict

import httpx
from sqlalchemy.orm import Session

from marketplace.models.upload_batch import UploadBatch
from marketplace.models.webhook import Webhook

logger = logging.getLogger(__name__)

BULK_UPLOAD_COMPLETED = "bulk_upload.completed"
BULK_UPLOAD_FAILED = "bulk_upload.failed"

# Supported webhook event types
NOTIFICATION_EVENTS = [BULK_UPLOAD_COMPLETED, BULK_UPLOAD_FAILED]

WEBHOOK_TIMEOUT = 5.0


def upload_summary(batch: UploadBatch) -> Dict[str, Any]:
    """Payload describing a finished batch."""
    return {
        "batch_id": batch.id,
        "shop_id": batch.shop_id,
        "status": batch.status,
        "total_rows": batch.total_rows,
        "successful": batch.successful,
        "skipped": batch.skipped_rows,
        "failed": batch.failed,
    }


def subscribed_urls(db: Session, event_type: str) -> list[str]:
    webhooks = (
        db.query(Webhook)
        .filter(Webhook.event_type == event_type, Webhook.enabled.is_(True))
        .order_by(Webhook.id)
        .all()
    )
    return [webhook.url for webhook in webhooks]


async def notify(urls: list[str], event_type: str, payload: Dict[str, Any]) -> None:
    """
    Send ``payload`` to every subscriber. Fire-and-forget: delivery errors
    are logged and never raised.

    Args:
        urls: Subscriber URLs, resolved before the request session closes
        event_type: Event name, sent as ``event`` in the body
        payload: Event data
    """
    if not urls:
        return

    body = {"event": event_type, "data": payload}
    async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
        await asyncio.gather(
            *(_send_webhook(client, url, body) for url in urls), return_exceptions=True
        )
    logger.info(f"📣 Sent {event_type} to {len(urls)} webhook(s)")


async def _send_webhook(client: httpx.AsyncClient, url: str, body: Dict[str, Any]) -> None:
    try:
        response = await client.post(url, json=body)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"⚠️ Failed to send webhook to {url}: {e}")


async def send_test_webhook(url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Send a sample payload to a webhook URL and measure the response.

    Returns:
        Dict with success flag, status code or error, and response time
    """
    start_time = time.time()

    try:
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
            response = await client.post(url, json=payload)
        return {
            "success": response.is_success,
            "status_code": response.status_code,
            "response_time": round(time.time() - start_time, 3),
        }
    except httpx.TimeoutException:
        return {
            "success": False,
            "error": f"Request timeout (> {WEBHOOK_TIMEOUT:.0f} seconds)",
            "response_time": WEBHOOK_TIMEOUT,
        }
    except httpx.HTTPError as e:
        return {
            "success": False,
            "error": str(e),
            "response_time": round(time.time() - start_time, 3),
        }
