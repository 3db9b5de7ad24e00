"""Webhook subscription endpoints (admin only)."""
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.api.deps import get_admin_principal, standard_rate_limit
from marketplace.database import get_db
from marketplace.exceptions import NotFoundError
from marketplace.models.webhook import Webhook
from marketplace.schemas.webhook import (
    WebhookCreate,
    WebhookResponse,
    WebhookTestResponse,
    WebhookUpdate,
)
from marketplace.services.notifications import send_test_webhook

router = APIRouter(
    prefix="/api/webhooks",
    tags=["webhooks"],
    dependencies=[Depends(standard_rate_limit), Depends(get_admin_principal)],
)


def _get_webhook(db: Session, webhook_id: int) -> Webhook:
    webhook = db.get(Webhook, webhook_id)
    if not webhook:
        raise NotFoundError("Webhook not found")
    return webhook


@router.get("", response_model=List[WebhookResponse])
def list_webhooks(db: Session = Depends(get_db)):
    """List all webhook subscriptions, newest first."""
    return db.query(Webhook).order_by(Webhook.created_at.desc(), Webhook.id.desc()).all()


@router.post("", response_model=WebhookResponse, status_code=201)
def create_webhook(webhook: WebhookCreate, db: Session = Depends(get_db)):
    """Subscribe a URL to a bulk upload event."""
    db_webhook = Webhook(
        url=webhook.url, event_type=webhook.event_type, enabled=webhook.enabled
    )
    db.add(db_webhook)
    db.commit()
    db.refresh(db_webhook)
    return db_webhook


@router.get("/{webhook_id}", response_model=WebhookResponse)
def get_webhook(webhook_id: int, db: Session = Depends(get_db)):
    return _get_webhook(db, webhook_id)


@router.put("/{webhook_id}", response_model=WebhookResponse)
def update_webhook(
    webhook_id: int, webhook_update: WebhookUpdate, db: Session = Depends(get_db)
):
    """Update a webhook. Only provided fields change."""
    db_webhook = _get_webhook(db, webhook_id)
    for key, value in webhook_update.model_dump(exclude_none=True).items():
        setattr(db_webhook, key, value)
    db.commit()
    db.refresh(db_webhook)
    return db_webhook


@router.delete("/{webhook_id}", status_code=204)
def delete_webhook(webhook_id: int, db: Session = Depends(get_db)):
    db.delete(_get_webhook(db, webhook_id))
    db.commit()
    return None


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook_endpoint(webhook_id: int, db: Session = Depends(get_db)):
    """Send a sample bulk upload event to the webhook and report the response."""
    webhook = _get_webhook(db, webhook_id)
    test_payload = {
        "event": webhook.event_type,
        "test": True,
        "data": {
            "batch_id": "00000000-0000-0000-0000-000000000000",
            "shop_id": "00000000-0000-0000-0000-000000000000",
            "status": "COMMITTED",
            "total_rows": 3,
            "successful": 2,
            "skipped": 0,
            "failed": 1,
        },
    }
    result = await send_test_webhook(webhook.url, test_payload)
    return WebhookTestResponse(**result)
