"""Webhook subscription schemas."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from marketplace.services.notifications import NOTIFICATION_EVENTS


def _check_event(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in NOTIFICATION_EVENTS:
        raise ValueError(f"event_type must be one of {', '.join(NOTIFICATION_EVENTS)}")
    return value


def _check_url(value: Optional[str]) -> Optional[str]:
    if value is not None and not value.lower().startswith(("http://", "https://")):
        raise ValueError("url must start with http:// or https://")
    return value


class WebhookBase(BaseModel):
    """Base webhook schema."""

    url: str = Field(..., min_length=1, max_length=2048)
    event_type: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True

    @field_validator("event_type")
    @classmethod
    def known_event(cls, value):
        return _check_event(value)

    @field_validator("url")
    @classmethod
    def http_url(cls, value):
        return _check_url(value)


class WebhookCreate(WebhookBase):
    pass


class WebhookUpdate(BaseModel):
    """Only provided fields are updated."""

    url: Optional[str] = Field(None, min_length=1, max_length=2048)
    event_type: Optional[str] = Field(None, min_length=1, max_length=100)
    enabled: Optional[bool] = None

    @field_validator("event_type")
    @classmethod
    def known_event(cls, value):
        return _check_event(value)

    @field_validator("url")
    @classmethod
    def http_url(cls, value):
        return _check_url(value)


class WebhookResponse(BaseModel):
    id: int
    url: str
    event_type: str
    enabled: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WebhookTestResponse(BaseModel):
    """Response from webhook test."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time: Optional[float] = None
