"""Webhook registration and wire-payload schemas."""

from typing import Any

from pydantic import BaseModel, Field

from cadence.core.config import settings
from cadence.models.webhook import WebhookEvent


class WebhookCreate(BaseModel):
    url: str = Field(max_length=2048, pattern=r"^https?://")
    events: list[WebhookEvent] = Field(min_length=1)
    secret: str | None = Field(default=None, min_length=16, max_length=255)
    description: str | None = Field(default=None, max_length=500)
    retry_count: int = Field(default=settings.WEBHOOK_DEFAULT_RETRY_COUNT, ge=0, le=10)
    timeout_seconds: int = Field(default=settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS, ge=1, le=120)
    headers: dict[str, str] | None = None


class WebhookUpdate(BaseModel):
    url: str | None = Field(default=None, max_length=2048, pattern=r"^https?://")
    events: list[WebhookEvent] | None = Field(default=None, min_length=1)
    description: str | None = Field(default=None, max_length=500)
    is_active: bool | None = None
    retry_count: int | None = Field(default=None, ge=0, le=10)
    timeout_seconds: int | None = Field(default=None, ge=1, le=120)
    headers: dict[str, str] | None = None


class WebhookEnvelope(BaseModel):
    """JSON body POSTed to receivers."""

    id: str
    event: WebhookEvent
    created: int
    data: dict[str, Any]
