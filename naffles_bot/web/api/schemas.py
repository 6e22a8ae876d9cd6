"""Request and response models for the sync API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    detail: str
    type: str
    timestamp: datetime


class WebhookEvent(BaseModel):
    """One Platform webhook delivery."""

    model_config = ConfigDict(populate_by_name=True)

    event_type: str = Field(alias="eventType")
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        """Event data with the envelope timestamp filled in when the data has none."""
        data = dict(self.data)
        if self.timestamp and not (data.get("timestamp") or data.get("updatedAt")):
            data["timestamp"] = self.timestamp
        return data


class WebhookBatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_id: Optional[str] = Field(default=None, alias="batchId")
    events: list[WebhookEvent]


class WebhookAck(BaseModel):
    success: bool = True
    event_type: str
    messages_updated: int = 0
    stale: int = 0


class BatchAck(BaseModel):
    success: bool = True
    batch_id: Optional[str] = None
    processed: int
    failed: int
    results: list[dict[str, Any]]


class OAuthStatus(BaseModel):
    user_id: str
    linked: bool
    platform_user_id: Optional[str] = None
    linked_at: Optional[datetime] = None
