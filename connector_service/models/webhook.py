"""Webhook event models."""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field

from connector_service.utils.clock import utcnow


class WebhookEvent(BaseModel):
    """Provider payload normalized into one internal event."""
    event_id: str
    integration_id: str
    event_type: str
    object_id: Optional[str] = None
    tenant_id: Optional[str] = None
    subscription_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class WebhookAck(BaseModel):
    """Acknowledgement returned to the provider."""
    integration_id: str
    received: int = 0
    processed: int = 0
    dropped: int = 0
    failed: int = 0
    challenge: Optional[str] = None
