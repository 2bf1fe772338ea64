"""Data models for the connector service."""

from .connection import (
    CalendarSync,
    ConnectionRef,
    ConnectionStatus,
    ConnectionStatusEntry,
    Credentials,
    IntegrationConnection,
    calendar_integration_key,
)
from .oauth import OAuthState, TokenSet
from .sync import SyncOutcome, SyncResult, SyncRun
from .webhook import WebhookAck, WebhookEvent

__all__ = [
    "CalendarSync",
    "ConnectionRef",
    "ConnectionStatus",
    "ConnectionStatusEntry",
    "Credentials",
    "IntegrationConnection",
    "calendar_integration_key",
    "OAuthState",
    "TokenSet",
    "SyncOutcome",
    "SyncResult",
    "SyncRun",
    "WebhookAck",
    "WebhookEvent",
]
