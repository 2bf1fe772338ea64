"""Service layer."""

from .oauth_service import OAuthConnectionManager
from .status_service import ConnectionStatusAggregator
from .sync_service import SyncScheduler
from .webhook_service import WebhookRouter

__all__ = [
    "OAuthConnectionManager",
    "ConnectionStatusAggregator",
    "SyncScheduler",
    "WebhookRouter",
]
