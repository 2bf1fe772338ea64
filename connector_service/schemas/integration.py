"""Integration API schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from connector_service.models import ConnectionStatus, ConnectionStatusEntry, SyncOutcome, SyncResult


class IntegrationStatusResponse(BaseModel):
    """Status of every integration a tenant has touched."""
    tenant_id: str
    integrations: Dict[str, ConnectionStatusEntry]


class OAuthInitResponse(BaseModel):
    """OAuth initialization response."""
    authorization_url: str


class ConnectionTestResponse(BaseModel):
    """Connection test response."""
    integration_id: str
    is_connected: bool
    message: str
    tested_at: datetime


class DisconnectResponse(BaseModel):
    integration_id: str
    disconnected: bool


class SyncRunResponse(BaseModel):
    """Outcome of one sync task."""
    tenant_id: str
    integration_id: str
    outcome: SyncOutcome
    started_at: datetime
    finished_at: Optional[datetime] = None
    result: Optional[SyncResult] = None
    error: Optional[str] = None


class SyncRunRequest(BaseModel):
    """Manual tick; without an integration id every connection of the tenant is synced."""
    integration_id: Optional[str] = None
    wait: bool = False


class SyncTickResponse(BaseModel):
    dispatched: int
    runs: List[SyncRunResponse] = Field(default_factory=list)


class SchedulerControlResponse(BaseModel):
    running: bool
    changed: bool


class SchedulerStatusResponse(BaseModel):
    running: bool
    interval_seconds: int
    max_concurrency: int
    last_tick_at: Optional[datetime] = None
    in_flight: List[str] = Field(default_factory=list)
    recent_runs: List[Dict[str, Any]] = Field(default_factory=list)


class SubscriptionRequest(BaseModel):
    """Map a provider-side subscription (portal, list, channel...) to the tenant."""
    subscription_id: str = Field(..., min_length=1)


class SubscriptionResponse(BaseModel):
    integration_id: str
    subscription_id: str
    tenant_id: str



class CredentialConnectRequest(BaseModel):
    """Credentials for providers connected without OAuth (WhatsApp, Shopify custom apps)."""
    credentials: Dict[str, Any]


class ConnectResponse(BaseModel):
    integration_id: str
    status: ConnectionStatus
    connected_at: Optional[datetime] = None
