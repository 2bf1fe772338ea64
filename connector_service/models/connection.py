"""Connection models."""

from datetime import datetime, timedelta
from typing import Optional, Dict, Any, NamedTuple
from pydantic import BaseModel, Field
from enum import Enum

from connector_service.utils.clock import utcnow


class ConnectionStatus(str, Enum):
    """Integration connection status."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# Calendar providers are stored in their own table and surfaced under a
# display key. Unknown providers fall back to "<provider>-calendar".
CALENDAR_DISPLAY_KEYS: Dict[str, str] = {
    "google": "google-calendar",
    "outlook": "outlook-calendar",
}


def calendar_integration_key(provider: str) -> str:
    """Map a CalendarSync provider to its integration display key."""
    return CALENDAR_DISPLAY_KEYS.get(provider, f"{provider}-calendar")


class Credentials(BaseModel):
    """OAuth credential record with an open map for provider extras."""
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    extras: Dict[str, Any] = Field(default_factory=dict)

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """True if the token is expired or will expire within ``seconds``."""
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return self.expires_at - timedelta(seconds=seconds) <= now

    @property
    def is_refreshable(self) -> bool:
        return bool(self.refresh_token)


class IntegrationConnection(BaseModel):
    """One persisted connection per (tenant_id, integration_id)."""
    tenant_id: str
    integration_id: str
    credentials: Optional[Credentials] = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    connected_at: Optional[datetime] = None
    last_sync: Optional[datetime] = None

    # Bookkeeping
    consecutive_failures: int = 0
    generation: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> "ConnectionRef":
        return ConnectionRef(self.tenant_id, self.integration_id)


class CalendarSync(BaseModel):
    """Calendar provider connection (bidirectional sync)."""

    tenant_id: str
    provider: str
    sync_enabled: bool = True
    credentials: Optional[Credentials] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    consecutive_failures: int = 0
    generation: int = 0
    last_error: Optional[str] = None
    # Set when the provider rejected the refresh token; cleared on reconnect
    needs_reauth: bool = False

    @property
    def integration_id(self) -> str:
        return calendar_integration_key(self.provider)

    @property
    def status(self) -> ConnectionStatus:
        if not self.sync_enabled:
            return ConnectionStatus.DISCONNECTED
        if self.needs_reauth:
            return ConnectionStatus.ERROR
        return ConnectionStatus.CONNECTED

    def as_connection(self) -> IntegrationConnection:
        """Project the calendar row onto the connection shape used by providers."""
        return IntegrationConnection(
            tenant_id=self.tenant_id,
            integration_id=self.integration_id,
            credentials=self.credentials,
            status=self.status,
            connected_at=self.created_at,
            last_sync=self.last_synced_at,
            consecutive_failures=self.consecutive_failures,
            generation=self.generation,
            last_error=self.last_error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class ConnectionRef(NamedTuple):
    """Hashable (tenant_id, integration_id) pair."""
    tenant_id: str
    integration_id: str

    def __str__(self) -> str:
        return f"{self.tenant_id}/{self.integration_id}"


class ConnectionStatusEntry(BaseModel):
    """Read-side status projection for one integration."""
    status: ConnectionStatus
    last_sync: Optional[datetime] = None
    connected_at: Optional[datetime] = None
