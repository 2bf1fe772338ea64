"""OAuth state and token models."""

from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field

from connector_service.models.connection import Credentials
from connector_service.utils.clock import utcnow


class OAuthState(BaseModel):
    """CSRF-binding state round-tripped through the provider redirect."""
    tenant_id: str
    timestamp: int  # epoch milliseconds
    nonce: str


class TokenSet(BaseModel):
    """Normalized token response from any provider."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in_seconds: Optional[int] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None
    provider_extras: Dict[str, Any] = Field(default_factory=dict)

    # Tenant recovered from the state during code exchange
    tenant_id: Optional[str] = None

    @classmethod
    def from_token_response(cls, data: Dict[str, Any], **extras: Any) -> "TokenSet":
        """Build from a standard RFC 6749 token response body."""
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in_seconds=int(expires_in) if expires_in is not None else None,
            token_type=(data.get("token_type") or "Bearer").capitalize(),
            scope=data.get("scope"),
            provider_extras={k: v for k, v in extras.items() if v is not None},
        )

    def to_credentials(self, previous: Optional[Credentials] = None, now: Optional[datetime] = None) -> Credentials:
        """Merge into a credential record, keeping a non-rotated refresh token and prior extras."""
        now = now or utcnow()
        extras = dict(previous.extras) if previous else {}
        extras.update(self.provider_extras)
        return Credentials(
            access_token=self.access_token,
            refresh_token=self.refresh_token or (previous.refresh_token if previous else None),
            token_type=self.token_type,
            expires_at=now + timedelta(seconds=self.expires_in_seconds) if self.expires_in_seconds else None,
            scope=self.scope or (previous.scope if previous else None),
            extras=extras,
        )
