"""API dependencies."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Dict, Any
import httpx
import logging

from connector_service.core.config import Settings, get_settings
from connector_service.core.exceptions import (
    ConfigurationError,
    IntegrationError,
    InvalidCredentials,
    InvalidPayload,
    MissingParameter,
    NotConnected,
    OAuthExchangeError,
    ProviderRequestError,
    RateLimitError,
    ReauthRequired,
    SignatureInvalid,
    Unauthorized,
    UnknownProvider,
    UnsupportedFlow,
    VerificationFailed,
)
from connector_service.services import (
    ConnectionStatusAggregator,
    OAuthConnectionManager,
    SyncScheduler,
    WebhookRouter,
)

logger = logging.getLogger(__name__)

# Security
security = HTTPBearer()


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """Get current user from auth service."""
    settings = get_app_settings(request)
    token = credentials.credentials

    try:
        # Verify token with auth service
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                f"{settings.auth_service_url}/api/v1/users/me",
                headers={"Authorization": f"Bearer {token}"}
            )
    except httpx.RequestError as e:
        logger.error(f"Auth service request failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable"
        )

    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return response.json()


async def get_current_tenant(current_user: Dict[str, Any] = Depends(get_current_user)) -> str:
    """Tenant is the user's organization, or the user for personal accounts."""
    tenant_id = current_user.get("organization_id") or current_user.get("id")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authenticated user has no tenant",
        )
    return str(tenant_id)


# Service dependencies
def get_oauth_manager(request: Request) -> OAuthConnectionManager:
    """Get OAuth connection manager instance."""
    return request.app.state.oauth_manager


def get_sync_scheduler(request: Request) -> SyncScheduler:
    """Get sync scheduler instance."""
    return request.app.state.scheduler


def get_webhook_router(request: Request) -> WebhookRouter:
    """Get webhook router instance."""
    return request.app.state.webhook_router


def get_status_aggregator(request: Request) -> ConnectionStatusAggregator:
    """Get status aggregator instance."""
    return request.app.state.status_aggregator


# Error translation
ERROR_STATUS_CODES = [
    (UnknownProvider, status.HTTP_404_NOT_FOUND),
    (NotConnected, status.HTTP_404_NOT_FOUND),
    (Unauthorized, status.HTTP_401_UNAUTHORIZED),
    (SignatureInvalid, status.HTTP_401_UNAUTHORIZED),
    (VerificationFailed, status.HTTP_403_FORBIDDEN),
    (MissingParameter, status.HTTP_400_BAD_REQUEST),
    (OAuthExchangeError, status.HTTP_400_BAD_REQUEST),
    (InvalidPayload, status.HTTP_400_BAD_REQUEST),
    (ReauthRequired, status.HTTP_400_BAD_REQUEST),
    (InvalidCredentials, status.HTTP_400_BAD_REQUEST),
    (UnsupportedFlow, status.HTTP_400_BAD_REQUEST),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (ProviderRequestError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def http_error(error: IntegrationError) -> HTTPException:
    """Translate a service error into an HTTPException."""
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error(f"{type(error).__name__}: {error.message}")
    headers = None
    if isinstance(error, RateLimitError) and error.retry_after:
        headers = {"Retry-After": str(error.retry_after)}
    return HTTPException(status_code=status_code, detail=error.message, headers=headers)
