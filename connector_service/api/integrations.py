"""Integration management API endpoints."""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from typing import Optional
import logging
import urllib.parse

from connector_service.core.config import Settings
from connector_service.core.exceptions import (
    ConfigurationError,
    IntegrationError,
    MissingParameter,
    NotConnected,
    OAuthExchangeError,
    UnknownProvider,
)
from connector_service.schemas.integration import (
    ConnectResponse,
    ConnectionTestResponse,
    CredentialConnectRequest,
    DisconnectResponse,
    IntegrationStatusResponse,
    OAuthInitResponse,
    SubscriptionRequest,
    SubscriptionResponse,
    SyncRunResponse,
)
from connector_service.services import ConnectionStatusAggregator, OAuthConnectionManager, SyncScheduler
from connector_service.utils.clock import utcnow
from connector_service.api.dependencies import (
    get_app_settings,
    get_current_tenant,
    get_oauth_manager,
    get_status_aggregator,
    get_sync_scheduler,
    http_error,
)

logger = logging.getLogger(__name__)
router = APIRouter()

# Short reasons passed back to the dashboard on a failed callback
CALLBACK_ERROR_REASONS = [
    (UnknownProvider, "unknown_provider"),
    (MissingParameter, "missing_parameter"),
    (ConfigurationError, "configuration_error"),
    (OAuthExchangeError, "oauth_failed"),
]


def _settings_redirect(settings: Settings, **params: str) -> RedirectResponse:
    query = urllib.parse.urlencode({"tab": "integrations", **params})
    return RedirectResponse(f"{settings.app_url.rstrip('/')}/dashboard/settings?{query}", status_code=302)


@router.get("/status", response_model=IntegrationStatusResponse)
async def get_integration_status(
    tenant_id: str = Depends(get_current_tenant),
    aggregator: ConnectionStatusAggregator = Depends(get_status_aggregator),
):
    """Status of every integration for the current tenant."""
    return IntegrationStatusResponse(
        tenant_id=tenant_id,
        integrations=await aggregator.get_status_map(tenant_id),
    )


@router.get("/{provider}/authorize", response_model=OAuthInitResponse)
async def authorize(
    provider: str,
    shop: Optional[str] = Query(None),
    tenant_id: str = Depends(get_current_tenant),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
):
    """Get the provider consent URL."""
    extra = {"shop": shop} if shop else {}
    try:
        url = manager.build_authorization_url(provider, tenant_id, extra)
    except IntegrationError as e:
        raise http_error(e)
    return OAuthInitResponse(authorization_url=url)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    shop: Optional[str] = Query(None),
    settings: Settings = Depends(get_app_settings),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
):
    """Handle the provider redirect and send the browser back to the dashboard.

    The tenant comes from the state parameter, not from a session.
    """
    if error:
        logger.warning(f"OAuth authorization for {provider} denied: {error}")
        return _settings_redirect(settings, error=error)

    extra = {"shop": shop} if shop else {}
    try:
        await manager.complete_authorization(provider, code, state, extra)
    except IntegrationError as e:
        logger.warning(f"OAuth callback for {provider} failed: {e.message}")
        reason = next(
            (name for error_class, name in CALLBACK_ERROR_REASONS if isinstance(e, error_class)),
            "connection_failed",
        )
        return _settings_redirect(settings, error=reason)

    return _settings_redirect(settings, success=provider)


@router.post("/{provider}/connect", response_model=ConnectResponse)
async def connect_with_credentials(
    provider: str,
    body: CredentialConnectRequest,
    tenant_id: str = Depends(get_current_tenant),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
):
    """Connect a provider that takes submitted credentials instead of OAuth."""
    try:
        connection = await manager.connect_with_credentials(tenant_id, provider, body.credentials)
    except IntegrationError as e:
        raise http_error(e)
    return ConnectResponse(
        integration_id=provider,
        status=connection.status,
        connected_at=connection.connected_at,
    )


@router.post("/{provider}/test", response_model=ConnectionTestResponse)
async def test_connection(
    provider: str,
    tenant_id: str = Depends(get_current_tenant),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
):
    """Test the connection with a cheap authenticated call."""
    try:
        is_connected = await manager.test_connection(tenant_id, provider)
    except IntegrationError as e:
        raise http_error(e)

    return ConnectionTestResponse(
        integration_id=provider,
        is_connected=is_connected,
        message="Connection successful" if is_connected else "Connection failed",
        tested_at=utcnow(),
    )


@router.post("/{provider}/disconnect", response_model=DisconnectResponse)
async def disconnect(
    provider: str,
    tenant_id: str = Depends(get_current_tenant),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
):
    """Disconnect the integration and discard its credentials."""
    try:
        disconnected = await manager.disconnect(tenant_id, provider)
    except IntegrationError as e:
        raise http_error(e)
    return DisconnectResponse(integration_id=provider, disconnected=disconnected)


@router.post("/{provider}/sync", response_model=SyncRunResponse)
async def sync_integration(
    provider: str,
    tenant_id: str = Depends(get_current_tenant),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Sync one integration now."""
    try:
        run = await scheduler.run_sync(tenant_id, provider)
    except IntegrationError as e:
        raise http_error(e)
    return SyncRunResponse(**run.model_dump())


@router.post("/{provider}/subscriptions", response_model=SubscriptionResponse)
async def register_subscription(
    provider: str,
    body: SubscriptionRequest,
    tenant_id: str = Depends(get_current_tenant),
    manager: OAuthConnectionManager = Depends(get_oauth_manager),
):
    """Route webhooks addressed to ``subscription_id`` to the current tenant."""
    try:
        connection = await manager.get_connection(tenant_id, provider)
    except IntegrationError as e:
        raise http_error(e)
    if connection is None or connection.credentials is None:
        raise http_error(NotConnected(f"{provider} is not connected", provider))

    await manager.store.register_subscription(provider, body.subscription_id, tenant_id)
    return SubscriptionResponse(
        integration_id=provider,
        subscription_id=body.subscription_id,
        tenant_id=tenant_id,
    )
