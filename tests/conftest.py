"""Pytest configuration and fixtures for connector service tests."""

import os

# Settings require an encryption key at import time of the app module
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")

from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from connector_service.core.config import Settings
from connector_service.models import ConnectionStatus, Credentials
from connector_service.services import (
    ConnectionStatusAggregator,
    OAuthConnectionManager,
    SyncScheduler,
    WebhookRouter,
)
from connector_service.store import InMemoryCredentialStore
from connector_service.utils.clock import utcnow


class ProviderStub:
    """Stands in for every provider API behind an httpx.MockTransport.

    Routes match on method and URL prefix; the first match wins. A route
    target is either a Response or a callable taking the request and
    returning a Response (or an awaitable of one).
    """

    def __init__(self):
        self.routes: List[Tuple[str, str, Union[httpx.Response, Callable]]] = []
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, target: Union[httpx.Response, Callable]) -> None:
        self.routes.append((method, url, target))

    def add_json(self, method: str, url: str, body: Any, status_code: int = 200) -> None:
        self.add(method, url, lambda request: httpx.Response(status_code, json=body))

    def add_sequence(self, method: str, url: str, *outcomes: Union[httpx.Response, Exception]) -> None:
        """Answer successive requests with each outcome in turn; the last one repeats."""
        remaining = list(outcomes)

        def target(request: httpx.Request) -> httpx.Response:
            outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        self.add(method, url, target)

    def calls(self, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(url)]

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        for method, url, target in self.routes:
            if request.method == method and str(request.url).startswith(url):
                return target(request) if callable(target) else target
        return httpx.Response(404, json={"error": "not_found"})


@pytest.fixture
def settings() -> Settings:
    """Settings with every provider configured."""
    values: Dict[str, Any] = {
        "encryption_key": "test-encryption-key",
        "store_backend": "memory",
        "redis_url": None,
        "public_base_url": "https://connector.test",
        "app_url": "https://app.test",
        "oauth_state_max_age_seconds": 600,
        "token_refresh_margin_seconds": 300,
        "sync_autostart": False,
        "sync_interval_seconds": 3600,
        "sync_failure_threshold": 3,
        "sync_max_concurrency": 4,
        "provider_retry_backoff_seconds": 0,
        "whatsapp_webhook_secret": "whatsapp-webhook-secret",
        "whatsapp_verify_token": "whatsapp-verify-token",
    }
    for prefix in ("hubspot", "salesforce", "shopify", "linkedin", "mailchimp",
                   "pipedrive", "slack", "google", "microsoft"):
        values[f"{prefix}_client_id"] = f"{prefix}-client"
        values[f"{prefix}_client_secret"] = f"{prefix}-secret"
        values[f"{prefix}_webhook_secret"] = f"{prefix}-webhook-secret"
    return Settings(_env_file=None, **values)


@pytest.fixture
def stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
def http_client(stub) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(stub))


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def manager(store, settings, http_client) -> OAuthConnectionManager:
    return OAuthConnectionManager(store, settings, http_client=http_client)


@pytest_asyncio.fixture
async def scheduler(store, manager, settings):
    scheduler = SyncScheduler(store, manager, settings)
    yield scheduler
    scheduler.stop()
    await scheduler.wait_idle(timeout=5)


@pytest.fixture
def webhook_router(store, manager) -> WebhookRouter:
    return WebhookRouter(store, manager)


@pytest.fixture
def aggregator(store) -> ConnectionStatusAggregator:
    return ConnectionStatusAggregator(store)


@pytest.fixture
def seed_connection(store):
    """Factory that persists a connection row directly."""
    async def _seed(
        tenant_id: str = "t1",
        integration_id: str = "hubspot",
        access_token: str = "tok1",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: Optional[int] = 3600,
        status: ConnectionStatus = ConnectionStatus.CONNECTED,
        **extras: Any,
    ):
        now = utcnow()
        credentials = Credentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + timedelta(seconds=expires_in) if expires_in is not None else None,
            extras=extras,
        )
        return await store.upsert(
            tenant_id,
            integration_id,
            {
                "credentials": credentials,
                "status": status,
                "connected_at": now,
                "generation": 1,
            },
        )
    return _seed


@pytest.fixture
def seed_calendar(store):
    """Factory that persists a CalendarSync row directly."""
    async def _seed(
        tenant_id: str = "t1",
        provider: str = "google",
        access_token: str = "cal-token",
        refresh_token: Optional[str] = "cal-refresh",
        expires_in: int = 3600,
    ):
        credentials = Credentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )
        return await store.upsert_calendar_sync(
            tenant_id,
            provider,
            {"credentials": credentials, "sync_enabled": True, "generation": 1},
        )
    return _seed
