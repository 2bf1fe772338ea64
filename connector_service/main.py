"""Main FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging

import httpx
import redis.asyncio as redis

from connector_service.core.config import Settings, get_settings
from connector_service.core.database import Database
from connector_service.api import health, integrations, sync, webhooks
from connector_service.services import (
    ConnectionStatusAggregator,
    OAuthConnectionManager,
    SyncScheduler,
    WebhookRouter,
)
from connector_service.store import CredentialStore, InMemoryCredentialStore, MongoCredentialStore
from connector_service.utils.crypto import TokenCipher
from connector_service.utils.logging import setup_logging
from connector_service.utils.oauth_state import NonceCache
from connector_service.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> CredentialStore:
    """Create the configured credential store backend."""
    if settings.store_backend == "memory":
        logger.warning("Using in-memory credential store; connections are lost on restart")
        return InMemoryCredentialStore()
    return MongoCredentialStore(
        Database(settings),
        TokenCipher(settings.encryption_key, settings.encryption_salt),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings

    # Startup
    setup_logging(settings)
    logger.info("Starting up connector service...")
    logger.info(f"Service: {settings.service_name}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Port: {settings.port}")

    store = build_store(settings)
    await store.connect()

    redis_client = redis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None
    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

    oauth_manager = OAuthConnectionManager(
        store,
        settings,
        http_client=http_client,
        nonce_cache=NonceCache(redis_client) if redis_client else None,
        rate_limiter=RateLimiter(redis_client, prefix="provider_rate_limit") if redis_client else None,
    )
    scheduler = SyncScheduler(store, oauth_manager, settings)

    app.state.store = store
    app.state.redis = redis_client
    app.state.oauth_manager = oauth_manager
    app.state.scheduler = scheduler
    app.state.webhook_router = WebhookRouter(store, oauth_manager)
    app.state.status_aggregator = ConnectionStatusAggregator(store)

    if settings.sync_autostart:
        scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down connector service...")
    scheduler.stop()
    if not await scheduler.wait_idle(timeout=settings.provider_timeout_seconds):
        logger.warning("Shutting down with sync tasks still in flight")
    await http_client.aclose()
    if redis_client is not None:
        await redis_client.aclose()
    await store.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Connector Service",
        description="OAuth integrations, background sync and webhook ingestion",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(
        integrations.router,
        prefix="/api/v1/integrations",
        tags=["integrations"]
    )
    app.include_router(
        sync.router,
        prefix="/api/v1/sync",
        tags=["sync"]
    )
    app.include_router(
        webhooks.router,
        prefix="/api/v1/webhooks",
        tags=["webhooks"]
    )
    return app


def main():
    """Run the service with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "connector_service.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
