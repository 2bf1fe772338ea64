"""OAuth connection lifecycle: authorize, exchange, refresh, test, disconnect."""

from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, Union
import asyncio
import logging

import httpx

from connector_service.core.config import Settings, get_settings
from connector_service.core.exceptions import (
    InvalidCredentials,
    MissingParameter,
    NotConnected,
    OAuthExchangeError,
    ProviderRequestError,
    RateLimitError,
    ReauthRequired,
)
from connector_service.integrations import BaseProvider, ProviderRegistry
from connector_service.models import (
    CalendarSync,
    ConnectionRef,
    ConnectionStatus,
    Credentials,
    IntegrationConnection,
    TokenSet,
)
from connector_service.store.base import CredentialStore
from connector_service.utils.clock import utcnow
from connector_service.utils.oauth_state import NonceCache, decode_state, encode_state
from connector_service.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Rows a sync, test or refresh may still write to
LIVE_STATUSES = (ConnectionStatus.CONNECTED, ConnectionStatus.ERROR)

# Nonce retention when the state age check is disabled
DEFAULT_NONCE_TTL_SECONDS = 24 * 60 * 60


class OAuthConnectionManager:
    """Owns the OAuth lifecycle of every (tenant, provider) connection.

    Calendar providers persist to CalendarSync rows; every other provider
    persists to IntegrationConnection rows. Callers see both through the
    IntegrationConnection shape.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        nonce_cache: Optional[NonceCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(timeout=self.settings.provider_timeout_seconds)
        self.nonce_cache = nonce_cache
        self.rate_limiter = rate_limiter
        self._providers: Dict[str, BaseProvider] = {}
        self._refresh_locks: Dict[ConnectionRef, asyncio.Lock] = {}
        self._refresh_lock_users: Dict[ConnectionRef, int] = {}

    def provider(self, provider_id: str) -> BaseProvider:
        """Get the provider instance for a key. Raises UnknownProvider."""
        if provider_id not in self._providers:
            provider_class = ProviderRegistry.require(provider_id)
            self._providers[provider_id] = provider_class(
                self.settings,
                self.http_client,
                store=self.store,
                rate_limiter=self.rate_limiter,
            )
        return self._providers[provider_id]

    # Authorization

    def build_authorization_url(
        self,
        provider_id: str,
        tenant_id: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Build the consent URL with a fresh state bound to ``tenant_id``."""
        if not tenant_id:
            raise MissingParameter("tenant_id", provider=provider_id)
        provider = self.provider(provider_id)
        return provider.build_authorization_url(encode_state(tenant_id), extra or {})

    async def exchange_code(
        self,
        provider_id: str,
        code: str,
        state: str,
        extra: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> TokenSet:
        """Validate the state and exchange the code.

        The returned token set carries the tenant recovered from the state.
        """
        provider = self.provider(provider_id)
        if not code:
            raise MissingParameter("code", provider=provider_id)

        oauth_state = decode_state(state, max_age_seconds=self.settings.oauth_state_max_age_seconds)
        if tenant_id is not None and tenant_id != oauth_state.tenant_id:
            raise OAuthExchangeError("State does not belong to this tenant", provider_id)

        if self.nonce_cache is not None:
            ttl = self.settings.oauth_state_max_age_seconds or DEFAULT_NONCE_TTL_SECONDS
            if not await self.nonce_cache.claim(oauth_state.nonce, ttl):
                raise OAuthExchangeError("State has already been used", provider_id)

        token_set = await provider.exchange_code(code, extra or {})
        token_set.tenant_id = oauth_state.tenant_id
        return token_set

    async def save_connection(
        self,
        tenant_id: str,
        provider_id: str,
        token_set: TokenSet,
    ) -> Union[IntegrationConnection, CalendarSync]:
        """Persist a fresh token set as a connected row."""
        provider = self.provider(provider_id)
        now = utcnow()

        if provider.is_calendar:
            existing_sync = await self.store.get_calendar_sync(tenant_id, provider.calendar_provider)
            credentials = token_set.to_credentials(
                previous=existing_sync.credentials if existing_sync else None, now=now
            )
            self._check_token(credentials, provider_id)
            record = await self.store.upsert_calendar_sync(
                tenant_id,
                provider.calendar_provider,
                {
                    "credentials": credentials,
                    "sync_enabled": True,
                    "needs_reauth": False,
                    "generation": existing_sync.generation + 1 if existing_sync else 1,
                    "consecutive_failures": 0,
                    "last_error": None,
                },
            )
        else:
            existing = await self.store.get(tenant_id, provider_id)
            was_live = existing is not None and existing.status != ConnectionStatus.DISCONNECTED
            credentials = token_set.to_credentials(previous=existing.credentials if was_live else None, now=now)
            self._check_token(credentials, provider_id)

            fields: Dict[str, Any] = {
                "credentials": credentials,
                "status": ConnectionStatus.CONNECTED,
                "generation": existing.generation + 1 if existing else 1,
                "consecutive_failures": 0,
                "last_error": None,
            }
            if not was_live or existing.connected_at is None:
                fields["connected_at"] = now
            record = await self.store.upsert(tenant_id, provider_id, fields)

        subscription_id = provider.subscription_id_from_credentials(credentials)
        if subscription_id:
            await self.store.register_subscription(provider_id, subscription_id, tenant_id)

        logger.info(
            "Integration connected",
            extra={"tenant_id": tenant_id, "integration_id": provider_id},
        )
        return record

    async def complete_authorization(
        self,
        provider_id: str,
        code: str,
        state: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Union[IntegrationConnection, CalendarSync]:
        """Exchange the code and persist the connection for the state's tenant."""
        token_set = await self.exchange_code(provider_id, code, state, extra)
        return await self.save_connection(token_set.tenant_id, provider_id, token_set)

    async def connect_with_credentials(
        self,
        tenant_id: str,
        provider_id: str,
        submitted: Dict[str, Any],
    ) -> Union[IntegrationConnection, CalendarSync]:
        """Connect with credentials the tenant submitted instead of an OAuth grant.

        The credentials are tried against the provider before anything is stored.
        """
        if not tenant_id:
            raise MissingParameter("tenant_id", provider=provider_id)
        provider = self.provider(provider_id)

        if self.rate_limiter is not None:
            window = self.settings.connect_rate_limit_window_seconds
            allowed = await self.rate_limiter.check_rate_limit(
                f"connect:{tenant_id}", self.settings.connect_rate_limit_calls, window
            )
            if not allowed:
                raise RateLimitError(
                    "Too many connection attempts", provider_id, status_code=429, retry_after=window
                )

        token_set = provider.credentials_token_set(submitted)
        candidate = IntegrationConnection(
            tenant_id=tenant_id,
            integration_id=provider_id,
            credentials=token_set.to_credentials(),
            status=ConnectionStatus.CONNECTED,
        )
        if not await provider.test_connection(candidate):
            logger.warning(
                "Submitted credentials rejected",
                extra={"tenant_id": tenant_id, "integration_id": provider_id},
            )
            raise InvalidCredentials("Invalid credentials or connection failed", provider_id)

        return await self.save_connection(tenant_id, provider_id, token_set)

    def _check_token(self, credentials: Credentials, provider_id: str) -> None:
        if credentials.expires_within(0) and not credentials.is_refreshable:
            raise OAuthExchangeError("Provider returned an expired token", provider_id)

    # Reads

    async def get_connection(self, tenant_id: str, provider_id: str) -> Optional[IntegrationConnection]:
        """Current row for the pair, calendar rows projected onto the connection shape."""
        provider = self.provider(provider_id)
        if provider.is_calendar:
            calendar_sync = await self.store.get_calendar_sync(tenant_id, provider.calendar_provider)
            return calendar_sync.as_connection() if calendar_sync else None
        return await self.store.get(tenant_id, provider_id)

    async def _require_live(self, tenant_id: str, provider_id: str) -> IntegrationConnection:
        connection = await self.get_connection(tenant_id, provider_id)
        if (
            connection is None
            or connection.credentials is None
            or connection.status == ConnectionStatus.DISCONNECTED
        ):
            raise NotConnected(f"{provider_id} is not connected", provider_id)
        return connection

    # Token refresh

    @asynccontextmanager
    async def _refresh_lock(self, key: ConnectionRef):
        """Per-connection lock, dropped once nobody holds or waits on it."""
        lock = self._refresh_locks.get(key)
        if lock is None:
            lock = self._refresh_locks[key] = asyncio.Lock()
        self._refresh_lock_users[key] = self._refresh_lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refresh_lock_users[key] -= 1
            if not self._refresh_lock_users[key]:
                del self._refresh_lock_users[key]
                del self._refresh_locks[key]

    async def refresh_if_expired(
        self,
        connection: IntegrationConnection,
        force: bool = False,
    ) -> IntegrationConnection:
        """Refresh the access token when it is about to expire.

        Refreshes for one connection are serialized; a caller that waited on
        the lock re-reads the row and returns the token another caller has
        already written instead of spending the refresh token again.
        """
        margin = self.settings.token_refresh_margin_seconds
        if connection.credentials is None:
            raise NotConnected(f"{connection.integration_id} is not connected", connection.integration_id)
        if not force and not connection.credentials.expires_within(margin):
            return connection

        provider = self.provider(connection.integration_id)
        async with self._refresh_lock(connection.key):
            current = await self._require_live(connection.tenant_id, connection.integration_id)
            stale = current.credentials.expires_within(margin)
            if current.generation != connection.generation and not stale:
                return current
            if not force and not stale:
                return current

            try:
                token_set = await provider.refresh_token(current.credentials)
            except ReauthRequired as e:
                logger.warning(
                    "Token refresh rejected, re-authorization required",
                    extra={"tenant_id": current.tenant_id, "integration_id": current.integration_id},
                )
                await self.mark_failed(current, e.message, force_error=True)
                raise

            credentials = token_set.to_credentials(previous=current.credentials)
            updated = await self._write_refreshed(current, provider, credentials)
            if updated is None:
                # Disconnected or re-authorized while the refresh was in flight
                return await self._require_live(connection.tenant_id, connection.integration_id)

            logger.info(
                "Access token refreshed",
                extra={"tenant_id": current.tenant_id, "integration_id": current.integration_id},
            )
            return updated

    async def _write_refreshed(
        self,
        current: IntegrationConnection,
        provider: BaseProvider,
        credentials: Credentials,
    ) -> Optional[IntegrationConnection]:
        fields = {"credentials": credentials, "generation": current.generation + 1, "last_error": None}
        if provider.is_calendar:
            calendar_sync = await self.store.update_calendar_sync(
                current.tenant_id,
                provider.calendar_provider,
                {**fields, "needs_reauth": False},
                expected_generation=current.generation,
            )
            return calendar_sync.as_connection() if calendar_sync else None

        fields["status"] = ConnectionStatus.CONNECTED
        return await self.store.update(
            current.tenant_id,
            current.integration_id,
            fields,
            statuses=LIVE_STATUSES,
            expected_generation=current.generation,
        )

    # Status bookkeeping shared with the scheduler

    async def mark_synced(self, connection: IntegrationConnection) -> Optional[IntegrationConnection]:
        """Record a successful sync or test."""
        provider = self.provider(connection.integration_id)
        now = utcnow()
        if provider.is_calendar:
            calendar_sync = await self.store.update_calendar_sync(
                connection.tenant_id,
                provider.calendar_provider,
                {"last_synced_at": now, "consecutive_failures": 0, "last_error": None, "needs_reauth": False},
            )
            return calendar_sync.as_connection() if calendar_sync else None

        return await self.store.update(
            connection.tenant_id,
            connection.integration_id,
            {
                "last_sync": now,
                "status": ConnectionStatus.CONNECTED,
                "consecutive_failures": 0,
                "last_error": None,
            },
            statuses=LIVE_STATUSES,
        )

    async def mark_failed(
        self,
        connection: IntegrationConnection,
        error: str,
        force_error: bool = False,
    ) -> Optional[IntegrationConnection]:
        """Record a failure; flips status to error at the threshold or when forced.

        Calendar rows have no stored status. A forced failure marks them as
        awaiting re-authorization, which takes them out of periodic ticks.
        """
        provider = self.provider(connection.integration_id)
        failures = connection.consecutive_failures + 1
        fields: Dict[str, Any] = {"consecutive_failures": failures, "last_error": error}

        if provider.is_calendar:
            if force_error:
                fields["needs_reauth"] = True
            calendar_sync = await self.store.update_calendar_sync(
                connection.tenant_id, provider.calendar_provider, fields
            )
            return calendar_sync.as_connection() if calendar_sync else None

        if force_error or failures >= self.settings.sync_failure_threshold:
            fields["status"] = ConnectionStatus.ERROR
        return await self.store.update(
            connection.tenant_id,
            connection.integration_id,
            fields,
            statuses=LIVE_STATUSES,
        )

    # Caller-facing operations

    async def test_connection(self, tenant_id: str, provider_id: str) -> bool:
        """Make a cheap authenticated call and record the outcome."""
        connection = await self._require_live(tenant_id, provider_id)
        provider = self.provider(provider_id)

        try:
            connection = await self.refresh_if_expired(connection)
        except ReauthRequired:
            return False
        except ProviderRequestError as e:
            await self.mark_failed(connection, e.message, force_error=True)
            return False

        if await provider.test_connection(connection):
            await self.mark_synced(connection)
            return True

        await self.mark_failed(connection, "Connection test failed", force_error=True)
        return False

    async def disconnect(self, tenant_id: str, provider_id: str) -> bool:
        """Disconnect and clear credentials. False if nothing live existed."""
        provider = self.provider(provider_id)

        if provider.is_calendar:
            calendar_sync = await self.store.get_calendar_sync(tenant_id, provider.calendar_provider)
            if calendar_sync is None:
                return False
            await provider.revoke(calendar_sync.credentials)
            deleted = await self.store.delete_calendar_sync(tenant_id, provider.calendar_provider)
        else:
            existing = await self.store.get(tenant_id, provider_id)
            if existing is None or existing.status == ConnectionStatus.DISCONNECTED:
                return False
            await provider.revoke(existing.credentials)
            updated = await self.store.update(
                tenant_id,
                provider_id,
                {
                    "status": ConnectionStatus.DISCONNECTED,
                    "credentials": None,
                    "generation": existing.generation + 1,
                    "consecutive_failures": 0,
                    "last_error": None,
                },
                statuses=LIVE_STATUSES,
            )
            deleted = updated is not None

        if deleted:
            logger.info(
                "Integration disconnected",
                extra={"tenant_id": tenant_id, "integration_id": provider_id},
            )
        return deleted
