"""Webhook ingestion: verify, normalize, resolve tenant, dispatch."""

from typing import Mapping, Optional
import logging

import httpx

from connector_service.core.exceptions import TenantUnresolved
from connector_service.integrations import BaseProvider
from connector_service.models import ConnectionStatus, WebhookAck, WebhookEvent
from connector_service.services.oauth_service import OAuthConnectionManager
from connector_service.store.base import CredentialStore

logger = logging.getLogger(__name__)


class WebhookRouter:
    """Routes inbound provider webhooks to provider handlers.

    Signature failures surface to the caller before any payload is looked at.
    After that, nothing about a single event (unknown tenant, handler crash)
    turns into a non-2xx response, since providers retry those aggressively.
    """

    def __init__(self, store: CredentialStore, oauth_manager: OAuthConnectionManager):
        self.store = store
        self.oauth_manager = oauth_manager

    def challenge(self, provider_id: str, query: Mapping[str, str], method: str = "GET") -> Optional[str]:
        """Echo value for a verification handshake, or None if this isn't one.

        POST handshakes are only honored for providers that validate that way;
        everything else posted goes through signature verification. A bare GET
        to a provider that validates URLs that way is answered with an empty body.
        """
        provider = self.oauth_manager.provider(provider_id)
        if method == "POST" and not provider.post_challenge:
            return None

        value = provider.verification_challenge(query)
        if value is not None:
            logger.info(f"Answering {provider_id} webhook verification handshake")
            return value
        if method == "GET" and provider.bare_get_validation:
            return ""
        return None

    async def receive(self, provider_id: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookAck:
        """Verify and apply one webhook delivery."""
        provider = self.oauth_manager.provider(provider_id)
        headers = httpx.Headers(headers)

        provider.verify_webhook_signature(raw_body, headers)

        challenge = provider.handshake_challenge(raw_body)
        if challenge is not None:
            return WebhookAck(integration_id=provider_id, challenge=challenge)

        events = provider.parse_webhook(raw_body, headers)
        ack = WebhookAck(integration_id=provider_id, received=len(events))

        for event in events:
            try:
                event.tenant_id = await self._resolve_tenant(provider, event)
            except TenantUnresolved as e:
                ack.dropped += 1
                logger.warning(
                    "Webhook event dropped",
                    extra={
                        "integration_id": provider_id,
                        "event_id": event.event_id,
                        "subscription_id": event.subscription_id,
                        "reason": e.message,
                    },
                )
                await self.store.quarantine_webhook_event(event, e.message)
                continue

            if await self._dispatch(provider, event):
                ack.processed += 1
            else:
                ack.failed += 1

        return ack

    async def _resolve_tenant(self, provider: BaseProvider, event: WebhookEvent) -> str:
        if not event.subscription_id:
            raise TenantUnresolved("Event carries no subscription id", provider.provider_id)

        tenant_id = await self.store.resolve_subscription(provider.provider_id, event.subscription_id)
        if tenant_id is None:
            raise TenantUnresolved(
                f"No tenant registered for subscription {event.subscription_id}", provider.provider_id
            )

        if provider.is_calendar:
            live = await self.store.get_calendar_sync(tenant_id, provider.calendar_provider) is not None
        else:
            connection = await self.store.get(tenant_id, provider.provider_id)
            live = connection is not None and connection.status != ConnectionStatus.DISCONNECTED
        if not live:
            raise TenantUnresolved(f"Tenant {tenant_id} has no live connection", provider.provider_id)
        return tenant_id

    async def _dispatch(self, provider: BaseProvider, event: WebhookEvent) -> bool:
        try:
            await provider.handle_webhook(event)
            if event.event_type in provider.uninstall_events:
                await self.oauth_manager.disconnect(event.tenant_id, provider.provider_id)
            return True
        except Exception as e:
            logger.error(
                f"Webhook handler failed: {e}",
                exc_info=True,
                extra={
                    "integration_id": provider.provider_id,
                    "tenant_id": event.tenant_id,
                    "event_id": event.event_id,
                },
            )
            return False
