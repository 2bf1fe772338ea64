"""Credential store interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from connector_service.models import (
    CalendarSync,
    ConnectionStatus,
    IntegrationConnection,
    WebhookEvent,
)


class CredentialStore(ABC):
    """Persistence for connection state.

    Owns every persisted entity of the service: one IntegrationConnection per
    (tenant_id, integration_id), one CalendarSync per (tenant_id, provider),
    the webhook subscription-to-tenant mapping, and applied or quarantined
    webhook events. ``fields`` arguments use model field names.
    """

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    # Integration connections

    @abstractmethod
    async def get(self, tenant_id: str, integration_id: str) -> Optional[IntegrationConnection]:
        pass

    @abstractmethod
    async def upsert(self, tenant_id: str, integration_id: str, fields: Dict[str, Any]) -> IntegrationConnection:
        pass

    @abstractmethod
    async def update(
        self,
        tenant_id: str,
        integration_id: str,
        fields: Dict[str, Any],
        statuses: Optional[Iterable[ConnectionStatus]] = None,
        expected_generation: Optional[int] = None,
    ) -> Optional[IntegrationConnection]:
        """Update an existing row if it matches the given conditions.

        Returns the updated row, or None when no row matched.
        """

    @abstractmethod
    async def delete(self, tenant_id: str, integration_id: str) -> bool:
        pass

    @abstractmethod
    async def list_connected(self, tenant_id: Optional[str] = None) -> List[IntegrationConnection]:
        pass

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str) -> List[IntegrationConnection]:
        pass

    # Calendar syncs

    @abstractmethod
    async def get_calendar_sync(self, tenant_id: str, provider: str) -> Optional[CalendarSync]:
        pass

    @abstractmethod
    async def upsert_calendar_sync(self, tenant_id: str, provider: str, fields: Dict[str, Any]) -> CalendarSync:
        pass

    @abstractmethod
    async def update_calendar_sync(
        self,
        tenant_id: str,
        provider: str,
        fields: Dict[str, Any],
        expected_generation: Optional[int] = None,
    ) -> Optional[CalendarSync]:
        pass

    @abstractmethod
    async def delete_calendar_sync(self, tenant_id: str, provider: str) -> bool:
        pass

    @abstractmethod
    async def list_calendar_syncs(self, tenant_id: str) -> List[CalendarSync]:
        pass

    @abstractmethod
    async def list_enabled_calendar_syncs(self, tenant_id: Optional[str] = None) -> List[CalendarSync]:
        """Calendar rows the scheduler should pick up: enabled and not awaiting re-authorization."""
        pass

    # Webhook bookkeeping

    @abstractmethod
    async def register_subscription(self, integration_id: str, subscription_id: str, tenant_id: str) -> None:
        pass

    @abstractmethod
    async def resolve_subscription(self, integration_id: str, subscription_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def record_webhook_event(self, event: WebhookEvent) -> bool:
        """Upsert an applied event by (integration_id, event_id). True if it was new."""

    @abstractmethod
    async def quarantine_webhook_event(self, event: WebhookEvent, reason: str) -> None:
        pass
