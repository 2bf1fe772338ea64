"""In-process credential store.

Used for local development (``STORE_BACKEND=memory``) and the test suite.
State lives only as long as the process.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

from connector_service.models import (
    CalendarSync,
    ConnectionStatus,
    IntegrationConnection,
    WebhookEvent,
)
from connector_service.store.base import CredentialStore
from connector_service.utils.clock import utcnow


class InMemoryCredentialStore(CredentialStore):
    """Dict-backed store. Every read returns a copy."""

    def __init__(self):
        self._connections: Dict[Tuple[str, str], IntegrationConnection] = {}
        self._calendars: Dict[Tuple[str, str], CalendarSync] = {}
        self._subscriptions: Dict[Tuple[str, str], str] = {}
        self.webhook_events: Dict[Tuple[str, str], WebhookEvent] = {}
        self.quarantine: List[Tuple[WebhookEvent, str]] = []

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    async def get(self, tenant_id: str, integration_id: str) -> Optional[IntegrationConnection]:
        return self._copy(self._connections.get((tenant_id, integration_id)))

    async def upsert(self, tenant_id: str, integration_id: str, fields: Dict[str, Any]) -> IntegrationConnection:
        key = (tenant_id, integration_id)
        now = utcnow()
        current = self._connections.get(key)
        if current is None:
            current = IntegrationConnection(tenant_id=tenant_id, integration_id=integration_id, created_at=now)
        updated = current.model_copy(update={**fields, "updated_at": now}, deep=True)
        self._connections[key] = updated
        return self._copy(updated)

    async def update(
        self,
        tenant_id: str,
        integration_id: str,
        fields: Dict[str, Any],
        statuses: Optional[Iterable[ConnectionStatus]] = None,
        expected_generation: Optional[int] = None,
    ) -> Optional[IntegrationConnection]:
        key = (tenant_id, integration_id)
        current = self._connections.get(key)
        if current is None:
            return None
        if statuses is not None and current.status not in set(statuses):
            return None
        if expected_generation is not None and current.generation != expected_generation:
            return None
        updated = current.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self._connections[key] = updated
        return self._copy(updated)

    async def delete(self, tenant_id: str, integration_id: str) -> bool:
        return self._connections.pop((tenant_id, integration_id), None) is not None

    async def list_connected(self, tenant_id: Optional[str] = None) -> List[IntegrationConnection]:
        return [
            self._copy(c)
            for c in self._connections.values()
            if c.status == ConnectionStatus.CONNECTED and (tenant_id is None or c.tenant_id == tenant_id)
        ]

    async def list_for_tenant(self, tenant_id: str) -> List[IntegrationConnection]:
        return [self._copy(c) for c in self._connections.values() if c.tenant_id == tenant_id]

    async def get_calendar_sync(self, tenant_id: str, provider: str) -> Optional[CalendarSync]:
        return self._copy(self._calendars.get((tenant_id, provider)))

    async def upsert_calendar_sync(self, tenant_id: str, provider: str, fields: Dict[str, Any]) -> CalendarSync:
        key = (tenant_id, provider)
        now = utcnow()
        current = self._calendars.get(key)
        if current is None:
            current = CalendarSync(tenant_id=tenant_id, provider=provider, created_at=now)
        updated = current.model_copy(update={**fields, "updated_at": now}, deep=True)
        self._calendars[key] = updated
        return self._copy(updated)

    async def update_calendar_sync(
        self,
        tenant_id: str,
        provider: str,
        fields: Dict[str, Any],
        expected_generation: Optional[int] = None,
    ) -> Optional[CalendarSync]:
        key = (tenant_id, provider)
        current = self._calendars.get(key)
        if current is None:
            return None
        if expected_generation is not None and current.generation != expected_generation:
            return None
        updated = current.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self._calendars[key] = updated
        return self._copy(updated)

    async def delete_calendar_sync(self, tenant_id: str, provider: str) -> bool:
        return self._calendars.pop((tenant_id, provider), None) is not None

    async def list_calendar_syncs(self, tenant_id: str) -> List[CalendarSync]:
        return [self._copy(c) for c in self._calendars.values() if c.tenant_id == tenant_id]

    async def list_enabled_calendar_syncs(self, tenant_id: Optional[str] = None) -> List[CalendarSync]:
        return [
            self._copy(c)
            for c in self._calendars.values()
            if c.sync_enabled and not c.needs_reauth and (tenant_id is None or c.tenant_id == tenant_id)
        ]

    async def register_subscription(self, integration_id: str, subscription_id: str, tenant_id: str) -> None:
        self._subscriptions[(integration_id, subscription_id)] = tenant_id

    async def resolve_subscription(self, integration_id: str, subscription_id: str) -> Optional[str]:
        return self._subscriptions.get((integration_id, subscription_id))

    async def record_webhook_event(self, event: WebhookEvent) -> bool:
        key = (event.integration_id, event.event_id)
        is_new = key not in self.webhook_events
        self.webhook_events[key] = self._copy(event)
        return is_new

    async def quarantine_webhook_event(self, event: WebhookEvent, reason: str) -> None:
        self.quarantine.append((self._copy(event), reason))
