"""Read-side connection status map."""

from typing import Dict

from connector_service.models import ConnectionStatusEntry, calendar_integration_key
from connector_service.store.base import CredentialStore


class ConnectionStatusAggregator:
    """Merges integration and calendar rows into one status map per tenant."""

    def __init__(self, store: CredentialStore):
        self.store = store

    async def get_status_map(self, tenant_id: str) -> Dict[str, ConnectionStatusEntry]:
        status_map: Dict[str, ConnectionStatusEntry] = {}

        for connection in await self.store.list_for_tenant(tenant_id):
            status_map[connection.integration_id] = ConnectionStatusEntry(
                status=connection.status,
                last_sync=connection.last_sync,
                connected_at=connection.connected_at,
            )

        for calendar_sync in await self.store.list_calendar_syncs(tenant_id):
            status_map[calendar_integration_key(calendar_sync.provider)] = ConnectionStatusEntry(
                status=calendar_sync.status,
                last_sync=calendar_sync.last_synced_at,
                connected_at=calendar_sync.created_at,
            )

        return status_map
