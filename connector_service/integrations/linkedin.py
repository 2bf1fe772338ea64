"""LinkedIn provider implementation."""

from typing import Dict, Any, Mapping

from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import IntegrationConnection, SyncResult, WebhookEvent


@ProviderRegistry.register("linkedin")
class LinkedInProvider(BaseProvider):
    """LinkedIn provider (member profile and social posting)."""

    signature_header = "X-LI-Signature"
    test_endpoint = "/v2/userinfo"

    async def sync(self, connection: IntegrationConnection) -> SyncResult:
        response = await self.make_api_request("GET", "/v2/userinfo", connection)
        profile = response.json()
        return SyncResult(
            integration_id=self.provider_id,
            records={"profile": 1 if profile.get("sub") else 0},
            details={"member_id": profile.get("sub")},
        )

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        owner = item.get("organizationalEntity") or item.get("owner")
        event_id = item.get("id")
        return self.make_event(
            event_id=str(event_id) if event_id is not None else self.fingerprint(item),
            event_type=item.get("type", "unknown"),
            object_id=item.get("entity") or item.get("object"),
            subscription_id=owner,
            data=item,
            timestamp=self.parse_timestamp(item.get("lastModifiedAt") or item.get("time")),
        )
