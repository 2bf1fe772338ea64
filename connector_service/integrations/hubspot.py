"""HubSpot provider implementation."""

from typing import Dict, Any, Mapping
import logging

import httpx

from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import TokenSet, WebhookEvent

logger = logging.getLogger(__name__)


@ProviderRegistry.register("hubspot")
class HubSpotProvider(BaseProvider):
    """HubSpot CRM provider."""

    subscription_extra_key = "hub_id"
    signature_header = "X-HubSpot-Signature"
    test_endpoint = "/account-info/v3/details"
    sync_endpoints = {
        "contacts": "/crm/v3/objects/contacts",
        "companies": "/crm/v3/objects/companies",
        "deals": "/crm/v3/objects/deals",
    }

    async def build_token_set(self, data: Dict[str, Any], extra: Dict[str, Any]) -> TokenSet:
        """Attach the portal (hub) id the token belongs to."""
        token_set = TokenSet.from_token_response(data)
        info = await self._token_info(token_set.access_token)
        if info.get("hub_id") is not None:
            token_set.provider_extras["hub_id"] = str(info["hub_id"])
        if info.get("user"):
            token_set.provider_extras["user"] = info["user"]
        return token_set

    async def _token_info(self, access_token: str) -> Dict[str, Any]:
        url = f"{self.config['api_base_url']}/oauth/v1/access-tokens/{access_token}"
        try:
            response = await self._send("GET", url)
        except httpx.TransportError as e:
            logger.warning(f"HubSpot token info lookup failed: {e}")
            return {}
        if response.status_code != 200:
            logger.warning(f"HubSpot token info lookup returned {response.status_code}")
            return {}
        return response.json()

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        # HubSpot posts an array of subscription events
        portal_id = item.get("portalId")
        event_id = item.get("eventId")
        return self.make_event(
            event_id=str(event_id) if event_id is not None else self.fingerprint(item),
            event_type=item.get("subscriptionType", "unknown"),
            object_id=str(item["objectId"]) if item.get("objectId") is not None else None,
            subscription_id=str(portal_id) if portal_id is not None else None,
            data=item,
            timestamp=self.parse_timestamp(item.get("occurredAt")),
        )
