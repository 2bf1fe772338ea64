"""Salesforce provider implementation."""

from typing import Dict, Any, Mapping, Optional
import logging

from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import Credentials, IntegrationConnection, SyncResult, TokenSet, WebhookEvent

logger = logging.getLogger(__name__)

# SOQL queries pulled on every sync
SYNC_QUERIES = {
    "accounts": "SELECT Id, Name, LastModifiedDate FROM Account ORDER BY LastModifiedDate DESC LIMIT 200",
    "contacts": "SELECT Id, Email, LastModifiedDate FROM Contact ORDER BY LastModifiedDate DESC LIMIT 200",
    "opportunities": "SELECT Id, StageName, LastModifiedDate FROM Opportunity ORDER BY LastModifiedDate DESC LIMIT 200",
}


def _organization_id(identity_url: Optional[str]) -> Optional[str]:
    # https://login.salesforce.com/id/<org id>/<user id>
    if not identity_url:
        return None
    parts = identity_url.rstrip("/").split("/")
    return parts[-2] if len(parts) >= 2 else None


@ProviderRegistry.register("salesforce")
class SalesforceProvider(BaseProvider):
    """Salesforce CRM provider."""

    subscription_extra_key = "organization_id"
    signature_header = "X-SFDC-Signature"
    signature_encoding = "base64"
    test_endpoint = "/limits"

    def authorization_params(self, state: str, extra: Dict[str, Any]) -> Dict[str, str]:
        params = super().authorization_params(state, extra)
        params["prompt"] = "consent"
        return params

    async def build_token_set(self, data: Dict[str, Any], extra: Dict[str, Any]) -> TokenSet:
        return TokenSet.from_token_response(
            data,
            instance_url=data.get("instance_url"),
            organization_id=_organization_id(data.get("id")),
            identity_url=data.get("id"),
        )

    async def build_refresh_token_set(self, data: Dict[str, Any], credentials: Credentials) -> TokenSet:
        # Refresh responses may move the org to another instance
        return TokenSet.from_token_response(data, instance_url=data.get("instance_url"))

    def api_base_url(self, credentials: Credentials) -> str:
        instance_url = credentials.extras.get("instance_url", "").rstrip("/")
        return f"{instance_url}/services/data/{self.config['api_version']}"

    async def sync(self, connection: IntegrationConnection) -> SyncResult:
        result = SyncResult(integration_id=self.provider_id)
        for entity, query in SYNC_QUERIES.items():
            response = await self.make_api_request("GET", "/query", connection, params={"q": query})
            result.records[entity] = len(self.extract_results_from_response(response.json(), "records"))
        return result

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        event = item.get("event") or {}
        sobject = item.get("sobject") or {}
        replay_id = event.get("replayId")
        return self.make_event(
            event_id=str(replay_id) if replay_id is not None else self.fingerprint(item),
            event_type=event.get("type") or item.get("type") or "unknown",
            object_id=sobject.get("Id"),
            subscription_id=item.get("organizationId"),
            data=item,
            timestamp=self.parse_timestamp(event.get("createdDate")),
        )
