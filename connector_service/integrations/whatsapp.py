"""WhatsApp Business provider implementation."""

from typing import Dict, Any, List, Mapping, Optional
import hmac
import logging

from connector_service.core.exceptions import InvalidPayload, ProviderRequestError, VerificationFailed
from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import IntegrationConnection, SyncResult, WebhookEvent

logger = logging.getLogger(__name__)


@ProviderRegistry.register("whatsapp")
class WhatsAppProvider(BaseProvider):
    """WhatsApp Business (Cloud API) provider.

    Tenants connect by submitting a system-user access token together with
    their phone number and business account ids; there is no OAuth flow.
    Webhooks are addressed to a phone number id and signed with the app
    secret in ``X-Hub-Signature-256``. The subscription handshake is a GET
    that must carry the configured verify token.
    """

    supports_oauth = False
    credential_fields = ("access_token", "phone_number_id", "business_account_id")
    subscription_extra_key = "phone_number_id"
    signature_header = "X-Hub-Signature-256"
    sync_entities = ("phone_numbers", "message_templates")

    def verification_challenge(self, query: Mapping[str, str]) -> Optional[str]:
        challenge = query.get("hub.challenge")
        if not challenge:
            return None

        verify_token = self._setting("verify_token")
        if not verify_token:
            raise VerificationFailed("Verify token is not configured", self.provider_id)
        submitted = query.get("hub.verify_token") or ""
        if query.get("hub.mode") != "subscribe" or not hmac.compare_digest(
            submitted.encode(), verify_token.encode()
        ):
            raise VerificationFailed("Invalid verify token", self.provider_id)
        return challenge

    async def test_connection(self, connection: IntegrationConnection) -> bool:
        phone_number_id = connection.credentials.extras.get("phone_number_id")
        try:
            await self.make_api_request("GET", f"/{phone_number_id}", connection)
            return True
        except ProviderRequestError as e:
            logger.error(f"Connection test failed for whatsapp: {e}")
            return False

    async def sync(self, connection: IntegrationConnection) -> SyncResult:
        account_id = connection.credentials.extras["business_account_id"]
        result = SyncResult(integration_id=self.provider_id)
        for entity in self.sync_entities:
            response = await self.make_api_request(
                "GET", f"/{account_id}/{entity}", connection, params=self.sync_params(entity)
            )
            result.records[entity] = len(self.extract_results_from_response(response.json(), entity))
        return result

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> List[WebhookEvent]:
        """One event per inbound message and per delivery status update."""
        payload = self.load_payload(raw_body)
        if not isinstance(payload, dict) or payload.get("object") != "whatsapp_business_account":
            raise InvalidPayload("Unexpected WhatsApp payload", self.provider_id)

        events = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    continue
                value = change.get("value") or {}
                phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
                for message in value.get("messages") or []:
                    events.append(self.normalize_event({"message": message, "phone_number_id": phone_number_id}, headers))
                for status in value.get("statuses") or []:
                    events.append(self.normalize_event({"status": status, "phone_number_id": phone_number_id}, headers))
        return events

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        phone_number_id = item.get("phone_number_id")
        if "status" in item:
            status = item["status"]
            message_id = status.get("id")
            return self.make_event(
                event_id=f"{message_id}:{status.get('status')}" if message_id else self.fingerprint(status),
                event_type=f"message.{status.get('status', 'unknown')}",
                object_id=message_id,
                subscription_id=phone_number_id,
                data=status,
                timestamp=self.parse_timestamp(status.get("timestamp")),
            )

        message = item.get("message") or {}
        return self.make_event(
            event_id=message.get("id") or self.fingerprint(message),
            event_type="message.received",
            object_id=message.get("from"),
            subscription_id=phone_number_id,
            data=message,
            timestamp=self.parse_timestamp(message.get("timestamp")),
        )
