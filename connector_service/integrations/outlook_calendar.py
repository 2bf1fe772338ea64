"""Outlook Calendar provider implementation."""

from typing import Dict, Any, List, Mapping, Optional
import hmac

from connector_service.core.exceptions import InvalidPayload, SignatureInvalid, Unauthorized
from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import Credentials, WebhookEvent


@ProviderRegistry.register("outlook-calendar")
class OutlookCalendarProvider(BaseProvider):
    """Outlook Calendar provider backed by Microsoft Graph.

    Graph change notifications are batched under ``value`` and authenticated
    by the ``clientState`` registered with the subscription.
    """

    is_calendar = True
    challenge_params = ("validationToken",)
    post_challenge = True
    test_endpoint = "/me"
    sync_endpoints = {
        "calendars": "/me/calendars",
        "events": "/me/events",
    }

    def token_request(self, code: str, extra: Dict[str, Any]) -> Dict[str, str]:
        data = super().token_request(code, extra)
        data["scope"] = self.scope
        return data

    def refresh_request(self, credentials: Credentials) -> Dict[str, str]:
        data = super().refresh_request(credentials)
        data["scope"] = self.scope
        return data

    def sync_params(self, entity: str) -> Optional[Dict[str, Any]]:
        return {"$top": 100}

    def _notifications(self, raw_body: bytes) -> List[Dict[str, Any]]:
        payload = self.load_payload(raw_body)
        if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
            raise InvalidPayload("Expected a notification collection", self.provider_id)
        return payload["value"]

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        notifications = self._notifications(raw_body)
        secret = self.webhook_secret
        for notification in notifications:
            client_state = notification.get("clientState")
            if not client_state:
                raise Unauthorized("Missing clientState", self.provider_id)
            if not secret or not hmac.compare_digest(str(client_state), secret):
                raise SignatureInvalid("Invalid clientState", self.provider_id)

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> List[WebhookEvent]:
        return [self.normalize_event(item, headers) for item in self._notifications(raw_body)]

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        resource_data = item.get("resourceData") or {}
        data = {k: v for k, v in item.items() if k != "clientState"}
        return self.make_event(
            event_id=self.fingerprint(data),
            event_type=item.get("changeType", "unknown"),
            object_id=resource_data.get("id"),
            subscription_id=item.get("subscriptionId"),
            data=data,
        )
