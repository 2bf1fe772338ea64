"""Google Calendar provider implementation."""

from typing import Dict, Any, List, Mapping, Optional
import hmac
import logging

import httpx

from connector_service.core.exceptions import SignatureInvalid, Unauthorized
from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import Credentials, WebhookEvent

logger = logging.getLogger(__name__)


@ProviderRegistry.register("google-calendar")
class GoogleCalendarProvider(BaseProvider):
    """Google Calendar provider.

    Push notifications carry no body; channel, resource and state travel in
    ``X-Goog-*`` headers and the channel token set at watch time stands in
    for a signature.
    """

    is_calendar = True
    signature_header = "X-Goog-Channel-Token"
    test_endpoint = "/users/me/calendarList"
    sync_endpoints = {
        "calendars": "/users/me/calendarList",
        "events": "/calendars/primary/events",
    }

    def authorization_params(self, state: str, extra: Dict[str, Any]) -> Dict[str, str]:
        params = super().authorization_params(state, extra)
        # Offline access with forced consent so a refresh token is always issued
        params.update({"access_type": "offline", "prompt": "consent", "include_granted_scopes": "true"})
        return params

    def sync_params(self, entity: str) -> Optional[Dict[str, Any]]:
        if entity == "events":
            return {"maxResults": 250, "singleEvents": "true"}
        return {"maxResults": 250}

    async def revoke(self, credentials: Optional[Credentials]) -> None:
        if credentials is None:
            return
        token = credentials.refresh_token or credentials.access_token
        try:
            response = await self._send("POST", self.config["revoke_url"], params={"token": token})
        except httpx.TransportError as e:
            logger.warning(f"Google token revocation failed: {e}")
            return
        if response.status_code >= 400:
            logger.warning(f"Google token revocation returned {response.status_code}")

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        token = headers.get(self.signature_header)
        if not token:
            raise Unauthorized("Missing channel token", self.provider_id)
        secret = self.webhook_secret
        if not secret or not hmac.compare_digest(token, secret):
            raise SignatureInvalid("Invalid channel token", self.provider_id)

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> List[WebhookEvent]:
        return [self.normalize_event({}, headers)]

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        channel_id = headers.get("X-Goog-Channel-ID")
        message_number = headers.get("X-Goog-Message-Number")
        data = {
            "resource_id": headers.get("X-Goog-Resource-ID"),
            "resource_uri": headers.get("X-Goog-Resource-URI"),
            "channel_expiration": headers.get("X-Goog-Channel-Expiration"),
        }
        return self.make_event(
            event_id=f"{channel_id}:{message_number}" if message_number else self.fingerprint(data),
            event_type=headers.get("X-Goog-Resource-State", "unknown"),
            object_id=data["resource_id"],
            subscription_id=channel_id,
            data=data,
        )
