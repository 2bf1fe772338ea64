"""Mailchimp provider implementation."""

from typing import Dict, Any, List, Mapping
import urllib.parse
import logging

import httpx

from connector_service.core.exceptions import InvalidPayload, OAuthExchangeError
from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import Credentials, TokenSet, WebhookEvent

logger = logging.getLogger(__name__)


def _unflatten_form(pairs: List[tuple]) -> Dict[str, Any]:
    """Turn ``data[merges][EMAIL]=x`` style keys into nested dicts."""
    result: Dict[str, Any] = {}
    for key, value in pairs:
        parts = key.replace("]", "").split("[")
        target = result
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = value
    return result


@ProviderRegistry.register("mailchimp")
class MailchimpProvider(BaseProvider):
    """Mailchimp marketing provider.

    Mailchimp tokens do not expire. The API host depends on the account's
    data center, found through the OAuth metadata endpoint after exchange.
    Webhooks arrive form-encoded, one event per request; the URL is
    checked with a plain GET when the webhook is registered.
    """

    signature_header = "X-Mailchimp-Signature"
    bare_get_validation = True
    test_endpoint = "/ping"
    sync_endpoints = {
        "lists": "/lists",
        "campaigns": "/campaigns",
    }

    async def build_token_set(self, data: Dict[str, Any], extra: Dict[str, Any]) -> TokenSet:
        token_set = TokenSet.from_token_response(data)
        try:
            response = await self._send(
                "GET",
                self.config["metadata_url"],
                headers={"Authorization": f"OAuth {token_set.access_token}"},
            )
        except httpx.TransportError as e:
            raise OAuthExchangeError(f"Metadata lookup failed: {e}", self.provider_id) from e
        if response.status_code != 200:
            raise OAuthExchangeError("Metadata lookup failed", self.provider_id)

        metadata = response.json()
        token_set.provider_extras.update({
            "server_prefix": metadata.get("dc"),
            "api_endpoint": metadata.get("api_endpoint"),
            "account_name": metadata.get("accountname"),
        })
        return token_set

    def api_base_url(self, credentials: Credentials) -> str:
        return f"https://{credentials.extras['server_prefix']}.api.mailchimp.com/3.0"

    def sync_params(self, entity: str):
        return {"count": 100}

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> List[WebhookEvent]:
        try:
            pairs = urllib.parse.parse_qsl(raw_body.decode(), keep_blank_values=True, strict_parsing=True)
        except (UnicodeDecodeError, ValueError) as e:
            raise InvalidPayload("Invalid form payload", self.provider_id) from e
        return [self.normalize_event(_unflatten_form(pairs), headers)]

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        data = item.get("data") or {}
        return self.make_event(
            event_id=self.fingerprint(item),
            event_type=item.get("type", "unknown"),
            object_id=data.get("id") or data.get("email"),
            subscription_id=data.get("list_id"),
            data=item,
            timestamp=self.parse_timestamp(item.get("fired_at", "").replace(" ", "T")),
        )
