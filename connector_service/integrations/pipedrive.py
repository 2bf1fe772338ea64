"""Pipedrive provider implementation."""

from typing import Dict, Any, Mapping
import logging

import httpx

from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import Credentials, TokenSet, WebhookEvent

logger = logging.getLogger(__name__)


@ProviderRegistry.register("pipedrive")
class PipedriveProvider(BaseProvider):
    """Pipedrive CRM provider.

    The token endpoint authenticates the client with HTTP Basic auth, and
    each company has its own ``api_domain``.
    """

    subscription_extra_key = "company_id"
    signature_header = "X-Pipedrive-Signature"
    test_endpoint = "/users/me"
    sync_endpoints = {
        "deals": "/deals",
        "persons": "/persons",
        "organizations": "/organizations",
    }

    def token_request(self, code: str, extra: Dict[str, Any]) -> Dict[str, str]:
        return {
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
            "code": code,
        }

    def refresh_request(self, credentials: Credentials) -> Dict[str, str]:
        return {"grant_type": "refresh_token", "refresh_token": credentials.refresh_token}

    async def post_token_request(self, url: str, data: Dict[str, str]) -> httpx.Response:
        return await self._send_once(
            "POST",
            url,
            data=data,
            auth=(self.client_id, self.client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
        )

    async def build_token_set(self, data: Dict[str, Any], extra: Dict[str, Any]) -> TokenSet:
        token_set = TokenSet.from_token_response(data, api_domain=data.get("api_domain"))
        company_id = await self._company_id(token_set)
        if company_id is not None:
            token_set.provider_extras["company_id"] = str(company_id)
        return token_set

    async def build_refresh_token_set(self, data: Dict[str, Any], credentials: Credentials) -> TokenSet:
        return TokenSet.from_token_response(data, api_domain=data.get("api_domain"))

    async def _company_id(self, token_set: TokenSet):
        api_domain = token_set.provider_extras.get("api_domain")
        if not api_domain:
            return None
        try:
            response = await self._send(
                "GET",
                f"{api_domain.rstrip('/')}/api/v1/users/me",
                headers={"Authorization": f"Bearer {token_set.access_token}"},
            )
        except httpx.TransportError as e:
            logger.warning(f"Pipedrive user lookup failed: {e}")
            return None
        if response.status_code != 200:
            return None
        return (response.json().get("data") or {}).get("company_id")

    def api_base_url(self, credentials: Credentials) -> str:
        return f"{credentials.extras.get('api_domain', self.config['api_base_url']).rstrip('/')}/api/v1"

    def sync_params(self, entity: str):
        return {"limit": 100}

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        meta = item.get("meta") or {}
        current = item.get("current") or item.get("previous") or {}
        company_id = meta.get("company_id")
        object_id = meta.get("id") or current.get("id")
        webhook_id = meta.get("webhook_id")
        event_id = f"{webhook_id}:{meta.get('timestamp_micro') or meta.get('timestamp')}" if webhook_id else None
        return self.make_event(
            event_id=event_id or self.fingerprint(item),
            event_type=item.get("event") or f"{meta.get('action', 'unknown')}.{meta.get('object', 'unknown')}",
            object_id=str(object_id) if object_id is not None else None,
            subscription_id=str(company_id) if company_id is not None else None,
            data=item,
            timestamp=self.parse_timestamp(meta.get("timestamp")),
        )
