"""Shopify provider implementation."""

from typing import Dict, Any, Mapping, Optional
import re
import logging

import httpx

from connector_service.core.exceptions import MissingParameter
from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import Credentials, TokenSet, WebhookEvent

logger = logging.getLogger(__name__)

SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


def normalize_shop_domain(shop: Optional[str]) -> str:
    """Turn ``my-store``, ``https://my-store.myshopify.com/`` etc. into a bare shop host."""
    if not shop:
        raise MissingParameter("shop", "Shop parameter is required", provider="shopify")
    domain = shop.strip().lower()
    domain = re.sub(r"^https?://", "", domain).rstrip("/")
    if "." not in domain:
        domain = f"{domain}.myshopify.com"
    if not SHOP_DOMAIN_RE.match(domain):
        raise MissingParameter("shop", f"Invalid shop domain: {shop}", provider="shopify")
    return domain


@ProviderRegistry.register("shopify")
class ShopifyProvider(BaseProvider):
    """Shopify e-commerce provider.

    Every shop has its own OAuth and API host, so the caller must supply the
    ``shop`` parameter at authorization and exchange time. Offline access
    tokens never expire and come without a refresh token. Custom-app admin
    tokens can be submitted directly together with the shop.
    """

    credential_fields = ("access_token", "shop")
    subscription_extra_key = "shop"
    signature_header = "X-Shopify-Hmac-Sha256"
    signature_encoding = "base64"
    uninstall_events = frozenset({"app/uninstalled"})
    test_endpoint = "/shop.json"
    sync_endpoints = {
        "products": "/products.json",
        "orders": "/orders.json",
        "customers": "/customers.json",
    }

    def authorization_endpoint(self, extra: Dict[str, Any]) -> str:
        return self.config["auth_url"].format(shop=normalize_shop_domain(extra.get("shop")))

    def authorization_params(self, state: str, extra: Dict[str, Any]) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "scope": self.scope,
            "redirect_uri": self.redirect_uri,
            "state": state,
        }

    def token_endpoint(self, extra: Dict[str, Any]) -> str:
        return self.config["token_url"].format(shop=normalize_shop_domain(extra.get("shop")))

    def token_request(self, code: str, extra: Dict[str, Any]) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }

    async def post_token_request(self, url: str, data: Dict[str, str]) -> httpx.Response:
        return await self._send_once("POST", url, json=data, headers={"Accept": "application/json"})

    async def build_token_set(self, data: Dict[str, Any], extra: Dict[str, Any]) -> TokenSet:
        return TokenSet.from_token_response(data, shop=normalize_shop_domain(extra.get("shop")))

    def credentials_token_set(self, submitted: Dict[str, Any]) -> TokenSet:
        token_set = super().credentials_token_set(submitted)
        token_set.provider_extras["shop"] = normalize_shop_domain(token_set.provider_extras["shop"])
        return token_set

    def auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        return {"X-Shopify-Access-Token": credentials.access_token}

    def api_base_url(self, credentials: Credentials) -> str:
        return f"https://{credentials.extras['shop']}/admin/api/{self.config['api_version']}"

    def sync_params(self, entity: str) -> Optional[Dict[str, Any]]:
        params = {"limit": 250}
        if entity == "orders":
            params["status"] = "any"
        return params

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        # Topic, shop and delivery id travel in headers; the body is the resource
        object_id = item.get("id")
        return self.make_event(
            event_id=headers.get("X-Shopify-Webhook-Id") or self.fingerprint(item),
            event_type=headers.get("X-Shopify-Topic", "unknown"),
            object_id=str(object_id) if object_id is not None else None,
            subscription_id=(headers.get("X-Shopify-Shop-Domain") or "").lower() or None,
            data=item,
            timestamp=self.parse_timestamp(headers.get("X-Shopify-Triggered-At") or item.get("updated_at")),
        )
