"""Slack provider implementation."""

from typing import Dict, Any, Mapping, Optional
import hashlib
import hmac
import time
import logging

import httpx

from connector_service.core.exceptions import (
    InvalidPayload,
    OAuthExchangeError,
    ProviderRequestError,
    ReauthRequired,
    SignatureInvalid,
    Unauthorized,
)
from connector_service.integrations.base import BaseProvider
from connector_service.integrations.registry import ProviderRegistry
from connector_service.models import Credentials, IntegrationConnection, SyncResult, TokenSet, WebhookEvent

logger = logging.getLogger(__name__)

# Requests older than this are rejected as possible replays
SIGNATURE_TOLERANCE_SECONDS = 300

# Errors from oauth.v2.access that mean the tenant must install again
REAUTH_ERRORS = {"invalid_refresh_token", "invalid_grant", "token_revoked", "account_inactive"}


@ProviderRegistry.register("slack")
class SlackProvider(BaseProvider):
    """Slack provider (bot token installs).

    Slack answers most failures with HTTP 200 and ``{"ok": false}``.
    """

    subscription_extra_key = "team_id"
    signature_header = "X-Slack-Signature"
    uninstall_events = frozenset({"app_uninstalled", "tokens_revoked"})

    def token_request(self, code: str, extra: Dict[str, Any]) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "code": code,
        }

    def _token_set(self, data: Dict[str, Any]) -> TokenSet:
        team = data.get("team") or {}
        token_set = TokenSet.from_token_response(
            data,
            team_id=team.get("id"),
            team_name=team.get("name"),
            bot_user_id=data.get("bot_user_id"),
            app_id=data.get("app_id"),
        )
        # Slack reports "bot" but API calls take a Bearer header
        token_set.token_type = "Bearer"
        return token_set

    async def build_token_set(self, data: Dict[str, Any], extra: Dict[str, Any]) -> TokenSet:
        if not data.get("ok"):
            raise OAuthExchangeError(f"Token exchange failed: {data.get('error', 'unknown_error')}", self.provider_id)
        return self._token_set(data)

    async def refresh_token(self, credentials: Credentials) -> TokenSet:
        if not credentials.refresh_token:
            raise ReauthRequired("No refresh token available", self.provider_id)
        try:
            response = await self.post_token_request(self.config["token_url"], self.refresh_request(credentials))
        except httpx.TransportError as e:
            raise ProviderRequestError(f"Token refresh failed: {e}", self.provider_id) from e

        data = self._token_body(response)
        if data.get("ok"):
            return self._token_set(data)
        error = data.get("error", f"status {response.status_code}")
        if error in REAUTH_ERRORS:
            raise ReauthRequired(f"Token refresh rejected: {error}", self.provider_id)
        raise ProviderRequestError(f"Token refresh failed: {error}", self.provider_id, status_code=response.status_code)

    async def call(self, method: str, connection: IntegrationConnection, **params: Any) -> Dict[str, Any]:
        """Call a Web API method and unwrap ``ok: false`` into an error."""
        response = await self.make_api_request("POST", f"/{method}", connection, params=params or None)
        data = response.json()
        if not data.get("ok"):
            raise ProviderRequestError(f"Slack {method} failed: {data.get('error')}", self.provider_id)
        return data

    async def test_connection(self, connection: IntegrationConnection) -> bool:
        try:
            await self.call("auth.test", connection)
            return True
        except ProviderRequestError as e:
            logger.error(f"Connection test failed for slack: {e}")
            return False

    async def sync(self, connection: IntegrationConnection) -> SyncResult:
        channels = await self.call("conversations.list", connection, limit=200, exclude_archived="true")
        users = await self.call("users.list", connection, limit=200)
        return SyncResult(
            integration_id=self.provider_id,
            records={
                "channels": len(channels.get("channels", [])),
                "users": len(users.get("members", [])),
            },
        )

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        signature = headers.get(self.signature_header)
        timestamp = headers.get("X-Slack-Request-Timestamp")
        if not signature or not timestamp:
            raise Unauthorized("Missing webhook signature", self.provider_id)

        secret = self.webhook_secret
        if not secret:
            raise SignatureInvalid("Webhook secret is not configured", self.provider_id)

        try:
            skew = abs(time.time() - int(timestamp))
        except ValueError:
            raise SignatureInvalid("Invalid request timestamp", self.provider_id)
        if skew > SIGNATURE_TOLERANCE_SECONDS:
            raise SignatureInvalid("Request timestamp outside tolerance", self.provider_id)

        basestring = b"v0:" + timestamp.encode() + b":" + raw_body
        expected = "v0=" + hmac.new(secret.encode(), basestring, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise SignatureInvalid("Invalid webhook signature", self.provider_id)

    def handshake_challenge(self, raw_body: bytes) -> Optional[str]:
        payload = self.load_payload(raw_body)
        if isinstance(payload, dict) and payload.get("type") == "url_verification":
            return payload.get("challenge")
        return None

    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        if item.get("type") != "event_callback":
            raise InvalidPayload(f"Unsupported Slack payload type: {item.get('type')}", self.provider_id)
        event = item.get("event") or {}
        return self.make_event(
            event_id=item.get("event_id") or self.fingerprint(item),
            event_type=event.get("type", "unknown"),
            object_id=event.get("channel") or event.get("user"),
            subscription_id=item.get("team_id"),
            data=item,
            timestamp=self.parse_timestamp(item.get("event_time")),
        )
