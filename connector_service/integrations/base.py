"""Base provider class and utilities."""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Mapping, Tuple, FrozenSet
from datetime import datetime, timezone
import base64
import hashlib
import hmac
import json
import logging
import urllib.parse

from tenacity import retry, stop_after_attempt, retry_if_exception_type, retry_if_result
import httpx

from connector_service.core.config import Settings, PROVIDER_CONFIGS
from connector_service.core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    InvalidCredentials,
    InvalidPayload,
    MissingParameter,
    OAuthExchangeError,
    ProviderRequestError,
    RateLimitError,
    ReauthRequired,
    SignatureInvalid,
    Unauthorized,
    UnsupportedFlow,
)
from connector_service.models import (
    Credentials,
    IntegrationConnection,
    SyncResult,
    TokenSet,
    WebhookEvent,
)
from connector_service.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# OAuth error codes that mean the refresh token will never work again.
INVALID_GRANT_ERRORS = {"invalid_grant", "invalid_token", "unauthorized_client", "invalid_client"}

# Statuses worth another attempt when the request is idempotent
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS", "PUT", "DELETE"}


def is_retryable_response(response: httpx.Response) -> bool:
    return response.status_code in RETRYABLE_STATUS_CODES


def wait_for_provider(retry_state) -> float:
    """Honor a numeric Retry-After header, otherwise back off exponentially."""
    settings = retry_state.args[0].settings
    outcome = retry_state.outcome
    if outcome is not None and not outcome.failed:
        retry_after = outcome.result().headers.get("Retry-After", "").strip()
        if retry_after.isdigit():
            return min(float(retry_after), settings.provider_retry_max_wait_seconds)
    backoff = settings.provider_retry_backoff_seconds * 2 ** (retry_state.attempt_number - 1)
    return min(backoff, settings.provider_retry_max_wait_seconds)


def return_last_outcome(retry_state) -> httpx.Response:
    """Give the caller the last response (or re-raise the last error) once attempts run out."""
    return retry_state.outcome.result()


class BaseProvider(ABC):
    """Base class for all providers.

    One subclass per provider key, registered with ``ProviderRegistry``.
    Subclasses localize the provider's quirks: extra authorization
    parameters, token endpoint conventions, API hosts, webhook signature
    schemes and payload shapes.
    """

    provider_id: str = ""
    is_calendar: bool = False
    supports_oauth: bool = True

    # Fields a tenant submits to connect without OAuth; access_token first
    credential_fields: Tuple[str, ...] = ()

    # Key in credential extras identifying the provider account that webhooks
    # are addressed to (HubSpot portal, Slack team, Shopify shop, ...).
    subscription_extra_key: Optional[str] = None

    # Webhook signature header and encoding of the HMAC digest
    signature_header: Optional[str] = None
    signature_encoding: str = "hex"

    # Query parameters echoed back on a verification handshake
    challenge_params: Tuple[str, ...] = ("hub.challenge",)
    # Handshake may arrive as a POST (Microsoft Graph)
    post_challenge: bool = False
    # Endpoint URL is validated with a bare GET that expects 200 (Mailchimp)
    bare_get_validation: bool = False

    # Event types that mean the tenant removed the app on the provider side
    uninstall_events: FrozenSet[str] = frozenset()

    # entity name -> API path, pulled on every sync
    sync_endpoints: Dict[str, str] = {}
    test_endpoint: Optional[str] = None

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        store=None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.settings = settings
        self.http_client = http_client
        self.store = store
        self.rate_limiter = rate_limiter
        self.config = PROVIDER_CONFIGS[self.provider_id]

    # Configuration

    def _setting(self, name: str) -> Optional[str]:
        return self.settings.provider_setting(self.config["settings_prefix"], name)

    @property
    def client_id(self) -> str:
        value = self._setting("client_id")
        if not value:
            raise ConfigurationError(f"{self.config['name']} client id is not configured", self.provider_id)
        return value

    @property
    def client_secret(self) -> str:
        value = self._setting("client_secret")
        if not value:
            raise ConfigurationError(f"{self.config['name']} client secret is not configured", self.provider_id)
        return value

    @property
    def redirect_uri(self) -> str:
        return self._setting("redirect_uri") or (
            f"{self.settings.public_base_url.rstrip('/')}/api/v1/integrations/{self.provider_id}/callback"
        )

    @property
    def webhook_secret(self) -> Optional[str]:
        return self._setting("webhook_secret")

    @property
    def calendar_provider(self) -> Optional[str]:
        return self.config.get("calendar_provider")

    @property
    def scope(self) -> str:
        return self.config.get("scope_separator", " ").join(self.config["scopes"])

    # OAuth flow

    def authorization_endpoint(self, extra: Dict[str, Any]) -> str:
        return self.config["auth_url"]

    def authorization_params(self, state: str, extra: Dict[str, Any]) -> Dict[str, str]:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
        }
        if self.scope:
            params["scope"] = self.scope
        return params

    def _require_oauth(self) -> None:
        if not self.supports_oauth:
            raise UnsupportedFlow(f"{self.config['name']} connects with submitted credentials", self.provider_id)

    def build_authorization_url(self, state: str, extra: Optional[Dict[str, Any]] = None) -> str:
        """Generate the provider consent URL carrying ``state``."""
        self._require_oauth()
        extra = extra or {}
        params = self.authorization_params(state, extra)
        return f"{self.authorization_endpoint(extra)}?{urllib.parse.urlencode(params)}"

    def token_endpoint(self, extra: Dict[str, Any]) -> str:
        return self.config["token_url"]

    def token_request(self, code: str, extra: Dict[str, Any]) -> Dict[str, str]:
        return {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "code": code,
        }

    def refresh_request(self, credentials: Credentials) -> Dict[str, str]:
        return {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": credentials.refresh_token,
        }

    def refresh_endpoint(self, credentials: Credentials) -> str:
        return self.config["token_url"]

    async def post_token_request(self, url: str, data: Dict[str, str]) -> httpx.Response:
        """Send a token request. Override for JSON bodies or client auth.

        Codes and rotating refresh tokens are single use, so token requests
        go through ``_send_once``.
        """
        return await self._send_once(
            "POST",
            url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
        )

    def _token_body(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def exchange_code(self, code: str, extra: Optional[Dict[str, Any]] = None) -> TokenSet:
        """Exchange an authorization code for a token set."""
        self._require_oauth()
        extra = extra or {}
        if not code:
            raise MissingParameter("code", provider=self.provider_id)

        try:
            response = await self.post_token_request(self.token_endpoint(extra), self.token_request(code, extra))
        except httpx.TransportError as e:
            raise OAuthExchangeError(f"Token exchange failed: {e}", self.provider_id) from e

        body = self._token_body(response)
        if response.status_code >= 400 or "access_token" not in body:
            reason = body.get("error_description") or body.get("error") or response.text
            raise OAuthExchangeError(f"Token exchange failed: {reason}", self.provider_id)

        return await self.build_token_set(body, extra)

    async def build_token_set(self, data: Dict[str, Any], extra: Dict[str, Any]) -> TokenSet:
        """Normalize a token response. Override to capture provider extras."""
        return TokenSet.from_token_response(data)

    async def refresh_token(self, credentials: Credentials) -> TokenSet:
        """Refresh an access token.

        Raises ReauthRequired when no refresh token is stored or the provider
        reports an invalid grant, ProviderRequestError for anything transient.
        """
        if not credentials.refresh_token:
            raise ReauthRequired("No refresh token available", self.provider_id)

        try:
            response = await self.post_token_request(self.refresh_endpoint(credentials), self.refresh_request(credentials))
        except httpx.TransportError as e:
            raise ProviderRequestError(f"Token refresh failed: {e}", self.provider_id) from e

        body = self._token_body(response)
        if response.status_code == 401 or (
            response.status_code == 400 and body.get("error") in INVALID_GRANT_ERRORS
        ):
            raise ReauthRequired(f"Token refresh rejected: {body.get('error', response.status_code)}", self.provider_id)
        if response.status_code >= 400 or "access_token" not in body:
            raise ProviderRequestError(
                f"Token refresh failed: {response.text}", self.provider_id, status_code=response.status_code
            )

        return await self.build_refresh_token_set(body, credentials)

    async def build_refresh_token_set(self, data: Dict[str, Any], credentials: Credentials) -> TokenSet:
        return TokenSet.from_token_response(data)

    def credentials_token_set(self, submitted: Dict[str, Any]) -> TokenSet:
        """Build a token set from credentials a tenant submitted directly."""
        if not self.credential_fields:
            raise UnsupportedFlow(f"{self.config['name']} connects through OAuth", self.provider_id)
        for field in self.credential_fields:
            if not submitted.get(field):
                raise InvalidCredentials(f"Missing required credential: {field}", self.provider_id)

        token_field, *extra_fields = self.credential_fields
        return TokenSet(
            access_token=str(submitted[token_field]),
            provider_extras={field: str(submitted[field]) for field in extra_fields},
        )

    async def revoke(self, credentials: Optional[Credentials]) -> None:
        """Revoke tokens on the provider side (no-op unless overridden)."""
        pass

    # API access

    def api_base_url(self, credentials: Credentials) -> str:
        return self.config["api_base_url"]

    def auth_headers(self, credentials: Credentials) -> Dict[str, str]:
        return {"Authorization": f"{credentials.token_type} {credentials.access_token}"}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_for_provider,
        retry=retry_if_exception_type(httpx.TransportError) | retry_if_result(is_retryable_response),
        retry_error_callback=return_last_outcome,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send an idempotent request; transport failures and 408/429/5xx are retried."""
        return await self.http_client.request(method, url, **kwargs)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_for_provider,
        retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
        reraise=True,
    )
    async def _send_once(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request the provider must not see twice.

        Only connect failures are retried; the request never reached the server.
        """
        return await self.http_client.request(method, url, **kwargs)

    async def make_api_request(
        self,
        method: str,
        path: str,
        connection: IntegrationConnection,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an authenticated API request with rate limiting and retries."""
        credentials = connection.credentials
        if credentials is None:
            raise AuthenticationError("Connection has no credentials", self.provider_id)

        if self.rate_limiter is not None and self.settings.rate_limit_enabled:
            limits = self.config["rate_limit"]
            key = f"{self.provider_id}:{connection.tenant_id}"
            if not await self.rate_limiter.check_rate_limit(key, limits["calls"], limits["window"]):
                raise RateLimitError(f"Rate limit exceeded for {key}", self.provider_id)

        url = path if path.startswith("http") else f"{self.api_base_url(credentials)}{path}"
        request_headers = {**self.auth_headers(credentials), **(headers or {})}

        send = self._send if method.upper() in IDEMPOTENT_METHODS else self._send_once
        try:
            response = await send(method, url, headers=request_headers, params=params, json=json)
        except httpx.TransportError as e:
            logger.error(f"API request failed: {e}")
            raise ProviderRequestError(f"API request failed: {e}", self.provider_id) from e

        if response.status_code == 429:
            raise RateLimitError("Rate limit exceeded", self.provider_id, status_code=429)
        if response.status_code == 401:
            raise AuthenticationError("Authentication failed", self.provider_id, status_code=401)
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"API request failed with status {response.status_code}",
                self.provider_id,
                status_code=response.status_code,
            )
        return response

    def extract_results_from_response(self, data: Any, entity: Optional[str] = None) -> List[Dict[str, Any]]:
        """Extract the record list from a response body (override if needed)."""
        if isinstance(data, list):
            return data
        if not isinstance(data, dict):
            return []
        for key in (entity, "results", "data", "items", "value", "records"):
            if key and isinstance(data.get(key), list):
                return data[key]
        return []

    async def test_connection(self, connection: IntegrationConnection) -> bool:
        """Make a cheap authenticated call."""
        try:
            await self.make_api_request("GET", self.test_endpoint, connection)
            return True
        except ProviderRequestError as e:
            logger.error(f"Connection test failed for {self.provider_id}: {e}")
            return False

    async def sync(self, connection: IntegrationConnection) -> SyncResult:
        """Pull each entity in ``sync_endpoints`` and count what came back."""
        result = SyncResult(integration_id=self.provider_id)
        for entity, path in self.sync_endpoints.items():
            response = await self.make_api_request("GET", path, connection, params=self.sync_params(entity))
            result.records[entity] = len(self.extract_results_from_response(response.json(), entity))
        return result

    def sync_params(self, entity: str) -> Optional[Dict[str, Any]]:
        return {"limit": 100}

    # Webhooks

    def compute_signature(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> str:
        digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
        if self.signature_encoding == "base64":
            return base64.b64encode(digest).decode()
        return digest.hex()

    def normalize_signature(self, signature: str) -> str:
        """Strip scheme prefixes such as ``sha256=``."""
        if "=" in signature and self.signature_encoding == "hex":
            return signature.split("=", 1)[1].strip().lower()
        return signature.strip()

    def verify_webhook_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        """Raise Unauthorized or SignatureInvalid unless the request is authentic."""
        signature = headers.get(self.signature_header) if self.signature_header else None
        if not signature:
            raise Unauthorized("Missing webhook signature", self.provider_id)

        secret = self.webhook_secret
        if not secret:
            raise SignatureInvalid("Webhook secret is not configured", self.provider_id)

        expected = self.compute_signature(secret, raw_body, headers)
        if not hmac.compare_digest(expected, self.normalize_signature(signature)):
            raise SignatureInvalid("Invalid webhook signature", self.provider_id)

    def verification_challenge(self, query: Mapping[str, str]) -> Optional[str]:
        """Value to echo for a query-string handshake, or None if this isn't one."""
        for param in self.challenge_params:
            value = query.get(param)
            if value:
                return value
        return None

    def handshake_challenge(self, raw_body: bytes) -> Optional[str]:
        """Challenge value for a verification POST, if this is one."""
        return None

    def load_payload(self, raw_body: bytes) -> Any:
        try:
            return json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidPayload("Invalid JSON payload", self.provider_id) from e

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> List[WebhookEvent]:
        """Normalize a webhook body into one event per payload item."""
        payload = self.load_payload(raw_body)
        items = payload if isinstance(payload, list) else [payload]
        events = []
        for item in items:
            if not isinstance(item, dict):
                raise InvalidPayload("Unexpected webhook payload item", self.provider_id)
            events.append(self.normalize_event(item, headers))
        return events

    @abstractmethod
    def normalize_event(self, item: Dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        pass

    def subscription_id_from_credentials(self, credentials: Credentials) -> Optional[str]:
        if not self.subscription_extra_key:
            return None
        value = credentials.extras.get(self.subscription_extra_key)
        return str(value) if value is not None else None

    async def handle_webhook(self, event: WebhookEvent) -> None:
        """Apply an event. The default records it idempotently."""
        is_new = await self.store.record_webhook_event(event)
        logger.info(
            "Webhook event applied",
            extra={
                "integration_id": self.provider_id,
                "tenant_id": event.tenant_id,
                "event_type": event.event_type,
                "duplicate": not is_new,
            },
        )

    # Helpers for subclasses

    @staticmethod
    def fingerprint(item: Any) -> str:
        """Stable id for payloads that carry none."""
        raw = json.dumps(item, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    @staticmethod
    def parse_timestamp(value: Any) -> Optional[datetime]:
        """Accept epoch seconds or milliseconds, or an ISO 8601 string."""
        if value is None or value == "":
            return None
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
            number = float(value)
            if number > 10 ** 11:
                number /= 1000
            return datetime.fromtimestamp(number, tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    def make_event(self, timestamp: Optional[datetime] = None, **fields: Any) -> WebhookEvent:
        if timestamp is not None:
            fields["timestamp"] = timestamp
        return WebhookEvent(integration_id=self.provider_id, **fields)
