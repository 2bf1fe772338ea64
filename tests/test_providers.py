"""Tests for provider implementations."""

import base64
import hashlib
import hmac
import json
import time
import urllib.parse
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from connector_service.core.config import PROVIDER_CONFIGS
from connector_service.core.exceptions import (
    ConfigurationError,
    InvalidCredentials,
    InvalidPayload,
    MissingParameter,
    OAuthExchangeError,
    ProviderRequestError,
    RateLimitError,
    ReauthRequired,
    SignatureInvalid,
    UnknownProvider,
    UnsupportedFlow,
    VerificationFailed,
)
from connector_service.integrations import ProviderRegistry
from connector_service.integrations.shopify import normalize_shop_domain
from connector_service.models import Credentials
from connector_service.utils.oauth_state import decode_state

HUBSPOT_TOKEN_URL = "https://api.hubapi.com/oauth/v1/token"


OAUTH_PROVIDERS = sorted(p for p, config in PROVIDER_CONFIGS.items() if "auth_url" in config)


def _query(url: str) -> dict:
    return dict(urllib.parse.parse_qsl(urllib.parse.urlparse(url).query))


class TestRegistry:

    def test_every_configured_provider_is_registered(self):
        assert set(ProviderRegistry.list_types()) == set(PROVIDER_CONFIGS)

    def test_registered_class_knows_its_id(self):
        assert ProviderRegistry.get("hubspot").provider_id == "hubspot"

    def test_unknown_provider(self):
        assert ProviderRegistry.get("myspace") is None
        with pytest.raises(UnknownProvider):
            ProviderRegistry.require("myspace")


class TestAuthorizationUrls:

    @pytest.mark.parametrize("provider_id", OAUTH_PROVIDERS)
    def test_state_round_trips_for_every_provider(self, manager, provider_id):
        extra = {"shop": "demo-store"} if provider_id == "shopify" else {}
        url = manager.build_authorization_url(provider_id, "tenant-42", extra)

        params = _query(url)
        assert decode_state(params["state"], max_age_seconds=600).tenant_id == "tenant-42"
        assert params["client_id"].endswith("-client")
        assert params["redirect_uri"] == f"https://connector.test/api/v1/integrations/{provider_id}/callback"

    def test_missing_client_id_raises_configuration_error(self, manager, settings):
        manager.settings = settings.model_copy(update={"hubspot_client_id": None})
        with pytest.raises(ConfigurationError):
            manager.build_authorization_url("hubspot", "t1")

    def test_configured_redirect_uri_wins(self, manager, settings):
        manager.settings = settings.model_copy(update={"slack_redirect_uri": "https://example.com/cb"})
        params = _query(manager.build_authorization_url("slack", "t1"))
        assert params["redirect_uri"] == "https://example.com/cb"
        assert params["scope"] == "chat:write,channels:read,users:read"

    def test_google_requests_offline_access(self, manager):
        params = _query(manager.build_authorization_url("google-calendar", "t1"))
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"

    def test_shopify_url_uses_shop_host(self, manager):
        url = manager.build_authorization_url("shopify", "t1", {"shop": "demo-store"})
        assert url.startswith("https://demo-store.myshopify.com/admin/oauth/authorize?")

    def test_shopify_requires_shop(self, manager):
        with pytest.raises(MissingParameter) as exc_info:
            manager.build_authorization_url("shopify", "t1")
        assert exc_info.value.parameter == "shop"


class TestShopDomain:

    @pytest.mark.parametrize("value", [
        "demo-store",
        "Demo-Store.myshopify.com",
        "https://demo-store.myshopify.com/",
    ])
    def test_normalizes(self, value):
        assert normalize_shop_domain(value) == "demo-store.myshopify.com"

    @pytest.mark.parametrize("value", [None, "", "evil.com", "demo store"])
    def test_rejects(self, value):
        with pytest.raises(MissingParameter):
            normalize_shop_domain(value)


class TestCodeExchange:

    @pytest.mark.asyncio
    async def test_rejected_code(self, manager, stub):
        stub.add_json("POST", HUBSPOT_TOKEN_URL, {"error": "invalid_grant"}, status_code=400)
        with pytest.raises(OAuthExchangeError, match="invalid_grant"):
            await manager.provider("hubspot").exchange_code("bad-code")

    @pytest.mark.asyncio
    async def test_body_without_access_token(self, manager, stub):
        stub.add_json("POST", HUBSPOT_TOKEN_URL, {"refresh_token": "r1"})
        with pytest.raises(OAuthExchangeError):
            await manager.provider("hubspot").exchange_code("code-1")

    @pytest.mark.asyncio
    async def test_empty_code(self, manager):
        with pytest.raises(MissingParameter):
            await manager.provider("hubspot").exchange_code("")

    @pytest.mark.asyncio
    async def test_salesforce_captures_instance_and_org(self, manager, stub):
        stub.add_json("POST", "https://login.salesforce.com/services/oauth2/token", {
            "access_token": "sf-token",
            "refresh_token": "sf-refresh",
            "instance_url": "https://acme.my.salesforce.com",
            "id": "https://login.salesforce.com/id/00Dxx0000001gPL/005xx000001Sv6e",
            "token_type": "Bearer",
        })
        token_set = await manager.provider("salesforce").exchange_code("code-1")

        assert token_set.provider_extras["instance_url"] == "https://acme.my.salesforce.com"
        assert token_set.provider_extras["organization_id"] == "00Dxx0000001gPL"
        credentials = token_set.to_credentials()
        assert manager.provider("salesforce").api_base_url(credentials) == (
            "https://acme.my.salesforce.com/services/data/v58.0"
        )

    @pytest.mark.asyncio
    async def test_shopify_posts_json_to_shop_host(self, manager, stub):
        stub.add_json("POST", "https://demo-store.myshopify.com/admin/oauth/access_token", {
            "access_token": "shpat_1",
            "scope": "read_products",
        })
        token_set = await manager.provider("shopify").exchange_code("code-1", {"shop": "demo-store"})

        assert token_set.provider_extras["shop"] == "demo-store.myshopify.com"
        assert token_set.expires_in_seconds is None
        request = stub.requests[-1]
        assert json.loads(request.content)["code"] == "code-1"

    @pytest.mark.asyncio
    async def test_pipedrive_uses_basic_auth(self, manager, stub):
        stub.add_json("POST", "https://oauth.pipedrive.com/oauth/token", {
            "access_token": "pd-token",
            "refresh_token": "pd-refresh",
            "expires_in": 3599,
            "api_domain": "https://acme.pipedrive.com",
        })
        stub.add_json("GET", "https://acme.pipedrive.com/api/v1/users/me", {"data": {"company_id": 7781}})

        token_set = await manager.provider("pipedrive").exchange_code("code-1")

        token_request = stub.calls("https://oauth.pipedrive.com/oauth/token")[0]
        assert token_request.headers["Authorization"].startswith("Basic ")
        assert "client_secret" not in urllib.parse.parse_qs(token_request.content.decode())
        assert token_set.provider_extras == {"api_domain": "https://acme.pipedrive.com", "company_id": "7781"}

    @pytest.mark.asyncio
    async def test_slack_ok_false(self, manager, stub):
        stub.add_json("POST", "https://slack.com/api/oauth.v2.access", {"ok": False, "error": "invalid_code"})
        with pytest.raises(OAuthExchangeError):
            await manager.provider("slack").exchange_code("code-1")

    @pytest.mark.asyncio
    async def test_slack_captures_team(self, manager, stub):
        stub.add_json("POST", "https://slack.com/api/oauth.v2.access", {
            "ok": True,
            "access_token": "xoxb-1",
            "token_type": "bot",
            "team": {"id": "T123", "name": "Acme"},
            "bot_user_id": "U999",
            "app_id": "A1",
        })
        token_set = await manager.provider("slack").exchange_code("code-1")

        assert token_set.token_type == "Bearer"
        assert token_set.provider_extras["team_id"] == "T123"

    @pytest.mark.asyncio
    async def test_mailchimp_looks_up_data_center(self, manager, stub):
        stub.add_json("POST", "https://login.mailchimp.com/oauth2/token", {"access_token": "mc-token"})
        stub.add_json("GET", "https://login.mailchimp.com/oauth2/metadata", {
            "dc": "us19",
            "api_endpoint": "https://us19.api.mailchimp.com",
            "accountname": "Acme",
        })
        token_set = await manager.provider("mailchimp").exchange_code("code-1")

        metadata_request = stub.calls("https://login.mailchimp.com/oauth2/metadata")[0]
        assert metadata_request.headers["Authorization"] == "OAuth mc-token"
        assert manager.provider("mailchimp").api_base_url(token_set.to_credentials()) == (
            "https://us19.api.mailchimp.com/3.0"
        )

    @pytest.mark.asyncio
    async def test_mailchimp_metadata_failure(self, manager, stub):
        stub.add_json("POST", "https://login.mailchimp.com/oauth2/token", {"access_token": "mc-token"})
        stub.add_json("GET", "https://login.mailchimp.com/oauth2/metadata", {}, status_code=500)
        with pytest.raises(OAuthExchangeError):
            await manager.provider("mailchimp").exchange_code("code-1")


class TestTokenRefresh:

    @pytest.mark.asyncio
    async def test_invalid_grant_requires_reauth(self, manager, stub):
        stub.add_json("POST", HUBSPOT_TOKEN_URL, {"error": "invalid_grant"}, status_code=400)
        with pytest.raises(ReauthRequired):
            await manager.provider("hubspot").refresh_token(Credentials(access_token="a", refresh_token="r"))

    @pytest.mark.asyncio
    async def test_missing_refresh_token_requires_reauth(self, manager, stub):
        with pytest.raises(ReauthRequired):
            await manager.provider("hubspot").refresh_token(Credentials(access_token="a"))
        assert stub.requests == []

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, manager, stub):
        stub.add_json("POST", HUBSPOT_TOKEN_URL, {"status": "error"}, status_code=502)
        with pytest.raises(ProviderRequestError) as exc_info:
            await manager.provider("hubspot").refresh_token(Credentials(access_token="a", refresh_token="r"))
        assert not isinstance(exc_info.value, ReauthRequired)
        assert exc_info.value.status_code == 502
        assert len(stub.calls(HUBSPOT_TOKEN_URL)) == 1

    @pytest.mark.asyncio
    async def test_read_timeout_is_not_resent(self, manager, stub):
        stub.add_sequence(
            "POST",
            HUBSPOT_TOKEN_URL,
            httpx.ReadTimeout("timed out"),
            httpx.Response(400, json={"error": "invalid_grant"}),
        )

        with pytest.raises(ProviderRequestError) as exc_info:
            await manager.provider("hubspot").refresh_token(Credentials(access_token="a", refresh_token="r"))

        assert not isinstance(exc_info.value, ReauthRequired)
        assert len(stub.calls(HUBSPOT_TOKEN_URL)) == 1

    @pytest.mark.asyncio
    async def test_connect_error_is_retried(self, manager, stub):
        stub.add_sequence(
            "POST",
            HUBSPOT_TOKEN_URL,
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"access_token": "new", "expires_in": 3600}),
        )

        token_set = await manager.provider("hubspot").refresh_token(Credentials(access_token="a", refresh_token="r"))

        assert token_set.access_token == "new"
        assert len(stub.calls(HUBSPOT_TOKEN_URL)) == 2

    @pytest.mark.asyncio
    async def test_code_exchange_not_resent_after_timeout(self, manager, stub):
        stub.add_sequence(
            "POST",
            HUBSPOT_TOKEN_URL,
            httpx.ReadTimeout("timed out"),
            httpx.Response(200, json={"access_token": "tok"}),
        )
        with pytest.raises(OAuthExchangeError):
            await manager.provider("hubspot").exchange_code("code-1")
        assert len(stub.calls(HUBSPOT_TOKEN_URL)) == 1

    @pytest.mark.asyncio
    async def test_outlook_refresh_sends_scope(self, manager, stub):
        stub.add_json("POST", "https://login.microsoftonline.com/common/oauth2/v2.0/token", {
            "access_token": "new", "expires_in": 3600,
        })
        await manager.provider("outlook-calendar").refresh_token(Credentials(access_token="a", refresh_token="r"))
        body = urllib.parse.parse_qs(stub.requests[-1].content.decode())
        assert body["scope"] == ["offline_access User.Read Calendars.ReadWrite"]
        assert body["grant_type"] == ["refresh_token"]


class TestApiRequests:

    @pytest.mark.asyncio
    async def test_hubspot_sync_counts_records(self, manager, stub, seed_connection):
        connection = await seed_connection()
        stub.add_json("GET", "https://api.hubapi.com/crm/v3/objects/contacts", {"results": [{"id": "1"}, {"id": "2"}]})
        stub.add_json("GET", "https://api.hubapi.com/crm/v3/objects/companies", {"results": [{"id": "3"}]})
        stub.add_json("GET", "https://api.hubapi.com/crm/v3/objects/deals", {"results": []})

        result = await manager.provider("hubspot").sync(connection)

        assert result.records == {"contacts": 2, "companies": 1, "deals": 0}
        assert result.total_records == 3
        assert stub.requests[0].headers["Authorization"] == "Bearer tok1"

    @pytest.mark.asyncio
    async def test_shopify_uses_access_token_header(self, manager, stub, seed_connection):
        connection = await seed_connection(integration_id="shopify", refresh_token=None, expires_in=None,
                                           shop="demo-store.myshopify.com")
        stub.add_json("GET", "https://demo-store.myshopify.com/admin/api/2023-10/shop.json", {"shop": {}})

        assert await manager.provider("shopify").test_connection(connection) is True
        assert stub.requests[0].headers["X-Shopify-Access-Token"] == "tok1"

    @pytest.mark.asyncio
    async def test_unauthorized_response(self, manager, stub, seed_connection):
        connection = await seed_connection()
        stub.add_json("GET", "https://api.hubapi.com/account-info", {}, status_code=401)
        assert await manager.provider("hubspot").test_connection(connection) is False

    @pytest.mark.asyncio
    async def test_test_connection_with_mocked_request(self, manager, seed_connection):
        connection = await seed_connection()
        provider = manager.provider("hubspot")
        with patch.object(provider, "make_api_request", new=AsyncMock(return_value=httpx.Response(200))) as mock:
            assert await provider.test_connection(connection) is True
        mock.assert_awaited_once_with("GET", "/account-info/v3/details", connection)

    @pytest.mark.asyncio
    async def test_rate_limited_when_enabled(self, manager, settings, seed_connection):
        connection = await seed_connection()
        provider = manager.provider("hubspot")
        provider.settings = settings.model_copy(update={"rate_limit_enabled": True})
        provider.rate_limiter = AsyncMock()
        provider.rate_limiter.check_rate_limit.return_value = False

        with pytest.raises(ProviderRequestError, match="Rate limit"):
            await provider.make_api_request("GET", "/crm/v3/objects/contacts", connection)
        provider.rate_limiter.check_rate_limit.assert_awaited_once_with("hubspot:t1", 100, 10)

    @pytest.mark.asyncio
    async def test_throttled_get_is_retried(self, manager, stub, seed_connection):
        connection = await seed_connection()
        url = "https://api.hubapi.com/crm/v3/objects/contacts"
        stub.add_sequence(
            "GET",
            url,
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(503),
            httpx.Response(200, json={"results": [{"id": "1"}]}),
        )

        response = await manager.provider("hubspot").make_api_request("GET", "/crm/v3/objects/contacts", connection)

        assert response.json() == {"results": [{"id": "1"}]}
        assert len(stub.calls(url)) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, manager, stub, seed_connection):
        connection = await seed_connection()
        url = "https://api.hubapi.com/crm/v3/objects/contacts"
        stub.add_json("GET", url, {}, status_code=503)

        with pytest.raises(ProviderRequestError) as exc_info:
            await manager.provider("hubspot").make_api_request("GET", "/crm/v3/objects/contacts", connection)

        assert exc_info.value.status_code == 503
        assert len(stub.calls(url)) == 3

    @pytest.mark.asyncio
    async def test_throttled_after_retries(self, manager, stub, seed_connection):
        connection = await seed_connection()
        stub.add("GET", "https://api.hubapi.com/crm/", httpx.Response(429, headers={"Retry-After": "0"}))

        with pytest.raises(RateLimitError):
            await manager.provider("hubspot").make_api_request("GET", "/crm/v3/objects/deals", connection)

    @pytest.mark.asyncio
    async def test_post_is_not_retried_on_server_error(self, manager, stub, seed_connection):
        connection = await seed_connection()
        url = "https://api.hubapi.com/crm/v3/objects/contacts"
        stub.add_json("POST", url, {}, status_code=503)

        with pytest.raises(ProviderRequestError):
            await manager.provider("hubspot").make_api_request(
                "POST", "/crm/v3/objects/contacts", connection, json={"properties": {}}
            )

        assert len(stub.calls(url)) == 1


def _hex_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestWebhookSignatures:

    def test_hubspot_valid(self, manager):
        body = b'[{"eventId": 1}]'
        manager.provider("hubspot").verify_webhook_signature(
            body, httpx.Headers({"X-HubSpot-Signature": _hex_signature("hubspot-webhook-secret", body)})
        )

    def test_hubspot_prefixed_signature(self, manager):
        body = b'[{"eventId": 1}]'
        signature = "sha256=" + _hex_signature("hubspot-webhook-secret", body)
        manager.provider("hubspot").verify_webhook_signature(body, httpx.Headers({"X-HubSpot-Signature": signature}))

    def test_hubspot_tampered_body(self, manager):
        signature = _hex_signature("hubspot-webhook-secret", b'[{"eventId": 1}]')
        with pytest.raises(SignatureInvalid):
            manager.provider("hubspot").verify_webhook_signature(
                b'[{"eventId": 2}]', httpx.Headers({"X-HubSpot-Signature": signature})
            )

    def test_shopify_base64(self, manager):
        body = b'{"id": 1}'
        digest = hmac.new(b"shopify-webhook-secret", body, hashlib.sha256).digest()
        manager.provider("shopify").verify_webhook_signature(
            body, httpx.Headers({"X-Shopify-Hmac-Sha256": base64.b64encode(digest).decode()})
        )

    def test_slack_v0_signature(self, manager):
        body = b'{"type": "event_callback"}'
        timestamp = str(int(time.time()))
        signature = "v0=" + hmac.new(
            b"slack-webhook-secret", f"v0:{timestamp}:".encode() + body, hashlib.sha256
        ).hexdigest()
        manager.provider("slack").verify_webhook_signature(
            body, httpx.Headers({"X-Slack-Signature": signature, "X-Slack-Request-Timestamp": timestamp})
        )

    def test_slack_stale_timestamp(self, manager):
        body = b"{}"
        timestamp = str(int(time.time()) - 3600)
        signature = "v0=" + hmac.new(
            b"slack-webhook-secret", f"v0:{timestamp}:".encode() + body, hashlib.sha256
        ).hexdigest()
        with pytest.raises(SignatureInvalid, match="tolerance"):
            manager.provider("slack").verify_webhook_signature(
                body, httpx.Headers({"X-Slack-Signature": signature, "X-Slack-Request-Timestamp": timestamp})
            )

    def test_google_channel_token(self, manager):
        provider = manager.provider("google-calendar")
        provider.verify_webhook_signature(b"", httpx.Headers({"X-Goog-Channel-Token": "google-webhook-secret"}))
        with pytest.raises(SignatureInvalid):
            provider.verify_webhook_signature(b"", httpx.Headers({"X-Goog-Channel-Token": "wrong"}))

    def test_outlook_client_state(self, manager):
        provider = manager.provider("outlook-calendar")
        body = json.dumps({"value": [{"clientState": "microsoft-webhook-secret"}]}).encode()
        provider.verify_webhook_signature(body, httpx.Headers())
        bad = json.dumps({"value": [{"clientState": "nope"}]}).encode()
        with pytest.raises(SignatureInvalid):
            provider.verify_webhook_signature(bad, httpx.Headers())


class TestWebhookParsing:

    def test_hubspot_batch(self, manager):
        body = json.dumps([
            {"eventId": 11, "subscriptionType": "contact.creation", "objectId": 5, "portalId": 555,
             "occurredAt": 1700000000000},
            {"eventId": 12, "subscriptionType": "deal.deletion", "objectId": 6, "portalId": 555},
        ]).encode()
        events = manager.provider("hubspot").parse_webhook(body, httpx.Headers())

        assert [e.event_id for e in events] == ["11", "12"]
        assert events[0].subscription_id == "555"
        assert events[0].object_id == "5"
        assert events[0].timestamp.year == 2023

    def test_invalid_json(self, manager):
        with pytest.raises(InvalidPayload):
            manager.provider("hubspot").parse_webhook(b"not json", httpx.Headers())

    def test_mailchimp_form_body(self, manager):
        body = urllib.parse.urlencode({
            "type": "subscribe",
            "fired_at": "2024-03-01 10:00:00",
            "data[id]": "abc",
            "data[list_id]": "L1",
            "data[merges][EMAIL]": "a@example.com",
        }).encode()
        events = manager.provider("mailchimp").parse_webhook(body, httpx.Headers())

        assert len(events) == 1
        assert events[0].event_type == "subscribe"
        assert events[0].subscription_id == "L1"
        assert events[0].data["data"]["merges"]["EMAIL"] == "a@example.com"

    def test_shopify_reads_headers(self, manager):
        headers = httpx.Headers({
            "X-Shopify-Topic": "orders/create",
            "X-Shopify-Shop-Domain": "Demo-Store.myshopify.com",
            "X-Shopify-Webhook-Id": "wh-1",
        })
        events = manager.provider("shopify").parse_webhook(b'{"id": 42}', headers)
        assert events[0].event_id == "wh-1"
        assert events[0].event_type == "orders/create"
        assert events[0].subscription_id == "demo-store.myshopify.com"

    def test_google_headers_only(self, manager):
        headers = httpx.Headers({
            "X-Goog-Channel-ID": "chan-1",
            "X-Goog-Message-Number": "7",
            "X-Goog-Resource-State": "exists",
            "X-Goog-Resource-ID": "res-1",
        })
        events = manager.provider("google-calendar").parse_webhook(b"", headers)
        assert events[0].event_id == "chan-1:7"
        assert events[0].subscription_id == "chan-1"

    def test_fingerprint_is_stable(self, manager):
        provider = manager.provider("mailchimp")
        assert provider.fingerprint({"a": 1, "b": 2}) == provider.fingerprint({"b": 2, "a": 1})


WHATSAPP_PAYLOAD = {
    "object": "whatsapp_business_account",
    "entry": [{
        "id": "waba-1",
        "changes": [
            {
                "field": "messages",
                "value": {
                    "metadata": {"phone_number_id": "pn-1"},
                    "messages": [{"from": "15550001111", "id": "wamid.A", "timestamp": "1700000000", "type": "text"}],
                    "statuses": [{"id": "wamid.B", "status": "delivered", "timestamp": "1700000100"}],
                },
            },
            {"field": "account_update", "value": {"event": "VERIFIED_ACCOUNT"}},
        ],
    }],
}


class TestWhatsApp:

    def test_signature_header(self, manager):
        body = json.dumps(WHATSAPP_PAYLOAD).encode()
        signature = "sha256=" + _hex_signature("whatsapp-webhook-secret", body)
        manager.provider("whatsapp").verify_webhook_signature(
            body, httpx.Headers({"X-Hub-Signature-256": signature})
        )
        with pytest.raises(SignatureInvalid):
            manager.provider("whatsapp").verify_webhook_signature(
                body + b" ", httpx.Headers({"X-Hub-Signature-256": signature})
            )

    def test_handshake_with_verify_token(self, manager):
        query = {"hub.mode": "subscribe", "hub.verify_token": "whatsapp-verify-token", "hub.challenge": "1158201444"}
        assert manager.provider("whatsapp").verification_challenge(query) == "1158201444"

    @pytest.mark.parametrize("query", [
        {"hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "c"},
        {"hub.mode": "unsubscribe", "hub.verify_token": "whatsapp-verify-token", "hub.challenge": "c"},
        {"hub.challenge": "c"},
    ])
    def test_handshake_rejected(self, manager, query):
        with pytest.raises(VerificationFailed):
            manager.provider("whatsapp").verification_challenge(query)

    def test_handshake_without_configured_token(self, manager, settings):
        manager.settings = settings.model_copy(update={"whatsapp_verify_token": None})
        manager._providers.clear()
        query = {"hub.mode": "subscribe", "hub.verify_token": "", "hub.challenge": "c"}
        with pytest.raises(VerificationFailed):
            manager.provider("whatsapp").verification_challenge(query)

    def test_no_challenge_is_not_a_handshake(self, manager):
        assert manager.provider("whatsapp").verification_challenge({}) is None

    def test_messages_and_statuses(self, manager):
        body = json.dumps(WHATSAPP_PAYLOAD).encode()
        events = manager.provider("whatsapp").parse_webhook(body, httpx.Headers())

        assert [e.event_id for e in events] == ["wamid.A", "wamid.B:delivered"]
        assert [e.event_type for e in events] == ["message.received", "message.delivered"]
        assert {e.subscription_id for e in events} == {"pn-1"}
        assert events[0].object_id == "15550001111"
        assert events[0].timestamp.year == 2023

    def test_other_objects_rejected(self, manager):
        with pytest.raises(InvalidPayload):
            manager.provider("whatsapp").parse_webhook(b'{"object": "page", "entry": []}', httpx.Headers())

    def test_oauth_is_unsupported(self, manager):
        with pytest.raises(UnsupportedFlow):
            manager.build_authorization_url("whatsapp", "t1")

    @pytest.mark.asyncio
    async def test_code_exchange_is_unsupported(self, manager):
        with pytest.raises(UnsupportedFlow):
            await manager.provider("whatsapp").exchange_code("code-1")

    @pytest.mark.asyncio
    async def test_sync_counts_account_assets(self, manager, stub, seed_connection):
        stub.add_json("GET", "https://graph.facebook.com/v18.0/waba-1/phone_numbers", {"data": [{"id": "pn-1"}]})
        stub.add_json("GET", "https://graph.facebook.com/v18.0/waba-1/message_templates", {"data": [{}, {}]})
        connection = await seed_connection(
            "t1", "whatsapp", refresh_token=None, expires_in=None,
            phone_number_id="pn-1", business_account_id="waba-1",
        )

        result = await manager.provider("whatsapp").sync(connection)

        assert result.records == {"phone_numbers": 1, "message_templates": 2}
        request = stub.calls("https://graph.facebook.com/v18.0/waba-1/phone_numbers")[0]
        assert request.headers["Authorization"].startswith("Bearer ")


class TestSubmittedCredentials:

    def test_whatsapp_token_set(self, manager):
        token_set = manager.provider("whatsapp").credentials_token_set({
            "access_token": "EAAG",
            "phone_number_id": 1234,
            "business_account_id": "waba-1",
        })
        assert token_set.access_token == "EAAG"
        assert token_set.refresh_token is None
        assert token_set.provider_extras == {"phone_number_id": "1234", "business_account_id": "waba-1"}

    def test_missing_field(self, manager):
        with pytest.raises(InvalidCredentials, match="phone_number_id"):
            manager.provider("whatsapp").credentials_token_set({"access_token": "EAAG", "business_account_id": "b"})

    def test_shopify_normalizes_shop(self, manager):
        token_set = manager.provider("shopify").credentials_token_set({"access_token": "shpat_1", "shop": "Demo-Store"})
        assert token_set.provider_extras["shop"] == "demo-store.myshopify.com"

    def test_oauth_only_provider(self, manager):
        with pytest.raises(UnsupportedFlow):
            manager.provider("hubspot").credentials_token_set({"access_token": "x"})
