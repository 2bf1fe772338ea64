"""Configuration settings for the connector service."""

from typing import Optional, Dict, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Service Configuration
    service_name: str = "connector-service"
    port: int = 8005
    environment: str = "development"
    debug: bool = False

    # Security
    encryption_key: str
    encryption_salt: str = "connector-service"

    # Storage
    store_backend: str = "mongo"  # "mongo" or "memory"
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "connector_service"
    redis_url: Optional[str] = "redis://localhost:6379"

    # Auth Service
    auth_service_url: str = "http://localhost:8001"

    # Public URLs
    public_base_url: str = "http://localhost:8005"
    app_url: str = "http://localhost:3000"

    # OAuth Credentials
    # HubSpot
    hubspot_client_id: Optional[str] = None
    hubspot_client_secret: Optional[str] = None
    hubspot_redirect_uri: Optional[str] = None
    hubspot_webhook_secret: Optional[str] = None

    # Salesforce
    salesforce_client_id: Optional[str] = None
    salesforce_client_secret: Optional[str] = None
    salesforce_redirect_uri: Optional[str] = None
    salesforce_webhook_secret: Optional[str] = None

    # Shopify
    shopify_client_id: Optional[str] = None
    shopify_client_secret: Optional[str] = None
    shopify_redirect_uri: Optional[str] = None
    shopify_webhook_secret: Optional[str] = None

    # LinkedIn
    linkedin_client_id: Optional[str] = None
    linkedin_client_secret: Optional[str] = None
    linkedin_redirect_uri: Optional[str] = None
    linkedin_webhook_secret: Optional[str] = None

    # Mailchimp
    mailchimp_client_id: Optional[str] = None
    mailchimp_client_secret: Optional[str] = None
    mailchimp_redirect_uri: Optional[str] = None
    mailchimp_webhook_secret: Optional[str] = None

    # Pipedrive
    pipedrive_client_id: Optional[str] = None
    pipedrive_client_secret: Optional[str] = None
    pipedrive_redirect_uri: Optional[str] = None
    pipedrive_webhook_secret: Optional[str] = None

    # Slack
    slack_client_id: Optional[str] = None
    slack_client_secret: Optional[str] = None
    slack_redirect_uri: Optional[str] = None
    slack_webhook_secret: Optional[str] = None  # signing secret

    # Google Calendar
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_redirect_uri: Optional[str] = None
    google_webhook_secret: Optional[str] = None  # channel token

    # Outlook Calendar
    microsoft_client_id: Optional[str] = None
    microsoft_client_secret: Optional[str] = None
    microsoft_redirect_uri: Optional[str] = None
    microsoft_webhook_secret: Optional[str] = None  # subscription clientState

    # WhatsApp Business (tenants submit their own access tokens)
    whatsapp_webhook_secret: Optional[str] = None  # app secret
    whatsapp_verify_token: Optional[str] = None

    # OAuth behaviour
    oauth_state_max_age_seconds: int = 600  # 0 disables the age check
    token_refresh_margin_seconds: int = 300

    # Sync scheduler
    sync_autostart: bool = True
    sync_interval_seconds: int = 900  # 15 minutes
    sync_max_concurrency: int = 8
    sync_failure_threshold: int = 3
    provider_timeout_seconds: float = 20.0

    # Provider API retries
    provider_retry_backoff_seconds: float = 1.0
    provider_retry_max_wait_seconds: float = 10.0

    # Rate Limiting
    rate_limit_enabled: bool = False
    connect_rate_limit_calls: int = 10
    connect_rate_limit_window_seconds: int = 300

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    def provider_setting(self, prefix: str, name: str) -> Optional[str]:
        """Look up a per-provider setting such as ``hubspot_client_id``."""
        return getattr(self, f"{prefix}_{name}", None)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Provider specific configurations
PROVIDER_CONFIGS: Dict[str, Dict[str, Any]] = {
    "hubspot": {
        "name": "HubSpot",
        "settings_prefix": "hubspot",
        "auth_url": "https://app.hubspot.com/oauth/authorize",
        "token_url": "https://api.hubapi.com/oauth/v1/token",
        "api_base_url": "https://api.hubapi.com",
        "scopes": [
            "crm.objects.contacts.read",
            "crm.objects.contacts.write",
            "crm.objects.deals.read",
            "crm.objects.companies.read",
        ],
        "rate_limit": {"calls": 100, "window": 10},
    },
    "salesforce": {
        "name": "Salesforce",
        "settings_prefix": "salesforce",
        "auth_url": "https://login.salesforce.com/services/oauth2/authorize",
        "token_url": "https://login.salesforce.com/services/oauth2/token",
        "api_version": "v58.0",
        "scopes": ["api", "refresh_token", "offline_access"],
        "rate_limit": {"calls": 5000, "window": 3600},
    },
    "shopify": {
        "name": "Shopify",
        "settings_prefix": "shopify",
        # Per-shop hosts; "{shop}" is the tenant's myshopify.com domain.
        "auth_url": "https://{shop}/admin/oauth/authorize",
        "token_url": "https://{shop}/admin/oauth/access_token",
        "api_version": "2023-10",
        "scopes": ["read_products", "read_orders", "read_customers", "write_orders"],
        "scope_separator": ",",
        "rate_limit": {"calls": 40, "window": 20},
    },
    "linkedin": {
        "name": "LinkedIn",
        "settings_prefix": "linkedin",
        "auth_url": "https://www.linkedin.com/oauth/v2/authorization",
        "token_url": "https://www.linkedin.com/oauth/v2/accessToken",
        "api_base_url": "https://api.linkedin.com",
        "scopes": ["openid", "profile", "email", "w_member_social"],
        "rate_limit": {"calls": 100, "window": 60},
    },
    "mailchimp": {
        "name": "Mailchimp",
        "settings_prefix": "mailchimp",
        "auth_url": "https://login.mailchimp.com/oauth2/authorize",
        "token_url": "https://login.mailchimp.com/oauth2/token",
        "metadata_url": "https://login.mailchimp.com/oauth2/metadata",
        "scopes": [],
        "rate_limit": {"calls": 10, "window": 1},
    },
    "pipedrive": {
        "name": "Pipedrive",
        "settings_prefix": "pipedrive",
        "auth_url": "https://oauth.pipedrive.com/oauth/authorize",
        "token_url": "https://oauth.pipedrive.com/oauth/token",
        "api_base_url": "https://api.pipedrive.com",
        "scopes": [],
        "rate_limit": {"calls": 80, "window": 2},
    },
    "slack": {
        "name": "Slack",
        "settings_prefix": "slack",
        "auth_url": "https://slack.com/oauth/v2/authorize",
        "token_url": "https://slack.com/api/oauth.v2.access",
        "api_base_url": "https://slack.com/api",
        "scopes": ["chat:write", "channels:read", "users:read"],
        "scope_separator": ",",
        "rate_limit": {"calls": 50, "window": 60},
    },
    "google-calendar": {
        "name": "Google Calendar",
        "settings_prefix": "google",
        "calendar_provider": "google",
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "revoke_url": "https://oauth2.googleapis.com/revoke",
        "api_base_url": "https://www.googleapis.com/calendar/v3",
        "scopes": [
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
        ],
        "rate_limit": {"calls": 500, "window": 100},
    },
    "outlook-calendar": {
        "name": "Outlook Calendar",
        "settings_prefix": "microsoft",
        "calendar_provider": "outlook",
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "api_base_url": "https://graph.microsoft.com/v1.0",
        "scopes": ["offline_access", "User.Read", "Calendars.ReadWrite"],
        "rate_limit": {"calls": 10000, "window": 600},
    },
    "whatsapp": {
        "name": "WhatsApp Business",
        "settings_prefix": "whatsapp",
        "api_base_url": "https://graph.facebook.com/v18.0",
        "scopes": [],
        "rate_limit": {"calls": 80, "window": 1},
    },
}
