"""Error taxonomy for the connector service."""

from typing import Optional


class IntegrationError(Exception):
    """Base integration error."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class UnknownProvider(IntegrationError):
    """Provider key is not part of the registry."""
    pass


class ConfigurationError(IntegrationError):
    """Provider credentials or service configuration are missing."""
    pass


class MissingParameter(IntegrationError):
    """Caller input is incomplete or malformed."""

    def __init__(self, parameter: str, message: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message or f"Missing required parameter: {parameter}", provider)
        self.parameter = parameter


class OAuthExchangeError(IntegrationError):
    """Provider rejected the authorization code or the state was invalid."""
    pass


class ReauthRequired(IntegrationError):
    """Refresh token is dead; the tenant must re-authorize."""
    pass


class NotConnected(IntegrationError):
    """No live connection exists for the tenant/provider pair."""
    pass


class SignatureInvalid(IntegrationError):
    """Webhook signature verification failed."""
    pass


class Unauthorized(IntegrationError):
    """Webhook carried no signature although one is required."""
    pass


class InvalidPayload(IntegrationError):
    """Webhook body could not be decoded."""
    pass


class TenantUnresolved(IntegrationError):
    """Webhook event could not be mapped to a tenant."""
    pass


class ProviderRequestError(IntegrationError):
    """Transient or unexpected failure talking to a provider API."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, provider)
        self.status_code = status_code


class AuthenticationError(ProviderRequestError):
    """Provider rejected the access token."""
    pass


class RateLimitError(ProviderRequestError):
    """Rate limit exceeded."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message, provider, status_code)
        self.retry_after = retry_after


class UnsupportedFlow(IntegrationError):
    """Provider does not connect through the requested flow."""
    pass


class InvalidCredentials(IntegrationError):
    """Submitted credentials were incomplete or rejected by the provider."""
    pass


class VerificationFailed(IntegrationError):
    """Webhook verification handshake carried the wrong verify token."""
    pass
