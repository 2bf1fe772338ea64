"""Provider implementations."""

from .base import BaseProvider
from .registry import ProviderRegistry
from .hubspot import HubSpotProvider
from .salesforce import SalesforceProvider
from .shopify import ShopifyProvider
from .linkedin import LinkedInProvider
from .mailchimp import MailchimpProvider
from .pipedrive import PipedriveProvider
from .slack import SlackProvider
from .google_calendar import GoogleCalendarProvider
from .outlook_calendar import OutlookCalendarProvider
from .whatsapp import WhatsAppProvider

__all__ = [
    "BaseProvider",
    "ProviderRegistry",
    "HubSpotProvider",
    "SalesforceProvider",
    "ShopifyProvider",
    "LinkedInProvider",
    "MailchimpProvider",
    "PipedriveProvider",
    "SlackProvider",
    "GoogleCalendarProvider",
    "OutlookCalendarProvider",
    "WhatsAppProvider",
]
