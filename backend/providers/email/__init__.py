"""Mail provider adapters.

Gmail (REST API, thread/history model) and Outlook (Microsoft Graph,
message/delta model) are both normalized into NormalizedThread objects.
"""

from typing import Optional

import httpx

from backend.core.config import BackendSettings
from backend.providers.email.base import (
    AuthProvider,
    AuthenticationError,
    CursorExpiredError,
    FetchResult,
    LabelOperation,
    LabelUpdate,
    MailProviderAdapter,
    MailProviderError,
    NormalizedAttachment,
    NormalizedMessage,
    NormalizedThread,
    OutgoingEmail,
    RateLimitError,
    ResourceNotFoundError,
)
from backend.providers.email.gmail_sync import GmailAdapter
from backend.providers.email.outlook_sync import OutlookAdapter


def create_email_adapter(
    provider: AuthProvider,
    access_token: str,
    settings: Optional[BackendSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MailProviderAdapter:
    """Create the adapter for a user's provider."""
    provider = AuthProvider(provider)
    if provider == AuthProvider.GOOGLE:
        return GmailAdapter(access_token, settings=settings, transport=transport)
    if provider == AuthProvider.OUTLOOK:
        return OutlookAdapter(access_token, settings=settings, transport=transport)
    raise ValueError(f"Unsupported mail provider: {provider}")


__all__ = [
    "AuthProvider",
    "AuthenticationError",
    "CursorExpiredError",
    "FetchResult",
    "LabelOperation",
    "LabelUpdate",
    "MailProviderAdapter",
    "MailProviderError",
    "NormalizedAttachment",
    "NormalizedMessage",
    "NormalizedThread",
    "OutgoingEmail",
    "RateLimitError",
    "ResourceNotFoundError",
    "GmailAdapter",
    "OutlookAdapter",
    "create_email_adapter",
]
