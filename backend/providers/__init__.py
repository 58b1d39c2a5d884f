"""
Mailbox Providers Package

Supported Providers:
- Gmail (OAuth 2.0, Gmail REST API)
- Outlook / Microsoft 365 (OAuth 2.0, Microsoft Graph)
"""

from backend.providers.email import (
    AuthProvider,
    MailProviderAdapter,
    create_email_adapter,
)

__all__ = [
    "AuthProvider",
    "MailProviderAdapter",
    "create_email_adapter",
]
