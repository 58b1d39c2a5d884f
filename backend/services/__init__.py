"""Backend services module."""

from backend.services.credentials import CredentialProvider, MailUser, UserNotFoundError
from backend.services.label_classifier import (
    ClassificationResult,
    LabelClassificationError,
    LabelClassifier,
    parse_labels_response,
)
from backend.services.mail_store import MailCacheStore
from backend.services.notifier import RealtimeNotifier, get_notifier

__all__ = [
    "CredentialProvider",
    "MailUser",
    "UserNotFoundError",
    "ClassificationResult",
    "LabelClassificationError",
    "LabelClassifier",
    "parse_labels_response",
    "MailCacheStore",
    "RealtimeNotifier",
    "get_notifier",
]
