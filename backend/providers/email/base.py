"""
Base types and classes for mailbox synchronization.

Both provider adapters translate their native API objects into the
normalized shapes defined here, so the sync worker never sees a Gmail
payload or a Graph payload directly.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100
NO_SUBJECT = "(No Subject)"


class AuthProvider(str, Enum):
    """Mailbox provider of a user account."""
    GOOGLE = "GOOGLE"
    OUTLOOK = "OUTLOOK"


class LabelOperation(str, Enum):
    """How a label list is applied to an existing label set."""
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"


# ============== Errors ==============

class MailProviderError(Exception):
    """Base exception for provider API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(MailProviderError):
    """The access token was rejected."""
    pass


class RateLimitError(MailProviderError):
    """Provider throttled the request."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ResourceNotFoundError(MailProviderError):
    pass


class CursorExpiredError(MailProviderError):
    """The stored sync cursor is no longer accepted by the provider."""
    pass


# ============== Normalized shapes ==============

@dataclass
class NormalizedAttachment:
    """Attachment metadata; content is never downloaded during sync."""
    external_id: str
    filename: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    download_url: Optional[str] = None
    content_id: Optional[str] = None


@dataclass
class NormalizedMessage:
    """One physical email."""
    external_id: str
    thread_external_id: str
    subject: str
    sender: str
    sender_email: str
    timestamp: datetime
    recipient: str = ""
    recipient_email: str = ""
    body: str = ""
    html_body: Optional[str] = None
    snippet: str = ""
    is_read: bool = True
    is_important: bool = False
    attachments: List[NormalizedAttachment] = field(default_factory=list)
    provider_labels: List[str] = field(default_factory=list)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)

    @property
    def preview(self) -> str:
        return make_preview(self.snippet or self.body)


@dataclass
class NormalizedThread:
    """
    A conversation and its messages in provider order (oldest first).

    Outlook messages are each wrapped in their own single-message thread;
    Outlook conversations are not grouped.
    """
    external_id: str
    messages: List[NormalizedMessage] = field(default_factory=list)

    @property
    def latest(self) -> Optional[NormalizedMessage]:
        return self.messages[-1] if self.messages else None

    @property
    def subject(self) -> str:
        return self.messages[0].subject if self.messages else NO_SUBJECT

    @property
    def sender(self) -> str:
        return self.latest.sender if self.latest else ""

    @property
    def sender_email(self) -> str:
        return self.latest.sender_email if self.latest else ""

    @property
    def preview(self) -> str:
        return self.latest.preview if self.latest else ""

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.latest.timestamp if self.latest else None

    @property
    def is_read(self) -> bool:
        return all(m.is_read for m in self.messages)

    @property
    def is_important(self) -> bool:
        return any(m.is_important for m in self.messages)

    @property
    def has_attachments(self) -> bool:
        return any(m.has_attachments for m in self.messages)


@dataclass
class FetchResult:
    """
    Threads returned by one fetch plus the cursor to store after persisting them.

    ``dropped`` holds ids the adapter saw but could not fetch; while it is
    non-empty the cursor must not be stored.
    """
    threads: List[NormalizedThread] = field(default_factory=list)
    cursor: Optional[str] = None
    dropped: List[str] = field(default_factory=list)


@dataclass
class LabelUpdate:
    """A label change for one thread, expressed in application label names."""
    thread_external_id: str
    labels: List[str]
    operation: LabelOperation = LabelOperation.REPLACE


@dataclass
class OutgoingEmail:
    to: List[str]
    subject: str
    body: str
    is_html: bool = False
    cc: List[str] = field(default_factory=list)


# ============== Helpers ==============

def make_preview(text: Optional[str], length: int = PREVIEW_LENGTH) -> str:
    """Collapse whitespace and truncate to a list-view preview."""
    text = " ".join((text or "").split())
    if len(text) > length:
        return text[:length] + "..."
    return text


def to_provider_label(name: str, prefix: str) -> str:
    """Application label name -> provider label name (``meeting`` -> ``ZEROHANDS_MEETING``)."""
    return f"{prefix}{name.strip().upper()}"


def compute_label_delta(
    labels: Iterable[str],
    operation: LabelOperation,
    existing_prefixed: Iterable[str],
    prefix: str,
) -> Tuple[FrozenSet[str], FrozenSet[str]]:
    """
    Resolve an operation into provider (add-set, remove-set).

    For REPLACE the remove-set is every prefixed label currently known
    minus the new add-set, so no stale application label survives.
    """
    names = frozenset(to_provider_label(label, prefix) for label in labels if label.strip())

    if operation == LabelOperation.ADD:
        return names, frozenset()
    if operation == LabelOperation.REMOVE:
        return frozenset(), names

    known = frozenset(name for name in existing_prefixed if name.startswith(prefix))
    return names, known - names


def group_label_updates(
    deltas: Sequence[Tuple[str, FrozenSet[str], FrozenSet[str]]],
) -> Dict[Tuple[FrozenSet[str], FrozenSet[str]], List[str]]:
    """Group thread ids that share an identical (add-set, remove-set) pair."""
    groups: Dict[Tuple[FrozenSet[str], FrozenSet[str]], List[str]] = {}
    for thread_id, add, remove in deltas:
        if not add and not remove:
            continue
        groups.setdefault((add, remove), []).append(thread_id)
    return groups


def raise_for_status(response, context: str) -> None:
    """Map an httpx response status onto the provider error hierarchy."""
    status = response.status_code
    if status < 400:
        return

    detail = response.text[:300] if response.text else ""
    message = f"{context}: HTTP {status} {detail}".strip()

    if status == 401:
        raise AuthenticationError(message, status_code=status)
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitError(message, retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None)
    if status == 404:
        raise ResourceNotFoundError(message, status_code=status)
    raise MailProviderError(message, status_code=status)


def retryable_failures(failures: Iterable[Tuple[Any, BaseException]]) -> List[Any]:
    """Items whose fetch failed transiently. Items gone upstream are not retried."""
    return [item for item, error in failures if not isinstance(error, ResourceNotFoundError)]


# ============== Adapter contract ==============

class MailProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Adapters are stateless with respect to the user: the access token is
    handed in at construction and cursors are passed per call.
    """

    provider: AuthProvider

    @abstractmethod
    async def fetch_initial(self, since: datetime, max_results: Optional[int] = None) -> FetchResult:
        """
        Fetch inbox threads received since ``since``.

        The returned cursor marks the mailbox state at (or before) the
        start of the listing, so nothing that arrives mid-listing is lost.
        """
        pass

    @abstractmethod
    async def fetch_changes(self, cursor: str) -> FetchResult:
        """
        Fetch threads changed since ``cursor``.

        Deltas are never truncated; dropping part of a delta while
        advancing the cursor would skip changes for good. Items that fail
        to fetch are reported in ``FetchResult.dropped``.

        Raises:
            CursorExpiredError: The provider no longer accepts the cursor
        """
        pass

    @abstractmethod
    async def fetch_thread(self, external_id: str) -> NormalizedThread:
        pass

    @abstractmethod
    async def fetch_message(self, external_id: str) -> NormalizedThread:
        """Fetch the thread containing one message."""
        pass

    @abstractmethod
    async def mark_as_read(self, external_id: str) -> None:
        pass

    @abstractmethod
    async def send_message(self, email: OutgoingEmail) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def apply_label_updates(self, updates: Sequence[LabelUpdate]) -> int:
        """
        Write application labels back to the provider.

        Returns:
            Number of threads the provider accepted a change for
        """
        pass

    @abstractmethod
    async def setup_push_notifications(self, user_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def aclose(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
