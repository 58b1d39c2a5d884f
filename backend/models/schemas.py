"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from backend.providers.email.base import LabelOperation


def _doc_id(doc: Dict[str, Any]) -> str:
    return str(doc.get("_id", ""))


# ============== Cache Views ==============

class ThreadSummary(BaseModel):
    """A cached thread as shown in the inbox list."""
    id: str = Field(..., description="Cache row id")
    external_id: str = Field(..., description="Provider thread id")
    subject: str
    sender: str = ""
    sender_email: str = ""
    preview: str = ""
    timestamp: Optional[datetime] = None
    is_read: bool = True
    is_important: bool = False
    has_attachments: bool = False
    is_labeled: bool = False
    labels: List[str] = Field(default_factory=list)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any], labels: Optional[List[str]] = None) -> "ThreadSummary":
        return cls(
            id=_doc_id(doc),
            external_id=doc["external_id"],
            subject=doc.get("subject", ""),
            sender=doc.get("sender", ""),
            sender_email=doc.get("sender_email", ""),
            preview=doc.get("preview", ""),
            timestamp=doc.get("timestamp"),
            is_read=doc.get("is_read", True),
            is_important=doc.get("is_important", False),
            has_attachments=doc.get("has_attachments", False),
            is_labeled=doc.get("is_labeled", False),
            labels=labels if labels is not None else doc.get("labels", []),
        )


class AttachmentInfo(BaseModel):
    external_id: str
    filename: str
    mime_type: str
    size: int = 0
    download_url: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "AttachmentInfo":
        return cls(
            external_id=doc["external_id"],
            filename=doc.get("filename", ""),
            mime_type=doc.get("mime_type", "application/octet-stream"),
            size=doc.get("size", 0),
            download_url=doc.get("download_url"),
        )


class MessageDetail(BaseModel):
    """A cached message with its labels and attachment metadata."""
    id: str
    external_id: str
    thread_external_id: str
    subject: str
    sender: str = ""
    sender_email: str = ""
    recipient: str = ""
    recipient_email: str = ""
    timestamp: Optional[datetime] = None
    body: str = ""
    html_body: Optional[str] = None
    is_read: bool = True
    is_labeled: bool = False
    labels: List[str] = Field(default_factory=list)
    attachments: List[AttachmentInfo] = Field(default_factory=list)

    @classmethod
    def from_doc(
        cls,
        doc: Dict[str, Any],
        labels: Optional[List[str]] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> "MessageDetail":
        return cls(
            id=_doc_id(doc),
            external_id=doc["external_id"],
            thread_external_id=doc.get("thread_external_id", ""),
            subject=doc.get("subject", ""),
            sender=doc.get("sender", ""),
            sender_email=doc.get("sender_email", ""),
            recipient=doc.get("recipient", ""),
            recipient_email=doc.get("recipient_email", ""),
            timestamp=doc.get("timestamp"),
            body=doc.get("body", ""),
            html_body=doc.get("html_body"),
            is_read=doc.get("is_read", True),
            is_labeled=doc.get("is_labeled", False),
            labels=labels or [],
            attachments=[AttachmentInfo.from_doc(a) for a in attachments or []],
        )


# ============== Sync Models ==============

class SyncResult(BaseModel):
    """Outcome of one sync pass."""
    new_emails_count: int = Field(default=0, description="Threads not cached before this pass")
    total_emails_count: int = Field(default=0, description="Threads returned by the provider")
    failed_count: int = Field(default=0, description="Threads that could not be fetched or persisted")
    cursor_advanced: bool = Field(default=False, description="Whether the stored cursor moved")


class IncrementalSyncRequest(BaseModel):
    user_email: str
    max_results: Optional[int] = Field(None, ge=1, le=500)


class InitialSyncRequest(BaseModel):
    user_email: str


class InboxPage(BaseModel):
    items: List[ThreadSummary]
    total: int
    has_more: bool
    source: str = Field(default="cache", description="cache, or provider when the fallback fetch ran")


# ============== Mutations ==============

class LabelUpdateRequest(BaseModel):
    labels: List[str] = Field(default_factory=list)
    operation: LabelOperation = LabelOperation.REPLACE


class LabelUpdateResponse(BaseModel):
    thread_external_id: str
    labels: List[str]


class MarkReadResponse(BaseModel):
    external_id: str
    is_read: bool = True
    thread_is_read: Optional[bool] = None


class SendEmailRequest(BaseModel):
    to: List[str] = Field(..., min_length=1)
    subject: str = ""
    body: str = ""
    is_html: bool = False
    cc: List[str] = Field(default_factory=list)


class GmailPushNotification(BaseModel):
    """Decoded Pub/Sub payload forwarded by the Gmail push relay."""
    emailAddress: str
    historyId: Optional[Union[int, str]] = None


# ============== Generic Response Models ==============

class SuccessResponse(BaseModel):
    """Generic success response."""
    success: bool = True
    message: str

