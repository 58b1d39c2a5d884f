"""
Local mail cache.

Persists normalized threads, messages, attachments and labels into
MongoDB. Every write is an upsert on a unique key, so replaying the same
provider data any number of times leaves the same rows behind. Sync never
deletes threads or messages.

Collections:
- email_threads        unique (user_id, external_id)
- emails               unique (user_id, external_id)
- email_attachments    unique (email_id, external_id)
- email_thread_labels  unique (thread_id, label)
- email_labels         unique (email_id, label)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from backend.core.database import (
    ATTACHMENTS_COLLECTION,
    EMAIL_LABELS_COLLECTION,
    EMAILS_COLLECTION,
    THREAD_LABELS_COLLECTION,
    THREADS_COLLECTION,
    USERS_COLLECTION,
)
from backend.providers.email.base import (
    LabelOperation,
    NormalizedAttachment,
    NormalizedMessage,
    NormalizedThread,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def clean_labels(labels: Iterable[str]) -> List[str]:
    """Lower-case, strip and de-duplicate while keeping first-seen order."""
    result: List[str] = []
    for label in labels:
        normalized = (label or "").strip().lower()
        if normalized and normalized not in result:
            result.append(normalized)
    return result


class MailCacheStore:
    """MongoDB-backed cache writer and reader for one database."""

    def __init__(self, db):
        self.db = db

    @property
    def users(self):
        return self.db[USERS_COLLECTION]

    @property
    def threads(self):
        return self.db[THREADS_COLLECTION]

    @property
    def emails(self):
        return self.db[EMAILS_COLLECTION]

    @property
    def attachments(self):
        return self.db[ATTACHMENTS_COLLECTION]

    @property
    def thread_labels(self):
        return self.db[THREAD_LABELS_COLLECTION]

    @property
    def email_labels(self):
        return self.db[EMAIL_LABELS_COLLECTION]

    async def _upsert(self, collection, key: Dict[str, Any], fields: Dict[str, Any], on_insert: Dict[str, Any]):
        update = {"$set": fields, "$setOnInsert": on_insert}
        try:
            return await collection.find_one_and_update(
                key, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # Lost an insert race on the unique key; the row exists now.
            return await collection.find_one_and_update(
                key, update, upsert=True, return_document=ReturnDocument.AFTER
            )

    # ============== Upserts ==============

    async def upsert_thread(self, user_id: Any, thread: NormalizedThread) -> Dict[str, Any]:
        now = _now()
        return await self._upsert(
            self.threads,
            {"user_id": user_id, "external_id": thread.external_id},
            {
                "subject": thread.subject,
                "sender": thread.sender,
                "sender_email": thread.sender_email,
                "preview": thread.preview,
                "timestamp": thread.timestamp or now,
                "is_read": thread.is_read,
                "is_important": thread.is_important,
                "has_attachments": thread.has_attachments,
                "updated_at": now,
            },
            {"created_at": now, "is_labeled": False},
        )

    async def upsert_message(self, user_id: Any, thread_id: Any, message: NormalizedMessage) -> Dict[str, Any]:
        now = _now()
        return await self._upsert(
            self.emails,
            {"user_id": user_id, "external_id": message.external_id},
            {
                "thread_id": thread_id,
                "thread_external_id": message.thread_external_id,
                "subject": message.subject,
                "sender": message.sender,
                "sender_email": message.sender_email,
                "recipient": message.recipient,
                "recipient_email": message.recipient_email,
                "timestamp": message.timestamp,
                "body": message.body,
                "html_body": message.html_body,
                "preview": message.preview,
                "is_read": message.is_read,
                "is_important": message.is_important,
                "has_attachments": message.has_attachments,
                "updated_at": now,
            },
            {"created_at": now, "is_labeled": False},
        )

    async def upsert_attachment(self, email_id: Any, attachment: NormalizedAttachment) -> Dict[str, Any]:
        now = _now()
        return await self._upsert(
            self.attachments,
            {"email_id": email_id, "external_id": attachment.external_id},
            {
                "filename": attachment.filename,
                "mime_type": attachment.mime_type,
                "size": attachment.size,
                "download_url": attachment.download_url,
                "content_id": attachment.content_id,
                "updated_at": now,
            },
            {"created_at": now},
        )

    # ============== Labels ==============

    async def _add_labels(self, collection, owner_field: str, owner_id: Any, labels: Iterable[str]) -> None:
        for label in clean_labels(labels):
            try:
                await collection.insert_one({owner_field: owner_id, "label": label, "created_at": _now()})
            except DuplicateKeyError:
                pass

    async def _remove_labels(self, collection, owner_field: str, owner_id: Any, labels: Iterable[str]) -> None:
        labels = clean_labels(labels)
        if labels:
            await collection.delete_many({owner_field: owner_id, "label": {"$in": labels}})

    async def _replace_labels(self, collection, owner_field: str, owner_id: Any, labels: Iterable[str]) -> None:
        labels = clean_labels(labels)
        await collection.delete_many({owner_field: owner_id, "label": {"$nin": labels}})
        await self._add_labels(collection, owner_field, owner_id, labels)

    async def _get_labels(self, collection, owner_field: str, owner_id: Any) -> List[str]:
        docs = await collection.find({owner_field: owner_id}).to_list(length=None)
        return sorted({doc["label"] for doc in docs})

    async def _apply(self, collection, owner_field: str, owner_id: Any,
                     labels: Iterable[str], operation: LabelOperation) -> List[str]:
        operation = LabelOperation(operation)
        if operation == LabelOperation.ADD:
            await self._add_labels(collection, owner_field, owner_id, labels)
        elif operation == LabelOperation.REMOVE:
            await self._remove_labels(collection, owner_field, owner_id, labels)
        else:
            await self._replace_labels(collection, owner_field, owner_id, labels)
        return await self._get_labels(collection, owner_field, owner_id)

    async def add_thread_labels(self, thread_id: Any, labels: Iterable[str]) -> None:
        await self._add_labels(self.thread_labels, "thread_id", thread_id, labels)

    async def replace_thread_labels(self, thread_id: Any, labels: Iterable[str]) -> None:
        await self._replace_labels(self.thread_labels, "thread_id", thread_id, labels)

    async def apply_thread_labels(self, thread_id: Any, labels: Iterable[str],
                                  operation: LabelOperation) -> List[str]:
        """Apply add/remove/replace and return the resulting label set."""
        return await self._apply(self.thread_labels, "thread_id", thread_id, labels, operation)

    async def get_thread_labels(self, thread_id: Any) -> List[str]:
        return await self._get_labels(self.thread_labels, "thread_id", thread_id)

    async def replace_message_labels(self, email_id: Any, labels: Iterable[str]) -> None:
        await self._replace_labels(self.email_labels, "email_id", email_id, labels)

    async def apply_message_labels(self, email_id: Any, labels: Iterable[str],
                                   operation: LabelOperation) -> List[str]:
        return await self._apply(self.email_labels, "email_id", email_id, labels, operation)

    async def get_message_labels(self, email_id: Any) -> List[str]:
        return await self._get_labels(self.email_labels, "email_id", email_id)

    async def mark_thread_labeled(self, thread_id: Any) -> None:
        await self.threads.update_one({"_id": thread_id}, {"$set": {"is_labeled": True}})

    async def mark_message_labeled(self, email_id: Any) -> None:
        await self.emails.update_one({"_id": email_id}, {"$set": {"is_labeled": True}})

    # ============== Read state ==============

    async def update_message_read_status(self, user_id: Any, external_id: str,
                                         is_read: bool = True) -> Optional[Dict[str, Any]]:
        return await self.emails.find_one_and_update(
            {"user_id": user_id, "external_id": external_id},
            {"$set": {"is_read": is_read, "updated_at": _now()}},
            return_document=ReturnDocument.AFTER,
        )

    async def refresh_thread_read_state(self, thread_id: Any) -> bool:
        """Recompute a thread's read flag from its cached messages."""
        unread = await self.emails.count_documents({"thread_id": thread_id, "is_read": False})
        is_read = unread == 0
        await self.threads.update_one(
            {"_id": thread_id},
            {"$set": {"is_read": is_read, "updated_at": _now()}},
        )
        return is_read

    # ============== Queries ==============

    async def get_threads_by_user(self, user_id: Any, limit: int = 50,
                                  offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """
        Page through a user's threads, newest first.

        Returns:
            (threads with a ``labels`` list attached, total thread count)
        """
        total = await self.threads.count_documents({"user_id": user_id})
        cursor = self.threads.find({"user_id": user_id}).sort("timestamp", DESCENDING).skip(offset).limit(limit)
        items = await cursor.to_list(length=limit)

        if items:
            ids = [item["_id"] for item in items]
            label_docs = await self.thread_labels.find({"thread_id": {"$in": ids}}).to_list(length=None)
            by_thread: Dict[Any, Set[str]] = {}
            for doc in label_docs:
                by_thread.setdefault(doc["thread_id"], set()).add(doc["label"])
            for item in items:
                item["labels"] = sorted(by_thread.get(item["_id"], set()))

        return items, total

    async def find_existing_thread_ids(self, user_id: Any, external_ids: Iterable[str]) -> Set[str]:
        external_ids = list(external_ids)
        if not external_ids:
            return set()
        docs = await self.threads.find(
            {"user_id": user_id, "external_id": {"$in": external_ids}}
        ).to_list(length=None)
        return {doc["external_id"] for doc in docs}

    async def get_thread_by_external_id(self, user_id: Any, external_id: str) -> Optional[Dict[str, Any]]:
        return await self.threads.find_one({"user_id": user_id, "external_id": external_id})

    async def get_message_by_external_id(self, user_id: Any, external_id: str) -> Optional[Dict[str, Any]]:
        return await self.emails.find_one({"user_id": user_id, "external_id": external_id})

    async def get_emails_by_thread_id(self, thread_id: Any) -> List[Dict[str, Any]]:
        """Messages of a thread, newest first."""
        cursor = self.emails.find({"thread_id": thread_id}).sort("timestamp", DESCENDING)
        return await cursor.to_list(length=None)

    async def get_attachments(self, email_id: Any) -> List[Dict[str, Any]]:
        return await self.attachments.find({"email_id": email_id}).to_list(length=None)

    # ============== Sync state ==============

    async def update_user_sync_state(
        self,
        user_id: Any,
        gmail_history_id: Optional[str] = None,
        outlook_delta_token: Optional[str] = None,
        last_sync_time: Optional[datetime] = None,
    ) -> None:
        """Store a new cursor. Only non-empty values are written."""
        fields: Dict[str, Any] = {"last_sync_time": last_sync_time or _now()}
        if gmail_history_id:
            fields["gmail_history_id"] = gmail_history_id
        if outlook_delta_token:
            fields["outlook_delta_token"] = outlook_delta_token
        await self.users.update_one({"_id": user_id}, {"$set": fields})
