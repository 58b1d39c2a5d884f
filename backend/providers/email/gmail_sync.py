"""
Gmail adapter.

Talks to the Gmail REST API over httpx and normalizes threads into the
shared shapes from ``base``.

Features:
- Lookback listing for cold starts (``in:inbox after:YYYY/MM/DD``)
- History-based incremental sync with cursor-expiry detection
- Recursive MIME walking for bodies and attachment metadata
- Lazily created ``ZEROHANDS_*`` labels for AI label write-back
"""

import base64
import html
import logging
import re
from datetime import datetime, timezone
from email.message import EmailMessage as MimeMessage
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from backend.core.batching import BoundedBatchRunner
from backend.core.config import BackendSettings, settings as default_settings
from backend.providers.email.base import (
    AuthProvider,
    CursorExpiredError,
    FetchResult,
    LabelUpdate,
    MailProviderAdapter,
    MailProviderError,
    NO_SUBJECT,
    NormalizedAttachment,
    NormalizedMessage,
    NormalizedThread,
    OutgoingEmail,
    ResourceNotFoundError,
    compute_label_delta,
    group_label_updates,
    raise_for_status,
    retryable_failures,
)

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^(.*?)\s*<(.+)>$")
LIST_PAGE_SIZE = 100
HISTORY_RECORD_KEYS = ("messages", "messagesAdded", "labelsAdded", "labelsRemoved")


def parse_address(value: str) -> Tuple[str, str]:
    """Split ``"Jane Doe" <jane@x.com>`` into (name, address)."""
    value = (value or "").strip()
    if not value:
        return "", ""
    # Only the first address of a list
    first = value.split(",")[0].strip() if value.count("<") > 1 else value
    match = ADDRESS_PATTERN.match(first)
    if match:
        name = match.group(1).strip().strip('"').strip()
        address = match.group(2).strip()
        return name or address, address
    return first, first


def decode_base64url(data: str) -> str:
    """Decode Gmail's unpadded URL-safe base64."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return ""


def extract_bodies(payload: Dict[str, Any]) -> Tuple[str, str]:
    """Find the first text/plain and text/html bodies at any nesting depth."""
    body_plain = ""
    body_html = ""

    mime_type = payload.get("mimeType", "")
    data = payload.get("body", {}).get("data")

    if data and not payload.get("filename"):
        text = decode_base64url(data)
        if mime_type == "text/html":
            body_html = text
        elif mime_type.startswith("text/") or not mime_type:
            body_plain = text

    for part in payload.get("parts", []):
        nested_plain, nested_html = extract_bodies(part)
        if not body_plain:
            body_plain = nested_plain
        if not body_html:
            body_html = nested_html
        if body_plain and body_html:
            break

    return body_plain, body_html


def extract_attachments(payload: Dict[str, Any], message_id: str) -> List[NormalizedAttachment]:
    """Collect parts that carry both a filename and an attachment id."""
    attachments = []

    filename = payload.get("filename")
    body = payload.get("body", {})
    attachment_id = body.get("attachmentId")
    if filename and attachment_id:
        headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}
        attachments.append(NormalizedAttachment(
            external_id=attachment_id,
            filename=filename,
            mime_type=payload.get("mimeType") or "application/octet-stream",
            size=body.get("size", 0),
            download_url=f"messages/{message_id}/attachments/{attachment_id}",
            content_id=headers.get("content-id", "").strip("<>") or None,
        ))

    for part in payload.get("parts", []):
        attachments.extend(extract_attachments(part, message_id))

    return attachments


class GmailAdapter(MailProviderAdapter):
    """
    Gmail synchronization over the Gmail REST API.

    Uses an OAuth 2.0 bearer token supplied by the caller; tokens are
    never refreshed here.
    """

    provider = AuthProvider.GOOGLE

    def __init__(
        self,
        access_token: str,
        settings: Optional[BackendSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or default_settings
        self._label_prefix = settings.provider_label_prefix
        self._pubsub_topic = settings.gmail_pubsub_topic
        self._runner = BoundedBatchRunner(
            batch_size=settings.provider_batch_size,
            delay_seconds=settings.provider_batch_delay_seconds,
            name="gmail",
        )
        self._client = httpx.AsyncClient(
            base_url=settings.gmail_api_base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )
        # label name -> label id, filled on first write-back
        self._label_ids: Dict[str, str] = {}
        self._labels_loaded = False

    async def aclose(self) -> None:
        await self._client.aclose()

    # ============== HTTP helpers ==============

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._client.get(path, params=params)
        raise_for_status(response, f"Gmail GET {path}")
        return response.json()

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._client.post(path, json=body)
        raise_for_status(response, f"Gmail POST {path}")
        return response.json() if response.content else {}

    # ============== Fetching ==============

    async def fetch_initial(self, since: datetime, max_results: Optional[int] = None) -> FetchResult:
        # Read the history id before listing so changes made during the
        # listing are replayed by the next incremental pass.
        profile = await self._get("/profile")
        history_id = profile.get("historyId")

        query = f"in:inbox after:{since.strftime('%Y/%m/%d')}"
        thread_ids = await self._list_thread_ids(query, max_results)
        logger.info(f"Gmail listed {len(thread_ids)} threads for '{query}'")

        threads, dropped = await self._fetch_threads(thread_ids)
        return FetchResult(threads=threads, cursor=str(history_id) if history_id else None, dropped=dropped)

    async def _list_thread_ids(self, query: str, max_results: Optional[int]) -> List[str]:
        thread_ids: List[str] = []
        page_token = None

        while True:
            page_size = LIST_PAGE_SIZE
            if max_results:
                page_size = min(page_size, max_results - len(thread_ids))
                if page_size <= 0:
                    break

            params = {"q": query, "maxResults": page_size}
            if page_token:
                params["pageToken"] = page_token

            data = await self._get("/threads", params)
            thread_ids.extend(t["id"] for t in data.get("threads", []) if t.get("id"))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return thread_ids

    async def fetch_changes(self, cursor: str) -> FetchResult:
        """Resolve history records since ``cursor`` into the affected threads."""
        thread_ids: List[str] = []
        seen = set()
        new_cursor = cursor
        page_token = None

        while True:
            params = {"startHistoryId": cursor, "labelId": "INBOX"}
            if page_token:
                params["pageToken"] = page_token

            try:
                data = await self._get("/history", params)
            except ResourceNotFoundError:
                logger.warning(f"Gmail history id {cursor} expired")
                raise CursorExpiredError(f"History id {cursor} is no longer valid", status_code=404)

            for record in data.get("history", []):
                for thread_id in self._thread_ids_from_record(record):
                    if thread_id not in seen:
                        seen.add(thread_id)
                        thread_ids.append(thread_id)

            if data.get("historyId"):
                new_cursor = str(data["historyId"])

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Gmail history since {cursor}: {len(thread_ids)} threads changed")
        threads, dropped = await self._fetch_threads(thread_ids)
        return FetchResult(threads=threads, cursor=new_cursor, dropped=dropped)

    @staticmethod
    def _thread_ids_from_record(record: Dict[str, Any]) -> Iterable[str]:
        for key in HISTORY_RECORD_KEYS:
            for entry in record.get(key, []):
                message = entry.get("message", entry)
                thread_id = message.get("threadId")
                if thread_id:
                    yield thread_id

    async def _fetch_threads(self, thread_ids: Sequence[str]) -> Tuple[List[NormalizedThread], List[str]]:
        """Fetch threads in batches; returns (threads, ids to retry next pass)."""
        outcome = await self._runner.run(thread_ids, self.fetch_thread)
        dropped = retryable_failures(outcome.failures)
        if outcome.failures:
            logger.warning(
                f"Gmail could not fetch {len(outcome.failures)} of {len(thread_ids)} threads, "
                f"{len(dropped)} to retry"
            )
        return [thread for thread in outcome.values if thread.messages], dropped

    async def fetch_thread(self, external_id: str) -> NormalizedThread:
        data = await self._get(f"/threads/{external_id}", {"format": "full"})
        messages = [self._parse_message(m) for m in data.get("messages", [])]
        return NormalizedThread(external_id=data.get("id", external_id), messages=messages)

    async def fetch_message(self, external_id: str) -> NormalizedThread:
        data = await self._get(f"/messages/{external_id}", {"format": "minimal"})
        thread_id = data.get("threadId")
        if not thread_id:
            raise MailProviderError(f"Gmail message {external_id} has no thread")
        return await self.fetch_thread(thread_id)

    def _parse_message(self, msg: Dict[str, Any]) -> NormalizedMessage:
        """Parse a Gmail ``format=full`` message."""
        msg_id = msg.get("id", "")
        payload = msg.get("payload", {})
        headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}
        label_ids = msg.get("labelIds", [])

        sender, sender_email = parse_address(headers.get("from", ""))
        recipient, recipient_email = parse_address(headers.get("to", ""))
        body_plain, body_html = extract_bodies(payload)

        return NormalizedMessage(
            external_id=msg_id,
            thread_external_id=msg.get("threadId", msg_id),
            subject=headers.get("subject") or NO_SUBJECT,
            sender=sender,
            sender_email=sender_email,
            recipient=recipient,
            recipient_email=recipient_email,
            timestamp=self._parse_timestamp(msg, headers),
            body=body_plain,
            html_body=body_html or None,
            snippet=html.unescape(msg.get("snippet", "")),
            is_read="UNREAD" not in label_ids,
            is_important="IMPORTANT" in label_ids,
            attachments=extract_attachments(payload, msg_id),
            provider_labels=list(label_ids),
        )

    @staticmethod
    def _parse_timestamp(msg: Dict[str, Any], headers: Dict[str, str]) -> datetime:
        internal_date = msg.get("internalDate")
        if internal_date:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        if headers.get("date"):
            try:
                parsed = parsedate_to_datetime(headers["date"])
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
            except (TypeError, ValueError):
                pass
        return datetime.now(timezone.utc)

    # ============== Mutations ==============

    async def mark_as_read(self, external_id: str) -> None:
        await self._post(f"/messages/{external_id}/modify", {"removeLabelIds": ["UNREAD"]})

    async def send_message(self, email: OutgoingEmail) -> Dict[str, Any]:
        mime = MimeMessage()
        mime["To"] = ", ".join(email.to)
        if email.cc:
            mime["Cc"] = ", ".join(email.cc)
        mime["Subject"] = email.subject
        if email.is_html:
            mime.set_content(email.body, subtype="html")
        else:
            mime.set_content(email.body)

        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode()
        result = await self._post("/messages/send", {"raw": raw})
        logger.info(f"Gmail sent message {result.get('id')}")
        return result

    async def _load_labels(self) -> None:
        data = await self._get("/labels")
        self._label_ids = {label["name"]: label["id"] for label in data.get("labels", []) if label.get("name")}
        self._labels_loaded = True

    async def ensure_labels(self, names: Iterable[str]) -> Dict[str, str]:
        """
        Resolve provider label names to ids, creating missing ones.

        A 409 on create means another client created the label first; the
        label list is re-read and the existing id used.
        """
        if not self._labels_loaded:
            await self._load_labels()

        resolved: Dict[str, str] = {}
        for name in names:
            if name not in self._label_ids:
                response = await self._client.post("/labels", json={
                    "name": name,
                    "labelListVisibility": "labelShow",
                    "messageListVisibility": "show",
                })
                if response.status_code == 409:
                    logger.info(f"Gmail label {name} already exists, re-reading labels")
                    await self._load_labels()
                    if name not in self._label_ids:
                        raise MailProviderError(f"Gmail label {name} conflicts but was not found", status_code=409)
                else:
                    raise_for_status(response, f"Gmail create label {name}")
                    self._label_ids[name] = response.json()["id"]
            resolved[name] = self._label_ids[name]

        return resolved

    async def apply_label_updates(self, updates: Sequence[LabelUpdate]) -> int:
        if not updates:
            return 0
        if not self._labels_loaded:
            await self._load_labels()

        deltas = []
        for update in updates:
            add, remove = compute_label_delta(
                update.labels, update.operation, self._label_ids.keys(), self._label_prefix
            )
            deltas.append((update.thread_external_id, add, remove))

        applied = 0
        for (add, remove), thread_ids in group_label_updates(deltas).items():
            add_ids = list((await self.ensure_labels(sorted(add))).values())
            remove_ids = [self._label_ids[name] for name in sorted(remove) if name in self._label_ids]
            if not add_ids and not remove_ids:
                continue

            body = {"addLabelIds": add_ids, "removeLabelIds": remove_ids}

            async def modify(thread_id: str, body=body):
                return await self._post(f"/threads/{thread_id}/modify", body)

            outcome = await self._runner.run(thread_ids, modify)
            applied += len(outcome.results)

        logger.info(f"Gmail label write-back applied to {applied} threads")
        return applied

    async def setup_push_notifications(self, user_id: str) -> Dict[str, Any]:
        if not self._pubsub_topic:
            raise MailProviderError("Gmail push notifications need GMAIL_PUBSUB_TOPIC")
        result = await self._post("/watch", {
            "topicName": self._pubsub_topic,
            "labelIds": ["INBOX"],
            "labelFilterBehavior": "include",
        })
        logger.info(f"Gmail watch active for user {user_id} until {result.get('expiration')}")
        return result
