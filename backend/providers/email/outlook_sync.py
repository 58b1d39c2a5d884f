"""
Outlook/Microsoft 365 adapter.

Provides Outlook sync using the Microsoft Graph API.

Features:
- Lookback listing of the inbox paginated with $skip/$top
- Delta queries for incremental updates
- Attachment metadata fetched only for messages that report attachments
- AI labels written back as ``ZEROHANDS_*`` categories

Graph exposes messages, not conversations, to this adapter: every
message becomes its own single-message thread.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

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
    compute_label_delta,
    raise_for_status,
    retryable_failures,
)

logger = logging.getLogger(__name__)

INBOX_MESSAGES = "/me/mailFolders/inbox/messages"
INBOX_DELTA = "/me/mailFolders/inbox/messages/delta"
MESSAGE_SELECT = (
    "id,subject,bodyPreview,body,from,toRecipients,receivedDateTime,"
    "hasAttachments,isRead,importance,conversationId,categories"
)
ATTACHMENT_SELECT = "id,name,contentType,size,isInline,contentId"
LIST_PAGE_SIZE = 50


def graph_datetime(value: datetime) -> str:
    """Format a datetime for OData filters (UTC, second precision)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_graph_datetime(value: Optional[str]) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable Graph timestamp: {value}")
    return datetime.now(timezone.utc)


def delta_token_from_link(delta_link: str) -> Optional[str]:
    params = httpx.URL(delta_link).params
    return params.get("$deltatoken") or params.get("$deltaToken")


class OutlookAdapter(MailProviderAdapter):
    """
    Outlook synchronization using Microsoft Graph.

    Uses an OAuth 2.0 bearer token supplied by the caller.
    """

    provider = AuthProvider.OUTLOOK

    def __init__(
        self,
        access_token: str,
        settings: Optional[BackendSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or default_settings
        self._label_prefix = settings.provider_label_prefix
        self._notification_url = settings.outlook_notification_url
        self._subscription_minutes = settings.outlook_subscription_minutes
        self._runner = BoundedBatchRunner(
            batch_size=settings.provider_batch_size,
            delay_seconds=settings.provider_batch_delay_seconds,
            name="outlook",
        )
        self._client = httpx.AsyncClient(
            base_url=settings.graph_api_base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._client.get(url, params=params)
        raise_for_status(response, "Graph GET")
        return response.json()

    # ============== Fetching ==============

    async def fetch_initial(self, since: datetime, max_results: Optional[int] = None) -> FetchResult:
        # Bootstrap the delta token first so anything received while the
        # listing runs is replayed by the next delta call.
        cursor = await self._bootstrap_delta_token(since)

        received_filter = f"receivedDateTime ge {graph_datetime(since)}"
        messages: List[Dict[str, Any]] = []
        skip = 0

        while True:
            top = LIST_PAGE_SIZE
            if max_results:
                top = min(top, max_results - len(messages))
                if top <= 0:
                    break

            data = await self._get(INBOX_MESSAGES, {
                "$filter": received_filter,
                "$orderby": "receivedDateTime desc",
                "$select": MESSAGE_SELECT,
                "$top": top,
                "$skip": skip,
            })
            page = data.get("value", [])
            messages.extend(page)

            if len(page) < top or not data.get("@odata.nextLink"):
                break
            skip += len(page)

        logger.info(f"Outlook listed {len(messages)} messages since {graph_datetime(since)}")
        threads, dropped = await self._normalize_messages(messages)
        return FetchResult(threads=threads, cursor=cursor, dropped=dropped)

    async def _bootstrap_delta_token(self, since: datetime) -> str:
        data = await self._get(INBOX_DELTA, {
            "$select": "id",
            "$filter": f"receivedDateTime ge {graph_datetime(since)}",
        })
        return await self._walk_delta(data, collect=None)

    async def fetch_changes(self, cursor: str) -> FetchResult:
        response = await self._client.get(INBOX_DELTA, params={"$deltatoken": cursor})
        if response.status_code == 410:
            logger.warning("Outlook delta token expired")
            raise CursorExpiredError("Delta token is no longer valid", status_code=410)
        raise_for_status(response, "Graph delta")

        changed_ids: List[str] = []
        new_cursor = await self._walk_delta(response.json(), collect=changed_ids)
        logger.info(f"Outlook delta: {len(changed_ids)} messages changed")

        outcome = await self._runner.run(changed_ids, self._get_message)
        retry_ids = retryable_failures(outcome.failures)
        if outcome.failures:
            logger.warning(
                f"Outlook could not re-read {len(outcome.failures)} of {len(changed_ids)} changed messages, "
                f"{len(retry_ids)} to retry"
            )
        threads, dropped = await self._normalize_messages(outcome.values)
        return FetchResult(threads=threads, cursor=new_cursor, dropped=retry_ids + dropped)

    async def _walk_delta(self, data: Dict[str, Any], collect: Optional[List[str]]) -> str:
        """Follow nextLinks to the deltaLink and return its token."""
        seen = set(collect or [])

        while True:
            if collect is not None:
                for item in data.get("value", []):
                    if "@removed" in item:
                        continue
                    msg_id = item.get("id")
                    if msg_id and msg_id not in seen:
                        seen.add(msg_id)
                        collect.append(msg_id)

            if data.get("@odata.nextLink"):
                data = await self._get(data["@odata.nextLink"])
                continue

            delta_link = data.get("@odata.deltaLink")
            token = delta_token_from_link(delta_link) if delta_link else None
            if not token:
                raise MailProviderError("Outlook delta response ended without a deltaLink")
            return token

    async def _get_message(self, message_id: str) -> Dict[str, Any]:
        return await self._get(f"/me/messages/{message_id}", {"$select": MESSAGE_SELECT})

    async def get_attachments(self, message_id: str) -> List[NormalizedAttachment]:
        data = await self._get(f"/me/messages/{message_id}/attachments", {"$select": ATTACHMENT_SELECT})
        return [
            NormalizedAttachment(
                external_id=att.get("id", ""),
                filename=att.get("name") or "attachment",
                mime_type=att.get("contentType") or "application/octet-stream",
                size=att.get("size", 0),
                download_url=f"/me/messages/{message_id}/attachments/{att.get('id', '')}/$value",
                content_id=att.get("contentId"),
            )
            for att in data.get("value", [])
        ]

    async def _to_thread(self, msg: Dict[str, Any]) -> NormalizedThread:
        attachments: List[NormalizedAttachment] = []
        if msg.get("hasAttachments"):
            attachments = await self.get_attachments(msg["id"])
        message = self._parse_message(msg, attachments)
        return NormalizedThread(external_id=message.external_id, messages=[message])

    async def _normalize_messages(
        self, messages: Sequence[Dict[str, Any]]
    ) -> Tuple[List[NormalizedThread], List[str]]:
        outcome = await self._runner.run(messages, self._to_thread)
        dropped = [msg.get("id", "") for msg in retryable_failures(outcome.failures)]
        if outcome.failures:
            logger.warning(f"Outlook could not normalize {len(outcome.failures)} of {len(messages)} messages")
        return outcome.values, dropped

    def _parse_message(self, msg: Dict[str, Any], attachments: List[NormalizedAttachment]) -> NormalizedMessage:
        """Parse Microsoft Graph message format."""
        msg_id = msg.get("id", "")

        from_data = (msg.get("from") or {}).get("emailAddress", {})
        to_data = {}
        if msg.get("toRecipients"):
            to_data = msg["toRecipients"][0].get("emailAddress", {})

        body_data = msg.get("body") or {}
        content = body_data.get("content", "")
        if body_data.get("contentType", "text").lower() == "html":
            body_html = content
            body_plain = msg.get("bodyPreview", "")
        else:
            body_html = None
            body_plain = content

        return NormalizedMessage(
            external_id=msg_id,
            thread_external_id=msg_id,
            subject=msg.get("subject") or NO_SUBJECT,
            sender=from_data.get("name") or from_data.get("address", ""),
            sender_email=from_data.get("address", ""),
            recipient=to_data.get("name") or to_data.get("address", ""),
            recipient_email=to_data.get("address", ""),
            timestamp=parse_graph_datetime(msg.get("receivedDateTime")),
            body=body_plain,
            html_body=body_html,
            snippet=msg.get("bodyPreview", ""),
            is_read=bool(msg.get("isRead", False)),
            is_important=msg.get("importance", "normal") == "high",
            attachments=attachments,
            provider_labels=list(msg.get("categories", [])),
        )

    async def fetch_thread(self, external_id: str) -> NormalizedThread:
        return await self.fetch_message(external_id)

    async def fetch_message(self, external_id: str) -> NormalizedThread:
        return await self._to_thread(await self._get_message(external_id))

    # ============== Mutations ==============

    async def mark_as_read(self, external_id: str) -> None:
        response = await self._client.patch(f"/me/messages/{external_id}", json={"isRead": True})
        raise_for_status(response, "Graph mark as read")

    async def send_message(self, email: OutgoingEmail) -> Dict[str, Any]:
        payload = {
            "message": {
                "subject": email.subject,
                "body": {"contentType": "HTML" if email.is_html else "Text", "content": email.body},
                "toRecipients": [{"emailAddress": {"address": a}} for a in email.to],
                "ccRecipients": [{"emailAddress": {"address": a}} for a in email.cc],
            },
            "saveToSentItems": True,
        }
        response = await self._client.post("/me/sendMail", json=payload)
        raise_for_status(response, "Graph sendMail")
        logger.info(f"Outlook sent message to {len(email.to)} recipients")
        return {"status": "sent"}

    async def _update_categories(self, update: LabelUpdate) -> bool:
        path = f"/me/messages/{update.thread_external_id}"
        current = (await self._get(path, {"$select": "categories"})).get("categories", [])

        add, remove = compute_label_delta(update.labels, update.operation, current, self._label_prefix)
        categories = [c for c in current if c not in remove]
        categories.extend(sorted(name for name in add if name not in categories))

        if categories == current:
            return False

        response = await self._client.patch(path, json={"categories": categories})
        raise_for_status(response, "Graph update categories")
        return True

    async def apply_label_updates(self, updates: Sequence[LabelUpdate]) -> int:
        outcome = await self._runner.run(updates, self._update_categories)
        applied = sum(1 for changed in outcome.values if changed)
        logger.info(f"Outlook category write-back changed {applied} messages")
        return applied

    async def setup_push_notifications(self, user_id: str) -> Dict[str, Any]:
        if not self._notification_url:
            raise MailProviderError("Outlook push notifications need OUTLOOK_NOTIFICATION_URL")

        expiration = datetime.now(timezone.utc) + timedelta(minutes=self._subscription_minutes)
        response = await self._client.post("/subscriptions", json={
            "changeType": "created",
            "notificationUrl": self._notification_url,
            "resource": "me/mailFolders('inbox')/messages",
            "expirationDateTime": expiration.strftime("%Y-%m-%dT%H:%M:%S.0000000Z"),
            "clientState": f"outlook-{user_id}",
        })
        raise_for_status(response, "Graph create subscription")
        result = response.json()
        logger.info(f"Outlook subscription {result.get('id')} created for user {user_id}")
        return result
