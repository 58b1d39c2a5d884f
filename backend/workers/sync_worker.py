"""
Mail Sync Worker

Orchestrates mailbox synchronization between a provider adapter and the
local cache:

- Initial sync: bounded lookback backfill for a mailbox with no cursor
- Incremental sync: provider deltas since the stored cursor
- Read-through fetches that fill cache misses from the provider
- Provider-first mutations (labels, read state) mirrored into the cache

The cursor on the user record is the only state shared across passes. It
is written once per pass, after every fetched thread has been persisted,
so a failed pass is replayed from the same point next time.
"""

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from backend.core.batching import BoundedBatchRunner
from backend.core.config import BackendSettings, settings as default_settings
from backend.models.schemas import InboxPage, MessageDetail, SyncResult, ThreadSummary
from backend.providers.email import create_email_adapter
from backend.providers.email.base import (
    AuthProvider,
    CursorExpiredError,
    FetchResult,
    LabelOperation,
    LabelUpdate,
    MailProviderAdapter,
    MailProviderError,
    NormalizedMessage,
    NormalizedThread,
    OutgoingEmail,
    ResourceNotFoundError,
)
from backend.services.credentials import CredentialProvider, MailUser
from backend.services.label_classifier import LabelClassificationError, LabelClassifier
from backend.services.mail_store import MailCacheStore, clean_labels
from backend.services.notifier import RealtimeNotifier

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, Optional[str]], Any]
ItemCallback = Callable[[ThreadSummary], Any]
AdapterFactory = Callable[..., MailProviderAdapter]


async def _invoke(callback: Optional[Callable], *args) -> None:
    """Call a sync or async observer; observer errors never fail a sync."""
    if not callback:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Sync callback error: {e}")


class MailSyncWorker:
    """
    Sync coordinator for all mailbox accounts.

    Handles:
    - Per-user serialization of sync passes
    - Classification and persistence of fetched threads
    - Progress and per-item events while a pass runs
    - Cursor advancement after a fully persisted pass
    """

    def __init__(
        self,
        store: MailCacheStore,
        credentials: CredentialProvider,
        classifier: LabelClassifier,
        notifier: Optional[RealtimeNotifier] = None,
        settings: Optional[BackendSettings] = None,
        adapter_factory: AdapterFactory = create_email_adapter,
    ):
        self.store = store
        self.credentials = credentials
        self.classifier = classifier
        self.notifier = notifier
        self.settings = settings or default_settings
        self._adapter_factory = adapter_factory
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._runner = BoundedBatchRunner(
            batch_size=self.settings.provider_batch_size,
            name="persist",
        )

    @asynccontextmanager
    async def _user_lock(self, user_email: str):
        """Serialize passes for one mailbox; the lock is dropped once nobody holds or awaits it."""
        key = user_email.lower()
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def _adapter(self, user: MailUser) -> MailProviderAdapter:
        return self._adapter_factory(user.provider, user.access_token, settings=self.settings)

    # ============== Sync passes ==============

    async def perform_initial_sync(
        self,
        user_email: str,
        on_progress: Optional[ProgressCallback] = None,
        on_item: Optional[ItemCallback] = None,
    ) -> SyncResult:
        """
        Backfill the lookback window for a mailbox.

        Threads persisted before an adapter error stay committed; the
        cursor only moves when the whole pass succeeds.
        """
        async with self._user_lock(user_email):
            user = await self.credentials.get_user(user_email)
            since = datetime.now(timezone.utc) - timedelta(days=self.settings.initial_sync_lookback_days)
            logger.info(f"Initial sync for {user.email} ({user.provider.value}) since {since.date()}")
            async with self._adapter(user) as adapter:
                fetched = await adapter.fetch_initial(since)
                return await self._complete_pass(user, adapter, fetched, on_progress, on_item)

    async def perform_incremental_sync(
        self,
        user_email: str,
        max_results: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_item: Optional[ItemCallback] = None,
    ) -> SyncResult:
        """
        Pull provider changes since the stored cursor.

        Without a cursor only the recent window is fetched (bounded by
        ``max_results``); an expired cursor falls back to the lookback window.
        """
        # Cursor is read under the lock; a queued pass sees the previous pass's cursor.
        async with self._user_lock(user_email):
            user = await self.credentials.get_user(user_email)
            async with self._adapter(user) as adapter:
                fetched = await self._fetch_incremental(user, adapter, max_results)
                return await self._complete_pass(user, adapter, fetched, on_progress, on_item)

    async def _fetch_incremental(
        self,
        user: MailUser,
        adapter: MailProviderAdapter,
        max_results: Optional[int],
    ) -> FetchResult:
        now = datetime.now(timezone.utc)
        cursor = user.cursor

        if not cursor:
            since = now - timedelta(hours=self.settings.incremental_window_hours)
            limit = max_results or self.settings.first_page_size
            logger.info(f"No cursor for {user.email}, fetching up to {limit} threads since {since.isoformat()}")
            return await adapter.fetch_initial(since, max_results=limit)

        try:
            return await adapter.fetch_changes(cursor)
        except CursorExpiredError as e:
            since = now - timedelta(days=self.settings.initial_sync_lookback_days)
            logger.warning(f"Cursor for {user.email} expired ({e}), refetching since {since.date()}")
            return await adapter.fetch_initial(since)

    async def _fill_recent(self, user_email: str, limit: int) -> SyncResult:
        """Fetch the recent window into an empty cache. A stored cursor is kept as is."""
        async with self._user_lock(user_email):
            user = await self.credentials.get_user(user_email)
            since = datetime.now(timezone.utc) - timedelta(hours=self.settings.incremental_window_hours)
            async with self._adapter(user) as adapter:
                fetched = await adapter.fetch_initial(since, max_results=limit)
                if user.cursor:
                    # Deltas since the stored cursor still belong to the next incremental pass.
                    fetched = replace(fetched, cursor=user.cursor)
                return await self._complete_pass(user, adapter, fetched, None, None)

    async def _complete_pass(
        self,
        user: MailUser,
        adapter: MailProviderAdapter,
        fetched: FetchResult,
        on_progress: Optional[ProgressCallback],
        on_item: Optional[ItemCallback],
    ) -> SyncResult:
        result, summaries = await self._persist_threads(user, fetched.threads, on_progress, on_item)
        if fetched.dropped:
            logger.warning(f"{len(fetched.dropped)} items not fetched for {user.email}: {fetched.dropped}")
            result.failed_count += len(fetched.dropped)

        if self.settings.label_write_back and summaries:
            await self._write_back_labels(user, adapter, summaries)

        result.cursor_advanced = await self._advance_cursor(user, fetched.cursor, result)
        logger.info(
            f"Sync for {user.email} done: {result.new_emails_count} new, "
            f"{result.total_emails_count} total, {result.failed_count} failed"
        )
        return result

    async def _advance_cursor(self, user: MailUser, cursor: Optional[str], result: SyncResult) -> bool:
        if result.failed_count:
            logger.warning(
                f"{result.failed_count} threads failed to fetch or persist for {user.email}; "
                f"cursor stays at {user.cursor}"
            )
            return False
        if not cursor:
            logger.warning(f"Provider returned no cursor for {user.email}")
            return False

        if user.provider == AuthProvider.GOOGLE:
            await self.store.update_user_sync_state(user.id, gmail_history_id=cursor)
            user.gmail_history_id = cursor
        else:
            await self.store.update_user_sync_state(user.id, outlook_delta_token=cursor)
            user.outlook_delta_token = cursor
        return True

    # ============== Persistence ==============

    async def _persist_threads(
        self,
        user: MailUser,
        threads: Sequence[NormalizedThread],
        on_progress: Optional[ProgressCallback] = None,
        on_item: Optional[ItemCallback] = None,
    ) -> Tuple[SyncResult, List[ThreadSummary]]:
        existing = await self.store.find_existing_thread_ids(user.id, [t.external_id for t in threads])
        total = len(threads)
        processed = 0

        async def persist(thread: NormalizedThread) -> ThreadSummary:
            nonlocal processed
            summary = await self._persist_thread(user, thread)

            # Committed above; observers never see uncommitted rows.
            processed += 1
            await self._emit_progress(user, processed, total, summary.subject, on_progress)
            await self._emit_saved(user, summary, on_item)
            return summary

        outcome = await self._runner.run(threads, persist)

        new_count = sum(1 for thread, _ in outcome.results if thread.external_id not in existing)
        result = SyncResult(
            new_emails_count=new_count,
            total_emails_count=total,
            failed_count=len(outcome.failures),
        )
        return result, outcome.values

    async def _persist_thread(self, user: MailUser, thread: NormalizedThread) -> ThreadSummary:
        """Upsert thread -> classify + upsert each message -> union labels onto the thread."""
        thread_row = await self.store.upsert_thread(user.id, thread)
        thread_labels: Set[str] = set()
        all_labeled = bool(thread.messages)

        for message in thread.messages:
            labels, labeled = await self._labels_for(user, message)

            message_row = await self.store.upsert_message(user.id, thread_row["_id"], message)
            for attachment in message.attachments:
                await self.store.upsert_attachment(message_row["_id"], attachment)

            if labeled:
                await self.store.replace_message_labels(message_row["_id"], labels)
                await self.store.mark_message_labeled(message_row["_id"])
                thread_labels.update(labels)
            else:
                all_labeled = False

        if thread_labels:
            await self.store.add_thread_labels(thread_row["_id"], thread_labels)
        if all_labeled:
            await self.store.mark_thread_labeled(thread_row["_id"])
            thread_row["is_labeled"] = True

        labels = await self.store.get_thread_labels(thread_row["_id"])
        return ThreadSummary.from_doc(thread_row, labels)

    async def _labels_for(self, user: MailUser, message: NormalizedMessage) -> Tuple[List[str], bool]:
        """Labels for one message and whether classification succeeded."""
        cached = await self.store.get_message_by_external_id(user.id, message.external_id)
        if cached and cached.get("is_labeled"):
            return await self.store.get_message_labels(cached["_id"]), True

        try:
            return await self.classifier.classify(message.subject, message.body or message.snippet), True
        except LabelClassificationError as e:
            logger.warning(f"Message {message.external_id} stored without labels: {e}")
        except Exception as e:
            logger.error(f"Classifier unavailable for message {message.external_id}: {e}")
        return [], False

    async def _emit_progress(self, user: MailUser, processed: int, total: int,
                             current: Optional[str], on_progress: Optional[ProgressCallback]) -> None:
        if self.notifier:
            self.notifier.publish_progress(user.email, processed, total, current)
        await _invoke(on_progress, processed, total, current)

    async def _emit_saved(self, user: MailUser, summary: ThreadSummary,
                          on_item: Optional[ItemCallback]) -> None:
        if self.notifier:
            self.notifier.publish_saved(user.email, summary.model_dump(mode="json"))
        await _invoke(on_item, summary)

    async def _write_back_labels(self, user: MailUser, adapter: MailProviderAdapter,
                                 summaries: Sequence[ThreadSummary]) -> None:
        updates = [
            LabelUpdate(s.external_id, s.labels, LabelOperation.REPLACE)
            for s in summaries if s.is_labeled
        ]
        try:
            await adapter.apply_label_updates(updates)
        except MailProviderError as e:
            logger.warning(f"Label write-back failed for {user.email}: {e}")

    # ============== Reads ==============

    async def get_inbox_emails_from_db(
        self,
        user_email: str,
        limit: int = 50,
        offset: int = 0,
        fallback_to_provider: bool = False,
    ) -> InboxPage:
        """
        Page through cached threads, newest first.

        With ``fallback_to_provider`` an empty cache on the first page
        (offset 0) triggers one windowed provider fetch before answering,
        whether or not the user already has a cursor.
        Later pages and non-empty caches are always served from the cache.
        """
        user = await self.credentials.get_user(user_email)
        items, total = await self.store.get_threads_by_user(user.id, limit, offset)
        source = "cache"

        if fallback_to_provider and offset == 0 and total == 0:
            logger.info(f"Cache empty for {user.email}, fetching first page from provider")
            await self._fill_recent(user_email, limit)
            items, total = await self.store.get_threads_by_user(user.id, limit, offset)
            source = "provider"

        return InboxPage(
            items=[ThreadSummary.from_doc(item) for item in items],
            total=total,
            has_more=offset + len(items) < total,
            source=source,
        )

    async def _message_detail(self, row: Dict[str, Any]) -> MessageDetail:
        labels = await self.store.get_message_labels(row["_id"])
        attachments = await self.store.get_attachments(row["_id"])
        return MessageDetail.from_doc(row, labels, attachments)

    async def _fetch_and_persist(self, user: MailUser, external_id: str, thread: bool = False) -> None:
        async with self._adapter(user) as adapter:
            if thread:
                fetched = await adapter.fetch_thread(external_id)
            else:
                fetched = await adapter.fetch_message(external_id)
        await self._persist_thread(user, fetched)

    async def get_email_content(self, user_email: str, external_id: str) -> MessageDetail:
        """Serve a message from the cache, filling a miss from the provider."""
        user = await self.credentials.get_user(user_email)
        row = await self.store.get_message_by_external_id(user.id, external_id)

        if not row:
            logger.warning(f"Cache miss for message {external_id} of {user.email}; sync left it unpopulated")
            await self._fetch_and_persist(user, external_id)
            row = await self.store.get_message_by_external_id(user.id, external_id)
            if not row:
                raise ResourceNotFoundError(f"Message {external_id} not found", status_code=404)

        return await self._message_detail(row)

    async def get_thread_emails(self, user_email: str, thread_external_id: str) -> List[MessageDetail]:
        """All messages of a thread, newest first, filling a miss from the provider."""
        user = await self.credentials.get_user(user_email)
        thread_row = await self.store.get_thread_by_external_id(user.id, thread_external_id)

        if not thread_row:
            logger.warning(f"Cache miss for thread {thread_external_id} of {user.email}")
            await self._fetch_and_persist(user, thread_external_id, thread=True)
            thread_row = await self.store.get_thread_by_external_id(user.id, thread_external_id)
            if not thread_row:
                raise ResourceNotFoundError(f"Thread {thread_external_id} not found", status_code=404)

        rows = await self.store.get_emails_by_thread_id(thread_row["_id"])
        return [await self._message_detail(row) for row in rows]

    # ============== Mutations ==============

    async def update_message_labels(
        self,
        user_email: str,
        thread_external_id: str,
        labels: List[str],
        operation: LabelOperation,
    ) -> List[str]:
        """
        Apply a label operation on the provider, then mirror it in the cache.

        Returns:
            The thread's cached label set after the operation
        """
        operation = LabelOperation(operation)
        labels = clean_labels(labels)
        user = await self.credentials.get_user(user_email)

        thread_row = await self.store.get_thread_by_external_id(user.id, thread_external_id)
        if not thread_row:
            raise ResourceNotFoundError(f"Thread {thread_external_id} not found", status_code=404)

        async with self._adapter(user) as adapter:
            await adapter.apply_label_updates([LabelUpdate(thread_external_id, labels, operation)])

        return await self.store.apply_thread_labels(thread_row["_id"], labels, operation)

    async def mark_email_as_read(self, user_email: str, external_id: str) -> Dict[str, Any]:
        """Mark read on the provider, then on the cached message and its thread."""
        user = await self.credentials.get_user(user_email)

        async with self._adapter(user) as adapter:
            await adapter.mark_as_read(external_id)

        row = await self.store.update_message_read_status(user.id, external_id, True)
        if not row:
            logger.warning(f"Message {external_id} marked read but not cached; fetching it")
            await self._fetch_and_persist(user, external_id)
            row = await self.store.get_message_by_external_id(user.id, external_id)
            if not row:
                return {"external_id": external_id, "is_read": True, "thread_is_read": None}

        thread_is_read = await self.store.refresh_thread_read_state(row["thread_id"])
        return {"external_id": external_id, "is_read": True, "thread_is_read": thread_is_read}

    async def send_email(
        self,
        user_email: str,
        to: List[str],
        subject: str,
        body: str,
        is_html: bool = False,
        cc: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        recipients = [address.strip() for address in to if address and address.strip()]
        if not recipients:
            raise ValueError("At least one recipient is required")

        user = await self.credentials.get_user(user_email)
        async with self._adapter(user) as adapter:
            return await adapter.send_message(OutgoingEmail(
                to=recipients,
                subject=subject,
                body=body,
                is_html=is_html,
                cc=list(cc or []),
            ))

    async def setup_push_notifications(self, user_email: str) -> Dict[str, Any]:
        user = await self.credentials.get_user(user_email)
        async with self._adapter(user) as adapter:
            return await adapter.setup_push_notifications(str(user.id))

    async def handle_push_notification(self, user_email: str) -> SyncResult:
        """A provider push means "something changed": run an incremental pass."""
        return await self.perform_incremental_sync(user_email)


def build_sync_worker(db, settings: Optional[BackendSettings] = None,
                      notifier: Optional[RealtimeNotifier] = None) -> MailSyncWorker:
    """Wire a worker against a motor database with the configured classifier."""
    from backend.core.llm_providers import create_llm_client

    settings = settings or default_settings
    classifier = LabelClassifier(
        create_llm_client(settings),
        max_attempts=settings.classifier_max_attempts,
    )
    return MailSyncWorker(
        store=MailCacheStore(db),
        credentials=CredentialProvider(db),
        classifier=classifier,
        notifier=notifier,
        settings=settings,
    )

