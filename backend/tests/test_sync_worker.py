"""
Tests for the mail sync worker.

The worker runs against the in-memory database, a scripted adapter and a
real LabelClassifier over a scripted generator.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.core.database import EMAILS_COLLECTION, THREADS_COLLECTION, USERS_COLLECTION
from backend.providers.email.base import (
    AuthProvider,
    CursorExpiredError,
    FetchResult,
    LabelOperation,
    MailProviderError,
    NormalizedAttachment,
    NormalizedThread,
    ResourceNotFoundError,
)
from backend.services.credentials import UserNotFoundError
from backend.tests.fakes import (
    GMAIL_USER,
    OUTLOOK_USER,
    FakeAdapter,
    make_message,
    make_thread,
)
from backend.workers.sync_worker import MailSyncWorker


def three_threads():
    return [
        make_thread("t1", ["Standup"], minutes=0),
        make_thread("t2", ["Invoice", "Re: Invoice"], minutes=10),
        make_thread("t3", ["Newsletter"], minutes=20),
    ]


@pytest.fixture
def adapter():
    return FakeAdapter(
        initial=FetchResult(threads=three_threads(), cursor="h100"),
        changes=FetchResult(threads=[], cursor="h200"),
    )


@pytest.fixture
def worker(store, credentials, classifier, notifier, mock_settings, adapter):
    return MailSyncWorker(
        store=store,
        credentials=credentials,
        classifier=classifier,
        notifier=notifier,
        settings=mock_settings,
        adapter_factory=lambda provider, token, settings=None: adapter,
    )


async def stored_user(fake_db, email=GMAIL_USER):
    return await fake_db[USERS_COLLECTION].find_one({"email": email})


class TestInitialSync:
    @pytest.mark.asyncio
    async def test_cold_start_persists_everything_and_sets_cursor(self, worker, gmail_user, fake_db, adapter):
        result = await worker.perform_initial_sync(GMAIL_USER)

        assert result.new_emails_count == 3
        assert result.total_emails_count == 3
        assert result.failed_count == 0
        assert result.cursor_advanced is True
        assert len(fake_db[THREADS_COLLECTION].docs) == 3
        assert len(fake_db[EMAILS_COLLECTION].docs) == 4
        assert (await stored_user(fake_db))["gmail_history_id"] == "h100"

        name, (since, max_results) = adapter.calls[0]
        assert name == "fetch_initial"
        assert max_results is None
        expected = datetime.now(timezone.utc) - timedelta(days=30)
        assert abs((since - expected).total_seconds()) < 60

    @pytest.mark.asyncio
    async def test_threads_are_labeled(self, worker, gmail_user, store):
        await worker.perform_initial_sync(GMAIL_USER)

        thread = await store.get_thread_by_external_id(gmail_user.id, "t2")
        assert thread["is_labeled"] is True
        assert await store.get_thread_labels(thread["_id"]) == ["news"]
        message = await store.get_message_by_external_id(gmail_user.id, "t2-m1")
        assert message["is_labeled"] is True
        assert await store.get_message_labels(message["_id"]) == ["news"]

    @pytest.mark.asyncio
    async def test_replay_is_idempotent_and_skips_classification(self, worker, gmail_user, fake_db, generator):
        await worker.perform_initial_sync(GMAIL_USER)
        calls_after_first = len(generator.calls)

        result = await worker.perform_initial_sync(GMAIL_USER)

        assert result.new_emails_count == 0
        assert result.total_emails_count == 3
        assert len(fake_db[THREADS_COLLECTION].docs) == 3
        assert len(fake_db[EMAILS_COLLECTION].docs) == 4
        assert len(generator.calls) == calls_after_first

    @pytest.mark.asyncio
    async def test_progress_and_saved_events(self, worker, gmail_user, notifier):
        queue = notifier.subscribe(GMAIL_USER)
        progress = []
        items = []

        await worker.perform_initial_sync(
            GMAIL_USER,
            on_progress=lambda processed, total, current: progress.append((processed, total)),
            on_item=items.append,
        )

        assert [p[0] for p in progress] == [1, 2, 3]
        assert all(total == 3 for _, total in progress)
        assert sorted(item.external_id for item in items) == ["t1", "t2", "t3"]

        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        assert [e["type"] for e in events].count("progress") == 3
        assert [e["type"] for e in events].count("saved") == 3
        saved = next(e for e in events if e["type"] == "saved")
        assert saved["thread"]["external_id"] in {"t1", "t2", "t3"}

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_fail_sync(self, worker, gmail_user):
        def explode(summary):
            raise RuntimeError("observer broke")

        result = await worker.perform_initial_sync(GMAIL_USER, on_item=explode)

        assert result.new_emails_count == 3
        assert result.cursor_advanced is True

    @pytest.mark.asyncio
    async def test_unknown_user(self, worker):
        with pytest.raises(UserNotFoundError):
            await worker.perform_initial_sync("nobody@example.com")


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_no_changes_refreshes_cursor(self, worker, gmail_user, fake_db, adapter):
        await worker.perform_initial_sync(GMAIL_USER)

        result = await worker.perform_incremental_sync(GMAIL_USER)

        assert result.new_emails_count == 0
        assert result.total_emails_count == 0
        assert result.cursor_advanced is True
        assert adapter.calls[-1] == ("fetch_changes", "h100")
        assert (await stored_user(fake_db))["gmail_history_id"] == "h200"

    @pytest.mark.asyncio
    async def test_new_thread_in_delta(self, worker, gmail_user, adapter):
        await worker.perform_initial_sync(GMAIL_USER)
        adapter.changes = FetchResult(
            threads=[make_thread("t2", ["Invoice", "Re: Invoice", "Paid"]), make_thread("t4", ["Hello"])],
            cursor="h300",
        )

        result = await worker.perform_incremental_sync(GMAIL_USER)

        assert result.new_emails_count == 1
        assert result.total_emails_count == 2

    @pytest.mark.asyncio
    async def test_without_cursor_fetches_recent_window(self, worker, gmail_user, adapter, mock_settings):
        await worker.perform_incremental_sync(GMAIL_USER)

        name, (since, max_results) = adapter.calls[0]
        assert name == "fetch_initial"
        assert max_results == mock_settings.first_page_size
        expected = datetime.now(timezone.utc) - timedelta(hours=24)
        assert abs((since - expected).total_seconds()) < 60

    @pytest.mark.asyncio
    async def test_expired_cursor_falls_back_to_lookback(self, worker, gmail_user, fake_db, adapter):
        await worker.perform_initial_sync(GMAIL_USER)
        adapter.changes_error = CursorExpiredError("stale", status_code=404)
        adapter.initial = FetchResult(threads=three_threads(), cursor="h500")

        result = await worker.perform_incremental_sync(GMAIL_USER)

        assert [name for name, _ in adapter.calls[-2:]] == ["fetch_changes", "fetch_initial"]
        _, (since, max_results) = adapter.calls[-1]
        assert max_results is None
        assert since < datetime.now(timezone.utc) - timedelta(days=29)
        assert result.cursor_advanced is True
        assert (await stored_user(fake_db))["gmail_history_id"] == "h500"

    @pytest.mark.asyncio
    async def test_outlook_cursor_field(self, worker, outlook_user, fake_db, adapter):
        adapter.provider = AuthProvider.OUTLOOK
        adapter.initial = FetchResult(threads=[make_thread("o1", ["Hi"])], cursor="delta-1")

        await worker.perform_initial_sync(OUTLOOK_USER)

        doc = await stored_user(fake_db, OUTLOOK_USER)
        assert doc["outlook_delta_token"] == "delta-1"
        assert "gmail_history_id" not in doc


class TestFailures:
    @pytest.mark.asyncio
    async def test_persist_failure_keeps_cursor(self, worker, gmail_user, store, fake_db, adapter):
        await worker.perform_initial_sync(GMAIL_USER)
        adapter.changes = FetchResult(threads=[make_thread("t5", ["Ok"]), make_thread("bad", ["Boom"])],
                                      cursor="h999")

        original = store.upsert_thread

        async def flaky_upsert(user_id, thread):
            if thread.external_id == "bad":
                raise RuntimeError("write failed")
            return await original(user_id, thread)

        store.upsert_thread = flaky_upsert

        result = await worker.perform_incremental_sync(GMAIL_USER)

        assert result.failed_count == 1
        assert result.new_emails_count == 1
        assert result.cursor_advanced is False
        assert (await stored_user(fake_db))["gmail_history_id"] == "h100"
        assert await store.get_thread_by_external_id(gmail_user.id, "t5") is not None

    @pytest.mark.asyncio
    async def test_fetch_error_keeps_cursor(self, worker, gmail_user, fake_db, adapter):
        await worker.perform_initial_sync(GMAIL_USER)
        adapter.changes_error = MailProviderError("history unavailable", status_code=503)

        with pytest.raises(MailProviderError):
            await worker.perform_incremental_sync(GMAIL_USER)
        assert (await stored_user(fake_db))["gmail_history_id"] == "h100"

        adapter.changes_error = None
        await worker.perform_incremental_sync(GMAIL_USER)

        assert adapter.calls[-1] == ("fetch_changes", "h100")
        assert (await stored_user(fake_db))["gmail_history_id"] == "h200"

    @pytest.mark.asyncio
    async def test_thread_not_fetched_keeps_cursor(self, worker, gmail_user, store, fake_db, adapter):
        await worker.perform_initial_sync(GMAIL_USER)
        adapter.changes = FetchResult(threads=[make_thread("t5", ["Ok"])], cursor="h999", dropped=["t6"])

        result = await worker.perform_incremental_sync(GMAIL_USER)

        assert result.failed_count == 1
        assert result.new_emails_count == 1
        assert result.cursor_advanced is False
        assert (await stored_user(fake_db))["gmail_history_id"] == "h100"
        assert await store.get_thread_by_external_id(gmail_user.id, "t5") is not None

        adapter.changes = FetchResult(threads=[make_thread("t6", ["Late"])], cursor="h999")
        result = await worker.perform_incremental_sync(GMAIL_USER)

        assert adapter.calls[-1] == ("fetch_changes", "h100")
        assert result.cursor_advanced is True
        assert (await stored_user(fake_db))["gmail_history_id"] == "h999"
        assert await store.get_thread_by_external_id(gmail_user.id, "t6") is not None

    @pytest.mark.asyncio
    async def test_classifier_budget_exhausted_stores_unlabeled(self, worker, gmail_user, store, generator):
        generator.replies = {"Newsletter": "I cannot label this"}

        result = await worker.perform_initial_sync(GMAIL_USER)

        assert result.failed_count == 0
        assert result.cursor_advanced is True
        assert sum("Newsletter" in call for call in generator.calls) == 5

        broken = await store.get_message_by_external_id(gmail_user.id, "t3-m0")
        assert broken["is_labeled"] is False
        assert await store.get_message_labels(broken["_id"]) == []
        thread = await store.get_thread_by_external_id(gmail_user.id, "t3")
        assert thread["is_labeled"] is False

        sibling = await store.get_thread_by_external_id(gmail_user.id, "t1")
        assert sibling["is_labeled"] is True

    @pytest.mark.asyncio
    async def test_unlabeled_message_leaves_thread_siblings_labeled(self, worker, gmail_user, store, generator, adapter):
        generator.replies = {"Garbled": "no json here", "Agenda": '{"labels": ["meeting"]}'}
        adapter.initial = FetchResult(threads=[make_thread("t8", ["Agenda", "Garbled"])], cursor="h1")

        result = await worker.perform_initial_sync(GMAIL_USER)

        assert result.failed_count == 0
        assert result.cursor_advanced is True

        labeled = await store.get_message_by_external_id(gmail_user.id, "t8-m0")
        assert labeled["is_labeled"] is True
        assert await store.get_message_labels(labeled["_id"]) == ["meeting"]

        broken = await store.get_message_by_external_id(gmail_user.id, "t8-m1")
        assert broken["is_labeled"] is False
        assert await store.get_message_labels(broken["_id"]) == []

        thread = await store.get_thread_by_external_id(gmail_user.id, "t8")
        assert await store.get_thread_labels(thread["_id"]) == ["meeting"]
        assert thread["is_labeled"] is False

    @pytest.mark.asyncio
    async def test_unlabeled_message_is_retried_next_pass(self, worker, gmail_user, store, generator, adapter):
        generator.replies = {"Newsletter": "garbage"}
        await worker.perform_initial_sync(GMAIL_USER)

        generator.replies = {}
        adapter.changes = FetchResult(threads=[make_thread("t3", ["Newsletter"], minutes=20)], cursor="h201")
        await worker.perform_incremental_sync(GMAIL_USER)

        message = await store.get_message_by_external_id(gmail_user.id, "t3-m0")
        assert message["is_labeled"] is True
        assert await store.get_message_labels(message["_id"]) == ["news"]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_passes_for_one_user_are_serialized(self, worker, gmail_user, adapter):
        adapter.delay = 0.02

        await asyncio.gather(
            worker.perform_incremental_sync(GMAIL_USER),
            worker.perform_incremental_sync(GMAIL_USER),
        )

        assert adapter.max_active == 1
        assert adapter.calls[0][0] == "fetch_initial"
        assert adapter.calls[1] == ("fetch_changes", "h100")

    @pytest.mark.asyncio
    async def test_lock_entries_are_released(self, worker, gmail_user, adapter):
        adapter.delay = 0.01

        await asyncio.gather(
            worker.perform_incremental_sync(GMAIL_USER),
            worker.perform_initial_sync(GMAIL_USER.upper()),
        )
        assert worker._locks == {}

        adapter.changes_error = MailProviderError("down")
        with pytest.raises(MailProviderError):
            await worker.perform_incremental_sync(GMAIL_USER)
        assert worker._locks == {}


class TestReads:
    @pytest.mark.asyncio
    async def test_inbox_page_from_cache(self, worker, gmail_user, adapter):
        await worker.perform_initial_sync(GMAIL_USER)
        calls = len(adapter.calls)

        page = await worker.get_inbox_emails_from_db(GMAIL_USER, limit=2, offset=0)

        assert page.total == 3
        assert page.has_more is True
        assert page.source == "cache"
        assert [item.external_id for item in page.items] == ["t3", "t2"]
        assert page.items[0].labels == ["news"]
        assert len(adapter.calls) == calls

    @pytest.mark.asyncio
    async def test_empty_cache_without_fallback(self, worker, gmail_user, adapter):
        page = await worker.get_inbox_emails_from_db(GMAIL_USER)

        assert page.total == 0
        assert page.items == []
        assert page.source == "cache"
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_empty_cache_with_fallback_fetches_first_page(self, worker, gmail_user, adapter):
        page = await worker.get_inbox_emails_from_db(GMAIL_USER, limit=10, fallback_to_provider=True)

        assert page.source == "provider"
        assert page.total == 3
        assert adapter.calls[0][0] == "fetch_initial"
        assert adapter.calls[0][1][1] == 10

    @pytest.mark.asyncio
    async def test_fallback_with_cursor_but_empty_cache_fetches_window(self, worker, gmail_user, store, fake_db, adapter):
        await store.update_user_sync_state(gmail_user.id, gmail_history_id="h050")

        page = await worker.get_inbox_emails_from_db(GMAIL_USER, limit=10, fallback_to_provider=True)

        assert page.source == "provider"
        assert page.total == 3
        assert [name for name, _ in adapter.calls] == ["fetch_initial"]
        assert adapter.calls[0][1][1] == 10
        assert (await stored_user(fake_db))["gmail_history_id"] == "h050"

    @pytest.mark.asyncio
    async def test_fallback_never_runs_past_first_page(self, worker, gmail_user, adapter):
        page = await worker.get_inbox_emails_from_db(GMAIL_USER, offset=50, fallback_to_provider=True)

        assert page.source == "cache"
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_message_content_with_attachments(self, worker, gmail_user, adapter):
        attachment = NormalizedAttachment(external_id="a1", filename="report.pdf", size=42)
        message = make_message("m1", "t9", "Report", attachments=[attachment])
        adapter.initial = FetchResult(threads=[NormalizedThread("t9", [message])], cursor="h1")
        await worker.perform_initial_sync(GMAIL_USER)

        detail = await worker.get_email_content(GMAIL_USER, "m1")

        assert detail.subject == "Report"
        assert detail.labels == ["news"]
        assert [a.filename for a in detail.attachments] == ["report.pdf"]

    @pytest.mark.asyncio
    async def test_message_cache_miss_fills_from_provider(self, worker, gmail_user, adapter, store):
        adapter.threads = {"t7": make_thread("t7", ["Late arrival"])}

        detail = await worker.get_email_content(GMAIL_USER, "t7-m0")

        assert detail.external_id == "t7-m0"
        assert ("fetch_message", "t7-m0") in adapter.calls
        assert await store.get_thread_by_external_id(gmail_user.id, "t7") is not None

    @pytest.mark.asyncio
    async def test_message_missing_everywhere(self, worker, gmail_user):
        with pytest.raises(ResourceNotFoundError):
            await worker.get_email_content(GMAIL_USER, "ghost")

    @pytest.mark.asyncio
    async def test_thread_emails_newest_first(self, worker, gmail_user):
        await worker.perform_initial_sync(GMAIL_USER)

        messages = await worker.get_thread_emails(GMAIL_USER, "t2")

        assert [m.subject for m in messages] == ["Re: Invoice", "Invoice"]


class TestMutations:
    @pytest.mark.asyncio
    async def test_label_update_goes_to_provider_then_cache(self, worker, gmail_user, adapter):
        await worker.perform_initial_sync(GMAIL_USER)

        labels = await worker.update_message_labels(GMAIL_USER, "t1", ["Meeting", "meeting"], LabelOperation.ADD)

        assert labels == ["meeting", "news"]
        update = adapter.label_updates[-1]
        assert update.thread_external_id == "t1"
        assert update.labels == ["meeting"]
        assert update.operation == LabelOperation.ADD

        labels = await worker.update_message_labels(GMAIL_USER, "t1", ["invoice"], "replace")
        assert labels == ["invoice"]

    @pytest.mark.asyncio
    async def test_label_update_rejects_bad_operation(self, worker, gmail_user):
        await worker.perform_initial_sync(GMAIL_USER)

        with pytest.raises(ValueError):
            await worker.update_message_labels(GMAIL_USER, "t1", ["news"], "toggle")

    @pytest.mark.asyncio
    async def test_label_update_unknown_thread(self, worker, gmail_user, adapter):
        with pytest.raises(ResourceNotFoundError):
            await worker.update_message_labels(GMAIL_USER, "nope", ["news"], LabelOperation.ADD)
        assert adapter.label_updates == []

    @pytest.mark.asyncio
    async def test_mark_as_read_updates_message_and_thread(self, worker, gmail_user, adapter, store):
        adapter.initial = FetchResult(threads=[make_thread("t1", ["A", "B"], is_read=False)], cursor="h1")
        await worker.perform_initial_sync(GMAIL_USER)

        first = await worker.mark_email_as_read(GMAIL_USER, "t1-m0")
        assert first == {"external_id": "t1-m0", "is_read": True, "thread_is_read": False}

        second = await worker.mark_email_as_read(GMAIL_USER, "t1-m1")
        assert second["thread_is_read"] is True
        assert ("mark_as_read", "t1-m1") in adapter.calls
        assert (await store.get_thread_by_external_id(gmail_user.id, "t1"))["is_read"] is True

    @pytest.mark.asyncio
    async def test_label_write_back_after_sync(self, worker, gmail_user, adapter, mock_settings):
        mock_settings.label_write_back = True

        await worker.perform_initial_sync(GMAIL_USER)

        assert sorted(u.thread_external_id for u in adapter.label_updates) == ["t1", "t2", "t3"]
        assert all(u.operation == LabelOperation.REPLACE for u in adapter.label_updates)

    @pytest.mark.asyncio
    async def test_send_requires_recipient(self, worker, gmail_user, adapter):
        with pytest.raises(ValueError):
            await worker.send_email(GMAIL_USER, ["  "], "Hi", "body")
        assert adapter.sent == []

    @pytest.mark.asyncio
    async def test_send(self, worker, gmail_user, adapter):
        result = await worker.send_email(GMAIL_USER, ["bob@example.com"], "Hi", "body", cc=["c@example.com"])

        assert result == {"id": "sent-1"}
        assert adapter.sent[0].to == ["bob@example.com"]
        assert adapter.sent[0].cc == ["c@example.com"]

    @pytest.mark.asyncio
    async def test_push_setup_passes_user_id(self, worker, gmail_user, adapter):
        await worker.setup_push_notifications(GMAIL_USER)

        assert adapter.calls[-1] == ("setup_push_notifications", str(gmail_user.id))
