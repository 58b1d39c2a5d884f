"""
Backend Test Configuration.

Pytest fixtures shared by the mail sync tests. Nothing here talks to
MongoDB, an LLM or a mail provider.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from backend.core.credential_vault import CredentialVault
from backend.core.database import ensure_indexes
from backend.providers.email.base import AuthProvider
from backend.services.credentials import CredentialProvider
from backend.services.label_classifier import LabelClassifier
from backend.services.mail_store import MailCacheStore
from backend.services.notifier import RealtimeNotifier
from backend.tests.fakes import GMAIL_USER, OUTLOOK_USER, FakeDatabase, FakeGenerator


@pytest.fixture
def mock_settings():
    """Settings with small batches and no inter-batch delay."""
    from backend.core.config import BackendSettings

    return BackendSettings(
        mongodb_uri="mongodb://localhost:27017/?directConnection=true",
        mongodb_database="test_mail_cache",
        llm_provider="openai",
        llm_api_key="test-key",
        llm_model="gpt-4o-mini",
        provider_batch_size=2,
        provider_batch_delay_seconds=0.0,
        gmail_api_base_url="https://gmail.test/gmail/v1/users/me",
        graph_api_base_url="https://graph.test/v1.0",
        gmail_pubsub_topic="projects/test/topics/mail",
        outlook_notification_url="https://hooks.test/api/v1/mail/webhooks/outlook",
        webhook_secret=None,
        cors_origins=["*"],
        debug=True,
    )


@pytest.fixture
async def fake_db():
    db = FakeDatabase()
    await ensure_indexes(db)
    return db


@pytest.fixture
def vault():
    return CredentialVault(master_key="test-master-key", salt="test-salt")


@pytest.fixture
def store(fake_db):
    return MailCacheStore(fake_db)


@pytest.fixture
def credentials(fake_db, vault):
    return CredentialProvider(fake_db, vault=vault)


@pytest.fixture
async def gmail_user(credentials):
    return await credentials.upsert_user(GMAIL_USER, AuthProvider.GOOGLE, "gmail-token", "gmail-refresh")


@pytest.fixture
async def outlook_user(credentials):
    return await credentials.upsert_user(OUTLOOK_USER, AuthProvider.OUTLOOK, "graph-token")


@pytest.fixture
def generator():
    return FakeGenerator(default='{"labels": ["news"]}')


@pytest.fixture
def classifier(generator):
    return LabelClassifier(generator, max_attempts=5)


@pytest.fixture
def notifier():
    return RealtimeNotifier()


@pytest.fixture
def mock_worker():
    """A MailSyncWorker double for router tests."""
    worker = MagicMock()
    for name in (
        "perform_initial_sync",
        "perform_incremental_sync",
        "get_inbox_emails_from_db",
        "get_email_content",
        "get_thread_emails",
        "update_message_labels",
        "mark_email_as_read",
        "send_email",
        "setup_push_notifications",
        "handle_push_notification",
    ):
        setattr(worker, name, AsyncMock())
    worker.credentials = MagicMock()
    worker.credentials.get_user_by_id = AsyncMock()
    return worker


@pytest.fixture
def app(mock_worker, notifier):
    """The FastAPI app with test doubles on app.state.

    TestClient is used without a context manager, so the lifespan (and
    its MongoDB connection) never runs.
    """
    from backend.main import app as fastapi_app

    fastapi_app.state.mail_sync = mock_worker
    fastapi_app.state.notifier = notifier
    return fastapi_app


@pytest.fixture
def client(app) -> TestClient:
    """Create a synchronous test client."""
    return TestClient(app)
