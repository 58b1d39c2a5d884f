"""Tests for the notifier, credential storage and LLM client configuration."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from backend.core.credential_vault import CredentialVault, DecryptionError
from backend.core.database import USERS_COLLECTION
from backend.core.llm_providers import LLMClient, LLMConfig, LLMProvider, create_llm_client
from backend.providers.email.base import AuthProvider
from backend.services.credentials import CredentialProvider, UserNotFoundError
from backend.services.notifier import RealtimeNotifier
from backend.tests.fakes import GMAIL_USER


class TestRealtimeNotifier:
    def test_events_reach_only_matching_subscribers(self):
        notifier = RealtimeNotifier()
        mine = notifier.subscribe(GMAIL_USER)
        other = notifier.subscribe("other@example.com")

        notifier.publish_progress(GMAIL_USER.upper(), 1, 3, "Standup")

        assert mine.get_nowait() == {"type": "progress", "processed": 1, "total": 3, "currentEmail": "Standup"}
        assert other.empty()

    def test_full_queue_drops_oldest(self):
        notifier = RealtimeNotifier(queue_size=2)
        queue = notifier.subscribe(GMAIL_USER)

        for i in range(3):
            notifier.publish_saved(GMAIL_USER, {"external_id": f"t{i}"})

        assert [queue.get_nowait()["thread"]["external_id"] for _ in range(2)] == ["t1", "t2"]

    def test_unsubscribe(self):
        notifier = RealtimeNotifier()
        queue = notifier.subscribe(GMAIL_USER)
        assert notifier.subscriber_count(GMAIL_USER) == 1

        notifier.unsubscribe(GMAIL_USER, queue)
        notifier.publish_progress(GMAIL_USER, 1, 1)

        assert notifier.subscriber_count(GMAIL_USER) == 0
        assert queue.empty()


class TestCredentialVault:
    def test_round_trip(self, vault):
        sealed = vault.seal_tokens("access", "refresh")

        assert "access" not in sealed
        assert vault.open_tokens(sealed) == ("access", "refresh")

    def test_wrong_key(self, vault):
        sealed = vault.seal_tokens("access")
        other = CredentialVault(master_key="another-key", salt="test-salt")

        with pytest.raises(DecryptionError):
            other.open_tokens(sealed)


class TestCredentialProvider:
    @pytest.mark.asyncio
    async def test_upsert_and_lookup(self, credentials):
        created = await credentials.upsert_user("Jane@Example.com", AuthProvider.GOOGLE, "tok", "ref")
        loaded = await credentials.get_user(GMAIL_USER)

        assert loaded.id == created.id
        assert loaded.email == GMAIL_USER
        assert loaded.access_token == "tok"
        assert loaded.refresh_token == "ref"
        assert loaded.cursor is None

        by_id = await credentials.get_user_by_id(str(created.id))
        assert by_id.email == GMAIL_USER

    @pytest.mark.asyncio
    async def test_token_refresh_keeps_cursor(self, credentials, fake_db):
        user = await credentials.upsert_user(GMAIL_USER, AuthProvider.GOOGLE, "old")
        await fake_db[USERS_COLLECTION].update_one({"_id": user.id}, {"$set": {"gmail_history_id": "77"}})

        refreshed = await credentials.upsert_user(GMAIL_USER, AuthProvider.GOOGLE, "new")

        assert refreshed.access_token == "new"
        assert refreshed.cursor == "77"

    @pytest.mark.asyncio
    async def test_unknown_users(self, credentials):
        with pytest.raises(UserNotFoundError):
            await credentials.get_user("nobody@example.com")
        with pytest.raises(UserNotFoundError):
            await credentials.get_user_by_id("not-an-object-id")

    @pytest.mark.asyncio
    async def test_undecryptable_credentials(self, fake_db, credentials):
        await credentials.upsert_user(GMAIL_USER, AuthProvider.GOOGLE, "tok")
        other = CredentialProvider(fake_db, vault=CredentialVault(master_key="rotated", salt="test-salt"))

        with pytest.raises(UserNotFoundError):
            await other.get_user(GMAIL_USER)


class TestLLMClient:
    def test_model_prefixes(self):
        assert LLMConfig(LLMProvider.OPENAI, "gpt-4o-mini").get_litellm_model() == "gpt-4o-mini"
        assert LLMConfig(LLMProvider.GOOGLE, "gemini-1.5-flash").get_litellm_model() == "gemini/gemini-1.5-flash"
        assert LLMConfig(LLMProvider.OLLAMA, "ollama/llama3").get_litellm_model() == "ollama/llama3"

    def test_create_from_settings(self, mock_settings):
        mock_settings.llm_provider = "unknown"
        client = create_llm_client(mock_settings)

        assert client.config.provider == LLMProvider.OPENAI
        assert client.config.api_key == "test-key"
        assert client.config.base_url is None
        assert client.config.temperature == mock_settings.classifier_temperature

    @pytest.mark.asyncio
    async def test_generate_sends_system_and_user_messages(self):
        response = MagicMock()
        response.choices = [MagicMock(message=MagicMock(content='{"labels": ["news"]}'))]
        client = LLMClient(LLMConfig(LLMProvider.OPENAI, "gpt-4o-mini", api_key="k"))

        with patch("backend.core.llm_providers.acompletion", AsyncMock(return_value=response)) as completion:
            text = await client.generate("system", "email: Hi there")

        assert text == '{"labels": ["news"]}'
        kwargs = completion.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["api_key"] == "k"
        assert [m["role"] for m in kwargs["messages"]] == ["system", "user"]
