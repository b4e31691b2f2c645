"""Tests for the conversation store and service."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from converse_driver.clients.throttling import TokenEstimator
from converse_driver.errors import EndpointError
from converse_driver.models.llm import InferenceParams
from converse_driver.models.state import new_conversation
from converse_driver.services.conversation import ConversationNotFoundError, ConversationService
from converse_driver.services.conversation_store import InMemoryConversationStore
from converse_driver.services.driver import ConversationDriver
from tests.fakes import WEATHER_SPEC, FakeModelClient, text_response


class TestInMemoryConversationStore:
    """Tests for conversation storage."""

    def test_create_generates_cuid(self):
        """Test that new conversations get unique CUID identifiers."""
        store = InMemoryConversationStore()
        first = store.create_conversation("sys", [WEATHER_SPEC])
        second = store.create_conversation()

        assert first.conversation_id != second.conversation_id
        assert len(first.conversation_id) >= 20
        assert first.system_prompt == "sys"
        assert first.tools == (WEATHER_SPEC,)
        assert store.get_conversation_count() == 2

    def test_create_with_explicit_id(self):
        """Test that an explicit id is used and must be unique."""
        store = InMemoryConversationStore()
        store.create_conversation(conversation_id="abc")
        assert store.get_conversation("abc") is not None
        with pytest.raises(ValueError):
            store.create_conversation(conversation_id="abc")

    def test_save_conversation(self):
        """Test storing a conversation built outside the store."""
        store = InMemoryConversationStore()
        conversation = new_conversation(store.generate_conversation_id(), "sys")

        store.save_conversation(conversation)

        assert store.get_conversation(conversation.conversation_id) is conversation
        with pytest.raises(ValueError):
            store.save_conversation(conversation)

    def test_get_missing_returns_none(self):
        """Test that unknown ids return None."""
        assert InMemoryConversationStore().get_conversation("missing") is None

    def test_delete(self):
        """Test deleting conversations."""
        store = InMemoryConversationStore()
        conversation = store.create_conversation()

        assert store.delete_conversation(conversation.conversation_id) is True
        assert store.delete_conversation(conversation.conversation_id) is False
        assert store.get_conversation(conversation.conversation_id) is None

    def test_idle_conversations_expire(self):
        """Test that conversations idle past the timeout are removed."""
        store = InMemoryConversationStore(conversation_timeout_minutes=30)
        stale = store.create_conversation()
        fresh = store.create_conversation()
        stale.last_activity = datetime.now(UTC) - timedelta(minutes=31)

        assert store.get_conversation(stale.conversation_id) is None
        assert store.get_conversation(fresh.conversation_id) is fresh


class TestConversationService:
    """Tests for the service used by the HTTP API."""

    @staticmethod
    def make_service(responses, max_message_tokens: int = 1000, max_attempts: int = 1):
        client = FakeModelClient(responses)
        service = ConversationService(
            driver=ConversationDriver(client),
            store=InMemoryConversationStore(),
            tools=[WEATHER_SPEC],
            system_prompt="Be brief.",
            token_estimator=TokenEstimator(encoding_model=None),
            max_message_tokens=max_message_tokens,
            max_attempts=max_attempts,
        )
        return service, client

    @pytest.mark.asyncio
    async def test_new_conversation_is_created(self):
        """Test that a message without an id starts a conversation."""
        service, client = self.make_service([text_response("Hi")])

        conversation, result = await service.process_message("Hello")

        assert result.text == "Hi"
        assert conversation.message_count == 2
        assert service.get_conversation(conversation.conversation_id) is conversation
        assert client.calls[0].system_prompt == "Be brief."
        assert client.calls[0].tools == (WEATHER_SPEC,)

    @pytest.mark.asyncio
    async def test_existing_conversation_is_continued(self):
        """Test that an id continues the stored conversation."""
        service, client = self.make_service([text_response("One"), text_response("Two")])

        conversation, _ = await service.process_message("First")
        same, result = await service.process_message("Second", conversation.conversation_id)

        assert same is conversation
        assert result.text == "Two"
        assert conversation.message_count == 4
        assert len(client.calls[1].messages) == 3

    @pytest.mark.asyncio
    async def test_unknown_conversation(self):
        """Test that an unknown id raises ConversationNotFoundError."""
        service, client = self.make_service([text_response("Hi")])

        with pytest.raises(ConversationNotFoundError):
            await service.process_message("Hello", "missing")
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_message_too_long(self):
        """Test that oversized messages are rejected before the model is called."""
        service, client = self.make_service([text_response("Hi")], max_message_tokens=10)

        with pytest.raises(ValueError, match="Your message is too long"):
            await service.process_message("a" * 100)
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_inference_params_passed_through(self):
        """Test that per-request settings reach the model client."""
        service, client = self.make_service([text_response("Hi")])
        params = InferenceParams(temperature=0.1)

        await service.process_message("Hello", inference_params=params)

        assert client.calls[0].inference_params is params

    @pytest.mark.asyncio
    async def test_failed_first_turn_stores_nothing(self):
        """Test that a new conversation whose first turn fails is not kept."""
        service, _ = self.make_service([EndpointError("busy")])

        with pytest.raises(EndpointError):
            await service.process_message("Hello")

        assert service.store.get_conversation_count() == 0

    @pytest.mark.asyncio
    async def test_failed_turn_leaves_existing_conversation_unchanged(self):
        """Test that a failure on a stored conversation appends nothing."""
        service, _ = self.make_service([text_response("One"), EndpointError("busy")])
        conversation, _ = await service.process_message("First")

        with pytest.raises(EndpointError):
            await service.process_message("Second", conversation.conversation_id)

        assert conversation.message_count == 2
        assert service.store.get_conversation_count() == 1

    @pytest.mark.asyncio
    async def test_retryable_failures_are_retried(self):
        """Test that the service replays a turn after a retryable endpoint error."""
        service, client = self.make_service([EndpointError("busy"), text_response("Hi")], max_attempts=2)

        with patch("converse_driver.services.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            conversation, result = await service.process_message("Hello")

        assert result.text == "Hi"
        assert conversation.message_count == 2
        assert len(client.calls) == 2
        sleep.assert_awaited_once()

    def test_delete_conversation(self):
        """Test deleting through the service."""
        service, _ = self.make_service([])
        conversation = service.store.create_conversation()

        assert service.delete_conversation(conversation.conversation_id) is True
        with pytest.raises(ConversationNotFoundError):
            service.get_conversation(conversation.conversation_id)
