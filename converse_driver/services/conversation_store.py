"""Conversation storage interface and in-memory implementation."""

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Protocol

from cuid2 import cuid_wrapper

from converse_driver.models.llm import ToolSpec
from converse_driver.models.state import ConversationState, new_conversation

cuid = cuid_wrapper()


class ConversationStore(Protocol):
    """Interface for conversation storage."""

    def create_conversation(
        self, system_prompt: str | None = None, tools: Sequence[ToolSpec] = ()
    ) -> ConversationState: ...

    def save_conversation(self, conversation: ConversationState) -> None: ...

    def generate_conversation_id(self) -> str: ...

    def get_conversation(self, conversation_id: str) -> ConversationState | None: ...

    def delete_conversation(self, conversation_id: str) -> bool: ...


class InMemoryConversationStore:
    """In-memory conversation store with idle expiry."""

    def __init__(self, conversation_timeout_minutes: int = 60):
        """Initialize conversation store.

        Args:
            conversation_timeout_minutes: Minutes of inactivity before a conversation expires
        """
        self.conversations: dict[str, ConversationState] = {}
        self.conversation_timeout = timedelta(minutes=conversation_timeout_minutes)

    def create_conversation(
        self,
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] = (),
        conversation_id: str | None = None,
    ) -> ConversationState:
        """Create and store a new conversation.

        Args:
            system_prompt: System instructions for the conversation
            tools: Tools declared to the model
            conversation_id: Explicit id, a new CUID is generated when omitted

        Returns:
            The new conversation
        """
        conversation = new_conversation(conversation_id or self.generate_conversation_id(), system_prompt, tools)
        self.save_conversation(conversation)
        return conversation

    def save_conversation(self, conversation: ConversationState) -> None:
        """Store a conversation built elsewhere.

        Raises:
            ValueError: If a conversation with the same id is already stored
        """
        self._cleanup_expired_conversations()

        if conversation.conversation_id in self.conversations:
            raise ValueError(f"Conversation {conversation.conversation_id} already exists")
        self.conversations[conversation.conversation_id] = conversation

    def get_conversation(self, conversation_id: str) -> ConversationState | None:
        """Get existing conversation by ID.

        Args:
            conversation_id: Conversation identifier

        Returns:
            Conversation if found and not expired, None otherwise
        """
        self._cleanup_expired_conversations()
        return self.conversations.get(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation.

        Args:
            conversation_id: Conversation identifier

        Returns:
            True if the conversation was deleted, False if not found
        """
        if conversation_id in self.conversations:
            del self.conversations[conversation_id]
            return True
        return False

    def get_conversation_count(self) -> int:
        """Get current number of active conversations."""
        self._cleanup_expired_conversations()
        return len(self.conversations)

    def generate_conversation_id(self) -> str:
        """Generate a new CUID-based conversation ID."""
        return cuid()

    def _cleanup_expired_conversations(self) -> None:
        """Remove expired conversations from memory."""
        current_time = datetime.now(UTC)
        expired = [
            conversation_id
            for conversation_id, conversation in self.conversations.items()
            if current_time - conversation.last_activity > self.conversation_timeout
        ]

        for conversation_id in expired:
            del self.conversations[conversation_id]
