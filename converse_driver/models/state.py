"""Conversation state owned by a single session."""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from converse_driver.errors import ConversationConflictError
from converse_driver.models.llm import Message, ToolSpec
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ConversationState:
    """Ordered, append-only message history plus system prompt and tool declarations.

    Messages are never edited or removed once appended. Each message is
    deep-copied on the way in and on the way out, so nested tool inputs and
    results cannot be changed through a reference. Persistence is the job of
    a ``ConversationStore``; this object lives for one session.
    """

    conversation_id: str = "local"
    system_prompt: str | None = None
    tools: tuple[ToolSpec, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    _messages: list[Message] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.tools = tuple(self.tools)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(message.model_copy(deep=True) for message in self._messages)

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def last_message(self) -> Message | None:
        return self._messages[-1].model_copy(deep=True) if self._messages else None

    def append(self, message: Message) -> None:
        """Append a single message to the history."""
        if not isinstance(message, Message):
            raise TypeError(f"Expected Message, got {type(message).__name__}")
        self._messages.append(message.model_copy(deep=True))
        self.update_activity()

    def extend(self, messages: Iterable[Message], *, expected_length: int | None = None) -> None:
        """Append several messages at once, all or nothing.

        Args:
            messages: Messages to append, in order
            expected_length: History length the caller based its messages on

        Raises:
            ConversationConflictError: If the history length differs from ``expected_length``
        """
        staged = list(messages)
        for message in staged:
            if not isinstance(message, Message):
                raise TypeError(f"Expected Message, got {type(message).__name__}")

        if expected_length is not None and expected_length != len(self._messages):
            raise ConversationConflictError(
                f"Conversation {self.conversation_id} changed during the turn "
                f"(expected {expected_length} messages, found {len(self._messages)})"
            )

        self._messages.extend(message.model_copy(deep=True) for message in staged)
        self.update_activity()

    def fork(self) -> "ConversationState":
        """Return a working copy with its own message list."""
        copy = ConversationState(
            conversation_id=self.conversation_id,
            system_prompt=self.system_prompt,
            tools=self.tools,
            created_at=self.created_at,
            last_activity=self.last_activity,
        )
        copy._messages = list(self._messages)
        return copy

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    def as_dict(self) -> dict[str, Any]:
        """Return the conversation as a JSON-compatible dictionary."""
        return {
            "conversation_id": self.conversation_id,
            "system_prompt": self.system_prompt,
            "tools": [tool.name for tool in self.tools],
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "messages": [message.model_dump(mode="json") for message in self._messages],
        }


def new_conversation(
    conversation_id: str = "local",
    system_prompt: str | None = None,
    tools: Sequence[ToolSpec] = (),
) -> ConversationState:
    """Create an empty conversation."""
    logger.debug(f"Creating conversation {conversation_id} with {len(tools)} tools")
    return ConversationState(conversation_id=conversation_id, system_prompt=system_prompt, tools=tuple(tools))
