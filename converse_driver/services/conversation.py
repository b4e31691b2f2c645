"""Conversation service tying the store, the tools and the driver together."""

import os
from collections.abc import Sequence

from converse_driver.clients import get_model_client
from converse_driver.clients.throttling import TokenEstimator
from converse_driver.models.llm import InferenceParams, ToolSpec
from converse_driver.models.state import ConversationState, new_conversation
from converse_driver.services.conversation_store import ConversationStore, InMemoryConversationStore
from converse_driver.services.driver import ConversationDriver, DriverConfig, TurnResult
from converse_driver.services.retry import execute_turn_with_retries
from converse_driver.tools import get_tools_registry
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant that answers questions concisely.

When a question needs live data, use the tools you have been given instead of guessing.
If a tool returns an error, explain the problem or try again with corrected arguments.
Never invent tool results."""


class ConversationNotFoundError(LookupError):
    """The requested conversation does not exist or has expired."""


class ConversationService:
    """Service for handling conversational interactions over the driver."""

    def __init__(
        self,
        driver: ConversationDriver,
        store: ConversationStore,
        tools: Sequence[ToolSpec] = (),
        system_prompt: str | None = None,
        token_estimator: TokenEstimator | None = None,
        max_message_tokens: int = 1000,
        max_attempts: int = 1,
    ):
        """Initialize conversation service.

        Args:
            driver: Driver that runs each turn
            store: Where conversations live between requests
            tools: Tools declared on newly created conversations
            system_prompt: System prompt for new conversations
            token_estimator: Estimator used to reject oversized user messages
            max_message_tokens: Maximum tokens per user message
            max_attempts: Attempts per turn when the endpoint fails with a retryable error
        """
        self.driver = driver
        self.store = store
        self.tools = tuple(tools)
        self.system_prompt = system_prompt
        self.token_estimator = token_estimator or TokenEstimator()
        self.max_message_tokens = max_message_tokens
        self.max_attempts = max_attempts

    async def process_message(
        self,
        message: str,
        conversation_id: str | None = None,
        inference_params: InferenceParams | None = None,
    ) -> tuple[ConversationState, TurnResult]:
        """Process a user message and return the conversation with the turn result.

        Args:
            message: User's message
            conversation_id: Existing conversation, a new one is created when omitted
            inference_params: Generation settings for this turn

        Returns:
            The conversation and the completed turn

        Raises:
            ValueError: If message exceeds token limit
            ConversationNotFoundError: If ``conversation_id`` is unknown
            DriverError: If the turn fails
        """
        self.validate_message_tokens(message)

        if conversation_id:
            conversation = self.store.get_conversation(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(f"Unknown conversation: {conversation_id}")
        else:
            # Stored only once its first turn succeeds
            conversation = new_conversation(self.store.generate_conversation_id(), self.system_prompt, self.tools)

        result = await execute_turn_with_retries(
            self.driver, conversation, message, inference_params=inference_params, max_attempts=self.max_attempts
        )

        if not conversation_id:
            self.store.save_conversation(conversation)
            logger.info(f"Created conversation {conversation.conversation_id}")

        logger.info(
            f"Token usage for conversation {conversation.conversation_id} - Input: {result.usage.input_tokens}, "
            f"Output: {result.usage.output_tokens}, Cache hits: {result.usage.cache_read_input_tokens}"
        )
        return conversation, result

    def get_conversation(self, conversation_id: str) -> ConversationState:
        """Get a stored conversation.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Unknown conversation: {conversation_id}")
        return conversation

    def delete_conversation(self, conversation_id: str) -> bool:
        return self.store.delete_conversation(conversation_id)

    def validate_message_tokens(self, message: str) -> None:
        """Validate that a message doesn't exceed the token limit.

        Raises:
            ValueError: If message exceeds token limit
        """
        token_count = self.token_estimator.estimate(message)
        if token_count > self.max_message_tokens:
            raise ValueError(
                f"Your message is too long. Please keep messages under {self.max_message_tokens} tokens."
            )


_conversation_service: ConversationService | None = None


def get_conversation_service() -> ConversationService:
    """Get or create the conversation service with the configured client and tools."""
    global _conversation_service
    if _conversation_service is None:
        registry = get_tools_registry()
        driver = ConversationDriver(get_model_client(), registry.get_executor_table(), DriverConfig())
        _conversation_service = ConversationService(
            driver=driver,
            store=InMemoryConversationStore(),
            tools=registry.get_tool_specs(),
            system_prompt=os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            max_attempts=int(os.getenv("MAX_TURN_ATTEMPTS", "3")),
        )
        logger.info("ConversationService initialized")
    return _conversation_service
