"""Conversation driver: the tool-use loop between the model and the tools."""

import asyncio
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

from converse_driver.clients.base import ModelClient
from converse_driver.errors import ConversationCancelled, IterationLimitExceeded, MalformedResponseError
from converse_driver.models.llm import InferenceParams, LLMUsage, Message, ToolSpec
from converse_driver.models.state import ConversationState
from converse_driver.tools.base import ToolExecutor
from converse_driver.tools.dispatcher import dispatch
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DriverConfig:
    """Configuration for the conversation driver."""

    # Tool round-trips allowed per top-level turn
    max_round_trips: int = field(default_factory=lambda: int(os.getenv("MAX_TOOL_ROUND_TRIPS", "5")))

    def __post_init__(self) -> None:
        if self.max_round_trips < 0:
            raise ValueError("max_round_trips must be zero or positive")


@dataclass
class TurnResult:
    """Result from a completed turn."""

    text: str
    messages: tuple[Message, ...]
    round_trips: int
    stop_reason: str | None
    usage: LLMUsage


class ConversationDriver:
    """Runs one user turn to completion, executing requested tools along the way.

    The turn works on a staged copy of the conversation. Nothing is written to
    the caller's ``ConversationState`` until the model produces a terminal
    answer, so a failed or cancelled turn leaves the conversation untouched.
    """

    def __init__(
        self,
        client: ModelClient,
        executor_table: Mapping[str, ToolExecutor] | None = None,
        config: DriverConfig | None = None,
    ):
        """Initialize the driver.

        Args:
            client: Model invocation client
            executor_table: Tool executors keyed by tool name; read-only once the driver is built
            config: Driver configuration
        """
        self.client = client
        self.executor_table: Mapping[str, ToolExecutor] = MappingProxyType(dict(executor_table or {}))
        self.config = config or DriverConfig()

    async def run_turn(
        self,
        conversation: ConversationState,
        user_text: str,
        tools: Sequence[ToolSpec] | None = None,
        inference_params: InferenceParams | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Send ``user_text`` and return the model's final answer.

        Raises:
            EndpointError: The model endpoint failed
            UnsupportedParameterError: The model rejected a parameter
            MalformedResponseError: A response could not be interpreted
            IterationLimitExceeded: The model kept requesting tools
            ConversationCancelled: ``cancel_event`` was set between round-trips
        """
        result = await self.execute_turn(
            conversation, user_text, tools, inference_params, cancel_event=cancel_event
        )
        return result.text

    async def execute_turn(
        self,
        conversation: ConversationState,
        user_text: str,
        tools: Sequence[ToolSpec] | None = None,
        inference_params: InferenceParams | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run a turn and return the answer with its metadata.

        Args:
            conversation: Conversation to continue; only appended to on success
            user_text: The user's message
            tools: Tools to declare, defaults to the conversation's own tools
            inference_params: Generation settings forwarded to the model
            cancel_event: Checked before every model invocation

        Returns:
            The final answer, the committed messages, round-trip count and usage
        """
        if not user_text or not user_text.strip():
            raise ValueError("user_text must not be empty")

        declared_tools = tuple(conversation.tools if tools is None else tools)
        base_length = conversation.message_count

        working = conversation.fork()
        working.append(Message.user_text(user_text))

        usage = LLMUsage()
        round_trips = 0

        logger.info(
            f"Starting turn for conversation {conversation.conversation_id} with {base_length} prior messages, "
            f"{len(declared_tools)} tools, max_round_trips: {self.config.max_round_trips}"
        )

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Turn cancelled after {round_trips} round-trips")
                raise ConversationCancelled(f"Turn cancelled after {round_trips} tool round-trips")

            result = await self.client.invoke(working, declared_tools, inference_params)
            usage.add(result.usage)
            logger.debug(f"Model response - Stop reason: {result.stop_reason}, terminal: {result.is_terminal}")

            if result.is_terminal:
                working.append(result.message)
                staged = working.messages[base_length:]
                conversation.extend(staged, expected_length=base_length)

                logger.info(f"Turn completed in {round_trips} tool round-trips")
                return TurnResult(
                    text=result.terminal_text or "",
                    messages=staged,
                    round_trips=round_trips,
                    stop_reason=result.stop_reason,
                    usage=usage,
                )

            requested = [request.name for request in result.pending_tool_requests]
            if not declared_tools:
                raise MalformedResponseError(f"Model requested tools {requested} but no tools were declared")

            if round_trips >= self.config.max_round_trips:
                logger.warning(
                    f"Tool round-trip limit ({self.config.max_round_trips}) reached, model still wants {requested}"
                )
                raise IterationLimitExceeded(
                    self.config.max_round_trips, transcript=(*working.messages[base_length:], result.message)
                )

            round_trips += 1
            logger.info(f"Model wants to use {len(requested)} tools: {requested}")

            # Sequential, in request order: the result message must mirror the request order
            tool_results = [
                await dispatch(request, declared_tools, self.executor_table)
                for request in result.pending_tool_requests
            ]

            working.append(result.message)
            working.append(Message.tool_results(tool_results))
