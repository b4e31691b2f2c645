"""Model invocation client interface."""

import re
from collections.abc import Sequence
from typing import Protocol

from converse_driver.models.llm import InferenceParams, InvocationResult, ToolSpec
from converse_driver.models.state import ConversationState

# Endpoint validation messages that mean "this model does not accept that parameter/feature"
UNSUPPORTED_PARAMETER_PATTERN = re.compile(
    r"not supported|unsupported|doesn't support|does not support|extra inputs are not permitted"
    r"|extraneous key|unexpected (?:keyword|field|parameter)|not permitted",
    re.IGNORECASE,
)


def mentions_unsupported_parameter(message: str) -> bool:
    """Check whether an endpoint validation message names an unsupported parameter."""
    return bool(UNSUPPORTED_PARAMETER_PATTERN.search(message))


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``retry-after`` header given in seconds."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ModelClient(Protocol):
    """Interface for clients that send a conversation to a model endpoint."""

    async def invoke(
        self,
        state: ConversationState,
        tools: Sequence[ToolSpec],
        inference_params: InferenceParams | None = None,
    ) -> InvocationResult:
        """Send the conversation and tool declarations to the model.

        Implementations never mutate ``state``.

        Args:
            state: Conversation whose last message is a user message
            tools: Tools the model may request, possibly empty
            inference_params: Generation settings forwarded to the endpoint

        Returns:
            The parsed assistant turn

        Raises:
            EndpointError: Network or service failure
            UnsupportedParameterError: The target model rejects a supplied parameter
            MalformedResponseError: The response cannot be parsed
        """
        ...


def validate_invocation_input(state: ConversationState, tools: Sequence[ToolSpec]) -> None:
    """Check the preconditions shared by every model client.

    Raises:
        ValueError: If the history is empty, does not end with a user message,
            or tool names are not unique
    """
    last_message = state.last_message
    if last_message is None:
        raise ValueError("Cannot invoke the model with an empty conversation")
    if last_message.role != "user":
        raise ValueError(f"The last message must have role 'user', got '{last_message.role}'")

    seen: set[str] = set()
    for tool in tools:
        if tool.name in seen:
            raise ValueError(f"Duplicate tool name '{tool.name}'")
        seen.add(tool.name)
