"""LLM-related data models and types (provider-agnostic)."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from converse_driver.errors import MalformedResponseError


# Content block types
class TextBlock(BaseModel):
    """Text content block.

    Provider fields beyond ``text`` (for example citations) are kept so the
    block can be sent back unchanged.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    """Tool use content block (a tool invocation requested by the model)."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Tool result content block."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | dict[str, Any]
    is_error: bool = False


class OpaqueBlock(BaseModel):
    """Provider content block the driver does not interpret.

    Kept verbatim (for example reasoning blocks) so an assistant turn can be
    sent back to the endpoint exactly as it was received.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["opaque"] = "opaque"
    provider_type: str
    payload: dict[str, Any]


ContentBlock = Annotated[TextBlock | ToolUseBlock | ToolResultBlock | OpaqueBlock, Field(discriminator="type")]


class Message(BaseModel):
    """A message for LLM conversation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: tuple[ContentBlock, ...]

    @classmethod
    def user_text(cls, text: str) -> "Message":
        return cls(role="user", content=(TextBlock(text=text),))

    @classmethod
    def assistant_text(cls, text: str) -> "Message":
        return cls(role="assistant", content=(TextBlock(text=text),))

    @classmethod
    def tool_results(cls, results: Sequence[ToolResultBlock]) -> "Message":
        """Bundle all tool results of one turn into a single user message."""
        if not results:
            raise ValueError("A tool result message needs at least one result")
        return cls(role="user", content=tuple(results))

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


class ToolSpec(BaseModel):
    """Declaration of a tool as sent to the model endpoint.

    ``input_schema`` is a JSON-Schema object: ``properties`` maps each
    argument name to its declared ``type`` and ``required`` lists mandatory
    arguments.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    description: str
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class InferenceParams(BaseModel):
    """Generation-control settings forwarded opaquely to the model endpoint.

    Bounds are validated by the endpoint, not here. ``additional_fields``
    carries model-specific extension fields.
    """

    model_config = ConfigDict(frozen=True)

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: tuple[str, ...] | None = None
    additional_fields: dict[str, Any] = Field(default_factory=dict)


@dataclass
class LLMUsage:
    """Token usage information from the LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def add(self, other: "LLMUsage | None") -> None:
        """Accumulate usage from another response."""
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens
        self.cache_creation_input_tokens += other.cache_creation_input_tokens
        self.cache_read_input_tokens += other.cache_read_input_tokens

    @property
    def cache_hit_rate(self) -> float:
        """Calculate cache hit rate as percentage."""
        total_input = self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens
        if total_input == 0:
            return 0.0
        return (self.cache_read_input_tokens / total_input) * 100


class InvocationResult(BaseModel):
    """Outcome of a single model invocation.

    Exactly one of ``terminal_text`` and ``pending_tool_requests`` is
    populated. ``message`` is the unmodified assistant turn, which must be
    appended verbatim before any tool results are sent back.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message: Message
    terminal_text: str | None = None
    pending_tool_requests: tuple[ToolUseBlock, ...] = ()
    stop_reason: str | None = None
    usage: LLMUsage | None = None
    model: str | None = None

    @model_validator(mode="after")
    def _check_exclusive(self) -> "InvocationResult":
        if self.message.role != "assistant":
            raise ValueError("InvocationResult.message must be an assistant message")
        if (self.terminal_text is None) == (not self.pending_tool_requests):
            raise ValueError("Exactly one of terminal_text and pending_tool_requests must be set")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.terminal_text is not None

    @classmethod
    def from_message(
        cls,
        message: Message,
        stop_reason: str | None = None,
        usage: LLMUsage | None = None,
        model: str | None = None,
    ) -> "InvocationResult":
        """Classify an assistant message as terminal text or pending tool requests.

        Raises:
            MalformedResponseError: If the message is not an assistant message,
                or carries neither text nor tool-use blocks, or the stop reason
                announces tool use without any tool-use block.
        """
        if message.role != "assistant":
            raise MalformedResponseError(f"Expected an assistant message, got role '{message.role}'")

        tool_requests = tuple(message.tool_uses)
        if tool_requests:
            return cls(
                message=message,
                pending_tool_requests=tool_requests,
                stop_reason=stop_reason,
                usage=usage,
                model=model,
            )

        if stop_reason == "tool_use":
            raise MalformedResponseError("Stop reason is 'tool_use' but the response has no tool-use blocks")

        if not any(isinstance(block, TextBlock) for block in message.content):
            raise MalformedResponseError("Response contains neither text nor tool-use content")

        return cls(message=message, terminal_text=message.text, stop_reason=stop_reason, usage=usage, model=model)
