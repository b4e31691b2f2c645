"""Error taxonomy for the conversation driver.

Only ``DriverError`` subclasses ever reach callers of the driver. ``ToolError``
subclasses are raised while dispatching a tool call and are always converted
into an error tool result so the model gets a chance to recover.
"""

from typing import Any


class DriverError(RuntimeError):
    """Base class for failures surfaced to callers of the driver.

    Attributes:
        http_status: Status code used when the error is mapped to an HTTP response.
    """

    http_status: int = 500


class EndpointError(DriverError):
    """The model endpoint could not be reached or reported a service failure.

    The driver never retries these. Callers decide on retry policy using
    ``retryable`` and ``retry_after``.
    """

    http_status = 503

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: int | None = None,
        retry_after: float | None = None,
        original_exc: Exception | None = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after
        self.original_exc = original_exc
        if original_exc is not None:
            self.__cause__ = original_exc


class UnsupportedParameterError(DriverError):
    """An inference parameter or request feature is not accepted by the target model."""

    http_status = 400

    def __init__(self, message: str, *, parameter: str | None = None):
        super().__init__(message)
        self.parameter = parameter


class MalformedResponseError(DriverError):
    """The endpoint response cannot be parsed into content blocks."""

    http_status = 502


class IterationLimitExceeded(DriverError):
    """The model kept requesting tools past the configured round-trip ceiling."""

    http_status = 500

    def __init__(self, limit: int, transcript: tuple[Any, ...] = ()):
        super().__init__(f"Tool round-trip limit of {limit} exceeded")
        self.limit = limit
        # Staged messages of the aborted turn; never committed to the conversation.
        self.transcript = transcript


class ConversationCancelled(DriverError):
    """The caller cancelled the turn between round-trips."""

    http_status = 499


class ConversationConflictError(DriverError):
    """The conversation was modified by someone else while a turn was running."""

    http_status = 409


class ToolError(Exception):
    """Base class for failures while dispatching a single tool call."""


class ToolArgumentError(ToolError):
    """Tool arguments do not satisfy the registered input schema."""

    def __init__(self, tool_name: str, problems: list[str], message: str | None = None):
        self.tool_name = tool_name
        self.problems = problems
        super().__init__(message or f"Invalid arguments for tool '{tool_name}': {'; '.join(problems)}")


class UnknownToolError(ToolArgumentError):
    """The model requested a tool that is not registered."""

    def __init__(self, tool_name: str, available: list[str] | None = None):
        message = f"Unknown tool '{tool_name}'"
        if available:
            message += f". Available tools: {', '.join(sorted(available))}"
        super().__init__(tool_name, [f"tool '{tool_name}' is not registered"], message)


class RemoteToolError(ToolError):
    """A remotely hosted tool reported a failure."""

    def __init__(self, message: str, *, details: Any = None):
        super().__init__(message)
        self.details = details
