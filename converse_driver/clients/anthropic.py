"""Anthropic Messages API client, used directly or through Amazon Bedrock."""

import json
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import anthropic
from anthropic import AsyncAnthropic, AsyncAnthropicBedrock
from pydantic import ValidationError

from converse_driver.clients.base import (
    mentions_unsupported_parameter,
    parse_retry_after,
    validate_invocation_input,
)
from converse_driver.clients.throttling import RequestRateLimiter, TokenEstimator
from converse_driver.errors import DriverError, EndpointError, MalformedResponseError, UnsupportedParameterError
from converse_driver.models.llm import (
    ContentBlock,
    InferenceParams,
    InvocationResult,
    LLMUsage,
    Message,
    OpaqueBlock,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)
from converse_driver.models.state import ConversationState
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AnthropicConfig:
    """Configuration for the Anthropic client."""

    model: str = field(default_factory=lambda: os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022"))
    max_tokens: int = 1024
    temperature: float | None = None

    # Route requests through Amazon Bedrock instead of api.anthropic.com
    use_bedrock: bool = False
    aws_region: str = field(default_factory=lambda: os.getenv("AWS_REGION", "us-east-1"))

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


class AnthropicClient:
    """Model client for the Anthropic Messages API.

    Retries are disabled on the underlying SDK client; retry policy belongs
    to the caller.
    """

    def __init__(
        self,
        config: AnthropicConfig | None = None,
        api_key: str | None = None,
        client: AsyncAnthropic | AsyncAnthropicBedrock | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        token_estimator: TokenEstimator | None = None,
    ):
        """Initialize Anthropic client.

        Args:
            config: Client configuration
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var, unused on Bedrock)
            client: Pre-built SDK client, mainly for tests
            rate_limiter: Shared rate limiter
            token_estimator: Token estimator used for rate limiting
        """
        self.config = config or AnthropicConfig()

        if client is not None:
            self.client = client
        elif self.config.use_bedrock:
            self.client = AsyncAnthropicBedrock(aws_region=self.config.aws_region, max_retries=0)
        else:
            anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not anthropic_api_key:
                raise ValueError("ANTHROPIC_API_KEY environment variable is required")
            self.client = AsyncAnthropic(api_key=anthropic_api_key, max_retries=0)

        self.rate_limiter = rate_limiter or RequestRateLimiter(
            self.config.requests_per_minute, self.config.tokens_per_minute
        )
        self.token_estimator = token_estimator or TokenEstimator()

    async def invoke(
        self,
        state: ConversationState,
        tools: Sequence[ToolSpec],
        inference_params: InferenceParams | None = None,
    ) -> InvocationResult:
        """Create a message with the Messages API.

        Args:
            state: Conversation history ending with a user message
            tools: Available tools
            inference_params: Generation settings

        Returns:
            Parsed assistant turn
        """
        validate_invocation_input(state, tools)
        request_params = self._build_request(state, tools, inference_params or InferenceParams())

        estimated_tokens = self.token_estimator.estimate_messages(state.messages, state.system_prompt)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens, identifier=self.config.model)

        logger.debug(
            f"Making Anthropic API call with model: {request_params['model']}, "
            f"{len(state.messages)} messages, {len(tools)} tools"
        )
        try:
            response = await self.client.messages.create(**request_params)
        except anthropic.APIError as e:
            raise self._classify_error(e) from e

        logger.debug(
            f"Response received - Stop reason: {response.stop_reason}, Content blocks: {len(response.content)}"
        )
        return self._parse_response(response)

    def _build_request(
        self, state: ConversationState, tools: Sequence[ToolSpec], params: InferenceParams
    ) -> dict[str, Any]:
        request_params: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": params.max_tokens or self.config.max_tokens,
            "messages": [self._encode_message(message) for message in state.messages],
        }

        if state.system_prompt:
            request_params["system"] = state.system_prompt
        if tools:
            request_params["tools"] = [
                {"name": tool.name, "description": tool.description, "input_schema": tool.input_schema}
                for tool in tools
            ]

        temperature = params.temperature if params.temperature is not None else self.config.temperature
        if temperature is not None:
            request_params["temperature"] = temperature
        if params.top_p is not None:
            request_params["top_p"] = params.top_p
        if params.stop_sequences:
            request_params["stop_sequences"] = list(params.stop_sequences)
        if params.additional_fields:
            # Model-specific fields go into the body untouched
            request_params["extra_body"] = dict(params.additional_fields)

        return request_params

    @staticmethod
    def _encode_message(message: Message) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        for block in message.content:
            if isinstance(block, TextBlock):
                content.append(block.model_dump(exclude_none=True))
            elif isinstance(block, ToolUseBlock):
                content.append({"type": "tool_use", "id": block.id, "name": block.name, "input": block.input})
            elif isinstance(block, ToolResultBlock):
                result = block.content if isinstance(block.content, str) else json.dumps(block.content)
                content.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": block.tool_use_id,
                        "content": result,
                        "is_error": block.is_error,
                    }
                )
            elif isinstance(block, OpaqueBlock):
                content.append(dict(block.payload))
        return {"role": message.role, "content": content}

    def _parse_response(self, response: Any) -> InvocationResult:
        if getattr(response, "role", "assistant") != "assistant":
            raise MalformedResponseError(f"Unexpected response role: {response.role}")

        content = getattr(response, "content", None)
        if not isinstance(content, list):
            raise MalformedResponseError("Response has no content block list")

        message = Message(role="assistant", content=tuple(self._convert_content_block(block) for block in content))

        usage = None
        if getattr(response, "usage", None):
            input_tokens = response.usage.input_tokens or 0
            output_tokens = response.usage.output_tokens or 0
            usage = LLMUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
                cache_creation_input_tokens=getattr(response.usage, "cache_creation_input_tokens", None) or 0,
                cache_read_input_tokens=getattr(response.usage, "cache_read_input_tokens", None) or 0,
            )

        return InvocationResult.from_message(
            message,
            stop_reason=response.stop_reason,
            usage=usage,
            model=getattr(response, "model", self.config.model),
        )

    @staticmethod
    def _convert_content_block(block: Any) -> ContentBlock:
        """Convert an Anthropic content block to our ContentBlock types."""
        if hasattr(block, "model_dump"):
            block_dict = block.model_dump(exclude_none=True)
        elif isinstance(block, dict):
            block_dict = {key: value for key, value in block.items() if value is not None}
        else:
            raise MalformedResponseError(f"Unrecognised content block: {block!r}")

        block_type = block_dict.get("type")
        try:
            if block_type == "text":
                return TextBlock.model_validate(block_dict)
            if block_type == "tool_use":
                return ToolUseBlock.model_validate(block_dict)
        except ValidationError as e:
            raise MalformedResponseError(f"Invalid '{block_type}' content block: {e}") from e

        if not block_type:
            raise MalformedResponseError(f"Content block without a type: {block_dict}")

        logger.debug(f"Keeping uninterpreted content block of type {block_type}")
        return OpaqueBlock(provider_type=str(block_type), payload=block_dict)

    def _classify_error(self, exc: anthropic.APIError) -> DriverError:
        """Wrap an SDK exception in the driver error taxonomy."""
        if isinstance(exc, anthropic.APIConnectionError):
            logger.warning(f"Anthropic connection error: {exc}")
            return EndpointError(
                f"Connection problem - unable to reach the Anthropic endpoint: {exc}",
                retryable=True,
                original_exc=exc,
            )

        if isinstance(exc, anthropic.APIStatusError):
            status = exc.status_code
            if isinstance(exc, anthropic.BadRequestError) and mentions_unsupported_parameter(str(exc)):
                logger.error(f"Model {self.config.model} rejected a request parameter: {exc}")
                return UnsupportedParameterError(f"Model {self.config.model} rejected the request: {exc.message}")

            retry_after = parse_retry_after(exc.response.headers.get("retry-after")) if status == 429 else None
            retryable = status == 429 or status >= 500
            logger.warning(f"Anthropic API error ({status}), retryable={retryable}: {exc}")
            return EndpointError(
                f"Anthropic API error ({status}): {exc.message}",
                retryable=retryable,
                status_code=status,
                retry_after=retry_after,
                original_exc=exc,
            )

        logger.error(f"Unexpected Anthropic API error: {exc}")
        return EndpointError(f"Anthropic API error: {exc}", retryable=False, original_exc=exc)
