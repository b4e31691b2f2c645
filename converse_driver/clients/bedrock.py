"""Amazon Bedrock Converse API client."""

import asyncio
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import boto3
from botocore.config import Config as BotocoreConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from converse_driver.clients.base import mentions_unsupported_parameter, validate_invocation_input
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

# Model families whose Converse integration rejects system prompts
NO_SYSTEM_PROMPT_MODEL_PREFIXES = (
    "amazon.titan-text",
    "mistral.mistral-7b-instruct",
    "mistral.mixtral-8x7b-instruct",
    "cohere.command-text",
    "cohere.command-light-text",
    "ai21.j2",
)

# Cross-region inference profile prefixes, e.g. "us.anthropic.claude-..."
INFERENCE_PROFILE_PREFIXES = ("us.", "eu.", "apac.", "us-gov.", "global.")

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "ServiceUnavailableException",
        "InternalServerException",
        "ModelTimeoutException",
        "ModelNotReadyException",
    }
)


@dataclass
class BedrockConfig:
    """Configuration for the Bedrock Converse client."""

    model_id: str = field(
        default_factory=lambda: os.getenv("BEDROCK_MODEL_ID", "anthropic.claude-3-5-sonnet-20241022-v2:0")
    )
    region_name: str = field(default_factory=lambda: os.getenv("AWS_REGION", "us-east-1"))
    max_tokens: int = 1024
    read_timeout: int = 120

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


def base_model_id(model_id: str) -> str:
    """Strip a cross-region inference profile prefix from a model id."""
    for prefix in INFERENCE_PROFILE_PREFIXES:
        if model_id.startswith(prefix):
            return model_id[len(prefix) :]
    return model_id


def supports_system_prompt(model_id: str) -> bool:
    """Check whether the Converse API accepts a system prompt for this model."""
    return not base_model_id(model_id).startswith(NO_SYSTEM_PROMPT_MODEL_PREFIXES)


class BedrockConverseClient:
    """Model client for the Bedrock Converse API.

    boto3 calls are blocking, so they run in a worker thread. Retries are
    disabled on the botocore client; retry policy belongs to the caller.
    """

    def __init__(
        self,
        config: BedrockConfig | None = None,
        runtime_client: Any | None = None,
        rate_limiter: RequestRateLimiter | None = None,
        token_estimator: TokenEstimator | None = None,
    ):
        """Initialize the Converse client.

        Args:
            config: Client configuration
            runtime_client: Pre-built ``bedrock-runtime`` client, mainly for tests
            rate_limiter: Shared rate limiter
            token_estimator: Token estimator used for rate limiting
        """
        self.config = config or BedrockConfig()
        self.client = runtime_client or boto3.client(
            "bedrock-runtime",
            region_name=self.config.region_name,
            config=BotocoreConfig(read_timeout=self.config.read_timeout, retries={"max_attempts": 1}),
        )
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
        """Send the conversation through ``Converse``.

        Args:
            state: Conversation history ending with a user message
            tools: Available tools
            inference_params: Generation settings

        Returns:
            Parsed assistant turn
        """
        validate_invocation_input(state, tools)

        if state.system_prompt and not supports_system_prompt(self.config.model_id):
            raise UnsupportedParameterError(
                f"Model {self.config.model_id} does not accept a system prompt", parameter="system"
            )

        request = self.build_request(state, tools, inference_params or InferenceParams())

        estimated_tokens = self.token_estimator.estimate_messages(state.messages, state.system_prompt)
        await self.rate_limiter.check_rate_limit(estimated_tokens, identifier=self.config.model_id)

        logger.debug(
            f"Calling Converse with model: {self.config.model_id}, {len(state.messages)} messages, {len(tools)} tools"
        )
        try:
            response = await asyncio.to_thread(self.client.converse, **request)
        except ClientError as e:
            raise self._classify_client_error(e) from e
        except BotoCoreError as e:
            logger.warning(f"Bedrock transport error: {e}")
            raise EndpointError(
                f"Connection problem - unable to reach Bedrock: {e}", retryable=True, original_exc=e
            ) from e

        logger.debug(f"Converse response - Stop reason: {response.get('stopReason')}")
        return self.parse_response(response)

    def build_request(
        self, state: ConversationState, tools: Sequence[ToolSpec], params: InferenceParams
    ) -> dict[str, Any]:
        """Build the keyword arguments for ``bedrock-runtime.converse``."""
        request: dict[str, Any] = {
            "modelId": self.config.model_id,
            "messages": [encode_message(message) for message in state.messages],
        }

        if state.system_prompt:
            request["system"] = [{"text": state.system_prompt}]

        inference_config: dict[str, Any] = {"maxTokens": params.max_tokens or self.config.max_tokens}
        if params.temperature is not None:
            inference_config["temperature"] = params.temperature
        if params.top_p is not None:
            inference_config["topP"] = params.top_p
        if params.stop_sequences:
            inference_config["stopSequences"] = list(params.stop_sequences)
        request["inferenceConfig"] = inference_config

        if params.additional_fields:
            request["additionalModelRequestFields"] = dict(params.additional_fields)

        if tools:
            request["toolConfig"] = {
                "tools": [
                    {
                        "toolSpec": {
                            "name": tool.name,
                            "description": tool.description,
                            "inputSchema": {"json": tool.input_schema},
                        }
                    }
                    for tool in tools
                ]
            }

        return request

    def parse_response(self, response: dict[str, Any]) -> InvocationResult:
        """Parse a Converse response into an invocation result."""
        try:
            output_message = response["output"]["message"]
            role = output_message["role"]
            raw_content = output_message["content"]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Converse response has no output message: {e}") from e

        if role != "assistant" or not isinstance(raw_content, list):
            raise MalformedResponseError(f"Unexpected Converse output message (role={role!r})")

        message = Message(role="assistant", content=tuple(decode_content_block(block) for block in raw_content))

        usage = None
        if raw_usage := response.get("usage"):
            usage = LLMUsage(
                input_tokens=raw_usage.get("inputTokens", 0),
                output_tokens=raw_usage.get("outputTokens", 0),
                total_tokens=raw_usage.get("totalTokens", 0),
                cache_creation_input_tokens=raw_usage.get("cacheWriteInputTokens", 0),
                cache_read_input_tokens=raw_usage.get("cacheReadInputTokens", 0),
            )

        return InvocationResult.from_message(
            message,
            stop_reason=response.get("stopReason"),
            usage=usage,
            model=self.config.model_id,
        )

    def _classify_client_error(self, exc: ClientError) -> DriverError:
        """Map a botocore ClientError onto the driver error taxonomy."""
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message", str(exc))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

        if code == "ValidationException" and mentions_unsupported_parameter(message):
            logger.error(f"Model {self.config.model_id} rejected a request parameter: {message}")
            return UnsupportedParameterError(f"Model {self.config.model_id} rejected the request: {message}")

        retryable = code in RETRYABLE_ERROR_CODES
        logger.warning(f"Bedrock error {code} ({status}), retryable={retryable}: {message}")
        return EndpointError(
            f"Bedrock error {code}: {message}",
            retryable=retryable,
            status_code=status,
            original_exc=exc,
        )


def encode_message(message: Message) -> dict[str, Any]:
    """Encode a message in the Converse wire format."""
    return {"role": message.role, "content": [encode_content_block(block) for block in message.content]}


def encode_content_block(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"toolUse": {"toolUseId": block.id, "name": block.name, "input": block.input}}
    if isinstance(block, ToolResultBlock):
        result = {"text": block.content} if isinstance(block.content, str) else {"json": block.content}
        return {
            "toolResult": {
                "toolUseId": block.tool_use_id,
                "content": [result],
                "status": "error" if block.is_error else "success",
            }
        }
    return dict(block.payload)


def decode_content_block(raw: Any) -> ContentBlock:
    """Decode one Converse content block; unknown kinds are kept verbatim."""
    if not isinstance(raw, dict) or len(raw) != 1:
        raise MalformedResponseError(f"Converse content block must be a single-key mapping: {raw!r}")

    kind, value = next(iter(raw.items()))
    try:
        if kind == "text":
            return TextBlock(text=value)
        if kind == "toolUse":
            return ToolUseBlock(id=value["toolUseId"], name=value["name"], input=value.get("input") or {})
    except (AttributeError, KeyError, TypeError, ValidationError) as e:
        raise MalformedResponseError(f"Invalid '{kind}' content block: {e}") from e

    logger.debug(f"Keeping uninterpreted content block of type {kind}")
    return OpaqueBlock(provider_type=kind, payload=dict(raw))
