"""Selection of the model client from configuration."""

import os

from converse_driver.clients.anthropic import AnthropicClient, AnthropicConfig
from converse_driver.clients.base import ModelClient
from converse_driver.clients.bedrock import BedrockConfig, BedrockConverseClient
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)

PROVIDERS = ("bedrock", "anthropic", "anthropic-bedrock")


def create_model_client(provider: str | None = None) -> ModelClient:
    """Create a model client for the given provider.

    Args:
        provider: One of ``PROVIDERS``; defaults to the MODEL_PROVIDER env var, then ``bedrock``

    Returns:
        A ready-to-use model client
    """
    target = (provider or os.getenv("MODEL_PROVIDER", "bedrock")).lower()
    logger.info(f"Creating model client for provider '{target}'")

    if target == "bedrock":
        return BedrockConverseClient(BedrockConfig())
    if target == "anthropic":
        return AnthropicClient(AnthropicConfig())
    if target == "anthropic-bedrock":
        return AnthropicClient(
            AnthropicConfig(
                model=os.getenv("BEDROCK_MODEL_ID", "anthropic.claude-3-5-sonnet-20241022-v2:0"),
                use_bedrock=True,
            )
        )

    raise ValueError(f"Unknown model provider '{target}'. Expected one of: {', '.join(PROVIDERS)}")


_model_client: ModelClient | None = None


def get_model_client() -> ModelClient:
    """Get or create the process-wide model client."""
    global _model_client
    if _model_client is None:
        _model_client = create_model_client()
    return _model_client
