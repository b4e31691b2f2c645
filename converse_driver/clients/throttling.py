"""Client-side request throttling and token estimation."""

import asyncio
import time
from collections.abc import Iterable

import tiktoken
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from converse_driver.models.llm import Message, TextBlock, ToolResultBlock
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)


class TokenEstimator:
    """Approximate token counts for throttling and input validation."""

    tokenizer: tiktoken.Encoding | None = None

    def __init__(self, encoding_model: str | None = "gpt-4"):
        """Initialize the estimator.

        Args:
            encoding_model: tiktoken model whose encoding approximates the
                target model's tokenizer; ``None`` selects the character heuristic
        """
        if encoding_model:
            try:
                # Close approximation for Claude
                self.tokenizer = tiktoken.encoding_for_model(encoding_model)
            except Exception as e:
                logger.warning(f"Falling back to character-based token estimates: {e}")
                self.tokenizer = None

    def estimate(self, text: str) -> int:
        """Estimate token count for a piece of text."""
        try:
            return len(self.tokenizer.encode(text)) if self.tokenizer else len(text) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(text) // 4

    def estimate_messages(self, messages: Iterable[Message], system_prompt: str | None = None) -> int:
        """Estimate token count for a conversation."""
        parts = [system_prompt or ""]
        for message in messages:
            for block in message.content:
                if isinstance(block, TextBlock):
                    parts.append(block.text)
                elif isinstance(block, ToolResultBlock):
                    parts.append(block.content if isinstance(block.content, str) else str(block.content))
        return self.estimate("".join(parts))


class RequestRateLimiter:
    """Moving-window limiter on requests and tokens per minute."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "model") -> None:
        """Wait until the request fits within the configured limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        # A single request larger than the window can never fit; charge the whole window instead
        cost = min(estimated_tokens, self.token_limit.amount)
        if cost < estimated_tokens:
            logger.warning(
                f"Request of ~{estimated_tokens} tokens exceeds the {self.token_limit.amount} tokens/minute limit"
            )

        token_identifier = f"{identifier}_tokens"
        if cost > 0 and not self.limiter.hit(self.token_limit, token_identifier, cost=cost):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit, identifier: str, kind: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{kind} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
