"""Caller-side retry policy for driver turns."""

import asyncio
from collections.abc import Sequence

from converse_driver.errors import EndpointError
from converse_driver.models.llm import InferenceParams, ToolSpec
from converse_driver.models.state import ConversationState
from converse_driver.services.driver import ConversationDriver, TurnResult
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)


async def execute_turn_with_retries(
    driver: ConversationDriver,
    conversation: ConversationState,
    user_text: str,
    tools: Sequence[ToolSpec] | None = None,
    inference_params: InferenceParams | None = None,
    *,
    max_attempts: int = 3,
    retry_delay: float = 1.0,
    max_retry_after: float = 120.0,
) -> TurnResult:
    """Run a turn, retrying retryable endpoint failures with exponential backoff.

    A failed turn leaves the conversation untouched, so the whole turn can be
    replayed. A server supplied ``retry_after`` wins over the computed delay
    unless it exceeds ``max_retry_after``, in which case the error is raised.

    Args:
        driver: Driver running the turn
        conversation: Conversation to continue
        user_text: The user's message
        tools: Tools to declare
        inference_params: Generation settings
        max_attempts: Total attempts including the first
        retry_delay: Base delay in seconds, doubled after each failure
        max_retry_after: Longest server-requested wait that is honoured

    Returns:
        The completed turn
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        try:
            return await driver.execute_turn(conversation, user_text, tools, inference_params)

        except EndpointError as e:
            if not e.retryable or attempt >= max_attempts - 1:
                raise

            delay = retry_delay * (2**attempt)
            if e.retry_after is not None:
                if e.retry_after > max_retry_after:
                    raise
                delay = e.retry_after

            logger.warning(f"Endpoint error on attempt {attempt + 1}/{max_attempts}, retrying in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")


async def run_turn_with_retries(
    driver: ConversationDriver,
    conversation: ConversationState,
    user_text: str,
    tools: Sequence[ToolSpec] | None = None,
    inference_params: InferenceParams | None = None,
    **retry_options,
) -> str:
    """Like ``execute_turn_with_retries`` but return only the final answer."""
    result = await execute_turn_with_retries(
        driver, conversation, user_text, tools, inference_params, **retry_options
    )
    return result.text
