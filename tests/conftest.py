"""Shared fixtures."""

import pytest

from converse_driver.models.state import ConversationState, new_conversation
from tests.fakes import WEATHER_SPEC


@pytest.fixture
def conversation() -> ConversationState:
    """Empty conversation declaring the weather tool."""
    return new_conversation("conv-1", system_prompt="Be brief.", tools=[WEATHER_SPEC])


@pytest.fixture
def bare_conversation() -> ConversationState:
    """Empty conversation with no system prompt and no tools."""
    return new_conversation("conv-bare")
