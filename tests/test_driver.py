"""Tests for the conversation driver loop."""

import asyncio
from unittest.mock import Mock

import pytest

from converse_driver.errors import (
    ConversationCancelled,
    ConversationConflictError,
    EndpointError,
    IterationLimitExceeded,
    MalformedResponseError,
)
from converse_driver.models.llm import InferenceParams, LLMUsage, Message, ToolResultBlock, ToolSpec
from converse_driver.services.driver import ConversationDriver, DriverConfig
from converse_driver.tools.registry import create_default_registry
from tests.fakes import WEATHER_SPEC, FakeModelClient, text_response, tool_response

PORTLAND = {"lat": 45.52, "lon": -122.68}


class TestDriverConfig:
    """Tests for driver configuration."""

    def test_default_from_environment(self, monkeypatch):
        """Test that the round-trip ceiling is read from the environment."""
        monkeypatch.setenv("MAX_TOOL_ROUND_TRIPS", "7")
        assert DriverConfig().max_round_trips == 7

    def test_negative_ceiling_rejected(self):
        """Test that a negative ceiling is invalid."""
        with pytest.raises(ValueError):
            DriverConfig(max_round_trips=-1)


class TestPlainTurns:
    """Tests for turns that need no tools."""

    @pytest.mark.asyncio
    async def test_no_tools_single_invocation(self, bare_conversation):
        """Test that a text answer completes the turn after one invocation."""
        client = FakeModelClient([text_response("Hello there")])
        driver = ConversationDriver(client)

        answer = await driver.run_turn(bare_conversation, "Hi")

        assert answer == "Hello there"
        assert len(client.calls) == 1
        assert client.calls[0].tools == ()
        assert client.calls[0].messages == (Message.user_text("Hi"),)
        assert bare_conversation.messages == (Message.user_text("Hi"), Message.assistant_text("Hello there"))

    @pytest.mark.asyncio
    async def test_history_is_sent_on_later_turns(self, bare_conversation):
        """Test that each turn sends the full prior history."""
        client = FakeModelClient([text_response("First"), text_response("Second")])
        driver = ConversationDriver(client)

        await driver.run_turn(bare_conversation, "One")
        await driver.run_turn(bare_conversation, "Two")

        assert [message.text for message in client.calls[1].messages] == ["One", "First", "Two"]
        assert bare_conversation.message_count == 4

    @pytest.mark.asyncio
    async def test_system_prompt_and_params_are_forwarded(self, conversation):
        """Test that system prompt and inference params reach the client."""
        params = InferenceParams(temperature=0.2, max_tokens=256)
        client = FakeModelClient([text_response("Brief.")])

        await ConversationDriver(client).run_turn(conversation, "Hi", inference_params=params)

        assert client.calls[0].system_prompt == "Be brief."
        assert client.calls[0].inference_params is params
        assert client.calls[0].tools == (WEATHER_SPEC,)

    @pytest.mark.asyncio
    async def test_explicit_tools_override_conversation_tools(self, conversation):
        """Test that tools passed to the turn replace the conversation's declarations."""
        client = FakeModelClient([text_response("ok")])
        await ConversationDriver(client).run_turn(conversation, "Hi", tools=[])
        assert client.calls[0].tools == ()

    @pytest.mark.asyncio
    async def test_empty_user_text_rejected(self, bare_conversation):
        """Test that a blank message is rejected before any invocation."""
        client = FakeModelClient()
        with pytest.raises(ValueError):
            await ConversationDriver(client).run_turn(bare_conversation, "   ")
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_execute_turn_reports_metadata(self, bare_conversation):
        """Test that the turn result carries usage, stop reason and committed messages."""
        client = FakeModelClient([text_response("Hi", usage=LLMUsage(input_tokens=10, output_tokens=2))])
        result = await ConversationDriver(client).execute_turn(bare_conversation, "Hello")

        assert result.text == "Hi"
        assert result.round_trips == 0
        assert result.stop_reason == "end_turn"
        assert result.usage.input_tokens == 10
        assert result.messages == bare_conversation.messages


class TestToolRoundTrips:
    """Tests for turns that execute tools."""

    @pytest.mark.asyncio
    async def test_portland_weather_with_default_registry(self, bare_conversation):
        """Test a full weather round-trip against the bundled tool."""
        registry = create_default_registry()
        client = FakeModelClient(
            [
                tool_response(("toolu_1", "getWeather", PORTLAND), text="Let me check."),
                text_response("It's 60F and cloudy in Portland."),
            ]
        )
        driver = ConversationDriver(client, registry.get_executor_table())

        result = await driver.execute_turn(
            bare_conversation, "What's the weather in Portland?", registry.get_tool_specs()
        )

        assert result.text == "It's 60F and cloudy in Portland."
        assert result.round_trips == 1
        assert len(client.calls) == 2

        user, assistant_request, tool_results, answer = bare_conversation.messages
        assert user == Message.user_text("What's the weather in Portland?")
        assert assistant_request.tool_uses[0].input == PORTLAND
        assert tool_results.role == "user"
        assert tool_results.content == (
            ToolResultBlock(
                tool_use_id="toolu_1",
                content={"location": "Portland", "temperature": "60F", "condition": "cloudy"},
            ),
        )
        assert answer.text == "It's 60F and cloudy in Portland."

        # The second invocation sees the request and its result
        assert client.calls[1].messages[-2] == assistant_request
        assert client.calls[1].messages[-1] == tool_results

    @pytest.mark.asyncio
    async def test_assistant_turn_is_kept_verbatim(self, conversation):
        """Test that the assistant message is appended exactly as returned."""
        request = tool_response(("toolu_1", "getWeather", PORTLAND), text="Checking")
        client = FakeModelClient([request, text_response("Done")])
        driver = ConversationDriver(client, {"getWeather": Mock(return_value="60F")})

        await driver.run_turn(conversation, "Weather?")

        assert conversation.messages[1] == request.message

    @pytest.mark.asyncio
    async def test_multiple_requests_share_one_result_message(self, conversation):
        """Test that N requests yield N results, in request order, in one message."""
        calls = []

        def executor(arguments):
            calls.append(arguments["lat"])
            return f"weather at {arguments['lat']}"

        client = FakeModelClient(
            [
                tool_response(
                    ("t1", "getWeather", {"lat": 1, "lon": 1}),
                    ("t2", "getWeather", {"lat": 2, "lon": 2}),
                    ("t3", "getWeather", {"lat": 3, "lon": 3}),
                ),
                text_response("Three reports"),
            ]
        )
        driver = ConversationDriver(client, {"getWeather": executor})

        result = await driver.execute_turn(conversation, "Weather at three places")

        assert calls == [1, 2, 3]
        assert result.round_trips == 1
        tool_results = conversation.messages[2]
        assert [block.tool_use_id for block in tool_results.content] == ["t1", "t2", "t3"]
        assert [block.content for block in tool_results.content] == [
            "weather at 1",
            "weather at 2",
            "weather at 3",
        ]

    @pytest.mark.asyncio
    async def test_unknown_tool_does_not_abort_turn(self, conversation):
        """Test that a request for an undeclared tool is answered with an error result."""
        client = FakeModelClient(
            [
                tool_response(("t1", "getStockPrice", {"symbol": "AMZN"})),
                text_response("I can't look up stock prices."),
            ]
        )
        driver = ConversationDriver(client, {"getWeather": Mock()})

        answer = await driver.run_turn(conversation, "AMZN price?")

        assert answer == "I can't look up stock prices."
        error = client.calls[1].messages[-1].content[0]
        assert error.is_error is True
        assert "Unknown tool 'getStockPrice'" in error.content

    @pytest.mark.asyncio
    async def test_tool_failure_lets_model_recover(self, conversation):
        """Test that a raising executor becomes an error result and the loop continues."""
        executor = Mock(side_effect=[LookupError("no station"), "55F and light rain"])
        client = FakeModelClient(
            [
                tool_response(("t1", "getWeather", {"lat": 0, "lon": 0})),
                tool_response(("t2", "getWeather", {"lat": 47.61, "lon": -122.33})),
                text_response("Seattle: 55F and light rain"),
            ]
        )
        driver = ConversationDriver(client, {"getWeather": executor}, DriverConfig(max_round_trips=5))

        result = await driver.execute_turn(conversation, "Weather?")

        assert result.round_trips == 2
        first_result = conversation.messages[2].content[0]
        second_result = conversation.messages[4].content[0]
        assert first_result.is_error is True
        assert second_result.is_error is False
        assert second_result.content == "55F and light rain"

    @pytest.mark.asyncio
    async def test_tool_request_without_declared_tools_is_malformed(self, bare_conversation):
        """Test that a tool request is rejected when no tools were declared."""
        client = FakeModelClient([tool_response(("t1", "getWeather", PORTLAND))])

        with pytest.raises(MalformedResponseError):
            await ConversationDriver(client).run_turn(bare_conversation, "Weather?")
        assert bare_conversation.message_count == 0


class TestIterationLimit:
    """Tests for the tool round-trip ceiling."""

    @pytest.mark.asyncio
    async def test_ceiling_of_one_allows_exactly_one_round_trip(self, conversation):
        """Test that with a ceiling of 1 the second tool request fails the turn."""
        executor = Mock(return_value="60F")
        client = FakeModelClient(
            [
                tool_response(("t1", "getWeather", PORTLAND)),
                tool_response(("t2", "getWeather", PORTLAND)),
            ]
        )
        driver = ConversationDriver(client, {"getWeather": executor}, DriverConfig(max_round_trips=1))

        with pytest.raises(IterationLimitExceeded) as exc_info:
            await driver.run_turn(conversation, "Weather?")

        assert exc_info.value.limit == 1
        assert len(client.calls) == 2
        executor.assert_called_once()
        assert conversation.message_count == 0

        transcript = exc_info.value.transcript
        assert [message.role for message in transcript] == ["user", "assistant", "user", "assistant"]
        assert transcript[-1].tool_uses[0].id == "t2"

    @pytest.mark.asyncio
    async def test_ceiling_of_zero_rejects_any_tool_request(self, conversation):
        """Test that with a ceiling of 0 no tool is ever executed."""
        executor = Mock()
        client = FakeModelClient([tool_response(("t1", "getWeather", PORTLAND))])
        driver = ConversationDriver(client, {"getWeather": executor}, DriverConfig(max_round_trips=0))

        with pytest.raises(IterationLimitExceeded):
            await driver.run_turn(conversation, "Weather?")
        executor.assert_not_called()

    @pytest.mark.asyncio
    async def test_answer_at_the_ceiling_succeeds(self, conversation):
        """Test that a terminal answer after the last allowed round-trip is accepted."""
        client = FakeModelClient([tool_response(("t1", "getWeather", PORTLAND)), text_response("60F")])
        driver = ConversationDriver(client, {"getWeather": Mock(return_value="60F")}, DriverConfig(max_round_trips=1))

        assert await driver.run_turn(conversation, "Weather?") == "60F"


class TestTurnAtomicity:
    """Tests for leaving the conversation untouched when a turn fails."""

    @pytest.mark.asyncio
    async def test_endpoint_error_mid_turn_leaves_history_unchanged(self, conversation):
        """Test that a failure after a tool round-trip commits nothing."""
        conversation.append(Message.user_text("earlier"))
        conversation.append(Message.assistant_text("reply"))
        before = conversation.messages

        client = FakeModelClient(
            [tool_response(("t1", "getWeather", PORTLAND)), EndpointError("throttled", status_code=429)]
        )
        driver = ConversationDriver(client, {"getWeather": Mock(return_value="60F")})

        with pytest.raises(EndpointError):
            await driver.run_turn(conversation, "Weather?")

        assert conversation.messages == before

    @pytest.mark.asyncio
    async def test_failed_turn_can_be_replayed(self, bare_conversation):
        """Test that a turn can be retried after a failure with the same history."""
        client = FakeModelClient([EndpointError("unavailable"), text_response("Hi")])
        driver = ConversationDriver(client)

        with pytest.raises(EndpointError):
            await driver.run_turn(bare_conversation, "Hello")
        assert await driver.run_turn(bare_conversation, "Hello") == "Hi"

        assert client.calls[0].messages == client.calls[1].messages
        assert bare_conversation.message_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_modification_is_detected(self, bare_conversation):
        """Test that a conversation changed during the turn is not overwritten."""

        def interfere(state):
            bare_conversation.append(Message.user_text("sneaky"))
            return text_response("Hi")

        driver = ConversationDriver(FakeModelClient([interfere]))

        with pytest.raises(ConversationConflictError):
            await driver.run_turn(bare_conversation, "Hello")

        assert bare_conversation.messages == (Message.user_text("sneaky"),)


class TestCancellation:
    """Tests for caller-driven cancellation."""

    @pytest.mark.asyncio
    async def test_cancelled_before_first_invocation(self, conversation):
        """Test that a pre-set cancel event stops the turn before any call."""
        cancel = asyncio.Event()
        cancel.set()
        client = FakeModelClient([text_response("never")])

        with pytest.raises(ConversationCancelled):
            await ConversationDriver(client).run_turn(conversation, "Hi", cancel_event=cancel)

        assert client.calls == []
        assert conversation.message_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_between_round_trips(self, conversation):
        """Test that cancelling during a tool call stops before the next invocation."""
        cancel = asyncio.Event()

        def executor(arguments):
            cancel.set()
            return "60F"

        client = FakeModelClient([tool_response(("t1", "getWeather", PORTLAND)), text_response("never")])
        driver = ConversationDriver(client, {"getWeather": executor})

        with pytest.raises(ConversationCancelled):
            await driver.run_turn(conversation, "Weather?", cancel_event=cancel)

        assert len(client.calls) == 1
        assert conversation.message_count == 0

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self, conversation):
        """Test that cancelling the task is not swallowed by tool error handling."""
        started = asyncio.Event()

        async def slow_executor(arguments):
            started.set()
            await asyncio.sleep(10)

        spec = ToolSpec(name="getWeather", description="slow", input_schema=WEATHER_SPEC.input_schema)
        client = FakeModelClient([tool_response(("t1", "getWeather", PORTLAND)), text_response("never")])
        driver = ConversationDriver(client, {"getWeather": slow_executor})

        task = asyncio.create_task(driver.run_turn(conversation, "Weather?", tools=[spec]))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert conversation.message_count == 0
