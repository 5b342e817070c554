"""Tests for the tool iteration loop, driven by a scripted channel."""

import sys
import os
import asyncio

import pytest

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from chatcore.cancellation import CancellationToken, is_cancelled
from chatcore.config import CheckpointSettings, ProviderConfig, Settings
from chatcore.errors import ChannelError, ErrorCode, ErrorType
from chatcore.formatters.base import GenerateResponse, StreamChunk
from chatcore.messages import FunctionCallPart, FunctionResponsePart, TextPart, UsageMetadata, user_message
from chatcore.stores import InMemoryCheckpointManager, InMemoryConversationStore
from chatcore.stream_accumulator import StreamAccumulator
from chatcore.tool_execution import ToolExecutionRouter
from chatcore.tool_loop import (
    AwaitingConfirmationEvent,
    CancelledEvent,
    CheckpointsEvent,
    ChunkEvent,
    CompletedEvent,
    ErrorEvent,
    LoopState,
    ToolIterationEvent,
    ToolIterationLoop,
    ToolsExecutingEvent,
)
from chatcore.tool_registry import ToolRegistry


STREAM_CONFIG = ProviderConfig(id="main", type="gemini", url="https://example.test", model="m", stream=True)
PLAIN_CONFIG = ProviderConfig(id="main", type="gemini", url="https://example.test", model="m", stream=False)


def run(coro):
    return asyncio.run(coro)


def text_turn(text):
    return [StreamChunk(
        delta=[TextPart(text=text)],
        done=True,
        usage=UsageMetadata(prompt_token_count=10, candidates_token_count=5),
    )]


def call_turn(*calls):
    return [StreamChunk(delta=[FunctionCallPart(name=name, args=args) for name, args in calls], done=True)]


class ScriptedChannel:
    """Plays back canned model turns, one per request."""

    def __init__(self, turns, repeat_last=False):
        self.turns = list(turns)
        self.repeat_last = repeat_last
        self.requests = []

    def _next_turn(self):
        if self.repeat_last and len(self.turns) == 1:
            return self.turns[0]
        return self.turns.pop(0)

    async def stream(self, request):
        self.requests.append(request)
        for chunk in self._next_turn():
            if is_cancelled(request.cancel_token):
                return
            yield chunk

    async def generate(self, request):
        self.requests.append(request)
        accumulator = StreamAccumulator()
        for chunk in self._next_turn():
            accumulator.add(chunk)
        return GenerateResponse(content=accumulator.get_content(), finish_reason="STOP")


class FailingChannel:
    async def stream(self, request):
        raise ChannelError(ErrorType.API_ERROR, "API request failed with status 500")
        yield  # pragma: no cover

    async def generate(self, request):
        raise ChannelError(ErrorType.API_ERROR, "API request failed with status 500")


def make_registry():
    registry = ToolRegistry()

    @registry.register_function(name="lookup", description="Look up a key", parameters={"key": {"type": "string"}})
    def lookup(key: str) -> str:
        return f"value-{key}"

    @registry.register_function(name="danger", description="Needs a human", parameters={})
    def danger() -> str:
        return "did it"

    @registry.register_function(name="boom", description="Always fails", parameters={})
    def boom():
        raise ValueError("kaput")

    return registry


def make_loop(channel, settings=None, checkpoints=None):
    settings = settings or Settings(tool_auto_exec={"danger": False})
    store = InMemoryConversationStore()
    router = ToolExecutionRouter(registry=make_registry(), settings=settings, checkpoints=checkpoints)
    loop = ToolIterationLoop(channel, store, router, settings, checkpoints=checkpoints)
    return loop, store


async def collect(events, on_event=None):
    seen = []
    async for event in events:
        seen.append(event)
        if on_event is not None:
            on_event(event)
    return seen


async def start(store, text="hello"):
    await store.add_message("c1", user_message(text))


# ============================================================
# Streaming loop
# ============================================================

class TestStreamingLoop:
    def test_plain_answer_completes(self):
        async def scenario():
            loop, store = make_loop(ScriptedChannel([text_turn("hi there")]))
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG))
            return events, await store.get_history("c1")

        events, history = run(scenario())
        assert [e.type for e in events] == ["chunk", "completed"]
        assert events[-1].state == LoopState.COMPLETE
        assert events[-1].content.text() == "hi there"
        assert [m.role for m in history] == ["user", "model"]

    def test_tool_round_trip_with_generated_ids(self):
        async def scenario():
            channel = ScriptedChannel([call_turn(("lookup", {"key": "a"})), text_turn("done")])
            loop, store = make_loop(channel)
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG))
            return events, await store.get_history("c1"), channel

        events, history, channel = run(scenario())
        assert [e.type for e in events] == ["chunk", "tools_executing", "tool_iteration", "chunk", "completed"]
        executing = next(e for e in events if isinstance(e, ToolsExecutingEvent))
        assert executing.state == LoopState.EXECUTING
        call_id = executing.pending_tool_calls[0].id
        assert call_id.startswith("call_")

        assert len(history) == 4
        stored_call = history[1].parts[0]
        response = history[2].parts[0]
        assert isinstance(stored_call, FunctionCallPart) and stored_call.id == call_id
        assert history[2].is_function_response
        assert isinstance(response, FunctionResponsePart)
        assert response.id == call_id
        assert response.response == {"success": True, "output": "value-a"}
        assert history[2].estimated_token_count is not None

        iteration = next(e for e in events if isinstance(e, ToolIterationEvent))
        assert iteration.tool_results[0]["name"] == "lookup"
        # The second request already sees the function response.
        assert len(channel.requests[1].history) == 3

    def test_failing_tool_does_not_stop_the_loop(self):
        async def scenario():
            channel = ScriptedChannel([call_turn(("boom", {}), ("nope", {})), text_turn("sorry")])
            loop, store = make_loop(channel)
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG))
            return events, await store.get_history("c1")

        events, history = run(scenario())
        assert isinstance(events[-1], CompletedEvent)
        boom, missing = history[2].parts
        assert boom.response["success"] is False
        assert "kaput" in boom.response["error"]
        assert missing.response == {"success": False, "error": "Tool not found: nope"}

    def test_max_iterations(self):
        async def scenario():
            channel = ScriptedChannel([call_turn(("lookup", {"key": "x"}))], repeat_last=True)
            loop, store = make_loop(channel)
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG, max_iterations=3))
            return events, await store.get_history("c1")

        events, history = run(scenario())
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].code == ErrorCode.MAX_TOOL_ITERATIONS
        assert "3" in events[-1].error["message"]
        assert sum(isinstance(e, ToolIterationEvent) for e in events) == 3
        assert len(history) == 1 + 3 * 2

    def test_iteration_limit_from_settings(self):
        async def scenario():
            channel = ScriptedChannel([call_turn(("lookup", {"key": "x"}))], repeat_last=True)
            loop, store = make_loop(channel, settings=Settings(max_tool_iterations=2))
            await start(store)
            return await collect(loop.run_tool_loop("c1", STREAM_CONFIG))

        events = run(scenario())
        assert sum(isinstance(e, ToolIterationEvent) for e in events) == 2
        assert events[-1].code == ErrorCode.MAX_TOOL_ITERATIONS

    def test_cancel_mid_stream_keeps_partial_answer(self):
        token = CancellationToken()

        def cancel_on_first_chunk(event):
            if isinstance(event, ChunkEvent):
                token.cancel()

        async def scenario():
            turn = [StreamChunk(delta=[TextPart(text="partial ")]), StreamChunk(delta=[TextPart(text="rest")], done=True)]
            loop, store = make_loop(ScriptedChannel([turn]))
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG, token), cancel_on_first_chunk)
            return events, await store.get_history("c1")

        events, history = run(scenario())
        assert [e.type for e in events] == ["chunk", "cancelled"]
        assert events[-1].content.text() == "partial "
        assert len(history) == 2
        assert history[1].text() == "partial "

    def test_cancelled_before_start(self):
        async def scenario():
            token = CancellationToken()
            token.cancel()
            channel = ScriptedChannel([text_turn("never")])
            loop, store = make_loop(channel)
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG, token))
            return events, channel

        events, channel = run(scenario())
        assert [type(e) for e in events] == [CancelledEvent]
        assert channel.requests == []

    def test_cancelled_partial_tool_call_gets_an_id(self):
        token = CancellationToken()

        def cancel_on_first_chunk(event):
            if isinstance(event, ChunkEvent):
                token.cancel()

        async def scenario():
            turn = [
                StreamChunk(delta=[FunctionCallPart(name="lookup", args={"key": "a"})]),
                StreamChunk(delta=[TextPart(text="never")], done=True),
            ]
            loop, store = make_loop(ScriptedChannel([turn]))
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG, token), cancel_on_first_chunk)
            return events, await store.get_history("c1")

        events, history = run(scenario())
        assert events[-1].type == "cancelled"
        (part,) = history[1].parts
        assert isinstance(part, FunctionCallPart)
        assert part.id

    def test_cancel_during_tools_ends_with_cancelled_event(self):
        token = CancellationToken()
        registry = ToolRegistry()

        @registry.register_function(name="stop", description="Cancels the turn", parameters={})
        def stop() -> str:
            token.cancel()
            return "stopping"

        async def scenario():
            channel = ScriptedChannel([call_turn(("stop", {}), ("stop", {})), text_turn("never")])
            settings = Settings()
            store = InMemoryConversationStore()
            loop = ToolIterationLoop(channel, store, ToolExecutionRouter(registry=registry, settings=settings), settings)
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG, token))
            return events, channel

        events, channel = run(scenario())
        assert [e.type for e in events] == ["chunk", "tools_executing", "tool_iteration", "cancelled"]
        assert events[-1].state == LoopState.CANCELLED
        assert len(channel.requests) == 1

    def test_confirmation_suspends_without_responses(self):
        async def scenario():
            channel = ScriptedChannel([call_turn(("lookup", {"key": "a"}), ("danger", {}))])
            loop, store = make_loop(channel)
            await start(store)
            events = await collect(loop.run_tool_loop("c1", STREAM_CONFIG))
            return events, await store.get_history("c1")

        events, history = run(scenario())
        assert isinstance(events[-1], AwaitingConfirmationEvent)
        assert events[-1].state == LoopState.AWAITING_CONFIRMATION
        assert [c.name for c in events[-1].pending_tool_calls] == ["danger"]
        assert not any(isinstance(e, ToolsExecutingEvent) for e in events)
        assert [m.role for m in history] == ["user", "model"]

    def test_model_checkpoints(self):
        settings = Settings(checkpoint=CheckpointSettings(
            enabled=True, before_messages=["model"], after_messages=["model"],
        ))
        checkpoints = InMemoryCheckpointManager(settings)

        async def scenario():
            loop, store = make_loop(ScriptedChannel([text_turn("ok")]), settings=settings, checkpoints=checkpoints)
            await start(store)
            return await collect(loop.run_tool_loop("c1", STREAM_CONFIG))

        events = run(scenario())
        assert isinstance(events[0], CheckpointsEvent)
        before = events[0].checkpoints[0]
        assert (before.tool_name, before.phase, before.message_index) == ("message:model", "before", 1)
        after = events[-1].checkpoints[0]
        assert (after.phase, after.message_index) == ("after", 1)

    def test_outer_layer_only_checkpoints_once(self):
        settings = Settings(checkpoint=CheckpointSettings(enabled=True, before_messages=["model"]))
        checkpoints = InMemoryCheckpointManager(settings)

        async def scenario():
            channel = ScriptedChannel([call_turn(("lookup", {"key": "a"})), text_turn("done")])
            loop, store = make_loop(channel, settings=settings, checkpoints=checkpoints)
            await start(store)
            return await collect(loop.run_tool_loop("c1", STREAM_CONFIG))

        events = run(scenario())
        assert sum(isinstance(e, CheckpointsEvent) for e in events) == 1

    def test_non_streaming_config_emits_one_chunk(self):
        async def scenario():
            loop, store = make_loop(ScriptedChannel([text_turn("whole answer")]))
            await start(store)
            return await collect(loop.run_tool_loop("c1", PLAIN_CONFIG))

        events = run(scenario())
        assert [e.type for e in events] == ["chunk", "completed"]
        assert events[0].chunk.done
        assert events[1].content.response_duration_ms is not None

    def test_channel_errors_propagate(self):
        async def scenario():
            loop, store = make_loop(FailingChannel())
            await start(store)
            await collect(loop.run_tool_loop("c1", STREAM_CONFIG))

        with pytest.raises(ChannelError):
            run(scenario())


# ============================================================
# Single-shot loop
# ============================================================

class TestNonStreamLoop:
    def test_runs_tools_and_returns_final_message(self):
        async def scenario():
            channel = ScriptedChannel([call_turn(("lookup", {"key": "b"})), text_turn("final")])
            loop, store = make_loop(channel)
            await start(store)
            result = await loop.run_non_stream_loop("c1", PLAIN_CONFIG)
            return result, await store.get_history("c1")

        result, history = run(scenario())
        assert result.state == LoopState.COMPLETE
        assert result.content.text() == "final"
        assert len(history) == 4

    def test_pending_confirmation(self):
        async def scenario():
            loop, store = make_loop(ScriptedChannel([call_turn(("danger", {}))]))
            await start(store)
            return await loop.run_non_stream_loop("c1", PLAIN_CONFIG)

        result = run(scenario())
        assert result.state == LoopState.AWAITING_CONFIRMATION
        assert result.pending_tool_calls[0].name == "danger"

    def test_exceeds_max_iterations(self):
        async def scenario():
            channel = ScriptedChannel([call_turn(("lookup", {"key": "x"}))], repeat_last=True)
            loop, store = make_loop(channel)
            await start(store)
            return await loop.run_non_stream_loop("c1", PLAIN_CONFIG, max_iterations=2)

        result = run(scenario())
        assert result.exceeded_max_iterations
        assert result.state == LoopState.MAX_ITERATIONS
