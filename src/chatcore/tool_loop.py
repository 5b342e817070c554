"""The tool iteration loop.

One iteration: fetch the (trimmed) history, call the model, store its
answer, and either finish, pause for confirmation, or run the requested
tools and go round again.  The streaming entry point yields typed events;
the single-shot one returns the final message.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, ClassVar, Dict, List, Optional

from .cancellation import CancellationToken, is_cancelled
from .config import ProviderConfig
from .context_trim import ContextTrimEngine, estimate_message_tokens
from .errors import ChannelError, ErrorCode, ErrorType
from .formatters.base import GenerateRequest, StreamChunk
from .logger import get_logger
from .messages import Message, ToolCall, function_response_message
from .protocols import CheckpointRecord
from .stream_accumulator import StreamAccumulator
from .tool_call_parser import normalize_model_message
from .tool_execution import ToolExecutionResult, ToolExecutionRouter

_log = get_logger("loop")

MODEL_CHECKPOINT = "message:model"


class LoopState(str, Enum):
    ITERATING = "iterating"
    EXECUTING = "executing"
    COMPLETE = "complete"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CANCELLED = "cancelled"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"


# ── Events ───────────────────────────────────────────────────

@dataclass
class LoopEvent:
    conversation_id: str
    type: ClassVar[str] = "event"
    state: ClassVar[LoopState] = LoopState.ITERATING


@dataclass
class ChunkEvent(LoopEvent):
    chunk: StreamChunk = field(default_factory=StreamChunk)
    type: ClassVar[str] = "chunk"


@dataclass
class CheckpointsEvent(LoopEvent):
    checkpoints: List[CheckpointRecord] = field(default_factory=list)
    type: ClassVar[str] = "checkpoints"


@dataclass
class AwaitingConfirmationEvent(LoopEvent):
    content: Optional[Message] = None
    pending_tool_calls: List[ToolCall] = field(default_factory=list)
    type: ClassVar[str] = "awaiting_confirmation"
    state: ClassVar[LoopState] = LoopState.AWAITING_CONFIRMATION


@dataclass
class ToolsExecutingEvent(LoopEvent):
    content: Optional[Message] = None
    pending_tool_calls: List[ToolCall] = field(default_factory=list)
    type: ClassVar[str] = "tools_executing"
    state: ClassVar[LoopState] = LoopState.EXECUTING


@dataclass
class ToolIterationEvent(LoopEvent):
    content: Optional[Message] = None
    tool_results: List[Dict[str, Any]] = field(default_factory=list)
    checkpoints: List[CheckpointRecord] = field(default_factory=list)
    type: ClassVar[str] = "tool_iteration"


@dataclass
class CancelledEvent(LoopEvent):
    content: Optional[Message] = None
    type: ClassVar[str] = "cancelled"
    state: ClassVar[LoopState] = LoopState.CANCELLED


@dataclass
class CompletedEvent(LoopEvent):
    content: Optional[Message] = None
    checkpoints: List[CheckpointRecord] = field(default_factory=list)
    type: ClassVar[str] = "completed"
    state: ClassVar[LoopState] = LoopState.COMPLETE


@dataclass
class ErrorEvent(LoopEvent):
    error: Dict[str, str] = field(default_factory=dict)
    type: ClassVar[str] = "error"
    state: ClassVar[LoopState] = LoopState.ERROR

    @property
    def code(self) -> str:
        return self.error.get("code", "")


@dataclass
class NonStreamLoopResult:
    content: Optional[Message] = None
    exceeded_max_iterations: bool = False
    pending_tool_calls: List[ToolCall] = field(default_factory=list)
    cancelled: bool = False

    @property
    def state(self) -> LoopState:
        if self.exceeded_max_iterations:
            return LoopState.MAX_ITERATIONS
        if self.cancelled:
            return LoopState.CANCELLED
        if self.pending_tool_calls:
            return LoopState.AWAITING_CONFIRMATION
        return LoopState.COMPLETE


def max_iterations_error(limit: int) -> Dict[str, str]:
    return {
        "code": ErrorCode.MAX_TOOL_ITERATIONS,
        "message": f"Reached the maximum of {limit} tool iterations",
    }


# ── Loop ─────────────────────────────────────────────────────

class ToolIterationLoop:
    def __init__(
        self,
        channel,
        store,
        router: ToolExecutionRouter,
        settings,
        trim: Optional[ContextTrimEngine] = None,
        checkpoints=None,
        prompts=None,
    ):
        self.channel = channel
        self.store = store
        self.router = router
        self.settings = settings
        self.trim = trim or ContextTrimEngine(store, prompts)
        self.checkpoints = checkpoints
        self.prompts = prompts

    async def clear_trim_state(self, conversation_id: str) -> None:
        await self.trim.clear_trim_state(conversation_id)

    def iteration_limit(self, max_iterations: Optional[int]) -> int:
        if max_iterations is not None:
            return max_iterations
        return self.settings.get_max_tool_iterations()

    async def _build_request(
        self, conversation_id: str, config: ProviderConfig, cancel_token: Optional[CancellationToken]
    ) -> GenerateRequest:
        # History is re-read every iteration; tools may have appended to it.
        history = await self.trim.get_trimmed_history(conversation_id, config)
        request = GenerateRequest(config_id=config.id, history=history, cancel_token=cancel_token)
        if self.prompts is not None:
            request.dynamic_system_prompt = self.prompts.get_system_prompt() or ""
            request.dynamic_context_messages = self.prompts.get_dynamic_context_messages() or []
            request.mcp_tools_content = self.prompts.get_mcp_tools_content() or ""
        return request

    async def _model_checkpoint(self, conversation_id: str, phase: str) -> Optional[CheckpointRecord]:
        if self.checkpoints is None:
            return None
        history = await self.store.get_history(conversation_id)
        index = len(history) if phase == "before" else len(history) - 1
        return await self.checkpoints.create_checkpoint(conversation_id, index, MODEL_CHECKPOINT, phase)

    async def execute_calls(
        self,
        conversation_id: str,
        calls: List[ToolCall],
        config: ProviderConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ToolExecutionResult:
        history = await self.store.get_history(conversation_id)
        return await self.router.execute(calls, conversation_id, len(history) - 1, config, cancel_token)

    async def append_function_responses(self, conversation_id: str, parts: List[Any]) -> Message:
        message = function_response_message(parts)
        message.estimated_token_count = estimate_message_tokens(message)
        await self.store.add_message(conversation_id, message)
        return message

    # ── Streaming entry point ────────────────────────────────

    async def run_tool_loop(
        self,
        conversation_id: str,
        config: ProviderConfig,
        cancel_token: Optional[CancellationToken] = None,
        max_iterations: Optional[int] = None,
        start_iteration: int = 0,
        create_before_model_checkpoint: bool = True,
    ) -> AsyncIterator[LoopEvent]:
        limit = self.iteration_limit(max_iterations)
        iteration = start_iteration
        first_iteration = start_iteration + 1

        while limit == -1 or iteration < limit:
            iteration += 1

            if is_cancelled(cancel_token):
                _log.info("loop cancelled before iteration %d: conv=%s", iteration, conversation_id)
                yield CancelledEvent(conversation_id)
                return

            if create_before_model_checkpoint and (
                iteration == first_iteration or not self.settings.is_model_outer_layer_only()
            ):
                checkpoint = await self._model_checkpoint(conversation_id, "before")
                if checkpoint is not None:
                    yield CheckpointsEvent(conversation_id, checkpoints=[checkpoint])

            request = await self._build_request(conversation_id, config, cancel_token)
            _log.info("iteration %d: conv=%s history=%d", iteration, conversation_id, len(request.history))

            started = time.time()
            if config.stream:
                accumulator = StreamAccumulator()
                try:
                    async for chunk in self.channel.stream(request):
                        accumulator.add(chunk)
                        yield ChunkEvent(conversation_id, chunk=chunk)
                except ChannelError as e:
                    if e.error_type != ErrorType.CANCELLED_ERROR:
                        raise
                content = accumulator.get_content()
                if is_cancelled(cancel_token):
                    # Keep what already arrived.
                    normalize_model_message(content)
                    if content.parts:
                        await self.store.add_message(conversation_id, content)
                    _log.info("stream cancelled: conv=%s parts=%d", conversation_id, len(content.parts))
                    yield CancelledEvent(conversation_id, content=content if content.parts else None)
                    return
            else:
                try:
                    response = await self.channel.generate(request)
                except ChannelError as e:
                    if e.error_type != ErrorType.CANCELLED_ERROR:
                        raise
                    yield CancelledEvent(conversation_id)
                    return
                content = response.content
                content.response_duration_ms = int((time.time() - started) * 1000)
                yield ChunkEvent(conversation_id, chunk=StreamChunk(
                    delta=list(content.parts),
                    done=True,
                    usage=content.usage,
                    finish_reason=response.finish_reason,
                    model_version=content.model_version,
                ))

            calls = normalize_model_message(content)
            if content.parts:
                await self.store.add_message(conversation_id, content)

            if not calls:
                checkpoints = []
                checkpoint = await self._model_checkpoint(conversation_id, "after")
                if checkpoint is not None:
                    checkpoints.append(checkpoint)
                _log.info("loop complete: conv=%s iterations=%d", conversation_id, iteration)
                yield CompletedEvent(conversation_id, content=content, checkpoints=checkpoints)
                return

            pending = self.router.needs_confirmation(calls)
            if pending:
                _log.info("awaiting confirmation: conv=%s tools=%s", conversation_id, [c.name for c in pending])
                yield AwaitingConfirmationEvent(conversation_id, content=content, pending_tool_calls=pending)
                return

            yield ToolsExecutingEvent(conversation_id, content=content, pending_tool_calls=calls)
            result = await self.execute_calls(conversation_id, calls, config, cancel_token)
            await self.append_function_responses(conversation_id, result.message_parts())

            yield ToolIterationEvent(
                conversation_id, content=content, tool_results=result.tool_results, checkpoints=result.checkpoints,
            )
            if result.cancelled:
                _log.info("loop cancelled during tools: conv=%s", conversation_id)
                yield CancelledEvent(conversation_id, content=content)
                return

        _log.warning("max tool iterations reached: conv=%s limit=%d", conversation_id, limit)
        yield ErrorEvent(conversation_id, error=max_iterations_error(limit))

    # ── Single-shot entry point ──────────────────────────────

    async def run_non_stream_loop(
        self,
        conversation_id: str,
        config: ProviderConfig,
        cancel_token: Optional[CancellationToken] = None,
        max_iterations: Optional[int] = None,
    ) -> NonStreamLoopResult:
        limit = self.iteration_limit(max_iterations)
        iteration = 0

        while limit == -1 or iteration < limit:
            iteration += 1
            if is_cancelled(cancel_token):
                return NonStreamLoopResult(cancelled=True)

            request = await self._build_request(conversation_id, config, cancel_token)
            started = time.time()
            try:
                response = await self.channel.generate(request)
            except ChannelError as e:
                if e.error_type != ErrorType.CANCELLED_ERROR:
                    raise
                return NonStreamLoopResult(cancelled=True)
            content = response.content
            content.response_duration_ms = int((time.time() - started) * 1000)

            calls = normalize_model_message(content)
            if content.parts:
                await self.store.add_message(conversation_id, content)

            if not calls:
                return NonStreamLoopResult(content=content)

            pending = self.router.needs_confirmation(calls)
            if pending:
                return NonStreamLoopResult(content=content, pending_tool_calls=pending)

            result = await self.execute_calls(conversation_id, calls, config, cancel_token)
            await self.append_function_responses(conversation_id, result.message_parts())
            if result.cancelled:
                return NonStreamLoopResult(content=content, cancelled=True)

        return NonStreamLoopResult(exceeded_max_iterations=True)
