"""Merge streaming deltas into one model message."""

import json
import time
from typing import List, Optional

from .formatters.base import StreamChunk
from .logger import get_logger
from .messages import ROLE_MODEL, FunctionCallPart, Message, Part, TextPart, UsageMetadata

_log = get_logger("stream")


def _merge_usage(current: Optional[UsageMetadata], update: UsageMetadata) -> UsageMetadata:
    # Providers report usage piecemeal (prompt at start, output at the end).
    merged = current or UsageMetadata()
    for name in ("prompt_token_count", "candidates_token_count", "total_token_count", "thoughts_token_count"):
        value = getattr(update, name)
        if value is not None:
            setattr(merged, name, value)
    return merged


class StreamAccumulator:
    """Collects the parts of one streamed response in arrival order.

    Text deltas join the open text part when the ``thought`` flag matches.
    Function-call deltas that carry an ``index`` are merged into the call
    occupying that index, concatenating ``partial_args``; the JSON is
    decoded into ``args`` on the done chunk or when a snapshot is taken.
    Everything else is appended as it comes.
    """

    def __init__(self):
        self.parts: List[Part] = []
        self.usage: Optional[UsageMetadata] = None
        self.model_version: Optional[str] = None
        self.finish_reason: Optional[str] = None
        self.done = False
        self.started_at = time.time()
        self.thinking_start_time: Optional[float] = None
        self.thinking_end_time: Optional[float] = None

    def add(self, chunk: StreamChunk) -> None:
        for part in chunk.delta:
            self._add_part(part)
        if chunk.usage is not None:
            self.usage = _merge_usage(self.usage, chunk.usage)
        if chunk.model_version:
            self.model_version = chunk.model_version
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        if chunk.thinking_start_time and self.thinking_start_time is None:
            self.thinking_start_time = chunk.thinking_start_time
        if chunk.done:
            self.done = True
            self._finalize_calls()

    def _add_part(self, part: Part) -> None:
        if isinstance(part, TextPart):
            if part.thought:
                now = time.time()
                if self.thinking_start_time is None:
                    self.thinking_start_time = now
                self.thinking_end_time = now
            last = self.parts[-1] if self.parts else None
            if isinstance(last, TextPart) and last.thought == part.thought:
                last.text += part.text
            elif part.text:
                self.parts.append(TextPart(text=part.text, thought=part.thought))
            return

        if isinstance(part, FunctionCallPart):
            self._add_call(part)
            return

        self.parts.append(part)

    def _add_call(self, part: FunctionCallPart) -> None:
        if part.index is not None:
            for existing in self.parts:
                if isinstance(existing, FunctionCallPart) and existing.index == part.index:
                    if part.name:
                        existing.name = part.name
                    if part.id:
                        existing.id = part.id
                    if part.partial_args:
                        existing.partial_args = (existing.partial_args or "") + part.partial_args
                    if part.args:
                        existing.args = dict(part.args)
                    return
        self.parts.append(FunctionCallPart(
            name=part.name,
            args=dict(part.args or {}),
            id=part.id,
            partial_args=part.partial_args,
            index=part.index,
        ))

    def _finalize_calls(self) -> None:
        for part in self.parts:
            if isinstance(part, FunctionCallPart) and part.partial_args:
                try:
                    args = json.loads(part.partial_args)
                except json.JSONDecodeError:
                    _log.warning("discarding undecodable tool arguments for %s: %r", part.name, part.partial_args[:200])
                    args = None
                if isinstance(args, dict):
                    part.args = args

    def get_content(self) -> Message:
        """Snapshot of everything received so far, streaming fields stripped."""
        self._finalize_calls()
        parts: List[Part] = []
        for part in self.parts:
            if isinstance(part, FunctionCallPart):
                parts.append(FunctionCallPart(name=part.name, args=dict(part.args), id=part.id))
            elif isinstance(part, TextPart):
                if part.text:
                    parts.append(TextPart(text=part.text, thought=part.thought))
            else:
                parts.append(part)

        usage = self.usage
        if usage is not None and usage.total_token_count is None and usage.prompt_token_count is not None:
            usage.total_token_count = usage.prompt_token_count + (usage.candidates_token_count or 0)

        message = Message(role=ROLE_MODEL, parts=parts, usage=usage, model_version=self.model_version)
        message.response_duration_ms = int((time.time() - self.started_at) * 1000)
        if self.thinking_start_time is not None:
            message.thinking_start_time = self.thinking_start_time
            end = self.thinking_end_time or self.thinking_start_time
            message.thinking_duration_ms = int((end - self.thinking_start_time) * 1000)
        return message
