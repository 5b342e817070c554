"""Context-window trimming by conversation rounds.

The engine never deletes anything.  It picks the index into the stored
history where the request should start, so the projected prompt stays
under the channel's threshold, and remembers that index in the store
(``trimStartIndex``) so the choice is stable from turn to turn.

Token counts are summed per message rather than taken from the provider's
cumulative ``totalTokenCount``: the cumulative number describes the
previous request, which may already have been trimmed, and feeding it
back in makes the cut point oscillate.
"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from .config import ProviderConfig
from .logger import get_logger
from .messages import (
    ROLE_MODEL,
    ROLE_USER,
    FileDataPart,
    FunctionCallPart,
    FunctionResponsePart,
    InlineDataPart,
    Message,
    RedactedThinkingPart,
    TextPart,
    ThoughtSignaturePart,
)

_log = get_logger("context_trim")

TRIM_STATE_KEY = "trimStartIndex"
DEFAULT_MAX_CONTEXT_TOKENS = 128000
MEDIA_TOKEN_ESTIMATE = 258


# ── Estimation ───────────────────────────────────────────────

def estimate_tokens(text: str) -> int:
    """Estimate token count. Rough approximation: ~4 chars per token."""
    return len(text) // 4


def estimate_message_tokens(message: Message) -> int:
    total = 0
    for part in message.parts:
        if isinstance(part, TextPart):
            total += estimate_tokens(part.text)
        elif isinstance(part, FunctionCallPart):
            total += estimate_tokens(part.name + json.dumps(part.args or {}, ensure_ascii=False))
        elif isinstance(part, FunctionResponsePart):
            total += estimate_tokens(part.name + json.dumps(part.response, ensure_ascii=False, default=str))
            total += MEDIA_TOKEN_ESTIMATE * len(part.parts)
        elif isinstance(part, (InlineDataPart, FileDataPart)):
            total += MEDIA_TOKEN_ESTIMATE
    return total


def calculate_threshold(threshold: Union[int, float, str, None], max_context_tokens: int) -> int:
    """Resolve a threshold given as a token count or as a percentage string like ``"80%"``.

    Anything unparseable falls back to 80% of the context window.
    """
    if isinstance(threshold, bool) or threshold is None:
        return int(max_context_tokens * 0.8)
    if isinstance(threshold, (int, float)):
        return int(threshold)
    text = str(threshold).strip()
    if text.endswith("%"):
        try:
            percent = float(text[:-1])
        except ValueError:
            percent = 0.0
        if 0 < percent <= 100:
            return int(max_context_tokens * percent / 100)
    else:
        try:
            return int(float(text))
        except ValueError:
            pass
    return int(max_context_tokens * 0.8)


# ── Rounds ───────────────────────────────────────────────────

@dataclass
class Round:
    start_index: int
    end_index: int
    token_count: Optional[int] = None


def identify_rounds(history: List[Message]) -> List[Round]:
    """Group history into rounds, each opened by a user message that is not a tool result.

    ``token_count`` is the last provider-reported total inside the round.
    Messages before the first such user message belong to no round.
    """
    rounds: List[Round] = []
    current: Optional[Round] = None
    for i, message in enumerate(history):
        if message.is_plain_user:
            if current is not None:
                current.end_index = i
                rounds.append(current)
            current = Round(start_index=i, end_index=len(history))
        elif message.role == ROLE_MODEL and current is not None:
            if message.usage is not None and message.usage.total_token_count is not None:
                current.token_count = message.usage.total_token_count
    if current is not None:
        current.end_index = len(history)
        rounds.append(current)
    return rounds


def find_last_summary_index(history: List[Message]) -> int:
    for i in range(len(history) - 1, -1, -1):
        if history[i].is_summary:
            return i
    return -1


def _last_plain_user_index(history: List[Message]) -> int:
    for i in range(len(history) - 1, -1, -1):
        if history[i].is_plain_user:
            return i
    return -1


# ── Thought policy ───────────────────────────────────────────

def _history_thought_window(history: List[Message], rounds_kept: int) -> Tuple[int, int]:
    """Index range ``[lo, hi)`` of past rounds whose reasoning may still be sent."""
    current_start = _last_plain_user_index(history)
    if rounds_kept == 0:
        return len(history), -1
    lo = 0
    if rounds_kept > 0:
        starts = [i for i, m in enumerate(history) if m.is_plain_user]
        skip = len(starts) - 1 - rounds_kept
        if skip > 0:
            lo = starts[skip]
    return lo, current_start


@dataclass
class _ThoughtPolicy:
    thoughts: bool
    signatures: bool


def _policy_at(index: int, current_start: int, window: Tuple[int, int], config: ProviderConfig) -> _ThoughtPolicy:
    if index >= current_start:
        return _ThoughtPolicy(config.send_current_thoughts, config.send_current_thought_signatures)
    lo, hi = window
    if lo <= index < hi:
        return _ThoughtPolicy(config.send_history_thoughts, config.send_history_thought_signatures)
    return _ThoughtPolicy(False, False)


def _has_thoughts(message: Message) -> bool:
    return any(isinstance(p, TextPart) and p.thought for p in message.parts)


def _has_signatures(message: Message) -> bool:
    return any(isinstance(p, (ThoughtSignaturePart, RedactedThinkingPart)) for p in message.parts)


def build_history_for_api(history: List[Message], start_index: int, config: ProviderConfig) -> List[Message]:
    """Copy ``history[start_index:]`` with reasoning filtered by the channel's policy.

    The newest round follows the ``send_current_*`` switches; older rounds
    follow ``send_history_*`` but only inside the last
    ``history_thinking_rounds`` rounds (-1 means all of them).  Messages
    left without parts are dropped.
    """
    current_start = _last_plain_user_index(history)
    window = _history_thought_window(history, config.history_thinking_rounds)
    result: List[Message] = []
    for index in range(max(start_index, 0), len(history)):
        message = history[index]
        policy = _policy_at(index, current_start, window, config)
        clone = message.copy()
        parts = []
        for part in clone.parts:
            if isinstance(part, TextPart) and part.thought and not policy.thoughts:
                continue
            if isinstance(part, (ThoughtSignaturePart, RedactedThinkingPart)) and not policy.signatures:
                continue
            parts.append(part)
        clone.parts = parts
        if clone.parts:
            result.append(clone)
    return result


# ── Engine ───────────────────────────────────────────────────

@dataclass
class TrimInfo:
    history: List[Message] = field(default_factory=list)
    trim_start_index: int = 0
    estimated_tokens: int = 0
    threshold: Optional[int] = None


class ContextTrimEngine:
    """Chooses where the sent history starts for one conversation."""

    def __init__(self, store, prompts=None):
        self.store = store
        self.prompts = prompts

    def _prompt_tokens(self, config: ProviderConfig) -> int:
        tokens = estimate_tokens(config.system_instruction or "")
        if self.prompts is not None:
            tokens += estimate_tokens(self.prompts.get_system_prompt() or "")
            for message in self.prompts.get_dynamic_context_messages() or []:
                tokens += estimate_message_tokens(message)
        return tokens

    def message_token_counts(self, history: List[Message], config: ProviderConfig) -> List[int]:
        """Per-message token estimate, with reasoning tokens counted only where they will be sent."""
        current_start = _last_plain_user_index(history)
        window = _history_thought_window(history, config.history_thinking_rounds)
        counts: List[int] = []
        for index, message in enumerate(history):
            if message.role == ROLE_USER:
                if message.estimated_token_count is not None:
                    counts.append(message.estimated_token_count)
                else:
                    counts.append(estimate_message_tokens(message))
            elif message.usage is not None:
                policy = _policy_at(index, current_start, window, config)
                include = (policy.thoughts and _has_thoughts(message)) or (
                    policy.signatures and _has_signatures(message)
                )
                tokens = message.usage.candidates_token_count or 0
                if include:
                    tokens += message.usage.thoughts_token_count or 0
                counts.append(tokens)
            else:
                counts.append(estimate_message_tokens(message))
        return counts

    async def clear_trim_state(self, conversation_id: str) -> None:
        await self.store.set_custom_metadata(conversation_id, TRIM_STATE_KEY, None)

    async def _persist(self, conversation_id: str, index: Optional[int], previous: Any) -> None:
        if previous != index:
            await self.store.set_custom_metadata(conversation_id, TRIM_STATE_KEY, index)

    async def get_history_with_trim_info(self, conversation_id: str, config: ProviderConfig) -> TrimInfo:
        history = await self.store.get_history(conversation_id)
        if not history:
            return TrimInfo()

        summary_index = find_last_summary_index(history)
        # The summary message itself is kept; it stands in for what it replaced.
        floor = summary_index if summary_index >= 0 else 0

        if not config.context_threshold_enabled:
            return TrimInfo(history=build_history_for_api(history, floor, config), trim_start_index=floor)

        counts = self.message_token_counts(history, config)
        prompt_tokens = self._prompt_tokens(config)
        total = prompt_tokens + sum(counts[floor:])
        max_tokens = config.max_context_tokens or DEFAULT_MAX_CONTEXT_TOKENS
        threshold = calculate_threshold(config.context_threshold, max_tokens)
        persisted = await self.store.get_custom_metadata(conversation_id, TRIM_STATE_KEY)

        if total <= threshold:
            if persisted is not None:
                _log.info("trim relaxed: conv=%s total=%d threshold=%d", conversation_id, total, threshold)
                await self.clear_trim_state(conversation_id)
            return TrimInfo(
                history=build_history_for_api(history, floor, config),
                trim_start_index=floor,
                estimated_tokens=total,
                threshold=threshold,
            )

        starts = [r.start_index for r in identify_rounds(history) if r.start_index >= floor]
        if len(starts) <= 1:
            if persisted is not None:
                await self.clear_trim_state(conversation_id)
            return TrimInfo(
                history=build_history_for_api(history, floor, config),
                trim_start_index=floor,
                estimated_tokens=total,
                threshold=threshold,
            )

        def remaining_from(index: int) -> int:
            return total - sum(counts[floor:index])

        start: Optional[int] = None
        if isinstance(persisted, int) and not isinstance(persisted, bool):
            if floor <= persisted <= starts[-1] and remaining_from(persisted) <= threshold:
                start = persisted
            else:
                _log.debug("persisted trim index %s is stale (floor=%d len=%d)", persisted, floor, len(history))

        if start is None:
            extra_cut = calculate_threshold(config.context_trim_extra_cut or 0, max_tokens)
            target = max(0, threshold - extra_cut)
            # The newest round always survives, even when it alone is over budget.
            start = starts[-1]
            for candidate in starts[1:]:
                if remaining_from(candidate) <= target:
                    start = candidate
                    break
            _log.info(
                "trim recomputed: conv=%s total=%d threshold=%d target=%d start=%d",
                conversation_id, total, threshold, target, start,
            )

        # Some wire formats reject a history that opens with a model turn.
        if history[start].role != ROLE_USER:
            for i in range(start + 1, len(history)):
                if history[i].role == ROLE_USER:
                    start = i
                    break

        await self._persist(conversation_id, start, persisted)
        return TrimInfo(
            history=build_history_for_api(history, start, config),
            trim_start_index=start,
            estimated_tokens=remaining_from(start),
            threshold=threshold,
        )

    async def get_trimmed_history(self, conversation_id: str, config: ProviderConfig) -> List[Message]:
        info = await self.get_history_with_trim_info(conversation_id, config)
        return info.history
