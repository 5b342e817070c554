"""Conversation-level entry points.

Every flow validates the channel config, edits the stored history as the
operation requires, and then hands over to the tool iteration loop.
One-shot calls return ``{"success": True, "content": ...}`` or
``{"success": False, "error": {"code", "message"}}``; the ``*_stream``
variants yield loop events and report failures as an ``ErrorEvent``.
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .cancellation import CancellationToken
from .config import ProviderConfig
from .context_trim import estimate_message_tokens, find_last_summary_index, identify_rounds
from .errors import ChannelError, ErrorCode, ErrorType, format_error
from .formatters.base import GenerateRequest
from .logger import get_logger, log_exception
from .messages import (
    ROLE_MODEL,
    ROLE_USER,
    Message,
    Part,
    TextPart,
    UsageMetadata,
    user_message,
)
from .tool_call_parser import extract_tool_calls
from .tool_execution import ToolExecutionResult, rejected_response
from .tool_loop import (
    CancelledEvent,
    CheckpointsEvent,
    ErrorEvent,
    LoopEvent,
    ToolIterationEvent,
    ToolIterationLoop,
    ToolsExecutingEvent,
    max_iterations_error,
)

_log = get_logger("chat")

USER_CHECKPOINT = "message:user"
SUMMARY_PREFIX = "[Conversation summary]"


def _error(code: str, message: str) -> Dict[str, Any]:
    return {"success": False, "error": {"code": code, "message": message}}


class ChatService:
    """Chat, retry, edit, delete, confirm and summarize for stored conversations."""

    def __init__(self, configs, store, loop: ToolIterationLoop, settings, checkpoints=None):
        self.configs = configs
        self.store = store
        self.loop = loop
        self.settings = settings
        self.checkpoints = checkpoints

    @property
    def channel(self):
        return self.loop.channel

    async def _resolve_config(self, config_id: str) -> Tuple[Optional[ProviderConfig], Optional[Dict[str, str]]]:
        config = await self.configs.get_config(config_id)
        if config is None:
            return None, {"code": ErrorCode.CONFIG_NOT_FOUND, "message": f"Config not found: {config_id}"}
        if not config.enabled:
            return None, {"code": ErrorCode.CONFIG_DISABLED, "message": f"Config is disabled: {config_id}"}
        return config, None

    async def _user_checkpoint(self, conversation_id: str, index: int, phase: str):
        if self.checkpoints is None:
            return None
        return await self.checkpoints.create_checkpoint(conversation_id, index, USER_CHECKPOINT, phase)

    async def _add_user_message(self, conversation_id: str, parts: List[Part]) -> List[Any]:
        """Store a user turn between its before/after checkpoints; returns the checkpoints made."""
        history = await self.store.get_history(conversation_id)
        made = []
        before = await self._user_checkpoint(conversation_id, len(history), "before")
        if before is not None:
            made.append(before)
        message = Message(role=ROLE_USER, parts=list(parts))
        message.estimated_token_count = estimate_message_tokens(message)
        await self.store.add_message(conversation_id, message)
        after = await self._user_checkpoint(conversation_id, len(history), "after")
        if after is not None:
            made.append(after)
        return made

    async def _guarded(self, conversation_id: str, events: AsyncIterator[LoopEvent]) -> AsyncIterator[LoopEvent]:
        """Re-yield loop events, turning exceptions into a terminal event."""
        try:
            async for event in events:
                yield event
        except ChannelError as e:
            if e.error_type == ErrorType.CANCELLED_ERROR:
                yield CancelledEvent(conversation_id)
                return
            _log.error("channel error: conv=%s %s", conversation_id, e.message)
            yield ErrorEvent(conversation_id, error=format_error(e))
        except Exception as e:
            log_exception(_log, f"chat flow failed: conv={conversation_id}", e)
            yield ErrorEvent(conversation_id, error=format_error(e))

    async def _run_one_shot(
        self, conversation_id: str, config: ProviderConfig, cancel_token: Optional[CancellationToken]
    ) -> Dict[str, Any]:
        result = await self.loop.run_non_stream_loop(conversation_id, config, cancel_token)
        if result.exceeded_max_iterations:
            return {"success": False, "error": max_iterations_error(self.loop.iteration_limit(None))}
        out: Dict[str, Any] = {"success": True, "content": result.content}
        if result.pending_tool_calls:
            out["pending_tool_calls"] = result.pending_tool_calls
        if result.cancelled:
            out["cancelled"] = True
        return out

    # ── Chat ─────────────────────────────────────────────────

    async def chat(
        self,
        conversation_id: str,
        config_id: str,
        message: str,
        attachments: Optional[List[Part]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        try:
            config, error = await self._resolve_config(config_id)
            if error:
                return {"success": False, "error": error}
            await self._add_user_message(conversation_id, list(attachments or []) + [TextPart(text=message)])
            return await self._run_one_shot(conversation_id, config, cancel_token)
        except Exception as e:
            log_exception(_log, f"chat failed: conv={conversation_id}", e)
            return {"success": False, "error": format_error(e)}

    async def chat_stream(
        self,
        conversation_id: str,
        config_id: str,
        message: str,
        attachments: Optional[List[Part]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[LoopEvent]:
        async def events():
            config, error = await self._resolve_config(config_id)
            if error:
                yield ErrorEvent(conversation_id, error=error)
                return
            made = await self._add_user_message(conversation_id, list(attachments or []) + [TextPart(text=message)])
            if made:
                yield CheckpointsEvent(conversation_id, checkpoints=made)
            async for event in self.loop.run_tool_loop(conversation_id, config, cancel_token):
                yield event

        async for event in self._guarded(conversation_id, events()):
            yield event

    # ── Tool confirmation ────────────────────────────────────

    async def confirm_tools(
        self,
        conversation_id: str,
        config_id: str,
        decisions: Dict[str, bool],
        annotation: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[LoopEvent]:
        """Resume a loop paused for confirmation.

        ``decisions`` maps call id to approval.  Calls missing from it run
        if their tool is auto-executable and are rejected otherwise.
        """
        async def events():
            config, error = await self._resolve_config(config_id)
            if error:
                yield ErrorEvent(conversation_id, error=error)
                return
            history = await self.store.get_history(conversation_id)
            if not history:
                yield ErrorEvent(conversation_id, error={"code": ErrorCode.NO_HISTORY, "message": "Conversation has no history"})
                return
            last = history[-1]
            if last.role != ROLE_MODEL:
                yield ErrorEvent(conversation_id, error={"code": ErrorCode.INVALID_STATE, "message": "Last message is not a model message"})
                return
            calls = extract_tool_calls(last)
            if not calls:
                yield ErrorEvent(conversation_id, error={"code": ErrorCode.NO_FUNCTION_CALLS, "message": "Last message has no function calls"})
                return

            def approved(call) -> bool:
                if call.id in decisions:
                    return bool(decisions[call.id])
                return self.settings.is_tool_auto_exec(call.name)

            confirmed = [c for c in calls if approved(c)]
            executed = ToolExecutionResult()
            if confirmed:
                yield ToolsExecutingEvent(conversation_id, content=last, pending_tool_calls=confirmed)
                executed = await self.loop.execute_calls(conversation_id, confirmed, config, cancel_token)

            # Responses follow the original call order.
            by_id = {p.id: p for p in executed.response_parts}
            results_by_id = {r["id"]: r for r in executed.tool_results}
            combined = ToolExecutionResult(
                checkpoints=list(executed.checkpoints),
                multimodal_attachments=list(executed.multimodal_attachments),
            )
            for call in calls:
                if call.id in by_id:
                    combined.response_parts.append(by_id[call.id])
                    combined.tool_results.append(results_by_id[call.id])
                else:
                    combined.add(call, rejected_response())

            await self.loop.append_function_responses(conversation_id, combined.message_parts())
            if annotation and annotation.strip():
                note = user_message(annotation.strip())
                note.estimated_token_count = estimate_message_tokens(note)
                await self.store.add_message(conversation_id, note)

            yield ToolIterationEvent(
                conversation_id, content=last, tool_results=combined.tool_results, checkpoints=combined.checkpoints,
            )
            if combined.cancelled:
                yield CancelledEvent(conversation_id)
                return
            async for event in self.loop.run_tool_loop(conversation_id, config, cancel_token):
                yield event

        async for event in self._guarded(conversation_id, events()):
            yield event

    # ── Retry ────────────────────────────────────────────────

    async def _answer_orphaned_calls(
        self, conversation_id: str, config: ProviderConfig, cancel_token: Optional[CancellationToken]
    ) -> Optional[ToolExecutionResult]:
        """Run the calls of a trailing model message that never got responses."""
        history = await self.store.get_history(conversation_id)
        if not history or history[-1].role != ROLE_MODEL:
            return None
        last = history[-1]
        calls = extract_tool_calls(last)
        if not calls or last.text().strip():
            return None
        _log.info("answering %d orphaned call(s): conv=%s", len(calls), conversation_id)
        result = await self.loop.execute_calls(conversation_id, calls, config, cancel_token)
        await self.loop.append_function_responses(conversation_id, result.message_parts())
        return result

    async def retry(
        self, conversation_id: str, config_id: str, cancel_token: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        try:
            config, error = await self._resolve_config(config_id)
            if error:
                return {"success": False, "error": error}
            if not await self.store.get_history(conversation_id):
                return _error(ErrorCode.NO_HISTORY, "Conversation has no history")
            await self._answer_orphaned_calls(conversation_id, config, cancel_token)
            return await self._run_one_shot(conversation_id, config, cancel_token)
        except Exception as e:
            log_exception(_log, f"retry failed: conv={conversation_id}", e)
            return {"success": False, "error": format_error(e)}

    async def retry_stream(
        self, conversation_id: str, config_id: str, cancel_token: Optional[CancellationToken] = None
    ) -> AsyncIterator[LoopEvent]:
        async def events():
            config, error = await self._resolve_config(config_id)
            if error:
                yield ErrorEvent(conversation_id, error=error)
                return
            history = await self.store.get_history(conversation_id)
            if not history:
                yield ErrorEvent(conversation_id, error={"code": ErrorCode.NO_HISTORY, "message": "Conversation has no history"})
                return
            orphaned = await self._answer_orphaned_calls(conversation_id, config, cancel_token)
            if orphaned is not None:
                yield ToolIterationEvent(
                    conversation_id, content=history[-1],
                    tool_results=orphaned.tool_results, checkpoints=orphaned.checkpoints,
                )
            async for event in self.loop.run_tool_loop(conversation_id, config, cancel_token):
                yield event

        async for event in self._guarded(conversation_id, events()):
            yield event

    # ── Edit / delete ────────────────────────────────────────

    async def _apply_edit(self, conversation_id: str, index: int, text: str) -> Tuple[Optional[Dict[str, str]], List[Any]]:
        """Replace the text of user message ``index`` and drop everything after it."""
        history = await self.store.get_history(conversation_id)
        if not 0 <= index < len(history):
            return {"code": ErrorCode.MESSAGE_NOT_FOUND, "message": f"Message not found at index {index}"}, []
        target = history[index]
        if target.role != ROLE_USER:
            return {"code": ErrorCode.INVALID_MESSAGE_ROLE, "message": f"Can only edit user messages, got {target.role}"}, []

        before = await self._user_checkpoint(conversation_id, index, "before")
        # Attachments survive the edit; the text is replaced.
        kept = [p for p in target.parts if not isinstance(p, TextPart)]
        edited = Message(role=ROLE_USER, parts=kept + [TextPart(text=text)])
        edited.estimated_token_count = estimate_message_tokens(edited)
        await self.store.update_message(conversation_id, index, edited)
        removed = await self.store.delete_to_message(conversation_id, index + 1)
        await self.loop.clear_trim_state(conversation_id)
        after = await self._user_checkpoint(conversation_id, index, "after")
        _log.info("edited message %d: conv=%s removed=%d", index, conversation_id, removed)
        return None, [c for c in (before, after) if c is not None]

    async def edit_and_retry(
        self,
        conversation_id: str,
        config_id: str,
        message_index: int,
        new_message: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        try:
            config, error = await self._resolve_config(config_id)
            if error:
                return {"success": False, "error": error}
            error, _ = await self._apply_edit(conversation_id, message_index, new_message)
            if error:
                return {"success": False, "error": error}
            return await self._run_one_shot(conversation_id, config, cancel_token)
        except Exception as e:
            log_exception(_log, f"edit failed: conv={conversation_id}", e)
            return {"success": False, "error": format_error(e)}

    async def edit_and_retry_stream(
        self,
        conversation_id: str,
        config_id: str,
        message_index: int,
        new_message: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[LoopEvent]:
        async def events():
            config, error = await self._resolve_config(config_id)
            if error:
                yield ErrorEvent(conversation_id, error=error)
                return
            error, made = await self._apply_edit(conversation_id, message_index, new_message)
            if error:
                yield ErrorEvent(conversation_id, error=error)
                return
            if made:
                yield CheckpointsEvent(conversation_id, checkpoints=made)
            async for event in self.loop.run_tool_loop(conversation_id, config, cancel_token):
                yield event

        async for event in self._guarded(conversation_id, events()):
            yield event

    async def delete_to_message(self, conversation_id: str, target_index: int) -> Dict[str, Any]:
        """Delete the message at ``target_index`` and everything after it."""
        try:
            deleted = await self.store.delete_to_message(conversation_id, target_index)
            await self.loop.clear_trim_state(conversation_id)
            return {"success": True, "deleted_count": deleted}
        except Exception as e:
            log_exception(_log, f"delete failed: conv={conversation_id}", e)
            return {"success": False, "error": format_error(e)}

    # ── Summarize ────────────────────────────────────────────

    async def summarize_context(
        self,
        conversation_id: str,
        config_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """Replace everything before the most recent rounds with a summary message."""
        try:
            options = self.settings.summarize
            keep = max(0, options.keep_recent_rounds)

            actual_id, model = config_id, None
            if options.config_id:
                dedicated = await self.configs.get_config(options.config_id)
                if dedicated is not None and dedicated.enabled:
                    actual_id, model = options.config_id, options.model or None
                else:
                    _log.info("summarize config %s unavailable; using %s", options.config_id, config_id)
            config, error = await self._resolve_config(actual_id)
            if error:
                return {"success": False, "error": error}

            history = await self.store.get_history(conversation_id)
            summary_at = find_last_summary_index(history)
            offset = summary_at + 1 if summary_at >= 0 else 0
            rounds = identify_rounds(history[offset:])
            if len(rounds) <= keep:
                return _error(
                    ErrorCode.NOT_ENOUGH_ROUNDS,
                    f"Only {len(rounds)} round(s) after the last summary; {keep} are kept",
                )

            to_summarize = len(rounds) - keep
            end = offset + rounds[to_summarize].start_index if keep else len(history)
            # Messages before the last summary were already folded into it.
            older = history[max(summary_at, 0):end]

            request = GenerateRequest(
                config_id=actual_id,
                history=older + [user_message(options.prompt)],
                cancel_token=cancel_token,
                skip_tools=True,
                model_override=model,
            )
            response = await self.channel.generate(request)
            content = response.content
            summary_text = "\n".join(
                p.text for p in content.parts if isinstance(p, TextPart) and not p.thought
            ).strip()
            if not summary_text:
                return _error(ErrorCode.EMPTY_SUMMARY, "The model returned an empty summary")

            # A new summary covers all earlier ones.
            stale = [i for i, m in enumerate(history[:end]) if m.is_summary]
            for i in reversed(stale):
                await self.store.delete_message(conversation_id, i)
            insert_at = end - len(stale)

            usage = content.usage
            summary = Message(
                role=ROLE_USER,
                parts=[TextPart(text=f"{SUMMARY_PREFIX}\n\n{summary_text}")],
                is_summary=True,
                usage=UsageMetadata(
                    prompt_token_count=usage.prompt_token_count if usage else None,
                    candidates_token_count=usage.candidates_token_count if usage else None,
                ),
            )
            summary.estimated_token_count = estimate_message_tokens(summary)
            await self.store.insert_message(conversation_id, insert_at, summary)
            await self.loop.clear_trim_state(conversation_id)
            _log.info("summarized %d message(s): conv=%s insert_at=%d", len(older), conversation_id, insert_at)
            return {
                "success": True,
                "summary": summary,
                "summarized_message_count": len(older),
            }
        except ChannelError as e:
            _log.error("summarize failed: conv=%s %s", conversation_id, e.message)
            return {"success": False, "error": format_error(e)}
        except Exception as e:
            log_exception(_log, f"summarize failed: conv={conversation_id}", e)
            return {"success": False, "error": format_error(e)}
