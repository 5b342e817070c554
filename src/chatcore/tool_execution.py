"""Tool dispatch for one model turn."""

import copy
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .cancellation import CancellationToken, is_cancelled
from .config import ProviderConfig
from .logger import get_logger, log_exception
from .messages import FunctionResponsePart, InlineDataPart, Part, ToolCall
from .protocols import CheckpointRecord
from .tool_registry import ToolContext

_log = get_logger("tools")

MCP_PREFIX = "mcp__"
BATCH_CHECKPOINT_NAME = "tool_batch"


@dataclass
class MultimodalCapability:
    """What binary tool output the active channel can take back."""
    supports_images: bool = False
    supports_documents: bool = False


def get_multimodal_capability(provider_type: str, tool_mode: str, enabled: bool) -> MultimodalCapability:
    """Native tool results can nest media for gemini and anthropic only.

    Chat-completions style endpoints require the tool result to be a string,
    so native mode there cannot carry images.  The text tool modes always
    can, by sending the media as a following user message.
    """
    if not enabled:
        return MultimodalCapability()
    if tool_mode in ("xml", "json"):
        return MultimodalCapability(supports_images=True, supports_documents=True)
    if provider_type in ("gemini", "anthropic"):
        return MultimodalCapability(supports_images=True, supports_documents=True)
    return MultimodalCapability()


def rejected_response() -> Dict[str, Any]:
    return {"success": False, "error": "User rejected this tool call", "rejected": True}


def cancelled_response() -> Dict[str, Any]:
    return {"success": False, "error": "Tool execution cancelled", "cancelled": True}


@dataclass
class ToolExecutionResult:
    response_parts: List[FunctionResponsePart] = field(default_factory=list)
    tool_results: List[Dict[str, Any]] = field(default_factory=list)
    checkpoints: List[CheckpointRecord] = field(default_factory=list)
    multimodal_attachments: List[InlineDataPart] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return any(r["result"].get("cancelled") for r in self.tool_results if isinstance(r.get("result"), dict))

    def message_parts(self) -> List[Part]:
        """Parts of the function-response message: attachments first, then the responses."""
        return list(self.multimodal_attachments) + list(self.response_parts)

    def extend(self, other: "ToolExecutionResult") -> None:
        self.response_parts.extend(other.response_parts)
        self.tool_results.extend(other.tool_results)
        self.checkpoints.extend(other.checkpoints)
        self.multimodal_attachments.extend(other.multimodal_attachments)

    def add(self, call: ToolCall, response: Dict[str, Any]) -> None:
        self.tool_results.append({"id": call.id, "name": call.name, "result": copy.deepcopy(response)})
        self.response_parts.append(FunctionResponsePart(name=call.name, response=response, id=call.id))


class ToolExecutionRouter:
    """Runs a batch of tool calls sequentially and shapes the results.

    A failing call never aborts the batch: unknown tools, handler
    exceptions and MCP failures all become ``{"success": False, "error": ...}``.
    """

    def __init__(self, registry=None, mcp=None, settings=None, checkpoints=None):
        self.registry = registry
        self.mcp = mcp
        self.settings = settings
        self.checkpoints = checkpoints

    def needs_confirmation(self, calls: List[ToolCall]) -> List[ToolCall]:
        if self.settings is None:
            return []
        return [call for call in calls if not self.settings.is_tool_auto_exec(call.name)]

    async def _checkpoint(self, conversation_id: str, message_index: int, name: str, phase: str) -> Optional[CheckpointRecord]:
        if self.checkpoints is None or conversation_id is None:
            return None
        return await self.checkpoints.create_checkpoint(conversation_id, message_index, name, phase)

    async def execute(
        self,
        calls: List[ToolCall],
        conversation_id: str,
        message_index: int,
        config: Optional[ProviderConfig] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ToolExecutionResult:
        result = ToolExecutionResult()
        if not calls:
            return result

        # The whole batch is one backup unit.
        checkpoint_name = calls[0].name if len(calls) == 1 else BATCH_CHECKPOINT_NAME
        before = await self._checkpoint(conversation_id, message_index, checkpoint_name, "before")
        if before is not None:
            result.checkpoints.append(before)

        tool_mode = config.tool_mode if config else "function_call"
        provider_type = config.type if config else "openai"
        multimodal_enabled = bool(config and config.multimodal_tools_enabled)
        capability = get_multimodal_capability(provider_type, tool_mode, multimodal_enabled)

        for call in calls:
            if is_cancelled(cancel_token):
                result.add(call, cancelled_response())
                continue

            t0 = time.time()
            response = await self._dispatch(call, config, capability, multimodal_enabled, cancel_token)
            _log.info(
                "tool %s (%s): success=%s elapsed=%.2fs",
                call.name, call.id, response.get("success"), time.time() - t0,
            )

            result.tool_results.append({"id": call.id, "name": call.name, "result": copy.deepcopy(response)})
            media = response.pop("multimodal", None)
            if media:
                inline = [
                    InlineDataPart(mime_type=item.get("mimeType", ""), data=item.get("data", ""), display_name=item.get("name"))
                    for item in media
                ]
                if tool_mode in ("xml", "json"):
                    result.multimodal_attachments.extend(inline)
                elif capability.supports_images or capability.supports_documents:
                    result.response_parts.append(FunctionResponsePart(name=call.name, response=response, id=call.id, parts=inline))
                    continue
                else:
                    _log.info("channel %s cannot take media in tool results; dropping %d item(s)", provider_type, len(inline))
            result.response_parts.append(FunctionResponsePart(name=call.name, response=response, id=call.id))

        after = await self._checkpoint(conversation_id, message_index, checkpoint_name, "after")
        if after is not None:
            result.checkpoints.append(after)
        return result

    async def _dispatch(
        self,
        call: ToolCall,
        config: Optional[ProviderConfig],
        capability: MultimodalCapability,
        multimodal_enabled: bool,
        cancel_token: Optional[CancellationToken],
    ) -> Dict[str, Any]:
        try:
            if call.name.startswith(MCP_PREFIX) and self.mcp is not None:
                return await self._call_mcp(call)

            tool = self.registry.get(call.name) if self.registry is not None else None
            if tool is None:
                return {"success": False, "error": f"Tool not found: {call.name}"}

            context = ToolContext(
                multimodal_enabled=multimodal_enabled,
                capability=capability,
                cancel_token=cancel_token,
                tool_id=call.id,
                tool_options=dict(config.options.get("toolOptions") or {}) if config else {},
            )
            outcome = await tool.execute(call.args, context)
            return outcome.to_response()
        except Exception as e:
            log_exception(_log, f"tool {call.name} raised", e)
            return {"success": False, "error": str(e) or f"{type(e).__name__} while executing {call.name}"}

    async def _call_mcp(self, call: ToolCall) -> Dict[str, Any]:
        pieces = call.name.split("__")
        if len(pieces) < 3:
            return {"success": False, "error": f"Invalid MCP tool name: {call.name}"}
        server_id, tool_name = pieces[1], "__".join(pieces[2:])
        outcome = await self.mcp.call_tool(server_id, tool_name, call.args)
        if not outcome.success:
            return {"success": False, "error": outcome.error or "MCP tool call failed"}
        text = "\n".join(c.get("text", "") for c in outcome.content or [] if c.get("type") == "text")
        return {"success": True, "content": text or "Tool executed successfully"}
