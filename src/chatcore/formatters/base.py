"""Boundary contract between the tool loop and the provider adapters.

Every adapter implements the four operations of ``ProtocolAdapter``.  The
adapters are independent classes; shared translation steps live here as
plain functions.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from ..cancellation import CancellationToken
from ..config import ProviderConfig
from ..messages import (
    FileDataPart,
    FunctionCallPart,
    FunctionResponsePart,
    InlineDataPart,
    Message,
    Part,
    TextPart,
    ThoughtSignaturePart,
    ToolDeclaration,
    UsageMetadata,
)
from ..tool_formats import format_tool_call, format_tool_result, render_tools_prompt

USER_REQUEST_PLACEHOLDER = "{{$USER_REQUEST}}"
TOOLS_PLACEHOLDER = "{{$TOOLS}}"
MCP_TOOLS_PLACEHOLDER = "{{$MCP_TOOLS}}"


@dataclass
class GenerateRequest:
    config_id: str
    history: List[Message]
    cancel_token: Optional[CancellationToken] = None
    dynamic_system_prompt: str = ""
    dynamic_context_messages: List[Message] = field(default_factory=list)
    skip_tools: bool = False
    model_override: Optional[str] = None
    mcp_tools_content: str = ""


@dataclass
class GenerateResponse:
    content: Message
    finish_reason: Optional[str] = None
    model: Optional[str] = None
    raw: Any = None


@dataclass
class StreamChunk:
    """One normalised streaming event: zero or more parts plus a done flag."""
    delta: List[Part] = field(default_factory=list)
    done: bool = False
    usage: Optional[UsageMetadata] = None
    finish_reason: Optional[str] = None
    model_version: Optional[str] = None
    thinking_start_time: Optional[float] = None


@dataclass
class HttpRequest:
    url: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    timeout: Optional[float] = None
    stream: bool = False


class ProtocolAdapter(Protocol):
    provider_type: str

    def build_request(
        self, request: GenerateRequest, config: ProviderConfig, tools: List[ToolDeclaration]
    ) -> HttpRequest:
        ...

    def parse_response(self, data: Dict[str, Any]) -> GenerateResponse:
        ...

    def parse_stream_chunk(self, event: Dict[str, Any]) -> StreamChunk:
        ...

    def convert_tools(self, tools: List[ToolDeclaration]) -> Any:
        ...


# ── Request helpers ──────────────────────────────────────────

def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def effective_model(request: GenerateRequest, config: ProviderConfig) -> str:
    return request.model_override or config.model


def compose_system_instruction(
    request: GenerateRequest, config: ProviderConfig, tools: List[ToolDeclaration]
) -> str:
    """System text: configured instruction, dynamic prompt, and tool text for text modes."""
    system = config.system_instruction or ""
    if request.dynamic_system_prompt:
        system = f"{system}\n\n{request.dynamic_system_prompt}" if system else request.dynamic_system_prompt

    tools_content = ""
    if tools and config.tool_mode in ("xml", "json"):
        tools_content = render_tools_prompt(config.tool_mode, tools)

    if TOOLS_PLACEHOLDER in system or MCP_TOOLS_PLACEHOLDER in system:
        system = system.replace(TOOLS_PLACEHOLDER, tools_content)
        system = system.replace(MCP_TOOLS_PLACEHOLDER, request.mcp_tools_content or "")
    elif tools_content:
        system = f"{system}\n\n{tools_content}" if system else tools_content
    return system


def last_user_text(history: List[Message]) -> Optional[str]:
    for message in reversed(history):
        if message.is_plain_user:
            texts = [p.text for p in message.parts if isinstance(p, TextPart)]
            if texts:
                return "\n".join(texts)
    return None


def with_dynamic_context(history: List[Message], dynamic: List[Message]) -> List[Message]:
    """Append request-only context messages, expanding ``{{$USER_REQUEST}}``."""
    if not dynamic:
        return list(history)
    user_text = last_user_text(history)
    replacement = f"====\n\nUSER REQUEST\n\n{user_text}" if user_text else ""
    expanded = []
    for message in dynamic:
        clone = copy.deepcopy(message)
        for part in clone.parts:
            if isinstance(part, TextPart):
                part.text = part.text.replace(USER_REQUEST_PLACEHOLDER, replacement)
        expanded.append(clone)
    return list(history) + expanded


def apply_custom_body(body: Dict[str, Any], custom: Dict[str, Any], enabled: bool) -> Dict[str, Any]:
    """Deep-merge ``custom`` into ``body``; nested dicts merge, everything else replaces."""
    if not enabled or not custom:
        return body

    def merge(target: Dict[str, Any], extra: Dict[str, Any]):
        for key, value in extra.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                merge(target[key], value)
            else:
                target[key] = copy.deepcopy(value)

    merged = copy.deepcopy(body)
    merge(merged, custom)
    return merged


def finish_headers(headers: Dict[str, str], config: ProviderConfig) -> Dict[str, str]:
    headers.update(config.enabled_headers())
    return headers


# ── History helpers ──────────────────────────────────────────

def signature_for(message: Message, provider: str) -> Optional[str]:
    for part in message.parts:
        if isinstance(part, ThoughtSignaturePart) and part.signatures.get(provider):
            return part.signatures[provider]
    return None


def render_tool_parts_as_text(message: Message, mode: str) -> List[Part]:
    """Rewrite function calls/responses as text for the xml/json tool modes.

    Media nested in a function response is lifted out as sibling parts,
    since a text tool result cannot carry binary data.
    """
    out: List[Part] = []
    for part in message.parts:
        if isinstance(part, FunctionCallPart):
            out.append(TextPart(text=format_tool_call(mode, part.name, part.args)))
        elif isinstance(part, FunctionResponsePart):
            out.append(TextPart(text=format_tool_result(mode, part.name, part.response)))
            out.extend(part.parts)
        else:
            out.append(part)
    return out


def data_uri(part: InlineDataPart) -> str:
    return f"data:{part.mime_type};base64,{part.data}"


def is_media(part: Part) -> bool:
    return isinstance(part, (InlineDataPart, FileDataPart))


# ── Response helpers ─────────────────────────────────────────

def usage_from_openai(usage: Optional[Dict[str, Any]]) -> Optional[UsageMetadata]:
    """Chat-completions usage: reasoning tokens are split out of completion tokens."""
    if not usage:
        return None
    completion = usage.get("completion_tokens") or 0
    reasoning = (usage.get("completion_tokens_details") or {}).get("reasoning_tokens") or 0
    candidates = completion - reasoning
    return UsageMetadata(
        prompt_token_count=usage.get("prompt_tokens"),
        candidates_token_count=candidates if candidates > 0 else None,
        total_token_count=usage.get("total_tokens"),
        thoughts_token_count=reasoning if reasoning > 0 else None,
    )
