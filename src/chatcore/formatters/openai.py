"""OpenAI chat-completions wire format (and compatible endpoints)."""

import json
import time
from typing import Any, Dict, List, Optional, Union

from ..config import ProviderConfig
from ..errors import ChannelError, ErrorType
from ..logger import get_logger
from ..messages import (
    ROLE_MODEL,
    FileDataPart,
    FunctionCallPart,
    FunctionResponsePart,
    InlineDataPart,
    Message,
    Part,
    TextPart,
    ToolDeclaration,
)
from ..tool_formats import has_embedded_tool_calls, parse_embedded_tool_calls
from .base import (
    GenerateRequest,
    GenerateResponse,
    HttpRequest,
    StreamChunk,
    apply_custom_body,
    compose_system_instruction,
    data_uri,
    effective_model,
    finish_headers,
    is_media,
    join_url,
    render_tool_parts_as_text,
    usage_from_openai,
    with_dynamic_context,
)

_log = get_logger("formatters.openai")


def _message_content(texts: List[str], media: List[Part]) -> Union[str, List[Dict[str, Any]]]:
    """Plain string for text-only turns, a content array once media is attached."""
    if not media:
        return "\n".join(texts)
    content: List[Dict[str, Any]] = [{"type": "text", "text": t} for t in texts if t]
    for part in media:
        if isinstance(part, InlineDataPart):
            content.append({"type": "image_url", "image_url": {"url": data_uri(part)}})
        elif isinstance(part, FileDataPart):
            content.append({"type": "image_url", "image_url": {"url": part.uri}})
    return content


class OpenAIAdapter:
    provider_type = "openai"

    # ── Request ──────────────────────────────────────────────

    def build_request(
        self, request: GenerateRequest, config: ProviderConfig, tools: List[ToolDeclaration]
    ) -> HttpRequest:
        mode = config.tool_mode
        history = with_dynamic_context(request.history, request.dynamic_context_messages)

        messages: List[Dict[str, Any]] = []
        system = compose_system_instruction(request, config, tools)
        if system:
            messages.append({"role": "system", "content": system})

        for message in history:
            if mode == "function_call":
                messages.extend(self._native_messages(message))
            else:
                messages.extend(self._text_mode_messages(message, mode))

        body: Dict[str, Any] = {"model": effective_model(request, config), "messages": messages}
        if tools and mode == "function_call":
            body["tools"] = self.convert_tools(tools)
        body.update(self._generation_config(config))
        body["stream"] = config.stream
        if config.stream:
            body["stream_options"] = {"include_usage": True}

        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        url = join_url(config.url, "chat/completions")
        _log.debug("openai request: url=%s messages=%d mode=%s", url, len(messages), mode)
        return HttpRequest(
            url=url,
            body=apply_custom_body(body, config.custom_body, config.custom_body_enabled),
            headers=finish_headers(headers, config),
            timeout=config.timeout,
            stream=config.stream,
        )

    @staticmethod
    def _native_messages(message: Message) -> List[Dict[str, Any]]:
        role = "assistant" if message.role == ROLE_MODEL else "user"
        # Reasoning text has no portable signature here, so it is never replayed.
        texts = [p.text for p in message.parts if isinstance(p, TextPart) and not p.thought]
        calls = [p for p in message.parts if isinstance(p, FunctionCallPart)]
        responses = [p for p in message.parts if isinstance(p, FunctionResponsePart)]
        media = [p for p in message.parts if is_media(p)]

        if calls:
            stamp = int(time.time() * 1000)
            return [{
                "role": "assistant",
                "content": "\n".join(texts) if texts else None,
                "tool_calls": [
                    {
                        "id": call.id or f"call_{stamp}_{i}",
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.args or {}, ensure_ascii=False),
                        },
                    }
                    for i, call in enumerate(calls)
                ],
            }]
        if responses:
            return [
                {
                    "role": "tool",
                    "tool_call_id": resp.id or f"call_{int(time.time() * 1000)}",
                    "name": resp.name,
                    "content": json.dumps(resp.response, ensure_ascii=False, default=str),
                }
                for resp in responses
            ]
        if texts or media:
            return [{"role": role, "content": _message_content(texts, media)}]
        return []

    @staticmethod
    def _text_mode_messages(message: Message, mode: str) -> List[Dict[str, Any]]:
        parts = render_tool_parts_as_text(message, mode)
        texts = [p.text for p in parts if isinstance(p, TextPart) and not p.thought and p.text]
        media = [p for p in parts if is_media(p)]
        if message.is_function_response:
            role = "user"
        else:
            role = "assistant" if message.role == ROLE_MODEL else "user"
        if not texts and not media:
            return []
        return [{"role": role, "content": _message_content(texts, media)}]

    @staticmethod
    def _generation_config(config: ProviderConfig) -> Dict[str, Any]:
        gen: Dict[str, Any] = {}
        for key in ("temperature", "max_tokens", "top_p", "frequency_penalty", "presence_penalty"):
            value = config.option(key)
            if value is not None:
                gen[key] = value
        stop = config.options.get("stop")
        if stop:
            gen["stop"] = stop
        if config.options.get("n") is not None:
            gen["n"] = config.options["n"]

        reasoning = config.option("reasoning")
        if isinstance(reasoning, dict):
            api_reasoning: Dict[str, Any] = {}
            if reasoning.get("effort") and reasoning["effort"] != "none":
                api_reasoning["effort"] = reasoning["effort"]
            if reasoning.get("summaryEnabled") and reasoning.get("summary"):
                api_reasoning["summary"] = reasoning["summary"]
            if api_reasoning:
                gen["reasoning"] = api_reasoning
        return gen

    def convert_tools(self, tools: List[ToolDeclaration]) -> Any:
        if not tools:
            return None
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                    "strict": False,
                },
            }
            for t in tools
        ]

    # ── Response ─────────────────────────────────────────────

    def parse_response(self, data: Dict[str, Any]) -> GenerateResponse:
        choices = (data or {}).get("choices") or []
        if not choices:
            raise ChannelError(ErrorType.PARSE_ERROR, "Invalid OpenAI response: no choices", data)
        choice = choices[0]
        wire = choice.get("message") or {}

        parts: List[Part] = []
        if wire.get("reasoning_content"):
            parts.append(TextPart(text=wire["reasoning_content"], thought=True))

        tool_calls = wire.get("tool_calls") or []
        content = wire.get("content")
        if isinstance(content, list):
            content = "".join(c.get("text", "") for c in content if isinstance(c, dict))

        if tool_calls:
            if content:
                parts.append(TextPart(text=content))
            for call in tool_calls:
                if call.get("type", "function") != "function":
                    continue
                fn = call.get("function") or {}
                parts.append(FunctionCallPart(
                    name=fn.get("name", ""), args=self._decode_args(fn.get("arguments")), id=call.get("id"),
                ))
        elif content:
            if has_embedded_tool_calls(content):
                parts.extend(parse_embedded_tool_calls(content))
            elif content.strip():
                parts.append(TextPart(text=content))

        message = Message(
            role=ROLE_MODEL,
            parts=parts,
            usage=usage_from_openai(data.get("usage")),
            model_version=data.get("model"),
        )
        return GenerateResponse(content=message, finish_reason=choice.get("finish_reason"), model=data.get("model"), raw=data)

    @staticmethod
    def _decode_args(raw: Optional[str]) -> Dict[str, Any]:
        try:
            args = json.loads(raw or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}
        return args if isinstance(args, dict) else {}

    def parse_stream_chunk(self, event: Dict[str, Any]) -> StreamChunk:
        if event.get("error"):
            raise ChannelError(ErrorType.API_ERROR, "OpenAI stream error", event)

        choices = event.get("choices") or []
        choice = choices[0] if choices else None
        parts: List[Part] = []

        if choice:
            delta = choice.get("delta") or {}
            if delta.get("reasoning_content"):
                parts.append(TextPart(text=delta["reasoning_content"], thought=True))
            if delta.get("content"):
                parts.append(TextPart(text=delta["content"]))
            for call in delta.get("tool_calls") or []:
                fn = call.get("function")
                if not fn:
                    continue
                parts.append(FunctionCallPart(
                    name=fn.get("name") or "",
                    args={},
                    id=call.get("id"),
                    partial_args=fn.get("arguments") or "",
                    index=call.get("index"),
                ))

        finish_reason = choice.get("finish_reason") if choice else None
        usage = event.get("usage")
        chunk = StreamChunk(delta=parts, done=bool(finish_reason or usage))
        if usage:
            chunk.usage = usage_from_openai(usage)
        if finish_reason:
            chunk.finish_reason = finish_reason
        if event.get("model"):
            chunk.model_version = event["model"]
        return chunk
