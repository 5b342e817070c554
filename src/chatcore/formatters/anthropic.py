"""Anthropic Messages API wire format."""

import json
import time
from typing import Any, Dict, List

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
    RedactedThinkingPart,
    TextPart,
    ThoughtSignaturePart,
    ToolDeclaration,
    UsageMetadata,
)
from ..tool_call_parser import convert_embedded_tool_calls
from .base import (
    GenerateRequest,
    GenerateResponse,
    HttpRequest,
    StreamChunk,
    apply_custom_body,
    compose_system_instruction,
    effective_model,
    finish_headers,
    is_media,
    join_url,
    render_tool_parts_as_text,
    signature_for,
    with_dynamic_context,
)

_log = get_logger("formatters.anthropic")

PROVIDER = "anthropic"
API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192
DEFAULT_THINKING_BUDGET = 10000


def _media_block(part: Part) -> Dict[str, Any]:
    if isinstance(part, InlineDataPart):
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": part.mime_type, "data": part.data},
        }
    return {"type": "image", "source": {"type": "url", "url": part.uri}}


def _content_blocks(texts: List[str], media: List[Part]) -> List[Dict[str, Any]]:
    # Images go before the text that refers to them.
    blocks = [_media_block(p) for p in media]
    blocks.extend({"type": "text", "text": t} for t in texts if t)
    return blocks


class AnthropicAdapter:
    provider_type = PROVIDER

    # ── Request ──────────────────────────────────────────────

    def build_request(
        self, request: GenerateRequest, config: ProviderConfig, tools: List[ToolDeclaration]
    ) -> HttpRequest:
        mode = config.tool_mode
        history = with_dynamic_context(request.history, request.dynamic_context_messages)

        messages: List[Dict[str, Any]] = []
        for message in history:
            wire = self._native_message(message) if mode == "function_call" else self._text_mode_message(message, mode)
            if wire:
                messages.append(wire)

        body: Dict[str, Any] = {"model": effective_model(request, config), "messages": messages}
        system = compose_system_instruction(request, config, tools)
        if system:
            body["system"] = system
        if tools and mode == "function_call":
            body["tools"] = self.convert_tools(tools)
        body.update(self._generation_config(config))
        if config.stream:
            body["stream"] = True

        headers = {"Content-Type": "application/json", "anthropic-version": API_VERSION}
        if config.api_key:
            if config.use_authorization_header:
                headers["Authorization"] = f"Bearer {config.api_key}"
            else:
                headers["x-api-key"] = config.api_key

        url = join_url(config.url, "messages")
        _log.debug("anthropic request: url=%s messages=%d mode=%s", url, len(messages), mode)
        return HttpRequest(
            url=url,
            body=apply_custom_body(body, config.custom_body, config.custom_body_enabled),
            headers=finish_headers(headers, config),
            timeout=config.timeout,
            stream=config.stream,
        )

    @staticmethod
    def _thinking_blocks(message: Message) -> List[Dict[str, Any]]:
        blocks: List[Dict[str, Any]] = []
        signature = signature_for(message, PROVIDER)
        thoughts = [p.text for p in message.parts if isinstance(p, TextPart) and p.thought]
        # A thinking block is rejected without the signature it was issued with.
        if thoughts and signature:
            blocks.append({"type": "thinking", "thinking": "\n".join(thoughts), "signature": signature})
        for part in message.parts:
            if isinstance(part, RedactedThinkingPart) and part.data:
                blocks.append({"type": "redacted_thinking", "data": part.data})
        return blocks

    def _native_message(self, message: Message) -> Dict[str, Any]:
        role = "assistant" if message.role == ROLE_MODEL else "user"
        texts = [p.text for p in message.parts if isinstance(p, TextPart) and not p.thought and p.text]
        calls = [p for p in message.parts if isinstance(p, FunctionCallPart)]
        responses = [p for p in message.parts if isinstance(p, FunctionResponsePart)]
        media = [p for p in message.parts if is_media(p)]

        if calls:
            stamp = int(time.time() * 1000)
            content = self._thinking_blocks(message)
            content.extend({"type": "text", "text": t} for t in texts)
            content.extend(
                {"type": "tool_use", "id": call.id or f"toolu_{stamp}_{i}", "name": call.name, "input": call.args or {}}
                for i, call in enumerate(calls)
            )
            return {"role": "assistant", "content": content}

        if responses:
            content = []
            for resp in responses:
                content.append({
                    "type": "tool_result",
                    "tool_use_id": resp.id or f"toolu_{int(time.time() * 1000)}",
                    "content": json.dumps(resp.response, ensure_ascii=False, default=str),
                })
                # Nested media rides along after its result.
                content.extend(_media_block(p) for p in resp.parts)
            return {"role": "user", "content": content}

        content = self._thinking_blocks(message) if role == "assistant" else []
        content.extend(_content_blocks(texts, media))
        if not content:
            return {}
        return {"role": role, "content": content}

    @staticmethod
    def _text_mode_message(message: Message, mode: str) -> Dict[str, Any]:
        parts = render_tool_parts_as_text(message, mode)
        texts = [p.text for p in parts if isinstance(p, TextPart) and not p.thought and p.text]
        media = [p for p in parts if is_media(p)]
        if not texts and not media:
            return {}
        if message.is_function_response:
            role = "user"
        else:
            role = "assistant" if message.role == ROLE_MODEL else "user"
        return {"role": role, "content": _content_blocks(texts, media)}

    @staticmethod
    def _generation_config(config: ProviderConfig) -> Dict[str, Any]:
        gen: Dict[str, Any] = {"max_tokens": config.option("max_tokens", DEFAULT_MAX_TOKENS)}
        for key in ("temperature", "top_p", "top_k"):
            value = config.option(key)
            if value is not None:
                gen[key] = value
        stop = config.options.get("stop_sequences")
        if stop:
            gen["stop_sequences"] = stop

        thinking = config.option("thinking")
        if thinking:
            budget = thinking.get("budget_tokens") if isinstance(thinking, dict) else None
            gen["thinking"] = {
                "type": "enabled",
                "budget_tokens": budget if budget and budget > 0 else DEFAULT_THINKING_BUDGET,
            }
        return gen

    def convert_tools(self, tools: List[ToolDeclaration]) -> Any:
        if not tools:
            return None
        return [{"name": t.name, "description": t.description, "input_schema": t.parameters} for t in tools]

    # ── Response ─────────────────────────────────────────────

    def parse_response(self, data: Dict[str, Any]) -> GenerateResponse:
        if not data or "content" not in data:
            raise ChannelError(ErrorType.PARSE_ERROR, "Invalid Anthropic response: no content", data)

        blocks = data.get("content") or []
        parts: List[Part] = []
        for block in blocks:
            kind = block.get("type")
            if kind == "thinking":
                if block.get("thinking"):
                    parts.append(TextPart(text=block["thinking"], thought=True))
                if block.get("signature"):
                    parts.append(ThoughtSignaturePart(signatures={PROVIDER: block["signature"]}))
            elif kind == "redacted_thinking":
                if block.get("data"):
                    parts.append(RedactedThinkingPart(data=block["data"]))
            elif kind == "text":
                if block.get("text"):
                    parts.append(TextPart(text=block["text"]))
            elif kind == "tool_use":
                parts.append(FunctionCallPart(name=block.get("name", ""), args=block.get("input") or {}, id=block.get("id")))

        usage = None
        if data.get("usage"):
            u = data["usage"]
            usage = UsageMetadata(
                prompt_token_count=u.get("input_tokens"),
                candidates_token_count=u.get("output_tokens"),
                total_token_count=(u.get("input_tokens") or 0) + (u.get("output_tokens") or 0),
            )

        message = Message(role=ROLE_MODEL, parts=parts, usage=usage, model_version=data.get("model"))
        if not any(b.get("type") == "tool_use" for b in blocks):
            convert_embedded_tool_calls(message)
        return GenerateResponse(content=message, finish_reason=data.get("stop_reason"), model=data.get("model"), raw=data)

    def parse_stream_chunk(self, event: Dict[str, Any]) -> StreamChunk:
        kind = event.get("type")
        chunk = StreamChunk()

        if kind == "error":
            error = event.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChannelError(ErrorType.API_ERROR, f"Anthropic stream error: {message or 'unknown'}", event)

        if kind == "content_block_start":
            block = event.get("content_block") or {}
            btype = block.get("type")
            if btype == "text" and block.get("text"):
                chunk.delta.append(TextPart(text=block["text"]))
            elif btype == "thinking" and block.get("thinking"):
                chunk.delta.append(TextPart(text=block["thinking"], thought=True))
            elif btype == "redacted_thinking" and block.get("data"):
                chunk.delta.append(RedactedThinkingPart(data=block["data"]))
            elif btype == "tool_use":
                args = block.get("input") or {}
                chunk.delta.append(FunctionCallPart(
                    name=block.get("name", ""),
                    args=args,
                    id=block.get("id"),
                    partial_args=json.dumps(args) if args else "",
                    index=event.get("index"),
                ))

        elif kind == "content_block_delta":
            delta = event.get("delta") or {}
            dtype = delta.get("type")
            if dtype == "text_delta":
                chunk.delta.append(TextPart(text=delta.get("text", "")))
            elif dtype == "thinking_delta":
                chunk.delta.append(TextPart(text=delta.get("thinking", ""), thought=True))
            elif dtype == "signature_delta":
                chunk.delta.append(ThoughtSignaturePart(signatures={PROVIDER: delta.get("signature", "")}))
            elif dtype == "input_json_delta" and delta.get("partial_json") is not None:
                chunk.delta.append(FunctionCallPart(
                    name="", args={}, partial_args=delta["partial_json"], index=event.get("index"),
                ))

        elif kind == "message_start":
            message = event.get("message") or {}
            if (message.get("usage") or {}).get("input_tokens") is not None:
                chunk.usage = UsageMetadata(prompt_token_count=message["usage"]["input_tokens"])
            if message.get("model"):
                chunk.model_version = message["model"]

        elif kind == "message_delta":
            chunk.finish_reason = (event.get("delta") or {}).get("stop_reason")
            if (event.get("usage") or {}).get("output_tokens") is not None:
                chunk.usage = UsageMetadata(candidates_token_count=event["usage"]["output_tokens"])

        elif kind == "message_stop":
            chunk.done = True

        return chunk
