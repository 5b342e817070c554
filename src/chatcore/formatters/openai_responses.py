"""OpenAI Responses API wire format.

Reasoning is carried as ``reasoning`` input items whose encrypted content
is stored on the message as the ``openai-responses`` thought signature;
summary text lives beside it as thought text parts.
"""

import json
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
    data_uri,
    effective_model,
    finish_headers,
    render_tool_parts_as_text,
    with_dynamic_context,
)

_log = get_logger("formatters.openai_responses")

PROVIDER = "openai-responses"


def _usage(data: Dict[str, Any]) -> UsageMetadata:
    return UsageMetadata(
        prompt_token_count=data.get("input_tokens"),
        candidates_token_count=data.get("output_tokens"),
        total_token_count=data.get("total_tokens"),
        thoughts_token_count=(data.get("output_tokens_details") or {}).get("reasoning_tokens"),
    )


def _responses_url(base: str) -> str:
    base = base.rstrip("/")
    return base if base.endswith("/responses") else f"{base}/responses"


class OpenAIResponsesAdapter:
    provider_type = PROVIDER

    # ── Request ──────────────────────────────────────────────

    def build_request(
        self, request: GenerateRequest, config: ProviderConfig, tools: List[ToolDeclaration]
    ) -> HttpRequest:
        mode = config.tool_mode
        history = with_dynamic_context(request.history, request.dynamic_context_messages)

        items: List[Dict[str, Any]] = []
        for message in history:
            items.extend(self._input_items(message, mode))

        body: Dict[str, Any] = {
            "model": effective_model(request, config),
            "input": items,
            "include": ["reasoning.encrypted_content"],
        }
        instructions = compose_system_instruction(request, config, tools)
        if instructions:
            body["instructions"] = instructions
        if tools and mode == "function_call":
            body["tools"] = self.convert_tools(tools)
        body.update(self._generation_config(config))
        body["stream"] = config.stream

        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        url = _responses_url(config.url)
        _log.debug("responses request: url=%s items=%d mode=%s", url, len(items), mode)
        return HttpRequest(
            url=url,
            body=apply_custom_body(body, config.custom_body, config.custom_body_enabled),
            headers=finish_headers(headers, config),
            timeout=config.timeout,
            stream=config.stream,
        )

    @staticmethod
    def _input_items(message: Message, mode: str) -> List[Dict[str, Any]]:
        if mode in ("xml", "json"):
            parts = render_tool_parts_as_text(message, mode)
            role = "user" if message.is_function_response or message.role != ROLE_MODEL else "assistant"
        else:
            parts = message.parts
            role = "assistant" if message.role == ROLE_MODEL else "user"

        items: List[Dict[str, Any]] = []
        content: List[Dict[str, Any]] = []
        thoughts: List[str] = []

        def flush():
            if content:
                items.append({"type": "message", "role": role, "content": list(content)})
                content.clear()

        for part in parts:
            if isinstance(part, TextPart) and part.thought:
                # Held until the signature that makes it replayable arrives.
                thoughts.append(part.text)
            elif isinstance(part, ThoughtSignaturePart):
                encrypted = part.signatures.get(PROVIDER)
                if not encrypted or mode != "function_call":
                    continue
                flush()
                summary = [{"type": "summary_text", "text": t} for t in thoughts if t]
                items.append({"type": "reasoning", "encrypted_content": encrypted, "summary": summary})
                thoughts.clear()
            elif isinstance(part, RedactedThinkingPart):
                continue
            elif isinstance(part, FunctionCallPart):
                flush()
                items.append({
                    "type": "function_call",
                    "name": part.name,
                    "call_id": part.id,
                    "arguments": json.dumps(part.args or {}, ensure_ascii=False),
                })
            elif isinstance(part, FunctionResponsePart):
                flush()
                output = part.response if isinstance(part.response, str) else json.dumps(
                    part.response, ensure_ascii=False, default=str
                )
                items.append({"type": "function_call_output", "call_id": part.id, "output": output})
                images = [{"type": "input_image", "image_url": data_uri(p)} for p in part.parts]
                if images:
                    items.append({"type": "message", "role": "user", "content": images})
            elif isinstance(part, TextPart):
                if part.text:
                    content.append({"type": "output_text" if role == "assistant" else "input_text", "text": part.text})
            elif isinstance(part, InlineDataPart):
                content.append({"type": "input_image", "image_url": data_uri(part)})
            elif isinstance(part, FileDataPart):
                content.append({"type": "input_file", "file_url": part.uri})
        flush()
        return items

    @staticmethod
    def _generation_config(config: ProviderConfig) -> Dict[str, Any]:
        gen: Dict[str, Any] = {}
        for key in ("temperature", "max_output_tokens", "top_p", "truncation"):
            value = config.option(key)
            if value is not None:
                gen[key] = value
        reasoning = config.option("reasoning")
        if isinstance(reasoning, dict):
            api_reasoning: Dict[str, Any] = {}
            if reasoning.get("effort") and reasoning["effort"] != "none":
                api_reasoning["effort"] = reasoning["effort"]
            if reasoning.get("summary"):
                api_reasoning["summary"] = reasoning["summary"]
            if api_reasoning:
                gen["reasoning"] = api_reasoning
        return gen

    def convert_tools(self, tools: List[ToolDeclaration]) -> Any:
        if not tools:
            return None
        return [
            {"type": "function", "name": t.name, "description": t.description, "parameters": t.parameters}
            for t in tools
        ]

    # ── Response ─────────────────────────────────────────────

    def parse_response(self, data: Dict[str, Any]) -> GenerateResponse:
        output = (data or {}).get("output")
        if not isinstance(output, list):
            raise ChannelError(ErrorType.PARSE_ERROR, "Invalid Responses API response: no output", data)

        parts: List[Part] = []
        for item in output:
            kind = item.get("type")
            if kind == "message":
                for piece in item.get("content") or []:
                    if piece.get("type") == "output_text" and piece.get("text"):
                        parts.append(TextPart(text=piece["text"]))
            elif kind == "reasoning":
                summary = "\n".join(
                    s.get("text", "") for s in item.get("summary") or [] if s.get("type") == "summary_text"
                )
                if summary:
                    parts.append(TextPart(text=summary, thought=True))
                if item.get("encrypted_content"):
                    parts.append(ThoughtSignaturePart(signatures={PROVIDER: item["encrypted_content"]}))
            elif kind == "function_call":
                try:
                    args = json.loads(item.get("arguments") or "{}")
                except json.JSONDecodeError:
                    args = {}
                parts.append(FunctionCallPart(
                    name=item.get("name", ""), args=args if isinstance(args, dict) else {}, id=item.get("call_id"),
                ))

        message = Message(
            role=ROLE_MODEL,
            parts=parts,
            usage=_usage(data["usage"]) if data.get("usage") else None,
            model_version=data.get("model"),
        )
        if not any(isinstance(p, FunctionCallPart) for p in parts):
            convert_embedded_tool_calls(message)
        return GenerateResponse(content=message, finish_reason=data.get("status"), model=data.get("model"), raw=data)

    def parse_stream_chunk(self, event: Dict[str, Any]) -> StreamChunk:
        kind = event.get("type")
        chunk = StreamChunk()

        if kind == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                chunk.delta.append(FunctionCallPart(
                    name=item.get("name", ""), args={}, id=item.get("call_id"),
                    partial_args="", index=event.get("output_index"),
                ))
        elif kind == "response.output_item.done":
            item = event.get("item") or {}
            if item.get("type") == "reasoning" and item.get("encrypted_content"):
                chunk.delta.append(ThoughtSignaturePart(signatures={PROVIDER: item["encrypted_content"]}))
        elif kind in ("response.output_text.delta", "response.text.delta"):
            chunk.delta.append(TextPart(text=event.get("delta", "")))
        elif kind in ("response.reasoning_text.delta", "response.reasoning_summary_text.delta", "response.reasoning.delta"):
            chunk.delta.append(TextPart(text=event.get("delta", ""), thought=True))
        elif kind == "response.function_call_arguments.delta":
            chunk.delta.append(FunctionCallPart(
                name="", args={}, partial_args=event.get("delta", ""), index=event.get("output_index"),
            ))
        elif kind in ("response.completed", "response.done"):
            response = event.get("response") or {}
            chunk.done = True
            chunk.finish_reason = response.get("status")
            if response.get("usage"):
                chunk.usage = _usage(response["usage"])
            chunk.model_version = response.get("model")
        elif kind == "response.incomplete":
            response = event.get("response") or {}
            chunk.done = True
            chunk.finish_reason = (response.get("incomplete_details") or {}).get("reason") or "incomplete"
        elif kind == "response.failed":
            error = (event.get("response") or {}).get("error") or {}
            raise ChannelError(ErrorType.API_ERROR, error.get("message") or "Response failed", event)
        elif kind == "error":
            error = event.get("error") or event
            raise ChannelError(ErrorType.API_ERROR, error.get("message") or "Unknown stream error", event)

        return chunk
