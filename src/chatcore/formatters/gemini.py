"""Gemini generateContent / streamGenerateContent wire format."""

from typing import Any, Dict, List, Optional

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
    join_url,
    render_tool_parts_as_text,
    signature_for,
    with_dynamic_context,
)

_log = get_logger("formatters.gemini")

PROVIDER = "gemini"


def _inline_to_wire(part: InlineDataPart) -> Dict[str, Any]:
    inline: Dict[str, Any] = {"mimeType": part.mime_type, "data": part.data}
    if part.display_name:
        inline["displayName"] = part.display_name
    return {"inlineData": inline}


def _usage(data: Optional[Dict[str, Any]]) -> Optional[UsageMetadata]:
    if not data:
        return None
    return UsageMetadata(
        prompt_token_count=data.get("promptTokenCount"),
        candidates_token_count=data.get("candidatesTokenCount"),
        total_token_count=data.get("totalTokenCount"),
        thoughts_token_count=data.get("thoughtsTokenCount"),
    )


class GeminiAdapter:
    provider_type = PROVIDER

    # ── Request ──────────────────────────────────────────────

    def build_request(
        self, request: GenerateRequest, config: ProviderConfig, tools: List[ToolDeclaration]
    ) -> HttpRequest:
        mode = config.tool_mode
        history = with_dynamic_context(request.history, request.dynamic_context_messages)

        contents = []
        for message in history:
            wire = self._content_to_wire(message, mode)
            if wire["parts"]:
                contents.append(wire)

        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": self._generation_config(config),
        }
        if tools and mode == "function_call":
            body["tools"] = self.convert_tools(tools)

        system = compose_system_instruction(request, config, tools)
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        method = "streamGenerateContent?alt=sse" if config.stream else "generateContent"
        url = join_url(config.url, f"models/{effective_model(request, config)}:{method}")

        headers = {"Content-Type": "application/json"}
        if config.api_key:
            if config.use_authorization_header:
                headers["Authorization"] = f"Bearer {config.api_key}"
            else:
                headers["x-goog-api-key"] = config.api_key

        _log.debug("gemini request: url=%s contents=%d tools=%d", url, len(contents), len(tools or []))
        return HttpRequest(
            url=url,
            body=apply_custom_body(body, config.custom_body, config.custom_body_enabled),
            headers=finish_headers(headers, config),
            timeout=config.timeout,
            stream=config.stream,
        )

    def _content_to_wire(self, message: Message, mode: str) -> Dict[str, Any]:
        parts = render_tool_parts_as_text(message, mode) if mode in ("xml", "json") else message.parts
        signed = signature_for(message, PROVIDER) is not None

        wire_parts: List[Dict[str, Any]] = []
        pending_signature: Optional[str] = None
        for part in parts:
            if isinstance(part, ThoughtSignaturePart):
                sig = part.signatures.get(PROVIDER)
                if not sig:
                    continue
                # A signature belongs to the part it arrived with.
                if wire_parts and "thoughtSignature" not in wire_parts[-1]:
                    wire_parts[-1]["thoughtSignature"] = sig
                else:
                    pending_signature = sig
                continue

            wire = self._part_to_wire(part, signed)
            if wire is None:
                continue
            if pending_signature:
                wire["thoughtSignature"] = pending_signature
                pending_signature = None
            wire_parts.append(wire)

        return {"role": "model" if message.role == ROLE_MODEL else "user", "parts": wire_parts}

    @staticmethod
    def _part_to_wire(part: Part, signed: bool) -> Optional[Dict[str, Any]]:
        if isinstance(part, TextPart):
            if part.thought:
                return {"text": part.text, "thought": True} if signed else None
            return {"text": part.text}
        if isinstance(part, FunctionCallPart):
            call: Dict[str, Any] = {"name": part.name, "args": part.args or {}}
            if part.id:
                call["id"] = part.id
            return {"functionCall": call}
        if isinstance(part, FunctionResponsePart):
            resp: Dict[str, Any] = {"name": part.name, "response": part.response}
            if part.id:
                resp["id"] = part.id
            if part.parts:
                resp["parts"] = [_inline_to_wire(p) for p in part.parts]
            return {"functionResponse": resp}
        if isinstance(part, InlineDataPart):
            return _inline_to_wire(part)
        if isinstance(part, FileDataPart):
            file_data: Dict[str, Any] = {"fileUri": part.uri}
            if part.mime_type:
                file_data["mimeType"] = part.mime_type
            return {"fileData": file_data}
        if isinstance(part, RedactedThinkingPart):
            return None
        return None

    @staticmethod
    def _generation_config(config: ProviderConfig) -> Dict[str, Any]:
        gen: Dict[str, Any] = {}
        if not config.options_enabled:
            return gen
        temperature = config.option("temperature")
        if temperature is not None:
            gen["temperature"] = temperature
        max_output = config.option("maxOutputTokens")
        if max_output is not None:
            gen["maxOutputTokens"] = max_output

        # Thinking is on unless explicitly disabled.
        if config.options_enabled.get("thinkingConfig", True) is not False:
            thinking = config.options.get("thinkingConfig") or {}
            api_thinking: Dict[str, Any] = {}
            if thinking.get("includeThoughts", True) is not False:
                api_thinking["includeThoughts"] = True
            mode = thinking.get("mode", "default")
            if mode == "level" and thinking.get("thinkingLevel"):
                api_thinking["thinkingLevel"] = thinking["thinkingLevel"]
            elif mode == "budget" and thinking.get("thinkingBudget") is not None:
                api_thinking["thinkingBudget"] = thinking["thinkingBudget"]
            if api_thinking:
                gen["thinkingConfig"] = api_thinking
        return gen

    def convert_tools(self, tools: List[ToolDeclaration]) -> Any:
        if not tools:
            return None
        return [{
            "function_declarations": [
                {"name": t.name, "description": t.description, "parameters": t.parameters}
                for t in tools
            ]
        }]

    # ── Response ─────────────────────────────────────────────

    @staticmethod
    def _parse_parts(wire_parts: List[Dict[str, Any]]) -> List[Part]:
        parts: List[Part] = []
        for wp in wire_parts or []:
            if "functionCall" in wp:
                call = wp["functionCall"]
                parts.append(FunctionCallPart(name=call.get("name", ""), args=call.get("args") or {}, id=call.get("id")))
            elif "inlineData" in wp:
                inline = wp["inlineData"]
                parts.append(InlineDataPart(
                    mime_type=inline.get("mimeType", ""), data=inline.get("data", ""),
                    display_name=inline.get("displayName"),
                ))
            elif "fileData" in wp:
                fd = wp["fileData"]
                parts.append(FileDataPart(uri=fd.get("fileUri", ""), mime_type=fd.get("mimeType")))
            elif wp.get("text"):
                parts.append(TextPart(text=wp["text"], thought=bool(wp.get("thought"))))
            if wp.get("thoughtSignature"):
                parts.append(ThoughtSignaturePart(signatures={PROVIDER: wp["thoughtSignature"]}))
        return parts

    def parse_response(self, data: Dict[str, Any]) -> GenerateResponse:
        candidates = (data or {}).get("candidates") or []
        if not candidates:
            raise ChannelError(ErrorType.PARSE_ERROR, "Invalid Gemini response: no candidates", data)
        candidate = candidates[0]
        parts = self._parse_parts((candidate.get("content") or {}).get("parts", []))
        message = Message(
            role=ROLE_MODEL,
            parts=parts,
            usage=_usage(data.get("usageMetadata")),
            model_version=data.get("modelVersion"),
        )
        if not any(isinstance(p, FunctionCallPart) for p in parts):
            convert_embedded_tool_calls(message)
        return GenerateResponse(
            content=message,
            finish_reason=candidate.get("finishReason"),
            model=data.get("modelVersion"),
            raw=data,
        )

    def parse_stream_chunk(self, event: Dict[str, Any]) -> StreamChunk:
        if event.get("error"):
            code = event["error"].get("code", "UNKNOWN") if isinstance(event["error"], dict) else "UNKNOWN"
            raise ChannelError(ErrorType.API_ERROR, f"Gemini API error ({code})", event)

        candidates = event.get("candidates") or []
        if not candidates:
            return StreamChunk()
        candidate = candidates[0]
        chunk = StreamChunk(delta=self._parse_parts((candidate.get("content") or {}).get("parts", [])))
        if candidate.get("finishReason"):
            chunk.done = True
            chunk.finish_reason = candidate["finishReason"]
            chunk.usage = _usage(event.get("usageMetadata"))
            chunk.model_version = event.get("modelVersion")
        return chunk
