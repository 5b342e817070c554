"""Unified conversation representation.

A ``Message`` is one turn (``user`` or ``model``) holding an ordered list of
parts.  Each part carries exactly one payload; the part classes below form
a closed set and every adapter dispatches on them with ``isinstance``.

The dict form produced by ``to_dict`` is the storage shape used by the
conversation stores (camelCase keys, one payload key per part).
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

ROLE_USER = "user"
ROLE_MODEL = "model"


# ── Parts ────────────────────────────────────────────────────

@dataclass
class TextPart:
    text: str
    thought: bool = False


@dataclass
class FunctionCallPart:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    # Streaming reassembly only: raw argument JSON fragment and its slot.
    partial_args: Optional[str] = None
    index: Optional[int] = None


@dataclass
class InlineDataPart:
    mime_type: str
    data: str
    id: Optional[str] = None
    name: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class FileDataPart:
    uri: str
    mime_type: Optional[str] = None


@dataclass
class FunctionResponsePart:
    name: str
    response: Any = None
    id: Optional[str] = None
    parts: List["InlineDataPart"] = field(default_factory=list)


@dataclass
class ThoughtSignaturePart:
    """Opaque reasoning signatures keyed by provider name."""
    signatures: Dict[str, str] = field(default_factory=dict)


@dataclass
class RedactedThinkingPart:
    """Encrypted reasoning that must be echoed back verbatim."""
    data: str


Part = Union[
    TextPart,
    FunctionCallPart,
    FunctionResponsePart,
    InlineDataPart,
    FileDataPart,
    ThoughtSignaturePart,
    RedactedThinkingPart,
]


# ── Message ──────────────────────────────────────────────────

@dataclass
class UsageMetadata:
    prompt_token_count: Optional[int] = None
    candidates_token_count: Optional[int] = None
    total_token_count: Optional[int] = None
    thoughts_token_count: Optional[int] = None

    def to_dict(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        if self.prompt_token_count is not None:
            out["promptTokenCount"] = self.prompt_token_count
        if self.candidates_token_count is not None:
            out["candidatesTokenCount"] = self.candidates_token_count
        if self.total_token_count is not None:
            out["totalTokenCount"] = self.total_token_count
        if self.thoughts_token_count is not None:
            out["thoughtsTokenCount"] = self.thoughts_token_count
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageMetadata":
        return cls(
            prompt_token_count=data.get("promptTokenCount"),
            candidates_token_count=data.get("candidatesTokenCount"),
            total_token_count=data.get("totalTokenCount"),
            thoughts_token_count=data.get("thoughtsTokenCount"),
        )


@dataclass
class Message:
    role: str
    parts: List[Part] = field(default_factory=list)
    is_function_response: bool = False
    is_summary: bool = False
    usage: Optional[UsageMetadata] = None
    model_version: Optional[str] = None
    response_duration_ms: Optional[int] = None
    thinking_start_time: Optional[float] = None
    thinking_duration_ms: Optional[int] = None
    estimated_token_count: Optional[int] = None

    def text(self, include_thoughts: bool = False) -> str:
        """Concatenated text of the message, thoughts excluded by default."""
        return "".join(
            p.text for p in self.parts
            if isinstance(p, TextPart) and (include_thoughts or not p.thought)
        )

    @property
    def function_calls(self) -> List[FunctionCallPart]:
        return [p for p in self.parts if isinstance(p, FunctionCallPart)]

    @property
    def is_plain_user(self) -> bool:
        """A user turn typed by a person (not a tool result)."""
        return self.role == ROLE_USER and not self.is_function_response

    def copy(self) -> "Message":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "role": self.role,
            "parts": [part_to_dict(p) for p in self.parts],
        }
        if self.is_function_response:
            out["isFunctionResponse"] = True
        if self.is_summary:
            out["isSummary"] = True
        if self.usage is not None:
            out["usageMetadata"] = self.usage.to_dict()
        if self.model_version:
            out["modelVersion"] = self.model_version
        if self.response_duration_ms is not None:
            out["responseDuration"] = self.response_duration_ms
        if self.thinking_start_time is not None:
            out["thinkingStartTime"] = self.thinking_start_time
        if self.thinking_duration_ms is not None:
            out["thinkingDuration"] = self.thinking_duration_ms
        if self.estimated_token_count is not None:
            out["estimatedTokenCount"] = self.estimated_token_count
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        usage = data.get("usageMetadata")
        return cls(
            role=data.get("role", ROLE_USER),
            parts=[part_from_dict(p) for p in data.get("parts", [])],
            is_function_response=bool(data.get("isFunctionResponse", False)),
            is_summary=bool(data.get("isSummary", False)),
            usage=UsageMetadata.from_dict(usage) if isinstance(usage, dict) else None,
            model_version=data.get("modelVersion"),
            response_duration_ms=data.get("responseDuration"),
            thinking_start_time=data.get("thinkingStartTime"),
            thinking_duration_ms=data.get("thinkingDuration"),
            estimated_token_count=data.get("estimatedTokenCount"),
        )


def user_message(text: str) -> Message:
    return Message(role=ROLE_USER, parts=[TextPart(text=text)])


def function_response_message(parts: List[Part]) -> Message:
    return Message(role=ROLE_USER, parts=list(parts), is_function_response=True)


@dataclass
class ToolCall:
    """A function call lifted out of a message."""
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": self.args}


@dataclass
class ToolDeclaration:
    """A tool the model may call: name, description and JSON schema."""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


# ── Storage (de)serialization ────────────────────────────────

def _inline_to_dict(part: InlineDataPart) -> Dict[str, Any]:
    inline: Dict[str, Any] = {"mimeType": part.mime_type, "data": part.data}
    if part.id:
        inline["id"] = part.id
    if part.name:
        inline["name"] = part.name
    if part.display_name:
        inline["displayName"] = part.display_name
    return {"inlineData": inline}


def part_to_dict(part: Part) -> Dict[str, Any]:
    if isinstance(part, TextPart):
        out: Dict[str, Any] = {"text": part.text}
        if part.thought:
            out["thought"] = True
        return out
    if isinstance(part, FunctionCallPart):
        call: Dict[str, Any] = {"name": part.name, "args": part.args}
        if part.id:
            call["id"] = part.id
        return {"functionCall": call}
    if isinstance(part, FunctionResponsePart):
        resp: Dict[str, Any] = {"name": part.name, "response": part.response}
        if part.id:
            resp["id"] = part.id
        if part.parts:
            resp["parts"] = [_inline_to_dict(p) for p in part.parts]
        return {"functionResponse": resp}
    if isinstance(part, InlineDataPart):
        return _inline_to_dict(part)
    if isinstance(part, FileDataPart):
        file_data: Dict[str, Any] = {"fileUri": part.uri}
        if part.mime_type:
            file_data["mimeType"] = part.mime_type
        return {"fileData": file_data}
    if isinstance(part, ThoughtSignaturePart):
        return {"thoughtSignatures": dict(part.signatures)}
    if isinstance(part, RedactedThinkingPart):
        return {"redactedThinking": part.data}
    raise TypeError(f"Unknown part type: {type(part).__name__}")


def _inline_from_dict(inline: Dict[str, Any]) -> InlineDataPart:
    return InlineDataPart(
        mime_type=inline.get("mimeType", "application/octet-stream"),
        data=inline.get("data", ""),
        id=inline.get("id"),
        name=inline.get("name"),
        display_name=inline.get("displayName"),
    )


def part_from_dict(data: Dict[str, Any]) -> Part:
    if "functionCall" in data:
        call = data["functionCall"]
        return FunctionCallPart(name=call.get("name", ""), args=call.get("args") or {}, id=call.get("id"))
    if "functionResponse" in data:
        resp = data["functionResponse"]
        nested = [
            _inline_from_dict(p["inlineData"])
            for p in resp.get("parts", []) if isinstance(p, dict) and "inlineData" in p
        ]
        return FunctionResponsePart(
            name=resp.get("name", ""), response=resp.get("response"), id=resp.get("id"), parts=nested
        )
    if "inlineData" in data:
        return _inline_from_dict(data["inlineData"])
    if "fileData" in data:
        fd = data["fileData"]
        return FileDataPart(uri=fd.get("fileUri", ""), mime_type=fd.get("mimeType"))
    if "thoughtSignatures" in data:
        return ThoughtSignaturePart(signatures=dict(data["thoughtSignatures"]))
    if "redactedThinking" in data:
        return RedactedThinkingPart(data=data["redactedThinking"])
    if "text" in data:
        return TextPart(text=data["text"], thought=bool(data.get("thought", False)))
    raise ValueError(f"Unrecognised part: {sorted(data)}")
