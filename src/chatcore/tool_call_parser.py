"""Normalise tool calls on model messages before they are stored."""

import secrets
import time
from typing import List

from .messages import FunctionCallPart, Message, Part, TextPart, ToolCall
from .tool_formats import has_embedded_tool_calls, parse_embedded_tool_calls


def generate_tool_call_id() -> str:
    return f"call_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def convert_embedded_tool_calls(message: Message) -> int:
    """Replace tool-call text in non-thought text parts with function-call parts.

    Works in place and returns the number of calls found.  Part order is
    preserved: a text part is swapped for the sequence it decodes to.
    """
    converted: List[Part] = []
    found = 0
    for part in message.parts:
        if isinstance(part, TextPart) and not part.thought and has_embedded_tool_calls(part.text):
            decoded = parse_embedded_tool_calls(part.text)
            found += sum(1 for p in decoded if isinstance(p, FunctionCallPart))
            converted.extend(decoded)
        else:
            converted.append(part)
    if found:
        message.parts = converted
    return found


def ensure_function_call_ids(message: Message) -> None:
    """Give every function-call part a non-empty id (some providers omit them)."""
    for part in message.parts:
        if isinstance(part, FunctionCallPart) and not part.id:
            part.id = generate_tool_call_id()


def extract_tool_calls(message: Message) -> List[ToolCall]:
    return [
        ToolCall(id=part.id or "", name=part.name, args=dict(part.args or {}))
        for part in message.parts
        if isinstance(part, FunctionCallPart)
    ]


def normalize_model_message(message: Message) -> List[ToolCall]:
    """Convert embedded calls, assign ids and return the resulting tool calls."""
    convert_embedded_tool_calls(message)
    ensure_function_call_ids(message)
    return extract_tool_calls(message)
