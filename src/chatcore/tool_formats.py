"""Text encodings for tool calls.

Providers without native tool calling (or channels configured for a text
tool mode) exchange tool calls as plain text:

``xml`` mode::

    <tool_use>
    <read_file>
    <path>src/app.ts</path>
    </read_file>
    </tool_use>

``json`` mode::

    <<<TOOL_CALL>>>
    {"tool": "read_file", "parameters": {"path": "src/app.ts"}}
    <<<END_TOOL_CALL>>>

Parsing is lenient: anything that cannot be decoded is handed back as
literal text so no model output is ever lost.
"""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from .messages import FunctionCallPart, Part, TextPart, ToolDeclaration

TOOL_USE_START = "<tool_use>"
TOOL_USE_END = "</tool_use>"
TOOL_CALL_START = "<<<TOOL_CALL>>>"
TOOL_CALL_END = "<<<END_TOOL_CALL>>>"
TOOL_RESULT_START = "<<<TOOL_RESULT>>>"
TOOL_RESULT_END = "<<<END_TOOL_RESULT>>>"

_TAG_RE = re.compile(r"<([A-Za-z_][\w.\-]*)>(.*?)</\1>", re.DOTALL)
_JSON_SCALAR_RE = re.compile(r"^-?\d+(\.\d+)?([eE][+-]?\d+)?$")


def _looks_like_json(text: str) -> bool:
    s = text.strip()
    if not s:
        return False
    return (
        s[0] in "{[\""
        or s in ("true", "false", "null")
        or bool(_JSON_SCALAR_RE.match(s))
    )


def _decode_xml_value(raw: str) -> Any:
    value = raw.strip("\n")
    if _looks_like_json(value):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass
    return value


def _encode_xml_value(value: Any) -> str:
    if isinstance(value, str):
        # Strings that would decode as JSON are quoted so they stay strings.
        return json.dumps(value, ensure_ascii=False) if _looks_like_json(value) else value
    return json.dumps(value, ensure_ascii=False)


# ── XML ──────────────────────────────────────────────────────

def format_xml_tool_call(name: str, args: Dict[str, Any]) -> str:
    lines = [TOOL_USE_START, f"<{name}>"]
    for key, value in (args or {}).items():
        lines.append(f"<{key}>{_encode_xml_value(value)}</{key}>")
    lines.append(f"</{name}>")
    lines.append(TOOL_USE_END)
    return "\n".join(lines)


def format_xml_tool_result(name: str, response: Any) -> str:
    body = json.dumps(response, ensure_ascii=False, default=str)
    return f'<tool_result name="{name}">\n{body}\n</tool_result>'


def parse_xml_tool_block(inner: str) -> List[Tuple[str, Dict[str, Any]]]:
    """Parse the inside of one ``<tool_use>`` block into ``(name, args)`` pairs."""
    calls = []
    for match in _TAG_RE.finditer(inner):
        name, body = match.group(1), match.group(2)
        args: Dict[str, Any] = {}
        for param in _TAG_RE.finditer(body):
            args[param.group(1)] = _decode_xml_value(param.group(2))
        calls.append((name, args))
    return calls


# ── JSON ─────────────────────────────────────────────────────

def format_json_tool_call(name: str, args: Dict[str, Any]) -> str:
    payload = json.dumps({"tool": name, "parameters": args or {}}, ensure_ascii=False)
    return f"{TOOL_CALL_START}\n{payload}\n{TOOL_CALL_END}"


def format_json_tool_result(name: str, response: Any) -> str:
    payload = json.dumps({"tool": name, "result": response}, ensure_ascii=False, default=str)
    return f"{TOOL_RESULT_START}\n{payload}\n{TOOL_RESULT_END}"


def parse_json_tool_call(segment: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Decode the JSON between the call markers, ``None`` when it is not a call."""
    try:
        data = json.loads(segment.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    name = data.get("tool") or data.get("name")
    if not isinstance(name, str) or not name:
        return None
    args = data.get("parameters")
    if args is None:
        args = data.get("arguments", data.get("args", {}))
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except json.JSONDecodeError:
            return None
    if not isinstance(args, dict):
        return None
    return name, args


# ── Mode dispatch ────────────────────────────────────────────

def format_tool_call(mode: str, name: str, args: Dict[str, Any]) -> str:
    if mode == "json":
        return format_json_tool_call(name, args)
    return format_xml_tool_call(name, args)


def format_tool_result(mode: str, name: str, response: Any) -> str:
    if mode == "json":
        return format_json_tool_result(name, response)
    return format_xml_tool_result(name, response)


def has_embedded_tool_calls(text: str) -> bool:
    return TOOL_USE_START in text or TOOL_CALL_START in text


def parse_embedded_tool_calls(text: str) -> List[Part]:
    """Split ``text`` into text parts and function-call parts.

    Text around each block is stripped and dropped when empty.  A block that
    fails to decode, or whose closing marker is missing, is kept verbatim as
    a text part.
    """
    parts: List[Part] = []
    pending_text: List[str] = []

    def flush():
        joined = "".join(pending_text).strip()
        pending_text.clear()
        if joined:
            parts.append(TextPart(text=joined))

    pos = 0
    while pos < len(text):
        xml_at = text.find(TOOL_USE_START, pos)
        json_at = text.find(TOOL_CALL_START, pos)
        candidates = [i for i in (xml_at, json_at) if i != -1]
        if not candidates:
            pending_text.append(text[pos:])
            break
        start = min(candidates)
        pending_text.append(text[pos:start])

        if start == json_at:
            open_marker, close_marker = TOOL_CALL_START, TOOL_CALL_END
        else:
            open_marker, close_marker = TOOL_USE_START, TOOL_USE_END

        body_start = start + len(open_marker)
        end = text.find(close_marker, body_start)
        if end == -1:
            pending_text.append(text[start:])
            break
        segment = text[body_start:end]
        block_end = end + len(close_marker)

        if open_marker == TOOL_CALL_START:
            decoded = parse_json_tool_call(segment)
            calls = [decoded] if decoded else []
        else:
            calls = parse_xml_tool_block(segment)

        if calls:
            flush()
            for name, args in calls:
                parts.append(FunctionCallPart(name=name, args=args))
        else:
            pending_text.append(text[start:block_end])
        pos = block_end

    flush()
    return parts


# ── Tool list prompt rendering ───────────────────────────────

def _describe_params(decl: ToolDeclaration) -> List[str]:
    schema = decl.parameters or {}
    required = set(schema.get("required", []))
    lines = []
    for pname, pschema in (schema.get("properties") or {}).items():
        ptype = pschema.get("type", "any") if isinstance(pschema, dict) else "any"
        flag = "required" if pname in required else "optional"
        desc = pschema.get("description", "") if isinstance(pschema, dict) else ""
        lines.append(f"- {pname} ({ptype}, {flag}){': ' + desc if desc else ''}")
    return lines


def render_tools_prompt(mode: str, declarations: List[ToolDeclaration]) -> str:
    """Render tool declarations as the instruction text for a text tool mode."""
    if not declarations:
        return ""
    if mode == "json":
        header = [
            "## Tools",
            "",
            "To call a tool, output a JSON object between the markers below. "
            "You may call several tools in one reply; each call gets its own block.",
            "",
            format_json_tool_call("tool_name", {"param": "value"}),
            "",
            f"Tool results come back between {TOOL_RESULT_START} and {TOOL_RESULT_END}.",
        ]
    else:
        header = [
            "## Tools",
            "",
            "To call a tool, wrap an XML element named after the tool in a "
            "<tool_use> block, one child element per parameter. Non-string "
            "values are written as JSON.",
            "",
            format_xml_tool_call("tool_name", {"param": "value"}),
            "",
            'Tool results come back as <tool_result name="..."> elements.',
        ]
    lines = header + [""]
    for decl in declarations:
        lines.append(f"### {decl.name}")
        if decl.description:
            lines.append(decl.description)
        params = _describe_params(decl)
        if params:
            lines.append("Parameters:")
            lines.extend(params)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
