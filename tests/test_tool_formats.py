"""Tests for the text tool-call encodings and the model-message normaliser."""

import sys
import os

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from chatcore.messages import FunctionCallPart, Message, TextPart, ToolDeclaration
from chatcore.tool_formats import (
    format_json_tool_call,
    format_xml_tool_call,
    has_embedded_tool_calls,
    parse_embedded_tool_calls,
    parse_json_tool_call,
    render_tools_prompt,
)
from chatcore.tool_call_parser import normalize_model_message


# ============================================================
# XML blocks
# ============================================================

class TestXmlToolCalls:
    def test_parse_call_with_surrounding_prose(self):
        text = """Let me look at the entry point first.

<tool_use>
<read_file>
<path>src/app.ts</path>
</read_file>
</tool_use>"""
        parts = parse_embedded_tool_calls(text)
        assert len(parts) == 2
        assert isinstance(parts[0], TextPart)
        assert parts[0].text == "Let me look at the entry point first."
        assert isinstance(parts[1], FunctionCallPart)
        assert parts[1].name == "read_file"
        assert parts[1].args == {"path": "src/app.ts"}

    def test_non_string_values_decode_as_json(self):
        text = "<tool_use>\n<search>\n<limit>5</limit>\n<flags>[\"i\"]</flags>\n<query>foo</query>\n</search>\n</tool_use>"
        (call,) = parse_embedded_tool_calls(text)
        assert call.args == {"limit": 5, "flags": ["i"], "query": "foo"}

    def test_numeric_looking_string_stays_a_string(self):
        encoded = format_xml_tool_call("write_file", {"path": "a.txt", "content": "42"})
        (call,) = parse_embedded_tool_calls(encoded)
        assert call.args["content"] == "42"
        assert isinstance(call.args["content"], str)

    def test_markup_inside_a_value_is_kept(self):
        text = "<tool_use>\n<write_file>\n<path>index.html</path>\n<content><div>hi</div></content>\n</write_file>\n</tool_use>"
        (call,) = parse_embedded_tool_calls(text)
        assert call.args["content"] == "<div>hi</div>"

    def test_several_calls_in_one_block(self):
        text = "<tool_use>\n<read_file><path>a</path></read_file>\n<read_file><path>b</path></read_file>\n</tool_use>"
        parts = parse_embedded_tool_calls(text)
        assert [p.args["path"] for p in parts] == ["a", "b"]

    def test_unclosed_block_is_kept_as_text(self):
        text = "Working on it <tool_use>\n<read_file><path>a</path>"
        parts = parse_embedded_tool_calls(text)
        assert len(parts) == 1
        assert isinstance(parts[0], TextPart)
        assert parts[0].text == text


# ============================================================
# JSON marker blocks
# ============================================================

class TestJsonToolCalls:
    def test_parse_marker_block(self):
        text = "Checking.\n" + format_json_tool_call("list_directory", {"path": "."})
        parts = parse_embedded_tool_calls(text)
        assert isinstance(parts[0], TextPart)
        assert parts[1].name == "list_directory"
        assert parts[1].args == {"path": "."}

    def test_arguments_as_json_string(self):
        assert parse_json_tool_call('{"name": "x", "arguments": "{\\"a\\": 1}"}') == ("x", {"a": 1})

    def test_invalid_payload_preserved_as_literal_text(self):
        text = "<<<TOOL_CALL>>>\n{not json}\n<<<END_TOOL_CALL>>>"
        parts = parse_embedded_tool_calls(text)
        assert len(parts) == 1
        assert isinstance(parts[0], TextPart)
        assert "{not json}" in parts[0].text

    def test_payload_without_tool_name(self):
        assert parse_json_tool_call('{"parameters": {}}') is None

    def test_mixed_modes_keep_order(self):
        text = (
            format_json_tool_call("first", {})
            + "\nthen\n"
            + format_xml_tool_call("second", {"n": 2})
        )
        parts = parse_embedded_tool_calls(text)
        assert [type(p).__name__ for p in parts] == ["FunctionCallPart", "TextPart", "FunctionCallPart"]
        assert parts[0].name == "first"
        assert parts[2].args == {"n": 2}


# ============================================================
# Detection and prompt rendering
# ============================================================

class TestDetectionAndPrompt:
    def test_has_embedded_tool_calls(self):
        assert has_embedded_tool_calls("x <tool_use> y")
        assert has_embedded_tool_calls("<<<TOOL_CALL>>>")
        assert not has_embedded_tool_calls("plain answer")

    def test_render_tools_prompt_lists_parameters(self):
        decl = ToolDeclaration(
            name="read_file",
            description="Read a file",
            parameters={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
        )
        prompt = render_tools_prompt("xml", [decl])
        assert "### read_file" in prompt
        assert "- path (string, required)" in prompt
        assert "<tool_use>" in prompt
        assert "<<<TOOL_CALL>>>" in render_tools_prompt("json", [decl])

    def test_render_tools_prompt_empty(self):
        assert render_tools_prompt("xml", []) == ""


# ============================================================
# Message normalisation
# ============================================================

class TestNormalizeModelMessage:
    def test_assigns_ids_to_calls_without_one(self):
        message = Message(role="model", parts=[FunctionCallPart(name="read_file", args={"path": "a.ts"})])
        calls = normalize_model_message(message)
        assert len(calls) == 1
        assert calls[0].id
        assert message.parts[0].id == calls[0].id

    def test_existing_ids_are_kept(self):
        message = Message(role="model", parts=[FunctionCallPart(name="x", args={}, id="call_1")])
        (call,) = normalize_model_message(message)
        assert call.id == "call_1"

    def test_embedded_calls_become_parts(self):
        message = Message(role="model", parts=[TextPart(text="ok\n" + format_json_tool_call("x", {"a": 1}))])
        calls = normalize_model_message(message)
        assert [c.name for c in calls] == ["x"]
        assert isinstance(message.parts[0], TextPart)
        assert isinstance(message.parts[1], FunctionCallPart)
        assert message.parts[1].id

    def test_thought_text_is_left_alone(self):
        text = format_json_tool_call("x", {})
        message = Message(role="model", parts=[TextPart(text=text, thought=True)])
        assert normalize_model_message(message) == []
        assert message.parts[0].text == text
