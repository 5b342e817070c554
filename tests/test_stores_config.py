"""Tests for the conversation stores, checkpoint gating and configuration loading."""

import sys
import os
import asyncio
import json

import pytest

# Ensure src is on path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from chatcore.config import (
    CheckpointSettings,
    ConfigManager,
    CustomHeader,
    ProviderConfig,
    Settings,
)
from chatcore.errors import ConfigError
from chatcore.messages import (
    FunctionCallPart,
    FunctionResponsePart,
    InlineDataPart,
    Message,
    TextPart,
    ThoughtSignaturePart,
    UsageMetadata,
    user_message,
)
from chatcore.stores import InMemoryCheckpointManager, InMemoryConversationStore, JsonFileConversationStore


def run(coro):
    return asyncio.run(coro)


# ============================================================
# Conversation stores
# ============================================================

class TestInMemoryStore:
    def test_reads_are_copies(self):
        async def scenario():
            store = InMemoryConversationStore()
            await store.add_message("c", user_message("hi"))
            history = await store.get_history("c")
            history[0].parts[0].text = "mutated"
            return await store.get_history("c")

        assert run(scenario())[0].text() == "hi"

    def test_insert_update_delete(self):
        async def scenario():
            store = InMemoryConversationStore()
            for text in ("a", "b", "c", "d"):
                await store.add_message("c", user_message(text))
            await store.insert_message("c", 1, user_message("x"))
            await store.update_message("c", 0, user_message("A"))
            await store.delete_message("c", 2)
            removed = await store.delete_to_message("c", 3)
            return removed, [m.text() for m in await store.get_history("c")]

        removed, texts = run(scenario())
        assert texts == ["A", "x", "c"]
        assert removed == 1

    def test_update_out_of_range(self):
        async def scenario():
            store = InMemoryConversationStore()
            await store.update_message("c", 3, user_message("x"))

        with pytest.raises(IndexError):
            run(scenario())

    def test_metadata_none_removes_key(self):
        async def scenario():
            store = InMemoryConversationStore()
            await store.set_custom_metadata("c", "trimStartIndex", 4)
            first = await store.get_custom_metadata("c", "trimStartIndex")
            await store.set_custom_metadata("c", "trimStartIndex", None)
            return first, await store.get_custom_metadata("c", "trimStartIndex")

        assert run(scenario()) == (4, None)


class TestJsonFileStore:
    def test_persists_across_instances(self, tmp_path):
        async def scenario():
            store = JsonFileConversationStore(tmp_path)
            await store.add_message("chat-1", user_message("read a.ts"))
            await store.add_message("chat-1", Message(
                role="model",
                parts=[
                    TextPart("checking", thought=True),
                    ThoughtSignaturePart(signatures={"gemini": "sig"}),
                    FunctionCallPart(name="read_file", args={"path": "a.ts"}, id="call_1"),
                ],
                usage=UsageMetadata(prompt_token_count=10, candidates_token_count=4, total_token_count=14),
            ))
            await store.add_message("chat-1", Message(
                role="user",
                parts=[FunctionResponsePart(
                    name="read_file", response={"success": True}, id="call_1",
                    parts=[InlineDataPart(mime_type="image/png", data="AAA")],
                )],
                is_function_response=True,
            ))
            await store.set_custom_metadata("chat-1", "trimStartIndex", 0)

            reopened = JsonFileConversationStore(tmp_path)
            return (
                await reopened.get_history("chat-1"),
                await reopened.get_custom_metadata("chat-1", "trimStartIndex"),
                reopened.list_conversations(),
            )

        history, trim_index, conversations = run(scenario())
        assert conversations == ["chat-1"]
        assert trim_index == 0
        assert history[1].parts[0] == TextPart("checking", thought=True)
        assert history[1].parts[1] == ThoughtSignaturePart(signatures={"gemini": "sig"})
        assert history[1].parts[2].id == "call_1"
        assert history[1].usage.total_token_count == 14
        assert history[2].is_function_response
        assert history[2].parts[0].parts[0].mime_type == "image/png"

    def test_file_uses_camel_case(self, tmp_path):
        async def scenario():
            store = JsonFileConversationStore(tmp_path)
            await store.add_message("c", Message(role="user", parts=[TextPart("s")], is_summary=True))

        run(scenario())
        data = json.loads((tmp_path / "c.json").read_text(encoding="utf-8"))
        assert data["messages"][0]["isSummary"] is True
        assert data["messages"][0]["parts"] == [{"text": "s"}]

    def test_unsafe_ids_are_sanitised(self, tmp_path):
        async def scenario():
            store = JsonFileConversationStore(tmp_path)
            await store.add_message("../escape", user_message("x"))

        run(scenario())
        assert [p.name for p in tmp_path.iterdir()] == [".._escape.json"]

    def test_missing_directory_lists_nothing(self, tmp_path):
        assert JsonFileConversationStore(tmp_path / "absent").list_conversations() == []


# ============================================================
# Checkpoints
# ============================================================

class TestCheckpointManager:
    def test_gated_by_settings(self):
        settings = Settings(checkpoint=CheckpointSettings(
            enabled=True, before_tools=["write_file"], after_messages=["user"],
        ))
        manager = InMemoryCheckpointManager(settings)

        async def scenario():
            return [
                await manager.create_checkpoint("c", 1, "write_file", "before"),
                await manager.create_checkpoint("c", 1, "write_file", "after"),
                await manager.create_checkpoint("c", 0, "message:user", "after"),
                await manager.create_checkpoint("c", 0, "message:user", "before"),
            ]

        made = run(scenario())
        assert made[0] is not None and made[0].phase == "before"
        assert made[1] is None
        assert made[2] is not None and made[2].tool_name == "message:user"
        assert made[3] is None
        assert len(manager.records) == 2

    def test_disabled_checkpoints(self):
        manager = InMemoryCheckpointManager(Settings())
        assert run(manager.create_checkpoint("c", 0, "write_file", "before")) is None

    def test_record_to_dict(self):
        record = run(InMemoryCheckpointManager().create_checkpoint("c", 2, "tool_batch", "after"))
        data = record.to_dict()
        assert data["conversationId"] == "c"
        assert data["messageIndex"] == 2
        assert data["toolName"] == "tool_batch"


# ============================================================
# Provider configs
# ============================================================

class TestProviderConfig:
    def test_from_dict_accepts_camel_case(self):
        config = ProviderConfig.from_dict({
            "type": "anthropic",
            "url": "https://api.anthropic.com/v1",
            "apiKey": "k",
            "model": "claude-x",
            "maxContextTokens": 1000,
            "contextThresholdEnabled": True,
            "contextThreshold": "70%",
            "customHeaders": [{"key": "X-Team", "value": "core"}],
            "customHeadersEnabled": True,
            "customBody": "{\"metadata\": {\"a\": 1}}",
            "toolMode": "xml",
        }, "claude")
        assert config.id == "claude"
        assert config.api_key == "k"
        assert config.max_context_tokens == 1000
        assert config.context_threshold == "70%"
        assert config.custom_headers == [CustomHeader(key="X-Team", value="core")]
        assert config.custom_body == {"metadata": {"a": 1}}
        assert config.enabled_headers() == {"X-Team": "core"}
        assert config.validate()

    def test_invalid_custom_body(self):
        with pytest.raises(ConfigError):
            ProviderConfig.from_dict({"customBody": "{nope"}, "bad")

    def test_validate(self):
        with pytest.raises(ConfigError):
            ProviderConfig(type="mystery", url="u", model="m").validate()
        with pytest.raises(ConfigError):
            ProviderConfig(type="openai", url="", model="m").validate()

    def test_option_requires_enable_flag(self):
        config = ProviderConfig(options={"temperature": 0.1}, options_enabled={"temperature": False})
        assert config.option("temperature") is None
        assert config.option("temperature", 1.0) == 1.0
        config.options_enabled["temperature"] = True
        assert config.option("temperature") == 0.1

    def test_to_dict_round_trip(self):
        config = ProviderConfig(id="x", custom_headers=[CustomHeader(key="A", value="1", enabled=False)])
        again = ProviderConfig.from_dict(config.to_dict())
        assert again == config


class TestConfigManager:
    def test_workspace_overrides_global(self, tmp_path, monkeypatch):
        home = tmp_path / "home"
        workspace = tmp_path / "ws"
        (workspace / ".chatcore").mkdir(parents=True)
        home.mkdir()
        monkeypatch.setenv("HOME", str(home))
        (home / ".chatcore.json").write_text(json.dumps({
            "configs": {"main": {"type": "gemini", "url": "https://g", "model": "gemini-a", "apiKey": "k1"}},
        }), encoding="utf-8")
        (workspace / ".chatcore" / "config.json").write_text(json.dumps({
            "configs": {"main": {"model": "gemini-b"}, "alt": {"type": "openai", "url": "https://o", "model": "o"}},
        }), encoding="utf-8")

        manager = ConfigManager.from_json(workspace)
        main = run(manager.get_config("main"))
        assert manager.list_ids() == ["alt", "main"]
        assert main.type == "gemini"
        assert main.model == "gemini-b"
        assert main.api_key == "k1"

    def test_from_env(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("", encoding="utf-8")
        monkeypatch.setenv("CHATCORE_API_URL", "https://api.example.com/v1")
        monkeypatch.setenv("CHATCORE_API_KEY", "sk-env")
        monkeypatch.setenv("CHATCORE_PROVIDER", "anthropic")
        monkeypatch.setenv("CHATCORE_MODEL", "claude-env")
        monkeypatch.setenv("CHATCORE_STREAM", "0")

        manager = ConfigManager.from_env(env_file, tmp_path)
        config = run(manager.get_config("default"))
        assert config.type == "anthropic"
        assert config.api_key == "sk-env"
        assert config.model == "claude-env"
        assert config.stream is False

    def test_from_env_falls_back_to_json(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("", encoding="utf-8")
        monkeypatch.delenv("CHATCORE_API_URL", raising=False)
        monkeypatch.delenv("CHATCORE_API_KEY", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / ".chatcore").mkdir()
        (tmp_path / ".chatcore" / "config.json").write_text(json.dumps({
            "configs": {"local": {"type": "openai", "url": "http://localhost:8080/v1", "model": "llama"}},
        }), encoding="utf-8")

        manager = ConfigManager.from_env(env_file, tmp_path)
        assert manager.list_ids() == ["local"]


# ============================================================
# Settings
# ============================================================

class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.is_tool_auto_exec("read_file")
        assert not settings.is_tool_auto_exec("execute_command")
        assert not settings.is_tool_auto_exec("delete_file")
        assert settings.get_max_tool_iterations() == 20
        assert settings.is_model_outer_layer_only()
        assert settings.summarize.keep_recent_rounds == 2

    def test_from_dict(self):
        settings = Settings.from_dict({
            "toolAutoExec": {"execute_command": True, "write_file": False},
            "maxToolIterations": 5,
            "checkpoint": {"enabled": True, "beforeTools": ["write_file"], "modelOuterLayerOnly": False},
            "summarize": {"keepRecentRounds": 1, "configId": "cheap", "model": "mini"},
        })
        assert settings.is_tool_auto_exec("execute_command")
        assert not settings.is_tool_auto_exec("write_file")
        assert not settings.is_tool_auto_exec("delete_file")
        assert settings.get_max_tool_iterations() == 5
        assert settings.should_create_before_tool_checkpoint("write_file")
        assert not settings.should_create_after_tool_checkpoint("write_file")
        assert not settings.is_model_outer_layer_only()
        assert settings.summarize.config_id == "cheap"
        assert settings.summarize.prompt

    def test_from_json_reads_settings_block(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "nohome"))
        (tmp_path / ".chatcore").mkdir()
        (tmp_path / ".chatcore" / "config.json").write_text(
            json.dumps({"settings": {"maxToolIterations": 7}}), encoding="utf-8"
        )
        assert Settings.from_json(tmp_path).get_max_tool_iterations() == 7
