"""Configuration management for chatcore.

Provider configs are named ("channels") and loaded from JSON files with
layered priority, or built from environment variables for the default
channel.  Settings hold the policy knobs the tool loop consults.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Union
from dotenv import load_dotenv

from .errors import ConfigError
from .logger import get_logger

_log = get_logger("config")

PROVIDER_TYPES = ("gemini", "openai", "anthropic", "openai-responses")
TOOL_MODES = ("function_call", "xml", "json")

DEFAULT_MAX_TOOL_ITERATIONS = 20

DEFAULT_TOOL_AUTO_EXEC = {
    "delete_file": False,
    "execute_command": False,
}

DEFAULT_SUMMARIZE_PROMPT = (
    "Please summarize the above conversation, keeping key information and "
    "context points while removing redundant content."
)


def get_global_config_path() -> Path:
    """Get path to global config: ~/.chatcore.json"""
    return Path.home() / ".chatcore.json"


def get_workspace_config_path(workspace: Optional[Path] = None) -> Path:
    """Get path to workspace config: workspace/.chatcore/config.json"""
    ws = workspace or Path.cwd()
    return ws / ".chatcore" / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, IOError) as e:
            _log.warning("ignoring unreadable config %s: %s", path, e)
    return {}


def _snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(w.capitalize() for w in rest)


@dataclass
class CustomHeader:
    key: str
    value: str = ""
    enabled: bool = True


@dataclass
class ProviderConfig:
    """One model channel: endpoint, credentials, wire format and trim policy."""

    id: str = "default"
    type: str = "openai"
    url: str = ""
    api_key: str = ""
    model: str = ""
    enabled: bool = True
    stream: bool = True
    tool_mode: str = "function_call"
    timeout: float = 600.0
    use_authorization_header: bool = False

    system_instruction: str = ""
    custom_headers: List[CustomHeader] = field(default_factory=list)
    custom_headers_enabled: bool = False
    custom_body: Dict[str, Any] = field(default_factory=dict)
    custom_body_enabled: bool = False
    options: Dict[str, Any] = field(default_factory=dict)
    options_enabled: Dict[str, bool] = field(default_factory=dict)

    max_context_tokens: int = 128000
    context_threshold_enabled: bool = False
    context_threshold: Union[int, str] = "80%"
    context_trim_extra_cut: Union[int, str] = 0

    multimodal_tools_enabled: bool = False
    send_history_thoughts: bool = False
    send_history_thought_signatures: bool = False
    send_current_thoughts: bool = False
    send_current_thought_signatures: bool = True
    history_thinking_rounds: int = -1

    def option(self, name: str, default: Any = None) -> Any:
        """Return ``options[name]`` only when it is switched on in ``options_enabled``."""
        if self.options_enabled.get(name) and self.options.get(name) is not None:
            return self.options[name]
        return default

    def enabled_headers(self) -> Dict[str, str]:
        if not self.custom_headers_enabled:
            return {}
        return {
            h.key.strip(): h.value or ""
            for h in self.custom_headers
            if h.enabled and h.key and h.key.strip()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_id: Optional[str] = None) -> "ProviderConfig":
        """Build from a stored config; accepts snake_case or camelCase keys."""
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            for key in (f.name, _snake_to_camel(f.name)):
                if key in data:
                    kwargs[f.name] = data[key]
                    break
        headers = kwargs.get("custom_headers") or []
        kwargs["custom_headers"] = [
            h if isinstance(h, CustomHeader) else CustomHeader(
                key=h.get("key", ""), value=h.get("value", ""), enabled=h.get("enabled", True)
            )
            for h in headers
        ]
        body = kwargs.get("custom_body")
        if isinstance(body, str):
            try:
                kwargs["custom_body"] = json.loads(body) if body.strip() else {}
            except json.JSONDecodeError:
                raise ConfigError(f"customBody is not valid JSON for config '{config_id}'")
        if config_id is not None:
            kwargs["id"] = config_id
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "custom_headers":
                value = [{"key": h.key, "value": h.value, "enabled": h.enabled} for h in value]
            out[_snake_to_camel(f.name)] = value
        return out

    def validate(self) -> bool:
        """Validate the configuration."""
        if self.type not in PROVIDER_TYPES:
            raise ConfigError(f"Unknown provider type '{self.type}' (expected one of {', '.join(PROVIDER_TYPES)})")
        if self.tool_mode not in TOOL_MODES:
            raise ConfigError(f"Unknown tool mode '{self.tool_mode}' (expected one of {', '.join(TOOL_MODES)})")
        if not self.url:
            raise ConfigError(f"API URL is required for config '{self.id}'.")
        if not self.model:
            raise ConfigError(f"Model is required for config '{self.id}'.")
        return True


class ConfigManager:
    """Named provider configs loaded from layered JSON files.

    Priority (later overrides earlier):
    1. ~/.chatcore.json (global)
    2. workspace/.chatcore/config.json (workspace-specific)

    Both files hold ``{"configs": {"<id>": {...}}, "settings": {...}}``.
    """

    def __init__(self, configs: Optional[Dict[str, ProviderConfig]] = None):
        self._configs: Dict[str, ProviderConfig] = dict(configs or {})

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "ConfigManager":
        data: Dict[str, Any] = {}
        for path in (get_global_config_path(), get_workspace_config_path(workspace)):
            for config_id, raw in load_json_config(path).get("configs", {}).items():
                merged = dict(data.get(config_id, {}))
                merged.update(raw)
                data[config_id] = merged
        configs = {cid: ProviderConfig.from_dict(raw, cid) for cid, raw in data.items()}
        _log.info("loaded %d provider configs: %s", len(configs), ", ".join(sorted(configs)) or "-")
        return cls(configs)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None, workspace: Optional[Path] = None) -> "ConfigManager":
        """Build the ``default`` config from CHATCORE_* variables (falls back to JSON)."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        api_url = os.getenv("CHATCORE_API_URL", "")
        api_key = os.getenv("CHATCORE_API_KEY", "")

        if not api_url or not api_key:
            return cls.from_json(workspace)

        config = ProviderConfig(
            id="default",
            type=os.getenv("CHATCORE_PROVIDER", "openai"),
            url=api_url,
            api_key=api_key,
            model=os.getenv("CHATCORE_MODEL", "gpt-4o"),
            tool_mode=os.getenv("CHATCORE_TOOL_MODE", "function_call"),
            stream=os.getenv("CHATCORE_STREAM", "1") != "0",
            max_context_tokens=int(os.getenv("CHATCORE_MAX_CONTEXT_TOKENS", "128000")),
            context_threshold_enabled=os.getenv("CHATCORE_CONTEXT_TRIM", "0") == "1",
            context_threshold=os.getenv("CHATCORE_CONTEXT_THRESHOLD", "80%"),
            system_instruction=os.getenv("CHATCORE_SYSTEM_PROMPT", ""),
        )
        return cls({"default": config})

    async def get_config(self, config_id: str) -> Optional[ProviderConfig]:
        return self._configs.get(config_id)

    def add(self, config: ProviderConfig) -> None:
        self._configs[config.id] = config

    def list_ids(self) -> List[str]:
        return sorted(self._configs)


@dataclass
class CheckpointSettings:
    enabled: bool = False
    before_tools: List[str] = field(default_factory=list)
    after_tools: List[str] = field(default_factory=list)
    before_messages: List[str] = field(default_factory=list)
    after_messages: List[str] = field(default_factory=list)
    model_outer_layer_only: bool = True


@dataclass
class SummarizeSettings:
    keep_recent_rounds: int = 2
    prompt: str = DEFAULT_SUMMARIZE_PROMPT
    config_id: str = ""
    model: str = ""


@dataclass
class Settings:
    """Policy lookups consumed by the tool loop and the chat flows."""

    tool_auto_exec: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_TOOL_AUTO_EXEC))
    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS
    checkpoint: CheckpointSettings = field(default_factory=CheckpointSettings)
    summarize: SummarizeSettings = field(default_factory=SummarizeSettings)

    def is_tool_auto_exec(self, name: str) -> bool:
        # Tools not listed run without confirmation.
        return self.tool_auto_exec.get(name, True)

    def get_max_tool_iterations(self) -> int:
        return self.max_tool_iterations

    def should_create_before_tool_checkpoint(self, tool_name: str) -> bool:
        return self.checkpoint.enabled and tool_name in self.checkpoint.before_tools

    def should_create_after_tool_checkpoint(self, tool_name: str) -> bool:
        return self.checkpoint.enabled and tool_name in self.checkpoint.after_tools

    def should_create_before_message_checkpoint(self, role: str) -> bool:
        return self.checkpoint.enabled and role in self.checkpoint.before_messages

    def should_create_after_message_checkpoint(self, role: str) -> bool:
        return self.checkpoint.enabled and role in self.checkpoint.after_messages

    def is_model_outer_layer_only(self) -> bool:
        return self.checkpoint.model_outer_layer_only

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        auto_exec = dict(DEFAULT_TOOL_AUTO_EXEC)
        auto_exec.update(data.get("toolAutoExec", {}))
        cp = data.get("checkpoint", {})
        sm = data.get("summarize", {})
        return cls(
            tool_auto_exec=auto_exec,
            max_tool_iterations=int(data.get("maxToolIterations", DEFAULT_MAX_TOOL_ITERATIONS)),
            checkpoint=CheckpointSettings(
                enabled=bool(cp.get("enabled", False)),
                before_tools=list(cp.get("beforeTools", [])),
                after_tools=list(cp.get("afterTools", [])),
                before_messages=list(cp.get("beforeMessages", [])),
                after_messages=list(cp.get("afterMessages", [])),
                model_outer_layer_only=bool(cp.get("modelOuterLayerOnly", True)),
            ),
            summarize=SummarizeSettings(
                keep_recent_rounds=int(sm.get("keepRecentRounds", 2)),
                prompt=sm.get("prompt") or DEFAULT_SUMMARIZE_PROMPT,
                config_id=sm.get("configId", ""),
                model=sm.get("model", ""),
            ),
        )

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "Settings":
        data: Dict[str, Any] = {}
        for path in (get_global_config_path(), get_workspace_config_path(workspace)):
            data.update(load_json_config(path).get("settings", {}))
        return cls.from_dict(data)
