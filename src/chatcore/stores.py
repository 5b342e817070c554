"""Reference implementations of the collaborator interfaces."""

import copy
import json
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from .logger import get_logger
from .messages import Message
from .protocols import CheckpointRecord

_log = get_logger("stores")


class InMemoryConversationStore:
    """Conversations kept in a dict; every read hands out deep copies."""

    def __init__(self):
        self._messages: Dict[str, List[Message]] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}

    def _history(self, conversation_id: str) -> List[Message]:
        return self._messages.setdefault(conversation_id, [])

    async def get_history(self, conversation_id: str) -> List[Message]:
        return [m.copy() for m in self._history(conversation_id)]

    async def add_message(self, conversation_id: str, message: Message) -> None:
        self._history(conversation_id).append(message.copy())
        await self._save(conversation_id)

    async def insert_message(self, conversation_id: str, index: int, message: Message) -> None:
        self._history(conversation_id).insert(index, message.copy())
        await self._save(conversation_id)

    async def update_message(self, conversation_id: str, index: int, message: Message) -> None:
        history = self._history(conversation_id)
        if not 0 <= index < len(history):
            raise IndexError(f"message index {index} out of range")
        history[index] = message.copy()
        await self._save(conversation_id)

    async def delete_message(self, conversation_id: str, index: int) -> None:
        history = self._history(conversation_id)
        if 0 <= index < len(history):
            del history[index]
            await self._save(conversation_id)

    async def delete_to_message(self, conversation_id: str, index: int) -> int:
        history = self._history(conversation_id)
        removed = max(0, len(history) - max(index, 0))
        del history[max(index, 0):]
        await self._save(conversation_id)
        return removed

    async def get_custom_metadata(self, conversation_id: str, key: str) -> Any:
        return copy.deepcopy(self._metadata.get(conversation_id, {}).get(key))

    async def set_custom_metadata(self, conversation_id: str, key: str, value: Any) -> None:
        meta = self._metadata.setdefault(conversation_id, {})
        if value is None:
            meta.pop(key, None)
        else:
            meta[key] = copy.deepcopy(value)
        await self._save(conversation_id)

    def list_conversations(self) -> List[str]:
        return sorted(self._messages)

    async def _save(self, conversation_id: str) -> None:
        """Hook for persistent subclasses."""


class JsonFileConversationStore(InMemoryConversationStore):
    """One ``<id>.json`` file per conversation under ``directory``.

    File shape: ``{"messages": [...], "metadata": {...}}`` with messages in
    the camelCase storage form.
    """

    def __init__(self, directory: Path):
        super().__init__()
        self.directory = Path(directory)
        self._loaded: set = set()

    def _path(self, conversation_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in conversation_id)
        return self.directory / f"{safe}.json"

    async def _load(self, conversation_id: str) -> None:
        if conversation_id in self._loaded:
            return
        self._loaded.add(conversation_id)
        path = self._path(conversation_id)
        if not path.exists():
            return
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
        data = json.loads(raw) if raw.strip() else {}
        self._messages[conversation_id] = [Message.from_dict(m) for m in data.get("messages", [])]
        self._metadata[conversation_id] = dict(data.get("metadata", {}))
        _log.debug("loaded conversation %s (%d messages)", conversation_id, len(self._messages[conversation_id]))

    async def _save(self, conversation_id: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = {
            "messages": [m.to_dict() for m in self._messages.get(conversation_id, [])],
            "metadata": self._metadata.get(conversation_id, {}),
        }
        async with aiofiles.open(self._path(conversation_id), "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, ensure_ascii=False, indent=2))

    async def get_history(self, conversation_id: str) -> List[Message]:
        await self._load(conversation_id)
        return await super().get_history(conversation_id)

    async def add_message(self, conversation_id: str, message: Message) -> None:
        await self._load(conversation_id)
        await super().add_message(conversation_id, message)

    async def insert_message(self, conversation_id: str, index: int, message: Message) -> None:
        await self._load(conversation_id)
        await super().insert_message(conversation_id, index, message)

    async def update_message(self, conversation_id: str, index: int, message: Message) -> None:
        await self._load(conversation_id)
        await super().update_message(conversation_id, index, message)

    async def delete_message(self, conversation_id: str, index: int) -> None:
        await self._load(conversation_id)
        await super().delete_message(conversation_id, index)

    async def delete_to_message(self, conversation_id: str, index: int) -> int:
        await self._load(conversation_id)
        return await super().delete_to_message(conversation_id, index)

    async def get_custom_metadata(self, conversation_id: str, key: str) -> Any:
        await self._load(conversation_id)
        return await super().get_custom_metadata(conversation_id, key)

    async def set_custom_metadata(self, conversation_id: str, key: str, value: Any) -> None:
        await self._load(conversation_id)
        await super().set_custom_metadata(conversation_id, key, value)

    def list_conversations(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class InMemoryCheckpointManager:
    """Records checkpoint requests; gated by the settings' checkpoint predicates."""

    def __init__(self, settings=None):
        self.settings = settings
        self.records: List[CheckpointRecord] = []

    def _allowed(self, tool_name: str, phase: str) -> bool:
        if self.settings is None:
            return True
        if tool_name.startswith("message:"):
            role = tool_name.split(":", 1)[1]
            if phase == "before":
                return self.settings.should_create_before_message_checkpoint(role)
            return self.settings.should_create_after_message_checkpoint(role)
        if phase == "before":
            return self.settings.should_create_before_tool_checkpoint(tool_name)
        return self.settings.should_create_after_tool_checkpoint(tool_name)

    async def create_checkpoint(
        self, conversation_id: str, message_index: int, tool_name: str, phase: str
    ) -> Optional[CheckpointRecord]:
        if not self._allowed(tool_name, phase):
            return None
        record = CheckpointRecord(
            id=uuid.uuid4().hex[:12],
            conversation_id=conversation_id,
            message_index=message_index,
            tool_name=tool_name,
            phase=phase,
            timestamp=time.time(),
        )
        self.records.append(record)
        return record


class StaticPromptProvider:
    """Fixed prompt fragments."""

    def __init__(
        self,
        system_prompt: str = "",
        dynamic_context: Optional[List[Message]] = None,
        mcp_tools_content: str = "",
    ):
        self.system_prompt = system_prompt
        self.dynamic_context = list(dynamic_context or [])
        self.mcp_tools_content = mcp_tools_content

    def get_system_prompt(self) -> str:
        return self.system_prompt

    def get_dynamic_context_messages(self) -> List[Message]:
        return [m.copy() for m in self.dynamic_context]

    def get_mcp_tools_content(self) -> str:
        return self.mcp_tools_content
