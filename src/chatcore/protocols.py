"""Collaborators the orchestration core talks to.

The core only ever goes through these narrow interfaces; ``stores.py``
ships in-memory and JSON-file implementations good enough for the CLI
and the tests.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .messages import Message, ToolDeclaration


@dataclass
class CheckpointRecord:
    """A snapshot taken around a message or a tool batch."""
    id: str
    conversation_id: str
    message_index: int
    tool_name: str
    phase: str  # "before" | "after"
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "messageIndex": self.message_index,
            "toolName": self.tool_name,
            "phase": self.phase,
            "timestamp": self.timestamp,
        }


@dataclass
class McpCallResult:
    success: bool
    content: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


class ConversationStore(Protocol):
    """Message persistence.  Returned histories are copies."""

    async def get_history(self, conversation_id: str) -> List[Message]:
        ...

    async def add_message(self, conversation_id: str, message: Message) -> None:
        ...

    async def insert_message(self, conversation_id: str, index: int, message: Message) -> None:
        ...

    async def update_message(self, conversation_id: str, index: int, message: Message) -> None:
        ...

    async def delete_message(self, conversation_id: str, index: int) -> None:
        ...

    async def delete_to_message(self, conversation_id: str, index: int) -> int:
        """Delete ``history[index:]`` and return how many messages went."""
        ...

    async def get_custom_metadata(self, conversation_id: str, key: str) -> Any:
        ...

    async def set_custom_metadata(self, conversation_id: str, key: str, value: Any) -> None:
        ...


class SettingsProvider(Protocol):
    def is_tool_auto_exec(self, name: str) -> bool:
        ...

    def get_max_tool_iterations(self) -> int:
        ...

    def should_create_before_tool_checkpoint(self, tool_name: str) -> bool:
        ...

    def should_create_after_tool_checkpoint(self, tool_name: str) -> bool:
        ...

    def should_create_before_message_checkpoint(self, role: str) -> bool:
        ...

    def should_create_after_message_checkpoint(self, role: str) -> bool:
        ...

    def is_model_outer_layer_only(self) -> bool:
        ...


class CheckpointManager(Protocol):
    async def create_checkpoint(
        self, conversation_id: str, message_index: int, tool_name: str, phase: str
    ) -> Optional[CheckpointRecord]:
        ...


class PromptProvider(Protocol):
    def get_system_prompt(self) -> str:
        """Static prompt text appended to the channel's system instruction."""
        ...

    def get_dynamic_context_messages(self) -> List[Message]:
        """Per-request context (file tree, diagnostics, ...), never persisted."""
        ...

    def get_mcp_tools_content(self) -> str:
        ...


class McpBridge(Protocol):
    async def call_tool(self, server_id: str, tool_name: str, arguments: Dict[str, Any]) -> McpCallResult:
        ...

    def list_declarations(self) -> List[ToolDeclaration]:
        ...
