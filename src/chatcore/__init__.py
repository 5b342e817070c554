"""Multi-provider chat core with tool calling, streaming and context trimming."""

from .cancellation import CancellationToken
from .channel import Channel
from .chat import ChatService
from .config import ConfigManager, ProviderConfig, Settings
from .context_trim import ContextTrimEngine
from .errors import ChannelError, ErrorCode, ErrorType
from .messages import Message, ToolCall
from .stores import InMemoryConversationStore, JsonFileConversationStore
from .stream_accumulator import StreamAccumulator
from .tool_execution import ToolExecutionRouter
from .tool_loop import ToolIterationLoop
from .tool_registry import Tool, ToolRegistry, ToolResult

__version__ = "0.1.0"
__all__ = [
    "CancellationToken",
    "Channel",
    "ChatService",
    "ConfigManager",
    "ProviderConfig",
    "Settings",
    "ContextTrimEngine",
    "ChannelError",
    "ErrorCode",
    "ErrorType",
    "Message",
    "ToolCall",
    "InMemoryConversationStore",
    "JsonFileConversationStore",
    "StreamAccumulator",
    "ToolExecutionRouter",
    "ToolIterationLoop",
    "Tool",
    "ToolRegistry",
    "ToolResult",
]
