"""Local tool registry."""

import asyncio
import inspect
import json
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from .cancellation import CancellationToken
from .messages import ToolDeclaration


class MultimodalItem(BaseModel):
    """Binary output of a tool (an image, a PDF page, ...)."""

    mimeType: str
    data: str
    name: Optional[str] = None


class ToolResult(BaseModel):
    """Result of a tool execution."""

    success: bool
    output: Any = None
    error: Optional[str] = None
    multimodal: List[MultimodalItem] = []

    def to_response(self) -> Dict[str, Any]:
        """The dict stored as the function response (multimodal kept for the router)."""
        response: Dict[str, Any] = {"success": self.success}
        if self.output is not None:
            response["output"] = self.output
        if self.error is not None:
            response["error"] = self.error
        if self.multimodal:
            response["multimodal"] = [item.model_dump(exclude_none=True) for item in self.multimodal]
        return response


@dataclass
class ToolContext:
    """What a tool handler may look at besides its arguments."""

    multimodal_enabled: bool = False
    capability: Any = None
    cancel_token: Optional[CancellationToken] = None
    tool_id: str = ""
    tool_options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Tool:
    """Definition of a tool that can be called by the LLM."""

    name: str
    description: str
    parameters: Dict[str, Any]
    function: Callable
    required_params: List[str] = field(default_factory=list)

    def declaration(self) -> ToolDeclaration:
        return ToolDeclaration(
            name=self.name,
            description=self.description,
            parameters={"type": "object", "properties": self.parameters, "required": self.required_params},
        )

    def _wants_context(self) -> bool:
        try:
            return "context" in inspect.signature(self.function).parameters
        except (TypeError, ValueError):
            return False

    async def execute(self, args: Dict[str, Any], context: Optional[ToolContext] = None) -> ToolResult:
        """Run the handler and wrap its outcome in a ToolResult.

        Plain return values become successful results; exceptions become
        failed ones carrying the traceback.
        """
        kwargs = dict(args or {})
        if self._wants_context():
            kwargs["context"] = context or ToolContext()
        try:
            # Handle both sync and async functions
            if asyncio.iscoroutinefunction(self.function):
                result = await self.function(**kwargs)
            else:
                result = self.function(**kwargs)
        except Exception as e:
            return ToolResult(
                success=False,
                error=f"{type(e).__name__}: {str(e)}\n{traceback.format_exc()}"
            )
        if isinstance(result, ToolResult):
            return result
        return ToolResult(success=True, output=result)


class ToolRegistry:
    """Name-keyed set of local tools exposed to the model."""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Add ``tool``, replacing any tool registered under the same name."""
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        description: str,
        parameters: Dict[str, Any],
        required: List[str] = None,
    ) -> Callable:
        """Decorator to register a function as a tool."""
        def decorator(func: Callable) -> Callable:
            self.register(Tool(
                name=name,
                description=description,
                parameters=parameters,
                function=func,
                required_params=required or [],
            ))
            return func
        return decorator

    def get(self, name: str) -> Optional[Tool]:
        """Look up a tool; ``None`` when the name is unknown."""
        return self._tools.get(name)

    def declarations(self) -> List[ToolDeclaration]:
        return [tool.declaration() for tool in self._tools.values()]
