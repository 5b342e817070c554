"""Workspace file and shell tools.

Each tool is registered on a ``ToolRegistry`` bound to one workspace
directory; relative paths resolve against it and paths that escape it are
refused.
"""

import asyncio
import base64
import fnmatch
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from .tool_registry import MultimodalItem, ToolContext, ToolRegistry, ToolResult

MEDIA_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".pdf"}
DEFAULT_COMMAND_TIMEOUT = 60.0
MAX_LIST_ENTRIES = 500


def resolve_in_workspace(workspace: Path, file_path: str) -> Path:
    root = workspace.resolve()
    path = Path(file_path)
    if not path.is_absolute():
        path = root / path
    path = path.resolve()
    if path != root and root not in path.parents:
        raise PermissionError(f"Path is outside the workspace: {file_path}")
    return path


def create_builtin_registry(workspace: Path) -> ToolRegistry:
    """Registry with read_file, write_file, list_directory, delete_file and execute_command."""
    workspace = Path(workspace)
    registry = ToolRegistry()

    @registry.register_function(
        name="read_file",
        description="Read a file from the workspace. Images and PDFs are returned as attachments when supported.",
        parameters={
            "path": {"type": "string", "description": "File path relative to the workspace"},
            "start_line": {"type": "integer", "description": "1-based first line"},
            "end_line": {"type": "integer", "description": "1-based last line (inclusive)"},
        },
        required=["path"],
    )
    async def read_file(
        path: str,
        start_line: Optional[int] = None,
        end_line: Optional[int] = None,
        context: Optional[ToolContext] = None,
    ) -> ToolResult:
        target = resolve_in_workspace(workspace, path)
        if not target.is_file():
            return ToolResult(success=False, error=f"File not found: {path}")

        if target.suffix.lower() in MEDIA_SUFFIXES:
            capability = context.capability if context else None
            is_pdf = target.suffix.lower() == ".pdf"
            supported = capability is not None and (
                capability.supports_documents if is_pdf else capability.supports_images
            )
            if not (context and context.multimodal_enabled and supported):
                return ToolResult(success=False, error=f"Cannot read binary file {path} on this channel")
            async with aiofiles.open(target, "rb") as f:
                raw = await f.read()
            mime = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
            return ToolResult(
                success=True,
                output=f"Read {target.name} ({len(raw)} bytes)",
                multimodal=[MultimodalItem(mimeType=mime, data=base64.b64encode(raw).decode("ascii"), name=target.name)],
            )

        async with aiofiles.open(target, "r", encoding="utf-8", errors="replace") as f:
            content = await f.read()
        if start_line is not None or end_line is not None:
            lines = content.splitlines(keepends=True)
            start_idx = (start_line - 1) if start_line else 0
            end_idx = end_line if end_line else len(lines)
            content = "".join(lines[start_idx:end_idx])
        return ToolResult(success=True, output=content)

    @registry.register_function(
        name="write_file",
        description="Write text to a file in the workspace, creating parent directories.",
        parameters={
            "path": {"type": "string", "description": "File path relative to the workspace"},
            "content": {"type": "string", "description": "Full file content"},
        },
        required=["path", "content"],
    )
    async def write_file(path: str, content: str) -> str:
        target = resolve_in_workspace(workspace, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(target, "w", encoding="utf-8") as f:
            await f.write(content)
        return f"Successfully wrote {len(content)} bytes to {path}"

    @registry.register_function(
        name="list_directory",
        description="List the entries of a workspace directory.",
        parameters={
            "path": {"type": "string", "description": "Directory relative to the workspace"},
            "recursive": {"type": "boolean", "description": "Descend into subdirectories"},
            "pattern": {"type": "string", "description": "Glob on entry names, e.g. *.py"},
        },
    )
    async def list_directory(path: str = ".", recursive: bool = False, pattern: Optional[str] = None) -> List[Dict[str, Any]]:
        target = resolve_in_workspace(workspace, path)
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        root = workspace.resolve()
        results = []
        for item in sorted(target.rglob("*") if recursive else target.iterdir()):
            if pattern and not fnmatch.fnmatch(item.name, pattern):
                continue
            try:
                results.append({
                    "path": str(item.relative_to(root)),
                    "is_dir": item.is_dir(),
                    "size": item.stat().st_size if item.is_file() else None,
                })
            except OSError:
                continue
            if len(results) >= MAX_LIST_ENTRIES:
                break
        return results

    @registry.register_function(
        name="delete_file",
        description="Delete a file from the workspace.",
        parameters={"path": {"type": "string", "description": "File path relative to the workspace"}},
        required=["path"],
    )
    async def delete_file(path: str) -> str:
        target = resolve_in_workspace(workspace, path)
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        target.unlink()
        return f"Deleted {path}"

    @registry.register_function(
        name="execute_command",
        description="Run a shell command in the workspace directory.",
        parameters={
            "command": {"type": "string", "description": "Command line to run"},
            "timeout": {"type": "number", "description": "Seconds before the command is killed"},
        },
        required=["command"],
    )
    async def execute_command(command: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> ToolResult:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ToolResult(success=False, error=f"Command timed out after {timeout} seconds")
        output = {
            "stdout": stdout.decode("utf-8", errors="replace"),
            "stderr": stderr.decode("utf-8", errors="replace"),
            "return_code": process.returncode or 0,
        }
        return ToolResult(success=process.returncode == 0, output=output,
                          error=None if process.returncode == 0 else f"Exit code {process.returncode}")

    return registry
