"""Command-line interface: chat with a configured channel, inspect stored conversations."""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

from .cancellation import CancellationToken
from .channel import Channel
from .builtin_tools import create_builtin_registry
from .chat import ChatService
from .config import ConfigManager, Settings
from .logger import get_logger, init_logging
from .messages import FunctionCallPart, FunctionResponsePart, InlineDataPart, Message, TextPart
from .stores import InMemoryCheckpointManager, JsonFileConversationStore, StaticPromptProvider
from .tool_execution import ToolExecutionRouter
from .tool_loop import (
    AwaitingConfirmationEvent,
    CancelledEvent,
    ChunkEvent,
    CompletedEvent,
    ErrorEvent,
    ToolIterationEvent,
    ToolIterationLoop,
    ToolsExecutingEvent,
)

_log = get_logger("cli")

CONVERSATIONS_DIR = Path(".chatcore") / "conversations"
DEFAULT_CONVERSATION = "default"


def build_service(workspace: Path, env_path: Optional[Path] = None, system_prompt: str = "") -> ChatService:
    """Wire the stores, tools, channel and loop for one workspace."""
    configs = ConfigManager.from_env(env_path, workspace)
    settings = Settings.from_json(workspace)
    store = JsonFileConversationStore(workspace / CONVERSATIONS_DIR)
    checkpoints = InMemoryCheckpointManager(settings)
    prompts = StaticPromptProvider(system_prompt=system_prompt)
    registry = create_builtin_registry(workspace)
    channel = Channel(configs, tools=registry)
    router = ToolExecutionRouter(registry=registry, settings=settings, checkpoints=checkpoints)
    loop = ToolIterationLoop(channel, store, router, settings, checkpoints=checkpoints, prompts=prompts)
    return ChatService(configs, store, loop, settings, checkpoints=checkpoints)


def _pick_config(service: ChatService, requested: Optional[str]) -> Optional[str]:
    if requested:
        return requested
    ids = service.configs.list_ids()
    if "default" in ids:
        return "default"
    return ids[0] if ids else None


class EventPrinter:
    """Renders loop events on a rich console."""

    def __init__(self, console: Console):
        self.console = console
        self.in_thought = False

    def _end_thought(self):
        if self.in_thought:
            self.console.print()
            self.in_thought = False

    def show(self, event) -> None:
        if isinstance(event, ChunkEvent):
            for part in event.chunk.delta:
                if isinstance(part, TextPart) and part.thought:
                    self.in_thought = True
                    self.console.print(part.text, style="dim italic", end="")
                elif isinstance(part, TextPart):
                    self._end_thought()
                    self.console.print(part.text, end="", markup=False, highlight=False)
        elif isinstance(event, ToolsExecutingEvent):
            self._end_thought()
            self.console.print()
            for call in event.pending_tool_calls:
                args = json.dumps(call.args, ensure_ascii=False)
                self.console.print(f"[cyan]→ {call.name}[/cyan] [dim]{args[:200]}[/dim]")
        elif isinstance(event, ToolIterationEvent):
            for result in event.tool_results:
                outcome = result.get("result") or {}
                if outcome.get("success"):
                    self.console.print(f"[green]✓ {result['name']}[/green]")
                else:
                    self.console.print(f"[red]✗ {result['name']}[/red] [dim]{str(outcome.get('error', ''))[:200]}[/dim]")
        elif isinstance(event, CompletedEvent):
            self._end_thought()
            self.console.print()
            usage = event.content.usage if event.content else None
            if usage and usage.total_token_count:
                self.console.print(f"[dim]{usage.total_token_count} tokens[/dim]")
        elif isinstance(event, CancelledEvent):
            self.console.print("\n[yellow]Cancelled.[/yellow]")
        elif isinstance(event, ErrorEvent):
            self.console.print()
            self.console.print(Panel(event.error.get("message", ""), title=event.code, border_style="red"))


def _ask_confirmation(console: Console, event: AwaitingConfirmationEvent) -> Dict[str, bool]:
    console.print()
    decisions = {}
    for call in event.pending_tool_calls:
        console.print(Panel(json.dumps(call.args, indent=2, ensure_ascii=False), title=call.name, border_style="yellow"))
        decisions[call.id] = Confirm.ask(f"Run [bold]{call.name}[/bold]?", default=False)
    return decisions


async def run_chat(args: argparse.Namespace, console: Console) -> int:
    workspace = Path(args.workspace).resolve()
    service = build_service(workspace, Path(args.env) if args.env else None, args.system or "")
    config_id = _pick_config(service, args.config)
    if config_id is None:
        console.print("[red]No provider config found. Set CHATCORE_API_URL/CHATCORE_API_KEY or add ~/.chatcore.json.[/red]")
        return 1

    token = CancellationToken()
    if sys.platform != "win32":
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, token.cancel)

    printer = EventPrinter(console)
    events = service.chat_stream(args.conversation, config_id, args.message, cancel_token=token)
    status = 0
    while events is not None:
        pending: Optional[AwaitingConfirmationEvent] = None
        async for event in events:
            printer.show(event)
            if isinstance(event, AwaitingConfirmationEvent):
                pending = event
            elif isinstance(event, ErrorEvent):
                status = 1
        events = None
        if pending is not None:
            decisions = _ask_confirmation(console, pending)
            note = Prompt.ask("Note for the model (optional)", default="", show_default=False)
            events = service.confirm_tools(args.conversation, config_id, decisions, annotation=note or None, cancel_token=token)
    return status


def _describe(message: Message) -> List[str]:
    lines = []
    for part in message.parts:
        if isinstance(part, TextPart):
            lines.append(f"[dim]{part.text}[/dim]" if part.thought else part.text)
        elif isinstance(part, FunctionCallPart):
            lines.append(f"[cyan]→ {part.name}({json.dumps(part.args, ensure_ascii=False)[:200]})[/cyan]")
        elif isinstance(part, FunctionResponsePart):
            ok = part.response.get("success")
            lines.append(f"[{'green' if ok else 'red'}]← {part.name}[/]")
        elif isinstance(part, InlineDataPart):
            lines.append(f"[magenta]<{part.mime_type}>[/magenta]")
    return lines


async def run_history(args: argparse.Namespace, console: Console) -> int:
    workspace = Path(args.workspace).resolve()
    store = JsonFileConversationStore(workspace / CONVERSATIONS_DIR)
    if args.list:
        for conversation_id in store.list_conversations():
            console.print(conversation_id)
        return 0
    history = await store.get_history(args.conversation)
    if not history:
        console.print(f"[dim]No messages in '{args.conversation}'.[/dim]")
        return 0
    for index, message in enumerate(history):
        title = "summary" if message.is_summary else ("tool" if message.is_function_response else message.role)
        console.print(Panel("\n".join(_describe(message)) or "[dim](empty)[/dim]", title=f"{index} {title}"))
    return 0


async def run_summarize(args: argparse.Namespace, console: Console) -> int:
    workspace = Path(args.workspace).resolve()
    service = build_service(workspace, Path(args.env) if args.env else None)
    config_id = _pick_config(service, args.config)
    if config_id is None:
        console.print("[red]No provider config found.[/red]")
        return 1
    result = await service.summarize_context(args.conversation, config_id)
    if not result["success"]:
        console.print(Panel(result["error"]["message"], title=result["error"]["code"], border_style="red"))
        return 1
    console.print(Panel(result["summary"].text(), title=f"Summarized {result['summarized_message_count']} messages"))
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(prog="chatcore", description="Multi-provider chat with tool calling")
    parser.add_argument("--workspace", "-w", default=".", help="Workspace directory (default: current directory)")
    parser.add_argument("--env", "-e", default=None, help="Path to .env file")
    parser.add_argument("--conversation", "-c", default=DEFAULT_CONVERSATION, help="Conversation id")
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Send a message and stream the reply")
    chat.add_argument("message", help="Message text")
    chat.add_argument("--config", default=None, help="Provider config id")
    chat.add_argument("--system", default=None, help="Extra system prompt")

    history = sub.add_parser("history", help="Print a stored conversation")
    history.add_argument("--list", "-l", action="store_true", help="List stored conversations")

    summarize = sub.add_parser("summarize", help="Summarize older rounds of a conversation")
    summarize.add_argument("--config", default=None, help="Provider config id")

    args = parser.parse_args()
    init_logging(str(Path(args.workspace).resolve()))
    console = Console()

    runners = {"chat": run_chat, "history": run_history, "summarize": run_summarize}
    sys.exit(asyncio.run(runners[args.command](args, console)))


if __name__ == "__main__":
    main()
