"""Rich console output for inbox tool calls and operator messages.

Tool calls get a start panel (agent, ticket, arguments) and an end panel
(duration, outcome, result or error). Everything prints to stderr so the stdio
MCP transport on stdout stays clean.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from rich import box
from rich.console import Console, Group, RenderableType
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

console = Console(stderr=True, soft_wrap=True)

_HIDDEN_PARAMS = frozenset({"ctx", "context", "_ctx"})


@dataclass
class ToolCallContext:
    """State of one tool call between its start and end panels."""

    tool_name: str
    kwargs: dict[str, Any]
    agent: Optional[str] = None
    ticket: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[BaseException] = None
    success: bool = True
    _created_at: datetime = field(default_factory=datetime.now)

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time else time.perf_counter()
        return (end - self.start_time) * 1000

    @property
    def timestamp(self) -> str:
        return self._created_at.strftime("%H:%M:%S.%f")[:-3]


def _json(data: Any, max_length: int = 2000) -> str:
    text = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    if len(text) > max_length:
        text = text[:max_length] + "\n... (truncated)"
    return text


def _json_panel(title: str, data: Any, border_style: str, *, max_length: int = 2000) -> Panel:
    return Panel(
        Syntax(_json(data, max_length), "json", theme="monokai", line_numbers=False, word_wrap=True),
        title=title,
        border_style=border_style,
        box=box.ROUNDED,
        padding=(0, 1),
    )


def _info_table(ctx: ToolCallContext) -> Table:
    table = Table(show_header=False, box=box.SIMPLE, padding=(0, 1), show_edge=False)
    table.add_column("Key", style="bold yellow", width=10)
    table.add_column("Value", overflow="fold")
    table.add_row("Tool", f"[bold green]{ctx.tool_name}[/bold green]")
    table.add_row("Time", f"[dim]{ctx.timestamp}[/dim]")
    if ctx.agent:
        table.add_row("Agent", f"[magenta]{escape(ctx.agent)}[/magenta]")
    if ctx.ticket:
        table.add_row("Ticket", f"[cyan]{escape(ctx.ticket)}[/cyan]")
    if ctx.end_time:
        style = "green" if ctx.duration_ms < 100 else ("yellow" if ctx.duration_ms < 1000 else "red")
        table.add_row("Duration", f"[{style}]{ctx.duration_ms:.1f}ms[/{style}]")
        table.add_row("Status", "[bold green]ok[/bold green]" if ctx.success else "[bold red]failed[/bold red]")
    return table


def log_tool_call_start(ctx: ToolCallContext) -> None:
    components: list[RenderableType] = [_info_table(ctx)]
    params = {key: value for key, value in ctx.kwargs.items() if key not in _HIDDEN_PARAMS}
    if params:
        components.append(_json_panel("Arguments", params, "blue"))
    console.print(
        Panel(
            Group(*components),
            title=f"[bold]▶ {ctx.tool_name}[/bold]",
            border_style="blue",
            box=box.ROUNDED,
        )
    )


def log_tool_call_end(ctx: ToolCallContext) -> None:
    if not ctx.end_time:
        ctx.end_time = time.perf_counter()
    components: list[RenderableType] = [
        Rule(style="green" if ctx.success else "red"),
        _info_table(ctx),
    ]
    if ctx.error is not None:
        error_info: dict[str, Any] = {"error_type": type(ctx.error).__name__, "error_message": str(ctx.error)}
        error_data = getattr(ctx.error, "data", None)
        if error_data:
            error_info["error_data"] = error_data
        components.append(_json_panel("Error", error_info, "red"))
    else:
        components.append(_json_panel("Result", ctx.result, "green"))
    console.print(
        Panel(
            Group(*components),
            title=f"[bold]{'✔' if ctx.success else '✘'} {ctx.tool_name}[/bold]",
            border_style="green" if ctx.success else "red",
            box=box.ROUNDED,
        )
    )


def _log(prefix: str, message: str, style: str, details: dict[str, Any]) -> None:
    console.print(Text(f"{prefix} {message}", style=style))
    if details:
        console.print(_json_panel("Details", details, style, max_length=500))


def log_error(message: str, error: Optional[BaseException] = None, **kwargs: Any) -> None:
    details = dict(kwargs)
    if error is not None:
        details["error_type"] = type(error).__name__
        details["error_message"] = str(error)
    _log("✘", message, "red", details)


def display_startup_banner(settings: Any, host: str, port: int, path: str) -> None:
    """Print a short summary of the HTTP server configuration."""
    table = Table(show_header=False, box=box.SIMPLE, show_edge=False)
    table.add_column("Key", style="bold yellow")
    table.add_column("Value")
    table.add_row("Endpoint", f"http://{host}:{port}{path}")
    table.add_row("Environment", settings.environment)
    table.add_row("Database", settings.database.url)
    table.add_row("Mention roster", ", ".join(settings.messaging.mention_roster))
    table.add_row(
        "Notification cleanup",
        f"every {settings.notifications.cleanup_interval_seconds}s, older than {settings.notifications.cleanup_hours}h"
        if settings.notifications.cleanup_enabled
        else "disabled",
    )
    console.print(Panel(table, title="[bold]agent-inbox[/bold]", border_style="cyan", box=box.ROUNDED))
