"""Command-line interface surface for operators and local development."""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from .app import build_default_service, build_mcp_server
from .config import get_settings
from .db import ensure_schema, reset_database_state
from .directory import SqlAgentDirectory, SqlTicketStore
from .errors import MessagingError
from .http import build_http_app

# aiosqlite worker threads can block interpreter shutdown
atexit.register(reset_database_state)

console = Console()


def _run_async(coro: Any) -> Any:
    """Run an async coroutine and dispose the engine afterwards."""
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/]")
    raise typer.Exit(code=1)


app = typer.Typer(help="Operator utilities for the agent inbox service.", invoke_without_command=True)


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-http`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_http(host=None, port=None, path=None)


agents_app = typer.Typer(help="Register and list agents")
tickets_app = typer.Typer(help="Create and list tickets")
notifications_app = typer.Typer(help="Notification retention maintenance")

app.add_typer(agents_app, name="agents")
app.add_typer(tickets_app, name="tickets")
app.add_typer(notifications_app, name="notifications")


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface for HTTP transport. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port for HTTP transport. Defaults to HTTP_PORT setting."),
    path: Optional[str] = typer.Option(None, help="HTTP path where the MCP endpoint is exposed."),
) -> None:
    """Run the MCP server over the Streamable HTTP transport."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    resolved_path = path or settings.http.path

    from . import rich_logger

    rich_logger.display_startup_banner(settings, resolved_host, resolved_port, resolved_path)

    server = build_mcp_server()
    http_app = build_http_app(settings, server)
    uvicorn.run(http_app, host=resolved_host, port=resolved_port, log_level="info")


@app.command("serve-stdio")
def serve_stdio() -> None:
    """Run the MCP server over stdio transport.

    stdout carries the MCP protocol, so tool panels are disabled and logging
    goes to stderr.
    """
    from .config import clear_settings_cache

    os.environ["TOOLS_LOG_ENABLED"] = "false"
    os.environ["LOG_RICH_ENABLED"] = "false"
    clear_settings_cache()

    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    print("agent-inbox - Starting stdio transport...", file=sys.stderr)

    server = build_mcp_server()
    server.run(transport="stdio")


@app.command("migrate")
def migrate() -> None:
    """Create database schema from SQLModel definitions."""
    settings = get_settings()
    with console.status("Creating database schema from models..."):
        _run_async(ensure_schema(settings))
    console.print("[green]✓ Database schema created from model definitions![/]")


@agents_app.command("add")
def agents_add(
    name: str = typer.Argument(..., help="Agent name; lookups are case-insensitive."),
    avatar: str = typer.Option("🤖", help="Avatar shown next to the agent's messages."),
) -> None:
    """Register an agent, or update the avatar of an existing one."""

    async def _add() -> Any:
        await ensure_schema()
        return await SqlAgentDirectory().register(name, avatar=avatar)

    try:
        agent = _run_async(_add())
    except ValueError as exc:
        _fail(str(exc))
        return
    console.print(f"[green]Agent {agent.name} ({agent.avatar}) registered with id {agent.id}.[/]")


@agents_app.command("list")
def agents_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """List registered agents."""

    async def _collect() -> list[Any]:
        await ensure_schema()
        return await SqlAgentDirectory().list_agents()

    agents = _run_async(_collect())
    if json_output:
        typer.echo(json.dumps([{"id": a.id, "name": a.name, "avatar": a.avatar} for a in agents]))
        return
    table = Table(title="Agents", show_lines=False)
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Avatar")
    for agent in agents:
        table.add_row(str(agent.id), agent.name, agent.avatar)
    console.print(table)


@tickets_app.command("add")
def tickets_add(
    human_id: Optional[str] = typer.Argument(None, help="Human identifier such as AGT-9."),
    title: str = typer.Option("", help="Ticket title."),
    status: str = typer.Option("todo", help="Initial ticket status."),
) -> None:
    """Create a ticket."""

    async def _add() -> Any:
        await ensure_schema()
        return await SqlTicketStore().create(human_id, title=title, status=status)

    ticket = _run_async(_add())
    console.print(f"[green]Ticket {ticket.display_id} created with id {ticket.id}.[/]")


@tickets_app.command("list")
def tickets_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """List tickets."""

    async def _collect() -> list[Any]:
        await ensure_schema()
        return await SqlTicketStore().list_tickets()

    tickets = _run_async(_collect())
    if json_output:
        typer.echo(
            json.dumps(
                [{"id": t.id, "human_id": t.human_id, "title": t.title, "status": t.status} for t in tickets]
            )
        )
        return
    table = Table(title="Tickets", show_lines=False)
    table.add_column("ID")
    table.add_column("Human ID")
    table.add_column("Title")
    table.add_column("Status")
    for ticket in tickets:
        table.add_row(str(ticket.id), ticket.human_id or "", ticket.title, ticket.status)
    console.print(table)


@app.command("unread")
def unread(
    agent_name: str = typer.Argument(..., help="Agent whose unread DMs and mentions are shown."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """Show an agent's unread DMs and mentions."""

    async def _collect() -> dict[str, Any]:
        await ensure_schema()
        return await build_default_service().get_unread(agent_name)

    try:
        detail = _run_async(_collect())
    except MessagingError as exc:
        _fail(f"{exc.error_type}: {exc}")
        return
    if json_output:
        typer.echo(json.dumps(detail, default=str))
        return
    counts = detail["count"]
    console.print(
        f"[bold]{agent_name}[/]: {counts['total']} unread "
        f"([cyan]{counts['dms']} DMs[/], [magenta]{counts['mentions']} mentions[/])"
    )
    table = Table(show_lines=False)
    table.add_column("Kind")
    table.add_column("ID")
    table.add_column("From")
    table.add_column("Ticket")
    table.add_column("Created")
    table.add_column("Body")
    rows = [("dm", item) for item in detail["dms"]] + [("mention", item) for item in detail["mentions"]]
    for kind, item in rows:
        table.add_row(
            kind,
            str(item["id"]),
            item["sender"],
            item.get("ticket_human_id") or "",
            item["created_ts"],
            item["body"][:60],
        )
    console.print(table)


@notifications_app.command("cleanup")
def notifications_cleanup(
    hours: Optional[int] = typer.Option(None, "--hours", help="Age threshold. Defaults to NOTIFICATIONS_CLEANUP_HOURS."),
) -> None:
    """Delete notifications of every agent older than the threshold."""

    async def _cleanup() -> dict[str, int]:
        await ensure_schema()
        return await build_default_service().notifications.cleanup(hours_old=hours)

    result = _run_async(_cleanup())
    console.print(
        f"[green]Deleted {result['deleted']} notifications older than {result['cutoff_hours']}h; "
        f"{result['remaining']} remaining.[/]"
    )


@notifications_app.command("clear-read")
def notifications_clear_read(
    agent_name: str = typer.Argument(..., help="Agent whose read notifications are removed."),
    days: Optional[int] = typer.Option(None, "--days", help="Age threshold. Defaults to NOTIFICATIONS_CLEAR_READ_DAYS."),
) -> None:
    """Delete an agent's read notifications older than the threshold."""
    older_than: Optional[datetime] = None
    if days is not None:
        if days < 0:
            _fail("--days must be zero or positive")
            return
        older_than = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days)

    async def _clear() -> int:
        await ensure_schema()
        return await build_default_service().notifications.clear_read(agent_name, older_than=older_than)

    deleted = _run_async(_clear())
    console.print(f"[green]Deleted {deleted} read notifications for {agent_name}.[/]")
