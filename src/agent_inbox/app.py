"""Application factory for the agent inbox MCP server."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, AsyncContextManager, Callable, Optional

from fastmcp import Context, FastMCP
from sqlalchemy.exc import NoResultFound

from . import rich_logger
from .bridge import CompatibilityBridge
from .config import Settings, get_settings
from .db import ensure_schema, get_db_health_status, get_engine, init_engine
from .directory import SqlActivityLog, SqlAgentDirectory, SqlTicketStore
from .errors import MessagingError
from .fanout import notification_to_dict
from .service import MessagingService

logger = logging.getLogger(__name__)

CLUSTER_SETUP = "infrastructure"
CLUSTER_MESSAGING = "messaging"
CLUSTER_NOTIFICATIONS = "notifications"
CLUSTER_LEGACY = "legacy"

TOOL_METRICS: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"calls": 0, "errors": 0})
TOOL_CLUSTER_MAP: dict[str, str] = {}


class ToolExecutionError(Exception):
    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.message = message
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": self.message,
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


def _record_tool_error(tool_name: str, exc: BaseException) -> None:
    logger.warning(
        "tool_error",
        extra={
            "tool": tool_name,
            "error": type(exc).__name__,
            "error_message": str(exc),
        },
    )


def _extract_argument(bound: inspect.BoundArguments, name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    value = bound.arguments.get(name)
    if value is None:
        return None
    return str(value)


def _instrument_tool(
    tool_name: str,
    *,
    cluster: str,
    agent_arg: Optional[str] = None,
    ticket_arg: Optional[str] = None,
) -> Callable[[Any], Any]:
    """Count calls, map domain errors to ``ToolExecutionError`` and emit Rich panels."""
    TOOL_CLUSTER_MAP[tool_name] = cluster

    def decorator(func: Any) -> Any:
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            metrics = TOOL_METRICS[tool_name]
            metrics["calls"] += 1
            bound = signature.bind_partial(*args, **kwargs)

            settings = get_settings()
            log_ctx = None
            if settings.tools_log_enabled:
                try:
                    log_ctx = rich_logger.ToolCallContext(
                        tool_name=tool_name,
                        kwargs={k: v for k, v in bound.arguments.items() if k != "ctx"},
                        agent=_extract_argument(bound, agent_arg),
                        ticket=_extract_argument(bound, ticket_arg),
                        start_time=start_time,
                    )
                    rich_logger.log_tool_call_start(log_ctx)
                except Exception:
                    log_ctx = None

            result = None
            error: Optional[BaseException] = None
            try:
                await ensure_schema()
                result = await func(*args, **kwargs)
            except ToolExecutionError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                error = exc
                raise
            except MessagingError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = ToolExecutionError(
                    exc.error_type,
                    str(exc),
                    recoverable=exc.recoverable,
                    data={"tool": tool_name, **exc.data},
                )
                error = wrapped_exc
                raise wrapped_exc from exc
            except NoResultFound as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = ToolExecutionError("NOT_FOUND", str(exc), data={"tool": tool_name})
                error = wrapped_exc
                raise wrapped_exc from exc
            except ValueError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = ToolExecutionError(
                    "INVALID_ARGUMENT",
                    f"Invalid argument value: {exc}",
                    data={"tool": tool_name, "error_detail": str(exc)},
                )
                error = wrapped_exc
                raise wrapped_exc from exc
            except Exception as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = ToolExecutionError(
                    "UNHANDLED_EXCEPTION",
                    f"Unexpected error ({type(exc).__name__}): {exc}",
                    recoverable=False,
                    data={"tool": tool_name, "original_error": type(exc).__name__},
                )
                error = wrapped_exc
                raise wrapped_exc from exc
            finally:
                if log_ctx is not None:
                    try:
                        log_ctx.end_time = time.perf_counter()
                        log_ctx.result = result
                        log_ctx.error = error
                        log_ctx.success = error is None
                        rich_logger.log_tool_call_end(log_ctx)
                    except Exception:
                        pass
            return result

        # FastMCP infers the output schema from the annotations.
        with suppress(Exception):
            wrapper.__annotations__ = getattr(func, "__annotations__", {})
        return wrapper

    return decorator


def _tool_metrics_snapshot() -> list[dict[str, Any]]:
    return [
        {
            "name": name,
            "calls": data["calls"],
            "errors": data["errors"],
            "cluster": TOOL_CLUSTER_MAP.get(name, "unclassified"),
        }
        for name, data in sorted(TOOL_METRICS.items())
    ]


def _lifespan_factory(settings: Settings) -> Callable[[FastMCP], AsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastMCP) -> AsyncIterator[None]:
        init_engine(settings)
        await ensure_schema(settings)
        try:
            yield
        finally:
            with suppress(Exception):
                await asyncio.shield(get_engine().dispose())

    return lifespan


def build_default_service(settings: Optional[Settings] = None) -> MessagingService:
    """Messaging service wired to the SQL-backed directory, ticket store and activity log."""
    return MessagingService(
        SqlAgentDirectory(),
        SqlTicketStore(),
        SqlActivityLog(),
        settings=settings or get_settings(),
    )


def build_mcp_server(service: Optional[MessagingService] = None) -> FastMCP:
    """Create and configure the FastMCP server instance."""
    settings: Settings = get_settings()
    lifespan = _lifespan_factory(settings)
    messaging = service or build_default_service(settings)
    legacy = CompatibilityBridge(messaging)

    instructions = (
        "You are the agent inbox server. Agents post ticket comments, send direct messages, "
        "@mention each other and track their unread DMs and mentions. Agent names are "
        "case-insensitive; tickets are addressed by storage id or human identifier (e.g. AGT-9)."
    )

    mcp = FastMCP(name="agent-inbox", instructions=instructions, lifespan=lifespan)

    @mcp.tool(name="health_check", description="Return basic readiness information for the inbox server.")
    @_instrument_tool("health_check", cluster=CLUSTER_SETUP)
    async def health_check(ctx: Context) -> dict[str, Any]:
        """
        Quick readiness probe for agents and orchestrators.

        Returns
        -------
        dict
            {"status": "ok" | "degraded", "environment": str, "database_url": str, "database": {...}}
        """
        await ctx.info("Running health check.")
        db_status = get_db_health_status()
        return {
            "status": "ok" if db_status["circuit_state"] == "closed" else "degraded",
            "environment": settings.environment,
            "http_host": settings.http.host,
            "http_port": settings.http.port,
            "database_url": settings.database.url,
            "database": db_status,
        }

    @mcp.tool(name="post_comment")
    @_instrument_tool("post_comment", cluster=CLUSTER_MESSAGING, agent_arg="sender_name", ticket_arg="ticket_ref")
    async def post_comment(ctx: Context, ticket_ref: str | int, sender_name: str, body: str) -> dict[str, Any]:
        """
        Post a comment on a ticket and notify every @mentioned agent.

        Mentions
        --------
        - `@name` markers for roster agents (case-insensitive); `@all` mentions the whole roster.
        - The author is never notified of their own comment.
        - If the author is not a known agent the comment is still stored but nobody is notified.

        Returns
        -------
        dict
            {"message_id": int, "ticket_ref": int, "mentions": [str], "ticket_human_id": str | None}
        """
        result = await messaging.post_comment(ticket_ref, sender_name, body)
        await ctx.info(f"Comment {result['message_id']} posted on {result['ticket_human_id'] or ticket_ref}.")
        return result

    @mcp.tool(name="send_dm")
    @_instrument_tool("send_dm", cluster=CLUSTER_MESSAGING, agent_arg="sender", ticket_arg="ticket_ref")
    async def send_dm(
        ctx: Context,
        sender: str,
        recipient: str,
        body: str,
        ticket_ref: Optional[str | int] = None,
        priority: Optional[str] = "normal",
    ) -> dict[str, Any]:
        """
        Send a direct message from one agent to another.

        Parameters
        ----------
        ticket_ref : str, optional
            Related ticket. An unknown ticket does not fail the call; the DM is stored without it.
        priority : str, optional
            "normal" (default) or "urgent". Urgent DMs get a marked notification title.

        Returns
        -------
        dict
            {"message_id": int, "sender": str, "recipient": str, "priority": str}
        """
        result = await messaging.send_dm(sender, recipient, body, ticket_ref=ticket_ref, priority=priority)
        await ctx.info(f"DM {result['message_id']} sent to {result['recipient']}.")
        return result

    @mcp.tool(name="get_comments")
    @_instrument_tool("get_comments", cluster=CLUSTER_MESSAGING, ticket_arg="ticket_ref")
    async def get_comments(ctx: Context, ticket_ref: str | int) -> dict[str, Any]:
        """Comments on a ticket, oldest first, with live sender display name and avatar."""
        return {"comments": await messaging.get_comments(ticket_ref)}

    @mcp.tool(name="get_dms")
    @_instrument_tool("get_dms", cluster=CLUSTER_MESSAGING, agent_arg="agent_name")
    async def get_dms(ctx: Context, agent_name: str, unread_only: bool = False) -> dict[str, Any]:
        """Direct messages addressed to the agent, newest first."""
        return {"messages": await messaging.get_dms(agent_name, unread_only=unread_only)}

    @mcp.tool(name="get_unread")
    @_instrument_tool("get_unread", cluster=CLUSTER_MESSAGING, agent_arg="agent_name")
    async def get_unread(ctx: Context, agent_name: str) -> dict[str, Any]:
        """
        Newest unread DMs and mentions for an agent plus exact counts.

        Returns
        -------
        dict
            {"dms": [...], "mentions": [...], "count": {"dms": int, "mentions": int, "total": int}}
            Lists are capped (UNREAD_DETAIL_LIMIT, default 10); counts are not.
        """
        return await messaging.get_unread(agent_name)

    @mcp.tool(name="get_unread_count")
    @_instrument_tool("get_unread_count", cluster=CLUSTER_MESSAGING, agent_arg="agent_name")
    async def get_unread_count(ctx: Context, agent_name: str) -> dict[str, Any]:
        return await messaging.get_unread_count(agent_name)

    @mcp.tool(name="mark_read")
    @_instrument_tool("mark_read", cluster=CLUSTER_MESSAGING, agent_arg="agent_name")
    async def mark_read(
        ctx: Context,
        item_id: int,
        kind: str = "message",
        agent_name: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Mark a message or notification read. Idempotent.

        Parameters
        ----------
        kind : str
            "message" (default) or "notification".
        agent_name : str, optional
            Required when `item_id` is a comment: selects whose mention is marked read.
        """
        return await messaging.mark_read(item_id, kind=kind, agent_name=agent_name)

    @mcp.tool(name="mark_all_read")
    @_instrument_tool("mark_all_read", cluster=CLUSTER_MESSAGING, agent_arg="agent_name")
    async def mark_all_read(ctx: Context, agent_name: str) -> dict[str, Any]:
        """Mark every DM and mention that is unread right now as read. Returns {"marked": int}."""
        result = await messaging.mark_all_read(agent_name)
        await ctx.info(f"Marked {result['marked']} item(s) read for {agent_name}.")
        return result

    @mcp.tool(name="get_conversation")
    @_instrument_tool("get_conversation", cluster=CLUSTER_MESSAGING, agent_arg="agent_a")
    async def get_conversation(
        ctx: Context,
        agent_a: str,
        agent_b: str,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        """DMs between two agents in either direction, oldest first; `limit` keeps the newest N."""
        return {"messages": await messaging.get_conversation(agent_a, agent_b, limit=limit)}

    @mcp.tool(name="list_recent")
    @_instrument_tool("list_recent", cluster=CLUSTER_MESSAGING)
    async def list_recent(ctx: Context, limit: Optional[int] = None) -> dict[str, Any]:
        """Most recent comments and DMs across all agents, newest first (default 20)."""
        return {"messages": await messaging.list_recent(limit)}

    @mcp.tool(name="list_notifications")
    @_instrument_tool("list_notifications", cluster=CLUSTER_NOTIFICATIONS, agent_arg="agent_name")
    async def list_notifications(ctx: Context, agent_name: str, unread_only: bool = False) -> dict[str, Any]:
        """Notifications for an agent, newest first, with the unread count."""
        center = messaging.notifications
        if unread_only:
            items = await center.unread_for_agent(agent_name)
        else:
            items = [notification_to_dict(row) for row in await center.list_for_agent(agent_name)]
        return {"notifications": items, "unread_count": await center.unread_count(agent_name)}

    @mcp.tool(name="clear_read_notifications")
    @_instrument_tool("clear_read_notifications", cluster=CLUSTER_NOTIFICATIONS, agent_arg="agent_name")
    async def clear_read_notifications(ctx: Context, agent_name: str, older_than_days: Optional[int] = None) -> dict[str, Any]:
        """Delete the agent's read notifications older than N days (default NOTIFICATIONS_CLEAR_READ_DAYS)."""
        older_than = None
        if older_than_days is not None:
            if older_than_days < 0:
                raise ValueError("older_than_days must be >= 0")
            older_than = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=older_than_days)
        deleted = await messaging.notifications.clear_read(agent_name, older_than=older_than)
        return {"deleted": deleted}

    @mcp.tool(name="clear_all_notifications")
    @_instrument_tool("clear_all_notifications", cluster=CLUSTER_NOTIFICATIONS, agent_arg="agent_name")
    async def clear_all_notifications(ctx: Context, agent_name: str) -> dict[str, Any]:
        return await messaging.notifications.clear_all(agent_name)

    @mcp.tool(name="cleanup_notifications")
    @_instrument_tool("cleanup_notifications", cluster=CLUSTER_NOTIFICATIONS)
    async def cleanup_notifications(ctx: Context, hours_old: Optional[int] = None) -> dict[str, Any]:
        """Delete notifications of every agent older than `hours_old` hours (default 24)."""
        if hours_old is not None and hours_old < 0:
            raise ValueError("hours_old must be >= 0")
        result = await messaging.notifications.cleanup(hours_old)
        await ctx.info(f"Deleted {result['deleted']} notification(s); {result['remaining']} remain.")
        return result

    @mcp.tool(name="notifications_dashboard")
    @_instrument_tool("notifications_dashboard", cluster=CLUSTER_NOTIFICATIONS)
    async def notifications_dashboard(ctx: Context) -> dict[str, Any]:
        """All notifications grouped by recipient with unread totals and ticket summaries."""
        return await messaging.notifications.dashboard()

    @mcp.tool(name="legacy_post_comment")
    @_instrument_tool("legacy_post_comment", cluster=CLUSTER_LEGACY, agent_arg="sender_name", ticket_arg="ticket_ref")
    async def legacy_post_comment(ctx: Context, ticket_ref: str | int, sender_name: str, body: str) -> dict[str, Any]:
        """Post a comment through the first-generation comment table. Not visible to `get_comments`."""
        return await legacy.legacy_post_comment(ticket_ref, sender_name, body)

    @mcp.tool(name="legacy_send_dm")
    @_instrument_tool("legacy_send_dm", cluster=CLUSTER_LEGACY, agent_arg="sender", ticket_arg="ticket_ref")
    async def legacy_send_dm(
        ctx: Context,
        sender: str,
        recipient: str,
        body: str,
        ticket_ref: Optional[str | int] = None,
        priority: Optional[str] = "normal",
    ) -> dict[str, Any]:
        """Send a DM through the first-generation agent message table. Not visible to `get_dms`."""
        return await legacy.legacy_send_dm(sender, recipient, body, ticket_ref=ticket_ref, priority=priority)

    @mcp.tool(name="legacy_get_comments")
    @_instrument_tool("legacy_get_comments", cluster=CLUSTER_LEGACY, ticket_arg="ticket_ref")
    async def legacy_get_comments(ctx: Context, ticket_ref: str | int) -> dict[str, Any]:
        return {"comments": await legacy.legacy_get_comments(ticket_ref)}

    @mcp.tool(name="legacy_get_dms")
    @_instrument_tool("legacy_get_dms", cluster=CLUSTER_LEGACY, agent_arg="agent_name")
    async def legacy_get_dms(ctx: Context, agent_name: str, unread_only: bool = False) -> dict[str, Any]:
        return {"messages": await legacy.legacy_get_dms(agent_name, unread_only=unread_only)}

    @mcp.tool(name="legacy_get_conversation")
    @_instrument_tool("legacy_get_conversation", cluster=CLUSTER_LEGACY, agent_arg="agent_a")
    async def legacy_get_conversation(
        ctx: Context,
        agent_a: str,
        agent_b: str,
        limit: Optional[int] = None,
    ) -> dict[str, Any]:
        return {"messages": await legacy.legacy_get_conversation(agent_a, agent_b, limit=limit)}

    @mcp.tool(name="legacy_mark_read")
    @_instrument_tool("legacy_mark_read", cluster=CLUSTER_LEGACY)
    async def legacy_mark_read(ctx: Context, message_id: int) -> dict[str, Any]:
        return await legacy.legacy_mark_read(message_id)

    @mcp.tool(name="legacy_mark_all_read")
    @_instrument_tool("legacy_mark_all_read", cluster=CLUSTER_LEGACY, agent_arg="agent_name")
    async def legacy_mark_all_read(ctx: Context, agent_name: str) -> dict[str, Any]:
        return await legacy.legacy_mark_all_read(agent_name)

    @mcp.resource("resource://tooling/metrics", mime_type="application/json")
    def tooling_metrics_resource() -> dict[str, Any]:
        """Expose aggregated tool call/error counts for analysis."""
        return {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "tools": _tool_metrics_snapshot(),
        }

    return mcp
