"""HTTP transport: FastAPI app hosting the MCP endpoint plus health probes."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional, Protocol, cast

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastmcp import FastMCP
from sqlalchemy import text

from . import rich_logger
from .app import build_mcp_server
from .config import Settings, get_settings
from .db import ensure_schema, get_session
from .directory import SqlAgentDirectory, SqlTicketStore
from .fanout import NotificationCenter

_LOGGING_CONFIGURED = False


class _FastMCPHttpApp(Protocol):
    def http_app(self, *args: Any, **kwargs: Any) -> FastAPI: ...


class _FastAPILifespan(Protocol):
    def lifespan(self, app: FastAPI) -> Any: ...


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "status"]))
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)

    # Stateless HTTP sessions log every termination
    logging.getLogger("mcp.server.streamable_http").setLevel(logging.WARNING)
    logging.getLogger("mcp.server.lowlevel.server").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.INFO)

    _LOGGING_CONFIGURED = True


async def readiness_check() -> None:
    await ensure_schema()
    async with get_session() as session:
        await session.execute(text("SELECT 1"))


async def run_notification_cleanup(settings: Settings) -> dict[str, int]:
    """One retention pass: delete notifications older than the configured window."""
    center = NotificationCenter(SqlAgentDirectory(), SqlTicketStore(), settings.notifications)
    await ensure_schema()
    result = await center.cleanup()
    structlog.get_logger("tasks").info(
        "notifications_cleanup",
        deleted=result["deleted"],
        remaining=result["remaining"],
        cutoff_hours=result["cutoff_hours"],
    )
    return result


def build_http_app(settings: Settings, server: Optional[FastMCP] = None) -> FastAPI:
    _configure_logging(settings)
    if server is None:
        server = build_mcp_server()

    mcp_http_app = cast(_FastMCPHttpApp, server).http_app(
        path="/",
        stateless_http=True,
        json_response=True,
    )

    async def _worker_cleanup() -> None:  # pragma: no cover - service lifecycle
        while True:
            try:
                await run_notification_cleanup(settings)
            except Exception as exc:
                structlog.get_logger("tasks").warning("notifications_cleanup_failed", error=str(exc))
            await asyncio.sleep(settings.notifications.cleanup_interval_seconds)

    async def _startup() -> None:
        tasks: list[asyncio.Task[None]] = []
        if settings.notifications.cleanup_enabled:
            tasks.append(asyncio.create_task(_worker_cleanup()))
        fastapi_app.state._background_tasks = tasks

    async def _shutdown() -> None:
        tasks = getattr(fastapi_app.state, "_background_tasks", [])
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @asynccontextmanager
    async def lifespan_context(app: FastAPI):
        # The mounted MCP app owns the session manager task group
        mcp_lifespan_app = cast(_FastAPILifespan, mcp_http_app)
        async with mcp_lifespan_app.lifespan(mcp_http_app):
            await _startup()
            try:
                yield
            finally:
                await _shutdown()

    fastapi_app = FastAPI(title="agent-inbox", lifespan=lifespan_context)

    if settings.http.cors_enabled:
        app_any = cast(Any, fastapi_app)
        app_any.add_middleware(
            CORSMiddleware,
            allow_origins=settings.http.cors_origins or ["*"],
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @fastapi_app.get("/health/liveness")
    async def liveness() -> JSONResponse:
        return JSONResponse({"status": "alive"})

    @fastapi_app.get("/health/readiness")
    async def readiness() -> JSONResponse:
        try:
            await readiness_check()
        except Exception as exc:
            rich_logger.log_error("Readiness check failed", error=exc)
            structlog.get_logger("health").error("readiness_error", error=str(exc))
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return JSONResponse({"status": "ready"})

    mount_base = settings.http.path or "/mcp"
    if not mount_base.startswith("/"):
        mount_base = "/" + mount_base
    fastapi_app.mount(mount_base.rstrip("/") or "/", mcp_http_app)
    return fastapi_app


def main() -> None:
    """Run the HTTP transport using settings-specified host/port."""

    parser = argparse.ArgumentParser(description="Run the agent inbox HTTP transport")
    parser.add_argument("--host", help="Override HTTP host", default=None)
    parser.add_argument("--port", help="Override HTTP port", type=int, default=None)
    parser.add_argument("--log-level", help="Uvicorn log level", default="info")
    args, _unknown = parser.parse_known_args()

    settings = get_settings()
    host = args.host or settings.http.host
    port = args.port or settings.http.port

    app = build_http_app(settings)
    if settings.log_rich_enabled:
        rich_logger.display_startup_banner(settings, host, port, settings.http.path)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
