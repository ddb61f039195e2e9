"""Top-level package for the agent inbox server."""

from __future__ import annotations

from typing import Any


def build_mcp_server() -> Any:
    """Lazily import and build the FastMCP server to avoid heavy module import costs."""
    from .app import build_mcp_server as _build_mcp_server
    return _build_mcp_server()

__all__ = ["build_mcp_server"]
