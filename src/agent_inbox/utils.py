"""Utility helpers for the agent inbox service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def preview(text: str, limit: int) -> str:
    """Return the first ``limit`` characters of ``text``, appending ``...`` when truncated."""
    if limit <= 0:
        return "..." if text else ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def normalize_name(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def iso(dt: Optional[datetime]) -> Optional[str]:
    """Render a naive-UTC datetime as an ISO-8601 string with an explicit UTC offset."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def ticket_label(human_id: Optional[str], ticket_id: Optional[int]) -> str:
    if human_id:
        return human_id
    return f"task-{ticket_id}"
