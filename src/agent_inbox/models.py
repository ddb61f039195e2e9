"""SQLModel data models for agents, tickets, messages and notifications.

Two message generations live side by side:

- ``messages`` is the unified table covering comments and direct messages.
- ``task_comments`` and ``agent_messages`` are the first-generation split tables.
  They are still written by the legacy API surface and are never merged into
  the unified table.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import Column, Index
from sqlalchemy.types import JSON
from sqlmodel import Field, SQLModel

_clock_lock = threading.Lock()
_last_ts: datetime | None = None


def _utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime for SQLite compatibility.

    Successive calls within one process never return the same value: when the
    wall clock has not advanced, the previous value plus one microsecond is used.
    ``created_ts`` is the sole sort key for every scan, so this keeps ordering
    stable for writes issued in quick succession.
    """
    global _last_ts
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    with _clock_lock:
        if _last_ts is not None and now <= _last_ts:
            now = _last_ts + timedelta(microseconds=1)
        _last_ts = now
    return now


class Agent(SQLModel, table=True):
    __tablename__ = "agents"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True, max_length=64)
    avatar: str = Field(default="🤖", max_length=16)
    created_ts: datetime = Field(default_factory=_utcnow_naive)

    @property
    def key(self) -> str:
        """Canonical addressing form (lower-cased name)."""
        return self.name.lower()


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"

    id: Optional[int] = Field(default=None, primary_key=True)
    human_id: Optional[str] = Field(default=None, index=True, unique=True, max_length=64)
    title: str = Field(default="", max_length=512)
    status: str = Field(default="todo", max_length=32)
    created_ts: datetime = Field(default_factory=_utcnow_naive)

    @property
    def display_id(self) -> str:
        return self.human_id or f"task-{self.id}"


class Message(SQLModel, table=True):
    """Unified message: a ticket comment or a direct message."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_ticket_created", "ticket_id", "created_ts"),
        Index("idx_messages_recipient_read_created", "recipient", "read", "created_ts"),
        Index("idx_messages_sender_recipient_created", "sender", "recipient", "created_ts"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(max_length=16)  # comment | dm
    sender: str = Field(index=True, max_length=64)
    recipient: Optional[str] = Field(default=None, max_length=64)
    ticket_id: Optional[int] = Field(default=None, foreign_key="tickets.id")
    ticket_human_id: Optional[str] = Field(default=None, index=True, max_length=64)
    body: str
    mentions: Optional[list[str]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    priority: Optional[str] = Field(default=None, max_length=16)  # normal | urgent (dm only)
    read: Optional[bool] = Field(default=None)  # dm only
    created_ts: datetime = Field(default_factory=_utcnow_naive, index=True)


class Notification(SQLModel, table=True):
    """Per-recipient side effect of a message; read state for mentions lives here."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_recipient_read_created", "recipient", "read", "created_ts"),
        Index("idx_notifications_recipient_kind_read", "recipient", "kind", "read"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    recipient: str = Field(index=True, max_length=64)
    sender: Optional[str] = Field(default=None, max_length=64)
    kind: str = Field(max_length=16)  # mention | dm
    title: str = Field(max_length=256)
    body: str = Field(default="")
    read: bool = Field(default=False)
    ticket_id: Optional[int] = Field(default=None, foreign_key="tickets.id")
    message_id: Optional[int] = Field(default=None, foreign_key="messages.id", index=True)
    legacy_comment_id: Optional[int] = Field(default=None, foreign_key="task_comments.id", index=True)
    legacy_message_id: Optional[int] = Field(default=None, foreign_key="agent_messages.id", index=True)
    created_ts: datetime = Field(default_factory=_utcnow_naive)


class LegacyComment(SQLModel, table=True):
    """First-generation ticket comment."""

    __tablename__ = "task_comments"
    __table_args__ = (Index("idx_task_comments_ticket_created", "ticket_id", "created_ts"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    ticket_id: int = Field(foreign_key="tickets.id")
    sender: str = Field(max_length=64)
    body: str
    mentions: Optional[list[str]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_ts: datetime = Field(default_factory=_utcnow_naive)


class LegacyDirectMessage(SQLModel, table=True):
    """First-generation agent-to-agent message, keyed by agent ids."""

    __tablename__ = "agent_messages"
    __table_args__ = (Index("idx_agent_messages_recipient_status", "recipient_id", "status"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    sender_id: int = Field(index=True)
    recipient_id: int
    kind: str = Field(default="fyi", max_length=16)
    body: str
    ticket_id: Optional[int] = Field(default=None, foreign_key="tickets.id")
    priority: str = Field(default="normal", max_length=16)
    status: str = Field(default="unread", max_length=16)  # unread | read
    created_ts: datetime = Field(default_factory=_utcnow_naive)


class ActivityEvent(SQLModel, table=True):
    __tablename__ = "activity_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    agent_name: str = Field(index=True, max_length=64)
    category: str = Field(default="message", max_length=32)
    event_type: str = Field(max_length=32)
    title: str = Field(max_length=256)
    ticket_id: Optional[int] = Field(default=None)
    ticket_human_id: Optional[str] = Field(default=None, max_length=64)
    source: str = Field(default="unified_messaging", max_length=32)
    created_ts: datetime = Field(default_factory=_utcnow_naive, index=True)
