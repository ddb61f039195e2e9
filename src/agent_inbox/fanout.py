"""Notification fan-out and notification maintenance.

Fan-out is split in two steps. ``plan_*`` turns a freshly stored message into a
list of ``NotificationIntent`` without touching storage. ``execute_fanout`` then
writes each intent in its own session so that one failing recipient cannot
block or roll back the others, nor the message that triggered them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import and_, delete, func
from sqlmodel import select

from .config import MessagingSettings, NotificationSettings
from .db import get_session, retry_on_db_lock
from .directory import AgentDirectory, TicketStore
from .errors import NotFoundError, PartialFanoutFailure
from .models import Agent, Notification
from .utils import iso, normalize_name, preview

logger = logging.getLogger(__name__)

KIND_MENTION = "mention"
KIND_DM = "dm"
DASHBOARD_GROUP_LIMIT = 20


@dataclass(slots=True, frozen=True)
class NotificationIntent:
    recipient: str
    sender: str
    kind: str
    title: str
    body: str
    ticket_id: Optional[int] = None
    message_id: Optional[int] = None
    legacy_comment_id: Optional[int] = None
    legacy_message_id: Optional[int] = None

    def to_model(self) -> Notification:
        return Notification(
            recipient=self.recipient,
            sender=self.sender,
            kind=self.kind,
            title=self.title,
            body=self.body,
            read=False,
            ticket_id=self.ticket_id,
            message_id=self.message_id,
            legacy_comment_id=self.legacy_comment_id,
            legacy_message_id=self.legacy_message_id,
        )


@dataclass(slots=True)
class FanoutReport:
    created: list[int] = field(default_factory=list)
    failures: list[PartialFanoutFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": list(self.created),
            "failures": [failure.to_dict() for failure in self.failures],
        }


def plan_comment_fanout(
    *,
    sender: Agent,
    mentions: Iterable[str],
    body: str,
    ticket_label: str,
    ticket_id: Optional[int],
    settings: MessagingSettings,
    message_id: Optional[int] = None,
    legacy_comment_id: Optional[int] = None,
) -> list[NotificationIntent]:
    """One ``mention`` intent per distinct mentioned name, never the sender."""
    sender_key = sender.name.lower()
    text = f"In {ticket_label}: {preview(body, settings.comment_preview_chars)}"
    title = f"{sender.name} mentioned you"
    recipients = sorted({normalize_name(name) for name in mentions} - {sender_key, ""})
    return [
        NotificationIntent(
            recipient=recipient,
            sender=sender_key,
            kind=KIND_MENTION,
            title=title,
            body=text,
            ticket_id=ticket_id,
            message_id=message_id,
            legacy_comment_id=legacy_comment_id,
        )
        for recipient in recipients
    ]


def plan_dm_fanout(
    *,
    sender: Agent,
    recipient: Agent,
    body: str,
    priority: str,
    ticket_label: Optional[str],
    ticket_id: Optional[int],
    settings: MessagingSettings,
    message_id: Optional[int] = None,
    legacy_message_id: Optional[int] = None,
) -> list[NotificationIntent]:
    """Exactly one ``dm`` intent for the recipient unless sender and recipient coincide."""
    sender_key = sender.name.lower()
    recipient_key = recipient.name.lower()
    if recipient_key == sender_key:
        return []
    title = f"DM from {sender.name}"
    if priority == "urgent":
        title = f"{settings.urgent_marker} {title}"
    if ticket_label:
        text = f"Re: {ticket_label} — {preview(body, settings.dm_ticket_preview_chars)}"
    else:
        text = preview(body, settings.dm_preview_chars)
    return [
        NotificationIntent(
            recipient=recipient_key,
            sender=sender_key,
            kind=KIND_DM,
            title=title,
            body=text,
            ticket_id=ticket_id,
            message_id=message_id,
            legacy_message_id=legacy_message_id,
        )
    ]


@retry_on_db_lock()
async def _insert_notification(intent: NotificationIntent) -> int:
    notification = intent.to_model()
    async with get_session() as session:
        session.add(notification)
        await session.commit()
        await session.refresh(notification)
    assert notification.id is not None
    return notification.id


async def execute_fanout(intents: Iterable[NotificationIntent], directory: AgentDirectory) -> FanoutReport:
    """Write every intent independently; failures are collected and logged, never raised."""
    report = FanoutReport()
    for intent in intents:
        try:
            if await directory.resolve(intent.recipient) is None:
                raise NotFoundError(f"Agent '{intent.recipient}' not found", data={"agent": intent.recipient})
            report.created.append(await _insert_notification(intent))
        except Exception as exc:
            failure = PartialFanoutFailure.from_exception(intent.recipient, intent.kind, exc)
            report.failures.append(failure)
            logger.warning(
                "fanout.intent_failed",
                extra={
                    "recipient": intent.recipient,
                    "kind": intent.kind,
                    "message_id": intent.message_id,
                    "legacy_comment_id": intent.legacy_comment_id,
                    "legacy_message_id": intent.legacy_message_id,
                    "error": failure.reason,
                    "error_type": failure.exception_type,
                },
            )
    return report


def notification_to_dict(notification: Notification, **extra: Any) -> dict[str, Any]:
    payload = {
        "id": notification.id,
        "recipient": notification.recipient,
        "sender": notification.sender,
        "kind": notification.kind,
        "title": notification.title,
        "body": notification.body,
        "read": notification.read,
        "ticket_id": notification.ticket_id,
        "message_id": notification.message_id,
        "legacy_comment_id": notification.legacy_comment_id,
        "legacy_message_id": notification.legacy_message_id,
        "created_ts": iso(notification.created_ts),
    }
    payload.update(extra)
    return payload


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class NotificationCenter:
    """Queries and bulk maintenance over the ``notifications`` table."""

    def __init__(self, directory: AgentDirectory, tickets: TicketStore, settings: NotificationSettings):
        self.directory = directory
        self.tickets = tickets
        self.settings = settings

    async def list_for_agent(self, agent: str) -> list[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.recipient == normalize_name(agent))
            .order_by(Notification.created_ts.desc(), Notification.id.desc())
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def unread_for_agent(self, agent: str) -> list[dict[str, Any]]:
        """Unread notifications, newest first, with the sender's display name; unknown agent yields []."""
        resolved = await self.directory.resolve(agent)
        if resolved is None:
            return []
        stmt = (
            select(Notification)
            .where(and_(Notification.recipient == resolved.name.lower(), Notification.read == False))  # noqa: E712
            .order_by(Notification.created_ts.desc(), Notification.id.desc())
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            rows = list(result.scalars().all())
        names: dict[str, Optional[str]] = {}
        payload = []
        for row in rows:
            if row.sender and row.sender not in names:
                sender_agent = await self.directory.resolve(row.sender)
                names[row.sender] = sender_agent.name if sender_agent is not None else None
            payload.append(notification_to_dict(row, sender_name=names.get(row.sender or "")))
        return payload

    async def unread_count(self, agent: str) -> int:
        stmt = select(func.count(Notification.id)).where(
            and_(Notification.recipient == normalize_name(agent), Notification.read == False)  # noqa: E712
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def get(self, notification_id: int) -> Notification:
        async with get_session() as session:
            notification = await session.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError(
                f"Notification {notification_id} not found", data={"notification_id": notification_id}
            )
        return notification

    @retry_on_db_lock()
    async def remove(self, notification_id: int) -> None:
        async with get_session() as session:
            notification = await session.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError(
                    f"Notification {notification_id} not found", data={"notification_id": notification_id}
                )
            await session.delete(notification)
            await session.commit()

    @retry_on_db_lock()
    async def clear_read(self, agent: str, older_than: Optional[datetime] = None) -> int:
        """Delete the agent's read notifications created before ``older_than``."""
        cutoff = older_than or (_utcnow() - timedelta(days=self.settings.clear_read_days))
        stmt = delete(Notification).where(
            and_(
                Notification.recipient == normalize_name(agent),
                Notification.read == True,  # noqa: E712
                Notification.created_ts < cutoff,
            )
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return int(result.rowcount or 0)

    @retry_on_db_lock()
    async def clear_all(self, agent: str) -> dict[str, int]:
        stmt = delete(Notification).where(Notification.recipient == normalize_name(agent))
        async with get_session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return {"deleted": int(result.rowcount or 0)}

    @retry_on_db_lock()
    async def cleanup(self, hours_old: Optional[int] = None) -> dict[str, int]:
        """Delete notifications of every agent older than ``hours_old`` hours."""
        hours = self.settings.cleanup_hours if hours_old is None else hours_old
        cutoff = _utcnow() - timedelta(hours=hours)
        async with get_session() as session:
            result = await session.execute(delete(Notification).where(Notification.created_ts < cutoff))
            await session.commit()
            remaining = await session.execute(select(func.count(Notification.id)))
            return {
                "deleted": int(result.rowcount or 0),
                "remaining": int(remaining.scalar_one()),
                "cutoff_hours": hours,
            }

    async def dashboard(self) -> dict[str, Any]:
        """All notifications grouped by recipient; groups ordered by their newest notification."""
        stmt = select(Notification).order_by(Notification.created_ts.desc(), Notification.id.desc())
        async with get_session() as session:
            result = await session.execute(stmt)
            rows = list(result.scalars().all())

        groups: dict[str, dict[str, Any]] = {}
        ticket_cache: dict[int, Optional[dict[str, Any]]] = {}
        total_unread = 0
        for row in rows:
            group = groups.get(row.recipient)
            if group is None:
                agent = await self.directory.resolve(row.recipient)
                group = {
                    "agent": row.recipient,
                    "agent_name": agent.name if agent is not None else "Unknown",
                    "agent_avatar": agent.avatar if agent is not None else "?",
                    "unread_count": 0,
                    "notifications": [],
                }
                groups[row.recipient] = group
            if not row.read:
                group["unread_count"] += 1
                total_unread += 1
            if len(group["notifications"]) >= DASHBOARD_GROUP_LIMIT:
                continue
            summary = None
            if row.ticket_id is not None:
                if row.ticket_id not in ticket_cache:
                    ticket = await self.tickets.get(row.ticket_id)
                    ticket_cache[row.ticket_id] = (
                        {
                            "id": ticket.id,
                            "human_id": ticket.human_id,
                            "title": ticket.title,
                            "status": ticket.status,
                        }
                        if ticket is not None
                        else None
                    )
                summary = ticket_cache[row.ticket_id]
            group["notifications"].append(notification_to_dict(row, ticket_summary=summary))

        # Rows arrive newest first, so insertion order already sorts groups by their newest item.
        return {"total_unread": total_unread, "by_agent": list(groups.values())}
