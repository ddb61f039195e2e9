"""Unified message persistence and the read model shared with the legacy tables."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from sqlalchemy import and_, or_
from sqlmodel import select

from .db import get_session, retry_on_db_lock
from .directory import AgentDirectory
from .errors import NotFoundError
from .models import Message, Ticket
from .utils import iso

logger = logging.getLogger(__name__)

KIND_COMMENT = "comment"
KIND_DM = "dm"
PRIORITIES = ("normal", "urgent")


@dataclass(slots=True, frozen=True)
class MessageView:
    """Read-side projection of a comment or DM, regardless of which table holds it."""

    id: int
    kind: str
    sender: str
    recipient: Optional[str]
    ticket_id: Optional[int]
    ticket_human_id: Optional[str]
    body: str
    mentions: Optional[tuple[str, ...]]
    priority: Optional[str]
    read: Optional[bool]
    created_ts: datetime
    sender_name: Optional[str] = None
    sender_avatar: Optional[str] = None
    generation: str = "unified"

    @classmethod
    def from_message(cls, message: Message) -> "MessageView":
        assert message.id is not None
        return cls(
            id=message.id,
            kind=message.kind,
            sender=message.sender,
            recipient=message.recipient,
            ticket_id=message.ticket_id,
            ticket_human_id=message.ticket_human_id,
            body=message.body,
            mentions=tuple(sorted(message.mentions)) if message.mentions else None,
            priority=message.priority,
            read=message.read,
            created_ts=message.created_ts,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["mentions"] = list(self.mentions) if self.mentions else None
        payload["created_ts"] = iso(self.created_ts)
        return payload


class MessageReadModel(Protocol):
    """Read operations both storage generations answer with identical ordering rules.

    ``comments_for_ticket`` and ``conversation`` are oldest first; ``dms_for`` is
    newest first. Ties on ``created_ts`` break by insertion order.
    """

    async def comments_for_ticket(self, ticket_id: int) -> list[MessageView]: ...

    async def dms_for(self, agent: str, unread_only: bool = False) -> list[MessageView]: ...

    async def conversation(self, agent_a: str, agent_b: str, limit: Optional[int] = None) -> list[MessageView]: ...


async def enrich_views(
    views: Sequence[MessageView],
    directory: AgentDirectory,
    default_avatar: str = "🤖",
) -> list[MessageView]:
    """Attach live sender display name and avatar; lookup failures fall back to the raw name."""
    cache: dict[str, tuple[str, str]] = {}
    enriched: list[MessageView] = []
    for view in views:
        if view.sender not in cache:
            name, avatar = view.sender, default_avatar
            try:
                agent = await directory.resolve(view.sender)
            except Exception as exc:
                logger.warning(
                    "enrich.lookup_failed",
                    extra={"sender": view.sender, "error": str(exc), "error_type": type(exc).__name__},
                )
                agent = None
            if agent is not None:
                name = agent.name or view.sender
                avatar = agent.avatar or default_avatar
            cache[view.sender] = (name, avatar)
        name, avatar = cache[view.sender]
        enriched.append(replace(view, sender_name=name, sender_avatar=avatar))
    return enriched


class UnifiedMessageStore:
    """Sole writer of the ``messages`` table."""

    generation = "unified"

    @retry_on_db_lock()
    async def insert_comment(
        self,
        ticket: Ticket,
        sender: str,
        body: str,
        mentions: Optional[frozenset[str]] = None,
    ) -> Message:
        message = Message(
            kind=KIND_COMMENT,
            sender=sender,
            ticket_id=ticket.id,
            ticket_human_id=ticket.human_id,
            body=body,
            mentions=sorted(mentions) if mentions else None,
        )
        async with get_session() as session:
            session.add(message)
            await session.commit()
            await session.refresh(message)
        return message

    @retry_on_db_lock()
    async def insert_dm(
        self,
        sender: str,
        recipient: str,
        body: str,
        ticket: Optional[Ticket] = None,
        priority: str = "normal",
    ) -> Message:
        message = Message(
            kind=KIND_DM,
            sender=sender,
            recipient=recipient,
            ticket_id=ticket.id if ticket is not None else None,
            ticket_human_id=ticket.human_id if ticket is not None else None,
            body=body,
            priority=priority,
            read=False,
        )
        async with get_session() as session:
            session.add(message)
            await session.commit()
            await session.refresh(message)
        return message

    async def get(self, message_id: int) -> Message:
        async with get_session() as session:
            message = await session.get(Message, message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found", data={"message_id": message_id})
        return message

    async def comments_for_ticket(self, ticket_id: int) -> list[MessageView]:
        stmt = (
            select(Message)
            .where(and_(Message.ticket_id == ticket_id, Message.kind == KIND_COMMENT))
            .order_by(Message.created_ts.asc(), Message.id.asc())
        )
        return await self._views(stmt)

    async def dms_for(self, agent: str, unread_only: bool = False) -> list[MessageView]:
        conditions = [Message.kind == KIND_DM, Message.recipient == agent]
        if unread_only:
            conditions.append(Message.read == False)  # noqa: E712
        stmt = select(Message).where(and_(*conditions)).order_by(Message.created_ts.desc(), Message.id.desc())
        return await self._views(stmt)

    async def conversation(self, agent_a: str, agent_b: str, limit: Optional[int] = None) -> list[MessageView]:
        pair = or_(
            and_(Message.sender == agent_a, Message.recipient == agent_b),
            and_(Message.sender == agent_b, Message.recipient == agent_a),
        )
        stmt = select(Message).where(and_(Message.kind == KIND_DM, pair))
        if limit is None:
            return await self._views(stmt.order_by(Message.created_ts.asc(), Message.id.asc()))
        # Newest ``limit`` rows, flipped back to chat order.
        newest = await self._views(stmt.order_by(Message.created_ts.desc(), Message.id.desc()).limit(limit))
        return list(reversed(newest))

    async def recent(self, limit: int = 20) -> list[MessageView]:
        stmt = select(Message).order_by(Message.created_ts.desc(), Message.id.desc()).limit(limit)
        return await self._views(stmt)

    async def unread_dms(self, agent: str, limit: Optional[int] = None) -> list[MessageView]:
        stmt = (
            select(Message)
            .where(and_(Message.kind == KIND_DM, Message.recipient == agent, Message.read == False))  # noqa: E712
            .order_by(Message.created_ts.desc(), Message.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self._views(stmt)

    async def _views(self, stmt: Any) -> list[MessageView]:
        async with get_session() as session:
            result = await session.execute(stmt)
            return [MessageView.from_message(row) for row in result.scalars().all()]
