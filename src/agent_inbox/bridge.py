"""First-generation comment and DM tables plus the legacy API surface.

The legacy tables (``task_comments``, ``agent_messages``) are a separate write
track. Nothing is copied between them and ``messages``: a legacy write is only
visible through the legacy reads and a unified write only through the unified
reads. Both tracks answer the same ``MessageReadModel`` with the same ordering
rules, which is what keeps clients of either surface behaving identically.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import aliased
from sqlmodel import select

from .db import get_session, retry_on_db_lock
from .directory import TicketRef
from .errors import NotFoundError, require_text
from .models import Agent, LegacyComment, LegacyDirectMessage, Notification, Ticket
from .service import MessagingService, normalize_priority, validate_limit
from .store import KIND_COMMENT, KIND_DM, MessageView
from .utils import normalize_name

logger = logging.getLogger(__name__)

STATUS_UNREAD = "unread"
STATUS_READ = "read"

_Sender = aliased(Agent, name="sender_agent")
_Recipient = aliased(Agent, name="recipient_agent")


def _comment_view(comment: LegacyComment, human_id: Optional[str]) -> MessageView:
    assert comment.id is not None
    return MessageView(
        id=comment.id,
        kind=KIND_COMMENT,
        sender=comment.sender,
        recipient=None,
        ticket_id=comment.ticket_id,
        ticket_human_id=human_id,
        body=comment.body,
        mentions=tuple(sorted(comment.mentions)) if comment.mentions else None,
        priority=None,
        read=None,
        created_ts=comment.created_ts,
        generation="legacy",
    )


def _dm_view(dm: LegacyDirectMessage, sender: str, recipient: str, human_id: Optional[str]) -> MessageView:
    assert dm.id is not None
    return MessageView(
        id=dm.id,
        kind=KIND_DM,
        sender=sender.lower(),
        recipient=recipient.lower(),
        ticket_id=dm.ticket_id,
        ticket_human_id=human_id,
        body=dm.body,
        mentions=None,
        priority=dm.priority,
        read=dm.status == STATUS_READ,
        created_ts=dm.created_ts,
        generation="legacy",
    )


class LegacyMessageStore:
    """Sole writer of ``task_comments`` and ``agent_messages``."""

    generation = "legacy"

    @retry_on_db_lock()
    async def insert_comment(
        self,
        ticket: Ticket,
        sender: str,
        body: str,
        mentions: Optional[frozenset[str]] = None,
    ) -> LegacyComment:
        assert ticket.id is not None
        comment = LegacyComment(
            ticket_id=ticket.id,
            sender=sender,
            body=body,
            mentions=sorted(mentions) if mentions else None,
        )
        async with get_session() as session:
            session.add(comment)
            await session.commit()
            await session.refresh(comment)
        return comment

    @retry_on_db_lock()
    async def insert_dm(
        self,
        sender: Agent,
        recipient: Agent,
        body: str,
        ticket: Optional[Ticket] = None,
        priority: str = "normal",
    ) -> LegacyDirectMessage:
        assert sender.id is not None and recipient.id is not None
        dm = LegacyDirectMessage(
            sender_id=sender.id,
            recipient_id=recipient.id,
            body=body,
            ticket_id=ticket.id if ticket is not None else None,
            priority=priority,
            status=STATUS_UNREAD,
        )
        async with get_session() as session:
            session.add(dm)
            await session.commit()
            await session.refresh(dm)
        return dm

    async def comments_for_ticket(self, ticket_id: int) -> list[MessageView]:
        stmt = (
            select(LegacyComment, Ticket.human_id)
            .outerjoin(Ticket, LegacyComment.ticket_id == Ticket.id)
            .where(LegacyComment.ticket_id == ticket_id)
            .order_by(LegacyComment.created_ts.asc(), LegacyComment.id.asc())
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            return [_comment_view(comment, human_id) for comment, human_id in result.all()]

    def _dm_select(self) -> Any:
        return (
            select(LegacyDirectMessage, _Sender.name, _Recipient.name, Ticket.human_id)
            .join(_Sender, LegacyDirectMessage.sender_id == _Sender.id)
            .join(_Recipient, LegacyDirectMessage.recipient_id == _Recipient.id)
            .outerjoin(Ticket, LegacyDirectMessage.ticket_id == Ticket.id)
        )

    async def _dm_views(self, stmt: Any) -> list[MessageView]:
        async with get_session() as session:
            result = await session.execute(stmt)
            return [_dm_view(dm, sender, recipient, human_id) for dm, sender, recipient, human_id in result.all()]

    async def dms_for(self, agent: str, unread_only: bool = False) -> list[MessageView]:
        conditions = [func.lower(_Recipient.name) == normalize_name(agent)]
        if unread_only:
            conditions.append(LegacyDirectMessage.status == STATUS_UNREAD)
        stmt = (
            self._dm_select()
            .where(and_(*conditions))
            .order_by(LegacyDirectMessage.created_ts.desc(), LegacyDirectMessage.id.desc())
        )
        return await self._dm_views(stmt)

    async def conversation(self, agent_a: str, agent_b: str, limit: Optional[int] = None) -> list[MessageView]:
        a, b = normalize_name(agent_a), normalize_name(agent_b)
        sender_name = func.lower(_Sender.name)
        recipient_name = func.lower(_Recipient.name)
        stmt = self._dm_select().where(
            or_(
                and_(sender_name == a, recipient_name == b),
                and_(sender_name == b, recipient_name == a),
            )
        )
        if limit is None:
            return await self._dm_views(
                stmt.order_by(LegacyDirectMessage.created_ts.asc(), LegacyDirectMessage.id.asc())
            )
        newest = await self._dm_views(
            stmt.order_by(LegacyDirectMessage.created_ts.desc(), LegacyDirectMessage.id.desc()).limit(limit)
        )
        return list(reversed(newest))

    @retry_on_db_lock()
    async def mark_read(self, message_id: int) -> None:
        async with get_session() as session:
            dm = await session.get(LegacyDirectMessage, message_id)
            if dm is None:
                raise NotFoundError(f"Message {message_id} not found", data={"message_id": message_id})
            if dm.status != STATUS_READ:
                dm.status = STATUS_READ
                session.add(dm)
            await session.execute(
                update(Notification)
                .where(and_(Notification.legacy_message_id == message_id, Notification.kind == "dm"))
                .values(read=True)
            )
            await session.commit()

    @retry_on_db_lock()
    async def mark_all_read(self, recipient: Agent) -> int:
        """Flip the agent's unread legacy DMs and legacy comment mentions present at call start."""
        async with get_session() as session:
            rows = await session.execute(
                select(LegacyDirectMessage.id).where(
                    and_(
                        LegacyDirectMessage.recipient_id == recipient.id,
                        LegacyDirectMessage.status == STATUS_UNREAD,
                    )
                )
            )
            snapshot = list(rows.scalars().all())
            mention_rows = await session.execute(
                select(Notification.id).where(
                    and_(
                        Notification.recipient == normalize_name(recipient.name),
                        Notification.kind == "mention",
                        Notification.legacy_comment_id.is_not(None),
                        Notification.read == False,  # noqa: E712
                    )
                )
            )
            mention_ids = list(mention_rows.scalars().all())

            marked = 0
            if snapshot:
                result = await session.execute(
                    update(LegacyDirectMessage)
                    .where(
                        and_(
                            LegacyDirectMessage.id.in_(snapshot),
                            LegacyDirectMessage.status == STATUS_UNREAD,
                        )
                    )
                    .values(status=STATUS_READ)
                )
                marked += int(result.rowcount or 0)
                await session.execute(
                    update(Notification)
                    .where(and_(Notification.legacy_message_id.in_(snapshot), Notification.kind == "dm"))
                    .values(read=True)
                )
            if mention_ids:
                result = await session.execute(
                    update(Notification)
                    .where(and_(Notification.id.in_(mention_ids), Notification.read == False))  # noqa: E712
                    .values(read=True)
                )
                marked += int(result.rowcount or 0)
            await session.commit()
        logger.info("legacy.mark_all_read", extra={"agent": recipient.name, "marked": marked})
        return marked


class CompatibilityBridge:
    """Legacy API surface: same validation and fan-out as the unified service, legacy tables."""

    source = "legacy_messaging"

    def __init__(self, service: MessagingService, store: Optional[LegacyMessageStore] = None):
        self.service = service
        self.store = store or LegacyMessageStore()

    async def legacy_post_comment(self, ticket_ref: TicketRef, sender_name: str, body: str) -> dict[str, Any]:
        ref = require_text(None if ticket_ref is None else str(ticket_ref), "ticket_ref")
        sender = normalize_name(require_text(sender_name, "sender_name"))
        require_text(body, "body")
        ticket = await self.service.resolve_ticket(ref)

        mentions = self.service.mentions_in(body)
        comment = await self.store.insert_comment(ticket, sender, body, mentions)
        await self.service.notify_comment(
            sender, mentions, body, ticket, legacy_comment_id=comment.id, source=self.source
        )
        return {
            "message_id": comment.id,
            "ticket_ref": ticket.id,
            "mentions": sorted(mentions),
            "ticket_human_id": ticket.human_id,
        }

    async def legacy_send_dm(
        self,
        sender: str,
        recipient: str,
        body: str,
        ticket_ref: Optional[TicketRef] = None,
        priority: Optional[str] = "normal",
    ) -> dict[str, Any]:
        require_text(sender, "sender")
        require_text(recipient, "recipient")
        require_text(body, "body")
        level = normalize_priority(priority)
        sender_agent = await self.service.resolve_agent(sender, "sender")
        recipient_agent = await self.service.resolve_agent(recipient, "recipient")
        ticket = await self.service.optional_ticket(ticket_ref)

        dm = await self.store.insert_dm(sender_agent, recipient_agent, body, ticket, level)
        await self.service.notify_dm(
            sender_agent, recipient_agent, body, level, ticket, legacy_message_id=dm.id, source=self.source
        )
        return {
            "message_id": dm.id,
            "sender": sender_agent.name.lower(),
            "recipient": recipient_agent.name.lower(),
            "priority": level,
        }

    async def legacy_get_comments(self, ticket_ref: TicketRef) -> list[dict[str, Any]]:
        ticket = await self.service.resolve_ticket(
            require_text(None if ticket_ref is None else str(ticket_ref), "ticket_ref")
        )
        assert ticket.id is not None
        return await self.service.enrich(await self.store.comments_for_ticket(ticket.id))

    async def legacy_get_dms(self, agent_name: str, unread_only: bool = False) -> list[dict[str, Any]]:
        agent = await self.service.directory.resolve(agent_name)
        if agent is None:
            return []
        return await self.service.enrich(await self.store.dms_for(agent.name, unread_only=unread_only))

    async def legacy_get_conversation(
        self, agent_a: str, agent_b: str, limit: Optional[int] = None
    ) -> list[dict[str, Any]]:
        first = await self.service.directory.resolve(agent_a)
        second = await self.service.directory.resolve(agent_b)
        if first is None or second is None:
            return []
        views = await self.store.conversation(first.name, second.name, validate_limit(limit))
        return await self.service.enrich(views)

    async def legacy_mark_read(self, message_id: int) -> dict[str, Any]:
        await self.store.mark_read(message_id)
        return {"success": True}

    async def legacy_mark_all_read(self, agent_name: str) -> dict[str, int]:
        agent = await self.service.resolve_agent(require_text(agent_name, "agent_name"))
        return {"marked": await self.store.mark_all_read(agent)}
