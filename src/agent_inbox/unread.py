"""Per-agent unread aggregation across direct messages and comment mentions.

A DM is unread while its own ``read`` flag is false. A mention is unread while the
mentioned agent's ``mention`` notification is unread, so one agent reading a
comment never clears it for the other agents it mentions.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import and_, func
from sqlmodel import select

from .config import MessagingSettings
from .db import get_session
from .directory import AgentDirectory
from .models import Message, Notification
from .store import KIND_COMMENT, KIND_DM, MessageView, UnifiedMessageStore, enrich_views
from .utils import normalize_name


def unread_dm_clause(agent: str) -> Any:
    return and_(Message.kind == KIND_DM, Message.recipient == agent, Message.read == False)  # noqa: E712


def unread_mention_clause(agent: str) -> Any:
    return and_(
        Notification.recipient == agent,
        Notification.kind == "mention",
        Notification.read == False,  # noqa: E712
        Message.kind == KIND_COMMENT,
        Message.sender != agent,
    )


class UnreadAggregator:
    def __init__(self, store: UnifiedMessageStore, directory: AgentDirectory, settings: MessagingSettings):
        self.store = store
        self.directory = directory
        self.settings = settings

    async def summary(self, agent_name: str) -> dict[str, int]:
        """Exact, uncapped unread counts."""
        agent = normalize_name(agent_name)
        async with get_session() as session:
            dms = await session.execute(select(func.count(Message.id)).where(unread_dm_clause(agent)))
            mentions = await session.execute(
                select(func.count(Notification.id))
                .select_from(Notification)
                .join(Message, Notification.message_id == Message.id)
                .where(unread_mention_clause(agent))
            )
            dm_count = int(dms.scalar_one())
            mention_count = int(mentions.scalar_one())
        return {"dms": dm_count, "mentions": mention_count, "total": dm_count + mention_count}

    async def unread_mentions(self, agent_name: str, limit: Optional[int] = None) -> list[MessageView]:
        agent = normalize_name(agent_name)
        stmt = (
            select(Message)
            .join(Notification, Notification.message_id == Message.id)
            .where(unread_mention_clause(agent))
            .order_by(Message.created_ts.desc(), Message.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with get_session() as session:
            result = await session.execute(stmt)
            return [MessageView.from_message(row) for row in result.scalars().all()]

    async def detail(self, agent_name: str, limit: Optional[int] = None) -> dict[str, Any]:
        """Newest unread DMs and mentions, each capped at ``limit``, plus exact counts."""
        cap = self.settings.unread_detail_limit if limit is None else limit
        dms = await self.store.unread_dms(normalize_name(agent_name), limit=cap)
        mentions = await self.unread_mentions(agent_name, limit=cap)
        dms = await enrich_views(dms, self.directory, self.settings.default_avatar)
        mentions = await enrich_views(mentions, self.directory, self.settings.default_avatar)
        return {
            "dms": [view.to_dict() for view in dms],
            "mentions": [view.to_dict() for view in mentions],
            "count": await self.summary(agent_name),
        }
