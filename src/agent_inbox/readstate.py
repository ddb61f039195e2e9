"""Unread to read transitions for messages and notifications."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import and_, update
from sqlmodel import select

from .db import get_session, retry_on_db_lock
from .errors import NotFoundError, ValidationError
from .models import LegacyDirectMessage, Message, Notification
from .store import KIND_DM
from .unread import unread_dm_clause, unread_mention_clause
from .utils import normalize_name

logger = logging.getLogger(__name__)

READ_KINDS = ("message", "notification")


class ReadStateMutator:
    @retry_on_db_lock()
    async def mark_read(
        self,
        item_id: int,
        kind: str = "message",
        agent_name: Optional[str] = None,
    ) -> dict[str, Any]:
        """Mark one item read. Already-read items are a no-op success.

        ``kind="message"`` on a DM flips the DM and its notification. On a comment,
        ``agent_name`` selects whose mention notification is flipped.
        ``kind="notification"`` flips the notification and, for a DM notification,
        the originating DM.
        """
        if kind not in READ_KINDS:
            raise ValidationError(f"kind must be one of {', '.join(READ_KINDS)}", data={"kind": kind})
        async with get_session() as session:
            if kind == "message":
                message = await session.get(Message, item_id)
                if message is None:
                    raise NotFoundError(f"Message {item_id} not found", data={"message_id": item_id})
                if message.kind == KIND_DM:
                    if message.read is not True:
                        message.read = True
                        session.add(message)
                    await session.execute(
                        update(Notification)
                        .where(and_(Notification.message_id == item_id, Notification.kind == "dm"))
                        .values(read=True)
                    )
                else:
                    agent = normalize_name(agent_name)
                    if not agent:
                        raise ValidationError(
                            "agent_name is required to mark a comment mention read",
                            data={"field": "agent_name", "message_id": item_id},
                        )
                    await session.execute(
                        update(Notification)
                        .where(
                            and_(
                                Notification.message_id == item_id,
                                Notification.recipient == agent,
                                Notification.kind == "mention",
                            )
                        )
                        .values(read=True)
                    )
            else:
                notification = await session.get(Notification, item_id)
                if notification is None:
                    raise NotFoundError(f"Notification {item_id} not found", data={"notification_id": item_id})
                if not notification.read:
                    notification.read = True
                    session.add(notification)
                if notification.kind == "dm" and notification.message_id is not None:
                    await session.execute(
                        update(Message)
                        .where(and_(Message.id == notification.message_id, Message.kind == KIND_DM))
                        .values(read=True)
                    )
                if notification.kind == "dm" and notification.legacy_message_id is not None:
                    await session.execute(
                        update(LegacyDirectMessage)
                        .where(LegacyDirectMessage.id == notification.legacy_message_id)
                        .values(status="read")
                    )
            await session.commit()
        return {"success": True}

    @retry_on_db_lock()
    async def mark_all_read(self, agent_name: str) -> dict[str, int]:
        """Flip every DM and mention unread at call start; later arrivals stay unread."""
        agent = normalize_name(agent_name)
        async with get_session() as session:
            dm_rows = await session.execute(select(Message.id).where(unread_dm_clause(agent)))
            dm_ids = list(dm_rows.scalars().all())
            mention_rows = await session.execute(
                select(Notification.id)
                .join(Message, Notification.message_id == Message.id)
                .where(unread_mention_clause(agent))
            )
            mention_ids = list(mention_rows.scalars().all())

            marked = 0
            if dm_ids:
                result = await session.execute(
                    update(Message)
                    .where(and_(Message.id.in_(dm_ids), Message.read == False))  # noqa: E712
                    .values(read=True)
                )
                marked += int(result.rowcount or 0)
                await session.execute(
                    update(Notification)
                    .where(
                        and_(
                            Notification.message_id.in_(dm_ids),
                            Notification.kind == "dm",
                            Notification.read == False,  # noqa: E712
                        )
                    )
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
        logger.info("readstate.mark_all_read", extra={"agent": agent, "marked": marked})
        return {"marked": marked}
