"""Messaging orchestration: validate, persist, fan out, log activity.

Validation and collaborator resolution run before any write. Once the message
row is committed it is the operation of record; notifications and the activity
entry that follow are best effort and never turn the call into a failure.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import Settings, get_settings
from .directory import ActivityLog, AgentDirectory, TicketRef, TicketStore
from .errors import NotFoundError, ValidationError, require_text
from .fanout import FanoutReport, NotificationCenter, execute_fanout, plan_comment_fanout, plan_dm_fanout
from .mentions import parse_mentions
from .models import ActivityEvent, Agent, Ticket
from .readstate import ReadStateMutator
from .store import PRIORITIES, MessageView, UnifiedMessageStore, enrich_views
from .unread import UnreadAggregator
from .utils import normalize_name, ticket_label

logger = logging.getLogger(__name__)


def normalize_priority(priority: Optional[str]) -> str:
    value = normalize_name(priority) or "normal"
    if value not in PRIORITIES:
        raise ValidationError(
            f"priority must be one of {', '.join(PRIORITIES)}",
            data={"field": "priority", "value": priority},
        )
    return value


def validate_limit(limit: Optional[int]) -> Optional[int]:
    if limit is None:
        return None
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("limit must be a positive integer", data={"field": "limit", "value": limit})
    return limit


class MessagingService:
    """Unified messaging surface over injected collaborators."""

    source = "unified_messaging"

    def __init__(
        self,
        directory: AgentDirectory,
        tickets: TicketStore,
        activity_log: ActivityLog,
        settings: Optional[Settings] = None,
        store: Optional[UnifiedMessageStore] = None,
    ):
        self.settings = settings or get_settings()
        self.messaging = self.settings.messaging
        self.directory = directory
        self.tickets = tickets
        self.activity_log = activity_log
        self.store = store or UnifiedMessageStore()
        self.unread = UnreadAggregator(self.store, directory, self.messaging)
        self.read_state = ReadStateMutator()
        self.notifications = NotificationCenter(directory, tickets, self.settings.notifications)

    # Collaborator helpers shared with the legacy surface

    async def resolve_ticket(self, ref: TicketRef) -> Ticket:
        ticket = await self.tickets.resolve(ref)
        if ticket is None:
            raise NotFoundError(f"Ticket '{ref}' not found", data={"ticket_ref": str(ref)})
        return ticket

    async def resolve_agent(self, name: str, role: str = "agent") -> Agent:
        agent = await self.directory.resolve(name)
        if agent is None:
            raise NotFoundError(f"Agent '{name}' not found", data={role: name})
        return agent

    async def optional_ticket(self, ref: Optional[TicketRef]) -> Optional[Ticket]:
        """Ticket enrichment for DMs: unresolvable or failing lookups yield None."""
        if ref is None or not str(ref).strip():
            return None
        try:
            ticket = await self.tickets.resolve(ref)
        except Exception as exc:
            logger.warning(
                "enrich.ticket_lookup_failed",
                extra={"ticket_ref": str(ref), "error": str(exc), "error_type": type(exc).__name__},
            )
            return None
        if ticket is None:
            logger.info("enrich.ticket_unresolved", extra={"ticket_ref": str(ref)})
        return ticket

    def mentions_in(self, body: str) -> frozenset[str]:
        return parse_mentions(body, roster=self.messaging.mention_roster, wildcard=self.messaging.mention_wildcard)

    async def notify_comment(
        self,
        sender_name: str,
        mentions: frozenset[str],
        body: str,
        ticket: Ticket,
        *,
        message_id: Optional[int] = None,
        legacy_comment_id: Optional[int] = None,
        source: Optional[str] = None,
    ) -> FanoutReport:
        """Fan out mention notifications and log the comment; both are skipped for an unknown author."""
        try:
            sender = await self.directory.resolve(sender_name)
        except Exception as exc:
            logger.warning(
                "fanout.sender_lookup_failed",
                extra={"sender": sender_name, "error": str(exc), "error_type": type(exc).__name__},
            )
            return FanoutReport()
        if sender is None:
            logger.info("fanout.sender_unknown", extra={"sender": sender_name, "ticket_id": ticket.id})
            return FanoutReport()
        label = ticket_label(ticket.human_id, ticket.id)
        await self.record_activity(
            ActivityEvent(
                agent_name=sender.name.lower(),
                event_type="comment",
                title=f"{sender.name.upper()} commented on {label}",
                ticket_id=ticket.id,
                ticket_human_id=ticket.human_id,
                source=source or self.source,
            )
        )
        intents = plan_comment_fanout(
            sender=sender,
            mentions=mentions,
            body=body,
            ticket_label=label,
            ticket_id=ticket.id,
            settings=self.messaging,
            message_id=message_id,
            legacy_comment_id=legacy_comment_id,
        )
        return await execute_fanout(intents, self.directory)

    async def notify_dm(
        self,
        sender: Agent,
        recipient: Agent,
        body: str,
        priority: str,
        ticket: Optional[Ticket],
        *,
        message_id: Optional[int] = None,
        legacy_message_id: Optional[int] = None,
        source: Optional[str] = None,
    ) -> FanoutReport:
        intents = plan_dm_fanout(
            sender=sender,
            recipient=recipient,
            body=body,
            priority=priority,
            ticket_label=ticket_label(ticket.human_id, ticket.id) if ticket is not None else None,
            ticket_id=ticket.id if ticket is not None else None,
            settings=self.messaging,
            message_id=message_id,
            legacy_message_id=legacy_message_id,
        )
        report = await execute_fanout(intents, self.directory)
        await self.record_activity(
            ActivityEvent(
                agent_name=sender.name.lower(),
                event_type="dm_sent",
                title=f"{sender.name.upper()} sent DM to {recipient.name.upper()}",
                ticket_id=ticket.id if ticket is not None else None,
                ticket_human_id=ticket.human_id if ticket is not None else None,
                source=source or self.source,
            )
        )
        return report

    async def record_activity(self, event: ActivityEvent) -> None:
        if not self.messaging.activity_log_enabled:
            return
        try:
            await self.activity_log.append(event)
        except Exception as exc:
            logger.warning(
                "activity.append_failed",
                extra={
                    "agent": event.agent_name,
                    "event_type": event.event_type,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )

    async def enrich(self, views: list[MessageView]) -> list[dict[str, Any]]:
        enriched = await enrich_views(views, self.directory, self.messaging.default_avatar)
        return [view.to_dict() for view in enriched]

    # Write paths

    async def post_comment(self, ticket_ref: TicketRef, sender_name: str, body: str) -> dict[str, Any]:
        ref = require_text(None if ticket_ref is None else str(ticket_ref), "ticket_ref")
        sender = normalize_name(require_text(sender_name, "sender_name"))
        require_text(body, "body")
        ticket = await self.resolve_ticket(ref)

        mentions = self.mentions_in(body)
        message = await self.store.insert_comment(ticket, sender, body, mentions)
        await self.notify_comment(sender, mentions, body, ticket, message_id=message.id)
        return {
            "message_id": message.id,
            "ticket_ref": ticket.id,
            "mentions": sorted(mentions),
            "ticket_human_id": ticket.human_id,
        }

    async def send_dm(
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
        sender_agent = await self.resolve_agent(sender, "sender")
        recipient_agent = await self.resolve_agent(recipient, "recipient")
        ticket = await self.optional_ticket(ticket_ref)

        sender_key = sender_agent.name.lower()
        recipient_key = recipient_agent.name.lower()
        message = await self.store.insert_dm(sender_key, recipient_key, body, ticket, level)
        await self.notify_dm(sender_agent, recipient_agent, body, level, ticket, message_id=message.id)
        return {
            "message_id": message.id,
            "sender": sender_key,
            "recipient": recipient_key,
            "priority": level,
        }

    # Read paths

    async def get_comments(self, ticket_ref: TicketRef) -> list[dict[str, Any]]:
        ticket = await self.resolve_ticket(require_text(None if ticket_ref is None else str(ticket_ref), "ticket_ref"))
        assert ticket.id is not None
        return await self.enrich(await self.store.comments_for_ticket(ticket.id))

    async def get_dms(self, agent_name: str, unread_only: bool = False) -> list[dict[str, Any]]:
        agent = normalize_name(require_text(agent_name, "agent_name"))
        return await self.enrich(await self.store.dms_for(agent, unread_only=unread_only))

    async def get_conversation(self, agent_a: str, agent_b: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        a = normalize_name(require_text(agent_a, "agent_a"))
        b = normalize_name(require_text(agent_b, "agent_b"))
        views = await self.store.conversation(a, b, validate_limit(limit))
        return await self.enrich(views)

    async def list_recent(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        count = validate_limit(limit) or self.messaging.recent_limit
        return await self.enrich(await self.store.recent(count))

    async def get_unread(self, agent_name: str) -> dict[str, Any]:
        return await self.unread.detail(require_text(agent_name, "agent_name"))

    async def get_unread_count(self, agent_name: str) -> dict[str, int]:
        return await self.unread.summary(require_text(agent_name, "agent_name"))

    # Read state

    async def mark_read(self, item_id: int, kind: str = "message", agent_name: Optional[str] = None) -> dict[str, Any]:
        return await self.read_state.mark_read(item_id, kind=kind, agent_name=agent_name)

    async def mark_all_read(self, agent_name: str) -> dict[str, int]:
        return await self.read_state.mark_all_read(require_text(agent_name, "agent_name"))
