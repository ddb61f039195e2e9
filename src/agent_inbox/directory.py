"""Narrow collaborator interfaces injected into the messaging core.

The SQL-backed implementations read the ``agents``/``tickets`` tables and append
to ``activity_events``; the static ones hold a fixed roster in memory and are what
tests substitute.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional, Protocol, Union, runtime_checkable

from sqlalchemy import func
from sqlmodel import select

from .db import get_session, retry_on_db_lock
from .models import ActivityEvent, Agent, Ticket
from .utils import normalize_name

logger = logging.getLogger(__name__)

TicketRef = Union[str, int]


@runtime_checkable
class AgentDirectory(Protocol):
    async def resolve(self, name: str) -> Optional[Agent]: ...


@runtime_checkable
class TicketStore(Protocol):
    async def resolve(self, ref: TicketRef) -> Optional[Ticket]: ...

    async def get(self, ticket_id: int) -> Optional[Ticket]: ...


@runtime_checkable
class ActivityLog(Protocol):
    async def append(self, event: ActivityEvent) -> None: ...


def _split_ref(ref: TicketRef) -> tuple[Optional[int], Optional[str]]:
    """Digits address the storage id, anything else the human identifier."""
    if isinstance(ref, int):
        return ref, None
    text = str(ref).strip()
    if not text:
        return None, None
    if text.isdigit():
        return int(text), None
    return None, text.lower()


class SqlAgentDirectory:
    async def resolve(self, name: str) -> Optional[Agent]:
        key = normalize_name(name)
        if not key:
            return None
        async with get_session() as session:
            result = await session.execute(select(Agent).where(func.lower(Agent.name) == key))
            return result.scalars().first()

    async def list_agents(self) -> list[Agent]:
        async with get_session() as session:
            result = await session.execute(select(Agent).order_by(Agent.id))
            return list(result.scalars().all())

    @retry_on_db_lock()
    async def register(self, name: str, avatar: str = "🤖") -> Agent:
        """Insert or update an agent by name; used by the CLI seeding commands."""
        key = normalize_name(name)
        if not key:
            raise ValueError("agent name is required")
        async with get_session() as session:
            result = await session.execute(select(Agent).where(func.lower(Agent.name) == key))
            agent = result.scalars().first()
            if agent is None:
                agent = Agent(name=name.strip(), avatar=avatar)
                session.add(agent)
            else:
                agent.avatar = avatar
            await session.commit()
            await session.refresh(agent)
            return agent


class SqlTicketStore:
    async def resolve(self, ref: TicketRef) -> Optional[Ticket]:
        ticket_id, human_key = _split_ref(ref)
        if ticket_id is not None:
            return await self.get(ticket_id)
        if human_key is None:
            return None
        async with get_session() as session:
            result = await session.execute(select(Ticket).where(func.lower(Ticket.human_id) == human_key))
            return result.scalars().first()

    async def get(self, ticket_id: int) -> Optional[Ticket]:
        async with get_session() as session:
            return await session.get(Ticket, ticket_id)

    async def list_tickets(self) -> list[Ticket]:
        async with get_session() as session:
            result = await session.execute(select(Ticket).order_by(Ticket.id))
            return list(result.scalars().all())

    @retry_on_db_lock()
    async def create(self, human_id: Optional[str], title: str = "", status: str = "todo") -> Ticket:
        async with get_session() as session:
            ticket = Ticket(human_id=(human_id or None), title=title, status=status)
            session.add(ticket)
            await session.commit()
            await session.refresh(ticket)
            return ticket


class SqlActivityLog:
    @retry_on_db_lock()
    async def append(self, event: ActivityEvent) -> None:
        async with get_session() as session:
            session.add(event)
            await session.commit()


class StaticAgentDirectory:
    """Fixed in-memory roster keyed by lower-cased name."""

    def __init__(self, agents: Iterable[Agent]):
        self._agents: dict[str, Agent] = {}
        for index, agent in enumerate(agents, start=1):
            if agent.id is None:
                agent.id = index
            self._agents[agent.name.lower()] = agent

    @classmethod
    def from_names(cls, *names: str, avatar: str = "🤖") -> "StaticAgentDirectory":
        return cls(Agent(name=name, avatar=avatar) for name in names)

    async def resolve(self, name: str) -> Optional[Agent]:
        return self._agents.get(normalize_name(name))


class StaticTicketStore:
    def __init__(self, tickets: Iterable[Ticket]):
        self._by_id: dict[int, Ticket] = {}
        for index, ticket in enumerate(tickets, start=1):
            if ticket.id is None:
                ticket.id = index
            self._by_id[ticket.id] = ticket

    async def resolve(self, ref: TicketRef) -> Optional[Ticket]:
        ticket_id, human_key = _split_ref(ref)
        if ticket_id is not None:
            return self._by_id.get(ticket_id)
        if human_key is None:
            return None
        for ticket in self._by_id.values():
            if ticket.human_id and ticket.human_id.lower() == human_key:
                return ticket
        return None

    async def get(self, ticket_id: int) -> Optional[Ticket]:
        return self._by_id.get(ticket_id)


class RecordingActivityLog:
    """Keeps appended events in memory."""

    def __init__(self) -> None:
        self.events: list[ActivityEvent] = []

    async def append(self, event: ActivityEvent) -> None:
        self.events.append(event)
