from __future__ import annotations

import logging

import pytest
from sqlmodel import select

from agent_inbox.config import get_settings
from agent_inbox.db import ensure_schema, get_session
from agent_inbox.directory import StaticAgentDirectory
from agent_inbox.fanout import (
    NotificationIntent,
    execute_fanout,
    plan_comment_fanout,
    plan_dm_fanout,
)
from agent_inbox.models import Agent, Notification


def _agent(name: str) -> Agent:
    return Agent(id=1, name=name)


def test_comment_fanout_excludes_sender_and_dedupes(isolated_env):
    intents = plan_comment_fanout(
        sender=_agent("Sam"),
        mentions={"max", "sam", "leo", "son"},
        body="Looks good @Leo @leo @all",
        ticket_label="AGT-9",
        ticket_id=1,
        settings=get_settings().messaging,
        message_id=7,
    )
    assert [intent.recipient for intent in intents] == ["leo", "max", "son"]
    assert {intent.kind for intent in intents} == {"mention"}
    assert intents[0].title == "Sam mentioned you"
    assert intents[0].body == "In AGT-9: Looks good @Leo @leo @all"
    assert all(intent.message_id == 7 and intent.sender == "sam" for intent in intents)


def test_comment_fanout_truncates_preview(isolated_env):
    body = "x" * 150
    (intent,) = plan_comment_fanout(
        sender=_agent("Max"),
        mentions={"leo"},
        body=body,
        ticket_label="task-3",
        ticket_id=3,
        settings=get_settings().messaging,
    )
    assert intent.body == "In task-3: " + "x" * 100 + "..."


def test_dm_fanout_without_ticket_uses_long_preview(isolated_env):
    body = "y" * 200
    (intent,) = plan_dm_fanout(
        sender=_agent("Max"),
        recipient=Agent(id=2, name="Sam"),
        body=body,
        priority="normal",
        ticket_label=None,
        ticket_id=None,
        settings=get_settings().messaging,
    )
    assert intent.recipient == "sam"
    assert intent.kind == "dm"
    assert intent.title == "DM from Max"
    assert intent.body == "y" * 150 + "..."


def test_dm_fanout_with_ticket_and_urgent_marker(isolated_env):
    (intent,) = plan_dm_fanout(
        sender=_agent("Max"),
        recipient=Agent(id=2, name="Sam"),
        body="deploy is blocked",
        priority="urgent",
        ticket_label="AGT-9",
        ticket_id=1,
        settings=get_settings().messaging,
    )
    assert intent.title == "🔴 Urgent DM from Max"
    assert intent.body == "Re: AGT-9 — deploy is blocked"
    assert intent.ticket_id == 1


def test_dm_to_self_plans_nothing(isolated_env):
    intents = plan_dm_fanout(
        sender=_agent("Max"),
        recipient=Agent(id=1, name="max"),
        body="note to self",
        priority="normal",
        ticket_label=None,
        ticket_id=None,
        settings=get_settings().messaging,
    )
    assert intents == []


@pytest.mark.asyncio
async def test_execute_fanout_isolates_failures(isolated_env, caplog):
    await ensure_schema()
    directory = StaticAgentDirectory.from_names("Max", "Leo")
    intents = [
        NotificationIntent(recipient=name, sender="max", kind="mention", title="Max mentioned you", body="In AGT-9: hi")
        for name in ("leo", "ghost", "max")
    ]
    with caplog.at_level(logging.WARNING, logger="agent_inbox.fanout"):
        report = await execute_fanout(intents, directory)

    assert len(report.created) == 2
    assert not report.ok
    (failure,) = report.failures
    assert failure.recipient == "ghost"
    assert failure.exception_type == "NotFoundError"
    assert report.to_dict()["failures"][0]["kind"] == "mention"
    assert any(record.getMessage() == "fanout.intent_failed" for record in caplog.records)

    async with get_session() as session:
        rows = (await session.execute(select(Notification))).scalars().all()
    assert sorted(row.recipient for row in rows) == ["leo", "max"]


@pytest.mark.asyncio
async def test_execute_fanout_survives_directory_errors(isolated_env):
    await ensure_schema()

    class FlakyDirectory(StaticAgentDirectory):
        async def resolve(self, name):
            if name == "leo":
                raise RuntimeError("directory offline")
            return await super().resolve(name)

    directory = FlakyDirectory.from_names("Max", "Leo", "Son")
    intents = [
        NotificationIntent(recipient=name, sender="max", kind="mention", title="t", body="b")
        for name in ("leo", "son")
    ]
    report = await execute_fanout(intents, directory)
    assert len(report.created) == 1
    assert report.failures[0].reason == "directory offline"
    assert report.failures[0].exception_type == "RuntimeError"
