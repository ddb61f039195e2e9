from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import select

from agent_inbox.db import get_session
from agent_inbox.errors import NotFoundError
from agent_inbox.models import Notification


def _hours_ago(hours: float) -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=hours)


async def _add(recipient: str, *, read: bool = False, age_hours: float = 0, ticket_id=None, sender="max") -> int:
    note = Notification(
        recipient=recipient,
        sender=sender,
        kind="mention",
        title=f"{sender} mentioned you",
        body="In AGT-9: hi",
        read=read,
        ticket_id=ticket_id,
        created_ts=_hours_ago(age_hours),
    )
    async with get_session() as session:
        session.add(note)
        await session.commit()
        await session.refresh(note)
    return note.id


async def _recipients() -> list[str]:
    async with get_session() as session:
        rows = await session.execute(select(Notification.recipient).order_by(Notification.id))
        return list(rows.scalars().all())


@pytest.mark.asyncio
async def test_list_and_unread_for_agent(service):
    center = service.notifications
    await _add("sam", read=True, age_hours=2)
    newest = await _add("sam", sender="leo")
    await _add("max")

    listed = await center.list_for_agent("SAM")
    assert [n.id for n in listed][0] == newest
    assert len(listed) == 2

    unread = await center.unread_for_agent("Sam")
    assert [n["id"] for n in unread] == [newest]
    assert unread[0]["sender_name"] == "Leo"
    assert await center.unread_count("sam") == 1
    assert await center.unread_for_agent("ghost") == []


@pytest.mark.asyncio
async def test_get_and_remove(service):
    center = service.notifications
    note_id = await _add("sam")
    assert (await center.get(note_id)).recipient == "sam"
    await center.remove(note_id)
    with pytest.raises(NotFoundError):
        await center.get(note_id)
    with pytest.raises(NotFoundError):
        await center.remove(note_id)


@pytest.mark.asyncio
async def test_clear_read_only_touches_old_read_notifications(service):
    center = service.notifications
    await _add("sam", read=True, age_hours=24 * 10)
    await _add("sam", read=True, age_hours=1)
    await _add("sam", read=False, age_hours=24 * 10)
    await _add("max", read=True, age_hours=24 * 10)

    assert await center.clear_read("sam") == 1
    assert await _recipients() == ["sam", "sam", "max"]
    assert await center.clear_read("sam", older_than=_hours_ago(-1)) == 1
    assert await _recipients() == ["sam", "max"]


@pytest.mark.asyncio
async def test_clear_all_and_cleanup(service):
    center = service.notifications
    await _add("sam")
    await _add("sam", age_hours=30)
    await _add("leo", age_hours=50)
    await _add("max")

    result = await center.cleanup()
    assert result == {"deleted": 2, "remaining": 2, "cutoff_hours": 24}
    assert await center.clear_all("sam") == {"deleted": 1}
    assert await _recipients() == ["max"]
    assert (await center.cleanup(hours_old=0))["remaining"] == 0


@pytest.mark.asyncio
async def test_dashboard_groups_by_recipient(service, seeded):
    center = service.notifications
    await _add("sam", read=True, age_hours=3, ticket_id=seeded["ticket"].id)
    await _add("ghost", age_hours=2)
    await _add("sam", age_hours=1, ticket_id=seeded["ticket"].id)
    await _add("sam", ticket_id=999)

    board = await center.dashboard()
    assert board["total_unread"] == 3
    groups = board["by_agent"]
    assert [g["agent"] for g in groups] == ["sam", "ghost"]
    sam = groups[0]
    assert sam["agent_name"] == "Sam"
    assert sam["agent_avatar"] == "S!"
    assert sam["unread_count"] == 2
    assert len(sam["notifications"]) == 3
    assert sam["notifications"][0]["ticket_summary"] is None
    assert sam["notifications"][1]["ticket_summary"] == {
        "id": seeded["ticket"].id,
        "human_id": "AGT-9",
        "title": "Ship the inbox",
        "status": "in_progress",
    }
    assert groups[1]["agent_name"] == "Unknown"
    assert groups[1]["agent_avatar"] == "?"


@pytest.mark.asyncio
async def test_dashboard_caps_each_group(service):
    for index in range(25):
        await _add("leo", age_hours=index / 100)
    (group,) = (await service.notifications.dashboard())["by_agent"]
    assert group["unread_count"] == 25
    assert len(group["notifications"]) == 20
